"""Registry data model.

PackageVersion identity is (name, major, minor, patch) and never changes once
a row exists. Everything else on the row is either discovery metadata
(replaced on a same-identity re-install) or a blob reference.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum


class Provenance(Enum):
    """Which catalog a package version came from."""

    UPSTREAM = "upstream"
    CURATED = "curated"
    CUSTOM = "custom"


class EdgeType(Enum):
    """Dependency edge types.

    Manifest keys map onto them: preloadedDependencies -> REQUIRED_AT_LOAD,
    dynamicDependencies -> REQUIRED_AT_RUNTIME, editorDependencies ->
    REQUIRED_IN_EDITOR.
    """

    REQUIRED_AT_LOAD = "required-at-load"
    REQUIRED_AT_RUNTIME = "required-at-runtime"
    REQUIRED_IN_EDITOR = "required-in-editor"

    @classmethod
    def parse_csv(cls, value: str | None) -> frozenset["EdgeType"]:
        """Parse a comma-separated list of edge type values.

        Empty input means REQUIRED_AT_LOAD only (what a player needs).

        Raises:
            ValueError: On an unknown edge type
        """
        if not value or not value.strip():
            return frozenset({cls.REQUIRED_AT_LOAD})
        result = set()
        for part in value.split(","):
            part = part.strip()
            if not part:
                continue
            try:
                result.add(cls(part))
            except ValueError:
                valid = [e.value for e in cls]
                raise ValueError(
                    f"Invalid edge type '{part}'. Must be one of: {valid}"
                ) from None
        return frozenset(result)


MANIFEST_DEPENDENCY_KEYS = {
    "preloadedDependencies": EdgeType.REQUIRED_AT_LOAD,
    "dynamicDependencies": EdgeType.REQUIRED_AT_RUNTIME,
    "editorDependencies": EdgeType.REQUIRED_IN_EDITOR,
}


@dataclass(frozen=True, order=True)
class Version:
    """A major.minor.patch version triple."""

    major: int
    minor: int
    patch: int = 0

    @classmethod
    def parse(cls, value: str) -> "Version":
        """Parse "1.2.3" (patch optional).

        Raises:
            ValueError: If the string is not a version
        """
        parts = value.strip().split(".")
        if len(parts) not in (2, 3) or not all(p.isascii() and p.isdigit() for p in parts):
            raise ValueError(f"Invalid version: {value!r}")
        numbers = [int(p) for p in parts]
        return cls(*numbers)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass(frozen=True)
class Identity:
    """Package identity: machine name plus version triple."""

    name: str
    version: Version

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"

    @property
    def sort_key(self) -> tuple:
        return (self.name, self.version)

    @property
    def dir_name(self) -> str:
        """Directory / URL segment for this identity (H5P.Foo-1.2.3)."""
        return f"{self.name}-{self.version}"


@dataclass
class PackageVersion:
    """A stored package version."""

    id: int
    name: str
    version: Version
    provenance: Provenance
    content_hash: str
    title: str = ""
    description: str = ""
    categories: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    runnable: bool = False
    owning_tenant_id: str | None = None
    archive_ref: str | None = None
    extracted_root: str | None = None
    icon_ref: str | None = None
    core_api: tuple[int, int] = (1, 0)
    metadata: dict = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""

    @property
    def identity(self) -> Identity:
        return Identity(self.name, self.version)

    @property
    def major(self) -> int:
        return self.version.major

    @property
    def minor(self) -> int:
        return self.version.minor

    @property
    def patch(self) -> int:
        return self.version.patch

    def supports_host(self, host: tuple[int, int]) -> bool:
        """True if a host runtime at `host` can run this version."""
        return tuple(self.core_api) <= tuple(host)

    @classmethod
    def from_row(cls, row) -> "PackageVersion":
        """Build from a package_versions row."""
        return cls(
            id=row["id"],
            name=row["name"],
            version=Version(row["major"], row["minor"], row["patch"]),
            provenance=Provenance(row["provenance"]),
            content_hash=row["content_hash"],
            title=row["title"],
            description=row["description"],
            categories=json.loads(row["categories_json"]),
            keywords=json.loads(row["keywords_json"]),
            runnable=bool(row["runnable"]),
            owning_tenant_id=row["owning_tenant_id"],
            archive_ref=row["archive_ref"],
            extracted_root=row["extracted_root"],
            icon_ref=row["icon_ref"],
            core_api=(row["core_api_major"], row["core_api_minor"]),
            metadata=json.loads(row["metadata_json"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict:
        """Serialize to dict."""
        return {
            "id": self.id,
            "name": self.name,
            "version": str(self.version),
            "majorVersion": self.major,
            "minorVersion": self.minor,
            "patchVersion": self.patch,
            "title": self.title,
            "description": self.description,
            "categories": list(self.categories),
            "keywords": list(self.keywords),
            "runnable": self.runnable,
            "provenance": self.provenance.value,
            "owningTenantId": self.owning_tenant_id,
            "archiveRef": self.archive_ref,
            "extractedRoot": self.extracted_root,
            "iconRef": self.icon_ref,
            "coreApi": f"{self.core_api[0]}.{self.core_api[1]}",
            "contentHash": self.content_hash,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class DependencyEdge:
    """A typed edge from one package version to another."""

    from_id: int
    to_id: int
    edge_type: EdgeType


@dataclass(frozen=True)
class OverlayState:
    """Per-tenant visibility state for one package version."""

    tenant_id: str
    package_version_id: int
    enabled: bool = True
    restricted: bool = False


@dataclass
class MirrorCursor:
    """Progress marker for one mirror source."""

    source: str
    last_digest: str | None = None
    last_synced_at: str | None = None
    last_attempt_at: str | None = None
    last_error: str | None = None

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "last_digest": self.last_digest,
            "last_synced_at": self.last_synced_at,
            "last_attempt_at": self.last_attempt_at,
            "last_error": self.last_error,
        }


@dataclass
class CatalogEntry:
    """One row of a tenant's catalog."""

    package: PackageVersion
    restricted: bool = False
    actionable: bool = True
    latest_version: Version | None = None
    latest_id: int | None = None

    @property
    def update_available(self) -> bool:
        return self.latest_version is not None and self.package.version < self.latest_version

    def to_dict(self) -> dict:
        pkg = self.package
        return {
            "id": pkg.id,
            "machineName": pkg.name,
            "version": str(pkg.version),
            "title": pkg.title,
            "description": pkg.description,
            "categories": list(pkg.categories),
            "keywords": list(pkg.keywords),
            "icon": pkg.icon_ref,
            "provenance": pkg.provenance.value,
            "restricted": self.restricted,
            "actionable": self.actionable,
            "latestVersion": str(self.latest_version) if self.latest_version else None,
            "latestId": self.latest_id,
            "updateAvailable": self.update_available,
        }


@dataclass
class LoadItem:
    """One entry of a load manifest, in load order."""

    package: PackageVersion
    archive_ref: str | None
    extracted_root: str | None
    js: list[str] = field(default_factory=list)
    css: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.package.id,
            "machineName": self.package.name,
            "version": str(self.package.version),
            "archiveRef": self.archive_ref,
            "extractedRoot": self.extracted_root,
            "js": list(self.js),
            "css": list(self.css),
        }


@dataclass
class LibraryOutcome:
    """What happened to one library of an installed archive."""

    package_id: int
    identity: Identity
    status: str  # installed, unchanged, replaced

    def to_dict(self) -> dict:
        return {
            "id": self.package_id,
            "machineName": self.identity.name,
            "version": str(self.identity.version),
            "status": self.status,
        }


@dataclass
class InstallResult:
    """Result of an install. Failures raise instead."""

    success: bool
    package_id: int
    identity: Identity
    status: str
    message: str
    libraries: list[LibraryOutcome] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """True if any library row was written."""
        return any(lib.status != "unchanged" for lib in self.libraries)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "id": self.package_id,
            "machineName": self.identity.name,
            "version": str(self.identity.version),
            "status": self.status,
            "message": self.message,
            "libraries": [lib.to_dict() for lib in self.libraries],
        }


@dataclass
class SyncFailure:
    """A mirror entry that could not be synced."""

    name: str
    error: str
    code: str = "registry_error"


@dataclass
class SyncReport:
    """Outcome of one Mirror Sync run."""

    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    failed: list[SyncFailure] = field(default_factory=list)
    skipped: bool = False
    cancelled: bool = False
    listing_error: str | None = None
    started_at: str = ""
    finished_at: str = ""

    @property
    def ok(self) -> bool:
        return not self.failed and self.listing_error is None and not self.skipped

    def to_dict(self) -> dict:
        return {
            "added": list(self.added),
            "updated": list(self.updated),
            "unchanged": list(self.unchanged),
            "failed": [
                {"name": f.name, "error": f.error, "code": f.code} for f in self.failed
            ],
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "listing_error": self.listing_error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
