"""Hub-compatible view of the local store.

Lets existing hub clients point at this registry instead of the public hub.
The listing shape is fixed by those clients. Custom packages are never
exposed here.
"""

from __future__ import annotations

import logging
import uuid as uuid_lib

from h5pregistry.registry.blobstore import BlobNotFound, BlobStore
from h5pregistry.registry.errors import PackageNotFound
from h5pregistry.registry.models import PackageVersion, Provenance
from h5pregistry.registry.store import PackageStore

logger = logging.getLogger(__name__)

HUB_PROVENANCES = frozenset({Provenance.UPSTREAM, Provenance.CURATED})


class HubRegistry:
    """Serves hub-shaped listings and archives.

    Usage:
        hub = HubRegistry(store, blobs, asset_base_url="/api/v1/libraries")
        hub.content_types()
        hub.archive("H5P.Quiz")
    """

    def __init__(self, store: PackageStore, blobs: BlobStore, asset_base_url: str = ""):
        self.store = store
        self.blobs = blobs
        self.asset_base_url = asset_base_url.rstrip("/")

    def register(self, site_uuid: str | None = None) -> str:
        """Echo a known site uuid or issue a new one."""
        if site_uuid:
            return site_uuid
        issued = str(uuid_lib.uuid4())
        logger.info("Issued new site uuid")
        return issued

    def latest_versions(self) -> list[PackageVersion]:
        """Highest runnable upstream/curated version per name."""
        latest: dict[str, PackageVersion] = {}
        for package in self.store.list_runnable(HUB_PROVENANCES):
            best = latest.get(package.name)
            if best is None or package.version > best.version:
                latest[package.name] = package
        return [latest[name] for name in sorted(latest)]

    def content_types(self) -> list[dict]:
        return [self._entry(p) for p in self.latest_versions()]

    def archive(self, machine_name: str) -> tuple[PackageVersion, bytes]:
        """Archive bytes of the latest hub-visible version.

        Raises:
            PackageNotFound: If no such version or its archive is gone
        """
        for package in self.latest_versions():
            if package.name == machine_name:
                break
        else:
            raise PackageNotFound(f"Content type not found: {machine_name}")

        if not package.archive_ref:
            raise PackageNotFound(f"No archive stored for {package.identity}")
        try:
            return package, self.blobs.get_blob(package.archive_ref)
        except BlobNotFound:
            raise PackageNotFound(f"Archive missing for {package.identity}") from None

    def _icon_url(self, package: PackageVersion) -> str | None:
        icon = package.icon_ref
        root = package.extracted_root
        if icon and root and icon.startswith(root + "/"):
            return f"{self.asset_base_url}/{package.identity.dir_name}/{icon[len(root) + 1:]}"
        return icon

    def _entry(self, package: PackageVersion) -> dict:
        summary = package.description.split("\n", 1)[0] if package.description else ""
        return {
            "id": package.name,
            "version": {
                "major": package.major,
                "minor": package.minor,
                "patch": package.patch,
            },
            "coreApiVersionNeeded": {
                "major": package.core_api[0],
                "minor": package.core_api[1],
            },
            "title": package.title,
            "summary": summary,
            "description": package.description,
            "icon": self._icon_url(package),
            "createdAt": package.created_at,
            "updatedAt": package.updated_at,
            "isRecommended": False,
            "popularity": 0,
            "screenshots": [],
            "license": package.metadata.get("license"),
            "owner": package.metadata.get("author", ""),
            "example": "",
            "tutorial": "",
            "keywords": list(package.keywords),
            "categories": list(package.categories),
        }
