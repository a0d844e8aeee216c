"""Package installer.

Handles:
- Validating an archive before anything is written
- Checking every bundled library against the identity rules
- Storing the archive and each library's extracted files as blobs
- Writing rows, dependency edges and owner overlays in one transaction

Design principles:
- Upstream versions are immutable: different content at the same identity
  is always a ConflictingReplacement
- Curated versions may be replaced by curated uploads, custom versions by
  the owning tenant only
- Identical content at an existing identity is a no-op
- Extracted roots are keyed by content hash, so a failed or concurrent
  replacement never damages the files of the version being replaced
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from h5pregistry.registry.blobstore import BlobStore, archive_key, library_root_key
from h5pregistry.registry.errors import (
    ConflictingReplacement,
    InvalidPackage,
    UnresolvedDependency,
)
from h5pregistry.registry.manifest import LibraryManifest, PackageArchive, read_archive
from h5pregistry.registry.models import (
    EdgeType,
    Identity,
    InstallResult,
    LibraryOutcome,
    PackageVersion,
    Provenance,
)
from h5pregistry.registry.store import PackageDraft, PackageStore, StoreSession

logger = logging.getLogger(__name__)

INSTALLED = "installed"
UNCHANGED = "unchanged"
REPLACED = "replaced"


def replacement_allowed(
    existing: PackageVersion,
    provenance: Provenance,
    owner_tenant_id: str | None,
) -> bool:
    """May `existing` be overwritten with different content?"""
    if existing.provenance is Provenance.CURATED and provenance is Provenance.CURATED:
        return True
    if existing.provenance is Provenance.CUSTOM and provenance is Provenance.CUSTOM:
        return existing.owning_tenant_id == owner_tenant_id
    return False


class IdentityLocks:
    """In-process lock table keyed by package identity.

    Locks for a set of identities are always taken in sorted order, so two
    installs sharing several identities cannot deadlock.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[Identity, threading.Lock] = {}

    def _lock_for(self, identity: Identity) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(identity, threading.Lock())

    @contextmanager
    def hold(self, identities) -> Iterator[None]:
        ordered = sorted(set(identities), key=lambda i: i.sort_key)
        acquired: list[threading.Lock] = []
        try:
            for identity in ordered:
                lock = self._lock_for(identity)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


@dataclass
class _Plan:
    """Planned write for one library."""

    library: LibraryManifest
    status: str
    existing: PackageVersion | None
    root_key: str


class PackageInstaller:
    """Installs package archives into the store.

    Usage:
        installer = PackageInstaller(store, blobs)
        result = installer.install(data, Provenance.CURATED)
        result = installer.install(data, Provenance.CUSTOM, owner_tenant_id="t1")
    """

    def __init__(self, store: PackageStore, blobs: BlobStore, locks: IdentityLocks | None = None):
        self.store = store
        self.blobs = blobs
        self.locks = locks or IdentityLocks()

    def install(
        self,
        archive_bytes: bytes,
        provenance: Provenance | str,
        owner_tenant_id: str | None = None,
        discovery: dict | None = None,
    ) -> InstallResult:
        """Install every library in an archive.

        Args:
            archive_bytes: The .h5p zip
            provenance: Provenance of the upload
            owner_tenant_id: Owning tenant, required for custom only
            discovery: Optional catalog metadata for the main library
                (title, summary, description, categories, keywords, icon),
                as supplied by a hub listing

        Raises:
            InvalidPackage: Malformed archive or bad provenance/owner
            UnresolvedDependency: A dependency is nowhere to be found
            ConflictingReplacement: Replacement forbidden by provenance
        """
        provenance = _coerce_provenance(provenance)
        if provenance is Provenance.CUSTOM and not owner_tenant_id:
            raise InvalidPackage("Custom packages require an owning tenant")
        if provenance is not Provenance.CUSTOM and owner_tenant_id:
            raise InvalidPackage(
                f"Only custom packages may have an owner (got {provenance.value})"
            )

        archive = read_archive(archive_bytes)
        identities = [lib.identity for lib in archive.libraries]

        with self.locks.hold(identities):
            return self._install_locked(
                archive, archive_bytes, provenance, owner_tenant_id, discovery or {}
            )

    def uninstall(self, package_id: int) -> PackageVersion:
        """Delete an unreferenced version and its blobs.

        Raises:
            PackageNotFound: If the id does not exist
            ReferencedVersionDeletion: If edges or content pins reference it
        """
        package = self.store.get_by_id(package_id)
        with self.locks.hold([package.identity]):
            with self.store.transaction() as tx:
                package = tx.delete(package_id)
                archive_orphaned = bool(package.archive_ref) and not tx.archive_in_use(
                    package.archive_ref
                )

        if package.extracted_root:
            self.blobs.delete_prefix(package.extracted_root)
        if archive_orphaned:
            self.blobs.delete_blob(package.archive_ref)
        logger.info(f"Uninstalled {package.identity}")
        return package

    def _install_locked(
        self,
        archive: PackageArchive,
        archive_bytes: bytes,
        provenance: Provenance,
        owner_tenant_id: str | None,
        discovery: dict,
    ) -> InstallResult:
        with self.store.session() as s:
            plans = self._plan(s, archive, provenance, owner_tenant_id)

        written: list[str] = []
        archive_ref = archive_key(archive.sha256)
        try:
            if any(p.status != UNCHANGED for p in plans):
                if not self.blobs.exists(archive_ref):
                    self.blobs.put_blob(archive_ref, archive_bytes)
                    written.append(archive_ref)
                for plan in plans:
                    if plan.status != UNCHANGED:
                        written.append(self._store_files(plan))

            with self.store.transaction() as tx:
                # Re-plan under the database write lock; another process may
                # have written one of these identities since the read above.
                plans = self._plan(tx, archive, provenance, owner_tenant_id)
                for plan in plans:
                    if plan.status != UNCHANGED and plan.root_key not in written:
                        written.append(self._store_files(plan))
                outcomes = self._write(
                    tx, archive, plans, archive_ref, provenance, owner_tenant_id, discovery
                )
        except Exception:
            for key in written:
                self._discard(key)
            raise

        for plan in plans:
            if plan.status == REPLACED and plan.existing.extracted_root:
                if plan.existing.extracted_root != plan.root_key:
                    self.blobs.delete_prefix(plan.existing.extracted_root)

        main_outcome = next(o for o in outcomes if o.identity == archive.main.identity)
        changed = [o for o in outcomes if o.status != UNCHANGED]
        message = (
            f"{main_outcome.status.capitalize()} {main_outcome.identity} "
            f"({len(changed)} of {len(outcomes)} libraries written)"
        )
        logger.info(message)
        return InstallResult(
            success=True,
            package_id=main_outcome.package_id,
            identity=main_outcome.identity,
            status=main_outcome.status,
            message=message,
            libraries=outcomes,
        )

    def _plan(
        self,
        session: StoreSession,
        archive: PackageArchive,
        provenance: Provenance,
        owner_tenant_id: str | None,
    ) -> list[_Plan]:
        plans = []
        for lib in sorted(archive.libraries, key=lambda lib: lib.identity.sort_key):
            content_hash = lib.content_hash
            existing = session.get_by_identity(lib.name, lib.version)
            if existing is None:
                status = INSTALLED
            elif existing.content_hash == content_hash:
                status = UNCHANGED
            elif replacement_allowed(existing, provenance, owner_tenant_id):
                status = REPLACED
            else:
                raise ConflictingReplacement(
                    f"Stored {existing.provenance.value} version has different content; "
                    f"{provenance.value} upload may not replace it",
                    str(lib.identity),
                )

            for dep in lib.dependencies:
                if archive.get(dep.name, dep.major, dep.minor) is not None:
                    continue
                if session.find_latest_patch(dep.name, dep.major, dep.minor) is None:
                    raise UnresolvedDependency(
                        f"Dependency {dep} is neither bundled nor installed",
                        str(lib.identity),
                    )

            plans.append(
                _Plan(
                    library=lib,
                    status=status,
                    existing=existing,
                    root_key=library_root_key(lib.name, str(lib.version), content_hash),
                )
            )
        return plans

    def _store_files(self, plan: _Plan) -> str:
        for rel_path, data in plan.library.files.items():
            self.blobs.put_blob(f"{plan.root_key}/{rel_path}", data)
        return plan.root_key

    def _discard(self, key: str) -> None:
        try:
            self.blobs.delete_prefix(key)
        except OSError as e:
            logger.warning(f"Could not clean up blob {key}: {e}")

    def _write(
        self,
        tx: StoreSession,
        archive: PackageArchive,
        plans: list[_Plan],
        archive_ref: str,
        provenance: Provenance,
        owner_tenant_id: str | None,
        discovery: dict,
    ) -> list[LibraryOutcome]:
        ids: dict[Identity, int] = {}
        outcomes = []

        for plan in plans:
            lib = plan.library
            is_main = lib.identity == archive.main.identity
            draft = self._draft(plan, archive_ref, provenance, owner_tenant_id, discovery if is_main else {})
            package_id, status = tx.put(draft)
            ids[lib.identity] = package_id
            outcomes.append(LibraryOutcome(package_id, lib.identity, status))

            stored = tx.get_by_id(package_id)
            if stored.provenance is Provenance.CUSTOM and stored.owning_tenant_id == owner_tenant_id:
                tx.ensure_overlay_enabled(owner_tenant_id, package_id)

        for plan in plans:
            lib = plan.library
            edges = set()
            for dep in lib.dependencies:
                bundled = archive.get(dep.name, dep.major, dep.minor)
                if bundled is not None:
                    target_id = ids[bundled.identity]
                else:
                    target_id = tx.find_latest_patch(dep.name, dep.major, dep.minor).id
                edges.add((target_id, dep.edge_type))

            from_id = ids[lib.identity]
            current = {(e.to_id, e.edge_type) for e in tx.edges_from(from_id)}
            if current != edges:
                tx.replace_edges(from_id, sorted(edges, key=_edge_sort_key))

        return outcomes

    def _draft(
        self,
        plan: _Plan,
        archive_ref: str,
        provenance: Provenance,
        owner_tenant_id: str | None,
        discovery: dict,
    ) -> PackageDraft:
        lib = plan.library
        icon_ref = f"{plan.root_key}/{lib.icon_path}" if lib.icon_path else discovery.get("icon")
        return PackageDraft(
            name=lib.name,
            version=lib.version,
            provenance=provenance,
            content_hash=lib.content_hash,
            title=discovery.get("title") or lib.title,
            description=(
                discovery.get("description") or discovery.get("summary") or lib.description
            ),
            categories=list(discovery.get("categories") or lib.categories),
            keywords=list(discovery.get("keywords") or lib.keywords),
            runnable=lib.runnable,
            owning_tenant_id=owner_tenant_id if provenance is Provenance.CUSTOM else None,
            archive_ref=archive_ref,
            extracted_root=plan.root_key,
            icon_ref=icon_ref,
            core_api=lib.core_api,
            metadata=lib.metadata,
        )


def _edge_sort_key(edge: tuple[int, EdgeType]) -> tuple:
    return (edge[0], edge[1].value)


def _coerce_provenance(value: Provenance | str) -> Provenance:
    if isinstance(value, Provenance):
        return value
    try:
        return Provenance(str(value).lower())
    except ValueError:
        valid = [p.value for p in Provenance]
        raise InvalidPackage(f"Invalid provenance '{value}'. Must be one of: {valid}") from None
