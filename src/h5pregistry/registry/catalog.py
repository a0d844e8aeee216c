"""Catalog merging.

A tenant's catalog is the union of three sources of runnable versions:
upstream, curated and the tenant's own custom uploads, filtered through the
tenant's overlay rows.

merge() is a pure function over those inputs. CatalogMerger feeds it from
a snapshot of the shared (upstream + curated) rows, rebuilt and swapped
whenever the store's catalog generation moves, plus per-call reads of the
tenant's custom rows and overlay.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone

from h5pregistry.registry.authz import Authorizer
from h5pregistry.registry.models import (
    CatalogEntry,
    OverlayState,
    PackageVersion,
    Provenance,
)
from h5pregistry.registry.store import PackageStore

logger = logging.getLogger(__name__)

_PROVENANCE_ORDER = {Provenance.UPSTREAM: 0, Provenance.CURATED: 1, Provenance.CUSTOM: 2}


def merge(
    upstream: list[PackageVersion],
    curated: list[PackageVersion],
    custom_for_tenant: list[PackageVersion],
    overlay: dict[int, OverlayState],
    privileged: bool = False,
    latest_only: bool = False,
) -> list[CatalogEntry]:
    """Merge the three sources into one tenant catalog.

    Args:
        upstream: Runnable upstream versions
        curated: Runnable curated versions
        custom_for_tenant: Runnable custom versions owned by the tenant
        overlay: The tenant's overlay rows by package id
        privileged: Whether the requesting user may act on restricted entries
        latest_only: Keep only the latest visible version per
            (provenance, name)

    Returns:
        Entries sorted by name, provenance, then version (highest first)
    """
    entries: list[CatalogEntry] = []
    for package in [*upstream, *curated, *custom_for_tenant]:
        if not package.runnable:
            continue
        state = overlay.get(package.id)
        if state is not None and not state.enabled:
            continue
        restricted = state is not None and state.restricted
        entries.append(
            CatalogEntry(
                package=package,
                restricted=restricted,
                actionable=privileged or not restricted,
            )
        )

    latest: dict[tuple[Provenance, str], PackageVersion] = {}
    for entry in entries:
        key = (entry.package.provenance, entry.package.name)
        best = latest.get(key)
        if best is None or entry.package.version > best.version:
            latest[key] = entry.package

    for entry in entries:
        best = latest[(entry.package.provenance, entry.package.name)]
        entry.latest_version = best.version
        entry.latest_id = best.id

    if latest_only:
        entries = [e for e in entries if e.latest_id == e.package.id]

    entries.sort(
        key=lambda e: (
            e.package.name,
            _PROVENANCE_ORDER[e.package.provenance],
            tuple(-n for n in (e.package.major, e.package.minor, e.package.patch)),
        )
    )
    return entries


@dataclass
class CatalogSnapshot:
    """Immutable view of shared catalog rows at one store generation."""

    generation: int
    upstream: tuple[PackageVersion, ...] = ()
    curated: tuple[PackageVersion, ...] = ()
    built_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class CatalogMerger:
    """Builds tenant catalogs.

    Usage:
        merger = CatalogMerger(store, StaticAuthorizer(settings.privileged_users))
        entries = merger.catalog("tenant-1", user_id="alice")
    """

    def __init__(self, store: PackageStore, authorizer: Authorizer | None = None):
        self.store = store
        self.authorizer = authorizer
        self._snapshot: CatalogSnapshot | None = None
        self._rebuild_lock = threading.Lock()
        self.rebuilds = 0

    def snapshot(self) -> CatalogSnapshot:
        """Current snapshot, rebuilt only if the generation moved."""
        generation = self.store.generation()
        current = self._snapshot
        if current is not None and current.generation == generation:
            return current

        with self._rebuild_lock:
            current = self._snapshot
            if current is not None and current.generation == generation:
                return current
            with self.store.session() as s:
                # Generation is read before the rows: a concurrent write
                # leaves this snapshot one generation behind, never ahead.
                generation = s.generation()
                upstream = s.list_runnable({Provenance.UPSTREAM})
                curated = s.list_runnable({Provenance.CURATED})
            snapshot = CatalogSnapshot(
                generation=generation,
                upstream=tuple(upstream),
                curated=tuple(curated),
            )
            self._snapshot = snapshot
            self.rebuilds += 1
            logger.debug(
                f"Catalog snapshot rebuilt at generation {generation} "
                f"({len(upstream)} upstream, {len(curated)} curated)"
            )
            return snapshot

    def catalog(
        self,
        tenant_id: str,
        user_id: str | None = None,
        latest_only: bool = False,
    ) -> list[CatalogEntry]:
        """Merged catalog for one tenant."""
        snapshot = self.snapshot()
        with self.store.session() as s:
            custom = s.list_runnable({Provenance.CUSTOM}, tenant_id=tenant_id)
            overlay = s.overlays_for_tenant(tenant_id)

        privileged = False
        if self.authorizer is not None:
            privileged = self.authorizer.is_privileged(tenant_id, user_id)

        return merge(
            list(snapshot.upstream),
            list(snapshot.curated),
            custom,
            overlay,
            privileged=privileged,
            latest_only=latest_only,
        )
