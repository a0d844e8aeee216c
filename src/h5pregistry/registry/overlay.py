"""Tenant overlay service.

Per-tenant enable/restrict state on top of provenance defaults:
- upstream and curated versions are enabled and unrestricted for everyone
- a custom version is enabled for its owner and invisible to everyone else

An overlay row only ever narrows or re-widens what a tenant sees; it can
never make another tenant's custom package visible.
"""

from __future__ import annotations

import logging

from h5pregistry.registry.errors import PackageNotFound, TenantScopeViolation
from h5pregistry.registry.models import OverlayState, PackageVersion, Provenance
from h5pregistry.registry.store import PackageStore, StoreSession

logger = logging.getLogger(__name__)


def default_state(tenant_id: str, package: PackageVersion) -> OverlayState | None:
    """Provenance default for a tenant; None means not visible at all."""
    if package.provenance is Provenance.CUSTOM and package.owning_tenant_id != tenant_id:
        return None
    return OverlayState(tenant_id, package.id, enabled=True, restricted=False)


class TenantOverlayService:
    """Reads and writes tenant overlay rows.

    Usage:
        overlays = TenantOverlayService(store)
        overlays.disable("t1", package_id)
        overlays.effective("t1", package_id)
    """

    def __init__(self, store: PackageStore):
        self.store = store

    def enable(self, tenant_id: str, package_id: int) -> OverlayState:
        return self._update(tenant_id, package_id, enabled=True)

    def disable(self, tenant_id: str, package_id: int) -> OverlayState:
        return self._update(tenant_id, package_id, enabled=False)

    def restrict(self, tenant_id: str, package_id: int) -> OverlayState:
        return self._update(tenant_id, package_id, restricted=True)

    def unrestrict(self, tenant_id: str, package_id: int) -> OverlayState:
        return self._update(tenant_id, package_id, restricted=False)

    def set(
        self,
        tenant_id: str,
        package_id: int,
        enabled: bool | None = None,
        restricted: bool | None = None,
    ) -> OverlayState:
        """Set either flag; None leaves it as it currently is."""
        return self._update(tenant_id, package_id, enabled=enabled, restricted=restricted)

    def reset(self, tenant_id: str, package_id: int) -> OverlayState | None:
        """Drop the overlay row, falling back to the provenance default.

        The owner's row on a custom package is recreated enabled, since the
        owner must always be able to see its own upload.
        """
        with self.store.transaction() as tx:
            package = self._check_scope(tx, tenant_id, package_id)
            tx.delete_overlay(tenant_id, package_id)
            if package.provenance is Provenance.CUSTOM:
                tx.ensure_overlay_enabled(tenant_id, package_id)
        logger.info(f"Reset overlay for tenant {tenant_id} on {package.identity}")
        return self.effective(tenant_id, package_id)

    def effective(self, tenant_id: str, package_id: int) -> OverlayState | None:
        """Overlay row if present, else the provenance default.

        Returns None when the package is invisible to the tenant.
        """
        with self.store.session() as s:
            package = s.get_by_id(package_id)
            if package is None:
                raise PackageNotFound(f"No package version with id {package_id}")
            default = default_state(tenant_id, package)
            if default is None:
                return None
            return s.get_overlay(tenant_id, package_id) or default

    def _update(
        self,
        tenant_id: str,
        package_id: int,
        enabled: bool | None = None,
        restricted: bool | None = None,
    ) -> OverlayState:
        with self.store.transaction() as tx:
            package = self._check_scope(tx, tenant_id, package_id)
            current = tx.get_overlay(tenant_id, package_id) or default_state(tenant_id, package)
            state = OverlayState(
                tenant_id=tenant_id,
                package_version_id=package_id,
                enabled=current.enabled if enabled is None else enabled,
                restricted=current.restricted if restricted is None else restricted,
            )
            tx.set_overlay(state)
        logger.info(
            f"Overlay {tenant_id}/{package.identity}: "
            f"enabled={state.enabled} restricted={state.restricted}"
        )
        return state

    def _check_scope(self, session: StoreSession, tenant_id: str, package_id: int) -> PackageVersion:
        package = session.get_by_id(package_id)
        if package is None:
            raise PackageNotFound(f"No package version with id {package_id}")
        if package.provenance is Provenance.CUSTOM and package.owning_tenant_id != tenant_id:
            raise TenantScopeViolation(
                f"Tenant {tenant_id} cannot change another tenant's custom package",
                str(package.identity),
            )
        return package
