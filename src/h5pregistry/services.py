"""Wiring of registry components from Settings.

Shared by the HTTP app and the CLI so both build the same object graph.
"""

from __future__ import annotations

from dataclasses import dataclass

from h5pregistry.config import Settings
from h5pregistry.registry.authz import Authorizer, StaticAuthorizer
from h5pregistry.registry.blobstore import BlobStore, LocalBlobStore
from h5pregistry.registry.catalog import CatalogMerger
from h5pregistry.registry.hub_client import UpstreamClient
from h5pregistry.registry.hub_registry import HubRegistry
from h5pregistry.registry.installer import PackageInstaller
from h5pregistry.registry.mirror import MirrorSync
from h5pregistry.registry.overlay import TenantOverlayService
from h5pregistry.registry.resolver import DependencyResolver
from h5pregistry.registry.store import PackageStore


@dataclass
class RegistryServices:
    """Every registry component, built once per process."""

    settings: Settings
    store: PackageStore
    blobs: BlobStore
    installer: PackageInstaller
    resolver: DependencyResolver
    overlays: TenantOverlayService
    catalog: CatalogMerger
    mirror: MirrorSync
    hub: HubRegistry

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        upstream: UpstreamClient | None = None,
        authorizer: Authorizer | None = None,
        blobs: BlobStore | None = None,
    ) -> "RegistryServices":
        settings.ensure_dirs()
        store = PackageStore(settings.db_path)
        store.init_schema()
        blobs = blobs or LocalBlobStore(settings.blob_root)
        installer = PackageInstaller(store, blobs)
        upstream = upstream or UpstreamClient(
            hub_url=settings.hub_url,
            site_uuid=settings.site_uuid,
            platform_name=settings.platform_name,
            timeout=settings.hub_timeout,
            download_timeout=settings.download_timeout,
        )
        return cls(
            settings=settings,
            store=store,
            blobs=blobs,
            installer=installer,
            resolver=DependencyResolver(
                store,
                max_depth=settings.max_resolve_depth,
                asset_base_url=settings.asset_base_url,
            ),
            overlays=TenantOverlayService(store),
            catalog=CatalogMerger(
                store, authorizer or StaticAuthorizer(settings.privileged_users)
            ),
            mirror=MirrorSync(store, installer, upstream),
            hub=HubRegistry(store, blobs, asset_base_url=settings.asset_base_url),
        )

    def close(self) -> None:
        self.mirror.client.close()
