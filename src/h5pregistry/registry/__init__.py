"""Package registry core: store, resolver, installer, mirror and catalog."""

from h5pregistry.registry.authz import Authorizer, StaticAuthorizer
from h5pregistry.registry.blobstore import BlobNotFound, BlobStore, LocalBlobStore
from h5pregistry.registry.catalog import CatalogMerger, CatalogSnapshot, merge
from h5pregistry.registry.errors import (
    ConflictingReplacement,
    DependencyCycleSuspected,
    InvalidPackage,
    PackageNotFound,
    ReferencedVersionDeletion,
    RegistryError,
    TenantScopeViolation,
    UnresolvedDependency,
    UpstreamFetchFailed,
)
from h5pregistry.registry.hub_client import HubEntry, HubListing, UpstreamClient
from h5pregistry.registry.hub_registry import HubRegistry
from h5pregistry.registry.installer import PackageInstaller
from h5pregistry.registry.mirror import MirrorScheduler, MirrorSync
from h5pregistry.registry.models import (
    CatalogEntry,
    EdgeType,
    Identity,
    InstallResult,
    LoadItem,
    PackageVersion,
    Provenance,
    SyncReport,
    Version,
)
from h5pregistry.registry.overlay import TenantOverlayService
from h5pregistry.registry.resolver import DependencyResolver
from h5pregistry.registry.store import PackageDraft, PackageStore

__all__ = [
    "Authorizer",
    "BlobNotFound",
    "BlobStore",
    "CatalogEntry",
    "CatalogMerger",
    "CatalogSnapshot",
    "ConflictingReplacement",
    "DependencyCycleSuspected",
    "DependencyResolver",
    "EdgeType",
    "HubEntry",
    "HubListing",
    "HubRegistry",
    "Identity",
    "InstallResult",
    "InvalidPackage",
    "LoadItem",
    "LocalBlobStore",
    "MirrorScheduler",
    "MirrorSync",
    "PackageDraft",
    "PackageInstaller",
    "PackageNotFound",
    "PackageStore",
    "PackageVersion",
    "Provenance",
    "ReferencedVersionDeletion",
    "RegistryError",
    "StaticAuthorizer",
    "SyncReport",
    "TenantOverlayService",
    "TenantScopeViolation",
    "UnresolvedDependency",
    "UpstreamClient",
    "UpstreamFetchFailed",
    "Version",
    "merge",
]
