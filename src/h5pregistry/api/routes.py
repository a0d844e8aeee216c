"""Registry API routes (mounted at /api/v1)."""

from __future__ import annotations

import logging
import mimetypes
from typing import List, Optional

from fastapi import APIRouter, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import Response

from h5pregistry import __version__
from h5pregistry.api.models import (
    CatalogEntryModel,
    CatalogResponse,
    HealthModel,
    HubInstallRequest,
    InstallResponse,
    LoadItemModel,
    OverlayRequest,
    OverlayResponse,
    PackageDetailModel,
    PackageModel,
    PinRequest,
    ResolveResponse,
    SyncReportModel,
    SyncStatusModel,
)
from h5pregistry.registry.blobstore import BlobNotFound
from h5pregistry.registry.errors import PackageNotFound
from h5pregistry.registry.models import EdgeType, Provenance, Version
from h5pregistry.registry.store import LATEST
from h5pregistry.services import RegistryServices

# Keep typing imports in namespace for Pydantic annotation evaluation
__typing_imports__ = (List, Optional)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")


def _services(request: Request) -> RegistryServices:
    return request.app.state.services


def _edge_types(value: Optional[str]) -> frozenset:
    try:
        return EdgeType.parse_csv(value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/health", response_model=HealthModel)
def health_check(request: Request):
    """Health check endpoint."""
    services = _services(request)
    try:
        generation = services.store.generation()
        count = len(services.store.list_all())
        db_connected = True
    except Exception as e:
        logger.error(f"Health check database probe failed: {e}")
        generation, count, db_connected = 0, 0, False

    return HealthModel(
        status="healthy" if db_connected else "degraded",
        version=__version__,
        db_connected=db_connected,
        generation=generation,
        package_count=count,
    )


@router.get("/catalog", response_model=CatalogResponse)
def get_catalog(
    request: Request,
    tenant: str = Query(..., description="Tenant id"),
    user: Optional[str] = Query(None, description="Requesting user id"),
    latest_only: bool = Query(False, description="Only the latest version per name"),
):
    """Merged, tenant-scoped catalog of runnable packages."""
    services = _services(request)
    entries = services.catalog.catalog(tenant, user_id=user, latest_only=latest_only)
    return CatalogResponse(
        tenant=tenant,
        generation=services.catalog.snapshot().generation,
        entries=[CatalogEntryModel(**e.to_dict()) for e in entries],
    )


@router.get("/resolve", response_model=ResolveResponse)
def resolve(
    request: Request,
    version: int = Query(..., description="Root package version id"),
    edgeTypes: Optional[str] = Query(None, description="Comma-separated edge types"),
):
    """Ordered asset-load list for a package version."""
    services = _services(request)
    edge_types = _edge_types(edgeTypes)
    items = services.resolver.load_manifest(version, edge_types)
    return ResolveResponse(
        root=version,
        edgeTypes=sorted(e.value for e in edge_types),
        items=[LoadItemModel(**item.to_dict()) for item in items],
    )


@router.get("/content/{content_id}/resolve", response_model=ResolveResponse)
def resolve_content(
    request: Request,
    content_id: str,
    edgeTypes: Optional[str] = Query(None, description="Comma-separated edge types"),
):
    """Load list for content, against the version it was authored with."""
    services = _services(request)
    edge_types = _edge_types(edgeTypes)
    package = services.store.pinned_version(content_id)
    if package is None:
        raise PackageNotFound(f"Content {content_id} is not pinned to any version")
    items = services.resolver.load_manifest(package.id, edge_types)
    return ResolveResponse(
        root=package.id,
        edgeTypes=sorted(e.value for e in edge_types),
        items=[LoadItemModel(**item.to_dict()) for item in items],
    )


@router.put("/content/{content_id}/pin")
def pin_content(request: Request, content_id: str, body: PinRequest):
    """Record the version a content item was authored against."""
    _services(request).store.pin_content(content_id, body.id)
    return {"content_id": content_id, "id": body.id}


@router.delete("/content/{content_id}/pin")
def unpin_content(
    request: Request,
    content_id: str,
    package_id: Optional[int] = Query(None, alias="id"),
):
    """Remove a content item's pins (all of them unless id is given)."""
    removed = _services(request).store.unpin_content(content_id, package_id)
    return {"content_id": content_id, "removed": removed}


@router.post("/hub/install", response_model=InstallResponse)
def install_from_hub(request: Request, body: HubInstallRequest):
    """Download one content type from the upstream hub and install it."""
    result = _services(request).mirror.install_one(body.machineName)
    return InstallResponse(**result.to_dict())


@router.post("/install", response_model=InstallResponse)
def install_package(
    request: Request,
    archive: UploadFile = File(..., description="Package archive (.h5p)"),
    provenance: str = Form(..., description="upstream, curated or custom"),
    owner_tenant: Optional[str] = Form(None, description="Owning tenant for custom"),
):
    """Install an uploaded package archive."""
    services = _services(request)
    data = archive.file.read()
    result = services.installer.install(data, provenance, owner_tenant_id=owner_tenant)
    return InstallResponse(**result.to_dict())


@router.get("/packages", response_model=List[PackageModel])
def list_packages(
    request: Request,
    name: Optional[str] = Query(None),
    provenance: Optional[str] = Query(None),
):
    """List stored package versions."""
    services = _services(request)
    packages = services.store.list_versions(name) if name else services.store.list_all()
    if provenance:
        try:
            wanted = Provenance(provenance)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid provenance: {provenance}")
        packages = [p for p in packages if p.provenance is wanted]
    return [PackageModel(**p.to_dict()) for p in packages]


@router.get("/packages/by-name/{name}", response_model=PackageModel)
def get_package_by_name(
    request: Request,
    name: str,
    version: str = Query(LATEST, description="Exact version (1.2.3) or latest"),
):
    """Look up one version of a machine name.

    "latest" is the highest version the configured host runtime can run.
    """
    services = _services(request)
    try:
        package = services.store.get(name, version, host=services.settings.host_runtime)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return PackageModel(**package.to_dict())


@router.get("/packages/{package_id}", response_model=PackageDetailModel)
def get_package(request: Request, package_id: int):
    """One package version with its edges and dependents."""
    services = _services(request)
    with services.store.session() as s:
        package = s.get_by_id(package_id)
        if package is None:
            raise PackageNotFound(f"No package version with id {package_id}")
        edges = s.edges_from(package_id)
        targets = s.get_many(e.to_id for e in edges)
        dependents = s.dependents(package_id)

    return PackageDetailModel(
        **package.to_dict(),
        dependencies=[
            {
                "id": e.to_id,
                "identity": str(targets[e.to_id].identity),
                "edgeType": e.edge_type.value,
            }
            for e in edges
        ],
        dependents=[str(d.identity) for d in dependents],
    )


@router.delete("/packages/{package_id}")
def delete_package(request: Request, package_id: int):
    """Delete an unreferenced package version."""
    package = _services(request).installer.uninstall(package_id)
    return {"deleted": package_id, "identity": str(package.identity)}


@router.put("/tenants/{tenant}/overlay/{package_id}", response_model=OverlayResponse)
def set_overlay(request: Request, tenant: str, package_id: int, body: OverlayRequest):
    """Change a tenant's enabled/restricted state for one version."""
    overlays = _services(request).overlays
    if body.reset:
        state = overlays.reset(tenant, package_id)
    else:
        overlays.set(tenant, package_id, enabled=body.enabled, restricted=body.restricted)
        state = overlays.effective(tenant, package_id)

    if state is None:
        return OverlayResponse(tenant=tenant, id=package_id, visible=False)
    return OverlayResponse(
        tenant=tenant,
        id=package_id,
        visible=True,
        enabled=state.enabled,
        restricted=state.restricted,
    )


@router.post("/sync", response_model=SyncReportModel)
def trigger_sync(request: Request):
    """Run a mirror sync now; skipped if one is already running."""
    report = _services(request).mirror.sync()
    return SyncReportModel(**report.to_dict())


@router.post("/sync/cancel")
def cancel_sync(request: Request):
    """Ask a running sync to stop before its next entry."""
    return {"cancelled": _services(request).mirror.cancel()}


@router.get("/sync/status", response_model=SyncStatusModel)
def sync_status(request: Request):
    """Mirror cursor and the last report."""
    return SyncStatusModel(**_services(request).mirror.status())


@router.get("/libraries/{dir_name}/{path:path}")
def get_library_asset(request: Request, dir_name: str, path: str):
    """Serve one extracted file of a library version."""
    services = _services(request)
    name, _, version_text = dir_name.rpartition("-")
    try:
        version = Version.parse(version_text)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown library: {dir_name}")
    if not name:
        raise HTTPException(status_code=404, detail=f"Unknown library: {dir_name}")

    package = services.store.get(name, version)
    if not package.extracted_root:
        raise PackageNotFound(f"No extracted files for {package.identity}")
    try:
        data = services.blobs.get_blob(f"{package.extracted_root}/{path}")
    except (BlobNotFound, ValueError):
        raise HTTPException(status_code=404, detail=f"File not found: {path}")

    media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type)
