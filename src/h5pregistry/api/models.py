"""Pydantic models for the HTTP API."""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class PackageModel(BaseModel):
    """A stored package version."""

    id: int
    name: str
    version: str
    majorVersion: int
    minorVersion: int
    patchVersion: int
    title: str = ""
    description: str = ""
    categories: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    runnable: bool = False
    provenance: str
    owningTenantId: Optional[str] = None
    archiveRef: Optional[str] = None
    extractedRoot: Optional[str] = None
    iconRef: Optional[str] = None
    coreApi: str = "1.0"
    contentHash: str
    createdAt: str = ""
    updatedAt: str = ""


class PackageDetailModel(PackageModel):
    """A package version with its outgoing edges and dependents."""

    dependencies: List[Dict[str, object]] = Field(default_factory=list)
    dependents: List[str] = Field(default_factory=list)


class CatalogEntryModel(BaseModel):
    """One entry of a tenant catalog."""

    id: int
    machineName: str
    version: str
    title: str = ""
    description: str = ""
    categories: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    icon: Optional[str] = None
    provenance: str
    restricted: bool = False
    actionable: bool = True
    latestVersion: Optional[str] = None
    latestId: Optional[int] = None
    updateAvailable: bool = False


class CatalogResponse(BaseModel):
    tenant: str
    generation: int = Field(..., description="Store generation the catalog reflects")
    entries: List[CatalogEntryModel] = Field(default_factory=list)


class LoadItemModel(BaseModel):
    """One entry of a load manifest, in load order."""

    id: int
    machineName: str
    version: str
    archiveRef: Optional[str] = None
    extractedRoot: Optional[str] = None
    js: List[str] = Field(default_factory=list)
    css: List[str] = Field(default_factory=list)


class ResolveResponse(BaseModel):
    root: int
    edgeTypes: List[str]
    items: List[LoadItemModel] = Field(default_factory=list)


class LibraryOutcomeModel(BaseModel):
    id: int
    machineName: str
    version: str
    status: str


class InstallResponse(BaseModel):
    success: bool
    id: int
    machineName: str
    version: str
    status: str = Field(..., description="installed, unchanged or replaced")
    message: str
    libraries: List[LibraryOutcomeModel] = Field(default_factory=list)


class OverlayRequest(BaseModel):
    """Overlay update; omitted flags keep their current value."""

    enabled: Optional[bool] = None
    restricted: Optional[bool] = None
    reset: bool = Field(False, description="Drop the row and use provenance defaults")


class OverlayResponse(BaseModel):
    tenant: str
    id: int
    visible: bool
    enabled: bool = False
    restricted: bool = False


class HubInstallRequest(BaseModel):
    machineName: str = Field(..., min_length=1, description="Content type to fetch from the hub")


class PinRequest(BaseModel):
    id: int = Field(..., description="Package version the content was authored against")


class SyncFailureModel(BaseModel):
    name: str
    error: str
    code: str


class SyncReportModel(BaseModel):
    added: List[str] = Field(default_factory=list)
    updated: List[str] = Field(default_factory=list)
    unchanged: List[str] = Field(default_factory=list)
    failed: List[SyncFailureModel] = Field(default_factory=list)
    skipped: bool = False
    cancelled: bool = False
    listing_error: Optional[str] = None
    started_at: str = ""
    finished_at: str = ""


class SyncStatusModel(BaseModel):
    running: bool
    cursor: Dict[str, Optional[str]]
    last_report: Optional[SyncReportModel] = None


class HealthModel(BaseModel):
    status: str
    version: str
    db_connected: bool
    generation: int = 0
    package_count: int = 0
