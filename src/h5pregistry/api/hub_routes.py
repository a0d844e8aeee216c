"""Hub-compatible routes.

Unauthenticated and shaped like the public content-type hub, so existing
hub clients can use this registry as their hub URL. Every route is also
served under /hub/v1, which lets one registry mirror another.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Form, Request
from fastapi.responses import Response

from h5pregistry.services import RegistryServices

__typing_imports__ = (Optional,)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/hub")


def _services(request: Request) -> RegistryServices:
    return request.app.state.services


@router.post("/register")
@router.post("/v1/sites")
def register_site(request: Request, uuid: Optional[str] = Form(None)):
    """Echo a site's uuid, or issue one to a new site."""
    return {"uuid": _services(request).hub.register(uuid)}


@router.post("/content-types/")
@router.post("/v1/content-types/")
def list_content_types(request: Request):
    """Latest runnable upstream and curated content types.

    Registration form fields sent by hub clients are accepted and ignored.
    """
    return {"contentTypes": _services(request).hub.content_types()}


@router.get("/content-types/{machine_name}")
@router.get("/v1/content-types/{machine_name}")
def download_content_type(request: Request, machine_name: str):
    """Archive of the latest version of a content type."""
    package, data = _services(request).hub.archive(machine_name)
    return Response(
        content=data,
        media_type="application/zip",
        headers={
            "Content-Disposition": f'attachment; filename="{package.identity.dir_name}.h5p"'
        },
    )
