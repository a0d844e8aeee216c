"""Error envelope handlers and logging setup for the HTTP app."""

from __future__ import annotations

import logging
import re

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from rich.console import Console
from rich.logging import RichHandler

from h5pregistry.registry.errors import RegistryError

logger = logging.getLogger(__name__)

# Hub registration form values that identify a site
_SECRET_PATTERNS = [
    re.compile(r"(uuid=)[^&\s]+"),
    re.compile(r"(\"uuid\"\s*:\s*\")[^\"]+"),
    re.compile(r"(Bearer\s+)\S+"),
]


def scrub_secrets(text: str) -> str:
    """Mask site uuids and bearer tokens in a log line."""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(r"\1****", text)
    return text


class MaskingFilter(logging.Filter):
    """Log filter that masks site secrets."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = scrub_secrets(record.msg)
        return True


def setup_logging(level: str = "INFO", rich: bool = True) -> None:
    """Configure root logging with secret masking.

    Idempotent: repeated calls only adjust the level.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())

    if not any(isinstance(f, MaskingFilter) for f in root_logger.filters):
        if rich:
            handler: logging.Handler = RichHandler(
                console=Console(stderr=True), rich_tracebacks=True, show_path=False
            )
            handler.setFormatter(logging.Formatter("%(message)s"))
        else:
            handler = logging.StreamHandler()
            handler.setFormatter(
                logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
            )
        handler.addFilter(MaskingFilter())
        root_logger.addHandler(handler)
        root_logger.addFilter(MaskingFilter())

    for name in ["uvicorn", "uvicorn.access", "uvicorn.error"]:
        uv_logger = logging.getLogger(name)
        if not any(isinstance(f, MaskingFilter) for f in uv_logger.filters):
            uv_logger.addFilter(MaskingFilter())


def error_envelope(error: str, code: str, message: str, **extra) -> dict:
    body = {"error": error, "code": code, "message": message}
    body.update(extra)
    return body


def register_error_handlers(app: FastAPI) -> None:
    """Map registry and HTTP errors onto the JSON error envelope."""

    @app.exception_handler(RegistryError)
    async def registry_error_handler(request: Request, exc: RegistryError):
        if exc.http_status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.error_code}")
        body = exc.to_dict()
        dependents = getattr(exc, "dependents", None)
        if dependents is not None:
            body["dependents"] = dependents
            body["content_ids"] = exc.content_ids
        return JSONResponse(status_code=exc.http_status, content=body)

    @app.exception_handler(HTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=error_envelope("E_HTTP", "http_error", str(exc.detail)),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content=error_envelope(
                "E_VALIDATION",
                "validation_error",
                "Invalid request",
                detail=[
                    {"loc": list(e.get("loc", ())), "msg": e.get("msg", "")}
                    for e in exc.errors()
                ],
            ),
        )
