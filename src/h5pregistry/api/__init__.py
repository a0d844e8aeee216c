"""HTTP API for the registry."""

from h5pregistry.api.app import create_app, run_server

__all__ = ["create_app", "run_server"]
