"""SQLite persistence for the registry."""

from h5pregistry.db.connection import get_connection
from h5pregistry.db.schema import SCHEMA_VERSION, get_schema_version, init_schema

__all__ = [
    "get_connection",
    "init_schema",
    "get_schema_version",
    "SCHEMA_VERSION",
]
