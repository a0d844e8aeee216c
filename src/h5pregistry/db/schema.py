"""Registry schema.

Tables:
- package_versions: one row per (name, major, minor, patch)
- dependency_edges: typed edges between package versions
- tenant_overlays: per-tenant enabled/restricted state
- mirror_cursors: one row per upstream mirror source
- content_pins: content items authored against a package version
- schema_meta: schema version and catalog generation counter
"""

import sqlite3

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS package_versions (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    major INTEGER NOT NULL,
    minor INTEGER NOT NULL,
    patch INTEGER NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    categories_json TEXT NOT NULL DEFAULT '[]',
    keywords_json TEXT NOT NULL DEFAULT '[]',
    runnable INTEGER NOT NULL DEFAULT 0,
    provenance TEXT NOT NULL
        CHECK (provenance IN ('upstream', 'curated', 'custom')),
    owning_tenant_id TEXT,
    archive_ref TEXT,
    extracted_root TEXT,
    icon_ref TEXT,
    core_api_major INTEGER NOT NULL DEFAULT 1,
    core_api_minor INTEGER NOT NULL DEFAULT 0,
    content_hash TEXT NOT NULL,
    metadata_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (name, major, minor, patch),
    CHECK ((provenance = 'custom') = (owning_tenant_id IS NOT NULL))
);

CREATE TABLE IF NOT EXISTS dependency_edges (
    id INTEGER PRIMARY KEY,
    from_id INTEGER NOT NULL REFERENCES package_versions(id),
    to_id INTEGER NOT NULL REFERENCES package_versions(id),
    edge_type TEXT NOT NULL
        CHECK (edge_type IN ('required-at-load', 'required-at-runtime', 'required-in-editor')),
    UNIQUE (from_id, to_id, edge_type),
    CHECK (from_id != to_id)
);

CREATE TABLE IF NOT EXISTS tenant_overlays (
    tenant_id TEXT NOT NULL,
    package_version_id INTEGER NOT NULL REFERENCES package_versions(id) ON DELETE CASCADE,
    enabled INTEGER NOT NULL DEFAULT 1,
    restricted INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (tenant_id, package_version_id)
);

CREATE TABLE IF NOT EXISTS mirror_cursors (
    source TEXT PRIMARY KEY,
    last_digest TEXT,
    last_synced_at TEXT,
    last_attempt_at TEXT,
    last_error TEXT
);

CREATE TABLE IF NOT EXISTS content_pins (
    content_id TEXT NOT NULL,
    package_version_id INTEGER NOT NULL REFERENCES package_versions(id),
    pinned_at TEXT NOT NULL,
    PRIMARY KEY (content_id, package_version_id)
);

CREATE INDEX IF NOT EXISTS idx_pv_name ON package_versions(name);
CREATE INDEX IF NOT EXISTS idx_pv_runnable ON package_versions(runnable, provenance);
CREATE INDEX IF NOT EXISTS idx_pv_owner ON package_versions(owning_tenant_id)
    WHERE owning_tenant_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_edges_from ON dependency_edges(from_id);
CREATE INDEX IF NOT EXISTS idx_edges_to ON dependency_edges(to_id);
CREATE INDEX IF NOT EXISTS idx_overlays_tenant ON tenant_overlays(tenant_id);
CREATE INDEX IF NOT EXISTS idx_pins_version ON content_pins(package_version_id);

INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('catalog_generation', '0');
"""


def init_schema(conn) -> None:
    """Create registry tables and record the schema version."""
    conn.executescript(SCHEMA_SQL)
    conn.execute(
        "INSERT OR REPLACE INTO schema_meta (key, value) VALUES (?, ?)",
        ("version", str(SCHEMA_VERSION)),
    )


def get_schema_version(conn) -> int | None:
    """Get current schema version, or None if not initialized."""
    try:
        cursor = conn.execute("SELECT value FROM schema_meta WHERE key = 'version'")
        row = cursor.fetchone()
        return int(row[0]) if row else None
    except sqlite3.OperationalError:
        return None
