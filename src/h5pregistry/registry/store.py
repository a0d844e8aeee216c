"""Package Store and Dependency Graph persistence.

Handles:
- Upserting package versions by identity
- Wholesale replacement of a version's dependency edges
- Reference-counted deletion (edges + content pins)
- Tenant overlay rows and mirror cursors
- The catalog generation counter bumped on every package write

Every public read opens its own connection, so readers never share state
and need no locking. Writes go through transaction(), which takes SQLite's
write lock up front (BEGIN IMMEDIATE) and rolls back on any exception.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator

from h5pregistry.db.connection import get_connection
from h5pregistry.db.schema import init_schema
from h5pregistry.registry.errors import PackageNotFound, ReferencedVersionDeletion
from h5pregistry.registry.models import (
    DependencyEdge,
    EdgeType,
    MirrorCursor,
    OverlayState,
    PackageVersion,
    Provenance,
    Version,
)

logger = logging.getLogger(__name__)

LATEST = "latest"

_PV_COLUMNS = """
    id, name, major, minor, patch, title, description, categories_json,
    keywords_json, runnable, provenance, owning_tenant_id, archive_ref,
    extracted_root, icon_ref, core_api_major, core_api_minor, content_hash,
    metadata_json, created_at, updated_at
"""


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class PackageDraft:
    """Everything needed to write a package_versions row."""

    name: str
    version: Version
    provenance: Provenance
    content_hash: str
    title: str = ""
    description: str = ""
    categories: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    runnable: bool = False
    owning_tenant_id: str | None = None
    archive_ref: str | None = None
    extracted_root: str | None = None
    icon_ref: str | None = None
    core_api: tuple[int, int] = (1, 0)
    metadata: dict = field(default_factory=dict)


class StoreSession:
    """Queries bound to one connection.

    Obtained from PackageStore.session() (reads) or
    PackageStore.transaction() (reads and writes in one unit of work).
    """

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    # --- Package versions ---

    def get_by_id(self, package_id: int) -> PackageVersion | None:
        row = self._conn.execute(
            f"SELECT {_PV_COLUMNS} FROM package_versions WHERE id = ?",
            (package_id,),
        ).fetchone()
        return PackageVersion.from_row(row) if row else None

    def get_by_identity(self, name: str, version: Version) -> PackageVersion | None:
        row = self._conn.execute(
            f"""
            SELECT {_PV_COLUMNS} FROM package_versions
            WHERE name = ? AND major = ? AND minor = ? AND patch = ?
            """,
            (name, version.major, version.minor, version.patch),
        ).fetchone()
        return PackageVersion.from_row(row) if row else None

    def list_versions(self, name: str) -> list[PackageVersion]:
        """All versions of a name, highest first."""
        cursor = self._conn.execute(
            f"""
            SELECT {_PV_COLUMNS} FROM package_versions
            WHERE name = ?
            ORDER BY major DESC, minor DESC, patch DESC
            """,
            (name,),
        )
        return [PackageVersion.from_row(row) for row in cursor]

    def find_latest_patch(self, name: str, major: int, minor: int) -> PackageVersion | None:
        """Highest installed patch of name major.minor."""
        row = self._conn.execute(
            f"""
            SELECT {_PV_COLUMNS} FROM package_versions
            WHERE name = ? AND major = ? AND minor = ?
            ORDER BY patch DESC
            LIMIT 1
            """,
            (name, major, minor),
        ).fetchone()
        return PackageVersion.from_row(row) if row else None

    def list_all(self) -> list[PackageVersion]:
        cursor = self._conn.execute(
            f"""
            SELECT {_PV_COLUMNS} FROM package_versions
            ORDER BY name ASC, major DESC, minor DESC, patch DESC
            """
        )
        return [PackageVersion.from_row(row) for row in cursor]

    def list_runnable(
        self,
        provenances: Iterable[Provenance] | None = None,
        tenant_id: str | None = None,
    ) -> list[PackageVersion]:
        """Runnable versions of the given provenances.

        Custom rows are only selected for `tenant_id`; without a tenant the
        query never returns custom rows at all.
        """
        provenances = set(provenances or Provenance)
        clauses = []
        params: list = []
        shared = [p.value for p in provenances if p is not Provenance.CUSTOM]
        if shared:
            clauses.append(f"provenance IN ({', '.join('?' for _ in shared)})")
            params.extend(shared)
        if Provenance.CUSTOM in provenances and tenant_id is not None:
            clauses.append("(provenance = 'custom' AND owning_tenant_id = ?)")
            params.append(tenant_id)
        if not clauses:
            return []

        cursor = self._conn.execute(
            f"""
            SELECT {_PV_COLUMNS} FROM package_versions
            WHERE runnable = 1 AND ({' OR '.join(clauses)})
            ORDER BY name ASC, major ASC, minor ASC, patch ASC
            """,
            params,
        )
        return [PackageVersion.from_row(row) for row in cursor]

    def put(self, draft: PackageDraft) -> tuple[int, str]:
        """Upsert by identity.

        Returns:
            (id, status) where status is "installed", "unchanged" or
            "replaced". "unchanged" still refreshes discovery metadata and
            updated_at.
        """
        now = utcnow()
        existing = self.get_by_identity(draft.name, draft.version)

        if existing is None:
            cursor = self._conn.execute(
                """
                INSERT INTO package_versions (
                    name, major, minor, patch, title, description,
                    categories_json, keywords_json, runnable, provenance,
                    owning_tenant_id, archive_ref, extracted_root, icon_ref,
                    core_api_major, core_api_minor, content_hash, metadata_json,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    draft.name,
                    draft.version.major,
                    draft.version.minor,
                    draft.version.patch,
                    draft.title,
                    draft.description,
                    json.dumps(draft.categories),
                    json.dumps(draft.keywords),
                    int(draft.runnable),
                    draft.provenance.value,
                    draft.owning_tenant_id,
                    draft.archive_ref,
                    draft.extracted_root,
                    draft.icon_ref,
                    draft.core_api[0],
                    draft.core_api[1],
                    draft.content_hash,
                    json.dumps(draft.metadata, sort_keys=True),
                    now,
                    now,
                ),
            )
            self.bump_generation()
            return cursor.lastrowid, "installed"

        if existing.content_hash == draft.content_hash:
            self._conn.execute(
                """
                UPDATE package_versions
                SET title = ?, description = ?, categories_json = ?,
                    keywords_json = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    draft.title or existing.title,
                    draft.description or existing.description,
                    json.dumps(draft.categories or existing.categories),
                    json.dumps(draft.keywords or existing.keywords),
                    now,
                    existing.id,
                ),
            )
            if (
                (draft.title and draft.title != existing.title)
                or (draft.description and draft.description != existing.description)
                or (draft.categories and draft.categories != existing.categories)
                or (draft.keywords and draft.keywords != existing.keywords)
            ):
                self.bump_generation()
            return existing.id, "unchanged"

        self._conn.execute(
            """
            UPDATE package_versions
            SET title = ?, description = ?, categories_json = ?, keywords_json = ?,
                runnable = ?, provenance = ?, owning_tenant_id = ?, archive_ref = ?,
                extracted_root = ?, icon_ref = ?, core_api_major = ?,
                core_api_minor = ?, content_hash = ?, metadata_json = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (
                draft.title,
                draft.description,
                json.dumps(draft.categories),
                json.dumps(draft.keywords),
                int(draft.runnable),
                draft.provenance.value,
                draft.owning_tenant_id,
                draft.archive_ref,
                draft.extracted_root,
                draft.icon_ref,
                draft.core_api[0],
                draft.core_api[1],
                draft.content_hash,
                json.dumps(draft.metadata, sort_keys=True),
                now,
                existing.id,
            ),
        )
        self.bump_generation()
        return existing.id, "replaced"

    def archive_in_use(self, archive_ref: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM package_versions WHERE archive_ref = ? LIMIT 1",
            (archive_ref,),
        ).fetchone()
        return row is not None

    def delete(self, package_id: int) -> PackageVersion:
        """Delete a version that nothing references.

        Raises:
            PackageNotFound: If the id does not exist
            ReferencedVersionDeletion: If edges or content pins reference it
        """
        package = self.get_by_id(package_id)
        if package is None:
            raise PackageNotFound(f"No package version with id {package_id}")

        dependents = self.dependents(package_id)
        pins = self.content_pins(package_id)
        if dependents or pins:
            names = sorted({str(d.identity) for d in dependents})
            raise ReferencedVersionDeletion(
                f"Version is still referenced by {len(names)} package(s) "
                f"and {len(pins)} content item(s)",
                str(package.identity),
                dependents=names,
                content_ids=pins,
            )

        self._conn.execute("DELETE FROM dependency_edges WHERE from_id = ?", (package_id,))
        self._conn.execute(
            "DELETE FROM tenant_overlays WHERE package_version_id = ?", (package_id,)
        )
        self._conn.execute("DELETE FROM package_versions WHERE id = ?", (package_id,))
        self.bump_generation()
        return package

    # --- Dependency graph ---

    def replace_edges(self, from_id: int, edges: Iterable[tuple[int, EdgeType]]) -> int:
        """Delete-then-insert all outgoing edges of a version."""
        self._conn.execute("DELETE FROM dependency_edges WHERE from_id = ?", (from_id,))
        count = 0
        for to_id, edge_type in edges:
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO dependency_edges (from_id, to_id, edge_type)
                VALUES (?, ?, ?)
                """,
                (from_id, to_id, edge_type.value),
            )
            count += cursor.rowcount
        self.bump_generation()
        return count

    def edges_from(self, from_id: int) -> list[DependencyEdge]:
        cursor = self._conn.execute(
            """
            SELECT from_id, to_id, edge_type FROM dependency_edges
            WHERE from_id = ?
            ORDER BY to_id, edge_type
            """,
            (from_id,),
        )
        return [
            DependencyEdge(row["from_id"], row["to_id"], EdgeType(row["edge_type"]))
            for row in cursor
        ]

    def edge_map(self, edge_types: Iterable[EdgeType]) -> dict[int, list[int]]:
        """Adjacency view: from_id -> sorted distinct to_ids."""
        types = sorted({e.value for e in edge_types})
        if not types:
            return {}
        cursor = self._conn.execute(
            f"""
            SELECT DISTINCT from_id, to_id FROM dependency_edges
            WHERE edge_type IN ({', '.join('?' for _ in types)})
            ORDER BY from_id, to_id
            """,
            types,
        )
        adjacency: dict[int, list[int]] = {}
        for row in cursor:
            adjacency.setdefault(row["from_id"], []).append(row["to_id"])
        return adjacency

    def get_many(self, ids: Iterable[int]) -> dict[int, PackageVersion]:
        ids = list(set(ids))
        result: dict[int, PackageVersion] = {}
        # Chunked to stay under SQLite's bound-parameter limit
        for start in range(0, len(ids), 500):
            chunk = ids[start : start + 500]
            cursor = self._conn.execute(
                f"""
                SELECT {_PV_COLUMNS} FROM package_versions
                WHERE id IN ({', '.join('?' for _ in chunk)})
                """,
                chunk,
            )
            for row in cursor:
                result[row["id"]] = PackageVersion.from_row(row)
        return result

    def dependents(self, package_id: int) -> list[PackageVersion]:
        """Versions with an edge pointing at package_id."""
        cursor = self._conn.execute(
            f"""
            SELECT DISTINCT {', '.join('p.' + c.strip() for c in _PV_COLUMNS.split(','))}
            FROM dependency_edges e
            JOIN package_versions p ON p.id = e.from_id
            WHERE e.to_id = ?
            ORDER BY p.name, p.major, p.minor, p.patch
            """,
            (package_id,),
        )
        return [PackageVersion.from_row(row) for row in cursor]

    # --- Content pins ---

    def pin_content(self, content_id: str, package_id: int) -> None:
        if self.get_by_id(package_id) is None:
            raise PackageNotFound(f"No package version with id {package_id}")
        self._conn.execute(
            """
            INSERT OR IGNORE INTO content_pins (content_id, package_version_id, pinned_at)
            VALUES (?, ?, ?)
            """,
            (content_id, package_id, utcnow()),
        )

    def unpin_content(self, content_id: str, package_id: int | None = None) -> int:
        if package_id is None:
            cursor = self._conn.execute(
                "DELETE FROM content_pins WHERE content_id = ?", (content_id,)
            )
        else:
            cursor = self._conn.execute(
                "DELETE FROM content_pins WHERE content_id = ? AND package_version_id = ?",
                (content_id, package_id),
            )
        return cursor.rowcount

    def content_pins(self, package_id: int) -> list[str]:
        cursor = self._conn.execute(
            """
            SELECT content_id FROM content_pins
            WHERE package_version_id = ?
            ORDER BY content_id
            """,
            (package_id,),
        )
        return [row["content_id"] for row in cursor]

    def pinned_version(self, content_id: str) -> PackageVersion | None:
        """The version a content item was authored against (most recent pin)."""
        row = self._conn.execute(
            """
            SELECT package_version_id FROM content_pins
            WHERE content_id = ?
            ORDER BY pinned_at DESC
            LIMIT 1
            """,
            (content_id,),
        ).fetchone()
        return self.get_by_id(row["package_version_id"]) if row else None

    # --- Tenant overlays ---

    def get_overlay(self, tenant_id: str, package_id: int) -> OverlayState | None:
        row = self._conn.execute(
            """
            SELECT tenant_id, package_version_id, enabled, restricted
            FROM tenant_overlays
            WHERE tenant_id = ? AND package_version_id = ?
            """,
            (tenant_id, package_id),
        ).fetchone()
        return _overlay_from_row(row) if row else None

    def overlays_for_tenant(self, tenant_id: str) -> dict[int, OverlayState]:
        cursor = self._conn.execute(
            """
            SELECT tenant_id, package_version_id, enabled, restricted
            FROM tenant_overlays
            WHERE tenant_id = ?
            """,
            (tenant_id,),
        )
        return {row["package_version_id"]: _overlay_from_row(row) for row in cursor}

    def set_overlay(self, state: OverlayState) -> None:
        self._conn.execute(
            """
            INSERT INTO tenant_overlays (tenant_id, package_version_id, enabled, restricted, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(tenant_id, package_version_id) DO UPDATE SET
                enabled = excluded.enabled,
                restricted = excluded.restricted,
                updated_at = excluded.updated_at
            """,
            (
                state.tenant_id,
                state.package_version_id,
                int(state.enabled),
                int(state.restricted),
                utcnow(),
            ),
        )

    def ensure_overlay_enabled(self, tenant_id: str, package_id: int) -> None:
        """Create or re-enable an overlay row, keeping its restricted flag."""
        current = self.get_overlay(tenant_id, package_id)
        restricted = current.restricted if current else False
        self.set_overlay(OverlayState(tenant_id, package_id, True, restricted))

    def delete_overlay(self, tenant_id: str, package_id: int) -> bool:
        cursor = self._conn.execute(
            "DELETE FROM tenant_overlays WHERE tenant_id = ? AND package_version_id = ?",
            (tenant_id, package_id),
        )
        return cursor.rowcount > 0

    # --- Mirror cursors ---

    def get_cursor(self, source: str) -> MirrorCursor:
        row = self._conn.execute(
            """
            SELECT source, last_digest, last_synced_at, last_attempt_at, last_error
            FROM mirror_cursors WHERE source = ?
            """,
            (source,),
        ).fetchone()
        if row is None:
            return MirrorCursor(source=source)
        return MirrorCursor(
            source=row["source"],
            last_digest=row["last_digest"],
            last_synced_at=row["last_synced_at"],
            last_attempt_at=row["last_attempt_at"],
            last_error=row["last_error"],
        )

    def save_cursor(self, cursor_state: MirrorCursor) -> None:
        self._conn.execute(
            """
            INSERT INTO mirror_cursors (source, last_digest, last_synced_at, last_attempt_at, last_error)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(source) DO UPDATE SET
                last_digest = excluded.last_digest,
                last_synced_at = excluded.last_synced_at,
                last_attempt_at = excluded.last_attempt_at,
                last_error = excluded.last_error
            """,
            (
                cursor_state.source,
                cursor_state.last_digest,
                cursor_state.last_synced_at,
                cursor_state.last_attempt_at,
                cursor_state.last_error,
            ),
        )

    # --- Catalog generation ---

    def generation(self) -> int:
        row = self._conn.execute(
            "SELECT value FROM schema_meta WHERE key = 'catalog_generation'"
        ).fetchone()
        return int(row["value"]) if row else 0

    def bump_generation(self) -> None:
        self._conn.execute(
            """
            UPDATE schema_meta SET value = CAST(value AS INTEGER) + 1
            WHERE key = 'catalog_generation'
            """
        )


def _overlay_from_row(row) -> OverlayState:
    return OverlayState(
        tenant_id=row["tenant_id"],
        package_version_id=row["package_version_id"],
        enabled=bool(row["enabled"]),
        restricted=bool(row["restricted"]),
    )


class PackageStore:
    """Durable record of package versions and their dependency edges.

    Usage:
        store = PackageStore(settings.db_path)
        store.init_schema()

        with store.transaction() as tx:
            package_id, status = tx.put(draft)
            tx.replace_edges(package_id, edges)

        store.get("H5P.Quiz", "latest", host=(1, 26))
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)

    def init_schema(self) -> None:
        with self._connect() as conn:
            init_schema(conn)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = get_connection(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def session(self) -> Iterator[StoreSession]:
        """Read-only session on a fresh connection."""
        with self._connect() as conn:
            yield StoreSession(conn)

    @contextmanager
    def transaction(self) -> Iterator[StoreSession]:
        """One unit of work; rolled back on any exception."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield StoreSession(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    # --- Convenience wrappers ---

    def put(self, draft: PackageDraft) -> int:
        """Upsert a package version; returns its id."""
        with self.transaction() as tx:
            package_id, _ = tx.put(draft)
        return package_id

    def get(
        self,
        name: str,
        constraint: str | Version = LATEST,
        host: tuple[int, int] | None = None,
    ) -> PackageVersion:
        """Look up a version of `name`.

        Args:
            name: Machine name
            constraint: Exact version ("1.2.3" or Version) or "latest"
            host: Caller's host runtime (major, minor); "latest" skips
                versions needing a newer runtime. None accepts any.

        Raises:
            PackageNotFound: If nothing matches
        """
        with self.session() as s:
            if isinstance(constraint, str) and constraint == LATEST:
                for candidate in s.list_versions(name):
                    if host is None or candidate.supports_host(host):
                        return candidate
                raise PackageNotFound(
                    f"No version of {name} compatible with host runtime "
                    f"{'.'.join(map(str, host)) if host else 'any'}"
                )

            version = constraint if isinstance(constraint, Version) else Version.parse(constraint)
            package = s.get_by_identity(name, version)
            if package is None:
                raise PackageNotFound(f"Package not found: {name}@{version}")
            return package

    def get_by_id(self, package_id: int) -> PackageVersion:
        with self.session() as s:
            package = s.get_by_id(package_id)
        if package is None:
            raise PackageNotFound(f"No package version with id {package_id}")
        return package

    def list_all(self) -> list[PackageVersion]:
        with self.session() as s:
            return s.list_all()

    def list_versions(self, name: str) -> list[PackageVersion]:
        with self.session() as s:
            return s.list_versions(name)

    def list_runnable(
        self,
        provenances: Iterable[Provenance] | None = None,
        tenant_id: str | None = None,
    ) -> list[PackageVersion]:
        with self.session() as s:
            return s.list_runnable(provenances, tenant_id)

    def edges_from(self, package_id: int) -> list[DependencyEdge]:
        with self.session() as s:
            return s.edges_from(package_id)

    def delete(self, package_id: int) -> PackageVersion:
        with self.transaction() as tx:
            package = tx.delete(package_id)
        logger.info(f"Deleted package version {package.identity}")
        return package

    def pin_content(self, content_id: str, package_id: int) -> None:
        with self.transaction() as tx:
            tx.pin_content(content_id, package_id)

    def unpin_content(self, content_id: str, package_id: int | None = None) -> int:
        with self.transaction() as tx:
            return tx.unpin_content(content_id, package_id)

    def pinned_version(self, content_id: str) -> PackageVersion | None:
        with self.session() as s:
            return s.pinned_version(content_id)

    def get_cursor(self, source: str) -> MirrorCursor:
        with self.session() as s:
            return s.get_cursor(source)

    def save_cursor(self, cursor_state: MirrorCursor) -> None:
        with self.transaction() as tx:
            tx.save_cursor(cursor_state)

    def generation(self) -> int:
        with self.session() as s:
            return s.generation()
