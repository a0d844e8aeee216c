"""Tests for the package installer.

Covers identity rules per provenance, idempotent re-install, wholesale edge
replacement, dependency binding and rollback of blobs and rows on failure.
"""

from __future__ import annotations

import threading

import pytest

from h5pregistry.registry.errors import (
    ConflictingReplacement,
    InvalidPackage,
    ReferencedVersionDeletion,
    UnresolvedDependency,
)
from h5pregistry.registry.installer import PackageInstaller
from h5pregistry.registry.models import EdgeType, Provenance, Version


# ============================================================================
# Basic installs
# ============================================================================


class TestInstall:
    """Tests for fresh installs."""

    def test_install_single_library(self, installer, store, blobs, make_archive, make_library):
        data = make_archive([make_library("H5P.Quiz", runnable=True)])
        result = installer.install(data, Provenance.CURATED)

        assert result.success
        assert result.status == "installed"
        package = store.get_by_id(result.package_id)
        assert package.provenance is Provenance.CURATED
        assert blobs.exists(package.archive_ref)
        assert blobs.exists(f"{package.extracted_root}/library.json")

    def test_bundled_dependencies_become_edges(self, installer, store, make_archive, make_library):
        libs = [
            make_library("H5P.Quiz", runnable=True, preloaded=[("H5P.Question", 1, 0)]),
            make_library("H5P.Question", preloaded=[("H5P.Core", 2, 0)]),
            make_library("H5P.Core", "2.0.3"),
        ]
        result = installer.install(make_archive(libs), Provenance.CURATED)

        assert len(result.libraries) == 3
        edges = store.edges_from(result.package_id)
        question = store.get("H5P.Question", "1.0.0")
        assert [(e.to_id, e.edge_type) for e in edges] == [
            (question.id, EdgeType.REQUIRED_AT_LOAD)
        ]

    def test_dependency_binds_to_installed_version(self, installer, store, make_archive, make_library):
        """A dependency not in the archive binds to the highest stored patch."""
        installer.install(make_archive([make_library("H5P.Core", "2.0.1")]), Provenance.UPSTREAM)
        installer.install(make_archive([make_library("H5P.Core", "2.0.4")]), Provenance.UPSTREAM)

        quiz = make_library("H5P.Quiz", runnable=True, dynamic=[("H5P.Core", 2, 0)])
        result = installer.install(make_archive([quiz]), Provenance.CURATED)

        edges = store.edges_from(result.package_id)
        assert len(edges) == 1
        assert store.get_by_id(edges[0].to_id).version == Version(2, 0, 4)
        assert edges[0].edge_type is EdgeType.REQUIRED_AT_RUNTIME

    def test_unresolved_dependency(self, installer, store, blobs, make_archive, make_library):
        quiz = make_library("H5P.Quiz", runnable=True, preloaded=[("H5P.Missing", 1, 0)])
        with pytest.raises(UnresolvedDependency, match="H5P.Missing 1.0"):
            installer.install(make_archive([quiz]), Provenance.CURATED)
        assert store.list_all() == []

    def test_unresolved_dependency_is_invalid_package(self):
        assert issubclass(UnresolvedDependency, InvalidPackage)

    def test_custom_requires_owner(self, installer, make_archive, make_library):
        data = make_archive([make_library("H5P.Quiz", runnable=True)])
        with pytest.raises(InvalidPackage, match="owning tenant"):
            installer.install(data, Provenance.CUSTOM)

    def test_owner_only_for_custom(self, installer, make_archive, make_library):
        data = make_archive([make_library("H5P.Quiz", runnable=True)])
        with pytest.raises(InvalidPackage, match="Only custom"):
            installer.install(data, Provenance.CURATED, owner_tenant_id="t1")

    def test_provenance_string(self, installer, make_archive, make_library):
        data = make_archive([make_library("H5P.Quiz", runnable=True)])
        assert installer.install(data, "curated").status == "installed"
        with pytest.raises(InvalidPackage, match="Invalid provenance"):
            installer.install(data, "vendor")

    def test_custom_creates_owner_overlay(self, installer, store, make_archive, make_library):
        data = make_archive([make_library("H5P.Mine", runnable=True)])
        result = installer.install(data, Provenance.CUSTOM, owner_tenant_id="t1")
        with store.session() as s:
            overlay = s.get_overlay("t1", result.package_id)
        assert overlay.enabled

    def test_discovery_metadata(self, installer, store, make_archive, make_library):
        data = make_archive([make_library("H5P.Quiz", runnable=True)])
        result = installer.install(
            data,
            Provenance.UPSTREAM,
            discovery={"title": "Quiz (Question Set)", "keywords": ["test"]},
        )
        package = store.get_by_id(result.package_id)
        assert package.title == "Quiz (Question Set)"
        assert package.keywords == ["test"]


# ============================================================================
# Re-install and replacement
# ============================================================================


class TestIdentityRules:
    """Tests for same-identity installs across provenances."""

    def test_reinstall_identical_is_noop(self, installer, store, make_archive, make_library):
        data = make_archive([make_library("H5P.Quiz", runnable=True)])
        first = installer.install(data, Provenance.CURATED)
        generation = store.generation()

        second = installer.install(data, Provenance.CURATED)

        assert second.package_id == first.package_id
        assert second.status == "unchanged"
        assert not second.changed
        assert store.generation() == generation

    def test_upstream_never_replaced(self, installer, make_archive, make_library):
        installer.install(
            make_archive([make_library("H5P.Quiz", runnable=True)]), Provenance.UPSTREAM
        )
        changed = make_archive([make_library("H5P.Quiz", runnable=True, title="Changed")])

        with pytest.raises(ConflictingReplacement):
            installer.install(changed, Provenance.UPSTREAM)
        with pytest.raises(ConflictingReplacement):
            installer.install(changed, Provenance.CURATED)

    def test_curated_replaced_by_curated(self, installer, store, blobs, make_archive, make_library):
        first = installer.install(
            make_archive([make_library("H5P.Quiz", runnable=True)]), Provenance.CURATED
        )
        old_root = store.get_by_id(first.package_id).extracted_root

        second = installer.install(
            make_archive([make_library("H5P.Quiz", runnable=True, title="Fixed")]),
            Provenance.CURATED,
        )

        assert second.status == "replaced"
        assert second.package_id == first.package_id
        package = store.get_by_id(second.package_id)
        assert package.title == "Fixed"
        assert package.extracted_root != old_root
        assert not blobs.exists(f"{old_root}/library.json")
        assert blobs.exists(f"{package.extracted_root}/library.json")

    def test_custom_replaced_by_owner_only(self, installer, make_archive, make_library):
        installer.install(
            make_archive([make_library("H5P.Mine", runnable=True)]),
            Provenance.CUSTOM,
            owner_tenant_id="t1",
        )
        changed = make_archive([make_library("H5P.Mine", runnable=True, title="v2")])

        with pytest.raises(ConflictingReplacement):
            installer.install(changed, Provenance.CUSTOM, owner_tenant_id="t2")
        result = installer.install(changed, Provenance.CUSTOM, owner_tenant_id="t1")
        assert result.status == "replaced"

    def test_replacement_replaces_edges_wholesale(self, installer, store, make_archive, make_library):
        installer.install(make_archive([make_library("H5P.A")]), Provenance.CURATED)
        installer.install(make_archive([make_library("H5P.B")]), Provenance.CURATED)

        first = installer.install(
            make_archive([make_library("H5P.Quiz", runnable=True, preloaded=[("H5P.A", 1, 0)])]),
            Provenance.CURATED,
        )
        installer.install(
            make_archive([make_library("H5P.Quiz", runnable=True, editor=[("H5P.B", 1, 0)])]),
            Provenance.CURATED,
        )

        edges = store.edges_from(first.package_id)
        b = store.get("H5P.B", "1.0.0")
        assert [(e.to_id, e.edge_type) for e in edges] == [
            (b.id, EdgeType.REQUIRED_IN_EDITOR)
        ]

    def test_conflict_in_bundled_library_rolls_back_all(
        self, installer, store, blobs, settings, make_archive, make_library
    ):
        """A conflicting bundled library aborts the whole archive."""
        installer.install(make_archive([make_library("H5P.Core")]), Provenance.UPSTREAM)
        before = {p.id for p in store.list_all()}

        libs = [
            make_library("H5P.Quiz", runnable=True, preloaded=[("H5P.Core", 1, 0)]),
            make_library("H5P.Core", title="Patched core"),
        ]
        with pytest.raises(ConflictingReplacement):
            installer.install(make_archive(libs), Provenance.CURATED)

        assert {p.id for p in store.list_all()} == before
        roots = list((settings.blob_root / "libraries").iterdir())
        assert [r.name.startswith("H5P.Core-1.0.0") for r in roots] == [True]


# ============================================================================
# Failure cleanup and concurrency
# ============================================================================


class FailingEdgeInstaller(PackageInstaller):
    """Installer that fails after rows are written, before commit."""

    def _write(self, tx, *args, **kwargs):
        super()._write(tx, *args, **kwargs)
        raise RuntimeError("disk full")


class TestRollback:
    """Tests that a failed install leaves no trace."""

    def test_failure_discards_rows_and_blobs(self, store, blobs, settings, make_archive, make_library):
        installer = FailingEdgeInstaller(store, blobs)
        data = make_archive([make_library("H5P.Quiz", runnable=True)])

        with pytest.raises(RuntimeError):
            installer.install(data, Provenance.CURATED)

        assert store.list_all() == []
        assert not any(p.is_file() for p in settings.blob_root.rglob("*"))

    def test_failed_replacement_keeps_old_files(self, store, blobs, make_archive, make_library):
        first = PackageInstaller(store, blobs).install(
            make_archive([make_library("H5P.Quiz", runnable=True)]), Provenance.CURATED
        )
        package = store.get_by_id(first.package_id)

        with pytest.raises(RuntimeError):
            FailingEdgeInstaller(store, blobs).install(
                make_archive([make_library("H5P.Quiz", runnable=True, title="v2")]),
                Provenance.CURATED,
            )

        assert store.get_by_id(first.package_id).content_hash == package.content_hash
        assert blobs.exists(f"{package.extracted_root}/library.json")

    def test_concurrent_identical_installs(self, installer, store, make_archive, make_library):
        """Parallel installs of one identity produce one row."""
        data = make_archive([make_library("H5P.Quiz", runnable=True)])
        results = []
        errors = []

        def worker():
            try:
                results.append(installer.install(data, Provenance.CURATED))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len({r.package_id for r in results}) == 1
        assert sorted(r.status for r in results) == ["installed"] + ["unchanged"] * 3
        assert len(store.list_all()) == 1


# ============================================================================
# Uninstall
# ============================================================================


class TestUninstall:
    """Tests for reference-checked deletion with blob cleanup."""

    def test_uninstall_removes_blobs(self, installer, store, blobs, make_archive, make_library):
        result = installer.install(
            make_archive([make_library("H5P.Quiz", runnable=True)]), Provenance.CURATED
        )
        package = store.get_by_id(result.package_id)

        installer.uninstall(result.package_id)

        assert store.list_all() == []
        assert not blobs.exists(f"{package.extracted_root}/library.json")
        assert not blobs.exists(package.archive_ref)

    def test_uninstall_dependency_refused(self, installer, store, make_archive, make_library):
        libs = [
            make_library("H5P.Quiz", runnable=True, preloaded=[("H5P.Core", 1, 0)]),
            make_library("H5P.Core"),
        ]
        installer.install(make_archive(libs), Provenance.CURATED)
        core = store.get("H5P.Core", "1.0.0")

        with pytest.raises(ReferencedVersionDeletion):
            installer.uninstall(core.id)
        assert store.get_by_id(core.id)
