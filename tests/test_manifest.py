"""Tests for archive reading and library.json validation."""

from __future__ import annotations

import json

import pytest

from h5pregistry.registry.errors import InvalidPackage
from h5pregistry.registry.manifest import ArchiveReader, compute_content_hash, read_archive
from h5pregistry.registry.models import EdgeType, Version


# ============================================================================
# Structural validation
# ============================================================================


class TestArchiveStructure:
    """Tests for zip-level validation."""

    def test_not_a_zip(self):
        """Garbage bytes are rejected."""
        result = ArchiveReader(b"not a zip").validate()
        assert not result.valid
        assert "Not a zip" in result.errors[0].message

    def test_no_library_json(self, make_archive):
        """An archive with no library directory fails."""
        data = make_archive([], files={"content/content.json": b"{}"})
        with pytest.raises(InvalidPackage, match="no library.json"):
            read_archive(data)

    def test_unsafe_path_rejected(self, make_archive, make_library):
        """Entries escaping the archive root are rejected."""
        data = make_archive(
            [make_library("H5P.Foo", runnable=True)],
            raw={"../evil.js": b"x"},
        )
        result = ArchiveReader(data).validate()
        assert not result.valid
        assert any("Unsafe" in e.message for e in result.errors)

    def test_invalid_library_json(self, make_archive):
        """Unparseable library.json is reported with its path."""
        data = make_archive([], raw={"H5P.Foo-1.0/library.json": b"{nope"})
        result = ArchiveReader(data).validate()
        assert not result.valid
        assert result.errors[0].path == "H5P.Foo-1.0/library.json"


# ============================================================================
# library.json fields
# ============================================================================


class TestLibraryManifest:
    """Tests for library.json parsing."""

    def test_string_encoded_numbers(self, make_archive):
        """Version numbers and runnable accept numeric strings."""
        lib = {
            "title": "Foo",
            "machineName": "H5P.Foo",
            "majorVersion": "1",
            "minorVersion": "2",
            "patchVersion": "3",
            "runnable": "1",
        }
        archive = read_archive(make_archive([lib]))
        assert archive.main.version == Version(1, 2, 3)
        assert archive.main.runnable is True

    @pytest.mark.parametrize("value", ["\u00b2", "\u0661", "1\u00b2"])
    def test_non_ascii_digits_rejected(self, make_archive, make_library, value):
        """Unicode digits are not version numbers."""
        lib = make_library("H5P.Foo", runnable=True, majorVersion=value)
        with pytest.raises(InvalidPackage, match="majorVersion"):
            read_archive(make_archive([lib]))

    def test_missing_required_fields(self, make_archive):
        """machineName, version triple and runnable are required."""
        lib = {"title": "Foo", "machineName": "H5P.Foo", "majorVersion": 1}
        result = ArchiveReader(make_archive([], raw={"x/library.json": json.dumps(lib).encode()})).validate()
        messages = " ".join(e.message for e in result.errors)
        assert "minorVersion" in messages
        assert "patchVersion" in messages
        assert "runnable" in messages

    def test_invalid_machine_name(self, make_archive, make_library):
        """Machine names must start with a letter."""
        lib = make_library("1bad", runnable=True)
        result = ArchiveReader(make_archive([lib])).validate()
        assert not result.valid

    def test_dependencies_typed(self, make_archive, make_library):
        """Each dependency list maps to its edge type."""
        main = make_library(
            "H5P.Quiz",
            runnable=True,
            preloaded=[("H5P.Question", 1, 4)],
            dynamic=[("H5P.Image", 1, 1)],
            editor=[("H5PEditor.Quiz", 1, 0)],
        )
        archive = read_archive(make_archive([main]))
        by_name = {d.name: d for d in archive.main.dependencies}
        assert by_name["H5P.Question"].edge_type is EdgeType.REQUIRED_AT_LOAD
        assert by_name["H5P.Image"].edge_type is EdgeType.REQUIRED_AT_RUNTIME
        assert by_name["H5PEditor.Quiz"].edge_type is EdgeType.REQUIRED_IN_EDITOR

    def test_core_api_defaults(self, make_archive, make_library):
        """coreApi defaults to 1.0 and is parsed when present."""
        plain = read_archive(make_archive([make_library("H5P.A", runnable=True)]))
        assert plain.main.core_api == (1, 0)

        newer = read_archive(
            make_archive([make_library("H5P.A", runnable=True, core_api=(1, 24))])
        )
        assert newer.main.core_api == (1, 24)

    def test_missing_title_warns(self, make_archive, make_library):
        """A missing title is a warning, not an error."""
        lib = make_library("H5P.Foo", runnable=True)
        del lib["title"]
        reader = ArchiveReader(make_archive([lib]))
        result = reader.validate()
        assert result.valid
        assert result.warnings
        assert reader.archive.main.title == "H5P.Foo"

    def test_self_dependency_rejected(self, make_archive, make_library):
        """A library may not depend on its own major.minor."""
        lib = make_library("H5P.Foo", "1.0.0", runnable=True, preloaded=[("H5P.Foo", 1, 0)])
        with pytest.raises(InvalidPackage, match="depends on itself"):
            read_archive(make_archive([lib]))

    def test_preloaded_assets(self, make_archive, make_library):
        """preloadedJs/Css paths are exposed in declaration order."""
        lib = make_library(
            "H5P.Foo",
            runnable=True,
            preloadedJs=[{"path": "js/a.js"}, {"path": "js/b.js"}],
            preloadedCss=[{"path": "css/a.css"}],
        )
        archive = read_archive(make_archive([lib]))
        assert archive.main.preloaded_js == ["js/a.js", "js/b.js"]
        assert archive.main.preloaded_css == ["css/a.css"]


# ============================================================================
# Main library selection
# ============================================================================


class TestMainLibrary:
    """Tests for picking the main library."""

    def test_main_from_h5p_json(self, make_archive, make_library):
        libs = [
            make_library("H5P.Quiz", runnable=True),
            make_library("H5P.Other", runnable=True),
        ]
        archive = read_archive(make_archive(libs, main="H5P.Other"))
        assert archive.main.name == "H5P.Other"

    def test_single_runnable(self, make_archive, make_library):
        libs = [make_library("H5P.Quiz", runnable=True), make_library("H5P.Lib")]
        archive = read_archive(make_archive(libs))
        assert archive.main.name == "H5P.Quiz"

    def test_ambiguous_main(self, make_archive, make_library):
        libs = [make_library("H5P.A", runnable=True), make_library("H5P.B", runnable=True)]
        with pytest.raises(InvalidPackage, match="mainLibrary"):
            read_archive(make_archive(libs))

    def test_main_library_missing(self, make_archive, make_library):
        with pytest.raises(InvalidPackage, match="not found"):
            read_archive(make_archive([make_library("H5P.A", runnable=True)], main="H5P.Z"))


# ============================================================================
# Content hash
# ============================================================================


class TestContentHash:
    """Tests for the per-library content hash."""

    def test_order_independent(self):
        a = compute_content_hash({"a.js": b"1", "b.js": b"2"})
        b = compute_content_hash({"b.js": b"2", "a.js": b"1"})
        assert a == b

    def test_path_sensitive(self):
        assert compute_content_hash({"a.js": b"1"}) != compute_content_hash({"b.js": b"1"})

    def test_same_archive_same_hash(self, make_archive, make_library):
        lib = make_library("H5P.Foo", runnable=True)
        first = read_archive(make_archive([lib]))
        second = read_archive(make_archive([lib]))
        assert first.main.content_hash == second.main.content_hash


@pytest.mark.parametrize("value", ["1.².0", "١.2.3", "1.2.x", "1"])
def test_version_parse_invalid(value):
    with pytest.raises(ValueError, match="Invalid version"):
        Version.parse(value)
