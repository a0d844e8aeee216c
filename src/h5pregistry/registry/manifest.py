"""Package archive reading and validation.

An archive is a zip (.h5p) holding one directory per library, each with a
library.json, plus an optional h5p.json at the root naming the main library.
Anything else at the root (content/, stray files) is ignored.

library.json quirks handled here:
- version numbers and runnable may be ints or numeric strings
- dependency lists are optional
- coreApi is optional (defaults to 1.0)
"""

from __future__ import annotations

import hashlib
import io
import json
import re
import zipfile
from dataclasses import dataclass, field
from pathlib import PurePosixPath

from h5pregistry.registry.errors import InvalidPackage
from h5pregistry.registry.models import (
    MANIFEST_DEPENDENCY_KEYS,
    EdgeType,
    Identity,
    Version,
)

MACHINE_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_.-]*$")

LIBRARY_MANIFEST = "library.json"
PACKAGE_MANIFEST = "h5p.json"
ICON_FILES = ("icon.svg", "icon.png")


@dataclass
class ValidationError:
    """A single validation error."""

    path: str
    message: str
    severity: str = "error"


@dataclass
class ValidationResult:
    """Result of archive validation."""

    valid: bool = True
    errors: list[ValidationError] = field(default_factory=list)
    warnings: list[ValidationError] = field(default_factory=list)

    def add_error(self, path: str, message: str) -> None:
        self.errors.append(ValidationError(path, message, "error"))
        self.valid = False

    def add_warning(self, path: str, message: str) -> None:
        self.warnings.append(ValidationError(path, message, "warning"))

    def summary(self, limit: int = 3) -> str:
        shown = "; ".join(f"{e.path}: {e.message}" for e in self.errors[:limit])
        extra = len(self.errors) - limit
        return shown + (f" (+{extra} more)" if extra > 0 else "")


@dataclass(frozen=True)
class LibraryDependency:
    """A dependency as declared in library.json (no patch version)."""

    name: str
    major: int
    minor: int
    edge_type: EdgeType

    def __str__(self) -> str:
        return f"{self.name} {self.major}.{self.minor}"


@dataclass
class LibraryManifest:
    """A validated library from an archive."""

    name: str
    version: Version
    title: str
    runnable: bool
    dir_name: str
    files: dict[str, bytes]
    metadata: dict
    description: str = ""
    core_api: tuple[int, int] = (1, 0)
    dependencies: list[LibraryDependency] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)

    @property
    def identity(self) -> Identity:
        return Identity(self.name, self.version)

    @property
    def icon_path(self) -> str | None:
        for candidate in ICON_FILES:
            if candidate in self.files:
                return candidate
        return None

    @property
    def preloaded_js(self) -> list[str]:
        return _asset_paths(self.metadata.get("preloadedJs"))

    @property
    def preloaded_css(self) -> list[str]:
        return _asset_paths(self.metadata.get("preloadedCss"))

    @property
    def content_hash(self) -> str:
        """sha256 over (relative path, bytes) in sorted path order."""
        return compute_content_hash(self.files)


@dataclass
class PackageArchive:
    """A fully validated archive."""

    main: LibraryManifest
    libraries: list[LibraryManifest]
    package_manifest: dict | None
    sha256: str
    size: int

    def get(self, name: str, major: int, minor: int) -> LibraryManifest | None:
        """Highest patch of name major.minor bundled in this archive."""
        matches = [
            lib
            for lib in self.libraries
            if lib.name == name and lib.version.major == major and lib.version.minor == minor
        ]
        return max(matches, key=lambda lib: lib.version) if matches else None


def compute_content_hash(files: dict[str, bytes]) -> str:
    """Deterministic content hash for a library's files."""
    hasher = hashlib.sha256()
    for rel_path in sorted(files):
        hasher.update(rel_path.encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(hashlib.sha256(files[rel_path]).digest())
    return hasher.hexdigest()


def _asset_paths(entries) -> list[str]:
    if not isinstance(entries, list):
        return []
    paths = []
    for entry in entries:
        if isinstance(entry, dict) and isinstance(entry.get("path"), str):
            paths.append(entry["path"])
    return paths


def _flex_int(value, path: str, key: str, result: ValidationResult) -> int | None:
    """Accept 1 or "1"; record an error otherwise."""
    if isinstance(value, bool):
        result.add_error(path, f"{key} must be a number, got boolean")
        return None
    if isinstance(value, int):
        if value < 0:
            result.add_error(path, f"{key} must not be negative")
            return None
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.isascii() and text.isdigit():
            return int(text)
    result.add_error(path, f"{key} must be a number, got {value!r}")
    return None


def _flex_bool(value, path: str, key: str, result: ValidationResult) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    number = _flex_int(value, path, key, result)
    return bool(number)


class ArchiveReader:
    """Reads and validates a package archive.

    Usage:
        reader = ArchiveReader(data)
        result = reader.validate()
        if result.valid:
            archive = reader.archive
    """

    def __init__(self, data: bytes):
        self._data = data
        self._archive: PackageArchive | None = None

    @property
    def archive(self) -> PackageArchive | None:
        return self._archive

    def validate(self) -> ValidationResult:
        """Run full validation, building the archive if valid."""
        result = ValidationResult()

        try:
            zf = zipfile.ZipFile(io.BytesIO(self._data))
        except zipfile.BadZipFile as e:
            result.add_error("<archive>", f"Not a zip archive: {e}")
            return result

        with zf:
            dir_files, package_manifest = self._collect(zf, result)
        if not result.valid:
            return result

        libraries = []
        for dir_name in sorted(dir_files):
            files = dir_files[dir_name]
            if LIBRARY_MANIFEST not in files:
                continue
            library = self._parse_library(dir_name, files, result)
            if library is not None:
                libraries.append(library)

        if not result.valid:
            return result

        if not libraries:
            result.add_error("<archive>", "Archive contains no library.json")
            return result

        self._check_duplicates(libraries, result)
        main = self._pick_main(libraries, package_manifest, result)
        if not result.valid or main is None:
            return result

        for lib in libraries:
            for dep in lib.dependencies:
                if dep.name == lib.name and dep.major == lib.version.major and dep.minor == lib.version.minor:
                    result.add_error(
                        f"{lib.dir_name}/{LIBRARY_MANIFEST}",
                        f"Library depends on itself ({dep})",
                    )
        if not result.valid:
            return result

        self._archive = PackageArchive(
            main=main,
            libraries=libraries,
            package_manifest=package_manifest,
            sha256=hashlib.sha256(self._data).hexdigest(),
            size=len(self._data),
        )
        return result

    def _collect(
        self, zf: zipfile.ZipFile, result: ValidationResult
    ) -> tuple[dict[str, dict[str, bytes]], dict | None]:
        """Group zip entries by top-level directory."""
        dir_files: dict[str, dict[str, bytes]] = {}
        package_manifest = None

        for info in zf.infolist():
            if info.is_dir():
                continue
            name = info.filename
            parts = PurePosixPath(name).parts
            if name.startswith("/") or ".." in parts or "\\" in name:
                result.add_error(name, "Unsafe path in archive")
                continue

            try:
                content = zf.read(info)
            except (zipfile.BadZipFile, OSError) as e:
                result.add_error(name, f"Cannot read entry: {e}")
                continue

            if name == PACKAGE_MANIFEST:
                try:
                    package_manifest = json.loads(content)
                except (json.JSONDecodeError, UnicodeDecodeError) as e:
                    result.add_error(name, f"Invalid JSON: {e}")
                    continue
                if not isinstance(package_manifest, dict):
                    result.add_error(name, "h5p.json must be an object")
                continue

            if len(parts) < 2:
                continue
            dir_files.setdefault(parts[0], {})["/".join(parts[1:])] = content

        return dir_files, package_manifest

    def _parse_library(
        self, dir_name: str, files: dict[str, bytes], result: ValidationResult
    ) -> LibraryManifest | None:
        path = f"{dir_name}/{LIBRARY_MANIFEST}"
        try:
            data = json.loads(files[LIBRARY_MANIFEST])
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            result.add_error(path, f"Invalid JSON: {e}")
            return None
        if not isinstance(data, dict):
            result.add_error(path, "library.json must be an object")
            return None

        errors_before = len(result.errors)

        name = data.get("machineName")
        if not isinstance(name, str) or not MACHINE_NAME_PATTERN.match(name):
            result.add_error(path, f"Missing or invalid machineName: {name!r}")

        numbers = {}
        for key in ("majorVersion", "minorVersion", "patchVersion"):
            if key not in data:
                result.add_error(path, f"Missing required field: {key}")
                continue
            numbers[key] = _flex_int(data[key], path, key, result)

        if "runnable" not in data:
            result.add_error(path, "Missing required field: runnable")
        runnable = _flex_bool(data.get("runnable"), path, "runnable", result)

        core_api = (1, 0)
        if "coreApi" in data:
            core = data["coreApi"]
            if not isinstance(core, dict):
                result.add_error(path, "coreApi must be an object")
            else:
                core_major = _flex_int(core.get("majorVersion", 1), path, "coreApi.majorVersion", result)
                core_minor = _flex_int(core.get("minorVersion", 0), path, "coreApi.minorVersion", result)
                if core_major is not None and core_minor is not None:
                    core_api = (core_major, core_minor)

        dependencies = []
        for key, edge_type in MANIFEST_DEPENDENCY_KEYS.items():
            entries = data.get(key, [])
            if not isinstance(entries, list):
                result.add_error(path, f"{key} must be a list")
                continue
            for i, entry in enumerate(entries):
                dep = self._parse_dependency(entry, f"{path}:{key}[{i}]", edge_type, result)
                if dep is not None and dep not in dependencies:
                    dependencies.append(dep)

        if len(result.errors) > errors_before:
            return None

        title = data.get("title")
        if not isinstance(title, str) or not title.strip():
            result.add_warning(path, "Missing title, using machineName")
            title = name

        return LibraryManifest(
            name=name,
            version=Version(
                numbers["majorVersion"], numbers["minorVersion"], numbers["patchVersion"]
            ),
            title=title,
            runnable=runnable,
            dir_name=dir_name,
            files=files,
            metadata=data,
            description=str(data.get("description", "") or ""),
            core_api=core_api,
            dependencies=dependencies,
            categories=_string_list(data.get("categories")),
            keywords=_string_list(data.get("keywords")),
        )

    def _parse_dependency(
        self, entry, path: str, edge_type: EdgeType, result: ValidationResult
    ) -> LibraryDependency | None:
        if not isinstance(entry, dict):
            result.add_error(path, "Dependency must be an object")
            return None
        name = entry.get("machineName")
        if not isinstance(name, str) or not MACHINE_NAME_PATTERN.match(name):
            result.add_error(path, f"Invalid dependency machineName: {name!r}")
            return None
        major = _flex_int(entry.get("majorVersion"), path, "majorVersion", result)
        minor = _flex_int(entry.get("minorVersion"), path, "minorVersion", result)
        if major is None or minor is None:
            return None
        return LibraryDependency(name, major, minor, edge_type)

    def _check_duplicates(
        self, libraries: list[LibraryManifest], result: ValidationResult
    ) -> None:
        seen: dict[Identity, str] = {}
        for lib in libraries:
            if lib.identity in seen:
                result.add_error(
                    lib.dir_name,
                    f"Duplicate library {lib.identity} (also in {seen[lib.identity]})",
                )
            seen[lib.identity] = lib.dir_name

    def _pick_main(
        self,
        libraries: list[LibraryManifest],
        package_manifest: dict | None,
        result: ValidationResult,
    ) -> LibraryManifest | None:
        main_name = (package_manifest or {}).get("mainLibrary")
        if main_name:
            candidates = [lib for lib in libraries if lib.name == main_name]
            if not candidates:
                result.add_error(
                    PACKAGE_MANIFEST, f"mainLibrary {main_name!r} not found in archive"
                )
                return None
            return max(candidates, key=lambda lib: lib.version)

        runnable = [lib for lib in libraries if lib.runnable]
        if len(runnable) == 1:
            return runnable[0]
        if len(libraries) == 1:
            return libraries[0]

        result.add_error(
            "<archive>",
            "Cannot determine main library: add mainLibrary to h5p.json",
        )
        return None


def _string_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if isinstance(v, (str, int, float))]


def read_archive(data: bytes) -> PackageArchive:
    """Validate and parse archive bytes.

    Raises:
        InvalidPackage: If the archive is malformed
    """
    reader = ArchiveReader(data)
    result = reader.validate()
    if not result.valid or reader.archive is None:
        raise InvalidPackage(f"Invalid package: {result.summary()}")
    return reader.archive
