"""Shared fixtures: temporary registries and an in-memory archive builder."""

from __future__ import annotations

import io
import json
import zipfile

import pytest

from h5pregistry.config import Settings
from h5pregistry.registry.blobstore import LocalBlobStore
from h5pregistry.registry.installer import PackageInstaller
from h5pregistry.registry.store import PackageStore


def library_json(
    name: str,
    version: str = "1.0.0",
    runnable: bool = False,
    preloaded: list[tuple[str, int, int]] | None = None,
    dynamic: list[tuple[str, int, int]] | None = None,
    editor: list[tuple[str, int, int]] | None = None,
    core_api: tuple[int, int] | None = None,
    **extra,
) -> dict:
    """A library.json document."""
    major, minor, patch = (int(p) for p in version.split("."))
    data = {
        "title": extra.pop("title", name.split(".")[-1]),
        "machineName": name,
        "majorVersion": major,
        "minorVersion": minor,
        "patchVersion": patch,
        "runnable": 1 if runnable else 0,
    }
    for key, deps in (
        ("preloadedDependencies", preloaded),
        ("dynamicDependencies", dynamic),
        ("editorDependencies", editor),
    ):
        if deps:
            data[key] = [
                {"machineName": n, "majorVersion": ma, "minorVersion": mi} for n, ma, mi in deps
            ]
    if core_api:
        data["coreApi"] = {"majorVersion": core_api[0], "minorVersion": core_api[1]}
    data.update(extra)
    return data


def build_archive(
    libraries: list[dict],
    main: str | None = None,
    files: dict[str, bytes] | None = None,
    raw: dict[str, bytes] | None = None,
) -> bytes:
    """Zip library.json documents into an .h5p archive.

    Args:
        libraries: library.json dicts; each lands in {machineName}-{major}.{minor}/
        main: mainLibrary for h5p.json (omitted when None)
        files: Extra files keyed by archive path
        raw: Entries written verbatim (for malformed-manifest tests)
    """
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        if main is not None:
            zf.writestr("h5p.json", json.dumps({"title": main, "mainLibrary": main}))
        for lib in libraries:
            dir_name = f"{lib['machineName']}-{lib['majorVersion']}.{lib['minorVersion']}"
            zf.writestr(f"{dir_name}/library.json", json.dumps(lib))
            for asset in lib.get("preloadedJs", []) + lib.get("preloadedCss", []):
                zf.writestr(f"{dir_name}/{asset['path']}", f"/* {lib['machineName']} */")
        for path, data in (files or {}).items():
            zf.writestr(path, data)
        for path, data in (raw or {}).items():
            zf.writestr(path, data)
    return buffer.getvalue()


@pytest.fixture
def make_library():
    return library_json


@pytest.fixture
def make_archive():
    return build_archive


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        db_path=tmp_path / "registry.db",
        blob_root=tmp_path / "blobs",
        hub_url="https://hub.test",
        site_uuid="site-1234",
    )


@pytest.fixture
def store(settings) -> PackageStore:
    store = PackageStore(settings.db_path)
    store.init_schema()
    return store


@pytest.fixture
def blobs(settings) -> LocalBlobStore:
    return LocalBlobStore(settings.blob_root)


@pytest.fixture
def installer(store, blobs) -> PackageInstaller:
    return PackageInstaller(store, blobs)
