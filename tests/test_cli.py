"""Tests for the h5pregistry CLI."""

from __future__ import annotations

import json

import httpx
import pytest
import yaml
from click.testing import CliRunner

from h5pregistry.__main__ import cli
from h5pregistry.registry.hub_client import UpstreamClient
from h5pregistry.services import RegistryServices


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "registry.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "db_path": str(tmp_path / "registry.db"),
                "blob_root": str(tmp_path / "blobs"),
                "hub_url": "https://hub.test",
            }
        )
    )
    return path


@pytest.fixture
def run(config_file):
    runner = CliRunner()

    def invoke(*args):
        return runner.invoke(cli, ["--config", str(config_file), *args])

    return invoke


@pytest.fixture
def quiz_archive(tmp_path, make_archive, make_library):
    path = tmp_path / "quiz.h5p"
    path.write_bytes(
        make_archive(
            [
                make_library("H5P.Quiz", runnable=True, preloaded=[("H5P.Core", 1, 0)]),
                make_library("H5P.Core", preloadedJs=[{"path": "core.js"}]),
            ]
        )
    )
    return path


class TestCli:
    """Tests for CLI commands end to end."""

    def test_init(self, run, tmp_path):
        result = run("init")
        assert result.exit_code == 0, result.output
        assert (tmp_path / "registry.db").exists()

    def test_validate(self, run, quiz_archive):
        result = run("validate", str(quiz_archive))
        assert result.exit_code == 0, result.output
        assert "H5P.Quiz@1.0.0" in result.output

    def test_validate_invalid(self, run, tmp_path):
        bad = tmp_path / "bad.h5p"
        bad.write_bytes(b"nope")
        result = run("validate", str(bad))
        assert result.exit_code == 1

    def test_install_and_catalog(self, run, quiz_archive):
        result = run("install", str(quiz_archive), "--provenance", "curated")
        assert result.exit_code == 0, result.output
        assert "Installed H5P.Quiz@1.0.0" in result.output

        result = run("catalog", "--tenant", "t1", "--json")
        assert result.exit_code == 0, result.output
        entries = json.loads(result.stdout)
        assert [e["machineName"] for e in entries] == ["H5P.Quiz"]

    def test_install_custom_without_owner(self, run, quiz_archive):
        result = run("install", str(quiz_archive), "--provenance", "custom")
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_resolve(self, run, quiz_archive):
        run("install", str(quiz_archive))
        catalog = json.loads(run("catalog", "--tenant", "t1", "--json").stdout)

        result = run("resolve", str(catalog[0]["id"]), "--json")
        assert result.exit_code == 0, result.output
        items = json.loads(result.stdout)
        assert [i["machineName"] for i in items] == ["H5P.Core", "H5P.Quiz"]
        assert items[0]["js"] == ["/api/v1/libraries/H5P.Core-1.0.0/core.js"]

    def test_resolve_bad_edge_type(self, run, quiz_archive):
        run("install", str(quiz_archive))
        result = run("resolve", "1", "--edge-types", "required-at-lunch")
        assert result.exit_code == 1

    def test_delete_referenced(self, run, quiz_archive):
        run("install", str(quiz_archive))
        packages = {
            e["machineName"]: e["id"]
            for e in json.loads(run("catalog", "--tenant", "t1", "--json").stdout)
        }
        # Core is not runnable, so it is not in the catalog; it has the other id
        core_id = 3 - packages["H5P.Quiz"]

        result = run("delete", str(core_id))
        assert result.exit_code == 1
        assert "H5P.Quiz@1.0.0" in result.output

        assert run("delete", str(packages["H5P.Quiz"])).exit_code == 0
        assert run("delete", str(core_id)).exit_code == 0

    def test_overlay(self, run, quiz_archive):
        run("install", str(quiz_archive))
        quiz_id = json.loads(run("catalog", "--tenant", "t1", "--json").stdout)[0]["id"]

        result = run("overlay", "t1", str(quiz_id), "disable")
        assert result.exit_code == 0, result.output
        assert "enabled=False" in result.output
        assert json.loads(run("catalog", "--tenant", "t1", "--json").stdout) == []

    def test_resolve_by_name_respects_host_runtime(self, run, tmp_path, make_archive, make_library):
        """NAME@latest skips versions needing a newer host runtime than configured."""
        for version, core_api in (("1.0.0", (1, 20)), ("1.1.0", (1, 99))):
            path = tmp_path / f"quiz-{version}.h5p"
            path.write_bytes(
                make_archive([make_library("H5P.Quiz", version, runnable=True, core_api=core_api)])
            )
            assert run("install", str(path)).exit_code == 0

        latest = json.loads(run("resolve", "H5P.Quiz@latest", "--json").stdout)
        bare = json.loads(run("resolve", "H5P.Quiz", "--json").stdout)
        exact = json.loads(run("resolve", "H5P.Quiz@1.1.0", "--json").stdout)

        assert [i["version"] for i in latest] == ["1.0.0"]
        assert bare == latest
        assert [i["version"] for i in exact] == ["1.1.0"]

    def test_resolve_unknown_name(self, run):
        result = run("resolve", "H5P.Nope@latest")
        assert result.exit_code == 1
        assert "H5P.Nope" in result.output

    def test_install_needs_one_source(self, run, quiz_archive):
        assert run("install").exit_code == 1
        assert run("install", str(quiz_archive), "--from-hub", "H5P.Quiz").exit_code == 1


# ============================================================================
# Hub installs
# ============================================================================


@pytest.fixture
def fake_hub(monkeypatch, make_archive, make_library):
    """Route the CLI's upstream client to an in-memory hub."""
    archive = make_archive([make_library("H5P.Accordion", "1.0.5", runnable=True)])

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/content-types/H5P.Accordion":
            return httpx.Response(200, content=archive)
        return httpx.Response(404)

    build = RegistryServices.from_settings

    def from_settings(settings, **kwargs):
        upstream = UpstreamClient(
            hub_url=settings.hub_url,
            client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        return build(settings, upstream=upstream)

    monkeypatch.setattr(RegistryServices, "from_settings", staticmethod(from_settings))


class TestHubInstall:
    """Tests for install --from-hub."""

    def test_install_from_hub(self, run, fake_hub):
        result = run("install", "--from-hub", "H5P.Accordion")
        assert result.exit_code == 0, result.output
        assert "Installed H5P.Accordion@1.0.5" in result.output

        entries = json.loads(run("catalog", "--tenant", "t1", "--json").stdout)
        assert [(e["machineName"], e["provenance"]) for e in entries] == [
            ("H5P.Accordion", "upstream")
        ]

    def test_unknown_content_type(self, run, fake_hub):
        result = run("install", "--from-hub", "H5P.Missing")
        assert result.exit_code == 1
        assert "HTTP 404" in result.output
