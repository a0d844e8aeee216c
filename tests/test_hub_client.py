"""Tests for the upstream hub client against a mocked transport."""

from __future__ import annotations

import json
import time
from urllib.parse import parse_qs

import httpx
import pytest

from h5pregistry.registry.errors import UpstreamFetchFailed
from h5pregistry.registry.hub_client import UpstreamClient
from h5pregistry.registry.models import Version

LISTING = {
    "contentTypes": [
        {
            "id": "H5P.Quiz",
            "version": {"major": 1, "minor": 17, "patch": 2},
            "coreApiVersionNeeded": {"major": 1, "minor": 24},
            "title": "Quiz (Question Set)",
            "summary": "Create a sequence of various question types",
            "description": "Longer text",
            "icon": "https://hub.test/icons/quiz.svg",
            "categories": ["Questions"],
            "keywords": ["quiz", "test"],
            "isRecommended": True,
        },
        {
            "id": "H5P.Blanks",
            "version": {"major": 1, "minor": 14, "patch": 0},
        },
    ]
}


def make_client(handler) -> UpstreamClient:
    return UpstreamClient(
        hub_url="https://hub.test/",
        site_uuid="site-1234",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


class TestFetchListing:
    """Tests for the content-type listing call."""

    def test_parses_entries(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json=LISTING)

        listing = make_client(handler).fetch_listing()

        assert seen["url"] == "https://hub.test/v1/content-types/"
        assert seen["form"]["uuid"] == ["site-1234"]
        assert seen["form"]["type"] == ["local"]
        quiz, blanks = listing.entries
        assert quiz.machine_name == "H5P.Quiz"
        assert quiz.version == Version(1, 17, 2)
        assert quiz.core_api == (1, 24)
        assert quiz.discovery["keywords"] == ["quiz", "test"]
        assert blanks.core_api == (1, 0)
        assert len(listing.digest) == 64

    def test_digest_tracks_body(self):
        bodies = [json.dumps(LISTING), json.dumps({"contentTypes": []})]

        def handler(request):
            return httpx.Response(200, content=bodies.pop(0).encode())

        client = make_client(handler)
        assert client.fetch_listing().digest != client.fetch_listing().digest

    def test_malformed_entry_skipped(self):
        payload = {"contentTypes": [LISTING["contentTypes"][0], {"id": "H5P.Bad"}]}
        listing = make_client(lambda r: httpx.Response(200, json=payload)).fetch_listing()
        assert [e.machine_name for e in listing.entries] == ["H5P.Quiz"]
        assert listing.skipped == ["H5P.Bad"]

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(503, text="unavailable"),
            httpx.Response(200, text="<html>"),
            httpx.Response(200, json={"unexpected": True}),
        ],
    )
    def test_bad_responses(self, response):
        with pytest.raises(UpstreamFetchFailed):
            make_client(lambda r: response).fetch_listing()

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(UpstreamFetchFailed, match="request failed"):
            make_client(handler).fetch_listing()


class TestDownload:
    """Tests for archive download."""

    def test_download(self):
        def handler(request):
            assert request.url.path == "/v1/content-types/H5P.Quiz"
            return httpx.Response(200, content=b"PK...")

        assert make_client(handler).download("H5P.Quiz") == b"PK..."

    def test_download_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(UpstreamFetchFailed) as exc_info:
            make_client(handler).download("H5P.Quiz")
        assert exc_info.value.identity == "H5P.Quiz"

    def test_download_404(self):
        with pytest.raises(UpstreamFetchFailed, match="HTTP 404"):
            make_client(lambda r: httpx.Response(404)).download("H5P.Nope")

    def test_slow_body_hits_total_deadline(self):
        """A body that keeps trickling in fails once the overall budget is spent."""

        class TrickleStream(httpx.SyncByteStream):
            def __iter__(self):
                for _ in range(20):
                    time.sleep(0.05)
                    yield b"x"

        client = make_client(lambda r: httpx.Response(200, stream=TrickleStream()))
        client.download_timeout = 0.2

        with pytest.raises(UpstreamFetchFailed, match="exceeded") as exc_info:
            client.download("H5P.Quiz")
        assert exc_info.value.identity == "H5P.Quiz"


def test_register():
    client = make_client(lambda r: httpx.Response(200, json={"uuid": "issued-uuid"}))
    assert client.register() == "issued-uuid"
