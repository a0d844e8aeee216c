"""Upstream hub client.

Speaks the content-type hub protocol:
- POST {hub}/v1/content-types/ with the site's registration form fields
  returns {"contentTypes": [...]}
- GET {hub}/v1/content-types/{machineName} returns the latest archive
- POST {hub}/v1/sites registers the site and returns its uuid

Every transport or shape problem surfaces as UpstreamFetchFailed.
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field

import httpx

from h5pregistry import __version__
from h5pregistry.registry.errors import UpstreamFetchFailed
from h5pregistry.registry.models import Version

logger = logging.getLogger(__name__)

DEFAULT_HUB_URL = "https://hub-api.h5p.org"
CORE_API_VERSION = "1.26"


@dataclass
class HubEntry:
    """One content type in a hub listing."""

    machine_name: str
    version: Version
    core_api: tuple[int, int] = (1, 0)
    title: str = ""
    summary: str = ""
    description: str = ""
    icon: str | None = None
    categories: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)

    @property
    def discovery(self) -> dict:
        """Catalog metadata to pass to the installer."""
        return {
            "title": self.title,
            "summary": self.summary,
            "description": self.description,
            "icon": self.icon,
            "categories": list(self.categories),
            "keywords": list(self.keywords),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HubEntry":
        """Parse a hub contentTypes item.

        Raises:
            ValueError/KeyError/TypeError: On a malformed item
        """
        version = data["version"]
        core = data.get("coreApiVersionNeeded") or {}
        return cls(
            machine_name=str(data["id"]),
            version=Version(int(version["major"]), int(version["minor"]), int(version["patch"])),
            core_api=(int(core.get("major", 1)), int(core.get("minor", 0))),
            title=str(data.get("title") or ""),
            summary=str(data.get("summary") or ""),
            description=str(data.get("description") or ""),
            icon=data.get("icon"),
            categories=[str(c) for c in data.get("categories") or []],
            keywords=[str(k) for k in data.get("keywords") or []],
        )


@dataclass
class HubListing:
    """Parsed listing plus the digest of its raw body."""

    entries: list[HubEntry]
    digest: str
    skipped: list[str] = field(default_factory=list)


class UpstreamClient:
    """Synchronous hub client.

    Usage:
        client = UpstreamClient(settings.hub_url, site_uuid=settings.site_uuid)
        listing = client.fetch_listing()
        data = client.download("H5P.Quiz")
    """

    def __init__(
        self,
        hub_url: str = DEFAULT_HUB_URL,
        site_uuid: str = "",
        platform_name: str = "h5pregistry",
        timeout: float = 30.0,
        download_timeout: float = 300.0,
        client: httpx.Client | None = None,
    ):
        self.hub_url = hub_url.rstrip("/")
        self.site_uuid = site_uuid
        self.platform_name = platform_name
        self.timeout = timeout
        self.download_timeout = download_timeout
        self._client = client or httpx.Client(follow_redirects=True)

    def close(self) -> None:
        self._client.close()

    def _form(self) -> dict:
        return {
            "uuid": self.site_uuid,
            "platform_name": self.platform_name,
            "platform_version": __version__,
            "h5p_version": __version__,
            "type": "local",
            "core_api_version": CORE_API_VERSION,
        }

    def fetch_listing(self) -> HubListing:
        """Fetch and parse the content-type listing.

        Malformed individual items are skipped and logged; a malformed
        envelope fails the whole listing.

        Raises:
            UpstreamFetchFailed: On transport errors, non-2xx or bad JSON
        """
        url = f"{self.hub_url}/v1/content-types/"
        try:
            response = self._client.post(url, data=self._form(), timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise UpstreamFetchFailed(
                f"Hub listing returned HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamFetchFailed(f"Hub listing request failed: {e}") from e
        except ValueError as e:
            raise UpstreamFetchFailed(f"Hub listing is not valid JSON: {e}") from e

        items = payload.get("contentTypes") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            raise UpstreamFetchFailed("Hub listing has no contentTypes array")

        entries = []
        skipped = []
        for item in items:
            try:
                entries.append(HubEntry.from_dict(item))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                item_id = item.get("id", "?") if isinstance(item, dict) else "?"
                logger.warning(f"Skipping malformed hub entry {item_id}: {e}")
                skipped.append(str(item_id))

        return HubListing(
            entries=entries,
            digest=hashlib.sha256(response.content).hexdigest(),
            skipped=skipped,
        )

    def download(self, machine_name: str) -> bytes:
        """Download the latest archive of a content type.

        The body is streamed; `timeout` bounds each connect/read step and
        `download_timeout` bounds the whole transfer.

        Raises:
            UpstreamFetchFailed: On transport errors, timeouts or non-2xx
        """
        url = f"{self.hub_url}/v1/content-types/{machine_name}"
        deadline = time.monotonic() + self.download_timeout
        chunks = []
        try:
            with self._client.stream("GET", url, timeout=self.timeout) as response:
                response.raise_for_status()
                for chunk in response.iter_bytes():
                    chunks.append(chunk)
                    if time.monotonic() > deadline:
                        raise UpstreamFetchFailed(
                            f"Download exceeded {self.download_timeout}s", machine_name
                        )
        except httpx.HTTPStatusError as e:
            raise UpstreamFetchFailed(
                f"Download returned HTTP {e.response.status_code}", machine_name
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamFetchFailed(f"Download failed: {e}", machine_name) from e

        data = b"".join(chunks)
        logger.debug(f"Downloaded {machine_name} ({len(data)} bytes)")
        return data

    def register(self) -> str:
        """Register this site with the hub; returns the issued uuid.

        Raises:
            UpstreamFetchFailed: On any failure
        """
        url = f"{self.hub_url}/v1/sites"
        try:
            response = self._client.post(url, data=self._form(), timeout=self.timeout)
            response.raise_for_status()
            uuid = response.json().get("uuid")
        except httpx.HTTPError as e:
            raise UpstreamFetchFailed(f"Site registration failed: {e}") from e
        except (ValueError, AttributeError) as e:
            raise UpstreamFetchFailed(f"Site registration returned bad JSON: {e}") from e
        if not uuid:
            raise UpstreamFetchFailed("Site registration returned no uuid")
        return str(uuid)
