"""Mirror Sync: pull new upstream versions into the store.

One run:
1. Fetch the hub listing. On failure, record the error on the cursor and
   report it; the run ends there.
2. For each entry, compare with the highest stored version of that name,
   whatever its provenance; download and install when the entry is new or
   higher.
3. Save the cursor digest and timestamp. A cancelled run only records the
   attempt, so the next run treats the listing as unsynced.

Per-entry failures are collected in the report and never abort the run.
Runs never overlap: a trigger while one is in progress returns a skipped
report immediately. cancel() is honoured between entries only; an install
that has started always finishes.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timezone

import httpx

from h5pregistry.registry.errors import RegistryError, UpstreamFetchFailed
from h5pregistry.registry.hub_client import HubEntry, UpstreamClient
from h5pregistry.registry.installer import PackageInstaller
from h5pregistry.registry.models import InstallResult, Provenance, SyncFailure, SyncReport
from h5pregistry.registry.store import PackageStore

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class MirrorSync:
    """Synchronises upstream packages from the hub.

    Usage:
        mirror = MirrorSync(store, installer, client)
        report = mirror.sync()
        mirror.install_one("H5P.Quiz")
    """

    def __init__(
        self,
        store: PackageStore,
        installer: PackageInstaller,
        client: UpstreamClient,
        source: str | None = None,
    ):
        self.store = store
        self.installer = installer
        self.client = client
        self.source = source or client.hub_url
        self._run_lock = threading.Lock()
        self._cancel = threading.Event()
        self.last_report: SyncReport | None = None

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def cancel(self) -> bool:
        """Ask the running sync to stop before its next entry.

        Returns:
            True if a sync was running and has been asked to stop
        """
        if not self.is_running:
            return False
        self._cancel.set()
        logger.info("Mirror sync cancellation requested")
        return True

    def status(self) -> dict:
        return {
            "running": self.is_running,
            "cursor": self.store.get_cursor(self.source).to_dict(),
            "last_report": self.last_report.to_dict() if self.last_report else None,
        }

    def sync(self) -> SyncReport:
        """Run one sync. Never raises for upstream or per-entry problems."""
        if not self._run_lock.acquire(blocking=False):
            logger.info("Mirror sync already running; skipping")
            return SyncReport(skipped=True, started_at=_now(), finished_at=_now())

        try:
            self._cancel.clear()
            report = self._run()
            self.last_report = report
            return report
        finally:
            self._run_lock.release()

    def install_one(self, machine_name: str) -> InstallResult:
        """Download one content type from the hub and install it as upstream.

        Does not take the sync lock; identity locks in the installer keep
        it safe alongside a running sync.

        Raises:
            UpstreamFetchFailed: If the download fails
            InvalidPackage, ConflictingReplacement: From the installer
        """
        result = self._fetch_and_install(machine_name)
        logger.info(f"Installed {result.identity} from {self.source}: {result.status}")
        return result

    def _fetch_and_install(self, machine_name: str, discovery: dict | None = None) -> InstallResult:
        try:
            data = self.client.download(machine_name)
        except httpx.HTTPError as e:
            raise UpstreamFetchFailed(f"Download failed: {e}", machine_name) from e
        return self.installer.install(data, Provenance.UPSTREAM, discovery=discovery)

    def _run(self) -> SyncReport:
        report = SyncReport(started_at=_now())
        cursor = self.store.get_cursor(self.source)
        cursor.last_attempt_at = report.started_at

        try:
            listing = self.client.fetch_listing()
        except RegistryError as e:
            logger.error(f"Mirror listing from {self.source} failed: {e}")
            cursor.last_error = str(e)
            self.store.save_cursor(cursor)
            report.listing_error = str(e)
            report.finished_at = _now()
            return report

        for entry in sorted(listing.entries, key=lambda e: e.machine_name):
            if self._cancel.is_set():
                logger.info("Mirror sync cancelled")
                report.cancelled = True
                break
            self._sync_entry(entry, report)

        for name in listing.skipped:
            report.failed.append(SyncFailure(name, "Malformed hub entry", "invalid_package"))

        if not report.cancelled:
            cursor.last_digest = listing.digest
            cursor.last_synced_at = _now()
            cursor.last_error = None
        self.store.save_cursor(cursor)

        report.finished_at = _now()
        logger.info(
            f"Mirror sync finished: {len(report.added)} added, {len(report.updated)} updated, "
            f"{len(report.unchanged)} unchanged, {len(report.failed)} failed"
        )
        return report

    def _sync_entry(self, entry: HubEntry, report: SyncReport) -> None:
        label = f"{entry.machine_name}@{entry.version}"
        stored = self.store.list_versions(entry.machine_name)
        current = stored[0].version if stored else None
        if current is not None and entry.version <= current:
            report.unchanged.append(label)
            return

        try:
            result = self._fetch_and_install(entry.machine_name, entry.discovery)
        except RegistryError as e:
            logger.warning(f"Mirror entry {label} failed: {e}")
            report.failed.append(SyncFailure(label, str(e), e.code))
            return

        if result.identity.version != entry.version:
            logger.warning(f"Hub listed {label} but served {result.identity}")
        installed = f"{result.identity.name}@{result.identity.version}"
        if result.status == "unchanged":
            report.unchanged.append(installed)
        elif current is None:
            report.added.append(installed)
        else:
            report.updated.append(installed)


class MirrorScheduler:
    """Periodic Mirror Sync trigger.

    Runs as an asyncio task started from the FastAPI lifespan; each sync
    runs in a worker thread. An interval of 0 disables it.
    """

    def __init__(self, mirror: MirrorSync, interval_seconds: float):
        self._mirror = mirror
        self._interval = interval_seconds
        self._shutdown = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._interval <= 0:
            logger.info("Mirror scheduler disabled (sync_interval_seconds = 0)")
            return
        if self._task is not None:
            logger.warning("Mirror scheduler already started")
            return
        self._task = asyncio.create_task(self._run_loop(), name="mirror-scheduler")
        logger.info(f"Mirror scheduler started (every {self._interval}s)")

    async def stop(self, timeout: float = 30.0) -> None:
        if self._task is None:
            return
        self._shutdown.set()
        self._mirror.cancel()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Mirror scheduler did not stop in time, cancelling")
            self._task.cancel()
        self._task = None
        logger.info("Mirror scheduler stopped")

    async def _run_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                await asyncio.to_thread(self._mirror.sync)
            except Exception as e:
                logger.exception(f"Scheduled mirror sync crashed: {e}")
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
