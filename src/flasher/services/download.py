"""Download service with resumable, cancellable HTTP downloads."""

import asyncio
import re
from pathlib import Path
from typing import Callable, Optional
import logging

import httpx
import aiofiles

from flasher.config import Settings
from flasher.errors import (
    FlasherError,
    HttpStatusError,
    NetworkError,
    StageCancelled,
    StorageIOError,
)
from flasher.models.state import DownloadState
from flasher.services.state_manager import DownloadStateStore
from flasher.utils.verification import parse_checksum_file, verify_sha256

USER_AGENT = "flasher/0.1.0"

ProgressCallback = Callable[[int, Optional[int]], None]

_CONTENT_RANGE = re.compile(r"bytes\s+\d+-\d+/(\d+)")


class _RangeNotSatisfiable(Exception):
    pass


class DownloadService:
    """Streams remote images to disk with progress reporting.

    Partial data goes to ``<dest>.part`` and is renamed on completion.
    No retry happens here; a failed transfer is reported to the caller.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        state_store: Optional[DownloadStateStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize download service.

        Args:
            settings: Engine settings (timeouts, chunk size)
            state_store: Resume record store
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        self.logger = logging.getLogger("flasher.download")
        self.settings = settings or Settings()
        self.state_store = state_store or DownloadStateStore()
        self.transport = transport
        self.chunk_size = self.settings.chunk_size  # progress granularity

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.settings.http_timeout,
            transport=self.transport,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )

    async def download_if_needed(
        self,
        url: str,
        dest_path: Path,
        expected_sha256: Optional[str] = None,
        resume: bool = True,
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
        expected_size: Optional[int] = None,
    ) -> Path:
        """Skip the transfer when a usable copy is already on disk.

        With a digest the cached file must match it; without one any
        non-empty file is trusted.
        """
        if dest_path.exists():
            size = dest_path.stat().st_size
            if expected_sha256:
                matches = await asyncio.to_thread(verify_sha256, dest_path, expected_sha256)
                if matches:
                    self.logger.info(
                        f"Skipping download of {dest_path.name}: cached copy matches checksum"
                    )
                    if on_progress is not None:
                        on_progress(size, size)
                    return dest_path
                self.logger.info(f"Cached {dest_path.name} has wrong checksum, re-downloading")
            elif size > 0:
                self.logger.info(f"Skipping download of {dest_path.name}: cached copy exists")
                if on_progress is not None:
                    on_progress(size, size)
                return dest_path
            dest_path.unlink(missing_ok=True)

        return await self.download(
            url,
            dest_path,
            resume=resume,
            cancel_event=cancel_event,
            on_progress=on_progress,
            expected_size=expected_size,
        )

    async def download(
        self,
        url: str,
        dest_path: Path,
        resume: bool = True,
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
        expected_size: Optional[int] = None,
    ) -> Path:
        """Download url to dest_path.

        Args:
            url: HTTP(S) URL
            dest_path: Final file path
            resume: Continue an earlier partial download of the same URL
            cancel_event: Checked after every chunk
            on_progress: Called with (bytes_done, bytes_total or None)
            expected_size: Total used for progress when the server omits it

        Returns:
            dest_path

        Raises:
            NetworkError: Connection, DNS, timeout or protocol failure
            HttpStatusError: Non-2xx response
            StorageIOError: Disk write failure
            StageCancelled: cancel_event was set
        """
        part_path = dest_path.with_name(dest_path.name + ".part")
        self.logger.info(f"Starting download: url={url}, dest={dest_path}")

        if cancel_event is not None and cancel_event.is_set():
            raise StageCancelled()

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            offset = self._resume_offset(url, part_path, resume)

            async with self._client() as client:
                try:
                    await self._transfer(
                        client, url, part_path, offset, resume,
                        cancel_event, on_progress, expected_size,
                    )
                except _RangeNotSatisfiable:
                    self.logger.warning("Server rejected resume range, restarting from zero")
                    self._discard(part_path)
                    await self._transfer(
                        client, url, part_path, 0, resume,
                        cancel_event, on_progress, expected_size,
                    )

            part_path.replace(dest_path)
            self.state_store.delete_state(part_path)
        except FlasherError:
            raise
        except httpx.HTTPError as e:
            self.logger.error(f"Download failed: {e}")
            raise NetworkError(f"{type(e).__name__}: {e}", url=url) from e
        except OSError as e:
            self.logger.error(f"Download failed writing {part_path}: {e}", exc_info=True)
            raise StorageIOError(f"cannot write {part_path}: {e}") from e

        self.logger.info(f"Download complete: {dest_path}")
        return dest_path

    async def fetch_checksums(self, url: str) -> dict[str, str]:
        """Download and parse a SHA256SUMS-style file.

        Raises:
            NetworkError: Connection failure
            HttpStatusError: Non-2xx response
        """
        self.logger.debug(f"Downloading checksums from {url}")
        try:
            async with self._client() as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            raise NetworkError(f"{type(e).__name__}: {e}", url=url) from e
        if not response.is_success:
            raise HttpStatusError(response.status_code, url)
        return parse_checksum_file(response.text)

    def _resume_offset(self, url: str, part_path: Path, resume: bool) -> int:
        if not part_path.exists():
            return 0
        size = part_path.stat().st_size
        state = self.state_store.load_state(part_path) if resume else None
        if state is not None and state.can_resume(url, size):
            self.logger.info(f"Resuming download from byte {size}")
            return size
        self.logger.info(f"Discarding stale partial file {part_path.name}")
        self._discard(part_path)
        return 0

    def _discard(self, part_path: Path) -> None:
        part_path.unlink(missing_ok=True)
        self.state_store.delete_state(part_path)

    async def _transfer(
        self,
        client: httpx.AsyncClient,
        url: str,
        part_path: Path,
        offset: int,
        resume: bool,
        cancel_event: Optional[asyncio.Event],
        on_progress: Optional[ProgressCallback],
        expected_size: Optional[int],
    ) -> None:
        headers = {}
        if offset > 0:
            headers["Range"] = f"bytes={offset}-"

        async with client.stream("GET", url, headers=headers) as response:
            if offset > 0 and response.status_code == 416:
                raise _RangeNotSatisfiable()
            if not response.is_success:
                self.logger.error(f"HTTP {response.status_code} for {url}")
                raise HttpStatusError(response.status_code, url)
            if offset > 0 and response.status_code != 206:
                self.logger.info("Server ignored the range request, restarting from zero")
                offset = 0

            total = self._total_size(response, offset) or expected_size
            accept_ranges = (
                response.status_code == 206
                or response.headers.get("accept-ranges", "").lower() == "bytes"
            )
            state = DownloadState(
                url=url,
                part_name=part_path.name,
                bytes_downloaded=offset,
                bytes_total=total,
                accept_ranges=accept_ranges,
            )
            if resume:
                self.state_store.save_state(part_path, state)

            bytes_done = offset
            if on_progress is not None:
                on_progress(bytes_done, total)

            cancelled = False
            # Open file in append mode if resuming, write mode if starting fresh
            mode = "ab" if offset > 0 else "wb"
            async with aiofiles.open(part_path, mode) as f:
                last_saved = -1
                async for chunk in response.aiter_bytes(chunk_size=self.chunk_size):
                    await f.write(chunk)
                    bytes_done += len(chunk)
                    if on_progress is not None:
                        on_progress(bytes_done, total)

                    # Save persistent state every 5% for resume capability
                    if resume and total:
                        current = int(bytes_done * 100 / total)
                        if current >= last_saved + 5:
                            last_saved = current
                            self.logger.debug(
                                f"Download progress: {current}% ({bytes_done}/{total} bytes)"
                            )
                            self.state_store.save_state(
                                part_path, state.model_copy(update={"bytes_downloaded": bytes_done})
                            )

                    if cancel_event is not None and cancel_event.is_set():
                        cancelled = True
                        break

        if cancelled:
            if resume and accept_ranges:
                self.state_store.save_state(
                    part_path, state.model_copy(update={"bytes_downloaded": bytes_done})
                )
                self.logger.info(
                    f"Download cancelled at {bytes_done} bytes, keeping partial file for resume"
                )
            else:
                self._discard(part_path)
                self.logger.info("Download cancelled, partial file discarded")
            raise StageCancelled()

        self.logger.info(f"Downloaded {bytes_done} bytes")

    @staticmethod
    def _total_size(response: httpx.Response, offset: int) -> Optional[int]:
        content_range = response.headers.get("content-range")
        if content_range:
            match = _CONTENT_RANGE.match(content_range)
            if match:
                return int(match.group(1))
        length = response.headers.get("content-length")
        if length and length.isdigit():
            return int(length) + (offset if response.status_code == 206 else 0)
        return None
