"""Streaming SHA-256 verification of decompressed images."""

import asyncio
import hashlib
from pathlib import Path
from typing import Callable, Optional
import logging

import aiofiles

from flasher.config import Settings
from flasher.errors import ChecksumMismatch, StageCancelled, StorageIOError
from flasher.utils.verification import validate_sha256

ProgressCallback = Callable[[int, Optional[int]], None]


class VerifyService:
    """Hashes a file once and compares it against the expected digest."""

    def __init__(self, settings: Optional[Settings] = None):
        self.logger = logging.getLogger("flasher.verify")
        self.chunk_size = (settings or Settings()).chunk_size

    async def verify(
        self,
        path: Path,
        expected_sha256: str,
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        """Verify path against expected_sha256 (case-insensitive).

        Returns:
            The computed hex digest

        Raises:
            ValueError: If expected_sha256 is not a 64-char hex string
            ChecksumMismatch: Digest differs; never retried
            StorageIOError: File cannot be read
            StageCancelled: cancel_event was set
        """
        expected = validate_sha256(expected_sha256)
        sha256 = hashlib.sha256()
        done = 0

        try:
            total = path.stat().st_size
            if on_progress is not None:
                on_progress(0, total)
            async with aiofiles.open(path, "rb") as f:
                while True:
                    if cancel_event is not None and cancel_event.is_set():
                        raise StageCancelled()
                    chunk = await f.read(self.chunk_size)
                    if not chunk:
                        break
                    sha256.update(chunk)
                    done += len(chunk)
                    if on_progress is not None:
                        on_progress(done, total)
        except OSError as e:
            self.logger.error(f"Failed to read {path}: {e}")
            raise StorageIOError(f"cannot read {path}: {e}") from e

        actual = sha256.hexdigest()
        if actual != expected:
            self.logger.error(f"SHA-256 mismatch for {path.name}: expected {expected}, got {actual}")
            raise ChecksumMismatch(expected=expected, actual=actual, path=str(path))

        self.logger.info(f"SHA-256 verification passed for {path.name}")
        return actual
