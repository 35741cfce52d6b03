"""Streaming gzip/xz decompression of downloaded images."""

import asyncio
import lzma
import shutil
import zlib
from pathlib import Path
from typing import Callable, Optional
import logging

import aiofiles

from flasher.config import Settings
from flasher.errors import CorruptArchiveError, FlasherError, StageCancelled, StorageIOError
from flasher.models.status import CompressionKind

ProgressCallback = Callable[[int, Optional[int]], None]


class _StreamDecoder:
    """Incremental decoder that handles concatenated gzip members / xz streams."""

    def __init__(self, kind: CompressionKind):
        self.kind = kind
        self._decoder = self._new_decoder()

    def _new_decoder(self):
        if self.kind == CompressionKind.GZIP:
            return zlib.decompressobj(wbits=zlib.MAX_WBITS | 16)
        return lzma.LZMADecompressor(format=lzma.FORMAT_XZ)

    def _at_end(self) -> bool:
        return self._decoder.eof

    def _unused(self) -> bytes:
        return self._decoder.unused_data

    def feed(self, data: bytes) -> bytes:
        out = []
        while data:
            if self._at_end():
                # Trailing padding after the last member is ignored
                if not data.strip(b"\x00"):
                    return b"".join(out)
                self._decoder = self._new_decoder()
            out.append(self._decoder.decompress(data))
            data = self._unused() if self._at_end() else b""
        return b"".join(out)

    def finish(self) -> bytes:
        if not self._at_end():
            raise EOFError("compressed stream is truncated")
        if self.kind == CompressionKind.GZIP:
            return self._decoder.flush()
        return b""


class Decompressor:
    """Decompresses an archive to a raw image, reporting compressed bytes consumed."""

    def __init__(self, settings: Optional[Settings] = None):
        self.logger = logging.getLogger("flasher.decompress")
        self.settings = settings or Settings()
        self.chunk_size = self.settings.chunk_size

    async def decompress(
        self,
        src_path: Path,
        dest_path: Path,
        kind: CompressionKind,
        cancel_event: Optional[asyncio.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        """Decompress src_path into dest_path.

        Progress is (compressed bytes read, compressed file size); the
        decompressed size is not known up front.

        Raises:
            CorruptArchiveError: Decoder reported corruption or truncation
            StorageIOError: Read or write failure
            StageCancelled: cancel_event was set
        """
        try:
            total = src_path.stat().st_size
        except OSError as e:
            raise StorageIOError(f"cannot read {src_path}: {e}") from e

        if kind == CompressionKind.NONE:
            return await self._passthrough(src_path, dest_path, total, on_progress)

        self.logger.info(f"Decompressing {kind.value.upper()}: {src_path} -> {dest_path}")
        decoder = _StreamDecoder(kind)
        consumed = 0
        written = 0
        if on_progress is not None:
            on_progress(0, total)

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(src_path, "rb") as src, aiofiles.open(dest_path, "wb") as dst:
                while True:
                    if cancel_event is not None and cancel_event.is_set():
                        raise StageCancelled()
                    chunk = await src.read(self.chunk_size)
                    if not chunk:
                        break
                    data = await asyncio.to_thread(decoder.feed, chunk)
                    if data:
                        await dst.write(data)
                        written += len(data)
                    consumed += len(chunk)
                    if on_progress is not None:
                        on_progress(consumed, total)
                tail = decoder.finish()
                if tail:
                    await dst.write(tail)
                    written += len(tail)
        except StageCancelled:
            self.logger.info("Decompression cancelled, removing partial output")
            dest_path.unlink(missing_ok=True)
            raise
        except (zlib.error, lzma.LZMAError, EOFError) as e:
            self.logger.error(f"Corrupt archive {src_path.name}: {e}")
            dest_path.unlink(missing_ok=True)
            raise CorruptArchiveError(f"{src_path.name}: {e}") from e
        except FlasherError:
            dest_path.unlink(missing_ok=True)
            raise
        except OSError as e:
            self.logger.error(f"Decompression I/O failure: {e}", exc_info=True)
            dest_path.unlink(missing_ok=True)
            raise StorageIOError(f"decompressing {src_path.name}: {e}") from e

        self.logger.info(f"Decompressed {written} bytes to {dest_path}")
        return dest_path

    async def _passthrough(
        self,
        src_path: Path,
        dest_path: Path,
        total: int,
        on_progress: Optional[ProgressCallback],
    ) -> Path:
        self.logger.debug(f"File {src_path.name} is not compressed")
        if src_path != dest_path:
            try:
                await asyncio.to_thread(shutil.copyfile, src_path, dest_path)
            except OSError as e:
                dest_path.unlink(missing_ok=True)
                raise StorageIOError(f"copying {src_path.name}: {e}") from e
        if on_progress is not None:
            on_progress(total, total)
        return dest_path
