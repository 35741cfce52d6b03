"""Global pytest fixtures and configuration."""

import asyncio
import gzip
import hashlib
import lzma
import sys
from pathlib import Path

import httpx
import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from flasher.config import Settings
from flasher.models.device import DeviceCatalog, DeviceProfile
from flasher.models.installer import FlashCommand, FlashOp, ImageSource, InstallerConfig
from flasher.models.status import CompressionKind
from flasher.services.decompress import Decompressor
from flasher.services.download import DownloadService
from flasher.services.flash import FlashExecutor
from flasher.services.pipeline import InstallPipeline
from flasher.services.process import ProcessResult
from flasher.services.prober import DeviceProber
from flasher.services.state_manager import DownloadStateStore
from flasher.services.verify import VerifyService

BASE_URL = "https://images.example.com"
SERIAL = "SER123"


class FakeRunner:
    """Scripted stand-in for ProcessRunner.

    Responses are registered per argument prefix; the longest matching
    prefix wins and, among equals, the most recent registration.
    """

    def __init__(self):
        self.calls: list[list[str]] = []
        self._responses: list[tuple[tuple[str, ...], object]] = []

    def on(
        self, *prefix: str, returncode: int = 0, stdout: str = "", stderr: str = "", raises=None, handler=None
    ):
        """Script a response. handler(args) may return (returncode, stdout, stderr)."""
        response = handler or raises or (returncode, stdout, stderr)
        self._responses.append((tuple(prefix), response))

    def script_bootloader(
        self,
        serial: str = SERIAL,
        product: str = "sargo",
        unlocked: str = "yes",
        battery: str = "80",
    ) -> None:
        """A single device sitting in fastboot mode; every fastboot command succeeds."""
        self.on("adb", "devices", stdout="List of devices attached\n")
        self.on("fastboot", "devices", stdout=f"{serial}\tfastboot\n")
        self.on("fastboot", "-s", serial, stderr="OKAY [  0.010s]\nFinished. Total time: 0.010s")
        self.on("fastboot", "-s", serial, "getvar", "product", stderr=f"product: {product}\nFinished.")
        self.on("fastboot", "-s", serial, "getvar", "unlocked", stderr=f"unlocked: {unlocked}\nFinished.")
        self.on(
            "fastboot", "-s", serial, "getvar", "battery-level",
            stderr=f"(bootloader) battery-level: {battery}\nFinished.",
        )

    def script_no_device(self) -> None:
        self.on("adb", "devices", stdout="List of devices attached\n")
        self.on("fastboot", "devices", stdout="")

    def commands(self, *prefix: str) -> list[list[str]]:
        return [c for c in self.calls if tuple(c[: len(prefix)]) == prefix]

    async def run(self, args, timeout=None, on_line=None) -> ProcessResult:
        self.calls.append(list(args))
        best = None
        for prefix, response in self._responses:
            if tuple(args[: len(prefix)]) == prefix and (best is None or len(prefix) >= len(best[0])):
                best = (prefix, response)
        if best is None:
            return ProcessResult(args=list(args), returncode=1, stderr="unscripted command")

        response = best[1]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = response(list(args))
        returncode, stdout, stderr = response
        if on_line is not None:
            for line in stdout.splitlines():
                on_line("stdout", line)
            for line in stderr.splitlines():
                on_line("stderr", line)
        return ProcessResult(args=list(args), returncode=returncode, stdout=stdout, stderr=stderr)


class ImageServer:
    """In-memory file server for httpx.MockTransport with byte-range support."""

    def __init__(self):
        self.files: dict[str, bytes] = {}
        self.statuses: dict[str, int] = {}
        self.requests: list[httpx.Request] = []
        self.accept_ranges = True

    def add(self, path: str, content: bytes) -> str:
        self.files[path] = content
        return f"{BASE_URL}/{path}"

    def fail(self, path: str, status_code: int) -> str:
        self.statuses[path] = status_code
        return f"{BASE_URL}/{path}"

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.lstrip("/")
        if path in self.statuses:
            return httpx.Response(self.statuses[path])
        if path not in self.files:
            return httpx.Response(404)

        content = self.files[path]
        range_header = request.headers.get("range")
        if range_header and self.accept_ranges:
            start = int(range_header.split("=")[1].split("-")[0])
            if start >= len(content):
                return httpx.Response(416)
            return httpx.Response(
                206,
                content=content[start:],
                headers={
                    "Content-Range": f"bytes {start}-{len(content) - 1}/{len(content)}",
                    "Accept-Ranges": "bytes",
                },
            )
        headers = {"Accept-Ranges": "bytes"} if self.accept_ranges else {}
        return httpx.Response(200, content=content, headers=headers)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def temp_dir(tmp_path):
    """Create a temporary directory for test files."""
    yield tmp_path


@pytest.fixture
def settings(tmp_path):
    """Fast settings rooted in a temporary directory."""
    return Settings(
        download_dir=tmp_path / "downloads",
        log_file=str(tmp_path / "logs" / "flasher.log"),
        poll_interval=0.01,
        probe_timeout=1.0,
        reboot_wait_timeout=0.05,
        reboot_wait_interval=0.01,
        chunk_size=1024,
        network_retry_backoff=0,
    )


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def catalog():
    return DeviceCatalog(
        [
            DeviceProfile(codename="sargo", name="Google Pixel 3a", maker="Google"),
            DeviceProfile(codename="FP4", name="Fairphone 4", maker="Fairphone", aliases=["fp4"]),
        ]
    )


@pytest.fixture
def image_server():
    return ImageServer()


@pytest.fixture
def make_image(image_server):
    """Factory: publish raw image bytes and return the matching ImageSource."""

    def make(name: str, raw: bytes, compression: CompressionKind = CompressionKind.GZIP) -> ImageSource:
        if compression == CompressionKind.GZIP:
            data, filename = gzip.compress(raw), f"{name}.img.gz"
        elif compression == CompressionKind.XZ:
            data, filename = lzma.compress(raw, format=lzma.FORMAT_XZ), f"{name}.img.xz"
        else:
            data, filename = raw, f"{name}.img"
        url = image_server.add(filename, data)
        return ImageSource(
            name=name,
            url=url,
            filename=filename,
            compression=compression,
            sha256=hashlib.sha256(raw).hexdigest(),
        )

    return make


@pytest.fixture
def make_config():
    """Factory: InstallerConfig flashing each image to the partition of the same name."""

    def make(images, commands=None, **kwargs) -> InstallerConfig:
        if commands is None:
            commands = [FlashCommand(op=FlashOp.FLASH, partition=i.name, image=i.name) for i in images]
        kwargs.setdefault("distro", "ubports")
        kwargs.setdefault("channel", "stable")
        return InstallerConfig(images=images, commands=commands, **kwargs)

    return make


@pytest.fixture
def prober(settings, fake_runner, catalog):
    return DeviceProber(settings=settings, runner=fake_runner, catalog=catalog)


@pytest.fixture
def pipeline(settings, prober, fake_runner, image_server):
    """InstallPipeline wired to the fake runner and the in-memory server."""
    return InstallPipeline(
        settings,
        downloader=DownloadService(
            settings, state_store=DownloadStateStore(), transport=image_server.transport
        ),
        decompressor=Decompressor(settings),
        verifier=VerifyService(settings),
        executor=FlashExecutor(prober, settings=settings, runner=fake_runner),
    )


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll predicate on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def until():
    return wait_until
