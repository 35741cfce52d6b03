"""FastAPI application for the flasher installer engine."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
import uvicorn

from flasher.api.routes import router
from flasher.config import Settings
from flasher.models.device import DeviceCatalog
from flasher.services.controller import WizardController
from flasher.services.decompress import Decompressor
from flasher.services.download import DownloadService
from flasher.services.flash import FlashExecutor
from flasher.services.monitor import DeviceMonitor
from flasher.services.pipeline import InstallPipeline
from flasher.services.process import ProcessRunner
from flasher.services.prober import DeviceProber
from flasher.services.state_manager import DownloadStateStore
from flasher.services.verify import VerifyService
from flasher.utils.logging import setup_logger

VERSION = "0.1.0"


def build_controller(settings: Settings, catalog: DeviceCatalog) -> WizardController:
    """Wire the services into a controller (not started)."""
    runner = ProcessRunner()
    prober = DeviceProber(settings=settings, runner=runner, catalog=catalog)
    monitor = DeviceMonitor(prober, settings=settings)
    pipeline = InstallPipeline(
        settings,
        downloader=DownloadService(settings, state_store=DownloadStateStore()),
        decompressor=Decompressor(settings),
        verifier=VerifyService(settings),
        executor=FlashExecutor(prober, settings=settings, runner=runner),
    )
    return WizardController(monitor, prober, pipeline, settings=settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown hooks.

    Startup:
    - Read settings from the environment
    - Initialize logger
    - Load the device catalog
    - Start the device monitor and the wizard controller

    Shutdown:
    - Cancel any running install and stop polling
    """
    settings = getattr(app.state, "settings", None) or Settings.from_env()
    logger = setup_logger("flasher", settings.log_file, level=logging.INFO)
    logger.info("Flasher starting up...")

    settings.download_dir.mkdir(parents=True, exist_ok=True)

    catalog = DeviceCatalog()
    if settings.catalog_path is not None:
        catalog = DeviceCatalog.from_file(settings.catalog_path)
    else:
        logger.warning("No device catalog configured (FLASHER_CATALOG), every device is unsupported")

    controller = build_controller(settings, catalog)
    app.state.settings = settings
    app.state.controller = controller

    controller.monitor.start()
    await controller.start()
    logger.info(f"Flasher ready on {settings.host}:{settings.port}")

    yield

    # Shutdown
    logger.info("Flasher shutting down...")
    await controller.stop()
    await controller.monitor.stop()


# Create FastAPI application
app = FastAPI(
    title="Flasher",
    description="Installer engine for flashing mobile operating systems",
    version=VERSION,
    lifespan=lifespan,
)

# Register API routes
app.include_router(router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "flasher", "version": VERSION}


def main():
    """Main entry point for running the server."""
    settings = Settings.from_env()
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level="info",
        access_log=True,
    )


if __name__ == "__main__":
    main()
