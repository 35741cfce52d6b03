"""Install pipeline: download → decompress → verify → flash."""

import asyncio
from pathlib import Path
from typing import Callable, Optional
import logging

from flasher.config import Settings
from flasher.errors import ChecksumNotListed, FlasherError, InternalError, StageCancelled
from flasher.models.installer import FlashCommand, FlashOp, ImageSource, InstallerConfig
from flasher.models.run import (
    InstallRun,
    LogEvent,
    PipelineEvent,
    ProgressEvent,
    RunFinishedEvent,
    StageStatusEvent,
)
from flasher.models.status import STAGE_ORDER, RunStatus, StageEnum, StageStatus
from flasher.services.decompress import Decompressor
from flasher.services.download import DownloadService
from flasher.services.flash import FlashExecutor
from flasher.services.verify import VerifyService

EventSink = Callable[[PipelineEvent], None]

# Emit a progress event after at least this much stage progress
PROGRESS_STEP = 0.005


class _StageProgress:
    """Aggregates per-item progress of one stage and emits throttled events."""

    def __init__(self, pipeline: "InstallPipeline", run: InstallRun, stage: StageEnum, keys: list[str]):
        self.pipeline = pipeline
        self.run = run
        self.stage = stage
        self.items: dict[str, tuple[int, Optional[int]]] = {k: (0, None) for k in keys}
        self._last_fraction = -1.0

    def update(self, key: str, done: int, total: Optional[int], detail: Optional[str] = None) -> None:
        self.items[key] = (done, total)
        state = self.run.stage(self.stage)
        state.bytes_done = sum(d for d, _ in self.items.values())
        totals = [t for _, t in self.items.values()]
        state.bytes_total = sum(totals) if all(t is not None for t in totals) else None

        fraction = self.fraction
        if fraction - self._last_fraction >= PROGRESS_STEP or fraction >= 1.0:
            self._last_fraction = fraction
            self.pipeline._emit_progress(self.run, self.stage, fraction, detail)

    @property
    def fraction(self) -> float:
        if not self.items:
            return 1.0
        parts = []
        for done, total in self.items.values():
            parts.append(min(done / total, 1.0) if total else 0.0)
        return sum(parts) / len(parts)


class InstallPipeline:
    """Runs the four stages of one InstallRun in strict order.

    Any stage failure fails the run and halts the remaining stages; nothing
    is retried here. Cancellation is cooperative through the run's
    cancel event.
    """

    def __init__(
        self,
        settings: Settings,
        downloader: DownloadService,
        decompressor: Decompressor,
        verifier: VerifyService,
        executor: FlashExecutor,
    ):
        self.logger = logging.getLogger("flasher.pipeline")
        self.settings = settings
        self.downloader = downloader
        self.decompressor = decompressor
        self.verifier = verifier
        self.executor = executor
        self._emit: EventSink = lambda event: None

    def workspace(self, config: InstallerConfig) -> Path:
        return self.settings.download_dir / config.workspace_name

    async def run(self, run: InstallRun, emit: Optional[EventSink] = None) -> InstallRun:
        """Execute the run to a terminal state and return it.

        Never raises for stage failures; the outcome is on the run and in
        the final RunFinishedEvent. ``failed_stage`` is also set for a run
        cancelled inside a stage.
        """
        self._emit = emit or (lambda event: None)
        workspace = self.workspace(run.config)
        handlers = {
            StageEnum.DOWNLOAD: self._download,
            StageEnum.DECOMPRESS: self._decompress,
            StageEnum.VERIFY: self._verify,
            StageEnum.FLASH: self._flash,
        }
        self.logger.info(
            f"Run {run.run_id} started: {run.config.distro}/{run.config.channel} on {run.serial}"
        )

        try:
            for stage in STAGE_ORDER:
                if run.cancelled:
                    run.status = RunStatus.CANCELLED
                    break
                if not await self._run_stage(run, stage, handlers[stage], workspace):
                    break
            else:
                run.status = RunStatus.SUCCEEDED
        except asyncio.CancelledError:
            active = run.active_stage
            if active is not None:
                run.finish_stage(active, StageStatus.CANCELLED)
                run.failed_stage = active
            run.status = RunStatus.CANCELLED
            self._finish(run)
            raise

        self._finish(run)
        return run

    async def _run_stage(self, run: InstallRun, stage: StageEnum, handler, workspace: Path) -> bool:
        run.start_stage(stage)
        self._emit(StageStatusEvent(run_id=run.run_id, stage=stage, status=StageStatus.RUNNING))
        self.logger.info(f"Stage {stage.value} started")

        try:
            await handler(run, workspace)
        except StageCancelled:
            self._end_stage(run, stage, StageStatus.CANCELLED)
            run.status = RunStatus.CANCELLED
            run.failed_stage = stage
            self.logger.info(f"Stage {stage.value} cancelled")
            return False
        except FlasherError as e:
            self._fail(run, stage, e)
            return False
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"Unexpected error in stage {stage.value}: {e}", exc_info=True)
            self._fail(run, stage, InternalError(f"{type(e).__name__}: {e}"))
            return False

        state = run.stage(stage)
        if state.bytes_total is not None:
            state.bytes_done = state.bytes_total
        self._emit_progress(run, stage, 1.0)
        self._end_stage(run, stage, StageStatus.SUCCEEDED)
        self.logger.info(f"Stage {stage.value} succeeded")
        return True

    def _end_stage(self, run: InstallRun, stage: StageEnum, status: StageStatus) -> None:
        run.finish_stage(stage, status)
        self._emit(StageStatusEvent(run_id=run.run_id, stage=stage, status=status))

    def _fail(self, run: InstallRun, stage: StageEnum, error: FlasherError) -> None:
        self.logger.error(f"Stage {stage.value} failed: {error}")
        self._end_stage(run, stage, StageStatus.FAILED)
        run.status = RunStatus.FAILED
        run.failed_stage = stage
        run.error = error

    def _finish(self, run: InstallRun) -> None:
        self.logger.info(f"Run {run.run_id} finished: {run.status.value}")
        self._emit(
            RunFinishedEvent(
                run_id=run.run_id,
                status=run.status,
                failed_stage=run.failed_stage,
                error=run.error,
            )
        )

    def overall_fraction(self, run: InstallRun, stage: StageEnum, stage_fraction: float) -> float:
        weights = self.settings.stage_weights
        done = sum(
            weights[s.stage] for s in run.stages if s.status == StageStatus.SUCCEEDED
        )
        if run.stage(stage).status != StageStatus.SUCCEEDED:
            done += weights[stage] * stage_fraction
        return max(0.0, min(done, 1.0))

    def _emit_progress(
        self, run: InstallRun, stage: StageEnum, stage_fraction: float, detail: Optional[str] = None
    ) -> None:
        state = run.stage(stage)
        self._emit(
            ProgressEvent(
                run_id=run.run_id,
                stage=stage,
                bytes_done=state.bytes_done,
                bytes_total=state.bytes_total,
                overall_fraction=self.overall_fraction(run, stage, stage_fraction),
                detail=detail,
            )
        )

    def _log(self, run: InstallRun, line: str) -> None:
        self._emit(LogEvent(run_id=run.run_id, line=line))

    async def _download(self, run: InstallRun, workspace: Path) -> None:
        images = run.config.images
        progress = _StageProgress(self, run, StageEnum.DOWNLOAD, [i.name for i in images])
        for image in images:
            if image.size:
                progress.items[image.name] = (0, image.size)

        for image in images:
            self._log(run, f"Downloading {image.filename} from {image.url}")

            def report(done: int, total: Optional[int], name: str = image.name) -> None:
                progress.update(name, done, total or progress.items[name][1], detail=name)

            kwargs = dict(
                resume=self.settings.resume_downloads,
                cancel_event=run.cancel_event,
                on_progress=report,
                expected_size=image.size,
            )
            dest = workspace / image.filename
            if image.download_sha256:
                await self.downloader.download_if_needed(
                    image.url, dest, expected_sha256=image.download_sha256, **kwargs
                )
            else:
                await self.downloader.download(image.url, dest, **kwargs)

    async def _decompress(self, run: InstallRun, workspace: Path) -> None:
        images = run.config.images
        progress = _StageProgress(self, run, StageEnum.DECOMPRESS, [i.name for i in images])
        for image in images:
            self._log(run, f"Decompressing {image.filename} ({image.compression.value})")

            def report(done: int, total: Optional[int], name: str = image.name) -> None:
                progress.update(name, done, total, detail=name)

            await self.decompressor.decompress(
                workspace / image.filename,
                workspace / image.image_filename,
                image.compression,
                cancel_event=run.cancel_event,
                on_progress=report,
            )

    async def _resolve_digest(
        self, image: ImageSource, workspace: Path, listings: dict[str, dict[str, str]]
    ) -> tuple[Path, str]:
        """Pick the file to hash and its expected digest.

        A checksum file may list the decompressed image or the download; a
        bare digest (one ``.sha256`` hash) applies to the download.
        """
        if image.sha256:
            return workspace / image.image_filename, image.sha256

        url = image.checksum_url
        if url not in listings:
            listings[url] = await self.downloader.fetch_checksums(url)
        listed = listings[url]
        if image.image_filename in listed:
            return workspace / image.image_filename, listed[image.image_filename]
        if image.filename in listed:
            return workspace / image.filename, listed[image.filename]
        if list(listed) == [""]:
            return workspace / image.filename, listed[""]
        raise ChecksumNotListed(image.image_filename, url)

    async def _verify(self, run: InstallRun, workspace: Path) -> None:
        images = run.config.images
        progress = _StageProgress(self, run, StageEnum.VERIFY, [i.name for i in images])
        listings: dict[str, dict[str, str]] = {}
        for image in images:
            path, expected = await self._resolve_digest(image, workspace, listings)
            self._log(run, f"Verifying {path.name}")

            def report(done: int, total: Optional[int], name: str = image.name) -> None:
                progress.update(name, done, total, detail=name)

            await self.verifier.verify(
                path,
                expected,
                cancel_event=run.cancel_event,
                on_progress=report,
            )
            self._log(run, f"Checksum OK: {path.name}")

    async def _flash(self, run: InstallRun, workspace: Path) -> None:
        config = run.config
        commands = list(config.commands)
        if config.reboot_after and commands[-1].op not in (FlashOp.REBOOT, FlashOp.REBOOT_RECOVERY):
            commands.append(FlashCommand(op=FlashOp.REBOOT, description="Rebooting device"))

        images = {i.name: workspace / i.image_filename for i in config.images}
        progress = _StageProgress(self, run, StageEnum.FLASH, ["commands"])
        progress.items["commands"] = (0, len(commands))

        def report(done: int, total: int, label: str) -> None:
            progress.update("commands", done, total, detail=label)

        await self.executor.execute(
            run.serial,
            commands,
            images,
            cancel_event=run.cancel_event,
            on_log=lambda line: self._log(run, line),
            on_progress=report,
        )
