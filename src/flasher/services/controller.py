"""Wizard controller: owns the live wizard state and runs its effects."""

import asyncio
from collections import deque
from typing import Optional
import logging

from flasher.config import Settings
from flasher.errors import (
    FlasherError,
    InternalError,
    InvalidTransition,
    NetworkError,
    PrerequisiteNotMet,
)
from flasher.models.device import UnlockingStep
from flasher.models.events import (
    CancelInstall,
    CompleteUnlockStep,
    DeviceAppeared,
    PrerequisitesEvaluated,
    RecheckPrerequisites,
    Reset,
    Retry,
    RunFinished,
    RunStarted,
    UnlockStepFinished,
)
from flasher.models.run import (
    InstallRun,
    LogEvent,
    PipelineEvent,
    ProgressEvent,
    RunFinishedEvent,
    StageStatusEvent,
)
from flasher.models.status import PrerequisiteKind, RunStatus, StageEnum, WizardStep
from flasher.models.wizard import FailureInfo, WizardState
from flasher.services.monitor import DeviceMonitor, Subscription
from flasher.services.pipeline import InstallPipeline
from flasher.services.prerequisites import evaluate_prerequisites
from flasher.services.prober import DeviceProber
from flasher.services.wizard import transition
from flasher.utils.logging import ToolLogBuffer, tool_logger


class WizardController:
    """Applies events to the wizard state on the event loop.

    All mutation happens on one loop, so there are no locks. Device events
    arrive through a monitor subscription, pipeline events through the
    run's emit callback and user commands through ``dispatch()``.
    """

    def __init__(
        self,
        monitor: DeviceMonitor,
        prober: DeviceProber,
        pipeline: InstallPipeline,
        settings: Optional[Settings] = None,
    ):
        self.logger = logging.getLogger("flasher.controller")
        self.monitor = monitor
        self.prober = prober
        self.pipeline = pipeline
        self.settings = settings or prober.settings

        self.state = WizardState()
        self.run: Optional[InstallRun] = None
        self.progress: Optional[ProgressEvent] = None
        self.tool_log = ToolLogBuffer(self.settings.log_buffer_lines)
        self.tool_logger = tool_logger()

        self._run_task: Optional[asyncio.Task] = None
        self._consumer_task: Optional[asyncio.Task] = None
        self._subscription: Optional[Subscription] = None
        self._tasks: set[asyncio.Task] = set()
        self._check_generation = 0
        self._network_retries = 0

    @property
    def running(self) -> bool:
        return self._consumer_task is not None and not self._consumer_task.done()

    @property
    def log_lines(self) -> deque[str]:
        """Most recent tool output lines, oldest first."""
        return self.tool_log.lines

    async def start(self) -> None:
        """Subscribe to the monitor and start consuming device events."""
        if self.running:
            return
        self.tool_log.attach()
        self._subscription = self.monitor.subscribe()
        current = self.monitor.current
        if current is not None:
            self.dispatch(DeviceAppeared(device=current))
        self._consumer_task = asyncio.create_task(self._consume())
        self.logger.info("Wizard controller started")

    async def stop(self) -> None:
        """Cancel the active run and all background tasks."""
        if self.run is not None and not self.run.status.is_terminal:
            self.run.cancel()

        tasks = [t for t in (self._consumer_task, self._run_task, *self._tasks) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._consumer_task = None
        self._run_task = None

        if self._subscription is not None:
            self.monitor.unsubscribe(self._subscription)
            self._subscription = None
        self.tool_log.detach()
        self.logger.info("Wizard controller stopped")

    def dispatch(self, event) -> WizardState:
        """Apply event and run the effects of the resulting state change.

        Raises:
            InvalidTransition: If the current step does not accept event
        """
        previous = self.state
        self.state = transition(previous, event)
        if self.state.step != previous.step:
            self.logger.info(
                f"Wizard step: {previous.step.value} -> {self.state.step.value} ({event.name})"
            )
        self._apply_effects(previous, self.state, event)
        return self.state

    def _apply_effects(self, previous: WizardState, state: WizardState, event) -> None:
        entered = state.step if state.step != previous.step else None

        if entered == WizardStep.PREREQUISITE_CHECK or isinstance(event, RecheckPrerequisites):
            self._spawn(self._check_prerequisites())
        elif entered == WizardStep.INSTALLING:
            self._start_run()

        if isinstance(event, CompleteUnlockStep) and state.unlock_busy:
            self._spawn(self._run_unlock_step(state.unlock_index, state.current_unlock_step))

        if isinstance(event, CancelInstall) and self.run is not None:
            self.logger.info(f"Cancelling run {self.run.run_id}")
            self.run.cancel()

        if isinstance(event, RunFinished) and entered in (WizardStep.SUCCESS, WizardStep.FAILURE):
            self._on_run_finished(event.result)

        if isinstance(event, Reset):
            self.run = None
            self.progress = None
            self._network_retries = 0

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _consume(self) -> None:
        while True:
            event = await self._subscription.get()
            try:
                self.dispatch(event)
            except InvalidTransition as e:
                self.logger.warning(f"Ignoring device event: {e}")
            except Exception as e:
                self.logger.error(f"Failed to apply {event.name}: {e}", exc_info=True)

    async def _check_prerequisites(self) -> None:
        self._check_generation += 1
        generation = self._check_generation
        selection = self.state.selection
        thresholds = selection.config.prerequisites if selection is not None else None

        try:
            snapshot = await self.prober.probe(refresh=True)
            device = snapshot.device if snapshot.ok else self.state.device
        except Exception as e:
            self.logger.error(f"Prerequisite probe failed: {e}", exc_info=True)
            device = self.state.device
        unmet = evaluate_prerequisites(device, thresholds)

        if generation != self._check_generation or self.state.step != WizardStep.PREREQUISITE_CHECK:
            self.logger.debug("Discarding stale prerequisite check")
            return
        self.dispatch(PrerequisitesEvaluated(device=device, unmet=unmet))

    def _log_tool(self, line: str, run_id: Optional[str] = None) -> None:
        self.tool_logger.info(line, extra={"run_id": run_id})

    async def _run_unlock_step(self, index: int, step: UnlockingStep) -> None:
        failure = None
        total = len(self.state.unlock_steps)
        try:
            device = self.state.device
            if device is None or self.state.device_lost:
                raise PrerequisiteNotMet(PrerequisiteKind.DEVICE_MODE.value, "no device connected")
            self.logger.info(f"Unlock step {index + 1}/{total}: {step.title}")
            self._log_tool(f"[unlocking] {step.title}")
            await self.pipeline.executor.run_step(
                device.serial, step.command, on_log=self._log_tool
            )
        except FlasherError as e:
            self.logger.error(f"Unlock step '{step.title}' failed: {e}")
            failure = FailureInfo.from_error(None, e)
        except Exception as e:
            self.logger.error(f"Unlock step '{step.title}' crashed: {e}", exc_info=True)
            failure = FailureInfo.from_error(None, InternalError(f"{type(e).__name__}: {e}"))
        self.dispatch(UnlockStepFinished(index=index, failure=failure))

    def _start_run(self) -> None:
        selection = self.state.selection
        device = self.state.device
        run = InstallRun(selection.config, device.serial)
        self.run = run
        self.progress = None
        self.log_lines.clear()
        self.logger.info(
            f"Starting run {run.run_id}: {selection.distro}/{selection.channel} on {device.serial}"
        )
        self._run_task = asyncio.create_task(self.pipeline.run(run, emit=self._on_pipeline_event))
        self.dispatch(RunStarted(run_id=run.run_id))

    def _on_pipeline_event(self, event: PipelineEvent) -> None:
        if self.run is None or event.run_id != self.run.run_id:
            return
        if isinstance(event, ProgressEvent):
            self.progress = event
        elif isinstance(event, LogEvent):
            self._log_tool(event.line, event.run_id)
        elif isinstance(event, StageStatusEvent):
            self._log_tool(f"[{event.stage.value}] {event.status.value}", event.run_id)
        elif isinstance(event, RunFinishedEvent):
            self.dispatch(RunFinished(result=event))

    def _on_run_finished(self, result: RunFinishedEvent) -> None:
        if result.status == RunStatus.SUCCEEDED:
            self._network_retries = 0
            return
        if (
            result.status == RunStatus.FAILED
            and result.failed_stage == StageEnum.DOWNLOAD
            and isinstance(result.error, NetworkError)
            and self._network_retries < self.settings.network_retry_attempts
        ):
            delay = self.settings.network_retry_backoff * (2 ** self._network_retries)
            self._network_retries += 1
            self.logger.info(
                f"Network error, retrying in {delay:.1f}s "
                f"(attempt {self._network_retries}/{self.settings.network_retry_attempts})"
            )
            self._spawn(self._retry_later(result.run_id, delay))

    async def _retry_later(self, run_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        if self.state.step == WizardStep.FAILURE and self.state.run_id == run_id:
            self.dispatch(Retry())
