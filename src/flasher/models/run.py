"""Install run aggregate and the events the pipeline emits."""

import asyncio
import uuid
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from flasher.errors import FlasherError
from flasher.models.installer import InstallerConfig
from flasher.models.status import STAGE_ORDER, RunStatus, StageEnum, StageStatus


class StageState(BaseModel):
    """Stage-local status and progress.

    For the flash stage the counters count commands instead of bytes.
    """

    stage: StageEnum
    status: StageStatus = StageStatus.PENDING
    bytes_done: int = Field(0, ge=0)
    bytes_total: Optional[int] = Field(None, ge=0, description="None when indeterminate")

    @property
    def fraction(self) -> float:
        if self.status == StageStatus.SUCCEEDED:
            return 1.0
        if not self.bytes_total:
            return 0.0
        return min(self.bytes_done / self.bytes_total, 1.0)


class InstallRun:
    """One user-initiated install attempt.

    Created per attempt and discarded after reaching a terminal state.
    """

    def __init__(self, config: InstallerConfig, serial: str, run_id: Optional[str] = None):
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.config = config
        self.serial = serial
        self.stages: list[StageState] = [StageState(stage=s) for s in STAGE_ORDER]
        self.status = RunStatus.PENDING
        self.failed_stage: Optional[StageEnum] = None
        self.error: Optional[FlasherError] = None
        self._cancel_event = asyncio.Event()

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel_event

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Request cooperative cancellation of the active stage."""
        self._cancel_event.set()

    def stage(self, stage: StageEnum) -> StageState:
        return self.stages[STAGE_ORDER.index(stage)]

    @property
    def active_stage(self) -> Optional[StageEnum]:
        for state in self.stages:
            if state.status == StageStatus.RUNNING:
                return state.stage
        return None

    def start_stage(self, stage: StageEnum) -> StageState:
        """Mark a stage running, enforcing strict stage order.

        Raises:
            RuntimeError: If a previous stage has not succeeded or the stage
                already left pending
        """
        index = STAGE_ORDER.index(stage)
        for previous in self.stages[:index]:
            if previous.status != StageStatus.SUCCEEDED:
                raise RuntimeError(
                    f"Cannot start {stage.value}: {previous.stage.value} is {previous.status.value}"
                )
        state = self.stages[index]
        if state.status != StageStatus.PENDING:
            raise RuntimeError(f"Stage {stage.value} already {state.status.value}")
        state.status = StageStatus.RUNNING
        self.status = RunStatus.RUNNING
        return state

    def finish_stage(self, stage: StageEnum, status: StageStatus) -> None:
        state = self.stage(stage)
        if state.status != StageStatus.RUNNING:
            raise RuntimeError(f"Stage {stage.value} is not running")
        state.status = status
        if status == StageStatus.SUCCEEDED and state.bytes_total is not None:
            state.bytes_done = state.bytes_total


class StageStatusEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    run_id: str
    stage: StageEnum
    status: StageStatus


class ProgressEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    run_id: str
    stage: StageEnum
    bytes_done: int
    bytes_total: Optional[int] = None
    overall_fraction: float = Field(..., ge=0.0, le=1.0)
    detail: Optional[str] = None


class LogEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    run_id: str
    line: str


class RunFinishedEvent(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    run_id: str
    status: RunStatus
    failed_stage: Optional[StageEnum] = None
    error: Optional[FlasherError] = None


PipelineEvent = Union[StageStatusEvent, ProgressEvent, LogEvent, RunFinishedEvent]
