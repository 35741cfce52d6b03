"""Wizard state models."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from flasher.errors import FlasherError
from flasher.models.device import DeviceIdentity, UnlockingStep
from flasher.models.installer import InstallerConfig
from flasher.models.status import PrerequisiteKind, StageEnum, WizardStep


class Selection(BaseModel):
    """User's distro/channel/interface choice with its resolved plan."""

    model_config = ConfigDict(frozen=True)

    distro: str
    channel: str = "stable"
    interface: Optional[str] = None
    config: InstallerConfig


class UnmetPrerequisite(BaseModel):
    model_config = ConfigDict(frozen=True)

    which: PrerequisiteKind
    message: str
    overridable: bool = False


class FailureInfo(BaseModel):
    """What went wrong, for display on the failure screen."""

    model_config = ConfigDict(frozen=True)

    stage: Optional[StageEnum] = None
    kind: str
    code: str
    message: str
    recoverable_by_retry: bool = True
    cancelled: bool = False
    expected: Optional[str] = None
    actual: Optional[str] = None
    status_code: Optional[int] = None
    exit_code: Optional[int] = None

    @classmethod
    def from_error(cls, stage: Optional[StageEnum], error: FlasherError) -> "FailureInfo":
        return cls(stage=stage, **error.to_info())

    @classmethod
    def cancelled_at(cls, stage: Optional[StageEnum]) -> "FailureInfo":
        return cls(
            stage=stage,
            kind="Cancelled",
            code="CANCELLED",
            message="Installation cancelled by user",
            cancelled=True,
        )


class WizardState(BaseModel):
    """The single live wizard state. Only ``transition()`` produces new ones."""

    model_config = ConfigDict(frozen=True)

    step: WizardStep = WizardStep.WAITING_FOR_DEVICE
    device: Optional[DeviceIdentity] = None
    selection: Optional[Selection] = None
    run_id: Optional[str] = None
    cancel_requested: bool = False
    unmet: list[UnmetPrerequisite] = Field(default_factory=list)
    checks_done: bool = False
    failure: Optional[FailureInfo] = None
    device_lost: bool = False
    return_step: Optional[WizardStep] = None
    retry_count: int = 0
    safety_warnings: list[str] = Field(default_factory=list)
    unlock_steps: list[UnlockingStep] = Field(default_factory=list)
    unlock_index: int = 0
    unlock_busy: bool = Field(False, description="An automated unlock step is running")
    unlock_failure: Optional[FailureInfo] = None

    @property
    def current_unlock_step(self) -> Optional[UnlockingStep]:
        if self.step != WizardStep.UNLOCKING or self.unlock_index >= len(self.unlock_steps):
            return None
        return self.unlock_steps[self.unlock_index]
