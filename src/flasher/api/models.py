"""Pydantic models for HTTP API requests and responses."""

from typing import Optional

from pydantic import BaseModel, Field

from flasher.models.device import DeviceIdentity, UnlockingStep
from flasher.models.installer import InstallerConfig
from flasher.models.status import RunStatus, StageEnum, StageStatus, WizardStep
from flasher.models.wizard import FailureInfo, UnmetPrerequisite


class SelectRequest(BaseModel):
    """POST /api/v1.0/select payload.

    Chooses what to install. The config is the fully resolved plan (images
    and flash commands) for the chosen distro, channel and interface.

    Example:
        {
            "config": {
                "distro": "ubports",
                "channel": "stable",
                "images": [...],
                "commands": [...]
            }
        }
    """

    config: InstallerConfig = Field(..., description="Resolved installer configuration")


class ConfirmSafetyRequest(BaseModel):
    """POST /api/v1.0/unlock/confirm payload. All three must be true."""

    backed_up: bool = False
    accepts_warranty_loss: bool = False
    accepts_risk: bool = False


class SelectionData(BaseModel):
    distro: str
    channel: str
    interface: Optional[str] = None


class StateData(BaseModel):
    """Wizard state snapshot nested in response."""

    step: WizardStep = Field(..., description="Current wizard step")
    device: Optional[DeviceIdentity] = Field(None, description="Detected device, if any")
    selection: Optional[SelectionData] = None
    run_id: Optional[str] = None
    cancel_requested: bool = False
    unmet: list[UnmetPrerequisite] = Field(default_factory=list)
    checks_done: bool = False
    failure: Optional[FailureInfo] = None
    device_lost: bool = False
    retry_count: int = 0
    safety_warnings: list[str] = Field(default_factory=list)
    unlock_steps: list[UnlockingStep] = Field(default_factory=list)
    unlock_index: int = Field(0, description="Index of the current unlock step")
    unlock_busy: bool = False
    unlock_failure: Optional[FailureInfo] = None


class StageData(BaseModel):
    stage: StageEnum
    status: StageStatus
    bytes_done: int = 0
    bytes_total: Optional[int] = None


class ProgressData(BaseModel):
    """Progress of the current run nested in response."""

    run_id: Optional[str] = None
    status: Optional[RunStatus] = None
    stage: Optional[StageEnum] = Field(None, description="Stage of the latest progress event")
    progress: int = Field(0, ge=0, le=100, description="Overall percentage (0-100)")
    detail: Optional[str] = None
    stages: list[StageData] = Field(default_factory=list)


class StateResponse(BaseModel):
    """GET /api/v1.0/state response and the result of every command."""

    code: int = Field(200, description="Application-level status code (200/409/503)")
    msg: str = "success"
    data: StateData


class ProgressResponse(BaseModel):
    """GET /api/v1.0/progress response."""

    code: int = Field(200, description="Application-level status code (200/500)")
    msg: str = "success"
    data: ProgressData


class LogResponse(BaseModel):
    """GET /api/v1.0/log response: most recent tool output lines."""

    code: int = 200
    msg: str = "success"
    data: list[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Error response for all endpoints.

    HTTP status code is always 200, real status in 'code' field.
    """

    code: int = Field(..., description="Application-level error code (409/503)")
    msg: str = Field(..., description="Error message with error code prefix")
    step: Optional[WizardStep] = Field(None, description="Current wizard step")
