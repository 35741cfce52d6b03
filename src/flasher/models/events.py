"""Events consumed by the wizard state machine.

Device events come from the monitor, run events from the pipeline, and
commands from the presentation layer.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict

from flasher.models.device import DeviceIdentity
from flasher.models.run import RunFinishedEvent
from flasher.models.wizard import FailureInfo, Selection, UnmetPrerequisite


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    @property
    def name(self) -> str:
        return type(self).__name__


# Device monitor events

class DeviceAppeared(_Event):
    device: DeviceIdentity
    sequence: int = 0


class DeviceChanged(_Event):
    old: DeviceIdentity
    new: DeviceIdentity
    sequence: int = 0


class DeviceRemoved(_Event):
    last: Optional[DeviceIdentity] = None
    sequence: int = 0


# Controller-internal events

class PrerequisitesEvaluated(_Event):
    device: Optional[DeviceIdentity] = None
    unmet: list[UnmetPrerequisite]


class RunStarted(_Event):
    run_id: str


class RunFinished(_Event):
    result: RunFinishedEvent


class UnlockStepFinished(_Event):
    """An automated unlock step ended; failure is None on success."""

    index: int
    failure: Optional[FailureInfo] = None


# User commands

class Continue(_Event):
    pass


class Back(_Event):
    pass


class SelectDistro(_Event):
    selection: Selection


class StartInstall(_Event):
    pass


class RecheckPrerequisites(_Event):
    pass


class OverridePrerequisites(_Event):
    pass


class CancelInstall(_Event):
    pass


class Retry(_Event):
    pass


class Reset(_Event):
    pass


class Browse(_Event):
    pass


class CloseBrowser(_Event):
    pass


class StartUnlock(_Event):
    pass


class ConfirmSafety(_Event):
    """The user's answers on the safety warnings screen."""

    backed_up: bool = False
    accepts_warranty_loss: bool = False
    accepts_risk: bool = False

    @property
    def all_confirmed(self) -> bool:
        return self.backed_up and self.accepts_warranty_loss and self.accepts_risk


class CompleteUnlockStep(_Event):
    pass


class SkipUnlockStep(_Event):
    pass
