"""Wizard state machine.

``transition()`` is pure: it maps (state, event) to the next state and
never performs I/O. Effects (probing, starting and cancelling runs,
running automated unlock steps) are driven by the controller after the
new state is in place.
"""

from typing import Callable, Optional

from flasher.errors import InvalidTransition
from flasher.models.device import DeviceIdentity
from flasher.models.events import (
    Back,
    Browse,
    CancelInstall,
    CloseBrowser,
    CompleteUnlockStep,
    ConfirmSafety,
    Continue,
    DeviceAppeared,
    DeviceChanged,
    DeviceRemoved,
    OverridePrerequisites,
    PrerequisitesEvaluated,
    RecheckPrerequisites,
    Reset,
    Retry,
    RunFinished,
    RunStarted,
    SelectDistro,
    SkipUnlockStep,
    StartInstall,
    StartUnlock,
    UnlockStepFinished,
)
from flasher.models.status import PrerequisiteKind, RunStatus, UnlockStepKind, WizardStep
from flasher.models.wizard import FailureInfo, WizardState

# Steps where losing the device sends the user back to the start
PRE_INSTALL_STEPS = (
    WizardStep.WAITING_FOR_DEVICE,
    WizardStep.UNSUPPORTED_DEVICE,
    WizardStep.DEVICE_DETAILS,
    WizardStep.DISTRO_SELECTION,
    WizardStep.PREREQUISITE_CHECK,
    WizardStep.SAFETY_WARNINGS,
)

# Steps where the device may drop off the bus and come back
DEVICE_BUSY_STEPS = (WizardStep.INSTALLING, WizardStep.UNLOCKING)

FINISHED_STEPS = (WizardStep.SUCCESS, WizardStep.FAILURE)

SAFETY_WARNINGS = [
    "Unlocking the bootloader erases all data on the device. Back up anything you want to keep.",
    "Unlocking the bootloader may void the manufacturer warranty.",
    "An interrupted installation can leave the device unable to boot until it is reflashed.",
]

_CLEAR_UNLOCKING = {
    "safety_warnings": [],
    "unlock_steps": [],
    "unlock_index": 0,
    "unlock_busy": False,
    "unlock_failure": None,
}


def detected_step(device: Optional[DeviceIdentity]) -> WizardStep:
    """First step to show for a freshly detected device."""
    if device is None:
        return WizardStep.WAITING_FOR_DEVICE
    if device.recognized:
        return WizardStep.DEVICE_DETAILS
    return WizardStep.UNSUPPORTED_DEVICE


def safety_warnings_for(device: Optional[DeviceIdentity]) -> list[str]:
    """General unlock warnings followed by the device profile's own."""
    warnings = list(SAFETY_WARNINGS)
    profile = device.profile if device is not None else None
    if profile is not None:
        if profile.experimental:
            warnings.append(f"Support for the {profile.name} is experimental.")
        warnings.extend(profile.warnings)
    return warnings


def _invalid(state: WizardState, event) -> InvalidTransition:
    return InvalidTransition(state.step.value, type(event).__name__)


def _restart(state: WizardState, device: Optional[DeviceIdentity]) -> WizardState:
    update = {
        "step": detected_step(device),
        "device": device,
        "selection": None,
        "unmet": [],
        "checks_done": False,
        "device_lost": False,
    }
    update.update(_CLEAR_UNLOCKING)
    return state.model_copy(update=update)


def _enter_installing(state: WizardState) -> WizardState:
    return state.model_copy(
        update={
            "step": WizardStep.INSTALLING,
            "run_id": None,
            "cancel_requested": False,
            "unmet": [],
            "checks_done": True,
            "failure": None,
            "device_lost": False,
        }
    )


def _enter_prerequisite_check(state: WizardState, **extra) -> WizardState:
    update = {
        "step": WizardStep.PREREQUISITE_CHECK,
        "unmet": [],
        "checks_done": False,
        "failure": None,
        "run_id": None,
    }
    update.update(_CLEAR_UNLOCKING)
    update.update(extra)
    return state.model_copy(update=update)


def _leave_unlocking(state: WizardState) -> WizardState:
    if state.device_lost:
        # Stale identity; the monitor reports the device again when it returns
        return _enter_prerequisite_check(state, device=None, device_lost=False)
    return _enter_prerequisite_check(state)


def _advance_unlocking(state: WizardState) -> WizardState:
    index = state.unlock_index + 1
    if index >= len(state.unlock_steps):
        return _leave_unlocking(state)
    return state.model_copy(
        update={"unlock_index": index, "unlock_busy": False, "unlock_failure": None}
    )


def _replaces_unlocking_device(state: WizardState, device: DeviceIdentity) -> bool:
    return (
        state.step == WizardStep.UNLOCKING
        and state.device is not None
        and state.device.serial != device.serial
    )


# Device events


def _on_device_appeared(state: WizardState, event: DeviceAppeared) -> WizardState:
    if state.step in PRE_INSTALL_STEPS or _replaces_unlocking_device(state, event.device):
        return _restart(state, event.device)
    return state.model_copy(update={"device": event.device, "device_lost": False})


def _on_device_changed(state: WizardState, event: DeviceChanged) -> WizardState:
    new = event.new
    if state.step in PRE_INSTALL_STEPS:
        if state.device is None or state.device.serial != new.serial:
            return _restart(state, new)
        if state.step == WizardStep.WAITING_FOR_DEVICE:
            return _restart(state, new)
    elif _replaces_unlocking_device(state, new):
        return _restart(state, new)
    # Mode change of the same device keeps the step
    return state.model_copy(update={"device": new, "device_lost": False})


def _on_device_removed(state: WizardState, event: DeviceRemoved) -> WizardState:
    if state.step in PRE_INSTALL_STEPS:
        return _restart(state, None)
    if state.step in DEVICE_BUSY_STEPS:
        return state.model_copy(update={"device_lost": True})
    return state.model_copy(update={"device": None})


# Controller-internal events


def _on_prerequisites_evaluated(state: WizardState, event: PrerequisitesEvaluated) -> WizardState:
    if state.step != WizardStep.PREREQUISITE_CHECK:
        return state
    if event.device is not None:
        state = state.model_copy(update={"device": event.device})
    if not event.unmet:
        return _enter_installing(state)
    return state.model_copy(update={"unmet": list(event.unmet), "checks_done": True})


def _on_run_started(state: WizardState, event: RunStarted) -> WizardState:
    if state.step != WizardStep.INSTALLING:
        return state
    return state.model_copy(update={"run_id": event.run_id})


def _on_run_finished(state: WizardState, event: RunFinished) -> WizardState:
    result = event.result
    if state.step != WizardStep.INSTALLING or result.run_id != state.run_id:
        return state

    if result.status == RunStatus.SUCCEEDED:
        return state.model_copy(
            update={"step": WizardStep.SUCCESS, "failure": None, "cancel_requested": False}
        )
    if result.status == RunStatus.CANCELLED:
        failure = FailureInfo.cancelled_at(result.failed_stage)
    elif result.error is not None:
        failure = FailureInfo.from_error(result.failed_stage, result.error)
    else:
        failure = FailureInfo(
            stage=result.failed_stage,
            kind="InternalError",
            code="INTERNAL_ERROR",
            message="installation failed without an error",
        )
    return state.model_copy(
        update={"step": WizardStep.FAILURE, "failure": failure, "cancel_requested": False}
    )


def _on_unlock_step_finished(state: WizardState, event: UnlockStepFinished) -> WizardState:
    if (
        state.step != WizardStep.UNLOCKING
        or not state.unlock_busy
        or event.index != state.unlock_index
    ):
        return state
    if event.failure is not None:
        return state.model_copy(update={"unlock_busy": False, "unlock_failure": event.failure})
    return _advance_unlocking(state)


# User commands


def _on_continue(state: WizardState, event: Continue) -> WizardState:
    if state.step != WizardStep.DEVICE_DETAILS:
        raise _invalid(state, event)
    return state.model_copy(update={"step": WizardStep.DISTRO_SELECTION})


def _on_back(state: WizardState, event: Back) -> WizardState:
    if state.step == WizardStep.DISTRO_SELECTION:
        return state.model_copy(update={"step": WizardStep.DEVICE_DETAILS})
    if state.step == WizardStep.PREREQUISITE_CHECK:
        return state.model_copy(
            update={"step": WizardStep.DISTRO_SELECTION, "unmet": [], "checks_done": False}
        )
    if state.step == WizardStep.SAFETY_WARNINGS:
        return _enter_prerequisite_check(state)
    if state.step == WizardStep.UNLOCKING and not state.unlock_busy:
        return _leave_unlocking(state)
    raise _invalid(state, event)


def _on_select_distro(state: WizardState, event: SelectDistro) -> WizardState:
    if state.step != WizardStep.DISTRO_SELECTION:
        raise _invalid(state, event)
    return state.model_copy(update={"selection": event.selection})


def _on_start_install(state: WizardState, event: StartInstall) -> WizardState:
    if state.step != WizardStep.DISTRO_SELECTION or state.selection is None:
        raise _invalid(state, event)
    return _enter_prerequisite_check(state, retry_count=0)


def _on_recheck(state: WizardState, event: RecheckPrerequisites) -> WizardState:
    if state.step != WizardStep.PREREQUISITE_CHECK:
        raise _invalid(state, event)
    return _enter_prerequisite_check(state)


def _on_override(state: WizardState, event: OverridePrerequisites) -> WizardState:
    if state.step != WizardStep.PREREQUISITE_CHECK or not state.checks_done:
        raise _invalid(state, event)
    if not all(u.overridable for u in state.unmet):
        raise _invalid(state, event)
    return _enter_installing(state)


def _on_start_unlock(state: WizardState, event: StartUnlock) -> WizardState:
    if state.step != WizardStep.PREREQUISITE_CHECK or not state.checks_done:
        raise _invalid(state, event)
    if not any(u.which == PrerequisiteKind.BOOTLOADER_LOCK for u in state.unmet):
        raise _invalid(state, event)
    return state.model_copy(
        update={
            "step": WizardStep.SAFETY_WARNINGS,
            "safety_warnings": safety_warnings_for(state.device),
        }
    )


def _on_confirm_safety(state: WizardState, event: ConfirmSafety) -> WizardState:
    if state.step != WizardStep.SAFETY_WARNINGS or not event.all_confirmed:
        raise _invalid(state, event)
    profile = state.device.profile if state.device is not None else None
    if profile is None:
        raise _invalid(state, event)
    return state.model_copy(
        update={
            "step": WizardStep.UNLOCKING,
            "unlock_steps": profile.unlock_plan,
            "unlock_index": 0,
            "unlock_busy": False,
            "unlock_failure": None,
        }
    )


def _on_complete_unlock_step(state: WizardState, event: CompleteUnlockStep) -> WizardState:
    """Finish a manual step, or start an automated one (the controller runs it)."""
    step = state.current_unlock_step
    if step is None or state.unlock_busy:
        raise _invalid(state, event)
    if step.kind == UnlockStepKind.AUTOMATED:
        return state.model_copy(update={"unlock_busy": True, "unlock_failure": None})
    return _advance_unlocking(state)


def _on_skip_unlock_step(state: WizardState, event: SkipUnlockStep) -> WizardState:
    step = state.current_unlock_step
    if step is None or state.unlock_busy or not step.optional:
        raise _invalid(state, event)
    return _advance_unlocking(state)


def _on_cancel(state: WizardState, event: CancelInstall) -> WizardState:
    if state.step != WizardStep.INSTALLING:
        raise _invalid(state, event)
    return state.model_copy(update={"cancel_requested": True})


def _on_retry(state: WizardState, event: Retry) -> WizardState:
    if state.step != WizardStep.FAILURE or state.selection is None:
        raise _invalid(state, event)
    return _enter_prerequisite_check(state, retry_count=state.retry_count + 1)


def _on_reset(state: WizardState, event: Reset) -> WizardState:
    if state.step not in FINISHED_STEPS:
        raise _invalid(state, event)
    return WizardState(step=detected_step(state.device), device=state.device)


def _on_browse(state: WizardState, event: Browse) -> WizardState:
    if state.step in DEVICE_BUSY_STEPS or state.step == WizardStep.BROWSING:
        raise _invalid(state, event)
    return state.model_copy(update={"step": WizardStep.BROWSING, "return_step": state.step})


def _on_close_browser(state: WizardState, event: CloseBrowser) -> WizardState:
    if state.step != WizardStep.BROWSING:
        raise _invalid(state, event)
    target = state.return_step or WizardStep.WAITING_FOR_DEVICE
    update = {"step": target, "return_step": None}
    if target in PRE_INSTALL_STEPS:
        if state.device is None:
            return _restart(state, None).model_copy(update={"return_step": None})
        if target in (WizardStep.WAITING_FOR_DEVICE, WizardStep.UNSUPPORTED_DEVICE):
            update["step"] = detected_step(state.device)
    return state.model_copy(update=update)


_HANDLERS: dict[type, Callable] = {
    DeviceAppeared: _on_device_appeared,
    DeviceChanged: _on_device_changed,
    DeviceRemoved: _on_device_removed,
    PrerequisitesEvaluated: _on_prerequisites_evaluated,
    RunStarted: _on_run_started,
    RunFinished: _on_run_finished,
    UnlockStepFinished: _on_unlock_step_finished,
    Continue: _on_continue,
    Back: _on_back,
    SelectDistro: _on_select_distro,
    StartInstall: _on_start_install,
    RecheckPrerequisites: _on_recheck,
    OverridePrerequisites: _on_override,
    StartUnlock: _on_start_unlock,
    ConfirmSafety: _on_confirm_safety,
    CompleteUnlockStep: _on_complete_unlock_step,
    SkipUnlockStep: _on_skip_unlock_step,
    CancelInstall: _on_cancel,
    Retry: _on_retry,
    Reset: _on_reset,
    Browse: _on_browse,
    CloseBrowser: _on_close_browser,
}


def transition(state: WizardState, event) -> WizardState:
    """Next wizard state for event.

    Raises:
        InvalidTransition: Unknown event type, or a user command the current
            step does not accept
    """
    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise _invalid(state, event)
    return handler(state, event)
