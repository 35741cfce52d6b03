"""API route handlers for the installer wizard."""

from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from flasher.api.models import (
    ConfirmSafetyRequest,
    ErrorResponse,
    LogResponse,
    ProgressData,
    ProgressResponse,
    SelectionData,
    SelectRequest,
    StageData,
    StateData,
    StateResponse,
)
from flasher.errors import InvalidTransition
from flasher.models.events import (
    Back,
    Browse,
    CancelInstall,
    CloseBrowser,
    CompleteUnlockStep,
    ConfirmSafety,
    Continue,
    OverridePrerequisites,
    RecheckPrerequisites,
    Reset,
    Retry,
    SelectDistro,
    SkipUnlockStep,
    StartInstall,
    StartUnlock,
)
from flasher.models.status import RunStatus
from flasher.models.wizard import Selection, WizardState
from flasher.services.controller import WizardController

router = APIRouter(prefix="/api/v1.0")


def _get_controller(request: Request) -> Optional[WizardController]:
    controller = getattr(request.app.state, "controller", None)
    if controller is None or not controller.running:
        return None
    return controller


def _not_running() -> JSONResponse:
    return JSONResponse(
        status_code=200,
        content=ErrorResponse(code=503, msg="Installer is not running").model_dump(mode="json"),
    )


def _state_data(state: WizardState) -> StateData:
    selection = None
    if state.selection is not None:
        selection = SelectionData(
            distro=state.selection.distro,
            channel=state.selection.channel,
            interface=state.selection.interface,
        )
    return StateData(
        step=state.step,
        device=state.device,
        selection=selection,
        run_id=state.run_id,
        cancel_requested=state.cancel_requested,
        unmet=state.unmet,
        checks_done=state.checks_done,
        failure=state.failure,
        device_lost=state.device_lost,
        retry_count=state.retry_count,
        safety_warnings=state.safety_warnings,
        unlock_steps=state.unlock_steps,
        unlock_index=state.unlock_index,
        unlock_busy=state.unlock_busy,
        unlock_failure=state.unlock_failure,
    )


def _command(request: Request, event) -> JSONResponse:
    """Dispatch a user command and answer with the resulting state."""
    controller = _get_controller(request)
    if controller is None:
        return _not_running()

    try:
        state = controller.dispatch(event)
    except InvalidTransition as e:
        return JSONResponse(
            status_code=200,
            content=ErrorResponse(
                code=409, msg=str(e), step=controller.state.step
            ).model_dump(mode="json"),
        )

    return JSONResponse(
        status_code=200,
        content=StateResponse(data=_state_data(state)).model_dump(mode="json"),
    )


@router.get("/state", response_model=StateResponse)
async def get_state(request: Request):
    """GET /api/v1.0/state - Current wizard step, device and failure details.

    Response format:
        {
            "code": 200,
            "msg": "success",
            "data": {
                "step": "prerequisite_check",
                "device": {"serial": "ABC123", "mode": "bootloader", ...},
                "unmet": [{"which": "battery", "message": "...", "overridable": false}],
                ...
            }
        }
    """
    controller = _get_controller(request)
    if controller is None:
        return _not_running()
    return StateResponse(data=_state_data(controller.state))


@router.get("/progress", response_model=ProgressResponse)
async def get_progress(request: Request):
    """GET /api/v1.0/progress - Progress of the current install run.

    Returns code 500 with the error in msg once the run has failed.
    """
    controller = _get_controller(request)
    if controller is None:
        return _not_running()

    run = controller.run
    if run is None:
        return ProgressResponse(data=ProgressData())

    latest = controller.progress
    data = ProgressData(
        run_id=run.run_id,
        status=run.status,
        stage=latest.stage if latest else None,
        progress=int(latest.overall_fraction * 100) if latest else 0,
        detail=latest.detail if latest else None,
        stages=[
            StageData(
                stage=s.stage,
                status=s.status,
                bytes_done=s.bytes_done,
                bytes_total=s.bytes_total,
            )
            for s in run.stages
        ],
    )

    if run.status == RunStatus.FAILED:
        msg = f"Install failed: {run.error}" if run.error else "Install failed"
        return ProgressResponse(code=500, msg=msg, data=data)
    return ProgressResponse(data=data)


@router.get("/log", response_model=LogResponse)
async def get_log(request: Request, limit: int = 100):
    """GET /api/v1.0/log - Most recent adb/fastboot output lines."""
    controller = _get_controller(request)
    if controller is None:
        return _not_running()
    lines = list(controller.log_lines)
    if limit > 0:
        lines = lines[-limit:]
    return LogResponse(data=lines)


@router.post("/continue", response_model=StateResponse)
async def post_continue(request: Request):
    """POST /api/v1.0/continue - Leave the device details screen."""
    return _command(request, Continue())


@router.post("/back", response_model=StateResponse)
async def post_back(request: Request):
    """POST /api/v1.0/back - Go back one step before installing."""
    return _command(request, Back())


@router.post("/select", response_model=StateResponse)
async def post_select(body: SelectRequest, request: Request):
    """POST /api/v1.0/select - Choose distro, channel and interface."""
    config = body.config
    selection = Selection(
        distro=config.distro,
        channel=config.channel,
        interface=config.interface,
        config=config,
    )
    return _command(request, SelectDistro(selection=selection))


@router.post("/install", response_model=StateResponse)
async def post_install(request: Request):
    """POST /api/v1.0/install - Run prerequisite checks, then install."""
    return _command(request, StartInstall())


@router.post("/prerequisites/recheck", response_model=StateResponse)
async def post_recheck(request: Request):
    """POST /api/v1.0/prerequisites/recheck - Probe the device again."""
    return _command(request, RecheckPrerequisites())


@router.post("/prerequisites/override", response_model=StateResponse)
async def post_override(request: Request):
    """POST /api/v1.0/prerequisites/override - Install despite overridable warnings.

    Answers 409 while any unmet prerequisite is not overridable.
    """
    return _command(request, OverridePrerequisites())


@router.post("/unlock", response_model=StateResponse)
async def post_unlock(request: Request):
    """POST /api/v1.0/unlock - Start the bootloader unlock guide.

    Only accepted while the prerequisite check reports a locked (or
    unreadable) bootloader. Shows the safety warnings first.
    """
    return _command(request, StartUnlock())


@router.post("/unlock/confirm", response_model=StateResponse)
async def post_unlock_confirm(body: ConfirmSafetyRequest, request: Request):
    """POST /api/v1.0/unlock/confirm - Acknowledge the safety warnings.

    Answers 409 unless every acknowledgement is true.
    """
    return _command(
        request,
        ConfirmSafety(
            backed_up=body.backed_up,
            accepts_warranty_loss=body.accepts_warranty_loss,
            accepts_risk=body.accepts_risk,
        ),
    )


@router.post("/unlock/step", response_model=StateResponse)
async def post_unlock_step(request: Request):
    """POST /api/v1.0/unlock/step - Mark a manual step done or run an automated one.

    Automated steps run in the background; poll /state until unlock_busy
    is false. A failed step stays current with unlock_failure set.
    """
    return _command(request, CompleteUnlockStep())


@router.post("/unlock/skip", response_model=StateResponse)
async def post_unlock_skip(request: Request):
    """POST /api/v1.0/unlock/skip - Skip an optional unlock step."""
    return _command(request, SkipUnlockStep())


@router.post("/cancel", response_model=StateResponse)
async def post_cancel(request: Request):
    """POST /api/v1.0/cancel - Cancel the running install.

    Download, decompress and verify stop at their next chunk; flashing
    stops before the next command.
    """
    return _command(request, CancelInstall())


@router.post("/retry", response_model=StateResponse)
async def post_retry(request: Request):
    """POST /api/v1.0/retry - Start a fresh attempt after a failure."""
    return _command(request, Retry())


@router.post("/reset", response_model=StateResponse)
async def post_reset(request: Request):
    """POST /api/v1.0/reset - Back to the start after success or failure."""
    return _command(request, Reset())


@router.post("/browse", response_model=StateResponse)
async def post_browse(request: Request):
    """POST /api/v1.0/browse - Open the device/distro browser."""
    return _command(request, Browse())


@router.post("/browse/close", response_model=StateResponse)
async def post_browse_close(request: Request):
    """POST /api/v1.0/browse/close - Return from the browser."""
    return _command(request, CloseBrowser())
