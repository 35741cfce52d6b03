"""Unit tests for WizardController."""

import httpx
import pytest
import pytest_asyncio

from flasher.errors import InvalidTransition
from flasher.models.device import DeviceCatalog, DeviceProfile, UnlockingStep
from flasher.models.events import (
    CancelInstall,
    CompleteUnlockStep,
    ConfirmSafety,
    Continue,
    OverridePrerequisites,
    RecheckPrerequisites,
    Reset,
    SelectDistro,
    StartInstall,
    StartUnlock,
)
from flasher.models.installer import FlashCommand, FlashOp
from flasher.models.status import (
    CompressionKind,
    PrerequisiteKind,
    RunStatus,
    StageEnum,
    UnlockStepKind,
    WizardStep,
)
from flasher.models.wizard import Selection
from flasher.services.controller import WizardController
from flasher.services.monitor import DeviceMonitor

BOOT = b"ANDROID!" + bytes(range(256)) * 8


@pytest.mark.unit
class TestWizardController:
    @pytest_asyncio.fixture
    async def controller(self, prober, pipeline, settings):
        monitor = DeviceMonitor(prober, settings)
        controller = WizardController(monitor, prober, pipeline, settings)
        await controller.start()
        yield controller
        await controller.stop()

    @pytest.fixture
    def selection(self, make_image, make_config):
        config = make_config([make_image("boot", BOOT, CompressionKind.GZIP)])
        return Selection(distro=config.distro, channel=config.channel, config=config)

    async def _to_distro_selection(self, controller, until):
        await controller.monitor.poll_once()
        await until(lambda: controller.state.step == WizardStep.DEVICE_DETAILS)
        controller.dispatch(Continue())

    @pytest.mark.asyncio
    async def test_full_install(self, controller, fake_runner, selection, until):
        # Arrange
        fake_runner.script_bootloader()
        await self._to_distro_selection(controller, until)

        # Act
        controller.dispatch(SelectDistro(selection=selection))
        controller.dispatch(StartInstall())
        await until(lambda: controller.state.step in (WizardStep.SUCCESS, WizardStep.FAILURE))

        # Assert
        assert controller.state.step == WizardStep.SUCCESS
        assert controller.run.status == RunStatus.SUCCEEDED
        assert controller.progress.overall_fraction == pytest.approx(1.0)
        assert any("flash boot" in line for line in controller.log_lines)

        controller.dispatch(Reset())
        assert controller.state.step == WizardStep.DEVICE_DETAILS
        assert controller.run is None

    @pytest.mark.asyncio
    async def test_low_battery_blocks_until_charged(self, controller, fake_runner, selection, until):
        """Low battery in bootloader mode keeps the wizard out of installing."""
        # Arrange
        fake_runner.script_bootloader(battery="20")
        await self._to_distro_selection(controller, until)
        controller.dispatch(SelectDistro(selection=selection))

        # Act
        controller.dispatch(StartInstall())
        await until(lambda: controller.state.checks_done)

        # Assert
        state = controller.state
        assert state.step == WizardStep.PREREQUISITE_CHECK
        assert [(u.which, u.overridable) for u in state.unmet] == [(PrerequisiteKind.BATTERY, False)]
        with pytest.raises(InvalidTransition):
            controller.dispatch(OverridePrerequisites())
        assert controller.run is None

        # Act: battery charged, user rechecks
        fake_runner.script_bootloader(battery="60")
        controller.dispatch(RecheckPrerequisites())
        await until(lambda: controller.state.step == WizardStep.SUCCESS)

        # Assert
        assert controller.state.device.battery_level == 60

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_flash_command(self, controller, fake_runner, selection, until):
        # Arrange: the user cancels while the first partition is being written
        fake_runner.script_bootloader()
        observed = []

        def cancel_mid_flash(args):
            observed.append(controller.dispatch(CancelInstall()))
            return 0, "", "OKAY"

        fake_runner.on("fastboot", "-s", "SER123", "flash", "boot", handler=cancel_mid_flash)
        await self._to_distro_selection(controller, until)
        controller.dispatch(SelectDistro(selection=selection))

        # Act
        controller.dispatch(StartInstall())
        await until(lambda: controller.state.step == WizardStep.FAILURE)

        # Assert
        assert observed[0].cancel_requested
        assert controller.run.cancelled
        assert controller.run.status == RunStatus.CANCELLED
        assert controller.state.failure.cancelled
        assert controller.state.failure.stage == StageEnum.FLASH
        assert not fake_runner.commands("fastboot", "-s", "SER123", "reboot")

    @pytest.mark.asyncio
    async def test_network_error_retried_automatically(
        self, prober, pipeline, settings, fake_runner, selection, image_server, until
    ):
        # Arrange: first request fails at the connection level
        settings = settings.model_copy(update={"network_retry_attempts": 1})
        monitor = DeviceMonitor(prober, settings)
        controller = WizardController(monitor, prober, pipeline, settings)
        fake_runner.script_bootloader()
        real_handler = image_server.handler
        failures = {"left": 1}

        def flaky(request):
            if failures["left"]:
                failures["left"] -= 1
                raise httpx.ConnectError("network unreachable", request=request)
            return real_handler(request)

        pipeline.downloader.transport = httpx.MockTransport(flaky)
        await controller.start()

        try:
            await self._to_distro_selection(controller, until)
            controller.dispatch(SelectDistro(selection=selection))

            # Act
            controller.dispatch(StartInstall())
            await until(lambda: controller.state.step == WizardStep.SUCCESS)

            # Assert
            assert controller.state.retry_count == 1
        finally:
            await controller.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_consumer(self, controller):
        assert controller.running

        await controller.stop()

        assert not controller.running


@pytest.mark.unit
class TestUnlockingGuide:
    @pytest.fixture
    def catalog(self):
        steps = [
            UnlockingStep(title="Enable OEM unlocking"),
            UnlockingStep(
                title="Unlock the bootloader",
                kind=UnlockStepKind.AUTOMATED,
                command=FlashCommand(op=FlashOp.FLASHING_UNLOCK),
            ),
        ]
        return DeviceCatalog(
            [DeviceProfile(codename="sargo", name="Google Pixel 3a", maker="Google", unlocking_steps=steps)]
        )

    @pytest_asyncio.fixture
    async def controller(self, prober, pipeline, settings):
        monitor = DeviceMonitor(prober, settings)
        controller = WizardController(monitor, prober, pipeline, settings)
        await controller.start()
        yield controller
        await controller.stop()

    @pytest.fixture
    def selection(self, make_image, make_config):
        config = make_config([make_image("boot", BOOT, CompressionKind.GZIP)])
        return Selection(distro=config.distro, channel=config.channel, config=config)

    async def _to_unlocking(self, controller, fake_runner, selection, until):
        fake_runner.script_bootloader(unlocked="no")
        await controller.monitor.poll_once()
        await until(lambda: controller.state.step == WizardStep.DEVICE_DETAILS)
        controller.dispatch(Continue())
        controller.dispatch(SelectDistro(selection=selection))
        controller.dispatch(StartInstall())
        await until(lambda: controller.state.checks_done)
        assert [u.which for u in controller.state.unmet] == [PrerequisiteKind.BOOTLOADER_LOCK]
        controller.dispatch(StartUnlock())
        controller.dispatch(ConfirmSafety(backed_up=True, accepts_warranty_loss=True, accepts_risk=True))
        controller.dispatch(CompleteUnlockStep())

    @pytest.mark.asyncio
    async def test_unlock_then_install(self, controller, fake_runner, selection, until):
        # Arrange
        await self._to_unlocking(controller, fake_runner, selection, until)

        def unlock(args):
            fake_runner.script_bootloader(unlocked="yes")
            return 0, "", "OKAY [  0.040s]"

        fake_runner.on("fastboot", "-s", "SER123", "flashing", "unlock", handler=unlock)

        # Act: run the automated step, then the recheck installs
        state = controller.dispatch(CompleteUnlockStep())
        assert state.unlock_busy
        await until(lambda: controller.state.step == WizardStep.SUCCESS)

        # Assert
        assert fake_runner.commands("fastboot", "-s", "SER123", "flashing", "unlock")
        assert controller.state.device.unlocked

    @pytest.mark.asyncio
    async def test_failed_unlock_step_is_reported(self, controller, fake_runner, selection, until):
        # Arrange
        await self._to_unlocking(controller, fake_runner, selection, until)
        fake_runner.on(
            "fastboot", "-s", "SER123", "flashing", "unlock",
            returncode=1, stderr="FAILED (remote: 'Flashing Unlock is not allowed')",
        )

        # Act
        controller.dispatch(CompleteUnlockStep())
        await until(lambda: not controller.state.unlock_busy)

        # Assert
        state = controller.state
        assert state.step == WizardStep.UNLOCKING
        assert state.unlock_index == 1
        assert state.unlock_failure.code == "FLASH_FAILED"
        assert state.unlock_failure.exit_code == 1
        assert "$ fastboot -s SER123 flashing unlock" in controller.log_lines

    @pytest.mark.asyncio
    async def test_automated_step_without_device(self, controller, fake_runner, selection, until):
        # Arrange: the device dropped off the bus
        await self._to_unlocking(controller, fake_runner, selection, until)
        fake_runner.script_no_device()
        for _ in range(controller.settings.removal_misses):
            await controller.monitor.poll_once()
        await until(lambda: controller.state.device_lost)

        # Act
        controller.dispatch(CompleteUnlockStep())
        await until(lambda: not controller.state.unlock_busy)

        # Assert
        assert controller.state.unlock_failure.code == "PREREQUISITE_NOT_MET"
        assert not fake_runner.commands("fastboot", "-s", "SER123", "flashing")
