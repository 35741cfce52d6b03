"""Unit tests for FlashExecutor."""

import asyncio
import pytest

from flasher.errors import (
    DeviceRemovedDuringFlash,
    FlashCommandFailed,
    StageCancelled,
    StorageIOError,
)
from flasher.models.installer import FlashCommand, FlashOp
from flasher.services.flash import FlashExecutor

SERIAL = "SER123"


def flash(partition, image=None, **kwargs):
    return FlashCommand(op=FlashOp.FLASH, partition=partition, image=image or partition, **kwargs)


@pytest.mark.unit
class TestFlashExecutor:
    @pytest.fixture
    def executor(self, prober, settings, fake_runner):
        return FlashExecutor(prober, settings=settings, runner=fake_runner)

    @pytest.fixture
    def images(self, tmp_path):
        paths = {}
        for name in ("boot", "system", "vendor", "vbmeta"):
            path = tmp_path / f"{name}.img"
            path.write_bytes(name.encode())
            paths[name] = path
        return paths

    def test_build_args(self, executor, images):
        vbmeta = flash("vbmeta", flags=["--disable-verity", "--disable-verification"])

        assert executor.build_args(SERIAL, vbmeta, images) == [
            "fastboot", "-s", SERIAL, "flash", "vbmeta",
            "--disable-verity", "--disable-verification", str(images["vbmeta"]),
        ]
        assert executor.build_args(SERIAL, FlashCommand(op=FlashOp.FORMAT, partition="userdata"), images)[3:] == [
            "format:ext4", "userdata",
        ]
        assert executor.build_args(SERIAL, FlashCommand(op=FlashOp.ERASE, partition="cache"), images)[3:] == [
            "erase", "cache",
        ]
        assert executor.build_args(SERIAL, FlashCommand(op=FlashOp.SET_ACTIVE, slot="a"), images)[3:] == [
            "set_active", "a",
        ]
        assert executor.build_args(SERIAL, FlashCommand(op=FlashOp.REBOOT_RECOVERY), images)[3:] == [
            "reboot", "recovery",
        ]
        assert executor.build_args(SERIAL, FlashCommand(op=FlashOp.FLASHING_UNLOCK), images)[3:] == [
            "flashing", "unlock",
        ]
        assert executor.build_args(SERIAL, FlashCommand(op=FlashOp.OEM_UNLOCK), images)[3:] == [
            "oem", "unlock",
        ]

    @pytest.mark.asyncio
    async def test_runs_commands_in_order(self, executor, fake_runner, images):
        # Arrange
        fake_runner.script_bootloader()
        commands = [flash("boot"), flash("system"), FlashCommand(op=FlashOp.REBOOT)]
        log, steps = [], []

        # Act
        await executor.execute(
            SERIAL, commands, images,
            on_log=log.append, on_progress=lambda done, total, label: steps.append((done, total)),
        )

        # Assert
        run = [c[3:5] for c in fake_runner.commands("fastboot", "-s", SERIAL) if c[3] in ("flash", "reboot")]
        assert run == [["flash", "boot"], ["flash", "system"], ["reboot"]]
        assert steps[-1] == (3, 3)
        assert any(line.startswith("$ fastboot -s SER123 flash boot") for line in log)
        assert any("OKAY" in line for line in log)

    @pytest.mark.asyncio
    async def test_failed_command_stops_the_sequence(self, executor, fake_runner, images):
        """[A, B, C] with B failing: C never runs and B's exit code is reported."""
        # Arrange
        fake_runner.script_bootloader()
        fake_runner.on(
            "fastboot", "-s", SERIAL, "flash", "system",
            returncode=1, stderr="FAILED (remote: 'partition table doesn't exist')",
        )
        commands = [flash("boot"), flash("system"), flash("vendor")]

        # Act
        with pytest.raises(FlashCommandFailed) as exc_info:
            await executor.execute(SERIAL, commands, images)

        # Assert
        assert exc_info.value.exit_code == 1
        assert not exc_info.value.recoverable_by_retry
        assert "manual recovery" in str(exc_info.value)
        flashed = [c[4] for c in fake_runner.commands("fastboot", "-s", SERIAL, "flash")]
        assert flashed == ["boot", "system"]

    @pytest.mark.asyncio
    async def test_device_gone_after_failure_is_device_removed(self, executor, fake_runner, images):
        # Arrange
        fake_runner.script_bootloader()

        def unplug(args):
            fake_runner.script_no_device()
            return 1, "", "FAILED (Write to device failed (no link))"

        fake_runner.on("fastboot", "-s", SERIAL, "flash", "system", handler=unplug)

        # Act / Assert
        with pytest.raises(DeviceRemovedDuringFlash) as exc_info:
            await executor.execute(SERIAL, [flash("boot"), flash("system")], images)
        assert exc_info.value.exit_code == 1

    @pytest.mark.asyncio
    async def test_reboots_bridge_device_into_bootloader_first(self, executor, fake_runner, images):
        # Arrange
        fake_runner.on("adb", "devices", stdout=f"List of devices attached\n{SERIAL}\tdevice\n")
        fake_runner.on("fastboot", "devices", stdout="")
        fake_runner.on(
            "adb", "-s", SERIAL, "reboot", "bootloader",
            handler=lambda args: (fake_runner.script_bootloader(), (0, "", ""))[1],
        )

        # Act
        await executor.execute(SERIAL, [flash("boot")], images)

        # Assert
        assert fake_runner.commands("adb", "-s", SERIAL, "reboot", "bootloader")
        assert fake_runner.commands("fastboot", "-s", SERIAL, "flash", "boot")

    @pytest.mark.asyncio
    async def test_bootloader_never_reached(self, executor, fake_runner, images):
        fake_runner.on("adb", "devices", stdout=f"List of devices attached\n{SERIAL}\tdevice\n")
        fake_runner.on("fastboot", "devices", stdout="")
        fake_runner.on("adb", "-s", SERIAL, "reboot", "bootloader")

        with pytest.raises(DeviceRemovedDuringFlash):
            await executor.execute(SERIAL, [flash("boot")], images)
        assert not fake_runner.commands("fastboot", "-s", SERIAL, "flash")

    @pytest.mark.asyncio
    async def test_cancel_is_checked_between_commands(self, executor, fake_runner, images):
        # Arrange
        fake_runner.script_bootloader()
        cancel = asyncio.Event()

        def cancel_after_first(done, total, label):
            if done == 1:
                cancel.set()

        # Act
        with pytest.raises(StageCancelled):
            await executor.execute(
                SERIAL, [flash("boot"), flash("system")], images,
                cancel_event=cancel, on_progress=cancel_after_first,
            )

        # Assert: the running write finished, the next never started
        flashed = [c[4] for c in fake_runner.commands("fastboot", "-s", SERIAL, "flash")]
        assert flashed == ["boot"]

    @pytest.mark.asyncio
    async def test_missing_image_file(self, executor, fake_runner, images):
        fake_runner.script_bootloader()
        images["boot"].unlink()

        with pytest.raises(StorageIOError):
            await executor.execute(SERIAL, [flash("boot")], images)


@pytest.mark.unit
class TestUnlockSteps:
    @pytest.fixture
    def executor(self, prober, settings, fake_runner):
        return FlashExecutor(prober, settings=settings, runner=fake_runner)

    @pytest.mark.asyncio
    async def test_flashing_unlock(self, executor, fake_runner):
        # Arrange
        fake_runner.script_bootloader(unlocked="no")
        log = []

        # Act
        await executor.run_step(SERIAL, FlashCommand(op=FlashOp.FLASHING_UNLOCK), on_log=log.append)

        # Assert
        assert fake_runner.commands("fastboot", "-s", SERIAL, "flashing", "unlock")
        assert log[0] == "$ fastboot -s SER123 flashing unlock"

    @pytest.mark.asyncio
    async def test_refused_unlock_raises(self, executor, fake_runner):
        fake_runner.script_bootloader(unlocked="no")
        fake_runner.on(
            "fastboot", "-s", SERIAL, "oem", "unlock",
            returncode=1, stderr="FAILED (remote: 'oem unlock is not allowed')",
        )

        with pytest.raises(FlashCommandFailed) as exc_info:
            await executor.run_step(SERIAL, FlashCommand(op=FlashOp.OEM_UNLOCK))
        assert exc_info.value.exit_code == 1

    @pytest.mark.asyncio
    async def test_reboot_step_uses_adb_from_android(self, executor, fake_runner):
        # Arrange
        fake_runner.on("adb", "devices", stdout=f"List of devices attached\n{SERIAL}\tdevice\n")
        fake_runner.on("fastboot", "devices", stdout="")
        fake_runner.on(
            "adb", "-s", SERIAL, "reboot", "bootloader",
            handler=lambda args: (fake_runner.script_bootloader(), (0, "", ""))[1],
        )

        # Act
        await executor.run_step(SERIAL, FlashCommand(op=FlashOp.REBOOT_BOOTLOADER))

        # Assert: one reboot, no second one through fastboot
        assert len(fake_runner.commands("adb", "-s", SERIAL, "reboot", "bootloader")) == 1
        assert not fake_runner.commands("fastboot", "-s", SERIAL, "reboot-bootloader")

    @pytest.mark.asyncio
    async def test_reboot_step_already_in_bootloader(self, executor, fake_runner):
        fake_runner.script_bootloader()

        await executor.run_step(SERIAL, FlashCommand(op=FlashOp.REBOOT_BOOTLOADER))

        assert not fake_runner.commands("adb", "-s", SERIAL)
        assert not fake_runner.commands("fastboot", "-s", SERIAL, "reboot-bootloader")
