"""Flash executor: runs the declarative fastboot command list."""

import asyncio
from pathlib import Path
from typing import Callable, Optional
import logging

from flasher.config import Settings
from flasher.errors import (
    DeviceRemovedDuringFlash,
    FlashCommandFailed,
    StageCancelled,
    StorageIOError,
)
from flasher.models.installer import FlashCommand, FlashOp
from flasher.models.status import DeviceMode
from flasher.services.process import ProcessRunner
from flasher.services.prober import DeviceProber

LogCallback = Callable[[str], None]
StepCallback = Callable[[int, int, str], None]


class FlashExecutor:
    """Interprets a FlashCommand list against one device.

    Device quirks are data in the command list; this class has no
    per-device branching. Each child process is awaited before the next
    starts and a running partition write is never interrupted.
    """

    def __init__(
        self,
        prober: DeviceProber,
        settings: Optional[Settings] = None,
        runner: Optional[ProcessRunner] = None,
    ):
        self.logger = logging.getLogger("flasher.flash")
        self.prober = prober
        self.settings = settings or prober.settings
        self.runner = runner or prober.runner

    def build_args(self, serial: str, command: FlashCommand, images: dict[str, Path]) -> list[str]:
        """Command line for one step.

        Raises:
            StorageIOError: If a referenced image file is missing
        """
        fastboot = [self.settings.fastboot_path, "-s", serial]
        if command.op == FlashOp.FLASH:
            image_path = images.get(command.image)
            if image_path is None or not image_path.exists():
                raise StorageIOError(f"image not found for {command.partition}: {image_path}")
            # fastboot -s SERIAL flash PARTITION [FLAGS...] FILE
            return fastboot + ["flash", command.partition, *command.flags, str(image_path)]
        if command.op == FlashOp.ERASE:
            return fastboot + ["erase", command.partition]
        if command.op == FlashOp.FORMAT:
            return fastboot + [f"format:{command.fs_type}", command.partition]
        if command.op == FlashOp.SET_ACTIVE:
            return fastboot + ["set_active", command.slot]
        if command.op == FlashOp.REBOOT_BOOTLOADER:
            return fastboot + ["reboot-bootloader"]
        if command.op == FlashOp.REBOOT_RECOVERY:
            return fastboot + ["reboot", "recovery"]
        if command.op == FlashOp.FLASHING_UNLOCK:
            return fastboot + ["flashing", "unlock"]
        if command.op == FlashOp.OEM_UNLOCK:
            # Older bootloaders only know the oem form
            return fastboot + ["oem", "unlock"]
        return fastboot + ["reboot"]

    async def run_step(
        self, serial: str, command: FlashCommand, on_log: Optional[LogCallback] = None
    ) -> None:
        """Run one command outside an install run (bootloader unlocking).

        A reboot_bootloader step is done once the device sits in the
        bootloader, so a device booted into Android is rebooted with adb.

        Raises:
            FlashCommandFailed: The command exited non-zero
            DeviceRemovedDuringFlash: The device vanished or never reached the bootloader
        """
        log = on_log or (lambda line: None)
        if command.op == FlashOp.REBOOT_BOOTLOADER:
            await self._ensure_bootloader(serial, log)
            return
        await self.execute(serial, [command], {}, on_log=on_log)

    async def execute(
        self,
        serial: str,
        commands: list[FlashCommand],
        images: dict[str, Path],
        cancel_event: Optional[asyncio.Event] = None,
        on_log: Optional[LogCallback] = None,
        on_progress: Optional[StepCallback] = None,
    ) -> None:
        """Run every command in order, stopping at the first failure.

        Args:
            serial: Target device serial
            commands: Ordered flash commands
            images: ImageSource name -> decompressed image path
            cancel_event: Checked between commands
            on_log: Receives every output line of every child
            on_progress: Called with (completed, total, label)

        Raises:
            FlashCommandFailed: A command exited non-zero; later commands skipped
            DeviceRemovedDuringFlash: The device vanished mid-sequence
            StorageIOError: A referenced image is missing
            StageCancelled: cancel_event was set between commands
        """
        total = len(commands)
        log = on_log or (lambda line: None)

        def forward(stream: str, line: str) -> None:
            if line.strip():
                log(line)

        await self._ensure_bootloader(serial, log)

        for index, command in enumerate(commands):
            if cancel_event is not None and cancel_event.is_set():
                self.logger.info(f"Flash cancelled before step {index + 1}/{total}")
                raise StageCancelled()

            args = self.build_args(serial, command, images)
            self.logger.info(f"Step {index + 1}/{total}: {command.label}")
            log(f"$ {' '.join(args)}")
            if on_progress is not None:
                on_progress(index, total, command.label)

            result = await self.runner.run(
                args, timeout=self.settings.flash_command_timeout, on_line=forward
            )
            if not result.ok:
                await self._raise_failure(serial, args, result.returncode, result.stderr)

            if command.op == FlashOp.REBOOT_BOOTLOADER:
                await self._wait_for_bootloader(serial, log)

            if on_progress is not None:
                on_progress(index + 1, total, command.label)

        self.logger.info(f"Flashed {total} steps on {serial}")

    async def _ensure_bootloader(self, serial: str, log: LogCallback) -> None:
        """Reboot a device booted into Android to the bootloader first."""
        mode = await self.prober.current_mode(serial)
        if mode == DeviceMode.BOOTLOADER:
            return
        if mode == DeviceMode.BRIDGE:
            args = [self.settings.adb_path, "-s", serial, "reboot", "bootloader"]
            log(f"$ {' '.join(args)}")
            result = await self.runner.run(args, timeout=self.settings.probe_timeout * 6)
            if not result.ok:
                # The device may already be on its way to fastboot
                self.logger.warning(f"adb reboot bootloader exited with {result.returncode}")
        await self._wait_for_bootloader(serial, log)

    async def _wait_for_bootloader(self, serial: str, log: LogCallback) -> None:
        log(f"Waiting for {serial} in bootloader mode...")
        found = await self.prober.wait_for_bootloader(
            serial,
            timeout=self.settings.reboot_wait_timeout,
            interval=self.settings.reboot_wait_interval,
        )
        if not found:
            raise DeviceRemovedDuringFlash(serial)

    async def _raise_failure(
        self, serial: str, args: list[str], returncode: int, stderr: str
    ) -> None:
        self.logger.error(f"'{' '.join(args)}' failed with exit code {returncode}")
        if not await self.prober.is_present(serial):
            raise DeviceRemovedDuringFlash(serial, exit_code=returncode)
        raise FlashCommandFailed(returncode, args, stderr)
