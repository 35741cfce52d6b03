"""Device prober: lists devices through adb and fastboot and classifies them."""

import asyncio
import re
from typing import Optional
import logging

from flasher.config import Settings
from flasher.errors import FlasherError
from flasher.models.device import DeviceCatalog, DeviceIdentity, DeviceSnapshot
from flasher.models.status import DeviceMode
from flasher.services.process import ProcessRunner

_GETPROP_LINE = re.compile(r"^\[(?P<key>[^\]]+)\]:\s*\[(?P<value>.*)\]$")
_BATTERY_LEVEL = re.compile(r"^\s*level:\s*(\d+)\s*$", re.MULTILINE)


def parse_adb_devices(text: str) -> list[tuple[str, str]]:
    """Parse ``adb devices`` output into (serial, state) pairs."""
    devices = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("List of devices") or line.startswith("*"):
            continue
        parts = line.split()
        if len(parts) >= 2:
            devices.append((parts[0], parts[1]))
    return devices


def parse_fastboot_devices(text: str) -> list[str]:
    """Parse ``fastboot devices`` output into serials."""
    serials = []
    for line in text.splitlines():
        parts = line.split()
        if parts and parts[-1] == "fastboot":
            serials.append(parts[0])
    return serials


def parse_getvar(output: str, var: str) -> Optional[str]:
    """Extract ``var: value`` from fastboot getvar output (printed on stderr)."""
    prefix = f"{var}:"
    for line in output.splitlines():
        line = line.strip()
        if line.startswith("(bootloader)"):
            line = line[len("(bootloader)"):].strip()
        if line.startswith(prefix):
            value = line[len(prefix):].strip()
            return value or None
    return None


def parse_getprop(output: str) -> dict[str, str]:
    """Parse full ``getprop`` output (``[key]: [value]`` lines)."""
    props = {}
    for line in output.splitlines():
        match = _GETPROP_LINE.match(line.strip())
        if match:
            props[match.group("key")] = match.group("value")
    return props


def parse_battery_level(output: Optional[str]) -> Optional[int]:
    """Read the battery percentage from ``dumpsys battery`` or a getvar value."""
    if not output:
        return None
    match = _BATTERY_LEVEL.search(output)
    if match:
        level = int(match.group(1))
    else:
        digits = re.match(r"^\s*(\d+)", output)
        if not digits:
            return None
        level = int(digits.group(1))
    return level if 0 <= level <= 100 else None


def unlocked_from_props(props: dict[str, str]) -> Optional[bool]:
    locked = props.get("ro.boot.flash.locked")
    boot_state = props.get("ro.boot.verifiedbootstate")
    if locked == "0" or boot_state == "orange":
        return True
    if locked == "1" or boot_state in ("green", "yellow"):
        return False
    return None


class DeviceProber:
    """Detects zero or one connected device.

    Tool failures are logged and reported as "no device", never raised.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        runner: Optional[ProcessRunner] = None,
        catalog: Optional[DeviceCatalog] = None,
    ):
        self.logger = logging.getLogger("flasher.prober")
        self.settings = settings or Settings()
        self.runner = runner or ProcessRunner()
        self.catalog = catalog or DeviceCatalog()
        self._details: dict[tuple[str, DeviceMode], DeviceIdentity] = {}

    async def probe(self, refresh: bool = False) -> DeviceSnapshot:
        """Run both listing commands and build a snapshot.

        Args:
            refresh: Re-read device details (battery, lock state) instead of
                using the per-(serial, mode) cache

        Returns:
            DeviceSnapshot with ok=False when both tools failed
        """
        adb_devices, fastboot_serials = await self._listings()
        ok = adb_devices is not None or fastboot_serials is not None

        found = self._classify(adb_devices or [], fastboot_serials or [])
        if found is None:
            # Forget details of devices that went away
            self._details.clear()
            return DeviceSnapshot(device=None, ok=ok)

        serial, mode = found
        key = (serial, mode)
        if refresh or key not in self._details:
            self._details = {
                k: v for k, v in self._details.items() if k[0] == serial
            }
            self._details[key] = await self._read_details(serial, mode)
        return DeviceSnapshot(device=self._details[key], ok=ok)

    async def is_present(self, serial: str) -> bool:
        adb_devices, fastboot_serials = await self._listings()
        if fastboot_serials and serial in fastboot_serials:
            return True
        return any(s == serial for s, _ in adb_devices or [])

    async def current_mode(self, serial: str) -> Optional[DeviceMode]:
        adb_devices, fastboot_serials = await self._listings()
        if fastboot_serials and serial in fastboot_serials:
            return DeviceMode.BOOTLOADER
        for s, state in adb_devices or []:
            if s == serial:
                return DeviceMode.BRIDGE if state == "device" else DeviceMode.UNKNOWN
        return None

    async def in_bootloader(self, serial: str) -> bool:
        return await self.current_mode(serial) == DeviceMode.BOOTLOADER

    async def wait_for_bootloader(
        self, serial: str, timeout: float, interval: float = 2.0
    ) -> bool:
        """Poll until the device shows up in fastboot, or timeout expires."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if await self.in_bootloader(serial):
                self.logger.info(f"Device {serial} is in bootloader mode")
                return True
            if loop.time() >= deadline:
                self.logger.warning(f"Timed out waiting for {serial} in bootloader mode")
                return False
            await asyncio.sleep(interval)

    async def _listings(self) -> tuple[Optional[list[tuple[str, str]]], Optional[list[str]]]:
        adb_result, fastboot_result = await asyncio.gather(
            self._run_listing([self.settings.adb_path, "devices"]),
            self._run_listing([self.settings.fastboot_path, "devices"]),
        )
        adb_devices = parse_adb_devices(adb_result) if adb_result is not None else None
        fastboot_serials = (
            parse_fastboot_devices(fastboot_result) if fastboot_result is not None else None
        )
        return adb_devices, fastboot_serials

    async def _run_listing(self, args: list[str]) -> Optional[str]:
        try:
            result = await self.runner.run(args, timeout=self.settings.probe_timeout)
        except FlasherError as e:
            self.logger.debug(f"Listing failed ({' '.join(args)}): {e}")
            return None
        if not result.ok:
            self.logger.debug(f"{' '.join(args)} exited with code {result.returncode}")
            return None
        return result.stdout

    def _classify(
        self, adb_devices: list[tuple[str, str]], fastboot_serials: list[str]
    ) -> Optional[tuple[str, DeviceMode]]:
        # Only one device is handled at a time
        if fastboot_serials:
            return fastboot_serials[0], DeviceMode.BOOTLOADER
        for serial, state in adb_devices:
            if state == "device":
                return serial, DeviceMode.BRIDGE
        if adb_devices:
            serial, state = adb_devices[0]
            self.logger.debug(f"Device {serial} in adb state '{state}'")
            return serial, DeviceMode.UNKNOWN
        return None

    async def _read_details(self, serial: str, mode: DeviceMode) -> DeviceIdentity:
        if mode == DeviceMode.BRIDGE:
            fields = await self._read_bridge_details(serial)
        elif mode == DeviceMode.BOOTLOADER:
            fields = await self._read_bootloader_details(serial)
        else:
            fields = {}

        profile = self.catalog.find(fields.get("codename"))
        if profile is not None:
            self.logger.info(f"Found device in catalog: {profile.name}")
            if not fields.get("manufacturer"):
                fields["manufacturer"] = profile.maker
        elif fields.get("codename"):
            self.logger.warning(f"Device {fields['codename']} not in catalog")

        device = DeviceIdentity(serial=serial, mode=mode, profile=profile, **fields)
        self.logger.info(
            f"Detected device {serial} ({mode.value}): codename={device.codename}, "
            f"battery={device.battery_level}, unlocked={device.unlocked}"
        )
        return device

    async def _read_bridge_details(self, serial: str) -> dict:
        adb = self.settings.adb_path
        props_out = await self._read([adb, "-s", serial, "shell", "getprop"])
        props = parse_getprop(props_out or "")
        battery_out = await self._read([adb, "-s", serial, "shell", "dumpsys", "battery"])

        codename = props.get("ro.product.device") or props.get("ro.product.model")
        return {
            "codename": codename or None,
            "model": props.get("ro.product.model") or None,
            "manufacturer": props.get("ro.product.manufacturer") or None,
            "android_version": props.get("ro.build.version.release") or None,
            "build_id": props.get("ro.build.id") or None,
            "unlocked": unlocked_from_props(props),
            "battery_level": parse_battery_level(battery_out),
        }

    async def _read_bootloader_details(self, serial: str) -> dict:
        fields: dict = {}
        for var in ("product", "unlocked", "battery-level"):
            output = await self._read(
                [self.settings.fastboot_path, "-s", serial, "getvar", var], combined=True
            )
            value = parse_getvar(output or "", var)
            if var == "product":
                fields["codename"] = value
            elif var == "unlocked":
                fields["unlocked"] = None if value is None else value.lower() == "yes"
            else:
                fields["battery_level"] = parse_battery_level(value)
        return fields

    async def _read(self, args: list[str], combined: bool = False) -> Optional[str]:
        try:
            result = await self.runner.run(args, timeout=self.settings.probe_timeout)
        except FlasherError as e:
            self.logger.warning(f"Failed to read device detail ({' '.join(args[1:])}): {e}")
            return None
        if not result.ok:
            self.logger.warning(
                f"Failed to read device detail ({' '.join(args[1:])}): exit code {result.returncode}"
            )
            return None
        return result.output if combined else result.stdout
