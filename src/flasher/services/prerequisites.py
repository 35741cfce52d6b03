"""Pre-install checks on the detected device."""

import re
from typing import Optional
import logging

from flasher.models.device import DeviceIdentity
from flasher.models.installer import PrerequisiteThresholds
from flasher.models.status import DeviceMode, PrerequisiteKind
from flasher.models.wizard import UnmetPrerequisite

logger = logging.getLogger("flasher.prerequisites")


def parse_version(version: Optional[str]) -> Optional[tuple[int, ...]]:
    """Leading dotted-numeric part of a version string, e.g. '11.0.2-rc1' -> (11, 0, 2)."""
    if not version:
        return None
    match = re.match(r"\d+(\.\d+)*", version.strip())
    if not match:
        return None
    return tuple(int(p) for p in match.group(0).split("."))


def version_at_least(version: tuple[int, ...], minimum: tuple[int, ...]) -> bool:
    # Pad so that 11 == 11.0
    width = max(len(version), len(minimum))
    return version + (0,) * (width - len(version)) >= minimum + (0,) * (width - len(minimum))


def evaluate_prerequisites(
    device: Optional[DeviceIdentity],
    thresholds: Optional[PrerequisiteThresholds] = None,
) -> list[UnmetPrerequisite]:
    """Return every unmet prerequisite; an empty list means ready to install.

    Known-bad values are never overridable. Values that could not be read
    are reported as overridable so the user can decide.
    """
    thresholds = thresholds or PrerequisiteThresholds()
    unmet: list[UnmetPrerequisite] = []

    if device is None or device.mode == DeviceMode.UNKNOWN:
        unmet.append(
            UnmetPrerequisite(
                which=PrerequisiteKind.DEVICE_MODE,
                message="Connect the device booted into Android with USB debugging, "
                "or in bootloader mode",
            )
        )
        return unmet

    if thresholds.require_unlocked:
        if device.unlocked is False:
            unmet.append(
                UnmetPrerequisite(
                    which=PrerequisiteKind.BOOTLOADER_LOCK,
                    message="The bootloader is locked; unlock it before installing",
                )
            )
        elif device.unlocked is None:
            unmet.append(
                UnmetPrerequisite(
                    which=PrerequisiteKind.BOOTLOADER_LOCK,
                    message="Could not read the bootloader lock state",
                    overridable=True,
                )
            )

    battery_min = thresholds.battery_min
    if device.profile is not None:
        battery_min = max(battery_min, device.profile.battery_min)
    if device.battery_level is None:
        unmet.append(
            UnmetPrerequisite(
                which=PrerequisiteKind.BATTERY,
                message=f"Could not read the battery level; make sure it is at least {battery_min}%",
                overridable=True,
            )
        )
    elif device.battery_level < battery_min:
        unmet.append(
            UnmetPrerequisite(
                which=PrerequisiteKind.BATTERY,
                message=f"Battery at {device.battery_level}%, charge to at least {battery_min}%",
            )
        )

    if thresholds.min_android_version:
        minimum = parse_version(thresholds.min_android_version)
        current = parse_version(device.android_version)
        if current is None:
            unmet.append(
                UnmetPrerequisite(
                    which=PrerequisiteKind.FIRMWARE,
                    message=f"Could not read the Android version; "
                    f"{thresholds.min_android_version} or newer is required",
                    overridable=True,
                )
            )
        elif not version_at_least(current, minimum):
            unmet.append(
                UnmetPrerequisite(
                    which=PrerequisiteKind.FIRMWARE,
                    message=f"Android {device.android_version} is too old; "
                    f"update to {thresholds.min_android_version} or newer first",
                )
            )

    if unmet:
        logger.info(f"Unmet prerequisites: {', '.join(u.which.value for u in unmet)}")
    return unmet
