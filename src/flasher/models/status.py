"""Status enums for the installation engine."""

from enum import Enum


class StageEnum(str, Enum):
    """Install pipeline stages, in execution order.

    download → decompress → verify → flash
    A stage only starts once the previous one has succeeded.
    """

    DOWNLOAD = "download"
    DECOMPRESS = "decompress"
    VERIFY = "verify"
    FLASH = "flash"


STAGE_ORDER: tuple[StageEnum, ...] = (
    StageEnum.DOWNLOAD,
    StageEnum.DECOMPRESS,
    StageEnum.VERIFY,
    StageEnum.FLASH,
)


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


class DeviceMode(str, Enum):
    """How the device is currently reachable."""

    BRIDGE = "bridge"  # adb, OS booted with debugging enabled
    BOOTLOADER = "bootloader"  # fastboot only
    UNKNOWN = "unknown"  # serial seen, mode unclear (unauthorized, offline, ...)


class CompressionKind(str, Enum):
    GZIP = "gzip"
    XZ = "xz"
    NONE = "none"


class WizardStep(str, Enum):
    """Wizard screens.

    waiting_for_device → device_details → distro_selection →
    prerequisite_check → installing → success | failure
    A locked bootloader detours prerequisite_check → safety_warnings →
    unlocking → prerequisite_check.
    browsing is reachable from any step except installing and unlocking.
    """

    WAITING_FOR_DEVICE = "waiting_for_device"
    UNSUPPORTED_DEVICE = "unsupported_device"
    DEVICE_DETAILS = "device_details"
    DISTRO_SELECTION = "distro_selection"
    PREREQUISITE_CHECK = "prerequisite_check"
    SAFETY_WARNINGS = "safety_warnings"
    UNLOCKING = "unlocking"
    INSTALLING = "installing"
    SUCCESS = "success"
    FAILURE = "failure"
    BROWSING = "browsing"


class PrerequisiteKind(str, Enum):
    DEVICE_MODE = "device_mode"
    BOOTLOADER_LOCK = "bootloader_lock"
    BATTERY = "battery"
    FIRMWARE = "firmware"


class UnlockStepKind(str, Enum):
    MANUAL = "manual"  # done by the user on the device
    AUTOMATED = "automated"  # run by the installer
