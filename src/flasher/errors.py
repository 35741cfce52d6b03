"""Error taxonomy for the installation engine.

Every error carries a stable ``kind`` (shown to the user), an error ``code``
prefix for log lines, and whether a fresh attempt can reasonably fix it.
"""

from typing import Optional


class FlasherError(Exception):
    """Base class for all engine errors."""

    kind = "FlasherError"
    code = "FLASHER_ERROR"
    recoverable_by_retry = True

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_info(self) -> dict:
        """Structured details for user-visible failure reporting."""
        return {
            "kind": self.kind,
            "code": self.code,
            "message": str(self),
            "recoverable_by_retry": self.recoverable_by_retry,
        }


class ToolNotFound(FlasherError):
    kind = "ToolNotFound"
    code = "TOOL_NOT_FOUND"

    def __init__(self, tool: str):
        super().__init__(f"{tool} not found (set ADB_PATH / FASTBOOT_PATH)")
        self.tool = tool


class ToolTimeout(FlasherError):
    kind = "ToolTimeout"
    code = "TOOL_TIMEOUT"

    def __init__(self, tool: str, timeout: float):
        super().__init__(f"{tool} did not exit within {timeout}s")
        self.tool = tool
        self.timeout = timeout


class NetworkError(FlasherError):
    kind = "NetworkError"
    code = "NETWORK_ERROR"

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class HttpStatusError(FlasherError):
    kind = "HttpStatusError"
    code = "HTTP_STATUS"

    def __init__(self, status_code: int, url: str):
        super().__init__(f"server returned HTTP {status_code} for {url}")
        self.status_code = status_code
        self.url = url

    def to_info(self) -> dict:
        info = super().to_info()
        info["status_code"] = self.status_code
        return info


class StorageIOError(FlasherError):
    """Disk read/write failure."""

    kind = "IoError"
    code = "IO_ERROR"


class CorruptArchiveError(FlasherError):
    kind = "CorruptArchiveError"
    code = "CORRUPT_ARCHIVE"


class ChecksumMismatch(FlasherError):
    kind = "ChecksumMismatch"
    code = "CHECKSUM_MISMATCH"

    def __init__(self, expected: str, actual: str, path: Optional[str] = None):
        super().__init__(f"expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual
        self.path = path

    def to_info(self) -> dict:
        info = super().to_info()
        info["expected"] = self.expected
        info["actual"] = self.actual
        return info


class ChecksumNotListed(FlasherError):
    """The checksum file has no entry for an image."""

    kind = "ChecksumNotListed"
    code = "CHECKSUM_NOT_LISTED"
    recoverable_by_retry = False

    def __init__(self, filename: str, checksum_url: str):
        super().__init__(f"{filename} is not listed in {checksum_url}")
        self.filename = filename
        self.checksum_url = checksum_url


class FlashCommandFailed(FlasherError):
    kind = "FlashCommandFailed"
    code = "FLASH_FAILED"
    recoverable_by_retry = False

    def __init__(self, exit_code: int, command: list[str], stderr: str = ""):
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
        super().__init__(
            f"'{' '.join(command)}' exited with code {exit_code} ({detail}). "
            f"The device may be partially flashed and need manual recovery"
        )
        self.exit_code = exit_code
        self.command = command
        self.stderr = stderr

    def to_info(self) -> dict:
        info = super().to_info()
        info["exit_code"] = self.exit_code
        return info


class DeviceRemovedDuringFlash(FlasherError):
    kind = "DeviceRemovedDuringFlash"
    code = "DEVICE_REMOVED"
    recoverable_by_retry = False

    def __init__(self, serial: str, exit_code: Optional[int] = None):
        super().__init__(
            f"device {serial} disconnected while flashing. "
            f"It may be partially flashed and need manual recovery"
        )
        self.serial = serial
        self.exit_code = exit_code

    def to_info(self) -> dict:
        info = super().to_info()
        info["exit_code"] = self.exit_code
        return info


class PrerequisiteNotMet(FlasherError):
    kind = "PrerequisiteNotMet"
    code = "PREREQUISITE_NOT_MET"

    def __init__(self, which: str, message: str):
        super().__init__(f"{which}: {message}")
        self.which = which


class StageCancelled(FlasherError):
    """Raised at a suspension point once cancellation was requested."""

    kind = "Cancelled"
    code = "CANCELLED"

    def __init__(self, message: str = "cancelled by user"):
        super().__init__(message)


class InvalidTransition(FlasherError):
    """A user command is not accepted in the current wizard step."""

    kind = "InvalidTransition"
    code = "INVALID_TRANSITION"

    def __init__(self, step: str, event: str):
        super().__init__(f"'{event}' is not allowed while in '{step}'")
        self.step = step
        self.event = event


class InternalError(FlasherError):
    """Unexpected exception inside a stage, wrapped so the run still terminates."""

    kind = "InternalError"
    code = "INTERNAL_ERROR"
