"""Device models: catalog profiles and live detection results."""

import json
from pathlib import Path
from typing import Optional
import logging

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from flasher.models.installer import FlashCommand, FlashOp
from flasher.models.status import DeviceMode, UnlockStepKind


class UnlockingStep(BaseModel):
    """One step of the bootloader unlock guide.

    Manual steps are done by the user on the device; automated steps run
    ``command`` through the flash executor.
    """

    model_config = ConfigDict(frozen=True)

    title: str = Field(..., min_length=1)
    description: str = ""
    kind: UnlockStepKind = UnlockStepKind.MANUAL
    command: Optional[FlashCommand] = None
    optional: bool = Field(False, description="The user may skip this step")
    warning: Optional[str] = None
    duration_secs: Optional[int] = Field(None, gt=0, description="Rough time the step takes")

    @model_validator(mode="after")
    def command_matches_kind(self) -> "UnlockingStep":
        if self.kind == UnlockStepKind.AUTOMATED and self.command is None:
            raise ValueError(f"Automated step '{self.title}' needs a command")
        if self.kind == UnlockStepKind.MANUAL and self.command is not None:
            raise ValueError(f"Manual step '{self.title}' cannot have a command")
        return self


# Used for profiles that don't list their own steps
DEFAULT_UNLOCKING_STEPS: tuple[UnlockingStep, ...] = (
    UnlockingStep(
        title="Enable developer options",
        description="Open Settings > About phone and tap 'Build number' seven times.",
        duration_secs=30,
    ),
    UnlockingStep(
        title="Enable OEM unlocking",
        description="In Settings > System > Developer options, turn on 'OEM unlocking' "
        "and 'USB debugging'.",
        warning="Carrier-locked devices may not offer OEM unlocking.",
        duration_secs=30,
    ),
    UnlockingStep(
        title="Reboot to bootloader",
        kind=UnlockStepKind.AUTOMATED,
        command=FlashCommand(op=FlashOp.REBOOT_BOOTLOADER),
        duration_secs=15,
    ),
    UnlockingStep(
        title="Unlock the bootloader",
        description="The device asks for confirmation on its screen.",
        kind=UnlockStepKind.AUTOMATED,
        command=FlashCommand(op=FlashOp.FLASHING_UNLOCK),
        warning="Unlocking erases all data on the device.",
        duration_secs=10,
    ),
    UnlockingStep(
        title="Confirm on the device",
        description="Select 'Unlock the bootloader' with the volume keys and press power. "
        "The device wipes itself and returns to the bootloader.",
        duration_secs=60,
    ),
)


class DeviceProfile(BaseModel):
    """Device database entry (supplied by the external catalog loader)."""

    model_config = ConfigDict(frozen=True)

    codename: str = Field(..., min_length=1, description="Device codename (e.g. 'sargo')")
    name: str = Field(..., description="Human-readable device name")
    maker: str = Field(..., description="Manufacturer name")
    aliases: list[str] = Field(default_factory=list, description="Alternative codenames")
    experimental: bool = Field(False, description="Support is not yet well tested")
    battery_min: int = Field(default=50, ge=0, le=100)
    warnings: list[str] = Field(default_factory=list, description="Shown before unlocking")
    unlocking_steps: list[UnlockingStep] = Field(
        default_factory=list, description="Bootloader unlock guide, in order"
    )

    def matches_codename(self, codename: str) -> bool:
        """Check if a codename matches this device (including aliases)."""
        return codename == self.codename or codename in self.aliases

    @property
    def unlock_plan(self) -> list[UnlockingStep]:
        return list(self.unlocking_steps or DEFAULT_UNLOCKING_STEPS)


class DeviceCatalog:
    """In-memory lookup over device profiles."""

    def __init__(self, profiles: Optional[list[DeviceProfile]] = None):
        self.logger = logging.getLogger("flasher.catalog")
        self.profiles: list[DeviceProfile] = list(profiles or [])

    @classmethod
    def from_file(cls, path: Path) -> "DeviceCatalog":
        """Load profiles from a JSON list.

        Raises:
            FileNotFoundError: If the file doesn't exist
            pydantic.ValidationError: If an entry is malformed
        """
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        profiles = TypeAdapter(list[DeviceProfile]).validate_python(data)
        catalog = cls(profiles)
        catalog.logger.info(f"Loaded {len(profiles)} device profiles from {path}")
        return catalog

    def find(self, codename: Optional[str]) -> Optional[DeviceProfile]:
        if not codename:
            return None
        for profile in self.profiles:
            if profile.matches_codename(codename):
                return profile
        return None

    def __len__(self) -> int:
        return len(self.profiles)


class DeviceIdentity(BaseModel):
    """One detected device, as seen by a single probe cycle.

    Replaced wholesale on every poll; never mutated.
    """

    model_config = ConfigDict(frozen=True)

    serial: str
    mode: DeviceMode
    codename: Optional[str] = None
    model: Optional[str] = None
    manufacturer: Optional[str] = None
    android_version: Optional[str] = None
    build_id: Optional[str] = None
    battery_level: Optional[int] = Field(None, ge=0, le=100)
    unlocked: Optional[bool] = None
    profile: Optional[DeviceProfile] = None

    @property
    def recognized(self) -> bool:
        return self.profile is not None

    @property
    def display_name(self) -> str:
        if self.profile is not None:
            return self.profile.name
        if self.model:
            return f"Unknown ({self.model})"
        return f"Unknown Device ({self.serial})"

    def same_device(self, other: Optional["DeviceIdentity"]) -> bool:
        """Same serial and mode (details may differ between polls)."""
        return other is not None and self.serial == other.serial and self.mode == other.mode


class DeviceSnapshot(BaseModel):
    """Result of one probe: zero or one device."""

    model_config = ConfigDict(frozen=True)

    device: Optional[DeviceIdentity] = None
    ok: bool = Field(True, description="False when every listing command failed")
