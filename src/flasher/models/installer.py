"""Installer configuration: the resolved, immutable plan for one run."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from flasher.models.status import CompressionKind


class FlashOp(str, Enum):
    FLASH = "flash"
    ERASE = "erase"
    FORMAT = "format"
    SET_ACTIVE = "set_active"
    REBOOT_BOOTLOADER = "reboot_bootloader"
    REBOOT = "reboot"
    REBOOT_RECOVERY = "reboot_recovery"
    FLASHING_UNLOCK = "flashing_unlock"
    OEM_UNLOCK = "oem_unlock"


class ImageSource(BaseModel):
    """A remote image to download, unpack and verify.

    ``sha256`` is the digest of the decompressed image that gets flashed.
    Without it the digest is looked up in the ``SHA256SUMS``-style file at
    ``checksum_url``, under the image name or the download name.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Logical id referenced by flash commands")
    url: str = Field(..., pattern=r"^https?://.+", description="Download URL")
    filename: str = Field(..., min_length=1, description="Local filename of the download")
    compression: CompressionKind = CompressionKind.NONE
    sha256: Optional[str] = Field(None, pattern=r"^[A-Fa-f0-9]{64}$", description="Digest of the image")
    checksum_url: Optional[str] = Field(
        None, pattern=r"^https?://.+", description="Checksum file listing the digest"
    )
    download_sha256: Optional[str] = Field(
        None,
        pattern=r"^[A-Fa-f0-9]{64}$",
        description="Digest of the downloaded file (only used to skip a cached download)",
    )
    size: Optional[int] = Field(None, gt=0, description="Expected download size in bytes")

    @field_validator("filename")
    @classmethod
    def no_directory_traversal(cls, v: str) -> str:
        """Keep downloads inside the download directory."""
        if ".." in v or "/" in v or "\\" in v:
            raise ValueError("Filename must be a plain file name")
        return v

    @property
    def image_filename(self) -> str:
        """Filename of the decompressed image."""
        if self.compression == CompressionKind.GZIP and self.filename.endswith(".gz"):
            return self.filename[: -len(".gz")]
        if self.compression == CompressionKind.XZ and self.filename.endswith(".xz"):
            return self.filename[: -len(".xz")]
        if self.compression == CompressionKind.NONE:
            return self.filename
        return f"{self.filename}.img"

    @model_validator(mode="after")
    def digest_source_required(self) -> "ImageSource":
        if self.sha256 is None and self.checksum_url is None:
            raise ValueError(f"Image '{self.name}' needs sha256 or checksum_url")
        return self


class FlashCommand(BaseModel):
    """One flashing-tool invocation.

    Device quirks live here as data: verity flags on vbmeta,
    ``format`` vs ``erase`` for data partitions, slot switches.
    """

    model_config = ConfigDict(frozen=True)

    op: FlashOp
    partition: Optional[str] = None
    image: Optional[str] = Field(None, description="ImageSource name to write")
    flags: list[str] = Field(
        default_factory=list,
        description="Extra flags placed between partition and file, e.g. --disable-verity",
    )
    fs_type: str = Field("ext4", description="Filesystem for format operations")
    slot: Optional[str] = Field(None, pattern=r"^(a|b|all|other)$")
    description: Optional[str] = None

    @model_validator(mode="after")
    def check_required_fields(self) -> "FlashCommand":
        if self.op == FlashOp.FLASH and (not self.partition or not self.image):
            raise ValueError("flash requires partition and image")
        if self.op in (FlashOp.ERASE, FlashOp.FORMAT) and not self.partition:
            raise ValueError(f"{self.op.value} requires partition")
        if self.op == FlashOp.SET_ACTIVE and not self.slot:
            raise ValueError("set_active requires slot")
        for flag in self.flags:
            if not flag.startswith("--"):
                raise ValueError(f"Flag must start with '--': {flag}")
        return self

    @property
    def label(self) -> str:
        if self.description:
            return self.description
        if self.op == FlashOp.FLASH:
            return f"Flashing {self.partition}"
        if self.op == FlashOp.ERASE:
            return f"Erasing {self.partition}"
        if self.op == FlashOp.FORMAT:
            return f"Formatting {self.partition} as {self.fs_type}"
        if self.op == FlashOp.SET_ACTIVE:
            return f"Setting active slot {self.slot}"
        if self.op in (FlashOp.FLASHING_UNLOCK, FlashOp.OEM_UNLOCK):
            return "Unlocking the bootloader"
        return self.op.value.replace("_", " ").capitalize()


class PrerequisiteThresholds(BaseModel):
    model_config = ConfigDict(frozen=True)

    battery_min: int = Field(50, ge=0, le=100, description="Minimum battery percentage")
    require_unlocked: bool = True
    min_android_version: Optional[str] = Field(None, pattern=r"^\d+(\.\d+)*$")


class InstallerConfig(BaseModel):
    """Resolved plan for one install run. Never mutated mid-run."""

    model_config = ConfigDict(frozen=True)

    distro: str = Field(..., min_length=1)
    channel: str = Field("stable", min_length=1)
    interface: Optional[str] = None
    images: list[ImageSource] = Field(..., min_length=1)
    commands: list[FlashCommand] = Field(..., min_length=1)
    prerequisites: PrerequisiteThresholds = Field(default_factory=PrerequisiteThresholds)
    reboot_after: bool = Field(True, description="Run 'fastboot reboot' after the last command")

    @field_validator("images")
    @classmethod
    def unique_image_names(cls, v: list[ImageSource]) -> list[ImageSource]:
        names = [i.name for i in v]
        if len(names) != len(set(names)):
            raise ValueError("Image names must be unique")
        if len({i.filename for i in v}) != len(v):
            raise ValueError("Image filenames must be unique")
        if len({i.image_filename for i in v}) != len(v):
            raise ValueError("Decompressed image filenames must be unique")
        return v

    @model_validator(mode="after")
    def commands_reference_known_images(self) -> "InstallerConfig":
        names = {i.name for i in self.images}
        for command in self.commands:
            if command.image is not None and command.image not in names:
                raise ValueError(f"Command references unknown image '{command.image}'")
        return self

    def image(self, name: str) -> ImageSource:
        for image in self.images:
            if image.name == name:
                return image
        raise KeyError(name)

    @property
    def workspace_name(self) -> str:
        """Directory name under the download dir for this distro/channel."""
        parts = [self.distro, self.channel] + ([self.interface] if self.interface else [])
        return "-".join(p.lower().replace(" ", "_").replace("/", "_") for p in parts)
