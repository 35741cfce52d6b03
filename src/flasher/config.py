"""Runtime settings, overridable through environment variables."""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from flasher.models.status import StageEnum

ENV_PREFIX = "FLASHER_"

DEFAULT_STAGE_WEIGHTS = {
    StageEnum.DOWNLOAD: 0.45,
    StageEnum.DECOMPRESS: 0.10,
    StageEnum.VERIFY: 0.05,
    StageEnum.FLASH: 0.40,
}


class Settings(BaseModel):
    """Engine settings.

    Tool paths follow the ``ADB_PATH``/``FASTBOOT_PATH`` convention; all other
    variables use the ``FLASHER_`` prefix.
    """

    adb_path: str = "adb"
    fastboot_path: str = "fastboot"

    download_dir: Path = Path("./downloads")
    log_file: str = "./logs/flasher.log"
    catalog_path: Optional[Path] = None

    poll_interval: float = Field(1.0, gt=0, description="Seconds between device polls")
    removal_misses: int = Field(3, ge=1, description="Consecutive misses before Removed")
    probe_timeout: float = Field(5.0, gt=0, description="Timeout for each listing command")
    subscriber_queue_size: int = Field(16, ge=1)

    reboot_wait_timeout: float = Field(120.0, gt=0)
    reboot_wait_interval: float = Field(2.0, gt=0)
    flash_command_timeout: Optional[float] = Field(
        None, gt=0, description="None waits for fastboot indefinitely"
    )

    http_timeout: float = Field(30.0, gt=0)
    chunk_size: int = Field(64 * 1024, gt=0)
    resume_downloads: bool = True

    network_retry_attempts: int = Field(0, ge=0, description="Automatic retries after NetworkError")
    network_retry_backoff: float = Field(5.0, ge=0)

    stage_weights: dict[StageEnum, float] = Field(
        default_factory=lambda: dict(DEFAULT_STAGE_WEIGHTS)
    )
    log_buffer_lines: int = Field(500, ge=1)

    host: str = "127.0.0.1"
    port: int = Field(12316, gt=0, lt=65536)

    @model_validator(mode="after")
    def normalize_weights(self) -> "Settings":
        missing = [s.value for s in StageEnum if s not in self.stage_weights]
        if missing:
            raise ValueError(f"Missing stage weights: {', '.join(missing)}")
        total = sum(self.stage_weights.values())
        if total <= 0 or any(w < 0 for w in self.stage_weights.values()):
            raise ValueError("Stage weights must be non-negative and not all zero")
        self.stage_weights = {s: w / total for s, w in self.stage_weights.items()}
        return self

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "Settings":
        """Build settings from environment variables.

        Raises:
            pydantic.ValidationError: If a variable holds an invalid value
        """
        env = os.environ if environ is None else environ
        values: dict = {}
        if env.get("ADB_PATH"):
            values["adb_path"] = env["ADB_PATH"]
        if env.get("FASTBOOT_PATH"):
            values["fastboot_path"] = env["FASTBOOT_PATH"]

        mapping = {
            "DOWNLOAD_DIR": "download_dir",
            "LOG_FILE": "log_file",
            "CATALOG": "catalog_path",
            "POLL_INTERVAL": "poll_interval",
            "REMOVAL_MISSES": "removal_misses",
            "PROBE_TIMEOUT": "probe_timeout",
            "NETWORK_RETRIES": "network_retry_attempts",
            "HOST": "host",
            "PORT": "port",
        }
        for suffix, field in mapping.items():
            value = env.get(ENV_PREFIX + suffix)
            if value:
                values[field] = value
        return cls(**values)
