"""Unit tests for Settings."""

import pytest
from pydantic import ValidationError

from flasher.config import Settings
from flasher.models.status import StageEnum


@pytest.mark.unit
class TestSettings:
    def test_defaults(self):
        settings = Settings()

        assert settings.adb_path == "adb"
        assert settings.poll_interval == 1.0
        assert settings.removal_misses == 3
        assert settings.network_retry_attempts == 0
        assert sum(settings.stage_weights.values()) == pytest.approx(1.0)

    def test_from_env_reads_tool_paths_and_prefixed_variables(self, tmp_path):
        env = {
            "ADB_PATH": "/opt/platform-tools/adb",
            "FASTBOOT_PATH": "/opt/platform-tools/fastboot",
            "FLASHER_DOWNLOAD_DIR": str(tmp_path),
            "FLASHER_POLL_INTERVAL": "0.5",
            "FLASHER_PORT": "9000",
            "UNRELATED": "ignored",
        }

        settings = Settings.from_env(env)

        assert settings.adb_path == "/opt/platform-tools/adb"
        assert settings.fastboot_path == "/opt/platform-tools/fastboot"
        assert settings.download_dir == tmp_path
        assert settings.poll_interval == 0.5
        assert settings.port == 9000

    def test_empty_values_keep_defaults(self):
        settings = Settings.from_env({"ADB_PATH": "", "FLASHER_PORT": ""})

        assert settings.adb_path == "adb"
        assert settings.port == 12316

    def test_invalid_port_rejected(self):
        with pytest.raises(ValidationError):
            Settings.from_env({"FLASHER_PORT": "70000"})

    def test_weights_are_normalized(self):
        settings = Settings(stage_weights={s: 1 for s in StageEnum})

        assert all(w == pytest.approx(0.25) for w in settings.stage_weights.values())

    def test_missing_weight_rejected(self):
        with pytest.raises(ValidationError, match="Missing stage weights"):
            Settings(stage_weights={StageEnum.DOWNLOAD: 1.0})

    def test_zero_weights_rejected(self):
        with pytest.raises(ValidationError):
            Settings(stage_weights={s: 0 for s in StageEnum})
