"""Persistent resume records for partial downloads."""

import json
from pathlib import Path
from typing import Optional
import logging

from flasher.models.state import DownloadState


class DownloadStateStore:
    """Stores a ``<file>.part.json`` record beside each ``<file>.part``.

    A corrupted record is deleted and treated as absent, so the transfer
    restarts from zero instead of resuming into a mismatched file.
    """

    def __init__(self):
        self.logger = logging.getLogger("flasher.state_manager")

    @staticmethod
    def record_path(part_path: Path) -> Path:
        return part_path.with_name(part_path.name + ".json")

    def load_state(self, part_path: Path) -> Optional[DownloadState]:
        """Load the resume record for a partial file.

        Returns:
            DownloadState if present and valid, None otherwise
        """
        path = self.record_path(part_path)
        if not path.exists():
            self.logger.debug(f"No resume record for {part_path.name}")
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            state = DownloadState(**data)
            self.logger.info(
                f"Loaded resume record: {state.part_name}, bytes={state.bytes_downloaded}"
            )
            return state
        except Exception as e:
            self.logger.error(f"Failed to load resume record {path}: {e}", exc_info=True)
            path.unlink(missing_ok=True)
            return None

    def save_state(self, part_path: Path, state: DownloadState) -> None:
        path = self.record_path(part_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(state.model_dump(mode="json"), f, indent=2)
            self.logger.debug(
                f"Saved resume record: {state.part_name}, bytes={state.bytes_downloaded}"
            )
        except OSError as e:
            self.logger.error(f"Failed to save resume record {path}: {e}", exc_info=True)
            raise

    def delete_state(self, part_path: Path) -> None:
        path = self.record_path(part_path)
        if path.exists():
            path.unlink()
            self.logger.debug(f"Deleted resume record {path.name}")
