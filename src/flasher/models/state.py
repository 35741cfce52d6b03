"""Resume record for partially downloaded images."""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, field_validator


class DownloadState(BaseModel):
    """Persistent record stored next to a ``.part`` file.

    Lets a later attempt resume the transfer with a Range request, but only
    for the same URL.
    """

    url: str = Field(..., description="Original download URL")
    part_name: str = Field(..., description="Partial file name")
    bytes_downloaded: int = Field(default=0, ge=0, description="Bytes already on disk")
    bytes_total: Optional[int] = Field(None, gt=0, description="Total size if known")
    accept_ranges: bool = Field(False, description="Server advertised byte ranges")
    last_update: datetime = Field(default_factory=datetime.now)

    @field_validator("last_update", mode="before")
    @classmethod
    def parse_iso8601(cls, v):
        """Parse ISO 8601 timestamp strings."""
        if isinstance(v, str):
            return datetime.fromisoformat(v.replace("Z", "+00:00"))
        return v

    def can_resume(self, url: str, bytes_on_disk: int) -> bool:
        """Resume only the same URL, when ranges are supported and the file is intact."""
        return (
            self.url == url
            and self.accept_ranges
            and bytes_on_disk > 0
            and (self.bytes_total is None or bytes_on_disk < self.bytes_total)
        )
