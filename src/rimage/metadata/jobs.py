"""
Work items, results and the wire encoding for ExifTool metadata copies.

A Job is produced per optimized file and turned into one stay-open command block:

    -overwrite_original_in_place
    -tagsFromFile
    <effective source>
    <destination>
    -execute

ExifTool answers every ``-execute`` with a ``{ready}`` line on stdout.
"""

import os
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

BACKUP_SUFFIX = ".backup"
READY_SENTINEL = "{ready}"
EXECUTE_MARKER = "-execute"
STAY_OPEN_ARGS = ("-stay_open", "True", "-@", "-")
SHUTDOWN_COMMAND = b"-stay_open\nFalse\n-execute\n"


class Job(BaseModel):
    """Copy metadata from ``source`` into ``destination``."""

    model_config = ConfigDict(frozen=True)

    source: Path
    destination: Path
    backup: bool = False

    @property
    def effective_source(self) -> Path:
        """Path ExifTool reads tags from; the renamed original when a backup was made."""
        if self.backup:
            return Path(f"{self.source}{BACKUP_SUFFIX}")
        return self.source


class Ack(BaseModel):
    """Outcome of one submitted Job."""

    model_config = ConfigDict(frozen=True)

    job: Job
    ok: bool
    error: str | None = None
    seconds: float = 0.0
    touched: tuple[Path, ...] = Field(default_factory=tuple)

    @classmethod
    def success(cls, job: Job, seconds: float) -> "Ack":
        return cls(job=job, ok=True, seconds=seconds, touched=(job.destination,))

    @classmethod
    def failure(cls, job: Job, error: str, seconds: float = 0.0) -> "Ack":
        return cls(job=job, ok=False, error=error, seconds=seconds)


def _encode_line(value: str | Path) -> bytes:
    encoded = os.fsencode(value)
    if b"\n" in encoded or b"\r" in encoded:
        msg = f"ExifTool arguments cannot contain line breaks: {value!r}"
        raise ValueError(msg)
    return encoded


def encode_command(job: Job) -> bytes:
    """
    Encode a Job as a single stay-open command block.

    The block always ends with the execute marker, otherwise ExifTool never emits
    the ready sentinel and the caller would wait forever.

    Raises:
        ValueError: if a path contains a line break.

    Examples:
        >>> encode_command(Job(source="c.png", destination="d.png", backup=True))
        b'-overwrite_original_in_place\\n-tagsFromFile\\nc.png.backup\\nd.png\\n-execute\\n'

    """
    lines = [
        b"-overwrite_original_in_place",
        b"-tagsFromFile",
        _encode_line(job.effective_source),
        _encode_line(job.destination),
        EXECUTE_MARKER.encode(),
    ]
    return b"\n".join(lines) + b"\n"
