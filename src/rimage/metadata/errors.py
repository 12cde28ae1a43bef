"""Faults raised while driving a stay-open ExifTool process."""

from rimage.metadata.jobs import Job


class ExifToolFault(Exception):
    """Base class for every ExifTool supervision failure."""


class SpawnFault(ExifToolFault):
    """ExifTool could not be started."""

    def __init__(self, executable: str, reason: str) -> None:
        self.executable = executable
        super().__init__(
            f"Could not start {executable!r}: {reason}. "
            "rimage requires ExifTool (https://exiftool.org) to copy metadata; "
            "install it and make sure it is reachable on PATH, or pass --exiftool.",
        )


class StreamCaptureFault(SpawnFault):
    """ExifTool started but one of its standard streams was not captured."""


class JobFault(ExifToolFault):
    """A submitted Job did not complete."""

    def __init__(self, job: Job, message: str) -> None:
        self.job = job
        super().__init__(f"{message} ({job.source} -> {job.destination})")


class WriteFault(JobFault):
    """The command could not be written to ExifTool's stdin."""


class ResponseChannelClosedFault(JobFault):
    """ExifTool's stdout closed before the ready sentinel arrived."""


class TimeoutFault(JobFault):
    """ExifTool did not answer within the configured timeout."""


class SupervisorStateFault(ExifToolFault):
    """An operation was invoked in a state that does not allow it."""


class AlreadyTerminatedFault(SupervisorStateFault):
    """The supervisor has already been shut down."""
