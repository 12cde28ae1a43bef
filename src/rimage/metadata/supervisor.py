"""
Supervise one long-lived ``exiftool -stay_open True -@ -`` process.

Commands are written one at a time and correlated with ExifTool's ``{ready}``
sentinel by arrival order, so a supervisor has exactly one submitting caller and
at most one command in flight. Use it as a context manager so the process is shut
down on every exit path:

    with ExifToolSupervisor.start() as et:
        for job in jobs:
            et.submit(job)
"""

import queue
import subprocess
import threading
import time
from collections.abc import Iterable
from enum import Enum
from types import TracebackType
from typing import IO, Self

from loguru import logger

from rimage.metadata.errors import (
    AlreadyTerminatedFault,
    JobFault,
    ResponseChannelClosedFault,
    SpawnFault,
    StreamCaptureFault,
    SupervisorStateFault,
    TimeoutFault,
    WriteFault,
)
from rimage.metadata.jobs import SHUTDOWN_COMMAND, STAY_OPEN_ARGS, Ack, Job, encode_command
from rimage.metadata.streams import CHANNEL_CLOSED, DiagnosticDrain, ResponseRouter
from rimage.settings import DEFAULT_EXIFTOOL, DEFAULT_EXIFTOOL_TIMEOUT, DEFAULT_SHUTDOWN_TIMEOUT


class SupervisorState(Enum):
    STARTING = "starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class ExifToolSupervisor:
    """Own an ExifTool process, its three pipes and the two reader threads."""

    def __init__(
        self,
        executable: str = DEFAULT_EXIFTOOL,
        *,
        timeout: float | None = DEFAULT_EXIFTOOL_TIMEOUT,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
    ) -> None:
        # Checked up front so submit never fails after a command was written.
        if timeout is not None and timeout < 0:
            msg = f"timeout must be a non-negative number of seconds or None, got {timeout}"
            raise ValueError(msg)
        self.executable = executable
        self.timeout = timeout
        self.shutdown_timeout = shutdown_timeout
        self.state = SupervisorState.STARTING

        self._process: subprocess.Popen[bytes] | None = None
        self._stdin: IO[bytes] | None = None
        self._stop_token = threading.Event()
        self._handoff: queue.Queue[object] = queue.Queue(maxsize=1)
        self._router: ResponseRouter | None = None
        self._drain: DiagnosticDrain | None = None
        self._fault: JobFault | None = None

    @classmethod
    def start(
        cls,
        executable: str = DEFAULT_EXIFTOOL,
        *,
        timeout: float | None = DEFAULT_EXIFTOOL_TIMEOUT,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
    ) -> Self:
        """
        Spawn ExifTool in stay-open mode and start the stdout/stderr readers.

        Raises:
            SpawnFault: the executable is missing or could not be started.
            StreamCaptureFault: a standard stream could not be captured.
            ValueError: ``timeout`` is negative.

        """
        supervisor = cls(executable, timeout=timeout, shutdown_timeout=shutdown_timeout)
        supervisor._spawn()  # noqa: SLF001
        return supervisor

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        """Exit status of the process; ``None`` while it runs or before it started."""
        return self._process.poll() if self._process else None

    @property
    def usable(self) -> bool:
        return self.state is SupervisorState.RUNNING and self._fault is None

    def _spawn(self) -> None:
        if self.state is not SupervisorState.STARTING:
            msg = f"ExifTool supervisor cannot start from state {self.state.value}"
            raise SupervisorStateFault(msg)

        command = [self.executable, *STAY_OPEN_ARGS]
        logger.debug("exiftool_spawning", command=command)
        try:
            process = subprocess.Popen(  # noqa: S603
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except (OSError, ValueError) as exc:
            logger.error("exiftool_spawn_failed", executable=self.executable, error=str(exc))
            raise SpawnFault(self.executable, str(exc)) from exc

        if process.stdin is None or process.stdout is None or process.stderr is None:
            process.kill()
            process.wait()
            logger.error("exiftool_stream_capture_failed", executable=self.executable)
            raise StreamCaptureFault(self.executable, "standard streams were not captured")

        self._process = process
        self._stdin = process.stdin
        self._router = ResponseRouter(process.stdout, self._handoff, self._stop_token)
        self._drain = DiagnosticDrain(process.stderr, self._stop_token)
        self._router.start()
        self._drain.start()
        self.state = SupervisorState.RUNNING
        logger.info("exiftool_started", executable=self.executable, pid=process.pid)

    def submit(self, job: Job) -> Ack:
        """
        Send one Job and block until ExifTool reports it finished.

        Returns:
            A successful Ack for ``job``.

        Raises:
            WriteFault: the command could not be written.
            ResponseChannelClosedFault: ExifTool's stdout closed first.
            TimeoutFault: no answer within ``timeout`` seconds.
            SupervisorStateFault: the supervisor is not running.
            AlreadyTerminatedFault: the supervisor was shut down.

        After any JobFault the supervisor is unusable and further calls fail fast
        with the same kind of fault.

        """
        if self.state is SupervisorState.TERMINATED:
            msg = "ExifTool supervisor has already been shut down"
            raise AlreadyTerminatedFault(msg)
        if self.state is not SupervisorState.RUNNING or self._stdin is None:
            msg = f"ExifTool supervisor is not running (state: {self.state.value})"
            raise SupervisorStateFault(msg)
        if self._fault is not None:
            raise type(self._fault)(job, f"ExifTool unusable after earlier failure: {self._fault}")

        payload = encode_command(job)
        started = time.perf_counter()
        try:
            self._stdin.write(payload)
            self._stdin.flush()
        except (OSError, ValueError) as exc:
            raise self._poison(WriteFault(job, f"writing to ExifTool failed: {exc}")) from exc

        try:
            signal = self._handoff.get(timeout=self.timeout)
        except queue.Empty as exc:
            fault = TimeoutFault(job, f"ExifTool did not answer within {self.timeout}s")
            raise self._poison(fault) from exc

        if signal is CHANNEL_CLOSED:
            fault = ResponseChannelClosedFault(job, "ExifTool closed its output before finishing")
            raise self._poison(fault)

        elapsed = time.perf_counter() - started
        logger.info(
            "metadata_copied",
            source=str(job.source),
            destination=str(job.destination),
            seconds=round(elapsed, 3),
        )
        return Ack.success(job, elapsed)

    def _poison(self, fault: JobFault) -> JobFault:
        self._fault = fault
        logger.error("exiftool_job_failed", fault=type(fault).__name__, error=str(fault))
        return fault

    def shutdown(self) -> None:
        """
        Stop ExifTool and the reader threads. Idempotent and never raises.

        Asks ExifTool to leave stay-open mode, waits for both readers to drain, and
        kills the process if it is still alive after ``shutdown_timeout`` seconds.
        """
        if self.state is SupervisorState.TERMINATED:
            return
        if self._process is None:
            self.state = SupervisorState.TERMINATED
            return

        self.state = SupervisorState.SHUTTING_DOWN
        self._stop_token.set()
        self._send_shutdown_command()

        deadline = time.monotonic() + self.shutdown_timeout
        for reader in (self._drain, self._router):
            if reader is not None:
                reader.join(max(0.0, deadline - time.monotonic()))

        try:
            self._process.wait(timeout=max(0.0, deadline - time.monotonic()))
        except subprocess.TimeoutExpired:
            logger.warning("exiftool_kill", pid=self._process.pid, timeout=self.shutdown_timeout)
            self._process.kill()
            self._process.wait()

        # Readers blocked on a pipe wake with EOF once the process is gone.
        for reader, stream in (
            (self._drain, self._process.stderr),
            (self._router, self._process.stdout),
        ):
            if reader is not None:
                reader.join(self.shutdown_timeout)
                if reader.is_alive():
                    # A grandchild may still hold the pipe; leave the stream to the reader.
                    logger.warning("exiftool_reader_still_running", thread=reader.name)
                    continue
            if stream is not None:
                stream.close()

        self.state = SupervisorState.TERMINATED
        logger.info("exiftool_stopped", pid=self._process.pid, returncode=self._process.returncode)

    def _send_shutdown_command(self) -> None:
        if self._stdin is None:
            return
        try:
            self._stdin.write(SHUTDOWN_COMMAND)
            self._stdin.flush()
        except (OSError, ValueError) as exc:
            logger.warning("exiftool_shutdown_write_failed", error=str(exc))
        try:
            self._stdin.close()
        except OSError as exc:
            logger.debug("exiftool_stdin_close_failed", error=str(exc))

    def __enter__(self) -> Self:
        if self.state is SupervisorState.STARTING:
            self._spawn()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.shutdown()


def copy_metadata(
    jobs: Iterable[Job],
    *,
    executable: str = DEFAULT_EXIFTOOL,
    timeout: float | None = DEFAULT_EXIFTOOL_TIMEOUT,
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
) -> list[Ack]:
    """
    Copy metadata for every Job through one ExifTool process.

    Returns one Ack per Job, in order. Failures are reported per Job; once ExifTool
    is unusable the remaining Jobs are reported failed without being sent.

    Raises:
        SpawnFault: ExifTool could not be started.
        ValueError: ``timeout`` is negative; nothing is spawned or sent.

    """
    acks: list[Ack] = []
    with ExifToolSupervisor.start(
        executable,
        timeout=timeout,
        shutdown_timeout=shutdown_timeout,
    ) as et:
        for job in jobs:
            with logger.contextualize(file=job.source.name):
                if not et.usable:
                    acks.append(Ack.failure(job, "skipped: ExifTool is no longer usable"))
                    continue
                try:
                    acks.append(et.submit(job))
                except JobFault as exc:
                    acks.append(Ack.failure(job, str(exc)))
                except ValueError as exc:
                    logger.error("metadata_job_rejected", error=str(exc))
                    acks.append(Ack.failure(job, str(exc)))
    return acks
