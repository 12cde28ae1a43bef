"""Tests for the stay-open ExifTool supervisor, run against the stub tool."""

import threading
import time
from collections.abc import Callable
from pathlib import Path

import pytest

from rimage.metadata.errors import (
    AlreadyTerminatedFault,
    ResponseChannelClosedFault,
    SpawnFault,
    SupervisorStateFault,
    TimeoutFault,
    WriteFault,
)
from rimage.metadata.jobs import Job
from rimage.metadata.supervisor import ExifToolSupervisor, SupervisorState, copy_metadata

Commands = Callable[[], list[list[str]]]


def _exiftool_threads() -> list[threading.Thread]:
    return [t for t in threading.enumerate() if t.name.startswith("exiftool-")]


def test_two_jobs_are_acknowledged_in_order(stub_exiftool: Path, stub_commands: Commands) -> None:
    """Both Jobs succeed, in order, and the backup Job reads from '<source>.backup'."""
    jobs = [
        Job(source=Path("a.jpg"), destination=Path("b.jpg"), backup=False),
        Job(source=Path("c.png"), destination=Path("d.png"), backup=True),
    ]

    with ExifToolSupervisor.start(str(stub_exiftool), timeout=10) as et:
        acks = [et.submit(job) for job in jobs]

    assert [ack.ok for ack in acks] == [True, True]
    assert [ack.job for ack in acks] == jobs
    assert acks[1].job.source == Path("c.png")
    commands = stub_commands()
    assert commands[0] == ["-overwrite_original_in_place", "-tagsFromFile", "a.jpg", "b.jpg"]
    assert commands[1][2] == "c.png.backup"
    assert commands[1][3] == "d.png"


def test_many_jobs_keep_submission_order(stub_exiftool: Path, stub_commands: Commands) -> None:
    """N submissions produce N Acks and N commands, all in submission order."""
    jobs = [Job(source=Path(f"in_{i}.png"), destination=Path(f"out_{i}.jpg")) for i in range(25)]

    with ExifToolSupervisor.start(str(stub_exiftool), timeout=10) as et:
        acks = [et.submit(job) for job in jobs]

    assert len(acks) == len(jobs)
    assert [ack.job.source for ack in acks] == [job.source for job in jobs]
    assert [cmd[2] for cmd in stub_commands()] == [f"in_{i}.png" for i in range(25)]


def test_shutdown_is_idempotent_and_reaps_process(stub_exiftool: Path) -> None:
    """Calling shutdown twice is harmless and leaves the process terminated."""
    et = ExifToolSupervisor.start(str(stub_exiftool), timeout=10)
    et.submit(Job(source=Path("a.jpg"), destination=Path("b.jpg")))

    et.shutdown()
    et.shutdown()

    assert et.state is SupervisorState.TERMINATED
    assert et.returncode is not None
    assert not _exiftool_threads()


def test_submit_after_shutdown_fails_fast(stub_exiftool: Path) -> None:
    """Terminated is absorbing: submit raises AlreadyTerminatedFault."""
    et = ExifToolSupervisor.start(str(stub_exiftool), timeout=10)
    et.shutdown()

    with pytest.raises(AlreadyTerminatedFault):
        et.submit(Job(source=Path("a.jpg"), destination=Path("b.jpg")))


def test_submit_before_start_is_rejected() -> None:
    """A supervisor that never spawned refuses work and shuts down cleanly."""
    et = ExifToolSupervisor("exiftool")

    with pytest.raises(SupervisorStateFault):
        et.submit(Job(source=Path("a.jpg"), destination=Path("b.jpg")))

    et.shutdown()
    assert et.state is SupervisorState.TERMINATED


def test_missing_executable_raises_spawn_fault_without_threads(tmp_path: Path) -> None:
    """An unavailable tool fails start() with guidance and starts no reader threads."""
    missing = tmp_path / "no-such-exiftool"

    with pytest.raises(SpawnFault) as excinfo:
        ExifToolSupervisor.start(str(missing))

    assert "PATH" in str(excinfo.value)
    assert excinfo.value.executable == str(missing)
    assert not _exiftool_threads()


def test_heavy_diagnostics_do_not_stall_responses(
    stub_exiftool: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Stderr output larger than a pipe buffer per command never blocks the answers."""
    monkeypatch.setenv("STUB_STDERR_LINES", "600")
    jobs = [Job(source=Path(f"in_{i}.png"), destination=Path(f"out_{i}.png")) for i in range(4)]

    with ExifToolSupervisor.start(str(stub_exiftool), timeout=15) as et:
        acks = [et.submit(job) for job in jobs]

    assert all(ack.ok for ack in acks)
    assert [ack.job for ack in acks] == jobs
    assert max(ack.seconds for ack in acks) < 15


def test_closed_output_wakes_blocked_submit(
    stub_exiftool: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """When the tool closes stdout mid-run the in-flight submit fails instead of hanging."""
    monkeypatch.setenv("STUB_CLOSE_AFTER", "1")
    et = ExifToolSupervisor.start(str(stub_exiftool), timeout=10)
    try:
        first = et.submit(Job(source=Path("a.jpg"), destination=Path("b.jpg")))
        second = Job(source=Path("c.jpg"), destination=Path("d.jpg"))
        with pytest.raises(ResponseChannelClosedFault) as excinfo:
            et.submit(second)
        assert excinfo.value.job == second
        assert not et.usable
        with pytest.raises(ResponseChannelClosedFault):
            et.submit(Job(source=Path("e.jpg"), destination=Path("f.jpg")))
    finally:
        et.shutdown()

    assert first.ok
    assert et.returncode is not None


def test_write_to_dead_process_raises_write_fault(stub_exiftool: Path) -> None:
    """Writing after the tool died is reported as a WriteFault and poisons the supervisor."""
    et = ExifToolSupervisor.start(str(stub_exiftool), timeout=10)
    try:
        et._process.kill()  # type: ignore[union-attr]  # noqa: SLF001
        et._process.wait()  # type: ignore[union-attr]  # noqa: SLF001
        with pytest.raises((WriteFault, ResponseChannelClosedFault)):
            et.submit(Job(source=Path("a.jpg"), destination=Path("b.jpg")))
        assert not et.usable
    finally:
        et.shutdown()

    assert et.state is SupervisorState.TERMINATED


def test_unanswered_command_times_out(stub_exiftool: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A tool that never answers produces a TimeoutFault after the bounded wait."""
    monkeypatch.setenv("STUB_SILENT", "1")
    et = ExifToolSupervisor.start(str(stub_exiftool), timeout=0.5, shutdown_timeout=2)
    try:
        with pytest.raises(TimeoutFault):
            et.submit(Job(source=Path("a.jpg"), destination=Path("b.jpg")))
    finally:
        et.shutdown()

    assert et.returncode is not None


def test_shutdown_kills_tool_that_ignores_stop(
    stub_exiftool: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A tool that keeps running after the stop command is force-killed."""
    monkeypatch.setenv("STUB_SILENT", "1")
    monkeypatch.setenv("STUB_IGNORE_SHUTDOWN", "1")
    et = ExifToolSupervisor.start(str(stub_exiftool), timeout=0.2, shutdown_timeout=0.5)

    et.shutdown()

    assert et.state is SupervisorState.TERMINATED
    assert et.returncode is not None
    assert et.returncode != 0
    assert not _exiftool_threads()


def test_context_manager_shuts_down_on_error(stub_exiftool: Path) -> None:
    """An exception inside the with-block still terminates the process."""
    holder: list[ExifToolSupervisor] = []

    with pytest.raises(RuntimeError, match="boom"), ExifToolSupervisor.start(
        str(stub_exiftool),
    ) as et:
        holder.append(et)
        msg = "boom"
        raise RuntimeError(msg)

    assert holder[0].state is SupervisorState.TERMINATED
    assert holder[0].returncode is not None


def test_copy_metadata_reports_every_job(
    stub_exiftool: Path,
    monkeypatch: pytest.MonkeyPatch,
    stub_commands: Commands,
) -> None:
    """Failures are reported per Job and Jobs after a broken channel are not sent."""
    monkeypatch.setenv("STUB_CLOSE_AFTER", "1")
    jobs = [Job(source=Path(f"in_{i}.png"), destination=Path(f"out_{i}.png")) for i in range(3)]

    acks = copy_metadata(jobs, executable=str(stub_exiftool), timeout=10)

    assert [ack.job for ack in acks] == jobs
    assert [ack.ok for ack in acks] == [True, False, False]
    assert acks[0].touched == (Path("out_0.png"),)
    assert "skipped" in (acks[2].error or "")
    assert len(stub_commands()) == 2


def test_copy_metadata_propagates_spawn_fault(tmp_path: Path) -> None:
    """A missing tool aborts the whole batch."""
    jobs = [Job(source=Path("a.jpg"), destination=Path("b.jpg"))]

    with pytest.raises(SpawnFault):
        copy_metadata(jobs, executable=str(tmp_path / "missing"))


def test_negative_timeout_is_rejected_before_spawning(
    stub_exiftool: Path,
    stub_commands: Commands,
) -> None:
    """A negative timeout fails up front instead of after a command reached ExifTool."""
    jobs = [Job(source=Path(f"in_{i}.png"), destination=Path(f"out_{i}.png")) for i in range(2)]

    with pytest.raises(ValueError, match="timeout"):
        ExifToolSupervisor(str(stub_exiftool), timeout=-1)
    with pytest.raises(ValueError, match="timeout"):
        copy_metadata(jobs, executable=str(stub_exiftool), timeout=-1)

    assert stub_commands() == []
    assert not _exiftool_threads()


def test_submit_while_shutting_down_is_rejected(
    stub_exiftool: Path,
    monkeypatch: pytest.MonkeyPatch,
    stub_commands: Commands,
) -> None:
    """Submitting while shutdown waits for a stubborn tool raises SupervisorStateFault."""
    monkeypatch.setenv("STUB_IGNORE_SHUTDOWN", "1")
    et = ExifToolSupervisor.start(str(stub_exiftool), timeout=5, shutdown_timeout=1)
    stopper = threading.Thread(target=et.shutdown, name="test-shutdown")
    stopper.start()
    try:
        deadline = time.monotonic() + 5
        while et.state is not SupervisorState.SHUTTING_DOWN and time.monotonic() < deadline:
            time.sleep(0.01)
        assert et.state is SupervisorState.SHUTTING_DOWN

        with pytest.raises(SupervisorStateFault) as excinfo:
            et.submit(Job(source=Path("a.jpg"), destination=Path("b.jpg")))
        assert not isinstance(excinfo.value, AlreadyTerminatedFault)
    finally:
        stopper.join(10)

    assert et.state is SupervisorState.TERMINATED
    assert stub_commands() == []
