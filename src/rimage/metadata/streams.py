"""Background readers for ExifTool's stdout and stderr."""

import queue
import threading
from abc import ABC, abstractmethod
from typing import IO

from loguru import logger

from rimage.metadata.jobs import READY_SENTINEL

# Put on the handoff channel when the router exits; wakes a blocked submit.
CHANNEL_CLOSED = object()

_POLL_INTERVAL = 0.1


class _LineReader(threading.Thread, ABC):
    """Read a binary stream line by line until EOF, a read error, or the stop token."""

    stream_name = "stream"

    def __init__(self, stream: IO[bytes], stop: threading.Event, *, name: str) -> None:
        super().__init__(name=name, daemon=True)
        self._stream = stream
        self._stop_token = stop

    @abstractmethod
    def handle_line(self, line: str) -> None:
        """Consume one decoded line with its line ending stripped."""

    def finish(self) -> None:
        """Run once when the reader exits, whatever the reason."""

    def run(self) -> None:
        try:
            for raw in iter(self._stream.readline, b""):
                self.handle_line(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
                if self._stop_token.is_set():
                    logger.debug("exiftool_reader_stopped", stream=self.stream_name)
                    break
            else:
                logger.debug("exiftool_reader_eof", stream=self.stream_name)
        except (OSError, ValueError) as exc:
            # ValueError: the stream was closed underneath us during shutdown.
            logger.debug("exiftool_reader_error", stream=self.stream_name, error=str(exc))
        finally:
            self.finish()


class ResponseRouter(_LineReader):
    """
    Route ExifTool's stdout.

    The ready sentinel goes to the single-slot handoff channel, everything else is
    logged. On exit a close marker is delivered so a waiting submitter never hangs.
    """

    stream_name = "stdout"

    def __init__(
        self,
        stream: IO[bytes],
        handoff: "queue.Queue[object]",
        stop: threading.Event,
        *,
        sentinel: str = READY_SENTINEL,
    ) -> None:
        super().__init__(stream, stop, name="exiftool-stdout")
        self._handoff = handoff
        self._sentinel = sentinel

    def handle_line(self, line: str) -> None:
        if line == self._sentinel:
            self._deliver(line)
        elif line:
            logger.info("exiftool_output", line=line)

    def finish(self) -> None:
        self._deliver(CHANNEL_CLOSED)

    def _deliver(self, item: object) -> bool:
        # The slot only stays full when nobody will ever receive (e.g. after a
        # timeout); the stop token set by shutdown breaks the loop then.
        while True:
            try:
                self._handoff.put(item, timeout=_POLL_INTERVAL)
            except queue.Full:
                if self._stop_token.is_set():
                    logger.debug("exiftool_handoff_dropped", closed=item is CHANNEL_CLOSED)
                    return False
            else:
                return True


class DiagnosticDrain(_LineReader):
    """Keep ExifTool's stderr drained so the tool never blocks on a full pipe."""

    stream_name = "stderr"

    def __init__(self, stream: IO[bytes], stop: threading.Event) -> None:
        super().__init__(stream, stop, name="exiftool-stderr")

    def handle_line(self, line: str) -> None:
        if line:
            logger.warning("exiftool_diagnostic", line=line)
