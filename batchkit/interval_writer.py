"""Buffer process output and hand it to a sink at a fixed interval."""

from __future__ import annotations

import threading
from collections.abc import Callable


class PrefixedWriter:
    """A writable stream that prefixes every line before buffering it."""

    def __init__(self, owner: IntervalProcessWriter, prefix: str) -> None:
        self._owner = owner
        self._prefix = prefix

    def write(self, data: str | bytes) -> int:
        """Buffer ``data`` with each line prefixed; return the length written."""
        text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
        prefixed = "".join(f"{self._prefix}{line}\n" for line in text.split("\n"))
        self._owner._append(prefixed)
        return len(data)


class IntervalProcessWriter:
    """Collects stdout and stderr writes and flushes them to ``sink``.

    With a positive ``interval`` (in seconds) a background thread flushes the
    buffer regularly. With ``interval`` of None nothing is flushed until
    :meth:`flush` or :meth:`close` is called.
    """

    def __init__(self, sink: Callable[[str], None], interval: float | None) -> None:
        if interval is not None and interval <= 0:
            raise ValueError("interval must be positive")
        self._sink = sink
        self._interval = interval
        self._lock = threading.RLock()
        self._buffer: list[str] = []
        self._stop = threading.Event()
        self._closed = False
        self._thread: threading.Thread | None = None
        if interval is not None:
            self._thread = threading.Thread(target=self._run, daemon=True)
            self._thread.start()

    def stdout_writer(self) -> PrefixedWriter:
        """Return a writer that prefixes every line with ``stdout: ``."""
        return PrefixedWriter(self, "stdout: ")

    def stderr_writer(self) -> PrefixedWriter:
        """Return a writer that prefixes every line with ``stderr: ``."""
        return PrefixedWriter(self, "stderr: ")

    def flush(self) -> None:
        """Hand everything buffered so far to the sink, if there is anything."""
        with self._lock:
            if not self._buffer:
                return
            content = "".join(self._buffer)
            self._buffer.clear()
            self._sink(content)

    def close(self) -> None:
        """Stop the background flushing and flush what is left."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
        self.flush()

    def __enter__(self) -> IntervalProcessWriter:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _append(self, text: str) -> None:
        with self._lock:
            if self._closed:
                raise ValueError("write to closed writer")
            self._buffer.append(text)

    def _run(self) -> None:
        assert self._interval is not None
        while not self._stop.wait(self._interval):
            self.flush()