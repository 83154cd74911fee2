"""Match records and the per-query result accumulator."""

from typing import Callable, NamedTuple, Optional

# Seconds between the Windows FILETIME epoch (1601-01-01) and the Unix
# epoch (1970-01-01).
DELTA_EPOCH_IN_SEC = 11644473600

# FILETIME counts 100 ns ticks.
FILETIME_TICKS_PER_SEC = 10000000


def filetime_to_unix(ft: int) -> int:
    """Convert a Windows FILETIME tick count to Unix epoch seconds.

    Timestamps before 1970 clamp to 0.
    """
    return max(0, ft // FILETIME_TICKS_PER_SEC - DELTA_EPOCH_IN_SEC)


class MatchRecord(NamedTuple):
    """One file or folder reported by the server.

    path is the full remote path (directory + backslash + name), mtime
    is in Unix seconds (0 when the server sent no DATE_MODIFIED).
    """
    path: str
    size: int = 0
    mtime: int = 0
    is_dir: bool = False


def join_remote_path(directory: str, name: str) -> str:
    """Join a server-side directory and entry name with a backslash."""
    if not directory:
        return name
    if directory.endswith("\\") or directory.endswith("/"):
        return directory + name
    return directory + "\\" + name


class ResultAccumulator:
    """Filter, de-duplicate and count match records for one query.

    Every record bumps ``received``.  It then lands in exactly one of
    ``ignored`` (a file while in directory-only mode), ``duplicates``
    (same path as the previous accepted record) or ``accepted`` (handed
    to *sink*), so that::

        received == ignored + duplicates + accepted
    """

    def __init__(self, sink: Callable[[MatchRecord], None],
                 dir_mode: bool = False) -> None:
        self.sink = sink
        self.dir_mode = dir_mode
        self.received = 0
        self.accepted = 0
        self.ignored = 0
        self.duplicates = 0
        self._prev_path = None  # type: Optional[str]

    def add(self, record: MatchRecord) -> bool:
        """Account for *record*; return True if it reached the sink."""
        self.received += 1

        if self.dir_mode and not record.is_dir:
            self.ignored += 1
            return False

        if not self.dir_mode and record.path == self._prev_path:
            self.duplicates += 1
            return False

        self.sink(record)
        self.accepted += 1
        self._prev_path = record.path
        return True
