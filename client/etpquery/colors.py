"""ANSI terminal color support and match formatting for etpquery output."""

import os
import sys
import time

# SetConsoleMode() flag that turns on ANSI escape handling.
_ENABLE_VT_PROCESSING = 0x0004


def _enable_windows_vt():
    """Switch the Windows console to VT mode; return True on success."""
    if os.environ.get("WT_SESSION"):
        return True
    try:
        import ctypes
        kernel32 = ctypes.windll.kernel32
        handle = kernel32.GetStdHandle(-11)  # STD_OUTPUT_HANDLE
        mode = ctypes.c_ulong()
        kernel32.GetConsoleMode(handle, ctypes.byref(mode))
        if not mode.value & _ENABLE_VT_PROCESSING:
            kernel32.SetConsoleMode(handle, mode.value | _ENABLE_VT_PROCESSING)
    except (AttributeError, OSError):
        return False
    return True


def _supports_color():
    """Decide whether to emit ANSI color.

    NO_COLOR always wins; ETPQUERY_COLOR=always/never overrides the
    terminal check.
    """
    if os.environ.get("NO_COLOR"):
        return False
    forced = os.environ.get("ETPQUERY_COLOR", "").lower()
    if forced in ("always", "never"):
        return forced == "always"
    isatty = getattr(sys.stdout, "isatty", None)
    if isatty is None or not isatty():
        return False
    if sys.platform == "win32":
        return _enable_windows_vt()
    return True


# ANSI escape sequences
RESET = "\033[0m"
BOLD = "\033[1m"
DIM = "\033[2m"
RED = "\033[31m"
GREEN = "\033[32m"
YELLOW = "\033[33m"
BLUE = "\033[34m"


class ColorWriter:
    """Write colorized text, falling back to plain text if unsupported.

    Usage:
        cw = ColorWriter()
        cw.error("Something failed")     # red
        cw.success("Done")               # green
        cw.directory("C:\\Windows")      # blue
        cw.bold("HEADER")                # bold
    """

    def __init__(self, force_color=None):
        if force_color is not None:
            self.enabled = force_color
        else:
            self.enabled = _supports_color()

    def _wrap(self, code, text):
        if self.enabled:
            return "{}{}{}".format(code, text, RESET)
        return text

    def error(self, text):
        return self._wrap(RED, text)

    def success(self, text):
        return self._wrap(GREEN, text)

    def directory(self, text):
        return self._wrap(BLUE, text)

    def bold(self, text):
        return self._wrap(BOLD, text)

    def warning(self, text):
        return self._wrap(YELLOW, text)

    def dim(self, text):
        return self._wrap(DIM, text)


def format_size(nbytes):
    """Format a byte count as a human-readable string.

    Returns the value with a suffix: K, M, G, T.
    Values under 1024 are shown as plain integers.
    Values >= 999.95 in a given unit roll over to the next unit
    (e.g. 999.95K displays as 1M, not 1000K).
    """
    if nbytes < 1024:
        return str(nbytes)
    for unit in ("K", "M", "G", "T"):
        nbytes = nbytes / 1024.0
        if nbytes < 999.95 or unit == "T":
            if nbytes == int(nbytes):
                return "{:.0f}{}".format(int(nbytes), unit)
            return "{:.1f}{}".format(nbytes, unit)
    return str(nbytes)


TIME_FORMAT = "%d %b %Y - %H:%M:%S"

# Width of a formatted time, e.g. "19 Mar 2017 - 18:32:43".
TIME_WIDTH = len(time.strftime(TIME_FORMAT, time.gmtime(0)))


def format_time(mtime):
    """Format Unix seconds as local "DD Mon YYYY - HH:MM:SS".

    An unknown time (0) is shown as a blank field of the same width.
    """
    if not mtime:
        return " " * TIME_WIDTH
    return time.strftime(TIME_FORMAT, time.localtime(mtime))


def format_match(record, cw, show_size=True):
    """Format a MatchRecord for terminal output.

    Directories get a trailing backslash and are colored; the size
    column is left out for directories and when *show_size* is False.
    """
    path = record.path
    if record.is_dir:
        if not path.endswith("\\"):
            path += "\\"
        path = cw.directory(path)
        size = " " * 8 if show_size else ""
    elif show_size:
        size = "{:>8s}".format(format_size(record.size))
    else:
        size = ""
    if size:
        return "{} {}: {}".format(cw.dim(format_time(record.mtime)), size, path)
    return "{}: {}".format(cw.dim(format_time(record.mtime)), path)
