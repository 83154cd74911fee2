"""Wire protocol helpers for the etpquery client.

Handles line reading and command sending for the ETP protocol, the
FTP-style control dialogue spoken by the Everything search server.
Lines end in CR LF.  The character encoding defaults to ISO-8859-1
and can be overridden per reader and per send_command() call.

Two line readers share one contract (``read_line()`` returns a single
stripped line or raises TransportError):

  - UnbufferedReader does one ``recv(1)`` per byte and relies on the
    socket timeout to bound a stalled peer.
  - BufferedReader waits for the socket to become readable with
    ``select()``, pulls a block into a fixed-size buffer and serves the
    following lines from memory.
"""

import errno
import logging
import select
import socket

# Default wire encoding.  Every byte decodes, so file names never fail;
# servers that send UTF-8 names need encoding="utf-8".
ENCODING = "iso-8859-1"

# Longest line either reader will return.  Longer lines are cut here
# and the rest comes back as the next line.
LINE_CAPACITY = 1000

# Size of the BufferedReader receive block.
RX_BUFFER_SIZE = 4096

log = logging.getLogger(__name__)


class ProtocolError(Exception):
    """Raised on wire protocol violations (unexpected EOF, malformed
    responses, timeouts)."""


class TransportError(ProtocolError):
    """Raised when a send, receive or connect fails at the socket level.

    Attributes:
        errno: The errno-style code for the failure (ETIMEDOUT for
            timeouts, ECONNRESET when the peer closed the connection).
    """

    def __init__(self, code: int, message: str) -> None:
        self.errno = code
        super().__init__(message)


class ResolveError(TransportError):
    """Raised when a hostname cannot be resolved to an address."""


class ConnectError(TransportError):
    """Raised when a TCP connect fails, times out or is cancelled.

    Attributes:
        attempts: Number of poll attempts made (0 for a blocking connect).
    """

    def __init__(self, code: int, message: str, attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(code, message)


def _clean_line(raw: bytes, encoding: str = ENCODING) -> str:
    """Decode a raw line, strip CR LF and leading whitespace.

    The server indents the rows of a multi-line reply (" RESULT_COUNT 3"),
    hence the left trim.
    """
    line = raw.decode(encoding, errors="replace")
    line = line.rstrip("\r\n")
    return line.lstrip()


class LineReader:
    """Base class for the two line-reading strategies.

    Attributes:
        total_rcv: Bytes received from the socket over the reader's life.
        encoding: Codec for decoding lines; undecodable bytes become U+FFFD.
        last_len: Bytes consumed by the most recent ``read_line()``.
    """

    def __init__(self, sock: socket.socket, timeout: float = 2.0,
                 capacity: int = LINE_CAPACITY,
                 encoding: str = ENCODING) -> None:
        self.sock = sock
        self.timeout = timeout
        self.capacity = capacity
        self.encoding = encoding
        self.total_rcv = 0
        self.last_len = 0

    def _getc(self) -> bytes:
        raise NotImplementedError

    def read_line(self) -> str:
        """Read one LF-terminated line and return it stripped.

        Raises TransportError on timeout, socket error or EOF.
        """
        buf = bytearray()
        while len(buf) < self.capacity - 1:
            try:
                b = self._getc()
            except TransportError as e:
                if buf and e.errno == errno.ECONNRESET:
                    raise TransportError(
                        errno.ECONNRESET,
                        "Connection closed mid-line (partial data: {!r})".format(
                            bytes(buf)))
                raise
            buf.extend(b)
            if b == b"\n":
                break
        self.last_len = len(buf)
        line = _clean_line(bytes(buf), self.encoding)
        log.debug("Rx: %r, len: %d", line, self.last_len)
        return line


class UnbufferedReader(LineReader):
    """One ``recv(1)`` per byte; the socket timeout bounds each call."""

    def __init__(self, sock: socket.socket, timeout: float = 2.0,
                 capacity: int = LINE_CAPACITY,
                 encoding: str = ENCODING) -> None:
        super().__init__(sock, timeout, capacity, encoding)
        self.sock.settimeout(timeout)

    def _getc(self) -> bytes:
        try:
            b = self.sock.recv(1)
        except socket.timeout:
            raise TransportError(
                errno.ETIMEDOUT, "Timed out waiting for data from server")
        except OSError as e:
            raise TransportError(
                e.errno or errno.EIO, "Socket error: {}".format(e))
        if not b:
            raise TransportError(errno.ECONNRESET, "Connection closed by server")
        self.total_rcv += 1
        return b


class BufferedReader(LineReader):
    """Serve bytes from a receive buffer, refilling it only when empty.

    The buffer never holds more than ``bufsize`` bytes; ``_pos`` is the
    read cursor and ``_left`` the number of unconsumed bytes after it.
    """

    def __init__(self, sock: socket.socket, timeout: float = 2.0,
                 capacity: int = LINE_CAPACITY,
                 bufsize: int = RX_BUFFER_SIZE,
                 encoding: str = ENCODING) -> None:
        super().__init__(sock, timeout, capacity, encoding)
        self.bufsize = bufsize
        self._buf = b""
        self._pos = 0
        self._left = 0

    def _refill(self) -> None:
        try:
            readable, _w, _x = select.select([self.sock], [], [], self.timeout)
        except (OSError, ValueError) as e:
            raise TransportError(errno.EIO, "select() failed: {}".format(e))
        if not readable:
            raise TransportError(
                errno.ETIMEDOUT, "Timed out waiting for data from server")
        try:
            data = self.sock.recv(self.bufsize)
        except socket.timeout:
            raise TransportError(
                errno.ETIMEDOUT, "Timed out waiting for data from server")
        except OSError as e:
            raise TransportError(
                e.errno or errno.EIO, "Socket error: {}".format(e))
        if not data:
            raise TransportError(errno.ECONNRESET, "Connection closed by server")
        self._buf = data
        self._pos = 0
        self._left = len(data)
        self.total_rcv += len(data)

    def _getc(self) -> bytes:
        if self._left == 0:
            self._refill()
        b = self._buf[self._pos:self._pos + 1]
        self._pos += 1
        self._left -= 1
        return b


def send_command(sock: socket.socket, command: str,
                 encoding: str = ENCODING) -> None:
    """Send a command line to the server.

    Appends CR LF and encodes with *encoding* (characters the codec
    cannot represent are sent as "?").  Raises TransportError if the
    socket refuses the data.
    """
    data = (command + "\r\n").encode(encoding, errors="replace")
    shown = "PASS ****" if command.startswith("PASS ") else command
    try:
        sock.sendall(data)
    except OSError as e:
        raise TransportError(
            e.errno or errno.EIO,
            "Failed to send {!r}: {}".format(shown, e))
    log.debug("Tx: %r, len: %d", shown + "\\r\\n", len(data))


def translate_shell_pattern(pattern: str) -> str:
    """Turn a shell wildcard pattern into an anchored regular expression.

    Only ``*``, ``?``, ``.`` and ``\\`` are special; everything else is
    passed through, so e.g. ``[ch]`` keeps its regex meaning::

        >>> translate_shell_pattern("note*.exe")
        '^note.*\\\\.exe$'
    """
    out = ["^"]
    for c in pattern:
        if c == "*":
            out.append(".*")
        elif c == "?":
            out.append(".")
        elif c == ".":
            out.append("\\.")
        elif c == "\\":
            out.append("\\\\")
        else:
            out.append(c)
    out.append("$")
    return "".join(out)
