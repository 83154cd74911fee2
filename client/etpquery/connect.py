"""Host resolution and TCP connection establishment.

Two connect strategies are offered.  ``connect_blocking`` issues one
connect() bounded by the socket timeout.  ``connect_nonblocking``
starts the connect on a non-blocking socket and polls it with select()
every POLL_INTERVAL_MS until it completes, fails, the overall
connect timeout runs out or the caller's cancel event is set.
"""

import errno
import ipaddress
import logging
import math
import select
import socket
from typing import Tuple

from .protocol import ConnectError, ResolveError

POLL_INTERVAL_MS = 500

# connect_ex() results meaning "connect started, not finished yet".
_IN_PROGRESS = {
    errno.EINPROGRESS,
    errno.EALREADY,
    errno.EWOULDBLOCK,
    getattr(errno, "WSAEWOULDBLOCK", errno.EWOULDBLOCK),
}

log = logging.getLogger(__name__)


def _new_socket() -> socket.socket:
    return socket.socket(socket.AF_INET, socket.SOCK_STREAM)


def _close(sock: socket.socket) -> None:
    try:
        sock.close()
    except OSError:
        pass


def _apply_timeout(sock: socket.socket, timeout: float) -> None:
    """Set the receive timeout; close *sock* and raise ConnectError if bad.

    Zero and negative timeouts are refused.
    """
    error = None
    if timeout <= 0:
        error = "must be positive"
    else:
        try:
            sock.settimeout(timeout)
        except (ValueError, OSError) as e:
            error = str(e)
    if error is not None:
        _close(sock)
        raise ConnectError(errno.EINVAL, "Bad receive timeout {!r}: {}".format(
            timeout, error))


def _strerror(code: int) -> str:
    try:
        return "{} ({})".format(errno.errorcode[code], code)
    except KeyError:
        return str(code)


def resolve(hostname: str) -> str:
    """Return the IPv4 address for *hostname*.

    Dotted-quad literals are used as-is; anything else goes through the
    resolver.  Raises ResolveError if the lookup fails.
    """
    if not hostname:
        raise ResolveError(errno.EINVAL, "Empty host name")
    try:
        return str(ipaddress.IPv4Address(hostname))
    except ValueError:
        pass
    try:
        return socket.gethostbyname(hostname)
    except (socket.gaierror, socket.herror, UnicodeError) as e:
        code = getattr(e, "errno", None) or errno.EHOSTUNREACH
        raise ResolveError(code, "Unknown host {}: {}".format(hostname, e))


def max_poll_attempts(connect_timeout_ms: int) -> int:
    """Number of select() polls that fit in *connect_timeout_ms*.

    A timeout of 0 or less allows no polls at all.
    """
    if connect_timeout_ms <= 0:
        return 0
    return int(math.ceil(connect_timeout_ms / float(POLL_INTERVAL_MS)))


def connect_blocking(address: str, port: int,
                     recv_timeout: float = 2.0) -> socket.socket:
    """Connect with a single blocking connect() call.

    The receive timeout is set before connecting, so it also bounds the
    connect itself.  Raises ConnectError on any failure.
    """
    sock = _new_socket()
    _apply_timeout(sock, recv_timeout)
    try:
        sock.connect((address, port))
    except socket.timeout:
        _close(sock)
        raise ConnectError(
            errno.ETIMEDOUT,
            "Timed out connecting to {}:{}".format(address, port))
    except OSError as e:
        _close(sock)
        code = e.errno or errno.ECONNREFUSED
        raise ConnectError(
            code, "Failed to connect to {}:{}: {}".format(
                address, port, _strerror(code)))
    return sock


def connect_nonblocking(address: str, port: int,
                        connect_timeout_ms: int = 3000,
                        recv_timeout: float = 2.0,
                        cancel=None) -> Tuple[socket.socket, int]:
    """Connect on a non-blocking socket, polling for completion.

    Polls at most ``max_poll_attempts(connect_timeout_ms)`` times, each
    poll waiting POLL_INTERVAL_MS for the socket to become writable
    (connected) or exceptional (failed).  *cancel* is any object with an
    ``is_set()`` method; it is checked before every poll and aborts the
    connect as if it had been refused.

    Returns ``(sock, attempts)`` with the socket back in blocking mode
    and the receive timeout applied.  Raises ConnectError on failure,
    timeout or cancellation.
    """
    max_attempts = max_poll_attempts(connect_timeout_ms)
    sock = _new_socket()
    sock.setblocking(False)

    try:
        rc = sock.connect_ex((address, port))
    except OSError as e:
        _close(sock)
        raise ConnectError(e.errno or errno.EIO,
                           "connect() failed: {}".format(e))

    attempts = 0
    if rc != 0:
        if rc not in _IN_PROGRESS:
            _close(sock)
            raise ConnectError(rc, "Failed to connect to {}:{}: {}".format(
                address, port, _strerror(rc)))

        while True:
            if cancel is not None and cancel.is_set():
                _close(sock)
                raise ConnectError(errno.ECONNREFUSED,
                                   "Connect cancelled", attempts)
            if attempts >= max_attempts:
                _close(sock)
                raise ConnectError(
                    errno.ETIMEDOUT,
                    "Timed out connecting to {}:{} after {} ms".format(
                        address, port, connect_timeout_ms),
                    attempts)
            attempts += 1
            log.debug("connect poll %d/%d", attempts, max_attempts)
            _r, writable, failed = select.select(
                [], [sock], [sock], POLL_INTERVAL_MS / 1000.0)
            if not writable and not failed:
                continue
            err = sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
            if failed and not err:
                err = errno.ECONNREFUSED
            if err:
                _close(sock)
                raise ConnectError(
                    err, "Failed to connect to {}:{}: {}".format(
                        address, port, _strerror(err)),
                    attempts)
            break

    sock.setblocking(True)
    _apply_timeout(sock, recv_timeout)
    return sock, attempts
