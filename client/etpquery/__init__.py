"""etpquery -- Python client for the Everything ETP search protocol.

Provides EtpQuery, a state machine that logs in to a remote Everything
ETP server, runs one search and streams the matches to a callback, plus
the query()/query_hosts() helpers around it.

Usage::

    def show(rec):
        print(rec.path, rec.size)

    stats = query("10.0.0.37", "notepad.exe", show)
    print(stats.accepted, "matches")

Failures (unknown host, refused connect, rejected login, a peer that is
not an ETP server, a dropped connection) never raise out of a query.
They are logged as warnings on the "etpquery" logger and show up as a
QueryStats with zero accepted matches and ``last_error`` set where a
socket error was involved.
"""

import codecs
import enum
import logging
import socket
import time
from typing import Callable, Dict, Iterable, List, Optional

from .auth import AuthinfoStore, Credentials, NetrcStore
from .connect import connect_blocking, connect_nonblocking, resolve
from .hostspec import HostSpec, parse_host_spec
from .protocol import (
    ENCODING, BufferedReader, ConnectError, LineReader, ProtocolError,
    ResolveError, TransportError, UnbufferedReader, send_command,
    translate_shell_pattern,
)
from .results import (
    MatchRecord, ResultAccumulator, filetime_to_unix, join_remote_path,
)


__all__ = [
    "AuthinfoStore",
    "ConnectError",
    "Credentials",
    "EtpConfig",
    "EtpQuery",
    "HostSpec",
    "MatchRecord",
    "NetrcStore",
    "ProtocolError",
    "QueryStats",
    "ResolveError",
    "State",
    "TransportError",
    "parse_host_spec",
    "query",
    "query_hosts",
]

DEFAULT_PORT = 21

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration and results
# ---------------------------------------------------------------------------

class EtpConfig:
    """Tunables for a query.

    Attributes:
        buffered_io: Use BufferedReader (select + block recv) instead of
            one recv() per byte.
        nonblock_io: Connect on a non-blocking socket polled with select()
            instead of a single blocking connect().
        connect_timeout: Overall connect timeout in milliseconds
            (non-blocking connects only).
        recv_timeout: Per-line receive timeout in milliseconds.
        use_regex: Send the pattern as a regular expression instead of
            translating shell wildcards.
        case_sensitive: Ask the server for a case-sensitive match.
        dir_mode: Report directories only.
        default_port: Port used when neither the host spec nor a
            credential store gives one.
        encoding: Character encoding of the wire dialogue.

    Raises ValueError for a non-positive timeout or an unknown encoding.
    """

    def __init__(
        self,
        buffered_io: bool = True,
        nonblock_io: bool = True,
        connect_timeout: int = 3000,
        recv_timeout: int = 2000,
        use_regex: bool = False,
        case_sensitive: bool = False,
        dir_mode: bool = False,
        default_port: int = DEFAULT_PORT,
        encoding: str = ENCODING,
    ) -> None:
        for name, value in (("connect_timeout", connect_timeout),
                            ("recv_timeout", recv_timeout)):
            if value <= 0:
                raise ValueError("{} must be positive, got {}".format(
                    name, value))
        try:
            codecs.lookup(encoding)
        except LookupError:
            raise ValueError("unknown encoding: {}".format(encoding))
        self.buffered_io = buffered_io
        self.nonblock_io = nonblock_io
        self.connect_timeout = connect_timeout
        self.recv_timeout = recv_timeout
        self.use_regex = use_regex
        self.case_sensitive = case_sensitive
        self.dir_mode = dir_mode
        self.default_port = default_port
        self.encoding = encoding

    def __repr__(self) -> str:
        return ("EtpConfig(buffered_io={}, nonblock_io={}, connect_timeout={}, "
                "recv_timeout={}, use_regex={}, case_sensitive={}, "
                "dir_mode={}, encoding={!r})".format(
                    self.buffered_io, self.nonblock_io, self.connect_timeout,
                    self.recv_timeout, self.use_regex, self.case_sensitive,
                    self.dir_mode, self.encoding))


class QueryStats:
    """Outcome of one query.

    ``received == ignored + duplicates + accepted`` always holds.  A
    query that failed and a query that matched nothing both end with
    ``accepted == 0``; check ``last_error`` and the log to tell them
    apart.
    """

    def __init__(self, host: str) -> None:
        self.host = host
        self.expected = 0
        self.received = 0
        self.accepted = 0
        self.ignored = 0
        self.duplicates = 0
        self.bytes_received = 0
        self.last_error = None  # type: Optional[int]
        self.aborted = False
        self.elapsed = 0.0
        self.state_trail = []  # type: List[State]

    def __repr__(self) -> str:
        return ("QueryStats({!r}, expected={}, received={}, accepted={}, "
                "ignored={}, duplicates={}, aborted={})".format(
                    self.host, self.expected, self.received, self.accepted,
                    self.ignored, self.duplicates, self.aborted))


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class State(enum.Enum):
    INIT = "init"
    PARSE_URL = "parse_url"
    AUTHINFO_LOOKUP = "authinfo_lookup"
    NETRC_LOOKUP = "netrc_lookup"
    RESOLVE = "resolve"
    BLOCKING_CONNECT = "blocking_connect"
    NONBLOCK_CONNECT = "nonblock_connect"
    SEND_LOGIN = "send_login"
    SEND_PASSWORD = "send_password"
    AWAIT_LOGIN = "await_login"
    SEND_QUERY = "send_query"
    AWAIT_BANNER = "await_banner"
    READ_RESULT_COUNT = "read_result_count"
    READ_RESULT_ROW = "read_result_row"
    CLOSING = "closing"
    EXIT = "exit"


class QueryContext:
    """Mutable state of a single query, owned by its EtpQuery."""

    def __init__(self, host_spec: str, results: ResultAccumulator) -> None:
        self.host_spec = host_spec
        self.state = State.INIT
        self.sock = None  # type: Optional[socket.socket]
        self.hostname = ""
        self.address = ""
        self.username = None  # type: Optional[str]
        self.password = None  # type: Optional[str]
        self.port = 0
        self.use_authinfo = False
        self.use_netrc = False
        self.stores_tried = []  # type: List[str]
        self.connect_retry_count = 0
        self.last_error = None  # type: Optional[int]
        self.results = results
        self.results_expected = 0
        self.current_path = ""
        self.current_size = 0
        self.current_mtime = 0
        self.bytes_received = 0
        self.start_time = 0.0

    @property
    def results_received(self) -> int:
        return self.results.received

    @property
    def results_ignored(self) -> int:
        return self.results.ignored


class EtpQuery:
    """One search against one ETP server.

    ``run()`` drives the dialogue from INIT to EXIT and returns a
    QueryStats.  Each state has one handler that returns the next state;
    socket-level failures raised by a handler send the machine to
    CLOSING.  If *cancel* (anything with ``is_set()``) becomes set, the
    machine stops after the current transition without running CLOSING;
    the socket is still closed on the way out.

    *sink* is called with each accepted MatchRecord.  *authinfo* and
    *netrc* are credential stores (objects with a ``path`` attribute and
    a ``lookup(host)`` method); either may be None to skip it.
    """

    def __init__(
        self,
        host_spec: str,
        pattern: str,
        sink: Callable[[MatchRecord], None],
        config: Optional[EtpConfig] = None,
        authinfo=None,
        netrc=None,
        cancel=None,
    ) -> None:
        self.host_spec = host_spec
        self.pattern = pattern
        self.config = config or EtpConfig()
        self.authinfo = authinfo
        self.netrc = netrc
        self.cancel = cancel
        self.results = ResultAccumulator(sink, self.config.dir_mode)
        self.ctx = QueryContext(host_spec, self.results)
        self._reader = None  # type: Optional[LineReader]
        self._handlers = {
            State.INIT: self._state_init,
            State.PARSE_URL: self._state_parse_url,
            State.AUTHINFO_LOOKUP: self._state_authinfo_lookup,
            State.NETRC_LOOKUP: self._state_netrc_lookup,
            State.RESOLVE: self._state_resolve,
            State.BLOCKING_CONNECT: self._state_blocking_connect,
            State.NONBLOCK_CONNECT: self._state_nonblock_connect,
            State.SEND_LOGIN: self._state_send_login,
            State.SEND_PASSWORD: self._state_send_password,
            State.AWAIT_LOGIN: self._state_await_login,
            State.SEND_QUERY: self._state_send_query,
            State.AWAIT_BANNER: self._state_await_banner,
            State.READ_RESULT_COUNT: self._state_read_result_count,
            State.READ_RESULT_ROW: self._state_read_result_row,
            State.CLOSING: self._state_closing,
            State.EXIT: self._state_exit,
        }  # type: Dict[State, Callable[[], State]]

    def __repr__(self) -> str:
        return "EtpQuery({!r}, {!r}, state={})".format(
            self.host_spec, self.pattern, self.ctx.state.name)

    # -- Driver ------------------------------------------------------------

    def run(self) -> QueryStats:
        """Run the query to completion (or cancellation)."""
        ctx = self.ctx
        stats = QueryStats(self.host_spec)
        state = State.INIT
        try:
            while True:
                ctx.state = state
                stats.state_trail.append(state)
                try:
                    next_state = self._handlers[state]()
                except TransportError as e:
                    next_state = self._transport_failed(e)
                log.debug("state: %-20s -> %-20s", state.name, next_state.name)
                if state is State.EXIT:
                    break
                state = next_state
                if self.cancel is not None and self.cancel.is_set():
                    log.debug("Query of %s cancelled in state %s",
                              self.host_spec, state.name)
                    stats.aborted = True
                    break
        finally:
            self._close_socket()

        self._fill_stats(stats)
        return stats

    def _fill_stats(self, stats: QueryStats) -> None:
        ctx = self.ctx
        if self._reader is not None:
            ctx.bytes_received = self._reader.total_rcv
        stats.expected = ctx.results_expected
        stats.received = self.results.received
        stats.accepted = self.results.accepted
        stats.ignored = self.results.ignored
        stats.duplicates = self.results.duplicates
        stats.bytes_received = ctx.bytes_received
        stats.last_error = ctx.last_error
        if ctx.start_time:
            stats.elapsed = time.monotonic() - ctx.start_time

    def _transport_failed(self, exc: TransportError) -> State:
        self.ctx.last_error = exc.errno
        log.warning("%s: %s (in state %s).",
                    self.ctx.hostname or self.host_spec, exc,
                    self.ctx.state.name)
        return State.CLOSING

    def _close_socket(self) -> None:
        sock = self.ctx.sock
        if sock is None:
            return
        self.ctx.sock = None
        try:
            sock.close()
        except OSError:
            pass

    def _read_line(self) -> str:
        return self._reader.read_line()

    def _send(self, command: str) -> None:
        send_command(self.ctx.sock, command, self.config.encoding)

    # -- Setup states ------------------------------------------------------

    def _state_init(self) -> State:
        ctx = self.ctx
        ctx.start_time = time.monotonic()
        ctx.results_expected = 0
        ctx.current_path = ""
        ctx.current_size = 0
        ctx.current_mtime = 0
        return State.PARSE_URL

    def _state_parse_url(self) -> State:
        ctx = self.ctx
        spec = parse_host_spec(self.host_spec)
        ctx.hostname = spec.hostname
        ctx.port = spec.port
        ctx.username = spec.username
        ctx.password = spec.password
        ctx.use_authinfo = spec.need_lookup and self.authinfo is not None
        ctx.use_netrc = spec.need_lookup and self.netrc is not None
        log.debug("host: %r, port: %d, user: %r, lookup: %s",
                  ctx.hostname, ctx.port, ctx.username, spec.need_lookup)
        return self._next_lookup()

    def _next_lookup(self) -> State:
        ctx = self.ctx
        if ctx.use_authinfo:
            return State.AUTHINFO_LOOKUP
        if ctx.use_netrc:
            return State.NETRC_LOOKUP
        if ctx.stores_tried:
            log.warning("No credentials for host %s in %s; trying an "
                        "anonymous login.", ctx.hostname,
                        " or ".join('"{}"'.format(p) for p in ctx.stores_tried))
        return State.RESOLVE

    def _apply_credentials(self, creds: Credentials, source: str) -> None:
        ctx = self.ctx
        if creds.username is not None:
            ctx.username = creds.username
        if creds.password is not None:
            ctx.password = creds.password
        if creds.port and not ctx.port:
            ctx.port = creds.port
        log.debug("Using credentials for %s from %s (user: %r, port: %d)",
                  ctx.hostname, source, ctx.username, ctx.port)

    def _state_authinfo_lookup(self) -> State:
        ctx = self.ctx
        ctx.use_authinfo = False
        ctx.stores_tried.append(self.authinfo.path)
        creds = self.authinfo.lookup(ctx.hostname)
        if creds is None:
            log.debug("%s not found in %s", ctx.hostname, self.authinfo.path)
            return self._next_lookup()
        self._apply_credentials(creds, self.authinfo.path)
        return State.RESOLVE

    def _state_netrc_lookup(self) -> State:
        ctx = self.ctx
        ctx.use_netrc = False
        ctx.stores_tried.append(self.netrc.path)
        creds = self.netrc.lookup(ctx.hostname)
        if creds is None:
            log.debug("%s not found in %s", ctx.hostname, self.netrc.path)
            return self._next_lookup()
        self._apply_credentials(creds, self.netrc.path)
        return State.RESOLVE

    def _state_resolve(self) -> State:
        ctx = self.ctx
        if not ctx.port:
            ctx.port = self.config.default_port
        try:
            ctx.address = resolve(ctx.hostname)
        except ResolveError as e:
            ctx.last_error = e.errno
            log.warning("Unknown host %s.", ctx.hostname)
            return State.CLOSING
        log.debug("Connecting to %s (%s) port %d...",
                  ctx.hostname, ctx.address, ctx.port)
        if self.config.nonblock_io:
            return State.NONBLOCK_CONNECT
        return State.BLOCKING_CONNECT

    def _connected(self, sock: socket.socket) -> State:
        recv_timeout = self.config.recv_timeout / 1000.0
        self.ctx.sock = sock
        if self.config.buffered_io:
            self._reader = BufferedReader(sock, recv_timeout,
                                          encoding=self.config.encoding)
        else:
            self._reader = UnbufferedReader(sock, recv_timeout,
                                            encoding=self.config.encoding)
        return State.SEND_LOGIN

    def _connect_failed(self, exc: ConnectError) -> State:
        ctx = self.ctx
        ctx.last_error = exc.errno
        log.warning("Failed to connect to %s:%d: %s.",
                    ctx.hostname, ctx.port, exc)
        return State.CLOSING

    def _state_blocking_connect(self) -> State:
        ctx = self.ctx
        try:
            sock = connect_blocking(ctx.address, ctx.port,
                                    self.config.recv_timeout / 1000.0)
        except ConnectError as e:
            return self._connect_failed(e)
        return self._connected(sock)

    def _state_nonblock_connect(self) -> State:
        ctx = self.ctx
        try:
            sock, attempts = connect_nonblocking(
                ctx.address, ctx.port,
                connect_timeout_ms=self.config.connect_timeout,
                recv_timeout=self.config.recv_timeout / 1000.0,
                cancel=self.cancel)
        except ConnectError as e:
            ctx.connect_retry_count = e.attempts
            return self._connect_failed(e)
        ctx.connect_retry_count = attempts
        return self._connected(sock)

    # -- Login states ------------------------------------------------------

    def _state_send_login(self) -> State:
        ctx = self.ctx
        if ctx.username and ctx.password:
            self._send("USER {}".format(ctx.username))
            next_state = State.SEND_PASSWORD
        else:
            self._send("USER")
            next_state = State.AWAIT_LOGIN

        greeting = self._read_line()
        if not greeting.startswith("2"):
            log.warning("%s is not an ETP server? Got: %r",
                        ctx.hostname, greeting)
            return State.CLOSING
        return next_state

    def _state_send_password(self) -> State:
        line = self._read_line()
        if line.startswith("230"):
            log.debug("%s accepted the login without a password",
                      self.ctx.hostname)
            return State.SEND_QUERY
        self._send("PASS {}".format(self.ctx.password))
        return State.AWAIT_LOGIN

    def _state_await_login(self) -> State:
        ctx = self.ctx
        try:
            line = self._read_line()
        except TransportError as e:
            ctx.last_error = e.errno
            log.warning("No login reply from %s: %s.", ctx.hostname, e)
            return State.CLOSING
        if line.startswith("230"):
            return State.SEND_QUERY
        log.warning("Failed to log in to %s as %r: %r",
                    ctx.hostname, ctx.username or "anonymous", line)
        return State.CLOSING

    # -- Query states ------------------------------------------------------

    def _state_send_query(self) -> State:
        if self.config.use_regex:
            expr = self.pattern
        else:
            expr = translate_shell_pattern(self.pattern)
        self._send("EVERYTHING REGEX 1")
        self._send("EVERYTHING SEARCH {}".format(expr))
        self._send("EVERYTHING CASE {}".format(
            1 if self.config.case_sensitive else 0))
        self._send("EVERYTHING PATH_COLUMN 1")
        self._send("EVERYTHING SIZE_COLUMN 1")
        self._send("EVERYTHING DATE_MODIFIED_COLUMN 1")
        self._send("EVERYTHING QUERY")
        return State.AWAIT_BANNER

    def _state_await_banner(self) -> State:
        line = self._read_line()
        if line.startswith("200-"):
            return State.READ_RESULT_COUNT
        if not line.startswith("2"):
            log.warning("%s is not an ETP server? Unexpected response: %r",
                        self.ctx.hostname, line)
            return State.CLOSING
        # Replies to the EVERYTHING settings commands.
        return State.AWAIT_BANNER

    def _state_read_result_count(self) -> State:
        ctx = self.ctx
        line = self._read_line()
        if line.startswith("RESULT_COUNT "):
            try:
                ctx.results_expected = int(line[len("RESULT_COUNT "):].strip())
            except ValueError:
                log.warning("Bad RESULT_COUNT from %s: %r", ctx.hostname, line)
                return State.CLOSING
            return State.READ_RESULT_ROW
        if line.startswith("200 End"):
            # No RESULT_COUNT at all: nothing matched.
            return State.CLOSING
        log.warning("Unexpected response from %s: %r", ctx.hostname, line)
        return State.CLOSING

    def _parse_number(self, line: str, value: str) -> Optional[int]:
        try:
            return int(value.strip())
        except ValueError:
            log.warning("Malformed line from %s: %r", self.ctx.hostname, line)
            return None

    def _state_read_result_row(self) -> State:
        ctx = self.ctx
        line = self._read_line()
        if line.startswith("200 End"):
            return State.CLOSING

        keyword, _sep, value = line.partition(" ")
        if keyword == "PATH":
            ctx.current_path = value
        elif keyword == "SIZE":
            size = self._parse_number(line, value)
            if size is not None:
                ctx.current_size = size
        elif keyword == "DATE_MODIFIED":
            ft = self._parse_number(line, value)
            if ft is not None:
                ctx.current_mtime = filetime_to_unix(ft)
        elif keyword in ("FILE", "FOLDER") and value:
            self._emit(value, keyword == "FOLDER")
        else:
            log.warning("Unexpected response from %s: %r", ctx.hostname, line)
        return State.READ_RESULT_ROW

    def _emit(self, name: str, is_dir: bool) -> None:
        ctx = self.ctx
        record = MatchRecord(
            path=join_remote_path(ctx.current_path, name),
            size=ctx.current_size,
            mtime=ctx.current_mtime,
            is_dir=is_dir,
        )
        self.results.add(record)
        ctx.current_size = 0
        ctx.current_mtime = 0

    # -- Shutdown states ---------------------------------------------------

    def _state_closing(self) -> State:
        ctx = self.ctx
        self._close_socket()
        if ctx.results_expected > ctx.results_received:
            total = self._reader.total_rcv if self._reader is not None else 0
            log.warning("Expected %d results from %s, but received only %d "
                        "(%d bytes received).", ctx.results_expected,
                        ctx.hostname, ctx.results_received, total)
        return State.EXIT

    def _state_exit(self) -> State:
        if self._reader is not None:
            self.ctx.bytes_received = self._reader.total_rcv
            self._reader = None
        return State.EXIT


# ---------------------------------------------------------------------------
# Convenience entry points
# ---------------------------------------------------------------------------

def query(
    host_spec: str,
    pattern: str,
    sink: Callable[[MatchRecord], None],
    config: Optional[EtpConfig] = None,
    authinfo=None,
    netrc=None,
    cancel=None,
) -> QueryStats:
    """Run one query against *host_spec* and return its QueryStats."""
    return EtpQuery(host_spec, pattern, sink, config=config,
                    authinfo=authinfo, netrc=netrc, cancel=cancel).run()


def query_hosts(
    host_specs: Iterable[str],
    pattern: str,
    sink: Callable[[MatchRecord], None],
    config: Optional[EtpConfig] = None,
    authinfo=None,
    netrc=None,
    cancel=None,
) -> List[QueryStats]:
    """Query each host in turn; a failed host does not stop the rest.

    Stops early (without starting the next host) once *cancel* is set.
    """
    results = []  # type: List[QueryStats]
    for spec in host_specs:
        if cancel is not None and cancel.is_set():
            break
        results.append(query(spec, pattern, sink, config=config,
                             authinfo=authinfo, netrc=netrc, cancel=cancel))
    return results
