"""Shared fixtures and helpers for etpquery tests.

Two stand-ins for an Everything ETP server are provided:

  - FakeSocket, an in-memory socket that replays scripted reply lines
    and records what the client sends.  Used with the unbuffered line
    reader and a patched connect, it exercises the state machine without
    touching the network.
  - ScriptedEtpServer (via the ``etp_server`` fixture), a real TCP
    listener on 127.0.0.1 running in a thread.  It answers client
    commands with scripted replies, so the full stack (resolve,
    non-blocking connect, buffered reader) runs end to end.

Usage:
    pytest tests/ -v
"""

import errno
import os
import socket
import sys
import threading

import pytest

# Add the client library to the path so tests can import etpquery
_client_dir = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))),
    "client",
)
if _client_dir not in sys.path:
    sys.path.insert(0, _client_dir)


# Scenario A from a real session: one notepad.exe under C:\Windows.
HAPPY_PATH_LINES = [
    "220 Welcome to Everything ETP/FTP",
    "230 Logged on.",
    "200 Regex set to (1).",
    "200 Search set to (^notepad\\.exe$).",
    "200 Case set to (0).",
    "200 Path column set to (1).",
    "200 Size column set to (1).",
    "200 Date modified column set to (1).",
    "200-Query results",
    " RESULT_COUNT 1",
    " PATH C:\\Windows",
    " SIZE 236032",
    " DATE_MODIFIED 131343347638616569",
    " FILE notepad.exe",
    "200 End.",
]

# 131343347638616569 FILETIME ticks in Unix seconds.
NOTEPAD_MTIME = 1489861163


# ---------------------------------------------------------------------------
# In-memory socket
# ---------------------------------------------------------------------------

class FakeSocket:
    """Socket stand-in that serves *lines* (CR LF appended) to recv().

    When the scripted data runs out, recv() raises socket.timeout, or
    returns b"" (peer closed) if *eof* is True.  Everything passed to
    sendall() is kept in ``sent``.
    """

    def __init__(self, lines=(), eof=False, data=None):
        if data is None:
            data = "".join(line + "\r\n" for line in lines).encode(
                "iso-8859-1")
        self._rx = bytearray(data)
        self.eof = eof
        self.sent = bytearray()
        self.timeout = None
        self.close_calls = 0
        self.send_error = None

    @property
    def closed(self):
        return self.close_calls > 0

    def recv(self, n):
        if self.closed:
            raise OSError(errno.EBADF, "Bad file descriptor")
        if not self._rx:
            if self.eof:
                return b""
            raise socket.timeout("timed out")
        chunk = bytes(self._rx[:n])
        del self._rx[:n]
        return chunk

    def sendall(self, data):
        if self.send_error is not None:
            raise self.send_error
        self.sent.extend(data)

    def settimeout(self, timeout):
        self.timeout = timeout

    def gettimeout(self):
        return self.timeout

    def close(self):
        self.close_calls += 1

    def commands(self):
        """Return the command lines sent so far, without CR LF."""
        text = self.sent.decode("iso-8859-1")
        return [line for line in text.split("\r\n") if line]


# ---------------------------------------------------------------------------
# Loopback ETP server
# ---------------------------------------------------------------------------

class ScriptedEtpServer:
    """Accept one client on 127.0.0.1 and play a scripted dialogue.

    *script* is a list of ``(trigger, replies)`` steps, consumed in order.
    A step whose trigger is None is sent as soon as the previous step is
    done (or on accept).  Otherwise the server waits for a client line
    starting with *trigger*, then sends *replies*.  Every line received
    from the client is kept in ``received``.
    """

    def __init__(self, script):
        self.script = list(script)
        self.received = []
        self.listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.listener.bind(("127.0.0.1", 0))
        self.listener.listen(1)
        self.port = self.listener.getsockname()[1]
        self._thread = threading.Thread(target=self._serve, daemon=True)

    def start(self):
        self._thread.start()
        return self

    def _send_pending(self, conn):
        while self.script and self.script[0][0] is None:
            _trigger, replies = self.script.pop(0)
            for reply in replies:
                conn.sendall((reply + "\r\n").encode("iso-8859-1"))

    def _serve(self):
        self.listener.settimeout(10)
        try:
            conn, _addr = self.listener.accept()
        except OSError:
            return
        conn.settimeout(10)
        with conn:
            buf = b""
            try:
                self._send_pending(conn)
                while True:
                    chunk = conn.recv(4096)
                    if not chunk:
                        break
                    buf += chunk
                    while b"\n" in buf:
                        raw, buf = buf.split(b"\n", 1)
                        line = raw.decode("iso-8859-1").rstrip("\r")
                        self.received.append(line)
                        if (self.script and self.script[0][0] is not None
                                and line.startswith(self.script[0][0])):
                            _trigger, replies = self.script.pop(0)
                            for reply in replies:
                                conn.sendall(
                                    (reply + "\r\n").encode("iso-8859-1"))
                            self._send_pending(conn)
            except OSError:
                pass

    def close(self):
        try:
            self.listener.close()
        except OSError:
            pass
        self._thread.join(5)


def unused_port():
    """Return a loopback TCP port with nothing listening on it."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def etp_server():
    """Factory fixture: ``etp_server(script)`` starts a ScriptedEtpServer.

    All servers started by a test are closed on teardown.
    """
    servers = []

    def _start(script):
        srv = ScriptedEtpServer(script).start()
        servers.append(srv)
        return srv

    yield _start
    for srv in servers:
        srv.close()


@pytest.fixture
def sock_pair():
    """Yield a connected ``(client, server)`` socket pair.

    Both ends are closed on teardown.
    """
    a, b = socket.socketpair()
    yield a, b
    for s in (a, b):
        try:
            s.close()
        except OSError:
            pass
