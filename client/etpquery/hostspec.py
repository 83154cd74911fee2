"""Host specification parsing.

A host spec names the server and may carry credentials::

    host[:port]
    user:password@host[:port]
    user@host[:port]

Only the first form triggers a credential lookup; credentials given
inline are used as-is.
"""

import re
from typing import NamedTuple, Optional

_HOST_RE = re.compile(r"(?P<host>[^:@]*)(?::(?P<port>\d+))?")
_USER_PASS_HOST_RE = re.compile(
    r"(?P<user>[^:@]*):(?P<password>[^:@]*)@(?P<host>[^:@]*)(?::(?P<port>\d+))?")
_USER_HOST_RE = re.compile(
    r"(?P<user>[^:@]*)@(?P<host>[^:@]*)(?::(?P<port>\d+))?")


class HostSpec(NamedTuple):
    hostname: str
    port: int = 0
    username: Optional[str] = None
    password: Optional[str] = None
    need_lookup: bool = True


def _port(value):
    # type: (Optional[str]) -> int
    if not value:
        return 0
    port = int(value)
    if port <= 0 or port > 65535:
        return 0
    return port


def parse_host_spec(raw: str, default_port: int = 0) -> HostSpec:
    """Split *raw* into hostname, port and optional credentials.

    Never raises: a token that matches none of the shapes is taken as a
    bare hostname, and a port that does not parse is left at
    *default_port* (0 meaning "not given").
    """
    raw = raw.strip()

    if "@" not in raw:
        m = _HOST_RE.match(raw)
        if m is None or not m.group("host"):
            return HostSpec(hostname=raw, port=default_port)
        return HostSpec(
            hostname=m.group("host"),
            port=_port(m.group("port")) or default_port,
        )

    for pattern in (_USER_PASS_HOST_RE, _USER_HOST_RE):
        m = pattern.match(raw)
        if m is None:
            continue
        groups = m.groupdict()
        return HostSpec(
            hostname=groups["host"],
            port=_port(groups["port"]) or default_port,
            username=groups["user"],
            password=groups.get("password"),
            need_lookup=False,
        )

    # Credentials with a stray ':' or '@' in them.  Take the host from
    # after the last '@' and log in anonymously.
    m = _HOST_RE.match(raw.rsplit("@", 1)[-1])
    return HostSpec(hostname=m.group("host"),
                    port=_port(m.group("port")) or default_port,
                    need_lookup=False)
