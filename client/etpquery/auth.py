"""Credential stores for authenticated ETP logins.

Two file-backed stores are consulted, keyed by hostname:

  ``.authinfo`` lines look like::

      machine <host> port <num> login <user> password <password>
      default port <num> login <user> password <password>

  ``.netrc`` is the usual ftp(1) format and is parsed with the
  standard library's netrc module.

Both live in %APPDATA% on Windows and in the home directory elsewhere.
Host names compare case-insensitively; when no ``machine`` entry
matches, the ``default`` entry (if any) is returned.
"""

import logging
import netrc
import os
import shlex
from typing import Dict, List, NamedTuple, Optional

log = logging.getLogger(__name__)


class Credentials(NamedTuple):
    username: Optional[str] = None
    password: Optional[str] = None
    port: int = 0


def default_store_path(name: str) -> str:
    """Return the default location of ``name`` (e.g. ".netrc")."""
    base = os.environ.get("APPDATA") or os.path.expanduser("~")
    return os.path.join(base, name)


def _parse_authinfo_line(line):
    # type: (str) -> Optional[Dict[str, str]]
    """Parse one ``.authinfo`` line into a keyword dict, or None."""
    try:
        tokens = shlex.split(line, comments=True)
    except ValueError:
        return None
    if not tokens:
        return None
    entry = {}  # type: Dict[str, str]
    if tokens[0] == "default":
        entry["default"] = "1"
        tokens = tokens[1:]
    if len(tokens) % 2:
        return None
    for key, value in zip(tokens[0::2], tokens[1::2]):
        entry[key] = value
    if "login" not in entry or "password" not in entry:
        return None
    if "machine" not in entry and "default" not in entry:
        return None
    return entry


class AuthinfoStore:
    """Lookup user/password/port by host in an ``.authinfo`` file."""

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path or default_store_path(".authinfo")
        self.loaded = False
        self._entries = []  # type: List[Dict[str, str]]
        self._load()

    def _load(self) -> None:
        try:
            with open(self.path, "r") as f:
                lines = f.readlines()
        except OSError:
            log.warning("Failed to open \"%s\". Authenticated logins "
                        "will not work.", self.path)
            return
        for line in lines:
            entry = _parse_authinfo_line(line)
            if entry is None:
                continue
            try:
                port = int(entry["port"])
            except (KeyError, ValueError):
                continue
            if "machine" in entry and not 0 < port < 65535:
                continue
            entry["port"] = str(port)
            self._entries.append(entry)
        self.loaded = True

    def lookup(self, host: str) -> Optional[Credentials]:
        """Return the Credentials for *host*, or None if not found."""
        default = None
        for entry in self._entries:
            if "default" in entry:
                default = entry
                continue
            log.debug("authinfo: host: %r, user: %r, port: %s",
                      entry["machine"], entry["login"], entry["port"])
            if host and entry["machine"].lower() == host.lower():
                return self._to_credentials(entry)
        if default is not None:
            return self._to_credentials(default)
        return None

    @staticmethod
    def _to_credentials(entry):
        # type: (Dict[str, str]) -> Credentials
        return Credentials(username=entry["login"],
                           password=entry["password"],
                           port=int(entry["port"]))


class NetrcStore:
    """Lookup user/password by host in a ``.netrc`` file."""

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path or default_store_path(".netrc")
        self.loaded = False
        self._netrc = None  # type: Optional[netrc.netrc]
        self._load()

    def _load(self) -> None:
        try:
            self._netrc = netrc.netrc(self.path)
        except (OSError, netrc.NetrcParseError) as e:
            log.warning("Failed to open \"%s\" (%s). Authenticated logins "
                        "will not work.", self.path, e)
            return
        self.loaded = True

    def lookup(self, host: str) -> Optional[Credentials]:
        """Return the Credentials for *host*, or None if not found."""
        if self._netrc is None:
            return None
        hosts = self._netrc.hosts
        for machine, (login, _account, password) in hosts.items():
            if machine == "default":
                continue
            log.debug("netrc: host: %r, user: %r", machine, login)
            if host and machine.lower() == host.lower():
                return Credentials(username=login, password=password)
        if "default" in hosts:
            login, _account, password = hosts["default"]
            return Credentials(username=login, password=password)
        return None
