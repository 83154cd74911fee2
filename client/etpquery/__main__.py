"""CLI entry point for etpquery.

Usage: python -m etpquery [options] PATTERN [HOST ...]

Each HOST is ``host[:port]``, ``user:password@host[:port]`` or
``user@host[:port]``.  Hosts without inline credentials are looked up
in the .authinfo and .netrc files.
"""

import argparse
import codecs
import configparser
import logging
import os
import signal
import sys
import threading

from . import EtpConfig, query_hosts
from .auth import AuthinfoStore, NetrcStore
from .protocol import ENCODING
from .colors import ColorWriter, format_match, format_size

DEFAULT_HOST = "localhost"


def _default_config_path(host=None):
    """Return the path to etpquery.conf in the client directory.

    If the file does not exist but etpquery.conf.example does, copy it
    to create a starter config with defaults filled in.  When *host* is
    provided (from the command line), it is written into the generated
    config so the user's first-run settings are captured.
    """
    client_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    conf = os.path.join(client_dir, "etpquery.conf")
    if not os.path.exists(conf):
        example = os.path.join(client_dir, "etpquery.conf.example")
        if os.path.exists(example):
            try:
                with open(example, "r") as src, open(conf, "w") as dst:
                    content = src.read()
                    if host is not None:
                        content = content.replace(
                            "host = localhost",
                            "host = {}".format(host),
                        )
                    dst.write(content)
            except OSError:
                pass
    return conf


def _config_error(msg, explicit):
    if explicit:
        print("Error: {}".format(msg), file=sys.stderr)
        sys.exit(1)
    print("Warning: {}".format(msg), file=sys.stderr)


def _load_config(path, explicit):
    """Load settings from a config file.

    Args:
        path: File path to read.
        explicit: True if the user passed --config (errors are fatal).

    Returns a dict with keys 'host', 'buffered_io', 'nonblock_io',
    'connect_timeout', 'recv_timeout', 'encoding', 'authinfo' and
    'netrc'.  Missing or invalid values are None.
    """
    if not os.path.exists(path):
        if explicit:
            print("Error: config file not found: {}".format(path),
                  file=sys.stderr)
            sys.exit(1)
        return {}

    config = configparser.ConfigParser(inline_comment_prefixes=("#", ";"))
    try:
        config.read(path)
    except configparser.Error as e:
        _config_error("failed to parse config file: {}".format(e), explicit)
        return {}

    result = {}

    # Host(s)
    host = config.get("connection", "host", fallback=None)
    if host is not None:
        host = host.strip() or None
    result["host"] = host

    # ETP transport switches
    for key in ("buffered_io", "nonblock_io"):
        try:
            result[key] = config.getboolean("etp", key, fallback=None)
        except ValueError as e:
            _config_error("invalid {} in config file: {}".format(key, e),
                          explicit)
            result[key] = None

    # Timeouts (milliseconds)
    for key in ("connect_timeout", "recv_timeout"):
        try:
            value = config.getint("etp", key, fallback=None)
        except ValueError as e:
            _config_error("invalid {} in config file: {}".format(key, e),
                          explicit)
            value = None
        if value is not None and value <= 0:
            _config_error("{} must be positive, got {}".format(key, value),
                          explicit)
            value = None
        result[key] = value

    encoding = config.get("etp", "encoding", fallback=None)
    if encoding is not None:
        encoding = encoding.strip() or None
    if encoding is not None:
        try:
            encoding = codecs.lookup(encoding).name
        except LookupError:
            _config_error("unknown encoding in config file: {}".format(
                encoding), explicit)
            encoding = None
    result["encoding"] = encoding

    # Credential store locations
    for key in ("authinfo", "netrc"):
        value = config.get("auth", key, fallback=None)
        if value is not None:
            value = os.path.expandvars(os.path.expanduser(value.strip())) or None
        result[key] = value

    return result


def _positive_ms(text):
    """argparse type for timeouts: a positive number of milliseconds."""
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError("invalid int value: {!r}".format(text))
    if value <= 0:
        raise argparse.ArgumentTypeError(
            "must be positive, got {}".format(value))
    return value


def _encoding(text):
    """argparse type for --encoding: a codec name Python knows."""
    try:
        return codecs.lookup(text).name
    except LookupError:
        raise argparse.ArgumentTypeError("unknown encoding: {}".format(text))


def _pick(*values):
    """Return the first value that is not None."""
    for value in values:
        if value is not None:
            return value
    return None


def _setup_logging(debug):
    level = logging.WARNING
    if debug >= 2:
        level = logging.DEBUG
    elif debug == 1:
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )


def main() -> None:
    """Parse arguments and query each host in turn."""
    env_host = os.environ.get("ETPQUERY_HOST") or None

    parser = argparse.ArgumentParser(
        prog="etpquery",
        description="Search remote Everything servers over ETP",
    )
    parser.add_argument("pattern",
                        help="File name pattern (shell wildcards, or a "
                             "regular expression with --regex)")
    parser.add_argument("hosts", nargs="*", metavar="HOST",
                        help="[user[:password]@]host[:port] (default: {})".format(
                            env_host if env_host is not None else DEFAULT_HOST))
    parser.add_argument("-r", "--regex", action="store_true",
                        help="Treat PATTERN as a regular expression")
    parser.add_argument("-c", "--case", action="store_true",
                        help="Case-sensitive match")
    parser.add_argument("-D", "--dir", action="store_true",
                        help="Report directories only")
    parser.add_argument("--no-size", action="store_true",
                        help="Do not show file sizes")
    parser.add_argument("--buffered", dest="buffered_io",
                        action="store_true", default=None,
                        help="Read replies through a receive buffer")
    parser.add_argument("--no-buffered", dest="buffered_io",
                        action="store_false",
                        help="Read replies one byte per recv()")
    parser.add_argument("--blocking", dest="nonblock_io",
                        action="store_false", default=None,
                        help="Use a single blocking connect()")
    parser.add_argument("--connect-timeout", type=_positive_ms, default=None,
                        metavar="MS",
                        help="Connect timeout in milliseconds (default: 3000)")
    parser.add_argument("--recv-timeout", type=_positive_ms, default=None,
                        metavar="MS",
                        help="Receive timeout per line in milliseconds "
                             "(default: 2000)")
    parser.add_argument("--encoding", type=_encoding, default=None,
                        metavar="CODEC",
                        help="Character encoding of the server dialogue "
                             "(default: iso-8859-1)")
    parser.add_argument("--authinfo", default=None, metavar="PATH",
                        help="Path to .authinfo file")
    parser.add_argument("--netrc", default=None, metavar="PATH",
                        help="Path to .netrc file")
    parser.add_argument("--config", default=None, metavar="PATH",
                        help="Path to config file "
                             "(default: client/etpquery.conf)")
    parser.add_argument("-d", "--debug", action="count", default=0,
                        help="Debug output; repeat for a protocol trace")

    args = parser.parse_args()
    _setup_logging(args.debug)

    # --- Load config file ---
    first_host = args.hosts[0] if args.hosts else None
    config_path = (args.config if args.config
                   else _default_config_path(first_host))
    cfg = _load_config(config_path, bool(args.config))

    # --- Resolve hosts (CLI > env > config > default) ---
    if args.hosts:
        hosts = args.hosts
    elif env_host is not None:
        hosts = env_host.split()
    elif cfg.get("host") is not None:
        hosts = cfg["host"].split()
    else:
        hosts = [DEFAULT_HOST]

    config = EtpConfig(
        buffered_io=_pick(args.buffered_io, cfg.get("buffered_io"), True),
        nonblock_io=_pick(args.nonblock_io, cfg.get("nonblock_io"), True),
        connect_timeout=_pick(args.connect_timeout,
                              cfg.get("connect_timeout"), 3000),
        recv_timeout=_pick(args.recv_timeout, cfg.get("recv_timeout"), 2000),
        use_regex=args.regex,
        case_sensitive=args.case,
        dir_mode=args.dir,
        encoding=_pick(args.encoding, cfg.get("encoding"), ENCODING),
    )
    authinfo = AuthinfoStore(_pick(args.authinfo, cfg.get("authinfo")))
    netrc = NetrcStore(_pick(args.netrc, cfg.get("netrc")))

    cancel = threading.Event()

    def _on_sigint(signum, frame):
        cancel.set()

    signal.signal(signal.SIGINT, _on_sigint)

    cw = ColorWriter()

    def _print_match(record):
        print(format_match(record, cw, show_size=not args.no_size))

    results = query_hosts(hosts, args.pattern, _print_match, config=config,
                          authinfo=authinfo, netrc=netrc, cancel=cancel)

    found = sum(r.accepted for r in results)
    ignored = sum(r.ignored for r in results)
    duplicates = sum(r.duplicates for r in results)
    received = sum(r.bytes_received for r in results)

    if cancel.is_set():
        print(cw.warning("Interrupted."), file=sys.stderr)

    summary = "{} match{} found".format(found, "" if found == 1 else "es")
    if ignored:
        summary += ", {} ignored".format(ignored)
    if duplicates:
        summary += ", {} duplicate{}".format(
            duplicates, "" if duplicates == 1 else "s")
    if args.debug:
        summary += " ({} received)".format(format_size(received))
    print(cw.bold(summary + "."))

    sys.exit(0 if found else 1)


if __name__ == "__main__":
    main()
