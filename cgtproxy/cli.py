"""Command line interface of the transparent network proxy manager."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import re
import signal
import sys
import time
from collections.abc import Iterator, Mapping, Sequence
from typing import Any

from .cgfsmon import CGroupFSMonitor
from .config import DEFAULT_CONFIG, Config, ConfigError, load_config
from .connector import Connector, LastingConnector
from .core import CGTProxy
from .nftman import NFTManager
from .routeman import RouteManager

VERSION = "dev"

CHECK_DOCUMENT = """
Go to check
1. the documentation shipped with cgtproxy
2. the project wiki
for some help.
"""
ROOT_ERROR_HINT = "You can run 'cgtproxy check' to perform health check built in cgtproxy."

CGTPROXY_CFG_PATH = "/etc/cgtproxy/config.yaml"
CONFIGURATION_DIRECTORY_ENV = "CONFIGURATION_DIRECTORY"
PROFILE_ENV = "CGTPROXY_PROFILE"
DEFAULT_CPU_PROFILE = "/tmp/io.github.black-desk.cgtproxy/profiles/{{.PID}}.cpuprofile"
DEFAULT_BLOCK_PROFILE = "/tmp/io.github.black-desk.cgtproxy/profiles/{{.PID}}.blockprofile"

PROC_STATUS_PATH = "/proc/self/status"
CAP_NET_ADMIN = 12

_TEMPLATE_ACTION = re.compile(r"\{\{(.*?)\}\}")
_TRUE = {"1", "t", "true", "yes", "on"}
_FALSE = {"0", "f", "false", "no", "off"}


class CancelledBySignal(Exception):
    """The service was stopped by a signal."""

    def __init__(self, signum: int):
        self.signal = signal.Signals(signum)
        super().__init__(f"Cancelled by signal ({self.signal.name}).")


def default_config_path(environ: Mapping[str, str] | None = None) -> str:
    """Return the configuration file used when none is given."""
    env = os.environ if environ is None else environ
    directory = env.get(CONFIGURATION_DIRECTORY_ENV, "")
    if not directory:
        return CGTPROXY_CFG_PATH
    return directory + "/config.yaml"


def generate_profile_name(template: str, pid: int | None = None) -> str:
    """Expand ``{{.PID}}`` in a profile path template."""
    value = os.getpid() if pid is None else pid

    def expand(match: re.Match[str]) -> str:
        if match.group(1).strip() != ".PID":
            raise ValueError(f"unknown template action {match.group(0)!r}")
        return str(value)

    name = _TEMPLATE_ACTION.sub(expand, template)
    if "{{" in name:
        raise ValueError(f"unclosed action in template {template!r}")
    return name


def _create_profile_path(template: str) -> str:
    path = generate_profile_name(template)
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, mode=0o700, exist_ok=True)
    return path


class _CallProfiler:
    """Counts calls and inclusive time per function through ``sys.setprofile``."""

    def __init__(self) -> None:
        self.stats: dict[str, list[float]] = {}
        self._stack: list[tuple[str, float]] = []

    @staticmethod
    def _key(frame: Any, event: str, arg: Any) -> str:
        if event == "c_call":
            name = getattr(arg, "__qualname__", None) or repr(arg)
            module = getattr(arg, "__module__", None) or "<builtin>"
            return f"{module}:{name}"
        code = frame.f_code
        return f"{code.co_filename}:{code.co_firstlineno}({code.co_name})"

    def __call__(self, frame: Any, event: str, arg: Any) -> None:
        if event in ("call", "c_call"):
            self._stack.append((self._key(frame, event, arg), time.perf_counter()))
        elif event in ("return", "c_return", "c_exception") and self._stack:
            key, start = self._stack.pop()
            entry = self.stats.setdefault(key, [0, 0.0])
            entry[0] += 1
            entry[1] += time.perf_counter() - start

    def report(self) -> str:
        rows = sorted(self.stats.items(), key=lambda item: item[1][1], reverse=True)
        lines = ["calls\ttotal_seconds\tfunction"]
        lines.extend(f"{int(calls)}\t{total:.6f}\t{key}" for key, (calls, total) in rows)
        return "\n".join(lines) + "\n"


@contextlib.contextmanager
def _cpu_profile(template: str) -> Iterator[None]:
    path = _create_profile_path(template)
    fd = os.open(path, os.O_CREAT | os.O_WRONLY, 0o700)
    profiler = _CallProfiler()
    previous = sys.getprofile()
    sys.setprofile(profiler)
    try:
        yield
    finally:
        sys.setprofile(previous)
        with os.fdopen(fd, "w", encoding="utf-8") as out:
            out.write(profiler.report())


def _silent_logger() -> logging.Logger:
    log = logging.getLogger("cgtproxy.silent")
    if not log.handlers:
        log.addHandler(logging.NullHandler())
    log.propagate = False
    return log


def read_config(path: str, logger: logging.Logger | None = None) -> Config:
    """Load the configuration at ``path``; fall back to the default when the default file is missing."""
    log = logger or logging.getLogger("cgtproxy")
    try:
        with open(path, "rb") as file:
            content: str | bytes = file.read()
    except FileNotFoundError:
        if path != CGTPROXY_CFG_PATH:
            log.error("Failed to read configuration from file %s.", path)
            raise
        log.error("Configuration file missing fallback to default config.")
        content = DEFAULT_CONFIG
    except OSError as exc:
        log.error("Failed to read configuration from file %s: %s", path, exc)
        raise
    return load_config(content, log)


def check_config(path: str, with_logger: bool = False) -> Config:
    """Validate the configuration file at ``path``."""
    log = logging.getLogger("cgtproxy") if with_logger else _silent_logger()
    try:
        with open(path, "rb") as file:
            content = file.read()
    except OSError as exc:
        raise ConfigError(f"read configuration from {path}: {exc}") from exc
    return load_config(content, log)


def check_permission() -> int:
    """Ensure CAP_NET_ADMIN is effective; return the effective capability mask."""
    with open(PROC_STATUS_PATH, encoding="ascii") as status:
        for line in status:
            key, _, value = line.partition(":")
            if key == "CapEff":
                effective = int(value.strip(), 16)
                break
        else:
            raise PermissionError("cannot determine effective capabilities")
    if not (effective >> CAP_NET_ADMIN) & 1:
        raise PermissionError("CAP_NET_ADMIN is required to update nftable.")
    return effective


def build_cgtproxy(
    cfg: Config, logger: logging.Logger | None = None, lasting: bool = True
) -> CGTProxy:
    """Assemble the monitor, nft manager, route manager and core for ``cfg``."""
    log = logger or logging.getLogger("cgtproxy")
    connector = LastingConnector() if lasting else Connector()
    nft = NFTManager(
        cgroup_root=cfg.cgroup_root,
        bypass=cfg.bypass,
        logger=log,
        connector=connector,
    )
    monitor = CGroupFSMonitor(cfg.cgroup_root, logger=log)
    route_manager = RouteManager(nft, cfg, monitor.events(), logger=log)
    return CGTProxy(cfg, monitor, route_manager, logger=log)


async def _serve(proxy: CGTProxy) -> None:
    loop = asyncio.get_running_loop()
    received: asyncio.Future[int] = loop.create_future()

    def on_signal(signum: int) -> None:
        if not received.done():
            received.set_result(signum)

    signums = (signal.SIGTERM, signal.SIGINT)
    for signum in signums:
        loop.add_signal_handler(signum, on_signal, signum)
    task = asyncio.create_task(proxy.run_cgtproxy())
    try:
        await asyncio.wait({task, received}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for signum in signums:
            loop.remove_signal_handler(signum)

    if received.done():
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise CancelledBySignal(received.result())
    received.cancel()
    task.result()


def _run_root(args: argparse.Namespace) -> None:
    log = logging.getLogger("cgtproxy")
    profiles = os.environ.get(PROFILE_ENV, "").split(",")
    with contextlib.ExitStack() as stack:
        if "cpu" in profiles:
            stack.enter_context(_cpu_profile(args.cpu_profile))
        if "block" in profiles:
            log.warning("Block profiling is not available, ignoring %s.", args.block_profile)

        cfg = read_config(args.config, log)
        proxy = build_cgtproxy(cfg, log, args.reuse_netlink_socket)
        try:
            asyncio.run(_serve(proxy))
        except CancelledBySignal as exc:
            log.info("Signal received, exiting... signal: %s", exc.signal.name)


def _parse_bool(text: str) -> bool:
    lowered = text.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean value {text!r}")


def _add_root_options(parser: argparse.ArgumentParser, with_defaults: bool) -> None:
    def default(value: object) -> object:
        return value if with_defaults else argparse.SUPPRESS

    parser.add_argument(
        "-c", "--config", default=default(default_config_path()),
        help="the configure file to use",
    )
    parser.add_argument(
        "--cpu-profile", default=default(DEFAULT_CPU_PROFILE),
        help="the template string use to create the cpu profile "
        f"NOTE: this option only takes effect when ${PROFILE_ENV}=cpu",
    )
    parser.add_argument(
        "--block-profile", default=default(DEFAULT_BLOCK_PROFILE),
        help="the template string use to create the block profile "
        f"NOTE: this option only takes effect when ${PROFILE_ENV}=block",
    )
    parser.add_argument(
        "--reuse-netlink-socket", nargs="?", const=True, type=_parse_bool,
        default=default(True), metavar="BOOL",
        help="use lasting netlink socket",
    )


def _add_check_options(parser: argparse.ArgumentParser, with_defaults: bool) -> None:
    parser.add_argument(
        "--with-logger", action="store_true",
        default=False if with_defaults else argparse.SUPPRESS,
        help="enable logger during check configuration",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cgtproxy", description="A transparent network proxy manager."
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s version {VERSION}")
    _add_root_options(parser, True)
    commands = parser.add_subparsers(dest="command")

    check = commands.add_parser(
        "check",
        help="Check system requirements",
        description="Check kernel configuration, cgroup v2 mount and configuration.",
    )
    _add_root_options(check, False)
    _add_check_options(check, True)
    checks = check.add_subparsers(dest="check_command")
    for name, summary, description in (
        ("config", "Check configuration", "Validate configuration."),
        ("permission", "Check permission", "Check cgtproxy have get all required capabilities."),
    ):
        sub = checks.add_parser(name, help=summary, description=description)
        _add_root_options(sub, False)
        _add_check_options(sub, False)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run the command line; return the process exit status."""
    args = _build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    if args.command == "check":
        try:
            if args.check_command in (None, "config"):
                check_config(args.config, args.with_logger)
            if args.check_command in (None, "permission"):
                check_permission()
        except Exception as exc:
            print(f"Error: \n{exc}\n{CHECK_DOCUMENT}", file=sys.stderr)
            return 1
        return 0

    try:
        _run_root(args)
    except Exception as exc:
        print(f"Error: \n{exc}\n\n{ROOT_ERROR_HINT}{CHECK_DOCUMENT}", file=sys.stderr)
        return 1
    return 0