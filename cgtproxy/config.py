"""Loading and validation of the YAML configuration file."""

from __future__ import annotations

import datetime
import ipaddress
import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import yaml

DEFAULT_CONFIG = r"""
version: 1
cgroup-root: AUTO
route-table: 300
rules:
  - match: \/.*
    direct: true
"""

IPV4_LOCALHOST = "127.0.0.1"
CGROUP_ROOT_AUTO = "AUTO"
DEFAULT_CGROUP_ROOT_CANDIDATES = ("/sys/fs/cgroup/unified", "/sys/fs/cgroup")

_UINT16_MAX = 2**16 - 1
_UINT32_MAX = 2**32 - 1
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

_LOG = logging.getLogger(__name__)


class ConfigError(Exception):
    """The configuration could not be loaded."""


class ConfigTypeError(ConfigError):
    """Values in the YAML document have the wrong type."""

    def __init__(self, problems: Iterable[str]):
        self.problems = list(problems)
        super().__init__("unmarshal configuration:\n  " + "\n  ".join(self.problems))


class ConfigValidationError(ConfigError):
    """The configuration is well typed but breaks a validation rule."""

    def __init__(self, problems: Iterable[str]):
        self.problems = list(problems)
        super().__init__("check configuration: validator:\n  " + "\n  ".join(self.problems))


class CgroupRootNotFoundError(ConfigError):
    """No cgroup v2 mount point could be found."""

    def __init__(self, message: str = "`cgroup2` mount point not found."):
        super().__init__(message)


@dataclass
class DNSHijack:
    """Where DNS requests bound for a TPROXY server are redirected."""

    ip: str | None = None
    port: int = 0
    tcp: bool = False


@dataclass
class TProxy:
    """A TPROXY server."""

    name: str = ""
    no_udp: bool = False
    no_ipv6: bool = False
    port: int = 0
    mark: int = 0
    dns_hijack: DNSHijack | None = None


@dataclass
class Rule:
    """How to handle traffic from cgroups whose path matches ``match``."""

    match: str = ""
    tproxy: str = ""
    drop: bool = False
    direct: bool = False

    def __str__(self) -> str:
        if self.drop:
            return f"rule [ match: {self.match} | DROP ]"
        if self.direct:
            return f"rule [ match: {self.match} | DIRECT ]"
        if self.tproxy:
            return f"rule [ match: {self.match} | TPROXY {self.tproxy} ]"
        raise ValueError("rule has no action")


@dataclass
class Config:
    """The whole configuration."""

    version: str = ""
    cgroup_root: str = ""
    bypass: list[str] = field(default_factory=list)
    tproxies: dict[str, TProxy] = field(default_factory=dict)
    rules: list[Rule] = field(default_factory=list)
    route_table: int = 0


class _Decoder:
    """Converts loosely typed YAML values into typed fields, collecting errors."""

    def __init__(self) -> None:
        self.errors: list[str] = []

    def _fail(self, where: str, value: Any, kind: str) -> None:
        self.errors.append(f"{where}: cannot unmarshal {value!r} into {kind}")

    def string(self, value: Any, where: str) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float, datetime.date)):
            return str(value)
        self._fail(where, value, "string")
        return ""

    def integer(self, value: Any, where: str, low: int, high: int) -> int:
        if value is None:
            return 0
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        if isinstance(value, int) and not isinstance(value, bool) and low <= value <= high:
            return value
        self._fail(where, value, f"integer in [{low}, {high}]")
        return 0

    def boolean(self, value: Any, where: str) -> bool:
        if value is None:
            return False
        if isinstance(value, bool):
            return value
        self._fail(where, value, "bool")
        return False

    def mapping(self, value: Any, where: str) -> dict | None:
        if value is None or isinstance(value, dict):
            return value
        self._fail(where, value, "mapping")
        return None

    def sequence(self, value: Any, where: str) -> list | None:
        if value is None or isinstance(value, list):
            return value
        self._fail(where, value, "sequence")
        return None


def _decode_dns_hijack(decoder: _Decoder, value: Any, where: str) -> DNSHijack | None:
    data = decoder.mapping(value, where)
    if data is None:
        return None
    ip = data.get("ip")
    return DNSHijack(
        ip=None if ip is None else decoder.string(ip, f"{where}.ip"),
        port=decoder.integer(data.get("port"), f"{where}.port", 0, _UINT16_MAX),
        tcp=decoder.boolean(data.get("tcp"), f"{where}.tcp"),
    )


def _decode_tproxy(decoder: _Decoder, value: Any, where: str) -> TProxy:
    data = decoder.mapping(value, where) or {}
    return TProxy(
        no_udp=decoder.boolean(data.get("no-udp"), f"{where}.no-udp"),
        no_ipv6=decoder.boolean(data.get("no-ipv6"), f"{where}.no-ipv6"),
        port=decoder.integer(data.get("port"), f"{where}.port", 0, _UINT16_MAX),
        mark=decoder.integer(data.get("mark"), f"{where}.mark", 0, _UINT32_MAX),
        dns_hijack=_decode_dns_hijack(decoder, data.get("dns-hijack"), f"{where}.dns-hijack"),
    )


def _decode_rule(decoder: _Decoder, value: Any, where: str) -> Rule:
    data = decoder.mapping(value, where) or {}
    return Rule(
        match=decoder.string(data.get("match"), f"{where}.match"),
        tproxy=decoder.string(data.get("tproxy"), f"{where}.tproxy"),
        drop=decoder.boolean(data.get("drop"), f"{where}.drop"),
        direct=decoder.boolean(data.get("direct"), f"{where}.direct"),
    )


def _decode(data: Any) -> tuple[Config, bool]:
    """Build a Config from parsed YAML; report whether rules were present."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigTypeError([f"cannot unmarshal {data!r} into configuration mapping"])

    decoder = _Decoder()
    cfg = Config(
        version=decoder.string(data.get("version"), "version"),
        cgroup_root=decoder.string(data.get("cgroup-root"), "cgroup-root"),
        route_table=decoder.integer(data.get("route-table"), "route-table", _INT64_MIN, _INT64_MAX),
    )

    bypass = decoder.sequence(data.get("bypass"), "bypass") or []
    cfg.bypass = [decoder.string(entry, f"bypass[{i}]") for i, entry in enumerate(bypass)]

    tproxies = decoder.mapping(data.get("tproxies"), "tproxies") or {}
    for key, value in tproxies.items():
        name = decoder.string(key, "tproxies key")
        cfg.tproxies[name] = _decode_tproxy(decoder, value, f"tproxies.{name}")

    rules = decoder.sequence(data.get("rules"), "rules")
    cfg.rules = [_decode_rule(decoder, value, f"rules[{i}]") for i, value in enumerate(rules or [])]

    if decoder.errors:
        raise ConfigTypeError(decoder.errors)
    return cfg, rules is not None


def _is_ip(text: str) -> bool:
    try:
        ipaddress.ip_address(text)
    except ValueError:
        return False
    return True


def _is_cidr(text: str) -> bool:
    address, sep, prefix = text.partition("/")
    if not sep or not prefix.isdigit():
        return False
    try:
        ipaddress.ip_interface(f"{address}/{int(prefix)}")
    except ValueError:
        return False
    return True


def _is_ipv4(text: str) -> bool:
    try:
        ipaddress.IPv4Address(text)
    except ValueError:
        return False
    return True


def _is_dir_path(path: str) -> bool:
    if "\x00" in path:
        return False
    return os.path.isdir(path) or path.endswith(os.sep)


def _validate(cfg: Config) -> list[str]:
    problems = []

    if not cfg.version:
        problems.append("version: is required")
    elif cfg.version != "1":
        problems.append(f"version: must be 1, got {cfg.version!r}")

    if not cfg.cgroup_root:
        problems.append("cgroup-root: is required")
    elif cfg.cgroup_root != CGROUP_ROOT_AUTO and not _is_dir_path(cfg.cgroup_root):
        problems.append(f"cgroup-root: {cfg.cgroup_root!r} is neither a directory path nor AUTO")

    for i, entry in enumerate(cfg.bypass):
        if not (_is_ip(entry) or _is_cidr(entry)):
            problems.append(f"bypass[{i}]: {entry!r} is not an IP address or CIDR")

    for name, tp in cfg.tproxies.items():
        if not tp.port:
            problems.append(f"tproxies.{name}.port: is required")
        if not tp.mark:
            problems.append(f"tproxies.{name}.mark: is required")
        hijack = tp.dns_hijack
        if hijack is not None and hijack.ip is not None and not _is_ipv4(hijack.ip):
            problems.append(f"tproxies.{name}.dns-hijack.ip: {hijack.ip!r} is not an IPv4 address")

    for i, rule in enumerate(cfg.rules):
        if not rule.match:
            problems.append(f"rules[{i}].match: is required")
        actions = [bool(rule.tproxy), rule.drop, rule.direct]
        if sum(actions) != 1:
            problems.append(f"rules[{i}]: exactly one of tproxy, drop and direct must be set")

    if not cfg.route_table:
        problems.append("route-table: is required")

    return problems


def get_cgroup_root(candidates: Iterable[str] = DEFAULT_CGROUP_ROOT_CANDIDATES) -> str:
    """Return the first candidate that is an existing directory."""
    for path in candidates:
        if os.path.isdir(path):
            return path
    raise CgroupRootNotFoundError()


def load_config(content: str | bytes, logger: logging.Logger | None = None) -> Config:
    """Parse, validate and complete a configuration document."""
    log = logger or _LOG

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise ConfigError(f"unmarshal configuration: {exc}") from exc

    cfg, rules_given = _decode(data)

    problems = _validate(cfg)
    if problems:
        raise ConfigValidationError(problems)

    if cfg.cgroup_root == CGROUP_ROOT_AUTO:
        cfg.cgroup_root = get_cgroup_root()
        log.info("Cgroup mount point auto detection done. cgroup root: %s", cfg.cgroup_root)

    if not rules_given:
        log.warning("No rules in config.")

    for name, tp in cfg.tproxies.items():
        if not tp.name:
            tp.name = name
        if tp.dns_hijack is not None and tp.dns_hijack.ip is None:
            tp.dns_hijack.ip = IPV4_LOCALHOST

    return cfg