"""Template build configuration: decoding, defaults and validation."""

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from _common import (
    DEFAULT_SSH_USERNAME,
    DEFAULT_STORAGE_SIZE,
    DEFAULT_TEMPLATE_PREFIX,
    DEFAULT_TIMEOUT,
    ENV_PASSWORD,
    ENV_USERNAME,
    ConfigError,
)
from communicator import SSHConfig

MAX_TITLE_CHARS = 40

# One public IPv4 interface, which is what most builds need.
DEFAULT_NETWORKING = [
    {
        "ip_addresses": {"ip_address": [{"family": "IPv4"}]},
        "type": "public",
    },
]

STRING_KEYS = [
    "username",
    "password",
    "zone",
    "storage_uuid",
    "storage_name",
    "template_prefix",
    "template_name",
    "ssh_private_key_path",
    "ssh_public_key_path",
]
COMMUNICATOR_KEYS = [
    "communicator",
    "ssh_username",
    "ssh_port",
    "ssh_timeout",
    "ssh_private_key_file",
]
KNOWN_KEYS = set(STRING_KEYS) | set(COMMUNICATOR_KEYS) | {
    "storage_size",
    "state_timeout_duration",
    "clone_zones",
    "network_interfaces",
}

DURATION_RE = re.compile(r"^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?$")


@dataclass
class Config:
    # Required
    username: str = ""
    password: str = ""
    zone: str = ""
    storage_uuid: str = ""
    storage_name: str = ""

    # Optional
    template_prefix: str = ""
    template_name: str = ""
    storage_size: int = 0
    state_timeout_duration: int = 0  # seconds
    clone_zones: list[str] = field(default_factory=list)

    network_interfaces: list[dict] = field(default_factory=list)
    networking: list[dict] = field(default_factory=list)

    ssh_private_key_path: str = ""
    ssh_public_key_path: str = ""
    ssh_private_key: bytes = b""
    ssh_public_key: bytes = b""

    comm: SSHConfig = field(default_factory=SSHConfig)


def whole_number(value) -> int:
    """Accept ``25``, ``25.0`` or ``"25"``; reject fractions, negatives and bools."""
    if isinstance(value, bool):
        raise ValueError(f"must be a whole number, got {value!r}")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"must be a whole number, got {value!r}")
        value = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        value = int(value)
    elif not isinstance(value, int):
        raise ValueError(f"must be a whole number, got {value!r}")
    if value < 0:
        raise ValueError(f"must not be negative, got {value!r}")
    return value


def parse_duration(value) -> int:
    """Turn ``300``, ``"300"``, ``"5m"`` or ``"1h30m"`` into whole seconds."""
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        try:
            return whole_number(value)
        except ValueError as e:
            raise ValueError(f"invalid duration: {e}") from None
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    m = DURATION_RE.match(text)
    if not text or not m:
        raise ValueError(f"invalid duration: {value!r}")
    hours, minutes, seconds = (int(g) if g else 0 for g in m.groups())
    return hours * 3600 + minutes * 60 + seconds


def convert_network_interfaces(interfaces: list[dict]) -> list[dict]:
    """Convert user interface descriptions to server-create request structures.

    Input entries look like ``{"type": "private", "network": "<uuid>",
    "ip_addresses": [{"family": "IPv4", "address": "10.0.0.5"}]}``.
    """
    converted = []
    for iface in interfaces:
        addresses = []
        for ip in iface.get("ip_addresses") or []:
            entry = {"family": ip.get("family", "IPv4")}
            if ip.get("address"):
                entry["address"] = ip["address"]
            addresses.append(entry)
        request = {
            "ip_addresses": {"ip_address": addresses},
            "type": iface.get("type", ""),
        }
        if iface.get("network"):
            request["network"] = iface["network"]
        converted.append(request)
    return converted


def _check_interface(index: int, iface: dict) -> list[str]:
    errs = []
    where = f"'network_interfaces[{index}]'"
    for key in ("type", "network"):
        if iface.get(key) is not None and not isinstance(iface[key], str):
            errs.append(f"{where} '{key}' must be a string")
    addresses = iface.get("ip_addresses")
    if addresses is None:
        return errs
    if not isinstance(addresses, list) or not all(isinstance(ip, dict) for ip in addresses):
        errs.append(f"{where} 'ip_addresses' must be a list of address objects")
        return errs
    for ip in addresses:
        for key in ("family", "address"):
            if ip.get(key) is not None and not isinstance(ip[key], str):
                errs.append(f"{where} ip address '{key}' must be a string")
    return errs


def _decode(raw: dict, errs: list[str]) -> Config:
    """Copy raw values onto a Config, noting decode problems in ``errs``."""
    c = Config()
    for key in sorted(set(raw) - KNOWN_KEYS):
        errs.append(f"unknown configuration key: {key!r}")

    for key in STRING_KEYS:
        value = raw.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            errs.append(f"'{key}' must be a string")
            continue
        setattr(c, key, value)

    if raw.get("storage_size") is not None:
        try:
            c.storage_size = whole_number(raw["storage_size"])
        except ValueError as e:
            errs.append(f"'storage_size' {e}")

    if raw.get("state_timeout_duration") is not None:
        try:
            c.state_timeout_duration = parse_duration(raw["state_timeout_duration"])
        except ValueError as e:
            errs.append(f"'state_timeout_duration': {e}")

    zones = raw.get("clone_zones")
    if zones is not None:
        if not isinstance(zones, list) or not all(isinstance(z, str) for z in zones):
            errs.append("'clone_zones' must be a list of zone names")
        else:
            c.clone_zones = list(zones)

    interfaces = raw.get("network_interfaces")
    if interfaces is not None:
        if not isinstance(interfaces, list) or not all(isinstance(i, dict) for i in interfaces):
            errs.append("'network_interfaces' must be a list of interface objects")
        else:
            iface_errs = [e for i, iface in enumerate(interfaces) for e in _check_interface(i, iface)]
            errs.extend(iface_errs)
            if not iface_errs:
                c.network_interfaces = list(interfaces)

    comm = c.comm
    for key in ("communicator", "ssh_username", "ssh_private_key_file"):
        value = raw.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            errs.append(f"'{key}' must be a string")
            continue
        setattr(comm, key, value)
    if raw.get("ssh_port") is not None:
        try:
            comm.ssh_port = whole_number(raw["ssh_port"])
        except ValueError as e:
            errs.append(f"'ssh_port' {e}")
    if raw.get("ssh_timeout") is not None:
        try:
            comm.ssh_timeout = parse_duration(raw["ssh_timeout"])
        except ValueError as e:
            errs.append(f"'ssh_timeout': {e}")
    return c


def _read_key(path: str, kind: str, errs: list[str]) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as e:
        errs.append(f"Failed to read {kind} key: {e}")
        return b""


def prepare_config(raw: dict, getenv=os.environ.get) -> Config:
    """Decode, default and validate a raw configuration mapping.

    ``getenv`` is consulted for the API credentials when they are not set
    explicitly. Raises ConfigError listing every problem found.
    """
    errs: list[str] = []
    c = _decode(raw or {}, errs)

    # Credentials from the environment, explicit config wins
    if not c.username:
        c.username = getenv(ENV_USERNAME) or ""
    if not c.password:
        c.password = getenv(ENV_PASSWORD) or ""

    # Defaults
    if not c.template_prefix and not c.template_name:
        c.template_prefix = DEFAULT_TEMPLATE_PREFIX
    if c.storage_size == 0:
        c.storage_size = DEFAULT_STORAGE_SIZE
    if c.state_timeout_duration == 0:
        c.state_timeout_duration = DEFAULT_TIMEOUT
    if not c.comm.ssh_username:
        c.comm.ssh_username = DEFAULT_SSH_USERNAME
    if c.network_interfaces:
        c.networking = convert_network_interfaces(c.network_interfaces)
    else:
        c.networking = [dict(iface) for iface in DEFAULT_NETWORKING]

    # Validate
    errs.extend(c.comm.prepare())

    if not c.username:
        errs.append("'username' must be specified")
    if not c.password:
        errs.append("'password' must be specified")
    if not c.zone:
        errs.append("'zone' must be specified")
    if not c.storage_uuid and not c.storage_name:
        errs.append("'storage_uuid' or 'storage_name' must be specified")

    if c.ssh_private_key_path:
        c.ssh_private_key = _read_key(c.ssh_private_key_path, "private", errs)
    if c.ssh_public_key_path:
        c.ssh_public_key = _read_key(c.ssh_public_key_path, "public", errs)

    if len(c.template_prefix) > MAX_TITLE_CHARS:
        errs.append("'template_prefix' must be 0-40 characters")
    if len(c.template_name) > MAX_TITLE_CHARS:
        errs.append("'template_name' is limited to 40 characters")
    if c.template_prefix and c.template_name:
        errs.append(
            "you can either use 'template_prefix' or 'template_name' in your configuration"
        )

    if errs:
        raise ConfigError(errs)
    return c


def load_config_file(path: Path) -> dict:
    """Read the raw build configuration from a JSON file."""
    if not path.exists():
        raise ConfigError([f"config file not found: {path}"])
    try:
        raw = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ConfigError([f"config file {path} is not valid JSON: {e}"]) from e
    if not isinstance(raw, dict):
        raise ConfigError([f"config file {path} must contain a JSON object"])
    return raw
