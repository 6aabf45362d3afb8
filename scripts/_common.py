"""Shared utilities for the template build scripts."""

import json
import logging
import os
import sys
import time
from pathlib import Path

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
UPCLOUD_API = "https://api.upcloud.com/1.3"

ENV_USERNAME = "UPCLOUD_API_USER"
ENV_PASSWORD = "UPCLOUD_API_PASSWORD"

DEFAULT_TEMPLATE_PREFIX = "custom-image"
DEFAULT_SSH_USERNAME = "root"
DEFAULT_STORAGE_SIZE = 25  # GB
DEFAULT_TIMEOUT = 5 * 60  # seconds

CLONE_TITLE_PREFIX = "packer"

log = logging.getLogger("upcloud-image")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------
class BuildError(Exception):
    """Raised when a build step fails."""


class ConfigError(BuildError):
    """Raised when the configuration has one or more problems.

    ``errors`` holds every problem found, not just the first one.
    """

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class DriverError(BuildError):
    """Raised when a remote API operation fails."""


class StorageStateTimeout(DriverError):
    """Raised when a storage or server does not reach the wanted state in time."""


class CloneNotReady(DriverError):
    """Raised when a clone was created but never came online.

    ``storage_uuid`` names the clone, which still exists remotely.
    """

    def __init__(self, message: str, storage_uuid: str):
        self.storage_uuid = storage_uuid
        super().__init__(message)


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
class JSONFormatter(logging.Formatter):
    def format(self, record):
        entry = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0]:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logging(level: str | None = None):
    """Send structured JSON logs to stderr.

    stdout is reserved for the human-readable build narration.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter())
    logging.root.handlers = [handler]
    logging.root.setLevel((level or os.environ.get("LOG_LEVEL", "INFO")).upper())


# ---------------------------------------------------------------------------
# Output sink
# ---------------------------------------------------------------------------
class Ui:
    """Plain line-oriented output for build progress."""

    def __init__(self, out=None, err=None):
        self.out = out
        self.err = err

    def say(self, msg: str):
        log.debug(msg)
        print(f"  {msg}", file=self.out or sys.stdout, flush=True)

    def error(self, msg: str):
        log.error(msg)
        print(f"  ERROR: {msg}", file=self.err or sys.stderr, flush=True)


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------
_last_now = {"token": "", "count": 0}


def now_string() -> str:
    """Return a timestamp token such as ``20240131-235959``.

    Two calls within the same second get distinct tokens (``-1``, ``-2``
    suffixes), so titles generated in a tight loop never collide.
    """
    token = time.strftime("%Y%m%d-%H%M%S", time.gmtime())
    if token == _last_now["token"]:
        _last_now["count"] += 1
        return f"{token}-{_last_now['count']}"
    _last_now["token"] = token
    _last_now["count"] = 0
    return token


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------
def load_env_file(root: Path) -> dict:
    """Parse ``root/.env`` into a dict. A missing file yields ``{}``."""
    env_path = root / ".env"
    if not env_path.exists():
        return {}

    values = {}
    for line in env_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, _, value = line.partition("=")
        value = value.strip()
        # Strip surrounding quotes (single or double)
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]
        else:
            # Only " #" starts an inline comment; a bare "#" is part of the value.
            comment_idx = value.find(" #")
            if comment_idx != -1:
                value = value[:comment_idx].rstrip()
        values[key.strip()] = value
    return values


def env_lookup(root: Path):
    """Return a ``getenv``-style function: process environment first, then .env."""
    file_values = load_env_file(root)

    def getenv(key: str, default: str | None = None) -> str | None:
        value = os.environ.get(key)
        if value:
            return value
        return file_values.get(key, default)

    return getenv
