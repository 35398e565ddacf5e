"""Persisted node state, run lock and the process-wide version holder."""

from __future__ import annotations

import contextlib
import fcntl
import json
import os
import re
import tempfile
from typing import Iterator, Optional

from . import executil
from .errors import CommandTimeout, ExecFailed, LockHeld, StateCorrupt, StateNotFound
from .model import APP_VERSION, AppConfig
from .paths import BITCOIND_BIN, CONFIG_PATH, LOCK_PATH, host_path

CONFIG_FILE_MODE = 0o600
CONFIG_DIR_MODE = 0o755
RELEASES_API = "https://api.github.com/repos/ripsline/virtual-private-node/releases/latest"
VERSION_CHECK_TIMEOUT = 10.0


class ConfigStore:
    """Reads and atomically writes :class:`AppConfig` as JSON."""

    def __init__(self, path: Optional[str] = None):
        self.path = path or host_path(CONFIG_PATH)

    @property
    def directory(self) -> str:
        return os.path.dirname(self.path)

    def exists(self) -> bool:
        return os.path.isfile(self.path)

    def load(self) -> AppConfig:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                raw = fh.read()
        except FileNotFoundError as exc:
            raise StateNotFound(f"no persisted config at {self.path}") from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StateCorrupt(f"{self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StateCorrupt(f"{self.path}: expected a JSON object")
        try:
            return AppConfig.from_dict(data)
        except TypeError as exc:
            raise StateCorrupt(f"{self.path}: {exc}") from exc

    def load_or_default(self) -> AppConfig:
        try:
            return self.load()
        except StateNotFound:
            executil.warn("state.defaults", path=self.path, reason="missing")
            return AppConfig()
        except StateCorrupt as exc:
            executil.warn("state.defaults", path=self.path, reason=str(exc))
            return AppConfig()

    def save(self, cfg: AppConfig) -> None:
        os.makedirs(self.directory, exist_ok=True)
        os.chmod(self.directory, CONFIG_DIR_MODE)
        data = json.dumps(cfg.to_dict(), indent=2) + "\n"
        fd, tmp_path = tempfile.mkstemp(prefix=".config-", suffix=".tmp", dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                os.fchmod(fh.fileno(), CONFIG_FILE_MODE)
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.remove(tmp_path)
            raise
        _fsync_dir(self.directory)
        executil.info("state.saved", path=self.path)


def _fsync_dir(path: str) -> None:
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def default_store() -> ConfigStore:
    return ConfigStore()


def load() -> AppConfig:
    return default_store().load()


def save(cfg: AppConfig) -> None:
    default_store().save(cfg)


def needs_install() -> bool:
    return not os.path.exists(host_path(BITCOIND_BIN))


@contextlib.contextmanager
def run_lock(path: Optional[str] = None) -> Iterator[str]:
    """Hold an exclusive, non-blocking lock for the duration of a plan."""

    lock_path = path or host_path(LOCK_PATH)
    os.makedirs(os.path.dirname(lock_path), exist_ok=True)
    fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o600)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            raise LockHeld(f"another rlvpn run holds {lock_path}") from exc
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        try:
            yield lock_path
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


# Active version string shown by the CLI; set once at entry.
_VERSION: str = APP_VERSION


def set_version(version: str) -> None:
    global _VERSION
    _VERSION = version


def get_version() -> str:
    return _VERSION


def latest_version(timeout: float = VERSION_CHECK_TIMEOUT) -> str:
    """Return the newest published tool version, or ``""`` when unknown."""

    cmd = ["curl", "-s", "--max-time", str(int(timeout)), RELEASES_API]
    try:
        body = executil.output_within(timeout, cmd)
    except (CommandTimeout, ExecFailed) as exc:
        executil.warn("version.check_failed", error=str(exc))
        return ""
    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        executil.warn("version.check_failed", error=str(exc))
        return ""
    tag = data.get("tag_name", "") if isinstance(data, dict) else ""
    if not isinstance(tag, str):
        return ""
    return tag[1:] if tag.startswith("v") else tag


def _version_key(version: str) -> tuple:
    parts = []
    for piece in re.split(r"[.\-]", version):
        parts.append((0, int(piece)) if piece.isdigit() else (1, piece))
    return tuple(parts)


def update_available(current: str, latest: str) -> bool:
    if not latest:
        return False
    return _version_key(latest) > _version_key(current)
