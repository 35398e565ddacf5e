from __future__ import annotations

"""Subprocess wrapper, download primitive and JSONL trace log."""

import datetime as _dt
import json
import os
import shutil
import subprocess
import time
from typing import Sequence

from .errors import CommandTimeout, DownloadError, ExecFailed
from .paths import host_path

LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "rlvpn.jsonl"


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    dirs = []
    override = os.environ.get("RLVPN_LOG_DIR")
    if override:
        dirs.append(override)
    dirs.extend([host_path("/var/log/rlvpn"), "/tmp/rlvpn-logs"])
    return dirs


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, exist_ok=True)
            LOG_PATH = os.path.join(d_expanded, LOG_NAME)
            return LOG_PATH
        except OSError:
            continue
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}


def _current_level() -> str:
    return os.environ.get("RLVPN_LOG_LEVEL", "INFO").upper()


def append_jsonl(path: str, obj: dict):
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
    except OSError:
        pass


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(_current_level(), 20)
    if lvl < cur:
        return
    ts = _dt.datetime.now(_dt.timezone.utc).isoformat().replace("+00:00", "Z")
    rec = {"ts": ts, "level": level.upper(), "event": event}
    rec.update(fields)
    path = _ensure_logger()
    if path:
        append_jsonl(path, rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def info(event: str, **fields):
    log("INFO", event, **fields)


def warn(event: str, **fields):
    log("WARN", event, **fields)


def error(event: str, **fields):
    log("ERROR", event, **fields)


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration


def _with_sudo(cmd: Sequence[str], user: str | None = None) -> list[str]:
    cmd_list = list(cmd)
    if user:
        return ["sudo", "-u", user] + cmd_list
    if cmd_list and cmd_list[0] == "sudo":
        return cmd_list
    if os.geteuid() == 0:
        return cmd_list
    return ["sudo"] + cmd_list


def run(
    cmd: Sequence[str],
    check: bool = True,
    timeout: float | None = None,
    env: dict | None = None,
    cwd: str | None = None,
) -> Result:
    """Run ``cmd`` with stdout and stderr combined into ``Result.out``.

    A non-zero exit raises :class:`ExecFailed` carrying the command line and
    the combined output when ``check`` is set.
    """

    trace("exec.start", cmd=list(cmd), cwd=cwd)
    started = time.time()
    try:
        proc = subprocess.run(
            list(cmd),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
            env=env,
            cwd=cwd,
        )
    except subprocess.TimeoutExpired as exc:
        trace("exec.timeout", cmd=list(cmd), timeout=timeout)
        raise CommandTimeout(cmd, timeout or 0) from exc
    except FileNotFoundError as exc:
        raise ExecFailed(cmd, 127, str(exc)) from exc
    dur = time.time() - started
    out = proc.stdout or ""
    trace("exec.done", cmd=list(cmd), rc=proc.returncode, dur=dur)
    if check and proc.returncode != 0:
        raise ExecFailed(cmd, proc.returncode, out)
    return Result(proc.returncode, out, "", dur)


def output(cmd: Sequence[str], timeout: float | None = None) -> str:
    """Return trimmed stdout of ``cmd``; stderr is discarded."""

    trace("exec.start", cmd=list(cmd))
    try:
        proc = subprocess.run(
            list(cmd),
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        trace("exec.timeout", cmd=list(cmd), timeout=timeout)
        raise CommandTimeout(cmd, timeout or 0) from exc
    except FileNotFoundError as exc:
        raise ExecFailed(cmd, 127, str(exc)) from exc
    trace("exec.done", cmd=list(cmd), rc=proc.returncode)
    if proc.returncode != 0:
        raise ExecFailed(cmd, proc.returncode)
    return (proc.stdout or "").strip()


def output_within(timeout: float, cmd: Sequence[str]) -> str:
    return output(cmd, timeout=timeout)


def silent(cmd: Sequence[str]) -> None:
    trace("exec.start", cmd=list(cmd))
    try:
        proc = subprocess.run(list(cmd), stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except FileNotFoundError as exc:
        raise ExecFailed(cmd, 127, str(exc)) from exc
    trace("exec.done", cmd=list(cmd), rc=proc.returncode)
    if proc.returncode != 0:
        raise ExecFailed(cmd, proc.returncode)


def sudo_run(cmd: Sequence[str], **kwargs) -> Result:
    return run(_with_sudo(cmd), **kwargs)


def sudo_run_as(user: str, cmd: Sequence[str], **kwargs) -> Result:
    return run(_with_sudo(cmd, user=user), **kwargs)


def download(url: str, dest: str) -> None:
    """Fetch ``url`` into ``dest`` (overwritten), preferring wget over curl."""

    if shutil.which("wget"):
        cmd = ["wget", "-q", "-O", dest, url]
    else:
        cmd = ["curl", "-fsSL", "-o", dest, url]
    try:
        run(cmd, check=True)
    except ExecFailed as exc:
        try:
            os.remove(dest)
        except OSError:
            pass
        raise DownloadError(url, exc.output.strip() or f"exit status {exc.rc}") from exc
    info("download.ok", url=url, dest=dest)
