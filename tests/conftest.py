import ast
import sys
import threading
from collections import defaultdict
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, List, Set

import pytest

_ROOT_DIR = Path(__file__).absolute().parent.parent
_PACKAGE_DIR = _ROOT_DIR / "rlvpn"

_EXECUTED_LINES: Dict[str, Set[int]] = defaultdict(set)
_CANDIDATE_LINES: Dict[str, Set[int]] = {}


def _candidate_lines_for(path: Path) -> Set[int]:
    source = path.read_text(encoding="utf-8")
    source_lines = source.splitlines()
    lines = set()
    for node in ast.walk(ast.parse(source, filename=str(path))):
        if isinstance(node, ast.stmt) and source_lines[node.lineno - 1].strip():
            lines.add(node.lineno)
    return lines


for _path in _PACKAGE_DIR.glob("*.py"):
    _CANDIDATE_LINES[str(_path)] = _candidate_lines_for(_path)


def _trace(frame, event, arg):
    filename = frame.f_code.co_filename
    if event == "line" and filename in _CANDIDATE_LINES:
        _EXECUTED_LINES[filename].add(frame.f_lineno)
    return _trace


def pytest_sessionstart(session):
    sys.settrace(_trace)
    threading.settrace(_trace)


def pytest_sessionfinish(session, exitstatus):
    sys.settrace(None)
    threading.settrace(None)

    terminal = session.config.pluginmanager.get_plugin("terminalreporter")
    write_line = terminal.write_line if terminal else print
    write_line("")
    write_line("Coverage summary for 'rlvpn':")
    total = covered = 0
    for filename in sorted(_CANDIDATE_LINES):
        candidates = _CANDIDATE_LINES[filename]
        if not candidates:
            continue
        hit = len(_EXECUTED_LINES[filename] & candidates)
        total += len(candidates)
        covered += hit
        write_line(f"{Path(filename).name:<20} {len(candidates):>6} {hit / len(candidates) * 100:>6.1f}%")
    if total:
        write_line(f"{'TOTAL':<20} {total:>6} {covered / total * 100:>6.1f}%")


class CommandRecorder:
    """Stand-in for ``executil.run`` that records argv and replays canned output."""

    def __init__(self):
        self.calls: List[List[str]] = []
        self.outputs: Dict[str, tuple] = {}
        self.fail_on: Dict[str, str] = {}

    def script(self, prefix: str, out: str = "", rc: int = 0) -> None:
        self.outputs[prefix] = (rc, out)

    def fail(self, prefix: str, output: str = "boom") -> None:
        self.fail_on[prefix] = output

    def joined(self) -> List[str]:
        return [" ".join(c) for c in self.calls]

    def __call__(self, cmd, check=True, timeout=None, env=None, cwd=None):
        from rlvpn import executil
        from rlvpn.errors import ExecFailed

        argv = [str(c) for c in cmd]
        self.calls.append(argv)
        line = " ".join(argv)
        for prefix, output in self.fail_on.items():
            if line.startswith(prefix):
                if check:
                    raise ExecFailed(argv, 1, output)
                return executil.Result(1, output, "", 0.0)
        rc, out = 0, ""
        for prefix, canned in self.outputs.items():
            if line.startswith(prefix):
                rc, out = canned
                break
        if check and rc != 0:
            raise ExecFailed(argv, rc, out)
        return executil.Result(rc, out, "", 0.0)


@pytest.fixture
def host_root(tmp_path, monkeypatch):
    """Point every host path, the work dir and the logs into ``tmp_path``."""

    from rlvpn import executil

    root = tmp_path / "host"
    root.mkdir()
    monkeypatch.setenv("RLVPN_ROOT", str(root))
    monkeypatch.setenv("RLVPN_WORK_DIR", str(tmp_path / "work"))
    monkeypatch.setenv("RLVPN_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path / "logs")])
    monkeypatch.setattr(executil, "LOG_PATH", None)
    return root


@pytest.fixture
def commands(host_root, monkeypatch):
    from rlvpn import executil

    recorder = CommandRecorder()
    monkeypatch.setattr(executil, "run", recorder)
    monkeypatch.setattr(executil.shutil, "which", lambda name: f"/usr/bin/{name}")
    return recorder


@pytest.fixture
def fake_proc():
    def _make(returncode=0, stdout="", stderr=""):
        return SimpleNamespace(returncode=returncode, stdout=stdout, stderr=stderr)

    return _make
