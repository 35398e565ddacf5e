"""Error taxonomy shared by the runner, verifier, engine and plans."""

from __future__ import annotations

from typing import Sequence


class RlvpnError(RuntimeError):
    kind = "generic"


class PreflightError(RlvpnError):
    kind = "preflight"


class DownloadError(RlvpnError):
    kind = "download"

    def __init__(self, url: str, detail: str = ""):
        message = f"download_failed: {url}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.url = url
        self.detail = detail


TRUST_REASONS = (
    "import_failed",
    "fingerprint_missing",
    "signature_invalid",
    "quorum_not_met",
    "bad_signature_present",
)


class TrustError(RlvpnError):
    kind = "trust"

    def __init__(self, reason: str, detail: str = ""):
        if reason not in TRUST_REASONS:
            raise ValueError(f"unknown trust failure reason: {reason}")
        message = reason if not detail else f"{reason}: {detail}"
        super().__init__(message)
        self.reason = reason
        self.detail = detail


class IntegrityError(RlvpnError):
    kind = "integrity"


class FilesystemError(RlvpnError):
    kind = "filesystem"


class ExecFailed(RlvpnError):
    kind = "subprocess"

    def __init__(self, cmd: Sequence[str], rc: int, output: str = ""):
        self.cmd = list(cmd)
        self.rc = rc
        self.output = output or ""
        text = " ".join(self.cmd)
        message = f"{text}: exit status {rc}"
        if self.output.strip():
            message = f"{message}: {self.output.strip()}"
        super().__init__(message)


class CommandTimeout(ExecFailed):
    def __init__(self, cmd: Sequence[str], timeout: float):
        super().__init__(cmd, -1, f"timed out after {timeout:g}s")
        self.timeout = timeout


class StateNotFound(RlvpnError):
    kind = "state_corrupt"


class StateCorrupt(RlvpnError):
    kind = "state_corrupt"


class LockHeld(RlvpnError):
    kind = "preflight"


class Cancelled(RlvpnError):
    kind = "cancelled"


class StepFailed(RlvpnError):
    """First failing step of a plan, wrapping the step's own exception."""

    def __init__(self, step_name: str, index: int, cause: BaseException):
        super().__init__(f"{step_name}: {cause}")
        self.step_name = step_name
        self.index = index
        self.cause = cause

    @property
    def kind(self) -> str:  # type: ignore[override]
        return getattr(self.cause, "kind", "subprocess")
