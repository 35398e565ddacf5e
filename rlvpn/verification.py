"""OpenPGP trust root, signature quorum and checksum verification."""

from __future__ import annotations

import datetime as _dt
import os
import shutil
from dataclasses import dataclass
from typing import Tuple

from . import executil
from .errors import DownloadError, ExecFailed, IntegrityError, TrustError
from .model import SignerIdentity
from .paths import VERIFY_LOG, host_path

KEYSERVER = "hkps://keyserver.ubuntu.com"
_GUIX_KEYS = "https://raw.githubusercontent.com/bitcoin-core/guix.sigs/main/builder-keys"

BITCOIN_CORE_SIGNERS = (
    SignerIdentity("fanquake", "E777299FC265DD04793070EB944D35F9AC3DB76A", key_url=f"{_GUIX_KEYS}/fanquake.gpg"),
    SignerIdentity("guggero", "FDE04B7075113BFB085020B57BBD8D4D95DB9F03", key_url=f"{_GUIX_KEYS}/guggero.gpg"),
    SignerIdentity("hebasto", "CBE89ED88EE8525FD8D79F1EDB56ADFD8B5EF498", key_url=f"{_GUIX_KEYS}/hebasto.gpg"),
    SignerIdentity("theStack", "9343A22960A50972CC1EFD7DB3B5CB8DB648B27F", key_url=f"{_GUIX_KEYS}/theStack.gpg"),
    SignerIdentity("willcl-ark", "A0083660F235A27000CD3C81CE6EC49945C17EA6", key_url=f"{_GUIX_KEYS}/willcl-ark.gpg"),
)

LND_SIGNERS = (
    SignerIdentity(
        "roasbeef",
        "296212681AADF05656A2CDEE90525F7DEEE0AD86",
        key_url="https://raw.githubusercontent.com/lightningnetwork/lnd/master/scripts/keys/roasbeef.asc",
    ),
)

LIT_SIGNERS = (
    SignerIdentity(
        "ViktorT-11",
        "C20A78516A0944900EBFCA29961CC8259AE675D4",
        key_id="C20A78516A0944900EBFCA29961CC8259AE675D4",
    ),
)

# Release key of the rlvpn publisher. No fingerprint is pinned yet; while
# RLVPN_RELEASE_FINGERPRINT is UNPINNED_FINGERPRINT, self-update is disabled.
UNPINNED_FINGERPRINT = "0" * 40
RLVPN_RELEASE_FINGERPRINT = UNPINNED_FINGERPRINT

RLVPN_SIGNERS = (
    SignerIdentity(
        "ripsline",
        RLVPN_RELEASE_FINGERPRINT,
        key_url="https://raw.githubusercontent.com/ripsline/virtual-private-node/main/release-key.asc",
    ),
)


def release_key_pinned(signers: Tuple[SignerIdentity, ...] = RLVPN_SIGNERS) -> bool:
    return all(s.fingerprint != UNPINNED_FINGERPRINT for s in signers)


@dataclass(frozen=True)
class TrustPolicy:
    """Signer set plus the number of good signatures required."""

    label: str
    signers: Tuple[SignerIdentity, ...]
    min_valid: int
    # Continue when only some keys import; the quorum still has to pass.
    partial_import: bool = False


BITCOIN_CORE_POLICY = TrustPolicy("Bitcoin Core", BITCOIN_CORE_SIGNERS, 2, partial_import=True)
LND_POLICY = TrustPolicy("LND", LND_SIGNERS, 1)
LIT_POLICY = TrustPolicy("LIT", LIT_SIGNERS, 1)
RLVPN_POLICY = TrustPolicy("rlvpn", RLVPN_SIGNERS, 1)


def vlog(message: str) -> None:
    """Append one line to the human-readable verification audit log."""

    stamp = _dt.datetime.now(_dt.timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    path = host_path(VERIFY_LOG)
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as fh:
            fh.write(f"[{stamp}] {message}\n")
    except OSError as exc:
        executil.warn("verify.log_unwritable", path=path, error=str(exc))
    executil.info("verify", message=message)


def count_signatures(status: str) -> Tuple[int, int]:
    """Return ``(good, bad)`` counts from ``gpg --status-fd`` output."""

    return status.count("GOODSIG"), status.count("BADSIG")


def check_quorum(status: str, min_valid: int) -> int:
    """Accept iff at least ``min_valid`` good and no bad signatures are present.

    Returns the good signature count; raises :class:`TrustError` otherwise.
    A bad signature rejects the artifact even when the quorum is met.
    """

    good, bad = count_signatures(status)
    if bad > 0:
        raise TrustError("bad_signature_present", f"{bad} bad signature(s), {good} good")
    if good < min_valid:
        if good == 0 and min_valid == 1:
            raise TrustError("signature_invalid", "no good signature")
        raise TrustError("quorum_not_met", f"got {good}, need {min_valid}")
    return good


def has_fingerprint(fingerprint: str) -> bool:
    try:
        res = executil.run(["gpg", "--batch", "--list-keys", "--with-colons", fingerprint], check=False)
    except ExecFailed:
        return False
    return res.rc == 0 and fingerprint in res.out


def ensure_gpg() -> None:
    if shutil.which("gpg"):
        return
    executil.run(["apt-get", "install", "-y", "-qq", "gnupg"])


def import_key(signer: SignerIdentity, scratch: str) -> None:
    """Import ``signer``'s key; success means the fingerprint is in the keyring."""

    output = ""
    if signer.key_url:
        key_file = os.path.join(scratch, f"key-{signer.name}.asc")
        try:
            executil.download(signer.key_url, key_file)
        except DownloadError as exc:
            raise TrustError("import_failed", f"{signer.name}: {exc}") from exc
        try:
            output = executil.run(["gpg", "--batch", "--import", key_file], check=False).out
        finally:
            try:
                os.remove(key_file)
            except OSError:
                pass
    else:
        res = executil.run(
            ["gpg", "--batch", "--keyserver", KEYSERVER, "--recv-keys", signer.key_id],
            check=False,
        )
        output = res.out
        if res.rc != 0 and not has_fingerprint(signer.fingerprint):
            raise TrustError("import_failed", f"{signer.name}: {output.strip()}")
    if not has_fingerprint(signer.fingerprint):
        raise TrustError("fingerprint_missing", f"{signer.name}: expected {signer.fingerprint} {output.strip()}".strip())
    vlog(f"OK {signer.name}: imported (fingerprint {signer.fingerprint})")


def import_keys(policy: TrustPolicy, scratch: str) -> int:
    vlog(f"--- {policy.label} key import ---")
    imported = 0
    for signer in policy.signers:
        try:
            import_key(signer, scratch)
        except TrustError as exc:
            if not policy.partial_import:
                vlog(f"FAIL {signer.name}: {exc}")
                raise
            vlog(f"SKIP {signer.name}: {exc}")
            continue
        imported += 1
    vlog(f"{policy.label} keys imported: {imported}/{len(policy.signers)}")
    if imported == 0:
        vlog(f"FAIL: no {policy.label} signing keys imported")
        raise TrustError("import_failed", f"no {policy.label} signing keys imported")
    return imported


def verify_signature(policy: TrustPolicy, signature: str, manifest: str) -> int:
    vlog(f"--- {policy.label} signature verification ---")
    for path in (manifest, signature):
        if not os.path.isfile(path):
            vlog(f"FAIL: {os.path.basename(path)} not found")
            raise IntegrityError(f"manifest_missing: {path}")
    res = executil.run(["gpg", "--batch", "--verify", "--status-fd", "1", signature, manifest], check=False)
    for line in res.out.splitlines():
        if "GOODSIG" in line:
            vlog(f"GOODSIG: {line.strip()}")
        elif "BADSIG" in line:
            vlog(f"BADSIG: {line.strip()}")
    good, bad = count_signatures(res.out)
    vlog(f"{policy.label} valid signatures: {good}/{policy.min_valid} required (bad: {bad})")
    try:
        check_quorum(res.out, policy.min_valid)
    except TrustError as exc:
        vlog(f"FAIL: {exc}")
        raise
    vlog(f"OK {policy.label}: {good} valid signature(s)")
    return good


def verify_checksum(label: str, manifest: str) -> str:
    """Check the files next to ``manifest`` that it lists, ignoring the rest."""

    vlog(f"--- {label} checksum verification ---")
    if not os.path.isfile(manifest):
        vlog(f"FAIL: {label} manifest not found")
        raise IntegrityError(f"manifest_missing: {manifest}")
    res = executil.run(
        ["sha256sum", "--ignore-missing", "--check", os.path.basename(manifest)],
        check=False,
        cwd=os.path.dirname(manifest) or ".",
    )
    if res.rc != 0:
        vlog(f"FAIL: {label} checksum: {res.out.strip()}")
        raise IntegrityError(f"checksum_mismatch: {res.out.strip()}")
    vlog(f"OK {label} checksum: {res.out.strip()}")
    return res.out.strip()
