"""Release descriptors plus the download, verify and install primitives."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from typing import List, Optional, Tuple

from . import executil
from .errors import FilesystemError
from .paths import BIN_DIR, host_path, work_dir
from .verification import (
    BITCOIN_CORE_POLICY,
    LIT_POLICY,
    LND_POLICY,
    RLVPN_POLICY,
    TrustPolicy,
    verify_checksum,
    verify_signature,
)


@dataclass(frozen=True)
class Release:
    key: str
    label: str
    version: str
    tarball_url: str
    manifest_url: str
    signature_url: str
    # Directory the tarball unpacks to, relative to the scratch dir.
    extract_subdir: str
    # None installs every file in ``extract_subdir``.
    binaries: Optional[Tuple[str, ...]]
    policy: TrustPolicy

    @property
    def tarball_name(self) -> str:
        return self.tarball_url.rsplit("/", 1)[-1]

    @property
    def manifest_name(self) -> str:
        return self.manifest_url.rsplit("/", 1)[-1]

    @property
    def signature_name(self) -> str:
        return self.signature_url.rsplit("/", 1)[-1]


def bitcoin_core_release(version: str) -> Release:
    base = f"https://bitcoincore.org/bin/bitcoin-core-{version}"
    return Release(
        key="bitcoin",
        label="Bitcoin Core",
        version=version,
        tarball_url=f"{base}/bitcoin-{version}-x86_64-linux-gnu.tar.gz",
        manifest_url=f"{base}/SHA256SUMS",
        signature_url=f"{base}/SHA256SUMS.asc",
        extract_subdir=f"bitcoin-{version}/bin",
        binaries=None,
        policy=BITCOIN_CORE_POLICY,
    )


def lnd_release(version: str) -> Release:
    base = f"https://github.com/lightningnetwork/lnd/releases/download/v{version}"
    return Release(
        key="lnd",
        label="LND",
        version=version,
        tarball_url=f"{base}/lnd-linux-amd64-v{version}.tar.gz",
        manifest_url=f"{base}/manifest-v{version}.txt",
        signature_url=f"{base}/manifest-roasbeef-v{version}.sig",
        extract_subdir=f"lnd-linux-amd64-v{version}",
        binaries=("lnd", "lncli"),
        policy=LND_POLICY,
    )


def lit_release(version: str) -> Release:
    base = f"https://github.com/lightninglabs/lightning-terminal/releases/download/v{version}"
    return Release(
        key="lit",
        label="LIT",
        version=version,
        tarball_url=f"{base}/lightning-terminal-linux-amd64-v{version}.tar.gz",
        manifest_url=f"{base}/manifest-v{version}.txt",
        signature_url=f"{base}/manifest-ViktorT-11-v{version}.sig",
        extract_subdir=f"lightning-terminal-linux-amd64-v{version}",
        binaries=("litd",),
        policy=LIT_POLICY,
    )


def rlvpn_release(version: str) -> Release:
    base = f"https://github.com/ripsline/virtual-private-node/releases/download/v{version}"
    return Release(
        key="rlvpn",
        label="rlvpn",
        version=version,
        tarball_url=f"{base}/rlvpn-{version}-linux-amd64.tar.gz",
        manifest_url=f"{base}/SHA256SUMS",
        signature_url=f"{base}/SHA256SUMS.asc",
        extract_subdir=f"rlvpn-{version}",
        binaries=("rlvpn",),
        policy=RLVPN_POLICY,
    )


def scratch_dir(release: Release) -> str:
    path = os.path.join(work_dir(), release.key)
    os.makedirs(path, exist_ok=True)
    return path


def download_release(release: Release, scratch: str) -> None:
    for url, name in (
        (release.tarball_url, release.tarball_name),
        (release.manifest_url, release.manifest_name),
        (release.signature_url, release.signature_name),
    ):
        executil.download(url, os.path.join(scratch, name))


def verify_release_signature(release: Release, scratch: str) -> int:
    return verify_signature(
        release.policy,
        os.path.join(scratch, release.signature_name),
        os.path.join(scratch, release.manifest_name),
    )


def verify_release_checksum(release: Release, scratch: str) -> str:
    return verify_checksum(release.label, os.path.join(scratch, release.manifest_name))


def _binaries(release: Release, extract_dir: str) -> List[str]:
    if release.binaries is not None:
        return list(release.binaries)
    try:
        return sorted(os.listdir(extract_dir))
    except OSError as exc:
        raise FilesystemError(f"read {extract_dir}: {exc}") from exc


def extract_and_install(release: Release, scratch: str) -> List[str]:
    """Unpack the tarball and ``install`` its binaries root-owned into the bin dir."""

    executil.run(["tar", "-xzf", os.path.join(scratch, release.tarball_name), "-C", scratch])
    extract_dir = os.path.join(scratch, release.extract_subdir)
    target = host_path(BIN_DIR).rstrip("/") + "/"
    os.makedirs(target, exist_ok=True)
    installed = []
    for name in _binaries(release, extract_dir):
        src = os.path.join(extract_dir, name)
        executil.run(["install", "-m", "0755", "-o", "root", "-g", "root", src, target])
        installed.append(name)
    executil.info("artifact.installed", release=release.key, version=release.version, binaries=installed)
    return installed


def cleanup(scratch: str) -> None:
    shutil.rmtree(scratch, ignore_errors=True)
