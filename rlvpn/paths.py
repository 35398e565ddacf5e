from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_ROOT = "/"
_DEFAULT_WORK_DIR = "/tmp/rlvpn-work"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def host_root() -> str:
    """Return the filesystem root every host path is resolved against.

    The location can be overridden via the ``RLVPN_ROOT`` environment
    variable so the whole host layout can be redirected into a scratch
    tree.  When unset the real ``/`` is used.
    """

    override = os.environ.get("RLVPN_ROOT")
    if override:
        return _expand(override)
    return _DEFAULT_ROOT


def host_path(path: str) -> str:
    """Map an absolute host path (``/etc/tor/torrc``) under :func:`host_root`."""

    root = host_root()
    if root == _DEFAULT_ROOT:
        return path
    return os.path.join(root, path.lstrip("/"))


def work_dir() -> str:
    override = os.environ.get("RLVPN_WORK_DIR")
    if override:
        return _expand(override)
    return host_path(_DEFAULT_WORK_DIR)


CONFIG_DIR = "/etc/rlvpn"
CONFIG_PATH = "/etc/rlvpn/config.json"
LOCK_PATH = "/etc/rlvpn/.lock"

BITCOIN_CONF = "/etc/bitcoin/bitcoin.conf"
LND_CONF = "/etc/lnd/lnd.conf"
LIT_CONF = "/etc/lit/lit.conf"
SYNCTHING_HOME = "/etc/syncthing"
SYNCTHING_CONFIG = "/etc/syncthing/config.xml"
TORRC = "/etc/tor/torrc"
SYSTEMD_DIR = "/etc/systemd/system"

BITCOIN_DATA = "/var/lib/bitcoin"
LND_DATA = "/var/lib/lnd"
LIT_DATA = "/var/lib/lit"
SYNCTHING_DATA = "/var/lib/syncthing"
SYNCTHING_BACKUP_DIR = "/var/lib/syncthing/lnd-backup"
LND_WALLET_PASSWORD = "/var/lib/lnd/wallet_password"
LND_TLS_CERT = "/var/lib/lnd/tls.cert"

TOR_HS_ROOT = "/var/lib/tor"
LND_REST_HOSTNAME = "/var/lib/tor/lnd-rest/hostname"

BIN_DIR = "/usr/local/bin"
BITCOIND_BIN = "/usr/local/bin/bitcoind"

SYSCTL_IPV6 = "/etc/sysctl.d/99-disable-ipv6.conf"
UFW_DEFAULTS = "/etc/default/ufw"
APT_AUTO_UPGRADES = "/etc/apt/apt.conf.d/20auto-upgrades"
APT_UNATTENDED = "/etc/apt/apt.conf.d/50unattended-upgrades"
FAIL2BAN_JAIL = "/etc/fail2ban/jail.local"
APT_KEYRINGS = "/etc/apt/keyrings"
SYNCTHING_KEYRING = "/etc/apt/keyrings/syncthing-archive-keyring.gpg"
SYNCTHING_APT_LIST = "/etc/apt/sources.list.d/syncthing.list"
OS_RELEASE = "/etc/os-release"

VERIFY_LOG = "/var/log/rlvpn-verification.log"


def unit_path(name: str) -> str:
    return f"{SYSTEMD_DIR}/{name}"


def lnd_chain_dir(network: str) -> str:
    return f"{LND_DATA}/data/chain/bitcoin/{network}"


def hidden_service_dir(name: str) -> str:
    return f"{TOR_HS_ROOT}/{name}"
