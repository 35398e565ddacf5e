"""systemd unit builders."""

from __future__ import annotations

from typing import List

from .model import AppConfig, SYSTEM_USER
from .paths import (
    BITCOIN_CONF,
    BITCOIN_DATA,
    LIT_CONF,
    LND_CONF,
    LND_WALLET_PASSWORD,
    SYNCTHING_BACKUP_DIR,
    SYNCTHING_DATA,
    SYNCTHING_HOME,
    lnd_chain_dir,
)

BACKUP_WATCH_UNIT = "lnd-backup-watch.path"
BACKUP_COPY_UNIT = "lnd-backup-copy.service"
AUTO_UNLOCK_DROPIN = "lnd.service.d/10-auto-unlock.conf"

LND_EXEC = f"/usr/local/bin/lnd --configfile={LND_CONF}"


def _hardening(user: str) -> List[str]:
    return [
        f"User={user}",
        f"Group={user}",
        "PrivateTmp=true",
        "ProtectSystem=full",
        "NoNewPrivileges=true",
    ]


def _service(description: str, after: str, service: List[str], user: str) -> str:
    lines = [
        "[Unit]",
        f"Description={description}",
        f"After={after}",
        f"Wants={after.split()[0]}",
        "",
        "[Service]",
    ]
    lines += service
    lines += ["Restart=on-failure"]
    lines += _hardening(user)
    lines += ["", "[Install]", "WantedBy=multi-user.target", ""]
    return "\n".join(lines)


def bitcoind_unit(user: str = SYSTEM_USER) -> str:
    return _service(
        "Bitcoin Core",
        "network-online.target tor.service",
        [
            "Type=simple",
            f"ExecStart=/usr/local/bin/bitcoind -conf={BITCOIN_CONF} -datadir={BITCOIN_DATA}",
            "RestartSec=30",
            "TimeoutStopSec=600",
        ],
        user,
    )


def lnd_unit(user: str = SYSTEM_USER) -> str:
    return _service(
        "LND Lightning Network Daemon",
        "bitcoind.service tor.service",
        [
            "Type=simple",
            f"ExecStart={LND_EXEC}",
            "RestartSec=30",
            "TimeoutStopSec=300",
        ],
        user,
    )


def lnd_auto_unlock_dropin() -> str:
    """Override ``ExecStart`` so LND unlocks its wallet from the password file."""

    return "\n".join([
        "[Service]",
        "ExecStart=",
        f"ExecStart={LND_EXEC} --wallet-unlock-password-file={LND_WALLET_PASSWORD}",
        "",
    ])


def litd_unit(user: str = SYSTEM_USER) -> str:
    return _service(
        "Lightning Terminal",
        "lnd.service",
        [
            "Type=simple",
            f"ExecStart=/usr/local/bin/litd --configfile={LIT_CONF}",
            "RestartSec=30",
            "TimeoutStopSec=120",
        ],
        user,
    )


def syncthing_unit(user: str = SYSTEM_USER) -> str:
    return _service(
        "Syncthing file synchronization",
        "network-online.target",
        [
            "Type=simple",
            "ExecStart=/usr/bin/syncthing serve --no-browser --no-restart "
            f"--home={SYNCTHING_HOME} --data={SYNCTHING_DATA}",
            "RestartSec=10",
            "SuccessExitStatus=3 4",
            "RestartForceExitStatus=3 4",
        ],
        user,
    )


def channel_backup_source(cfg: AppConfig) -> str:
    return f"{lnd_chain_dir(cfg.chain_name())}/channel.backup"


def channel_backup_target() -> str:
    return f"{SYNCTHING_BACKUP_DIR}/channel.backup"


def backup_watch_unit(cfg: AppConfig) -> str:
    return "\n".join([
        "[Unit]",
        "Description=Watch LND channel.backup for changes",
        "",
        "[Path]",
        f"PathChanged={channel_backup_source(cfg)}",
        f"Unit={BACKUP_COPY_UNIT}",
        "",
        "[Install]",
        "WantedBy=multi-user.target",
        "",
    ])


def backup_copy_unit(cfg: AppConfig, user: str = SYSTEM_USER) -> str:
    lines = [
        "[Unit]",
        "Description=Copy LND channel.backup into the Syncthing folder",
        "",
        "[Service]",
        "Type=oneshot",
        f"ExecStart=/bin/cp {channel_backup_source(cfg)} {channel_backup_target()}",
        "Restart=on-failure",
    ]
    lines += _hardening(user)
    lines += [""]
    return "\n".join(lines)
