"""Host-level primitives the plans compose into steps."""

from __future__ import annotations

import os
import pwd
import re
from typing import Iterable, Optional, Tuple

from . import emitters, executil
from .errors import CommandTimeout, ExecFailed, FilesystemError, PreflightError
from .model import AppConfig, SYSTEM_USER
from .paths import (
    APT_AUTO_UPGRADES,
    APT_UNATTENDED,
    BITCOIN_DATA,
    FAIL2BAN_JAIL,
    LIT_DATA,
    LND_DATA,
    OS_RELEASE,
    SYNCTHING_BACKUP_DIR,
    SYNCTHING_DATA,
    SYNCTHING_HOME,
    SYSCTL_IPV6,
    TORRC,
    UFW_DEFAULTS,
    hidden_service_dir,
    host_path,
    unit_path,
)

MIN_DEBIAN_VERSION = 13
IP_LOOKUP_TIMEOUT = 5.0
IP_LOOKUP_URL = "ifconfig.me"

DirSpec = Tuple[str, str, int]


def write_file(path: str, content: str, mode: int = 0o644, owner: Optional[str] = None) -> str:
    """Atomically replace the host file at ``path`` and apply mode and owner.

    Unchanged content is left alone apart from mode and owner.
    """

    target = host_path(path)
    try:
        os.makedirs(os.path.dirname(target), exist_ok=True)
        current = None
        if os.path.isfile(target):
            with open(target, "r", encoding="utf-8") as fh:
                current = fh.read()
        if current != content:
            tmp_path = target + ".tmp"
            with open(tmp_path, "w", encoding="utf-8") as fh:
                fh.write(content)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, target)
        os.chmod(target, mode)
    except OSError as exc:
        raise FilesystemError(f"write {path}: {exc}") from exc
    if owner:
        executil.run(["chown", owner, target])
    executil.trace("host.write", path=path, mode=oct(mode), owner=owner, changed=current != content)
    return target


def read_file(path: str, default: str = "") -> str:
    try:
        with open(host_path(path), "r", encoding="utf-8") as fh:
            return fh.read()
    except OSError:
        return default


def require_root() -> None:
    if os.geteuid() != 0:
        raise PreflightError("must run as root (try: sudo rlvpn)")


def _parse_os_release(text: str) -> dict:
    fields = {}
    for line in text.splitlines():
        if "=" not in line or line.lstrip().startswith("#"):
            continue
        key, _, value = line.partition("=")
        fields[key.strip()] = value.strip().strip('"')
    return fields


def check_os(min_version: Optional[int] = MIN_DEBIAN_VERSION) -> str:
    """Require Debian; with ``min_version`` also require ``VERSION_ID >= min_version``."""

    try:
        with open(host_path(OS_RELEASE), "r", encoding="utf-8") as fh:
            text = fh.read()
    except OSError as exc:
        raise PreflightError(f"cannot read {OS_RELEASE}") from exc
    fields = _parse_os_release(text)
    if fields.get("ID") != "debian":
        raise PreflightError(f"requires Debian, found ID={fields.get('ID', '')!r}")
    version = fields.get("VERSION_ID", "")
    if min_version is not None:
        m = re.match(r"(\d+)", version)
        if not m:
            raise PreflightError(f"cannot parse Debian VERSION_ID {version!r}")
        if int(m.group(1)) < min_version:
            raise PreflightError(f"requires Debian {min_version}+, found {version}")
    executil.info("host.os_ok", version=version)
    return version


def user_exists(name: str) -> bool:
    try:
        pwd.getpwnam(name)
    except KeyError:
        return False
    return True


def create_system_user(name: str = SYSTEM_USER) -> None:
    if user_exists(name):
        executil.info("host.user_exists", user=name)
        return
    executil.run([
        "adduser", "--system", "--group",
        "--home", BITCOIN_DATA,
        "--shell", "/usr/sbin/nologin",
        name,
    ])


def ensure_dirs(specs: Iterable[DirSpec]) -> None:
    for path, owner, mode in specs:
        target = host_path(path)
        try:
            os.makedirs(target, mode=mode, exist_ok=True)
            os.chmod(target, mode)
        except OSError as exc:
            raise FilesystemError(f"mkdir {path}: {exc}") from exc
        executil.run(["chown", owner, target])


def bitcoin_dirs(user: str = SYSTEM_USER) -> list:
    return [
        ("/etc/bitcoin", f"root:{user}", 0o750),
        (BITCOIN_DATA, f"{user}:{user}", 0o750),
    ]


def lnd_dirs(user: str = SYSTEM_USER) -> list:
    return [
        ("/etc/lnd", f"root:{user}", 0o750),
        (LND_DATA, f"{user}:{user}", 0o750),
    ]


def lit_dirs(user: str = SYSTEM_USER) -> list:
    return [
        ("/etc/lit", f"root:{user}", 0o750),
        (LIT_DATA, f"{user}:{user}", 0o750),
    ]


def syncthing_dirs(user: str = SYSTEM_USER) -> list:
    return [
        (SYNCTHING_DATA, f"{user}:{user}", 0o750),
        (SYNCTHING_BACKUP_DIR, f"{user}:{user}", 0o750),
        (SYNCTHING_HOME, f"{user}:{user}", 0o750),
    ]


def apt_install(*packages: str) -> None:
    executil.run(["apt-get", "install", "-y", "-qq", *packages])


def apt_update() -> None:
    executil.run(["apt-get", "update", "-qq"])


def systemctl(*args: str) -> None:
    executil.run(["systemctl", *args])


def daemon_reload() -> None:
    systemctl("daemon-reload")


def enable_and_start(unit: str) -> None:
    daemon_reload()
    systemctl("enable", unit)
    systemctl("start", unit)


def restart(unit: str) -> None:
    systemctl("restart", unit)


def write_unit(name: str, content: str) -> None:
    write_file(unit_path(name), content, 0o644)


def disable_ipv6() -> None:
    write_file(SYSCTL_IPV6, emitters.build_sysctl_ipv6(), 0o644)
    executil.silent(["sysctl", "--system"])


def configure_firewall(cfg: AppConfig) -> None:
    apt_install("ufw")
    current = read_file(UFW_DEFAULTS, default="")
    if current:
        write_file(UFW_DEFAULTS, emitters.patch_ufw_defaults(current), 0o644)
    for rule in emitters.ufw_rules(cfg):
        executil.run(rule)


def install_tor() -> None:
    apt_install("tor")


def write_torrc(cfg: AppConfig) -> None:
    write_file(TORRC, emitters.build_tor_config(cfg), 0o644)


def add_user_to_tor_group(user: str = SYSTEM_USER) -> None:
    executil.run(["usermod", "-aG", "debian-tor", user])


def restart_tor() -> None:
    systemctl("enable", "tor")
    restart("tor")


def install_unattended_upgrades() -> None:
    apt_install("unattended-upgrades", "apt-listchanges")
    write_file(APT_AUTO_UPGRADES, emitters.build_auto_upgrades(), 0o644)
    write_file(APT_UNATTENDED, emitters.build_unattended_upgrades(), 0o644)


def install_fail2ban(cfg: AppConfig) -> None:
    apt_install("fail2ban")
    write_file(FAIL2BAN_JAIL, emitters.build_fail2ban_jail(cfg), 0o644)
    systemctl("enable", "fail2ban")
    restart("fail2ban")


def detect_public_ipv4(timeout: float = IP_LOOKUP_TIMEOUT) -> str:
    """Return the host's public IPv4 address or ``""`` when it cannot be found."""

    cmd = ["curl", "-4", "-s", "--max-time", str(int(timeout)), IP_LOOKUP_URL]
    try:
        ip = executil.output_within(timeout + 1, cmd)
    except (CommandTimeout, ExecFailed) as exc:
        executil.warn("host.ipv4_lookup_failed", error=str(exc))
        return ""
    parts = ip.split(".")
    if len(parts) != 4 or not all(p.isdigit() and 0 <= int(p) <= 255 for p in parts):
        return ""
    return ip


def onion_hostname(service: str) -> str:
    return read_file(f"{hidden_service_dir(service)}/hostname").strip()


def operator_bashrc() -> str:
    user = os.environ.get("SUDO_USER")
    if user and user != "root":
        try:
            home = pwd.getpwnam(user).pw_dir
        except KeyError:
            home = f"/home/{user}"
    else:
        home = "/root"
    return os.path.join(home, ".bashrc")


def setup_shell_environment(cfg: AppConfig, user: str = SYSTEM_USER, bashrc: Optional[str] = None) -> bool:
    """Write the wrapper block for ``cfg`` into the operator's bashrc; failures only warn.

    An existing block is rewritten in place, so adding LND later brings in
    the ``lncli`` wrapper.
    """

    path = host_path(bashrc or operator_bashrc())
    try:
        existing = ""
        if os.path.isfile(path):
            with open(path, "r", encoding="utf-8") as fh:
                existing = fh.read()
        updated = emitters.merge_shell_env(existing, emitters.build_shell_env(cfg, user))
        if updated == existing:
            return True
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(updated)
    except OSError as exc:
        executil.warn("host.shell_env_failed", path=path, error=str(exc))
        return False
    executil.info("host.shell_env", path=path, lnd=cfg.has_lnd)
    return True


def copy_file(src: str, dest: str, owner: Optional[str] = None) -> bool:
    """Copy ``src`` to ``dest`` when ``src`` exists; returns whether a copy happened."""

    source = host_path(src)
    if not os.path.isfile(source):
        return False
    executil.run(["cp", source, host_path(dest)])
    if owner:
        executil.run(["chown", owner, host_path(dest)])
    return True
