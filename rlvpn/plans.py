"""Orchestration plans: target state in, ordered steps out, state saved on success.

Every plan has a pure ``*_steps`` builder returning the step list for a
config, and a runner that takes the run lock, executes the steps through
:func:`rlvpn.engine.run_steps` and persists the config only when every step
succeeded.  Flags set ahead of the run (``lnd_installed``, ``lit_installed``
and so on) are restored on failure or cancellation.
"""

from __future__ import annotations

import contextlib
import secrets
import threading
from dataclasses import fields
from typing import Iterator, List, Optional

import bcrypt

from . import artifacts, emitters, executil, host, state, units
from .engine import Reporter, Step, run_steps
from .errors import IntegrityError, PreflightError
from .model import (
    APP_VERSION,
    BITCOIN_VERSION,
    LIT_VERSION,
    LND_VERSION,
    MIN_PRUNE_GB,
    P2P_HYBRID,
    P2P_TOR,
    SYSTEM_USER,
    AppConfig,
    InstallOptions,
)
from .paths import (
    APT_KEYRINGS,
    BITCOIN_CONF,
    LIT_CONF,
    LND_CONF,
    LND_WALLET_PASSWORD,
    SYNCTHING_APT_LIST,
    SYNCTHING_CONFIG,
    SYNCTHING_HOME,
    SYNCTHING_KEYRING,
    host_path,
    unit_path,
)
from .state import ConfigStore
from .verification import ensure_gpg, import_keys, release_key_pinned

USER = SYSTEM_USER
CONF_MODE = 0o640
CONF_OWNER = f"root:{USER}"
SELF_UPDATE_DISABLED = "self-update disabled: no release key pinned"


def generate_password() -> str:
    """12 random bytes, hex encoded."""

    return secrets.token_hex(12)


def hash_gui_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("ascii")


@contextlib.contextmanager
def _revert_on_failure(cfg: AppConfig) -> Iterator[AppConfig]:
    snapshot = cfg.copy()
    try:
        yield cfg
    except BaseException:
        for f in fields(AppConfig):
            setattr(cfg, f.name, getattr(snapshot, f.name))
        raise


def _run(
    plan: str,
    steps: List[Step],
    reporter: Optional[Reporter],
    cancel: Optional[threading.Event],
) -> List[Step]:
    """Run a plan's steps; callers hold :func:`state.run_lock` through the save."""

    executil.info("plan.start", plan=plan, steps=[s.name for s in steps])
    return run_steps(steps, reporter=reporter, cancel=cancel, plan=plan)


def _store(store: Optional[ConfigStore]) -> ConfigStore:
    return store or state.default_store()


# --- shared step builders ---------------------------------------------------

def _artifact_steps(release: artifacts.Release, import_signers: bool = True) -> List[Step]:
    def _scratch() -> str:
        return artifacts.scratch_dir(release)

    steps = []
    if import_signers:
        steps.append(Step(f"Importing {release.label} signing keys",
                          lambda: import_keys(release.policy, _scratch())))
    steps += [
        Step(f"Downloading {release.label} {release.version}",
             lambda: artifacts.download_release(release, _scratch())),
        Step(f"Verifying {release.label} signatures",
             lambda: artifacts.verify_release_signature(release, _scratch())),
        Step(f"Verifying {release.label} checksum",
             lambda: artifacts.verify_release_checksum(release, _scratch())),
        Step(f"Installing {release.label}",
             lambda: artifacts.extract_and_install(release, _scratch())),
        Step(f"Cleaning up {release.label} downloads",
             lambda: artifacts.cleanup(_scratch())),
    ]
    return steps


def _write_bitcoin_conf(cfg: AppConfig) -> None:
    host.write_file(BITCOIN_CONF, emitters.build_bitcoin_config(cfg), CONF_MODE, CONF_OWNER)


def _write_lnd_conf(cfg: AppConfig, public_ipv4: str) -> None:
    rest_onion = host.onion_hostname("lnd-rest")
    content = emitters.build_lnd_config(cfg, public_ipv4=public_ipv4, rest_onion=rest_onion)
    host.write_file(LND_CONF, content, CONF_MODE, CONF_OWNER)


def _tor_steps(cfg: AppConfig) -> List[Step]:
    return [
        Step("Rebuilding Tor configuration", lambda: host.write_torrc(cfg)),
        Step("Restarting Tor", host.restart_tor),
    ]


def _lnd_steps(cfg: AppConfig, public_ipv4: str) -> List[Step]:
    steps = [Step("Creating LND directories", lambda: host.ensure_dirs(host.lnd_dirs(USER)))]
    steps += _artifact_steps(artifacts.lnd_release(LND_VERSION))
    steps += [
        Step("Configuring LND", lambda: _write_lnd_conf(cfg, public_ipv4)),
        Step("Creating LND service", lambda: host.write_unit("lnd.service", units.lnd_unit(USER))),
    ]
    return steps


def _resolve_p2p(cfg: AppConfig, requested: str, public_ipv4: str = "") -> str:
    """Hybrid needs LND and a public IPv4; otherwise coerce to ``tor``."""

    if requested != P2P_HYBRID or not cfg.has_lnd:
        return ""
    ip = public_ipv4 or host.detect_public_ipv4()
    if not ip:
        executil.warn("plan.p2p_coerced", requested=requested, mode=P2P_TOR)
    return ip


# --- InitialInstall ---------------------------------------------------------

def initial_install_steps(cfg: AppConfig, public_ipv4: str = "") -> List[Step]:
    bitcoin = artifacts.bitcoin_core_release(BITCOIN_VERSION)
    steps = [
        Step("Checking operating system", host.check_os),
        Step("Creating system user", lambda: host.create_system_user(USER)),
        Step("Creating directories", lambda: host.ensure_dirs(host.bitcoin_dirs(USER))),
        Step("Disabling IPv6", host.disable_ipv6),
        Step("Configuring firewall", lambda: host.configure_firewall(cfg)),
        Step("Installing GnuPG", ensure_gpg),
        Step("Importing Bitcoin Core signing keys",
             lambda: import_keys(bitcoin.policy, artifacts.scratch_dir(bitcoin))),
        Step("Installing Tor", host.install_tor),
        Step("Configuring Tor", lambda: host.write_torrc(cfg)),
        Step("Adding user to debian-tor group", lambda: host.add_user_to_tor_group(USER)),
        Step("Starting Tor", host.restart_tor),
    ]
    steps += _artifact_steps(bitcoin, import_signers=False)
    steps += [
        Step("Configuring Bitcoin Core", lambda: _write_bitcoin_conf(cfg)),
        Step("Creating bitcoind service", lambda: host.write_unit("bitcoind.service", units.bitcoind_unit(USER))),
        Step("Starting Bitcoin Core", lambda: host.enable_and_start("bitcoind")),
        Step("Configuring automatic security updates", host.install_unattended_upgrades),
        Step("Configuring fail2ban", lambda: host.install_fail2ban(cfg)),
    ]
    if cfg.has_lnd:
        steps += _lnd_steps(cfg, public_ipv4)
        steps.append(Step("Starting LND", lambda: host.enable_and_start("lnd")))
    return steps


def initial_install(
    options: InstallOptions,
    store: Optional[ConfigStore] = None,
    reporter: Optional[Reporter] = None,
    cancel: Optional[threading.Event] = None,
) -> Optional[AppConfig]:
    """Provision a bare host; returns ``None`` when bitcoind is already installed."""

    if options.prune_size < MIN_PRUNE_GB:
        raise PreflightError(f"prune size must be at least {MIN_PRUNE_GB} GB")
    with state.run_lock():
        if not state.needs_install():
            executil.info("plan.noop", plan="initial_install", reason="bitcoind present")
            return None
        cfg = options.to_config()
        public_ipv4 = _resolve_p2p(cfg, options.p2p_mode, options.public_ipv4)
        cfg.p2p_mode = P2P_HYBRID if public_ipv4 else P2P_TOR
        _run("initial_install", initial_install_steps(cfg, public_ipv4), reporter, cancel)
        cfg.install_complete = True
        cfg.install_version = APP_VERSION
        _store(store).save(cfg)
    host.setup_shell_environment(cfg, USER)
    return cfg


# --- AddLND -----------------------------------------------------------------

def add_lnd_steps(cfg: AppConfig, public_ipv4: str = "") -> List[Step]:
    steps = _lnd_steps(cfg, public_ipv4)
    steps.append(Step("Updating firewall", lambda: host.configure_firewall(cfg)))
    steps += _tor_steps(cfg)
    steps.append(Step("Starting LND", lambda: host.enable_and_start("lnd")))
    return steps


def add_lnd(
    cfg: AppConfig,
    p2p_mode: str = P2P_TOR,
    store: Optional[ConfigStore] = None,
    reporter: Optional[Reporter] = None,
    cancel: Optional[threading.Event] = None,
    public_ipv4: str = "",
) -> AppConfig:
    if cfg.has_lnd:
        raise PreflightError("LND is already installed")
    with state.run_lock(), _revert_on_failure(cfg):
        cfg.set_lnd(True)
        ip = _resolve_p2p(cfg, p2p_mode, public_ipv4)
        cfg.p2p_mode = P2P_HYBRID if ip else P2P_TOR
        _run("add_lnd", add_lnd_steps(cfg, ip), reporter, cancel)
        _store(store).save(cfg)
    host.setup_shell_environment(cfg, USER)
    return cfg


# --- AddLIT -----------------------------------------------------------------

def _enable_rpc_middleware() -> None:
    current = host.read_file(LND_CONF)
    if not current:
        raise IntegrityError(f"{LND_CONF} is missing")
    updated = emitters.enable_rpc_middleware(current)
    if updated != current:
        host.write_file(LND_CONF, updated, CONF_MODE, CONF_OWNER)


def add_lit_steps(cfg: AppConfig, ui_password: str) -> List[Step]:
    steps = _artifact_steps(artifacts.lit_release(LIT_VERSION))
    steps += [
        Step("Enabling LND RPC middleware", _enable_rpc_middleware),
        Step("Restarting LND", lambda: host.restart("lnd")),
        Step("Creating LIT directories", lambda: host.ensure_dirs(host.lit_dirs(USER))),
        Step("Configuring LIT", lambda: host.write_file(
            LIT_CONF, emitters.build_lit_config(cfg, ui_password), CONF_MODE, CONF_OWNER)),
        Step("Creating litd service", lambda: host.write_unit("litd.service", units.litd_unit(USER))),
    ]
    steps += _tor_steps(cfg)
    steps.append(Step("Starting LIT", lambda: host.enable_and_start("litd")))
    return steps


def add_lit(
    cfg: AppConfig,
    store: Optional[ConfigStore] = None,
    reporter: Optional[Reporter] = None,
    cancel: Optional[threading.Event] = None,
) -> AppConfig:
    if not cfg.has_lnd:
        raise PreflightError("Lightning Terminal requires LND")
    if cfg.lit_installed:
        raise PreflightError("Lightning Terminal is already installed")
    password = cfg.lit_password or generate_password()
    with state.run_lock(), _revert_on_failure(cfg):
        cfg.lit_installed = True
        _run("add_lit", add_lit_steps(cfg, password), reporter, cancel)
        cfg.lit_password = password
        _store(store).save(cfg)
    return cfg


# --- AddSyncthing -----------------------------------------------------------

def _install_syncthing_repo() -> None:
    host.ensure_dirs([(APT_KEYRINGS, "root:root", 0o755)])
    executil.download(emitters.SYNCTHING_RELEASE_KEY_URL, host_path(SYNCTHING_KEYRING))
    host.write_file(SYNCTHING_APT_LIST, emitters.build_syncthing_apt_source(SYNCTHING_KEYRING), 0o644)


def _install_syncthing_package() -> None:
    host.apt_update()
    host.apt_install("syncthing")


def configure_syncthing_auth(password: str) -> None:
    """Generate Syncthing's config, then lock the GUI down and add credentials."""

    executil.sudo_run_as(USER, ["syncthing", "generate", f"--home={SYNCTHING_HOME}"])
    xml = host.read_file(SYNCTHING_CONFIG)
    if not xml:
        raise IntegrityError(f"{SYNCTHING_CONFIG} was not generated")
    try:
        mutated = emitters.mutate_syncthing_config(xml, hash_gui_password(password))
    except ValueError as exc:
        raise IntegrityError(f"{SYNCTHING_CONFIG}: {exc}") from exc
    host.write_file(SYNCTHING_CONFIG, mutated, CONF_MODE, CONF_OWNER)
    missing = emitters.verify_syncthing_config(host.read_file(SYNCTHING_CONFIG))
    if missing:
        raise IntegrityError(f"{SYNCTHING_CONFIG} missing settings: {', '.join(missing)}")


def setup_backup_watcher(cfg: AppConfig) -> None:
    host.write_unit(units.BACKUP_WATCH_UNIT, units.backup_watch_unit(cfg))
    host.write_unit(units.BACKUP_COPY_UNIT, units.backup_copy_unit(cfg, USER))
    host.enable_and_start(units.BACKUP_WATCH_UNIT)
    if host.copy_file(units.channel_backup_source(cfg), units.channel_backup_target(), f"{USER}:{USER}"):
        executil.info("backup.initial_copy", target=units.channel_backup_target())


def add_syncthing_steps(cfg: AppConfig, password: str) -> List[Step]:
    steps = [
        Step("Adding Syncthing repository", _install_syncthing_repo),
        Step("Installing Syncthing", _install_syncthing_package),
        Step("Creating Syncthing directories", lambda: host.ensure_dirs(host.syncthing_dirs(USER))),
        Step("Creating Syncthing service", lambda: host.write_unit("syncthing.service", units.syncthing_unit(USER))),
        Step("Configuring Syncthing authentication", lambda: configure_syncthing_auth(password)),
    ]
    steps += _tor_steps(cfg)
    steps += [
        Step("Starting Syncthing", lambda: host.enable_and_start("syncthing")),
        Step("Setting up channel backup watcher", lambda: setup_backup_watcher(cfg)),
    ]
    return steps


def add_syncthing(
    cfg: AppConfig,
    store: Optional[ConfigStore] = None,
    reporter: Optional[Reporter] = None,
    cancel: Optional[threading.Event] = None,
) -> AppConfig:
    if not cfg.has_lnd:
        raise PreflightError("Syncthing channel backup requires LND")
    if cfg.syncthing_installed:
        raise PreflightError("Syncthing is already installed")
    password = cfg.syncthing_password or generate_password()
    with state.run_lock(), _revert_on_failure(cfg):
        cfg.syncthing_installed = True
        _run("add_syncthing", add_syncthing_steps(cfg, password), reporter, cancel)
        cfg.syncthing_password = password
        _store(store).save(cfg)
    return cfg


# --- ChangePruneSize --------------------------------------------------------

def change_prune_size_steps(cfg: AppConfig) -> List[Step]:
    return [
        Step("Configuring Bitcoin Core", lambda: _write_bitcoin_conf(cfg)),
        Step("Restarting Bitcoin Core", lambda: host.restart("bitcoind")),
    ]


def change_prune_size(
    cfg: AppConfig,
    prune_size: int,
    store: Optional[ConfigStore] = None,
    reporter: Optional[Reporter] = None,
    cancel: Optional[threading.Event] = None,
) -> AppConfig:
    if prune_size < MIN_PRUNE_GB:
        raise PreflightError(f"prune size must be at least {MIN_PRUNE_GB} GB")
    with state.run_lock(), _revert_on_failure(cfg):
        cfg.prune_size = prune_size
        _run("change_prune_size", change_prune_size_steps(cfg), reporter, cancel)
        _store(store).save(cfg)
    return cfg


# --- EnableAutoUnlock -------------------------------------------------------

def enable_auto_unlock_steps(password: str) -> List[Step]:
    return [
        Step("Writing wallet password file", lambda: host.write_file(
            LND_WALLET_PASSWORD, password, 0o400, f"{USER}:{USER}")),
        Step("Installing LND auto-unlock drop-in", lambda: host.write_file(
            unit_path(units.AUTO_UNLOCK_DROPIN), units.lnd_auto_unlock_dropin(), 0o644)),
        Step("Reloading systemd", host.daemon_reload),
        Step("Restarting LND", lambda: host.restart("lnd")),
    ]


def enable_auto_unlock(
    cfg: AppConfig,
    password: str,
    store: Optional[ConfigStore] = None,
    reporter: Optional[Reporter] = None,
    cancel: Optional[threading.Event] = None,
) -> AppConfig:
    if not cfg.has_lnd:
        raise PreflightError("auto-unlock requires LND")
    if not password:
        raise PreflightError("wallet password is empty")
    with state.run_lock(), _revert_on_failure(cfg):
        _run("enable_auto_unlock", enable_auto_unlock_steps(password), reporter, cancel)
        cfg.auto_unlock = True
        cfg.wallet_created = True
        _store(store).save(cfg)
    return cfg


# --- SelfUpdate -------------------------------------------------------------

def self_update_steps(version: str) -> List[Step]:
    return [Step("Installing GnuPG", ensure_gpg)] + _artifact_steps(artifacts.rlvpn_release(version))


def self_update(
    version: Optional[str] = None,
    reporter: Optional[Reporter] = None,
    cancel: Optional[threading.Event] = None,
) -> Optional[str]:
    """Install the given (or newest) release over the current binary.

    Returns the installed version, or ``None`` when already up to date.
    The running process keeps its version; the new one applies next run.
    """

    if not release_key_pinned():
        raise PreflightError(SELF_UPDATE_DISABLED)
    current = state.get_version()
    target = version or state.latest_version()
    if not target:
        raise PreflightError("could not determine the latest release")
    if version is None and not state.update_available(current, target):
        executil.info("plan.noop", plan="self_update", current=current, latest=target)
        return None
    with state.run_lock():
        _run("self_update", self_update_steps(target), reporter, cancel)
    return target
