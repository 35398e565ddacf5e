"""Command line entry point for the rlvpn installer."""

from __future__ import annotations

import argparse
import json
import os
import sys
import time
from typing import Any, Callable, Dict, Optional

from . import executil, host, plans, progress, state, verification
from .errors import Cancelled, LockHeld, PreflightError, RlvpnError, StateCorrupt, StateNotFound, StepFailed
from .model import (
    APP_VERSION,
    COMPONENTS_BITCOIN,
    COMPONENTS_LND,
    MAINNET,
    P2P_HYBRID,
    P2P_TOR,
    TESTNET4,
    AppConfig,
    InstallOptions,
)

RESULT_CODES: Dict[str, int] = {
    "OK": 0,
    "NOOP": 0,
    "FAIL_PRIVILEGE": 2,
    "FAIL_PREFLIGHT": 2,
    "FAIL_LOCKED": 3,
    "FAIL_STEP": 4,
    "FAIL_CANCELLED": 5,
    "FAIL_STATE": 6,
    "FAIL_UNHANDLED": 9,
}

MUTATING = {"install", "add-lnd", "add-lit", "add-syncthing", "prune", "auto-unlock", "self-update"}

HIDDEN_SERVICES = (
    "bitcoin-rpc",
    "bitcoin-p2p",
    "lnd-grpc",
    "lnd-rest",
    "lnd-lit",
    "syncthing",
    "syncthing-sync",
)

# Shown on stdout once; never written to the JSONL log.
SECRET_KEYS = ("lit_password", "syncthing_password")


def _emit_result(
        kind: str,
        extra: Optional[Dict[str, Any]] = None,
        exit_code: Optional[int] = None,
) -> None:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time()), "version": state.get_version()}
    if extra:
        payload.update(extra)
    log_path = executil.resolve_log_path()
    if log_path:
        payload.setdefault("log_path", log_path)
        record = {k: v for k, v in payload.items() if k not in SECRET_KEYS}
        executil.append_jsonl(log_path, dict(record, event="cli.result"))
    print(json.dumps(payload, sort_keys=True, separators=(",", ":")))
    if kind.startswith("FAIL"):
        why = payload.get("error") or payload.get("reason") or ""
        print(f"rlvpn: {kind}: {why}", file=sys.stderr)
    code = RESULT_CODES.get(kind, 1) if exit_code is None else exit_code
    raise SystemExit(code)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rlvpn", add_help=True)
    parser.add_argument("--version", action="version", version=f"rlvpn {APP_VERSION}")
    _add_install_flags(parser)
    sub = parser.add_subparsers(dest="command")

    install = sub.add_parser("install", help="provision Bitcoin Core (and optionally LND)")
    _add_install_flags(install, inherit=True)

    add_lnd = sub.add_parser("add-lnd", help="install LND")
    add_lnd.add_argument("--p2p", choices=[P2P_TOR, P2P_HYBRID], default=P2P_TOR)
    sub.add_parser("add-lit", help="install Lightning Terminal")
    sub.add_parser("add-syncthing", help="install Syncthing channel backup replication")

    prune = sub.add_parser("prune", help="change the Bitcoin Core prune size")
    prune.add_argument("size", type=int, metavar="GB")

    unlock = sub.add_parser("auto-unlock", help="unlock the LND wallet at boot")
    unlock.add_argument("--password-file", required=True)

    update = sub.add_parser("self-update", help="install a newer rlvpn release")
    update.add_argument("--version", dest="target_version", default=None)

    sub.add_parser("status", help="print node state as JSON")
    return parser


def _add_install_flags(parser: argparse.ArgumentParser, inherit: bool = False) -> None:
    # The install subcommand repeats the top-level flags without resetting them.
    def _default(value: Any) -> Any:
        return argparse.SUPPRESS if inherit else value

    parser.add_argument("--network", choices=[MAINNET, TESTNET4], default=_default(MAINNET))
    parser.add_argument("--components", choices=[COMPONENTS_BITCOIN, COMPONENTS_LND],
                        default=_default(COMPONENTS_BITCOIN))
    parser.add_argument("--prune", type=int, default=_default(25), metavar="GB")
    parser.add_argument("--p2p", choices=[P2P_TOR, P2P_HYBRID], default=_default(P2P_TOR))
    parser.add_argument("--ssh-port", type=int, default=_default(22))


def status_summary(cfg: AppConfig) -> Dict[str, Any]:
    summary: Dict[str, Any] = {
        "version": state.get_version(),
        "needs_install": state.needs_install(),
    }
    summary.update(cfg.to_dict())
    summary["wallet_exists"] = cfg.has_lnd and cfg.wallet_exists()
    for secret in SECRET_KEYS:
        if summary.get(secret):
            summary[secret] = "set"
    onions = {}
    for service in HIDDEN_SERVICES:
        name = host.onion_hostname(service)
        if name:
            onions[service] = name
    summary["onions"] = onions
    return summary


def _run_plan(job: Callable[..., Any]) -> Any:
    return progress.run_with_reader(lambda channel, cancel: job(channel.put, cancel))


def _load_installed(store: state.ConfigStore) -> AppConfig:
    if state.needs_install():
        raise StateNotFound("node is not installed yet; run `rlvpn install` first")
    return store.load_or_default()


def _main_impl(argv: Optional[list[str]] = None) -> int:
    state.set_version(APP_VERSION)
    args = build_parser().parse_args(argv)
    command = args.command
    store = state.default_store()

    if command is None:
        command = "install" if state.needs_install() else "status"

    if command == "status":
        cfg = store.load_or_default()
        print(json.dumps(status_summary(cfg), indent=2, sort_keys=True))
        latest = state.latest_version()
        if state.update_available(state.get_version(), latest):
            if verification.release_key_pinned():
                print(f"rlvpn {latest} is available (run: rlvpn self-update)", file=sys.stderr)
            else:
                print(f"rlvpn {latest} is available; {plans.SELF_UPDATE_DISABLED}", file=sys.stderr)
        return 0

    if command in MUTATING and os.geteuid() != 0:
        _emit_result("FAIL_PRIVILEGE", extra={"error": "must run as root", "command": command})

    executil.info("cli.start", command=command, argv=list(argv) if argv is not None else sys.argv[1:])
    try:
        if command == "install":
            options = InstallOptions(
                network=args.network,
                components=args.components,
                prune_size=args.prune,
                p2p_mode=args.p2p,
                ssh_port=args.ssh_port,
            )
            cfg = _run_plan(lambda report, cancel: plans.initial_install(
                options, store=store, reporter=report, cancel=cancel))
            if cfg is None:
                _emit_result("NOOP", extra={"command": command, "reason": "bitcoind already installed"})
            _emit_result("OK", extra={"command": command, "network": cfg.network, "components": cfg.components})

        if command == "self-update":
            installed = _run_plan(lambda report, cancel: plans.self_update(
                args.target_version, reporter=report, cancel=cancel))
            if installed is None:
                _emit_result("NOOP", extra={"command": command, "reason": "already up to date"})
            _emit_result("OK", extra={"command": command, "installed": installed})

        cfg = _load_installed(store)
        if command == "add-lnd":
            _run_plan(lambda report, cancel: plans.add_lnd(
                cfg, p2p_mode=args.p2p, store=store, reporter=report, cancel=cancel))
            extra = {"p2p_mode": cfg.p2p_mode}
        elif command == "add-lit":
            _run_plan(lambda report, cancel: plans.add_lit(cfg, store=store, reporter=report, cancel=cancel))
            extra = {"lit_password": cfg.lit_password}
        elif command == "add-syncthing":
            _run_plan(lambda report, cancel: plans.add_syncthing(cfg, store=store, reporter=report, cancel=cancel))
            extra = {"syncthing_user": "admin", "syncthing_password": cfg.syncthing_password}
        elif command == "prune":
            _run_plan(lambda report, cancel: plans.change_prune_size(
                cfg, args.size, store=store, reporter=report, cancel=cancel))
            extra = {"prune_size": cfg.prune_size}
        elif command == "auto-unlock":
            password = _read_password_file(args.password_file)
            _run_plan(lambda report, cancel: plans.enable_auto_unlock(
                cfg, password, store=store, reporter=report, cancel=cancel))
            extra = {"auto_unlock": cfg.auto_unlock}
        else:
            raise PreflightError(f"unknown command {command}")
        _emit_result("OK", extra=dict(extra, command=command))
    except LockHeld as exc:
        _emit_result("FAIL_LOCKED", extra={"command": command, "error": str(exc)})
    except StepFailed as exc:
        _emit_result("FAIL_STEP", extra={
            "command": command,
            "step": exc.step_name,
            "index": exc.index,
            "kind": exc.kind,
            "error": str(exc),
        })
    except Cancelled as exc:
        _emit_result("FAIL_CANCELLED", extra={"command": command, "error": str(exc)})
    except (StateNotFound, StateCorrupt) as exc:
        _emit_result("FAIL_STATE", extra={"command": command, "error": str(exc)})
    except PreflightError as exc:
        _emit_result("FAIL_PREFLIGHT", extra={"command": command, "error": str(exc)})
    return 0


def _read_password_file(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return fh.read().strip()
    except OSError as exc:
        raise PreflightError(f"cannot read password file {path}: {exc}") from exc


def main(argv: Optional[list[str]] = None) -> int:
    try:
        return _main_impl(argv)
    except SystemExit:
        raise
    except RlvpnError as exc:
        _emit_result("FAIL_UNHANDLED", extra={"error": str(exc), "kind": exc.kind})
    except Exception as exc:  # noqa: BLE001
        _emit_result("FAIL_UNHANDLED", extra={"error": str(exc)})
    return 0


if __name__ == "__main__":
    sys.exit(main())
