import json

import pytest

from rlvpn import cli, plans, state
from rlvpn.errors import ExecFailed, LockHeld, StepFailed
from rlvpn.model import AppConfig


@pytest.fixture
def root(host_root, monkeypatch):
    monkeypatch.setattr(cli.os, "geteuid", lambda: 0)
    monkeypatch.setattr(state, "latest_version", lambda timeout=state.VERSION_CHECK_TIMEOUT: "")
    return host_root


@pytest.fixture
def node(root):
    bindir = root / "usr/local/bin"
    bindir.mkdir(parents=True)
    (bindir / "bitcoind").write_bytes(b"")
    state.save(AppConfig(install_complete=True, install_version="0.1.0"))
    return root


def result(capsys):
    out = capsys.readouterr().out.strip().splitlines()
    return json.loads(out[-1])


def run_cli(argv):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(argv)
    return excinfo.value.code


def test_parser_defaults_and_subcommands():
    parser = cli.build_parser()
    args = parser.parse_args([])
    assert args.command is None
    assert (args.network, args.components, args.prune, args.p2p, args.ssh_port) == (
        "mainnet", "bitcoin", 25, "tor", 22)

    args = parser.parse_args(["--network", "testnet4", "install", "--components", "bitcoin+lnd"])
    assert args.network == "testnet4"
    assert args.components == "bitcoin+lnd"

    assert parser.parse_args(["prune", "50"]).size == 50
    assert parser.parse_args(["self-update", "--version", "0.2.0"]).target_version == "0.2.0"
    assert parser.parse_args(["add-lnd", "--p2p", "hybrid"]).p2p == "hybrid"
    with pytest.raises(SystemExit):
        parser.parse_args(["auto-unlock"])


def test_mutating_commands_need_root(host_root, monkeypatch, capsys):
    monkeypatch.setattr(cli.os, "geteuid", lambda: 1000)
    assert run_cli(["prune", "50"]) == 2
    payload = result(capsys)
    assert payload["result"] == "FAIL_PRIVILEGE"
    assert payload["command"] == "prune"


def test_status_reports_state_and_onions(root, capsys):
    hs = root / "var/lib/tor/bitcoin-rpc"
    hs.mkdir(parents=True)
    (hs / "hostname").write_text("abcdef.onion\n", encoding="utf-8")
    state.save(AppConfig(network="testnet4", lit_password="hunter2"))
    assert cli.main(["status"]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["needs_install"] is True
    assert summary["network"] == "testnet4"
    assert summary["lit_password"] == "set"
    assert summary["onions"] == {"bitcoin-rpc": "abcdef.onion"}


def test_bare_invocation_on_installed_node_shows_status(node, capsys):
    assert cli.main([]) == 0
    assert json.loads(capsys.readouterr().out)["needs_install"] is False


def test_install_on_installed_node_is_noop(node, capsys):
    assert run_cli(["install"]) == 0
    payload = result(capsys)
    assert payload["result"] == "NOOP"


def test_prune_ok(node, commands, capsys):
    assert run_cli(["prune", "60"]) == 0
    payload = result(capsys)
    assert payload["result"] == "OK"
    assert payload["prune_size"] == 60
    assert state.load().prune_size == 60


def test_step_failure_maps_to_fail_step(node, monkeypatch, capsys):
    def failing(cfg, size, **kwargs):
        raise StepFailed("Restarting Bitcoin Core", 1, ExecFailed(["systemctl", "restart", "bitcoind"], 1))

    monkeypatch.setattr(plans, "change_prune_size", failing)
    assert run_cli(["prune", "60"]) == 4
    payload = result(capsys)
    assert payload["result"] == "FAIL_STEP"
    assert payload["step"] == "Restarting Bitcoin Core"
    assert payload["index"] == 1
    assert payload["kind"] == "subprocess"


def test_lock_held_maps_to_fail_locked(node, monkeypatch, capsys):
    def locked(cfg, size, **kwargs):
        raise LockHeld("another rlvpn run holds /etc/rlvpn/.lock")

    monkeypatch.setattr(plans, "change_prune_size", locked)
    assert run_cli(["prune", "60"]) == 3
    assert result(capsys)["result"] == "FAIL_LOCKED"


def test_addon_before_install_is_state_failure(root, capsys):
    assert run_cli(["add-lit"]) == 6
    assert result(capsys)["result"] == "FAIL_STATE"


def test_missing_password_file_is_preflight_failure(node, tmp_path, capsys):
    assert run_cli(["auto-unlock", "--password-file", str(tmp_path / "missing")]) == 2
    assert result(capsys)["result"] == "FAIL_PREFLIGHT"


def test_unexpected_error_is_unhandled(node, monkeypatch, capsys):
    def broken(cfg, size, **kwargs):
        raise RuntimeError("kaboom")

    monkeypatch.setattr(plans, "change_prune_size", broken)
    assert run_cli(["prune", "60"]) == 9
    payload = result(capsys)
    assert payload["result"] == "FAIL_UNHANDLED"
    assert payload["error"] == "kaboom"


def test_generated_password_printed_but_not_logged(node, monkeypatch, capsys):
    def fake_add_lit(cfg, **kwargs):
        cfg.lit_installed = True
        cfg.lit_password = "0123456789abcdef01234567"
        return cfg

    monkeypatch.setattr(plans, "add_lit", fake_add_lit)
    assert run_cli(["add-lit"]) == 0
    payload = result(capsys)
    assert payload["lit_password"] == "0123456789abcdef01234567"

    with open(payload["log_path"], encoding="utf-8") as fh:
        log_text = fh.read()
    assert "0123456789abcdef01234567" not in log_text
    records = [json.loads(line) for line in log_text.splitlines()]
    done = [r for r in records if r.get("event") == "cli.result"]
    assert done[-1]["result"] == "OK"
    assert "lit_password" not in done[-1]


def test_self_update_disabled_without_pinned_key(root, monkeypatch, capsys):
    monkeypatch.setattr(plans, "release_key_pinned", lambda: False)
    assert run_cli(["self-update"]) == 2
    captured = capsys.readouterr()
    payload = json.loads(captured.out.strip().splitlines()[-1])
    assert payload["result"] == "FAIL_PREFLIGHT"
    assert payload["error"] == "self-update disabled: no release key pinned"
    assert "self-update disabled: no release key pinned" in captured.err


def test_status_hint_reports_disabled_self_update(root, monkeypatch, capsys):
    monkeypatch.setattr(state, "latest_version", lambda timeout=state.VERSION_CHECK_TIMEOUT: "9.0.0")
    assert cli.main(["status"]) == 0
    err = capsys.readouterr().err
    assert "rlvpn 9.0.0 is available" in err
    assert "self-update disabled: no release key pinned" in err
