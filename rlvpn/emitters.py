"""Pure builders: node state in, configuration file content out.

Nothing in this module touches the filesystem, the clock or the network.
Plans read whatever host facts a builder needs (public IPv4, the REST onion
hostname, a freshly generated Syncthing XML) and pass them in explicitly.
"""

from __future__ import annotations

import re
from typing import List

from .model import P2P_HYBRID, AppConfig
from .paths import BITCOIN_DATA, BITCOIN_CONF, LND_DATA, LND_TLS_CERT, lnd_chain_dir

SOCKS_PORT = 9050
CONTROL_PORT = 9051
LND_P2P_PORT = 9735
LND_GRPC_PORT = 10009
LND_REST_PORT = 8080
LIT_PORT = 8443
SYNCTHING_GUI_PORT = 8384
SYNCTHING_SYNC_PORT = 22000


def _join(lines: List[str]) -> str:
    return "\n".join(lines).rstrip() + "\n"


# --- bitcoin.conf -----------------------------------------------------------

def build_bitcoin_config(cfg: AppConfig) -> str:
    net = cfg.network_config()
    global_lines = ["# rlvpn: Bitcoin Core", "server=1"]
    if net.bitcoin_flag:
        global_lines.append(net.bitcoin_flag)
    global_lines += [
        f"prune={cfg.prune_size * 1000}",
        "dbcache=512",
        "maxmempool=300",
        "disablewallet=1",
        f"proxy=127.0.0.1:{SOCKS_PORT}",
        "listen=1",
        "listenonion=1",
    ]
    network_lines = [
        "bind=127.0.0.1",
        "rpcbind=127.0.0.1",
        f"rpcport={net.rpc_port}",
        "rpcallowip=127.0.0.1",
        f"zmqpubrawblock=tcp://127.0.0.1:{net.zmq_block_port}",
        f"zmqpubrawtx=tcp://127.0.0.1:{net.zmq_tx_port}",
    ]
    lines = list(global_lines)
    lines.append("")
    if net.bitcoin_flag:
        # Network-scoped options are ignored outside their section on test chains.
        lines.append(f"[{net.name}]")
    lines += network_lines
    return _join(lines)


# --- lnd.conf ---------------------------------------------------------------

def build_lnd_config(cfg: AppConfig, public_ipv4: str = "", rest_onion: str = "") -> str:
    net = cfg.network_config()
    hybrid = cfg.p2p_mode == P2P_HYBRID and bool(public_ipv4)

    app = ["[Application Options]", f"lnddir={LND_DATA}"]
    if hybrid:
        app.append(f"listen=0.0.0.0:{LND_P2P_PORT}")
        app.append(f"externalhosts={public_ipv4}:{LND_P2P_PORT}")
    else:
        app.append(f"listen=localhost:{LND_P2P_PORT}")
    app += [
        f"rpclisten=localhost:{LND_GRPC_PORT}",
        f"restlisten=localhost:{LND_REST_PORT}",
        "debuglevel=info",
    ]
    if rest_onion.strip():
        app.append(f"tlsextradomain={rest_onion.strip()}")

    lines = ["# rlvpn: LND"] + app
    lines += [
        "",
        "[Bitcoin]",
        "bitcoin.active=true",
        net.lnd_bitcoin_flag,
        "bitcoin.node=bitcoind",
        "",
        "[Bitcoind]",
        f"bitcoind.dir={BITCOIN_DATA}",
        f"bitcoind.config={BITCOIN_CONF}",
        f"bitcoind.rpccookie={BITCOIN_DATA}/{net.cookie_path}",
        f"bitcoind.rpchost=127.0.0.1:{net.rpc_port}",
        f"bitcoind.zmqpubrawblock=tcp://127.0.0.1:{net.zmq_block_port}",
        f"bitcoind.zmqpubrawtx=tcp://127.0.0.1:{net.zmq_tx_port}",
        "",
        "[Tor]",
        "tor.active=true",
        f"tor.socks=127.0.0.1:{SOCKS_PORT}",
        f"tor.control=127.0.0.1:{CONTROL_PORT}",
        "tor.targetipaddress=127.0.0.1",
        "tor.v3=true",
        "tor.streamisolation=true",
    ]
    return _join(lines)


RPC_MIDDLEWARE_LINE = "rpcmiddleware.enable=true"


def enable_rpc_middleware(content: str) -> str:
    """Return ``content`` with LIT's RPC middleware switch present exactly once."""

    if RPC_MIDDLEWARE_LINE in content:
        return content
    addition = "# Required for Lightning Terminal remote mode\n" + RPC_MIDDLEWARE_LINE + "\n"
    header = "[Application Options]"
    idx = content.find(header)
    if idx != -1:
        line_end = content.find("\n", idx)
        if line_end != -1:
            insert_at = line_end + 1
            return content[:insert_at] + addition + content[insert_at:]
        return content + "\n" + addition
    if content and not content.endswith("\n"):
        content += "\n"
    return content + "\n" + addition


# --- lit.conf ---------------------------------------------------------------

def build_lit_config(cfg: AppConfig, ui_password: str) -> str:
    network = cfg.chain_name()
    macaroon = f"{lnd_chain_dir(network)}/admin.macaroon"
    lines = [
        "# rlvpn: Lightning Terminal (remote mode against the local LND)",
        f"uipassword={ui_password}",
        "",
        "lnd-mode=remote",
        f"network={network}",
        "",
        f"remote.lnd.rpcserver=localhost:{LND_GRPC_PORT}",
        f"remote.lnd.macaroonpath={macaroon}",
        f"remote.lnd.tlscertpath={LND_TLS_CERT}",
        "",
        "faraday-mode=disable",
        "loop-mode=disable",
        "pool-mode=disable",
        "taproot-assets-mode=disable",
        "",
        f"httpslisten=127.0.0.1:{LIT_PORT}",
    ]
    return _join(lines)


# --- torrc ------------------------------------------------------------------

def _hidden_service(comment: str, name: str, port: int, target: int) -> List[str]:
    return [
        "",
        f"# {comment}",
        f"HiddenServiceDir /var/lib/tor/{name}/",
        f"HiddenServicePort {port} 127.0.0.1:{target}",
    ]


def build_tor_config(cfg: AppConfig) -> str:
    """Rebuild the whole torrc from state; no part of the old file survives."""

    net = cfg.network_config()
    lines = ["# rlvpn: Tor", f"SOCKSPort {SOCKS_PORT}"]
    if cfg.has_lnd:
        lines += [
            "",
            "# Control port for LND onion management",
            f"ControlPort {CONTROL_PORT}",
            "CookieAuthentication 1",
            "CookieAuthFileGroupReadable 1",
        ]
    lines += _hidden_service("Bitcoin Core RPC", "bitcoin-rpc", net.rpc_port, net.rpc_port)
    lines += _hidden_service("Bitcoin Core P2P", "bitcoin-p2p", net.p2p_port, net.p2p_port)
    if cfg.has_lnd:
        lines += _hidden_service("LND gRPC", "lnd-grpc", LND_GRPC_PORT, LND_GRPC_PORT)
        lines += _hidden_service("LND REST", "lnd-rest", LND_REST_PORT, LND_REST_PORT)
    if cfg.lit_installed:
        lines += _hidden_service("Lightning Terminal web UI", "lnd-lit", LIT_PORT, LIT_PORT)
    if cfg.syncthing_installed:
        lines += _hidden_service("Syncthing web UI", "syncthing", SYNCTHING_GUI_PORT, SYNCTHING_GUI_PORT)
        lines += _hidden_service("Syncthing sync protocol", "syncthing-sync", SYNCTHING_SYNC_PORT, SYNCTHING_SYNC_PORT)
    return _join(lines)


# --- Syncthing config.xml ---------------------------------------------------

SYNCTHING_GUI_ADDRESS = f"127.0.0.1:{SYNCTHING_GUI_PORT}"
SYNCTHING_GUI_USER = "admin"

_GUI_RE = re.compile(r"(<gui\b[^>]*>)(.*?)(</gui>)", re.S)


def _set_element(body: str, tag: str, value: str) -> str:
    full = re.compile(rf"<{tag}>.*?</{tag}>", re.S)
    empty = re.compile(rf"<{tag}\s*/>")
    replacement = f"<{tag}>{value}</{tag}>"
    if full.search(body):
        return full.sub(lambda _m: replacement, body, count=1)
    if empty.search(body):
        return empty.sub(lambda _m: replacement, body, count=1)
    indent = "        "
    m = re.search(r"\n([ \t]*)<", body)
    if m:
        indent = m.group(1)
    return body.rstrip() + f"\n{indent}{replacement}\n    "


def mutate_syncthing_config(xml: str, password_hash: str) -> str:
    """Bind the GUI to localhost, add credentials and allow onion Host headers."""

    m = _GUI_RE.search(xml)
    if not m:
        raise ValueError("syncthing config has no <gui> element")
    body = m.group(2)
    body = body.replace(f"<address>0.0.0.0:{SYNCTHING_GUI_PORT}</address>",
                        f"<address>{SYNCTHING_GUI_ADDRESS}</address>")
    body = _set_element(body, "address", SYNCTHING_GUI_ADDRESS)
    body = _set_element(body, "user", SYNCTHING_GUI_USER)
    body = _set_element(body, "password", password_hash)
    body = _set_element(body, "insecureSkipHostcheck", "true")
    return xml[: m.start(2)] + body + xml[m.end(2):]


def verify_syncthing_config(xml: str) -> List[str]:
    """Return the names of the expected settings missing from ``xml``."""

    missing = []
    if f"<address>{SYNCTHING_GUI_ADDRESS}</address>" not in xml:
        missing.append("gui_address")
    if f"<user>{SYNCTHING_GUI_USER}</user>" not in xml:
        missing.append("gui_user")
    if not re.search(r"<password>\$2[ab]\$", xml):
        missing.append("gui_password_bcrypt")
    if "<insecureSkipHostcheck>true</insecureSkipHostcheck>" not in xml:
        missing.append("insecure_skip_hostcheck")
    return missing


SYNCTHING_RELEASE_KEY_URL = "https://syncthing.net/release-key.gpg"


def build_syncthing_apt_source(keyring: str) -> str:
    return f"deb [signed-by={keyring}] https://apt.syncthing.net/ syncthing stable-v2\n"


# --- host hardening ---------------------------------------------------------

def build_sysctl_ipv6() -> str:
    return _join([
        "# rlvpn: disable IPv6 so no traffic bypasses Tor",
        "net.ipv6.conf.all.disable_ipv6 = 1",
        "net.ipv6.conf.default.disable_ipv6 = 1",
        "net.ipv6.conf.lo.disable_ipv6 = 1",
    ])


def patch_ufw_defaults(content: str) -> str:
    return content.replace("IPV6=yes", "IPV6=no")


def ufw_rules(cfg: AppConfig) -> List[List[str]]:
    rules = [
        ["ufw", "default", "deny", "incoming"],
        ["ufw", "default", "allow", "outgoing"],
        ["ufw", "allow", f"{cfg.ssh_port}/tcp"],
    ]
    if cfg.has_lnd and cfg.p2p_mode == P2P_HYBRID:
        rules.append(["ufw", "allow", f"{LND_P2P_PORT}/tcp"])
    rules.append(["ufw", "--force", "enable"])
    return rules


def build_auto_upgrades() -> str:
    return _join([
        'APT::Periodic::Update-Package-Lists "1";',
        'APT::Periodic::Unattended-Upgrade "1";',
        'APT::Periodic::AutocleanInterval "7";',
    ])


def build_unattended_upgrades() -> str:
    return _join([
        "// rlvpn: security updates only, reboot at 04:00 UTC when required",
        "Unattended-Upgrade::Allowed-Origins {",
        '    "${distro_id}:${distro_codename}-security";',
        "};",
        "",
        'Unattended-Upgrade::Automatic-Reboot "true";',
        'Unattended-Upgrade::Automatic-Reboot-Time "04:00";',
        'Unattended-Upgrade::Remove-Unused-Kernel-Packages "true";',
        'Unattended-Upgrade::Remove-Unused-Dependencies "true";',
    ])


def build_fail2ban_jail(cfg: AppConfig) -> str:
    port = "ssh" if cfg.ssh_port == 22 else str(cfg.ssh_port)
    return _join([
        "# rlvpn: ban after 5 failed SSH attempts for 10 minutes",
        "[sshd]",
        "enabled = true",
        "mode = aggressive",
        f"port = {port}",
        "maxretry = 5",
        "findtime = 600",
        "bantime = 600",
    ])


# --- operator shell ---------------------------------------------------------

SHELL_BEGIN = "# rlvpn: node command wrappers"
SHELL_END = "# rlvpn: end node command wrappers"


def build_shell_env(cfg: AppConfig, user: str) -> str:
    net = cfg.network_config()
    lines = [
        SHELL_BEGIN,
        "bitcoin-cli() {",
        f"    sudo -u {user} /usr/local/bin/bitcoin-cli \\",
        f"        -datadir={BITCOIN_DATA} \\",
        f"        -conf={BITCOIN_CONF} \\",
        '        "$@"',
        "}",
        "export -f bitcoin-cli",
    ]
    if cfg.has_lnd:
        lines += ["", f"export LNCLI_LNDDIR={LND_DATA}"]
        if not cfg.is_mainnet:
            lines.append(f"export LNCLI_NETWORK={net.lncli_network}")
        lines += [
            f"export LNCLI_MACAROONPATH={lnd_chain_dir(cfg.chain_name())}/admin.macaroon",
            f"export LNCLI_TLSCERTPATH={LND_TLS_CERT}",
            "lncli() {",
            f'    sudo -u {user} /usr/local/bin/lncli "$@"',
            "}",
            "export -f lncli",
        ]
    lines.append(SHELL_END)
    return _join(lines)


def merge_shell_env(existing: str, block: str) -> str:
    """Swap the marked wrapper block in ``existing`` for ``block``, or append it.

    A begin marker without its end marker (an older block) is replaced up to
    the end of the file.
    """

    start = existing.find(SHELL_BEGIN)
    if start == -1:
        if existing and not existing.endswith("\n"):
            existing += "\n"
        return existing + ("\n" if existing else "") + block
    end = existing.find(SHELL_END, start)
    tail = ""
    if end != -1:
        tail = existing[end + len(SHELL_END):]
        if tail.startswith("\n"):
            tail = tail[1:]
    return existing[:start] + block + tail
