import itertools
import re

import pytest

from rlvpn import emitters
from rlvpn.model import AppConfig


def full_stack(**overrides):
    cfg = AppConfig(
        network="mainnet",
        p2p_mode="hybrid",
        lit_installed=True,
        syncthing_installed=True,
    )
    cfg.set_lnd(True)
    for key, value in overrides.items():
        setattr(cfg, key, value)
    return cfg


def lines(text):
    return text.splitlines()


def test_bitcoin_only_mainnet_torrc():
    tor = emitters.build_tor_config(AppConfig())
    directives = [l for l in lines(tor) if l and not l.startswith("#")]
    assert directives == [
        "SOCKSPort 9050",
        "HiddenServiceDir /var/lib/tor/bitcoin-rpc/",
        "HiddenServicePort 8332 127.0.0.1:8332",
        "HiddenServiceDir /var/lib/tor/bitcoin-p2p/",
        "HiddenServicePort 8333 127.0.0.1:8333",
    ]


def test_bitcoin_only_mainnet_conf():
    conf = emitters.build_bitcoin_config(AppConfig())
    assert "prune=25000" in lines(conf)
    assert "rpcport=8332" in lines(conf)
    assert "[testnet4]" not in conf
    assert "testnet4=1" not in conf
    for key in (
        "server=1", "dbcache=512", "maxmempool=300", "disablewallet=1",
        "proxy=127.0.0.1:9050", "listen=1", "listenonion=1", "bind=127.0.0.1",
        "rpcbind=127.0.0.1", "rpcallowip=127.0.0.1",
        "zmqpubrawblock=tcp://127.0.0.1:28332", "zmqpubrawtx=tcp://127.0.0.1:28333",
    ):
        assert key in lines(conf)


def test_testnet4_pruned_conf():
    conf = emitters.build_bitcoin_config(AppConfig(network="testnet4", prune_size=50))
    body = lines(conf)
    assert "testnet4=1" in body
    assert "[testnet4]" in body
    assert "prune=50000" in body
    assert "rpcport=48332" in body
    assert "zmqpubrawblock=tcp://127.0.0.1:28334" in body
    section = body.index("[testnet4]")
    assert body.index("testnet4=1") < section
    assert body.index("prune=50000") < section
    assert body.index("rpcport=48332") > section
    assert body.index("bind=127.0.0.1") > section


def test_full_stack_hybrid():
    cfg = full_stack()
    tor = emitters.build_tor_config(cfg)
    for needle in ("ControlPort 9051", "lnd-grpc", "lnd-rest", "lnd-lit", "/syncthing/", "syncthing-sync"):
        assert needle in tor
    lnd = emitters.build_lnd_config(cfg, public_ipv4="203.0.113.7")
    assert "listen=0.0.0.0:9735" in lines(lnd)
    assert "externalhosts=203.0.113.7:9735" in lines(lnd)


def test_lnd_tor_mode_and_sections():
    cfg = full_stack(p2p_mode="tor")
    lnd = emitters.build_lnd_config(cfg, public_ipv4="203.0.113.7")
    body = lines(lnd)
    assert "listen=localhost:9735" in body
    assert not any(l.startswith("externalhosts=") for l in body)
    assert not any(l.startswith("tlsextradomain=") for l in body)
    for header in ("[Application Options]", "[Bitcoin]", "[Bitcoind]", "[Tor]"):
        assert header in body
    for key in (
        "rpclisten=localhost:10009", "restlisten=localhost:8080", "bitcoin.mainnet=true",
        "bitcoind.rpccookie=/var/lib/bitcoin/.cookie", "bitcoind.rpchost=127.0.0.1:8332",
        "tor.active=true", "tor.socks=127.0.0.1:9050", "tor.control=127.0.0.1:9051",
        "tor.v3=true", "tor.streamisolation=true",
    ):
        assert key in body


def test_lnd_hybrid_without_ip_stays_local():
    lnd = emitters.build_lnd_config(full_stack(), public_ipv4="")
    assert "listen=localhost:9735" in lines(lnd)


def test_lnd_testnet4_and_rest_onion():
    cfg = AppConfig(network="testnet4")
    cfg.set_lnd(True)
    lnd = emitters.build_lnd_config(cfg, rest_onion="abcdefghijklmnop.onion\n")
    body = lines(lnd)
    assert "bitcoin.testnet4=true" in body
    assert "bitcoind.rpccookie=/var/lib/bitcoin/testnet4/.cookie" in body
    assert "bitcoind.rpchost=127.0.0.1:48332" in body
    assert "bitcoind.zmqpubrawtx=tcp://127.0.0.1:28335" in body
    assert "tlsextradomain=abcdefghijklmnop.onion" in body


@pytest.mark.parametrize(
    "has_lnd, lit, syncthing",
    list(itertools.product([False, True], repeat=3)),
)
def test_torrc_composition(has_lnd, lit, syncthing):
    cfg = AppConfig(network="testnet4", lit_installed=lit, syncthing_installed=syncthing)
    cfg.set_lnd(has_lnd)
    tor = emitters.build_tor_config(cfg)
    assert "SOCKSPort 9050" in tor
    assert "HiddenServicePort 48332 127.0.0.1:48332" in tor
    assert "HiddenServicePort 48333 127.0.0.1:48333" in tor
    assert ("ControlPort" in tor) is has_lnd
    assert ("CookieAuthFileGroupReadable 1" in tor) is has_lnd
    assert ("lnd-grpc" in tor) is has_lnd
    assert ("lnd-lit" in tor) is lit
    assert ("syncthing" in tor) is syncthing


def test_emitters_are_pure():
    cfg = full_stack()
    outputs = [
        (emitters.build_bitcoin_config, (cfg,)),
        (emitters.build_lnd_config, (cfg, "203.0.113.7", "x.onion")),
        (emitters.build_lit_config, (cfg, "secret")),
        (emitters.build_tor_config, (cfg,)),
        (emitters.build_fail2ban_jail, (cfg,)),
        (emitters.build_shell_env, (cfg, "bitcoin")),
    ]
    snapshot = cfg.copy()
    for fn, args in outputs:
        first = fn(*args)
        assert fn(*args) == first
        assert fn(*((full_stack(),) + args[1:])) == first
    assert cfg == snapshot


def test_lit_config():
    cfg = AppConfig(network="testnet4")
    cfg.set_lnd(True)
    lit = lines(emitters.build_lit_config(cfg, "0a1b2c"))
    assert "uipassword=0a1b2c" in lit
    assert "lnd-mode=remote" in lit
    assert "network=testnet4" in lit
    assert "remote.lnd.rpcserver=localhost:10009" in lit
    assert "remote.lnd.macaroonpath=/var/lib/lnd/data/chain/bitcoin/testnet4/admin.macaroon" in lit
    assert "remote.lnd.tlscertpath=/var/lib/lnd/tls.cert" in lit
    for sub in ("faraday", "loop", "pool", "taproot-assets"):
        assert f"{sub}-mode=disable" in lit
    assert "httpslisten=127.0.0.1:8443" in lit


def test_rpc_middleware_inserted_after_application_options():
    original = "[Application Options]\nlnddir=/var/lib/lnd\n\n[Bitcoin]\nbitcoin.active=true\n"
    updated = emitters.enable_rpc_middleware(original)
    body = lines(updated)
    assert body[0] == "[Application Options]"
    assert body[2] == "rpcmiddleware.enable=true"
    assert updated.count("rpcmiddleware.enable=true") == 1
    assert emitters.enable_rpc_middleware(updated) == updated


def test_rpc_middleware_appended_without_section():
    updated = emitters.enable_rpc_middleware("debuglevel=info")
    assert updated.startswith("debuglevel=info\n")
    assert updated.endswith("rpcmiddleware.enable=true\n")


GENERATED_XML = """<configuration version="37">
    <folder id="default" label="Default Folder" path="/var/lib/syncthing/Sync"></folder>
    <gui enabled="true" tls="false" debugging="false">
        <address>0.0.0.0:8384</address>
        <apikey>k3y</apikey>
        <theme>default</theme>
    </gui>
    <options></options>
</configuration>
"""


def test_syncthing_mutation_and_verification():
    hashed = "$2b$12$abcdefghijklmnopqrstuuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ012"
    assert emitters.verify_syncthing_config(GENERATED_XML) == [
        "gui_address", "gui_user", "gui_password_bcrypt", "insecure_skip_hostcheck",
    ]
    xml = emitters.mutate_syncthing_config(GENERATED_XML, hashed)
    assert emitters.verify_syncthing_config(xml) == []
    assert "0.0.0.0:8384" not in xml
    assert f"<password>{hashed}</password>" in xml
    assert "<apikey>k3y</apikey>" in xml
    gui = re.search(r"<gui\b.*?</gui>", xml, re.S).group(0)
    assert "<user>admin</user>" in gui
    assert "<insecureSkipHostcheck>true</insecureSkipHostcheck>" in gui
    # Re-applying replaces rather than duplicates.
    again = emitters.mutate_syncthing_config(xml, hashed)
    assert again.count("<user>") == 1
    assert again.count("<insecureSkipHostcheck>") == 1


def test_syncthing_mutation_replaces_existing_elements():
    xml = GENERATED_XML.replace(
        "<theme>default</theme>",
        "<theme>default</theme>\n        <user></user>\n        <password/>\n"
        "        <insecureSkipHostcheck>false</insecureSkipHostcheck>",
    )
    out = emitters.mutate_syncthing_config(xml, "$2a$10$hash")
    assert "<user>admin</user>" in out
    assert "<password>$2a$10$hash</password>" in out
    assert "<insecureSkipHostcheck>false" not in out
    assert emitters.verify_syncthing_config(out) == []


def test_syncthing_without_gui_is_rejected():
    with pytest.raises(ValueError):
        emitters.mutate_syncthing_config("<configuration/>", "$2b$x")


def test_ufw_rules():
    cfg = AppConfig(ssh_port=2222)
    assert emitters.ufw_rules(cfg) == [
        ["ufw", "default", "deny", "incoming"],
        ["ufw", "default", "allow", "outgoing"],
        ["ufw", "allow", "2222/tcp"],
        ["ufw", "--force", "enable"],
    ]
    cfg.p2p_mode = "hybrid"
    assert ["ufw", "allow", "9735/tcp"] not in emitters.ufw_rules(cfg)
    cfg.set_lnd(True)
    assert ["ufw", "allow", "9735/tcp"] in emitters.ufw_rules(cfg)


def test_ufw_defaults_patch():
    assert emitters.patch_ufw_defaults("IPV6=yes\nDEFAULT_INPUT_POLICY=\"DROP\"\n") == (
        "IPV6=no\nDEFAULT_INPUT_POLICY=\"DROP\"\n"
    )


def test_hardening_files():
    assert "net.ipv6.conf.lo.disable_ipv6 = 1" in emitters.build_sysctl_ipv6()
    unattended = emitters.build_unattended_upgrades()
    assert '"${distro_id}:${distro_codename}-security";' in unattended
    assert 'Unattended-Upgrade::Automatic-Reboot-Time "04:00";' in unattended
    jail = lines(emitters.build_fail2ban_jail(AppConfig()))
    assert "[sshd]" in jail
    assert "port = ssh" in jail
    assert "maxretry = 5" in jail
    assert "port = 2222" in lines(emitters.build_fail2ban_jail(AppConfig(ssh_port=2222)))
    assert emitters.build_syncthing_apt_source("/etc/apt/keyrings/s.gpg") == (
        "deb [signed-by=/etc/apt/keyrings/s.gpg] https://apt.syncthing.net/ syncthing stable-v2\n"
    )


def test_shell_env_block():
    cfg = AppConfig(network="testnet4")
    assert "lncli()" not in emitters.build_shell_env(cfg, "bitcoin")
    cfg.set_lnd(True)
    env = emitters.build_shell_env(cfg, "bitcoin")
    assert "export LNCLI_NETWORK=testnet4" in env
    assert "sudo -u bitcoin /usr/local/bin/lncli \"$@\"" in env
    assert "LNCLI_NETWORK" not in emitters.build_shell_env(full_stack(), "bitcoin")
    assert env.startswith(emitters.SHELL_BEGIN + "\n")
    assert env.endswith(emitters.SHELL_END + "\n")


def test_merge_shell_env_appends_then_replaces():
    block = emitters.build_shell_env(AppConfig(), "bitcoin")
    merged = emitters.merge_shell_env("alias ll='ls -l'", block)
    assert merged == "alias ll='ls -l'\n\n" + block
    assert emitters.merge_shell_env("", block) == block

    cfg = AppConfig()
    cfg.set_lnd(True)
    lnd_block = emitters.build_shell_env(cfg, "bitcoin")
    updated = emitters.merge_shell_env(merged + "export EDITOR=vi\n", lnd_block)
    assert updated == "alias ll='ls -l'\n\n" + lnd_block + "export EDITOR=vi\n"
    assert emitters.merge_shell_env(updated, lnd_block) == updated


def test_merge_shell_env_block_without_end_marker():
    older = "alias ll='ls -l'\n\n" + emitters.SHELL_BEGIN + "\nbitcoin-cli() {\n    true\n}\n"
    block = emitters.build_shell_env(AppConfig(), "bitcoin")
    assert emitters.merge_shell_env(older, block) == "alias ll='ls -l'\n\n" + block
