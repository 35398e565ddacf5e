from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

from .paths import host_path, lnd_chain_dir

BITCOIN_VERSION = "29.2"
LND_VERSION = "0.20.0-beta"
LIT_VERSION = "0.16.0-alpha"
APP_VERSION = "0.1.0"
SYSTEM_USER = "bitcoin"

MAINNET = "mainnet"
TESTNET4 = "testnet4"
COMPONENTS_BITCOIN = "bitcoin"
COMPONENTS_LND = "bitcoin+lnd"
P2P_TOR = "tor"
P2P_HYBRID = "hybrid"
MIN_PRUNE_GB = 10


@dataclass(frozen=True)
class NetworkConfig:
    name: str
    bitcoin_flag: str
    lnd_bitcoin_flag: str
    rpc_port: int
    p2p_port: int
    zmq_block_port: int
    zmq_tx_port: int
    lncli_network: str
    cookie_path: str


MAINNET_CONFIG = NetworkConfig(
    name=MAINNET,
    bitcoin_flag="",
    lnd_bitcoin_flag="bitcoin.mainnet=true",
    rpc_port=8332,
    p2p_port=8333,
    zmq_block_port=28332,
    zmq_tx_port=28333,
    lncli_network=MAINNET,
    cookie_path=".cookie",
)

TESTNET4_CONFIG = NetworkConfig(
    name=TESTNET4,
    bitcoin_flag="testnet4=1",
    lnd_bitcoin_flag="bitcoin.testnet4=true",
    rpc_port=48332,
    p2p_port=48333,
    zmq_block_port=28334,
    zmq_tx_port=28335,
    lncli_network=TESTNET4,
    cookie_path="testnet4/.cookie",
)


def network_config_from_name(name: Optional[str]) -> NetworkConfig:
    """Only the exact string ``mainnet`` selects mainnet; anything else is testnet4."""

    if name == MAINNET:
        return MAINNET_CONFIG
    return TESTNET4_CONFIG


@dataclass(frozen=True)
class SignerIdentity:
    name: str
    fingerprint: str
    key_url: str = ""
    key_id: str = ""

    def __post_init__(self):
        fp = self.fingerprint
        if len(fp) != 40 or any(c not in "0123456789ABCDEF" for c in fp):
            raise ValueError(f"signer {self.name}: fingerprint must be 40 upper-case hex chars")
        if bool(self.key_url) == bool(self.key_id):
            raise ValueError(f"signer {self.name}: exactly one of key_url/key_id is required")


_OMIT_WHEN_EMPTY = ("install_version", "lit_password", "syncthing_password")


@dataclass
class AppConfig:
    install_complete: bool = False
    install_version: str = ""
    network: str = MAINNET
    components: str = COMPONENTS_BITCOIN
    prune_size: int = 25
    p2p_mode: str = P2P_TOR
    ssh_port: int = 22
    auto_unlock: bool = False
    lnd_installed: bool = False
    wallet_created: bool = False
    lit_installed: bool = False
    lit_password: str = ""
    syncthing_installed: bool = False
    syncthing_password: str = ""

    @property
    def has_lnd(self) -> bool:
        return self.lnd_installed

    @property
    def is_mainnet(self) -> bool:
        return self.network == MAINNET

    def network_config(self) -> NetworkConfig:
        return network_config_from_name(self.network)

    def chain_name(self) -> str:
        """Directory name LND uses under ``data/chain/bitcoin``."""

        return MAINNET if self.is_mainnet else self.network_config().name

    def wallet_exists(self) -> bool:
        wallet = os.path.join(lnd_chain_dir(self.chain_name()), "wallet.db")
        return os.path.isfile(host_path(wallet))

    def set_lnd(self, enabled: bool) -> None:
        self.lnd_installed = enabled
        self.components = COMPONENTS_LND if enabled else COMPONENTS_BITCOIN

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in _OMIT_WHEN_EMPTY and not value:
                continue
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppConfig":
        """Build from decoded JSON; a value of the wrong type raises ``TypeError``."""

        defaults = cls()
        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            expected = type(getattr(defaults, f.name))
            # bool is an int subclass; neither may stand in for the other.
            if type(value) is not expected:
                raise TypeError(f"{f.name}: expected {expected.__name__}, got {type(value).__name__}")
            kwargs[f.name] = value
        cfg = cls(**kwargs)
        if cfg.components == COMPONENTS_LND:
            cfg.lnd_installed = True
        return cfg

    def copy(self) -> "AppConfig":
        return AppConfig(**{f.name: getattr(self, f.name) for f in fields(self)})


@dataclass
class InstallOptions:
    """Target state chosen by the operator for the initial install."""

    network: str = MAINNET
    components: str = COMPONENTS_BITCOIN
    prune_size: int = 25
    p2p_mode: str = P2P_TOR
    ssh_port: int = 22
    public_ipv4: str = ""

    def to_config(self) -> AppConfig:
        cfg = AppConfig(
            network=self.network,
            prune_size=self.prune_size,
            p2p_mode=self.p2p_mode,
            ssh_port=self.ssh_port,
        )
        cfg.set_lnd(self.components == COMPONENTS_LND)
        return cfg
