# src/fleet_backend/config.py
from __future__ import annotations
import dataclasses
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .errors import ConfigError
from .ipam import AddressPool
from .models import BackendKind


DEFAULT_CONFIG_PATH = Path("data/fleet.json")


@dataclass
class WireGuardConfig:
    interface: str = "wg0"
    network_cidr: str = "10.8.0.0/24"
    server_address: str = "10.8.0.1/24"  # première IP du réseau
    listen_port: int = 51820
    endpoint: Optional[str] = None       # IP publique:port pour les clients
    dns: List[str] = field(default_factory=lambda: ["1.1.1.1", "8.8.8.8"])
    client_allowed_ips: List[str] = field(default_factory=list)  # vide : réseau VPN seul
    config_dir: str = "/etc/wireguard"
    clients_dir: str = "data/clients/wireguard"
    with_preshared: bool = True
    reload: bool = True

    def pool(self) -> AddressPool:
        return AddressPool.from_cidr("wireguard", self.network_cidr, self.server_address)


@dataclass
class OpenVPNConfig:
    network_cidr: str = "10.9.0.0/24"
    server_address: str = "10.9.0.1/24"
    easyrsa_dir: str = "/etc/openvpn/easy-rsa"
    ccd_dir: str = "/etc/openvpn/ccd"
    clients_dir: str = "/etc/openvpn/clients"
    remote_host: str = "YOUR_SERVER_IP"
    remote_port: int = 1194
    proto: str = "udp"
    cipher: str = "AES-256-GCM"
    auth: str = "SHA256"
    tls_crypt_key: Optional[str] = None
    status_file: str = "/var/log/openvpn/status.log"  # directive status du serveur

    def pool(self) -> AddressPool:
        return AddressPool.from_cidr("openvpn", self.network_cidr, self.server_address)


@dataclass
class ShadowsocksConfig:
    api_url: str = ""                 # ex https://1.2.3.4:12345/SECRET
    cert_sha256: Optional[str] = None
    verify_tls: bool = True
    method: str = "chacha20-ietf-poly1305"
    port_start: int = 20000
    port_end: int = 20999
    data_limit_bytes: Optional[int] = None
    timeout: float = 10.0

    def pool(self) -> AddressPool:
        return AddressPool.from_ports("shadowsocks", self.port_start, self.port_end)


@dataclass
class ApiConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    token: Optional[str] = None


@dataclass
class EngineConfig:
    state_path: str = "data/state.json"
    reconcile_interval: float = 5.0
    backend_timeout: float = 10.0
    retry_base: float = 1.0
    retry_cap: float = 60.0
    retention_seconds: Optional[float] = None  # None : on garde les peers supprimés
    wireguard: Optional[WireGuardConfig] = None
    openvpn: Optional[OpenVPNConfig] = None
    shadowsocks: Optional[ShadowsocksConfig] = None
    api: ApiConfig = field(default_factory=ApiConfig)

    def backends(self) -> Dict[BackendKind, object]:
        out = {}
        if self.wireguard is not None:
            out[BackendKind.WIREGUARD] = self.wireguard
        if self.openvpn is not None:
            out[BackendKind.OPENVPN] = self.openvpn
        if self.shadowsocks is not None:
            out[BackendKind.SHADOWSOCKS] = self.shadowsocks
        return out

    def pools(self) -> Dict[BackendKind, AddressPool]:
        return {kind: section.pool() for kind, section in self.backends().items()}


_SECTIONS = {
    "wireguard": WireGuardConfig,
    "openvpn": OpenVPNConfig,
    "shadowsocks": ShadowsocksConfig,
    "api": ApiConfig,
}


def _build(cls, data: dict, section: str):
    if not isinstance(data, dict):
        raise ConfigError(f"Section '{section}' must be an object")
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"Unknown keys in '{section}': {', '.join(sorted(unknown))}")
    try:
        return cls(**data)
    except TypeError as e:
        raise ConfigError(f"Invalid section '{section}': {e}") from e


def config_from_dict(data: dict) -> EngineConfig:
    data = dict(data)
    sections = {}
    for name, cls in _SECTIONS.items():
        if name in data:
            sections[name] = _build(cls, data.pop(name), name)
    cfg = _build(EngineConfig, data, "engine")
    for name, value in sections.items():
        setattr(cfg, name, value)

    if not cfg.backends():
        raise ConfigError("At least one backend section (wireguard, openvpn, shadowsocks) is required")
    if cfg.reconcile_interval <= 0 or cfg.backend_timeout <= 0:
        raise ConfigError("reconcile_interval and backend_timeout must be positive")
    if cfg.shadowsocks is not None and not cfg.shadowsocks.api_url:
        raise ConfigError("shadowsocks.api_url is required")
    # valide les pools tout de suite
    cfg.pools()
    return cfg


def config_to_dict(cfg: EngineConfig) -> dict:
    data = dataclasses.asdict(cfg)
    return {k: v for k, v in data.items() if v is not None}


def load_config(path: Optional[Path] = None) -> EngineConfig:
    path = path or Path(os.getenv("VPN_FLEET_CONFIG", str(DEFAULT_CONFIG_PATH)))
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e

    cfg = config_from_dict(data)

    # surcharges par variables d'environnement
    if os.getenv("VPN_FLEET_STATE"):
        cfg.state_path = os.environ["VPN_FLEET_STATE"]
    if os.getenv("VPN_FLEET_API_TOKEN"):
        cfg.api.token = os.environ["VPN_FLEET_API_TOKEN"]
    return cfg


def save_config(cfg: EngineConfig, path: Optional[Path] = None) -> Path:
    path = path or DEFAULT_CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(config_to_dict(cfg), f, indent=2)
    return path
