from __future__ import annotations
from typing import Optional

from ..config import EngineConfig
from ..runner import CommandRunner
from .base import ApplyResult, BackendAdapter, BackendRegistry, StateResult, StatsResult
from .openvpn import OpenVPNAdapter
from .shadowsocks import ShadowsocksAdapter
from .wireguard import WireGuardAdapter

__all__ = [
    "ApplyResult",
    "BackendAdapter",
    "BackendRegistry",
    "OpenVPNAdapter",
    "ShadowsocksAdapter",
    "StateResult",
    "StatsResult",
    "WireGuardAdapter",
    "build_registry",
]


def build_registry(cfg: EngineConfig, runner: Optional[CommandRunner] = None) -> BackendRegistry:
    runner = runner or CommandRunner(timeout=cfg.backend_timeout)
    registry = BackendRegistry()
    if cfg.wireguard is not None:
        registry.register(WireGuardAdapter(cfg.wireguard, runner))
    if cfg.openvpn is not None:
        registry.register(OpenVPNAdapter(cfg.openvpn, runner))
    if cfg.shadowsocks is not None:
        registry.register(ShadowsocksAdapter(cfg.shadowsocks))
    return registry
