import asyncio
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from fleet_backend.backends import BackendAdapter, BackendRegistry
from fleet_backend.config import EngineConfig, WireGuardConfig
from fleet_backend.engine import Engine
from fleet_backend.errors import CommandError
from fleet_backend.ipam import AddressPool
from fleet_backend.lifecycle import LifecycleManager
from fleet_backend.models import Ack, ActualEntry, BackendError, BackendKind, PeerStats
from fleet_backend.reconciler import Reconciler
from fleet_backend.retry import RetryPolicy
from fleet_backend.runner import CommandResult
from fleet_backend.store import IdentityStore


class FakeAdapter(BackendAdapter):
    """Backend en mémoire avec échecs scriptés."""

    def __init__(self, kind: BackendKind = BackendKind.WIREGUARD):
        self.kind = kind
        self.entries: Dict[str, str] = {}
        self.calls: List[tuple] = []
        self.apply_failures: List[BackendError] = []
        self.remove_failures: List[BackendError] = []
        self.read_failures: List[BackendError] = []
        self.stats: Dict[str, PeerStats] = {}
        self.stats_failure: Optional[BackendError] = None
        self.gate: Optional[asyncio.Event] = None
        self.on_apply = None
        self.inflight = 0
        self.max_inflight = 0

    async def _enter(self):
        self.inflight += 1
        self.max_inflight = max(self.max_inflight, self.inflight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
        finally:
            self.inflight -= 1

    async def apply_peer(self, peer):
        self.calls.append(("apply", peer.peer_ref))
        await self._enter()
        if self.apply_failures:
            return self.apply_failures.pop(0)
        if self.on_apply is not None:
            self.on_apply(peer)
        self.entries.setdefault(peer.peer_ref, peer.address)
        return Ack(peer.peer_ref, f"key-{peer.peer_ref}")

    async def remove_peer(self, peer_ref):
        self.calls.append(("remove", peer_ref))
        await self._enter()
        if self.remove_failures:
            return self.remove_failures.pop(0)
        self.entries.pop(peer_ref, None)
        return Ack(peer_ref)

    async def read_actual_state(self):
        if self.read_failures:
            return self.read_failures.pop(0)
        return {ActualEntry(ref, addr) for ref, addr in self.entries.items()}

    async def client_config(self, peer):
        if peer.peer_ref not in self.entries:
            raise KeyError(peer.peer_ref)
        return f"[Interface]\nAddress = {peer.address}\n# {peer.peer_ref}\n"

    async def read_stats(self):
        if self.stats_failure is not None:
            return self.stats_failure
        return dict(self.stats)


class FakeRunner:
    """Remplace CommandRunner : enregistre les commandes, simule wg."""

    def __init__(self):
        self.calls: List[List[str]] = []
        self.failures: Dict[tuple, List[CommandError]] = {}
        self.handlers = {}
        self._n = 0

    def fail(self, prefix: tuple, error: CommandError, times: int = 1) -> None:
        self.failures.setdefault(prefix, []).extend([error] * times)

    async def run(self, cmd, input=None, cwd=None, timeout=None, check=True):
        cmd = list(cmd)
        self.calls.append(cmd)
        for prefix, errors in self.failures.items():
            if tuple(cmd[: len(prefix)]) == prefix and errors:
                raise errors.pop(0)

        out = ""
        if cmd[:2] == ["wg", "genkey"]:
            self._n += 1
            out = f"priv{self._n}="
        elif cmd[:2] == ["wg", "pubkey"]:
            out = "pub-" + (input or "").strip()
        elif cmd[:2] == ["wg", "genpsk"]:
            self._n += 1
            out = f"psk{self._n}="
        elif cmd[:2] == ["wg-quick", "strip"]:
            out = Path(cmd[2]).read_text()
        else:
            for prefix, handler in self.handlers.items():
                if tuple(cmd[: len(prefix)]) == prefix:
                    out = handler(cmd, cwd) or ""
                    break
        return CommandResult(cmd, 0, out + "\n", "")

    def commands(self, *prefix: str) -> List[List[str]]:
        return [c for c in self.calls if tuple(c[: len(prefix)]) == prefix]


def no_jitter_policy() -> RetryPolicy:
    return RetryPolicy(base_delay=1.0, max_delay=60.0, rng=lambda low, high: 0.0)


@pytest.fixture
def pools():
    return {
        BackendKind.WIREGUARD: AddressPool.from_cidr("wireguard", "10.8.0.0/24", "10.8.0.1/24"),
        BackendKind.SHADOWSOCKS: AddressPool.from_ports("shadowsocks", 20000, 20009),
    }


@pytest.fixture
def store(pools):
    s = IdentityStore.open(pools)
    yield s
    s.close()


@pytest.fixture
def wg_adapter():
    return FakeAdapter(BackendKind.WIREGUARD)


@pytest.fixture
def ss_adapter():
    return FakeAdapter(BackendKind.SHADOWSOCKS)


@pytest.fixture
def registry(wg_adapter, ss_adapter):
    reg = BackendRegistry()
    reg.register(wg_adapter)
    reg.register(ss_adapter)
    return reg


@pytest.fixture
def reconciler(store, registry):
    return Reconciler(store, registry, retry=no_jitter_policy(), timeout=1.0)


@pytest.fixture
def manager(store, registry):
    return LifecycleManager(store, registry)


@pytest.fixture
def engine(store, registry):
    cfg = EngineConfig(wireguard=WireGuardConfig())
    eng = Engine(cfg, store, registry)
    eng.reconciler.retry = no_jitter_policy()
    return eng
