# src/fleet_backend/engine.py
from __future__ import annotations
import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional

from .backends import BackendRegistry, build_registry
from .config import EngineConfig
from .lifecycle import LifecycleManager
from .reconciler import ReconcileLoop, Reconciler
from .retry import RetryPolicy
from .store import IdentityStore

logger = logging.getLogger(__name__)


class Engine:
    """
    Assemble store, adaptateurs, reconciler et lifecycle manager.
    Ouvert au démarrage du process, fermé à l'arrêt ; pas de singleton.
    """

    def __init__(self, cfg: EngineConfig, store: IdentityStore, registry: BackendRegistry):
        self.cfg = cfg
        self.store = store
        self.registry = registry
        retention = (
            timedelta(seconds=cfg.retention_seconds) if cfg.retention_seconds is not None else None
        )
        self.reconciler = Reconciler(
            store,
            registry,
            retry=RetryPolicy(base_delay=cfg.retry_base, max_delay=cfg.retry_cap),
            timeout=cfg.backend_timeout,
            retention=retention,
        )
        self.loop = ReconcileLoop(self.reconciler, interval=cfg.reconcile_interval)
        self.manager = LifecycleManager(store, registry, trigger=self.loop.trigger)

    @classmethod
    def open(cls, cfg: EngineConfig, registry: Optional[BackendRegistry] = None) -> "Engine":
        store = IdentityStore.open(cfg.pools(), Path(cfg.state_path))
        return cls(cfg, store, registry or build_registry(cfg))

    async def start(self) -> None:
        self.loop.start()
        self.loop.trigger()

    async def close(self) -> None:
        await self.loop.stop()
        await self.registry.close()
        self.store.close()
