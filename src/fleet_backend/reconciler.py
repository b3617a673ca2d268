# src/fleet_backend/reconciler.py
from __future__ import annotations
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from .backends import BackendAdapter, BackendRegistry
from .errors import InvalidTransition, NotFound, StaleRecord
from .models import (
    Ack,
    ActualEntry,
    BackendError,
    Fault,
    OpKind,
    Peer,
    PeerFilter,
    PeerState,
    PlannedOperation,
    ReconcileReport,
    parse_peer_ref,
    utcnow,
)
from .retry import RetryPolicy
from .store import IdentityStore

logger = logging.getLogger(__name__)


def plan_backend(
    adapter_kind,
    peers: List[Peer],
    actual: Set[ActualEntry],
    now: datetime,
) -> tuple[List[PlannedOperation], List[str]]:
    """
    Diff état voulu / état réel pour un backend, clé = peer_ref.

    Retourne (opérations triées, refs ignorées car en attente de retry).
    Un peer en faute permanente n'est ni appliqué ni retiré.
    """
    by_ref: Dict[str, Peer] = {}
    kept: Set[str] = set()
    for p in peers:
        if p.backend is not adapter_kind:
            continue
        by_ref[p.peer_ref] = p
        if p.state is not PeerState.REVOKED:
            kept.add(p.peer_ref)

    actual_by_ref = {e.peer_ref: e for e in actual}
    ops: List[PlannedOperation] = []
    skipped: List[str] = []

    def due(p: Peer) -> bool:
        if p.fault is Fault.PERMANENT:
            return False
        if p.next_retry_at is not None and p.next_retry_at > now:
            skipped.append(p.peer_ref)
            return False
        return True

    for ref, p in by_ref.items():
        if p.state is PeerState.REVOKED:
            continue
        entry = actual_by_ref.get(ref)
        drift = entry is not None and entry.address is not None and entry.address != p.address
        unconfirmed = p.state is PeerState.PENDING or p.key_material is None
        if entry is not None and not drift and not unconfirmed:
            continue
        if not due(p):
            continue
        if drift:
            logger.warning("peer %d: backend holds %s instead of %s, re-applying", p.id, entry.address, p.address)
            ops.append(PlannedOperation(OpKind.REMOVE, ref, adapter_kind, p.id))
        # entrée présente mais pas encore confirmée : apply idempotent récupère l'ack
        ops.append(PlannedOperation(OpKind.APPLY, ref, adapter_kind, p.id))

    for ref in actual_by_ref:
        if ref in kept:
            continue
        parsed = parse_peer_ref(ref)
        if parsed is None or parsed[0] is not adapter_kind:
            # entrée ajoutée hors du moteur : on n'y touche pas
            continue
        peer_id = parsed[1]
        owner = by_ref.get(ref)
        if owner is None:
            owner = next((p for p in peers if p.id == peer_id and p.backend is adapter_kind), None)
        if owner is not None and not due(owner):
            continue
        ops.append(PlannedOperation(OpKind.REMOVE, ref, adapter_kind, peer_id))

    ops.sort(key=lambda op: op.sort_key)
    return ops, skipped


class Reconciler:
    """
    Fait converger chaque backend vers l'état du store.

    Une seule passe à la fois (verrou single-flight). Le verrou du store
    n'est jamais tenu pendant un appel backend : on relit le store avant
    chaque passe et chaque mutation passe par une opération atomique.
    """

    def __init__(
        self,
        store: IdentityStore,
        registry: BackendRegistry,
        retry: Optional[RetryPolicy] = None,
        timeout: float = 10.0,
        retention: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.registry = registry
        self.retry = retry or RetryPolicy()
        self.timeout = timeout
        self.retention = retention
        self._clock = clock
        self._single_flight = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._single_flight.locked()

    async def _call(
        self, what: str, fn: Callable[[], Awaitable[Union[Ack, BackendError, set]]],
    ) -> Union[Ack, BackendError, set]:
        try:
            return await asyncio.wait_for(fn(), self.timeout)
        except asyncio.TimeoutError:
            return BackendError.transient(f"{what}: no answer within {self.timeout}s")
        except Exception as e:
            # bug d'adaptateur : on ne tue pas la passe
            logger.exception("%s raised", what)
            return BackendError.transient(f"{what}: {e!r}")

    async def _write(self, fn: Callable[..., Any], *args: Any) -> Any:
        # écriture + fsync du fichier d'état hors de la boucle asyncio ;
        # le store est protégé par son propre verrou
        return await asyncio.to_thread(fn, *args)

    async def reconcile(self) -> ReconcileReport:
        async with self._single_flight:
            report = ReconcileReport()
            for adapter in self.registry:
                await self._reconcile_backend(adapter, report)
            if self.retention is not None:
                await self._write(self.store.purge, self.retention)
            if report.operations:
                logger.info(
                    "reconciliation: %d applied, %d removed, %d failed",
                    len(report.applied), len(report.removed), len(report.failed),
                )
            return report

    async def _reconcile_backend(self, adapter: BackendAdapter, report: ReconcileReport) -> None:
        kind = adapter.kind
        # 1. état voulu, relu à chaque passe
        peers = self.store.list(PeerFilter(backend=kind, include_removed=False))

        # 2. état réel
        actual = await self._call(f"{kind.value}.read_actual_state", adapter.read_actual_state)
        if isinstance(actual, BackendError):
            logger.warning("%s: cannot read actual state (%s), backend skipped", kind.value, actual.reason)
            report.skipped.append(kind.value)
            return

        # 3-4. diff
        ops, skipped = plan_backend(kind, peers, actual, self._clock())
        report.skipped.extend(skipped)
        present = {e.peer_ref for e in actual}

        # 5. un peer à la fois, id croissant
        for op in ops:
            if op.op is OpKind.REMOVE:
                await self._remove(adapter, op, present, report)
            else:
                await self._apply(adapter, op, present, report)

        # Revoked(pending-cleanup) -> Revoked(final) quand plus rien côté backend
        still_there = {parsed[1] for parsed in map(parse_peer_ref, present) if parsed}
        for p in self.store.list(PeerFilter(backend=kind, states=frozenset({PeerState.REVOKED}), include_removed=False)):
            if p.id in still_there:
                continue
            await self._write(self.store.mark_removed, p.id)
            report.finalised.append(p.id)

    async def _apply(self, adapter: BackendAdapter, op: PlannedOperation, present: Set[str], report: ReconcileReport) -> None:
        try:
            peer = self.store.get(op.peer_id)
        except NotFound:
            return
        if peer.peer_ref != op.peer_ref or peer.state is PeerState.REVOKED:
            # changé depuis le plan, la prochaine passe s'en occupe
            return

        result = await self._call(f"{adapter.kind.value}.apply_peer({op.peer_ref})", lambda: adapter.apply_peer(peer))
        if isinstance(result, BackendError):
            await self._fail(peer, result, report)
            return

        present.add(op.peer_ref)
        try:
            await self._write(self.store.activate, peer.id, peer.key_version, result.key_material)
        except (InvalidTransition, StaleRecord, NotFound) as e:
            # révoqué ou rotaté pendant l'appel : la révocation gagne
            logger.info("peer %d changed during apply (%s), undoing %s", peer.id, e, op.peer_ref)
            await self._remove(adapter, PlannedOperation(OpKind.REMOVE, op.peer_ref, adapter.kind, peer.id), present, report)
            return
        report.applied.append(op.peer_ref)
        if peer.state is PeerState.PENDING:
            report.promoted.append(peer.id)

    async def _remove(self, adapter: BackendAdapter, op: PlannedOperation, present: Set[str], report: ReconcileReport) -> None:
        result = await self._call(f"{adapter.kind.value}.remove_peer({op.peer_ref})", lambda: adapter.remove_peer(op.peer_ref))
        owner: Optional[Peer] = None
        if op.peer_id is not None:
            try:
                owner = self.store.get(op.peer_id)
            except NotFound:
                owner = None
            if owner is not None and owner.backend is not adapter.kind:
                owner = None

        if isinstance(result, BackendError):
            if owner is not None:
                await self._fail(owner, result, report, ref=op.peer_ref)
            else:
                logger.error("%s: cannot remove orphan %s: %s", adapter.kind.value, op.peer_ref, result.reason)
                report.failed.append(op.peer_ref)
            return

        present.discard(op.peer_ref)
        report.removed.append(op.peer_ref)
        if owner is not None and owner.retry_count:
            await self._write(self.store.clear_fault, owner.id)

    async def _fail(self, peer: Peer, err: BackendError, report: ReconcileReport, ref: Optional[str] = None) -> None:
        ref = ref or peer.peer_ref
        report.failed.append(ref)
        if err.retryable:
            # 6. état inchangé, retry avec backoff
            at = self.retry.next_attempt_at(self._clock(), peer.retry_count)
            await self._write(self.store.record_fault, peer.id, err.reason, Fault.TRANSIENT, at)
            logger.warning(
                "peer %d: transient failure on %s (attempt %d): %s",
                peer.id, ref, peer.retry_count + 1, err.reason,
            )
        else:
            await self._write(self.store.record_fault, peer.id, err.reason, Fault.PERMANENT)
            logger.error("peer %d: permanent failure on %s: %s", peer.id, ref, err.reason)


class ReconcileLoop:
    """
    Passe périodique (interval) ou déclenchée à la demande. Un trigger
    reçu pendant une passe provoque exactement une passe de plus.
    """

    def __init__(self, reconciler: Reconciler, interval: float = 5.0):
        self.reconciler = reconciler
        self.interval = interval
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._task = asyncio.create_task(self._run())
        logger.info("reconciliation loop started (every %.1fs)", self.interval)

    def trigger(self) -> None:
        # appelable depuis un thread (handlers API qui écrivent via to_thread)
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._wake.set)
        else:
            self._wake.set()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("reconciliation loop stopped")

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.wait_for(self._wake.wait(), self.interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            try:
                await self.reconciler.reconcile()
            except Exception:
                logger.exception("reconciliation pass failed")
