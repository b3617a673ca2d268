# src/fleet_backend/store.py
from __future__ import annotations
import dataclasses
import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from .errors import DuplicateName, InvalidTransition, NotFound, StaleRecord, ValidationError
from .ipam import AddressPool
from .models import ALLOWED_TRANSITIONS, BackendKind, Fault, Peer, PeerFilter, PeerState, utcnow
from .state import load_state, save_state

logger = logging.getLogger(__name__)


class IdentityStore:
    """
    Registre durable des peers.

    Les enregistrements sont immuables : chaque mutation construit un nouveau
    Peer (version + 1) et le remplace sous un verrou unique, puis l'état est
    persisté de façon atomique. Les lectures ne prennent pas le verrou.
    """

    def __init__(
        self,
        pools: Dict[BackendKind, AddressPool],
        path: Optional[Path] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.pools = dict(pools)
        self.path = path
        self._clock = clock
        self._lock = threading.Lock()
        self._peers: Dict[int, Peer] = {}
        self._next_id = 1
        self._open = False

    # ---------- Cycle de vie ----------

    @classmethod
    def open(
        cls,
        pools: Dict[BackendKind, AddressPool],
        path: Optional[Path] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "IdentityStore":
        store = cls(pools, path, clock)
        if path is not None:
            store._peers, store._next_id = load_state(path)
            store._check_loaded()
        store._open = True
        logger.info("identity store opened (%d peers, path=%s)", len(store._peers), path)
        return store

    def close(self) -> None:
        if not self._open:
            return
        with self._lock:
            self._flush(self._peers, self._next_id)
            self._open = False
        logger.info("identity store closed")

    def __enter__(self) -> "IdentityStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _check_loaded(self) -> None:
        for backend in {p.backend for p in self._peers.values()}:
            if backend not in self.pools:
                logger.warning("state contains %s peers but no pool is configured for it", backend.value)
        seen: Dict[tuple, int] = {}
        for peer in self._peers.values():
            if not peer.holds_address:
                continue
            key = (peer.backend, peer.address)
            if key in seen:
                raise ValidationError(
                    f"state file is inconsistent: peers {seen[key]} and {peer.id} share {peer.address}"
                )
            seen[key] = peer.id

    def _flush(self, peers: Dict[int, Peer], next_id: int) -> None:
        if self.path is not None:
            save_state(peers, next_id, self.path)

    def _ensure_open(self) -> None:
        if not self._open:
            raise RuntimeError("identity store is closed")

    # ---------- Lectures ----------

    def get(self, peer_id: int) -> Peer:
        peer = self._peers.get(peer_id)
        if peer is None:
            raise NotFound(peer_id)
        return peer

    def list(self, flt: Optional[PeerFilter] = None) -> List[Peer]:
        flt = flt or PeerFilter()
        peers = list(self._peers.values())
        return sorted((p for p in peers if flt.matches(p)), key=lambda p: p.id)

    def held_addresses(self, backend: BackendKind) -> Set[str]:
        return {p.address for p in list(self._peers.values()) if p.backend is backend and p.holds_address}

    def _pool(self, backend: BackendKind) -> AddressPool:
        try:
            return self.pools[backend]
        except KeyError:
            raise ValidationError(f"Backend '{backend.value}' is not configured") from None

    def allocate_address(self, backend: BackendKind) -> str:
        """
        Premier slot libre du pool. Ne réserve rien : create() refait
        l'allocation sous le verrou.
        """
        return self._pool(backend).allocate(self.held_addresses(backend))

    # ---------- Mutations ----------

    def _commit(self, peer: Peer, is_new: bool = False) -> Peer:
        # appelé avec self._lock tenu
        peers = dict(self._peers)
        peers[peer.id] = peer
        next_id = self._next_id + 1 if is_new else self._next_id
        self._flush(peers, next_id)
        self._peers = peers
        self._next_id = next_id
        return peer

    def _current(self, peer_id: int, expected_version: Optional[int]) -> Peer:
        peer = self._peers.get(peer_id)
        if peer is None:
            raise NotFound(peer_id)
        if expected_version is not None and peer.version != expected_version:
            raise StaleRecord(peer_id, expected_version, peer.version)
        return peer

    @staticmethod
    def _bump(peer: Peer, **changes) -> Peer:
        return dataclasses.replace(peer, version=peer.version + 1, **changes)

    def create(self, name: str, backend: BackendKind, address: Optional[str] = None) -> int:
        self._ensure_open()
        pool = self._pool(backend)
        with self._lock:
            for p in self._peers.values():
                if p.name == name and p.state is not PeerState.REVOKED:
                    raise DuplicateName(name)

            held = {p.address for p in self._peers.values() if p.backend is backend and p.holds_address}
            if address is None:
                address = pool.allocate(held)
            elif address in held or not pool.contains(address):
                raise ValidationError(f"Address {address} is not available in pool {pool.name}")

            peer = Peer(
                id=self._next_id,
                name=name,
                backend=backend,
                address=address,
                created_at=self._clock(),
            )
            self._commit(peer, is_new=True)

        logger.info("peer %d (%s) created on %s with %s", peer.id, name, backend.value, address)
        return peer.id

    def update_state(self, peer_id: int, new_state: PeerState, expected_version: Optional[int] = None) -> Peer:
        self._ensure_open()
        with self._lock:
            peer = self._current(peer_id, expected_version)
            if new_state not in ALLOWED_TRANSITIONS[peer.state]:
                raise InvalidTransition(peer_id, peer.state.value, new_state.value)
            changes = {"state": new_state}
            if new_state is PeerState.REVOKED:
                changes["revoked_at"] = self._clock()
                changes["next_retry_at"] = None
                changes["retry_count"] = 0
            updated = self._commit(self._bump(peer, **changes))
        logger.info("peer %d: %s -> %s", peer_id, peer.state.value, new_state.value)
        return updated

    def activate(self, peer_id: int, key_version: int, key_material: Optional[str]) -> Peer:
        """
        Enregistre l'ack du backend : Pending -> Active (ou reste Active après
        une rotation), clé enregistrée, compteurs de retry remis à zéro.
        Échoue si le peer a été révoqué ou a tourné de clé entre temps.
        """
        self._ensure_open()
        with self._lock:
            peer = self._current(peer_id, None)
            if peer.state is PeerState.REVOKED:
                raise InvalidTransition(peer_id, peer.state.value, PeerState.ACTIVE.value)
            if peer.key_version != key_version:
                raise StaleRecord(peer_id, key_version, peer.key_version)
            updated = self._commit(self._bump(
                peer,
                state=PeerState.ACTIVE,
                key_material=key_material if key_material is not None else peer.key_material,
                last_error=None,
                fault=None,
                retry_count=0,
                next_retry_at=None,
            ))
        if peer.state is not PeerState.ACTIVE:
            logger.info("peer %d: %s -> active", peer_id, peer.state.value)
        return updated

    def record_fault(
        self,
        peer_id: int,
        reason: str,
        fault: Fault,
        next_retry_at: Optional[datetime] = None,
    ) -> Peer:
        self._ensure_open()
        with self._lock:
            peer = self._current(peer_id, None)
            retry_count = peer.retry_count + 1 if fault is Fault.TRANSIENT else peer.retry_count
            updated = self._commit(self._bump(
                peer,
                last_error=reason,
                fault=fault,
                retry_count=retry_count,
                next_retry_at=next_retry_at,
            ))
        return updated

    def clear_fault(self, peer_id: int) -> Peer:
        self._ensure_open()
        with self._lock:
            peer = self._current(peer_id, None)
            updated = self._commit(self._bump(
                peer, last_error=None, fault=None, retry_count=0, next_retry_at=None,
            ))
        return updated

    def rotate(self, peer_id: int) -> Peer:
        """
        Nouvelle génération de clé sur le même enregistrement (même id,
        même adresse).
        """
        self._ensure_open()
        with self._lock:
            peer = self._current(peer_id, None)
            if peer.state is PeerState.REVOKED:
                raise NotFound(peer_id)
            updated = self._commit(self._bump(
                peer,
                key_version=peer.key_version + 1,
                key_material=None,
                last_error=None,
                fault=None,
                retry_count=0,
                next_retry_at=None,
            ))
        logger.info("peer %d: key rotated (k%d -> k%d)", peer_id, peer.key_version, updated.key_version)
        return updated

    def mark_removed(self, peer_id: int) -> Peer:
        """
        Revoked(final) : le backend a confirmé la suppression, l'adresse
        retourne au pool.
        """
        self._ensure_open()
        with self._lock:
            peer = self._current(peer_id, None)
            if peer.state is not PeerState.REVOKED:
                raise InvalidTransition(peer_id, peer.state.value, "removed")
            if peer.removed_at is not None:
                return peer
            updated = self._commit(self._bump(
                peer, removed_at=self._clock(), last_error=None, fault=None,
                retry_count=0, next_retry_at=None,
            ))
        logger.info("peer %d: removal confirmed, %s released", peer_id, peer.address)
        return updated

    def purge(self, retention: timedelta) -> List[int]:
        self._ensure_open()
        now = self._clock()
        with self._lock:
            doomed = [
                p.id for p in self._peers.values()
                if p.removed_at is not None and now - p.removed_at >= retention
            ]
            if not doomed:
                return []
            peers = {pid: p for pid, p in self._peers.items() if pid not in doomed}
            self._flush(peers, self._next_id)
            self._peers = peers
        logger.info("purged %d removed peers: %s", len(doomed), sorted(doomed))
        return sorted(doomed)
