# src/fleet_backend/lifecycle.py
from __future__ import annotations
import io
import logging
import re
from typing import Callable, Dict, List, Optional, Tuple, Union

import qrcode

from .backends import BackendRegistry
from .errors import BackendUnavailable, InvalidTransition, NotFound, ValidationError
from .models import BackendError, BackendKind, Fault, Peer, PeerFilter, PeerState, PeerStats, PeerStatus
from .store import IdentityStore

logger = logging.getLogger(__name__)

NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,50}$")


def parse_backend(value: Union[str, BackendKind]) -> BackendKind:
    if isinstance(value, BackendKind):
        return value
    try:
        return BackendKind(str(value).lower())
    except ValueError:
        choices = ", ".join(k.value for k in BackendKind)
        raise ValidationError(f"Unknown backend '{value}' (expected one of: {choices})") from None


class LifecycleManager:
    """
    Point d'entrée des opérations de gestion (API, CLI).

    Les mutations passent par le store (atomiques) puis déclenchent une
    réconciliation asynchrone via `trigger` ; aucune opération n'attend
    l'accusé du backend.
    """

    def __init__(
        self,
        store: IdentityStore,
        registry: BackendRegistry,
        trigger: Optional[Callable[[], None]] = None,
    ):
        self.store = store
        self.registry = registry
        self._trigger = trigger or (lambda: None)

    def set_trigger(self, trigger: Callable[[], None]) -> None:
        self._trigger = trigger

    def _active(self, peer_id: int) -> Peer:
        peer = self.store.get(peer_id)
        if peer.state is PeerState.REVOKED:
            raise NotFound(peer_id)
        return peer

    # ---------- Opérations publiques ----------

    def add_peer(self, name: str, backend: Union[str, BackendKind]) -> int:
        if not isinstance(name, str) or not NAME_RE.match(name):
            raise ValidationError("Peer name must be 1-50 characters of letters, digits, '-' or '_'")
        kind = parse_backend(backend)
        if kind not in self.registry:
            raise ValidationError(f"Backend '{kind.value}' is not configured")

        # nom unique + allocation + création en une seule mutation
        peer_id = self.store.create(name, kind)
        self._trigger()
        return peer_id

    def revoke_peer(self, peer_id: int) -> None:
        peer = self._active(peer_id)
        try:
            self.store.update_state(peer.id, PeerState.REVOKED)
        except InvalidTransition:
            # révoqué entre temps par un autre appel
            raise NotFound(peer_id) from None
        logger.info("peer %d (%s) revoked", peer.id, peer.name)
        self._trigger()

    def get_peer_status(self, peer_id: int) -> PeerStatus:
        return PeerStatus.from_peer(self.store.get(peer_id))

    def rotate_key(self, peer_id: int) -> None:
        self._active(peer_id)
        # même id, même adresse : pas de double allocation
        self.store.rotate(peer_id)
        self._trigger()

    def retry_peer(self, peer_id: int) -> None:
        """Action opérateur : relance un peer en faute permanente."""
        peer = self.store.get(peer_id)
        if peer.removed_at is not None:
            raise NotFound(peer_id)
        if peer.fault is not Fault.PERMANENT:
            raise ValidationError(f"Peer {peer_id} has no permanent fault to clear")
        self.store.clear_fault(peer_id)
        self._trigger()

    def list_peers(
        self,
        backend: Optional[Union[str, BackendKind]] = None,
        include_revoked: bool = False,
    ) -> List[PeerStatus]:
        states = None if include_revoked else frozenset({PeerState.PENDING, PeerState.ACTIVE})
        flt = PeerFilter(backend=parse_backend(backend) if backend else None, states=states)
        return [PeerStatus.from_peer(p) for p in self.store.list(flt)]

    # ---------- Configs client ----------

    async def client_config(self, peer_id: int) -> str:
        peer = self._active(peer_id)
        if peer.state is not PeerState.ACTIVE or peer.key_material is None:
            raise ValidationError(f"Peer {peer_id} is not active yet")
        adapter = self.registry.get(peer.backend)
        try:
            return await adapter.client_config(peer)
        except KeyError:
            raise NotFound(peer_id) from None

    async def client_qr_png(self, peer_id: int) -> bytes:
        conf = await self.client_config(peer_id)
        img = qrcode.make(conf)
        buf = io.BytesIO()
        img.save(buf)
        return buf.getvalue()

    # ---------- Télémétrie ----------

    async def _read_stats(self, kind: BackendKind) -> Dict[str, PeerStats]:
        adapter = self.registry.get(kind)
        result = await adapter.read_stats()
        if isinstance(result, BackendError):
            raise BackendUnavailable(kind.value, result.reason)
        return result

    async def peer_stats(self, peer_id: int) -> PeerStats:
        peer = self._active(peer_id)
        stats = await self._read_stats(peer.backend)
        return stats.get(peer.peer_ref, PeerStats(peer.peer_ref))

    async def fleet_stats(
        self, backend: Optional[Union[str, BackendKind]] = None,
    ) -> Tuple[List[Tuple[PeerStatus, PeerStats]], List[str]]:
        """
        Compteurs de tous les peers actifs. Retourne aussi les backends
        injoignables, ignorés plutôt que de faire échouer toute la requête.
        """
        if backend:
            kinds = [parse_backend(backend)]
            if kinds[0] not in self.registry:
                raise ValidationError(f"Backend '{kinds[0].value}' is not configured")
        else:
            kinds = [adapter.kind for adapter in self.registry]

        rows: List[Tuple[PeerStatus, PeerStats]] = []
        unavailable: List[str] = []
        for kind in kinds:
            try:
                stats = await self._read_stats(kind)
            except BackendUnavailable as e:
                if backend:
                    raise
                logger.warning("%s", e)
                unavailable.append(kind.value)
                continue
            flt = PeerFilter(backend=kind, states=frozenset({PeerState.ACTIVE}))
            for peer in self.store.list(flt):
                rows.append((PeerStatus.from_peer(peer), stats.get(peer.peer_ref, PeerStats(peer.peer_ref))))
        return rows, unavailable
