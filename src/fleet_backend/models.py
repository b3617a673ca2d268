# src/fleet_backend/models.py
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, List, Optional


class BackendKind(str, Enum):
    WIREGUARD = "wireguard"
    OPENVPN = "openvpn"
    SHADOWSOCKS = "shadowsocks"


class PeerState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    REVOKED = "revoked"


class Fault(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


# Transitions autorisées (monotones, jamais de retour arrière)
ALLOWED_TRANSITIONS = {
    PeerState.PENDING: {PeerState.ACTIVE, PeerState.REVOKED},
    PeerState.ACTIVE: {PeerState.REVOKED},
    PeerState.REVOKED: set(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_peer_ref(backend: BackendKind, peer_id: int, key_version: int) -> str:
    return f"{backend.value}-{peer_id}-k{key_version}"


def parse_peer_ref(ref: str) -> Optional[tuple[BackendKind, int, int]]:
    """
    Inverse de make_peer_ref. Retourne None pour une entrée backend
    qui n'a pas été créée par nous.
    """
    parts = ref.rsplit("-", 2)
    if len(parts) != 3 or not parts[2].startswith("k"):
        return None
    try:
        return BackendKind(parts[0]), int(parts[1]), int(parts[2][1:])
    except ValueError:
        return None


@dataclass(frozen=True)
class Peer:
    id: int
    name: str
    backend: BackendKind
    address: str                       # ex "10.8.0.2/32" ou "20001" (port shadowsocks)
    state: PeerState = PeerState.PENDING
    key_version: int = 1
    key_material: Optional[str] = None  # clé publique / serial du cert / id de l'access key
    created_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None
    removed_at: Optional[datetime] = None  # suppression confirmée par le backend
    last_error: Optional[str] = None
    fault: Optional[Fault] = None
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    version: int = 1

    @property
    def peer_ref(self) -> str:
        return make_peer_ref(self.backend, self.id, self.key_version)

    @property
    def holds_address(self) -> bool:
        # un peer révoqué garde son adresse tant que le backend n'a pas confirmé
        return self.removed_at is None

    @property
    def is_desired(self) -> bool:
        return self.state is not PeerState.REVOKED and self.fault is not Fault.PERMANENT


@dataclass(frozen=True)
class PeerFilter:
    backend: Optional[BackendKind] = None
    states: Optional[FrozenSet[PeerState]] = None
    include_removed: bool = True

    def matches(self, peer: Peer) -> bool:
        if self.backend is not None and peer.backend is not self.backend:
            return False
        if self.states is not None and peer.state not in self.states:
            return False
        if not self.include_removed and peer.removed_at is not None:
            return False
        return True


@dataclass(frozen=True)
class PeerStatus:
    id: int
    name: str
    backend: BackendKind
    state: PeerState
    address: str
    key_material: Optional[str]
    last_error: Optional[str]
    fault: Optional[Fault]
    retry_count: int
    removal_pending: bool

    @classmethod
    def from_peer(cls, peer: Peer) -> "PeerStatus":
        return cls(
            id=peer.id,
            name=peer.name,
            backend=peer.backend,
            state=peer.state,
            address=peer.address,
            key_material=peer.key_material,
            last_error=peer.last_error,
            fault=peer.fault,
            retry_count=peer.retry_count,
            removal_pending=peer.state is PeerState.REVOKED and peer.removed_at is None,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "backend": self.backend.value,
            "state": self.state.value,
            "address": self.address,
            "keyMaterial": self.key_material,
            "lastError": self.last_error,
            "fault": self.fault.value if self.fault else None,
            "retryCount": self.retry_count,
            "removalPending": self.removal_pending,
        }


# ---------- Résultats backend ----------

class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class Ack:
    peer_ref: str
    key_material: Optional[str] = None
    detail: str = ""


@dataclass(frozen=True)
class BackendError:
    kind: ErrorKind
    reason: str

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT

    @classmethod
    def transient(cls, reason: str) -> "BackendError":
        return cls(ErrorKind.TRANSIENT, reason)

    @classmethod
    def permanent(cls, reason: str) -> "BackendError":
        return cls(ErrorKind.PERMANENT, reason)


@dataclass(frozen=True)
class ActualEntry:
    peer_ref: str
    address: Optional[str]


@dataclass(frozen=True)
class PeerStats:
    """Télémétrie d'un peer telle que le backend la voit (champs inconnus : None)."""

    peer_ref: str
    rx_bytes: Optional[int] = None
    tx_bytes: Optional[int] = None
    transfer_bytes: Optional[int] = None   # total, seul chiffre fourni par Outline
    latest_handshake: Optional[datetime] = None
    connected: Optional[bool] = None
    endpoint: Optional[str] = None

    def to_dict(self) -> dict:
        total = self.transfer_bytes
        if total is None and self.rx_bytes is not None and self.tx_bytes is not None:
            total = self.rx_bytes + self.tx_bytes
        return {
            "peerRef": self.peer_ref,
            "rxBytes": self.rx_bytes,
            "txBytes": self.tx_bytes,
            "transferBytes": total,
            "latestHandshake": self.latest_handshake.isoformat() if self.latest_handshake else None,
            "connected": self.connected,
            "endpoint": self.endpoint,
        }


# ---------- Plan de réconciliation ----------

class OpKind(str, Enum):
    REMOVE = "remove"
    APPLY = "apply"


@dataclass(frozen=True)
class PlannedOperation:
    op: OpKind
    peer_ref: str
    backend: BackendKind
    peer_id: Optional[int] = None  # None pour une entrée backend inconnue

    @property
    def sort_key(self) -> tuple:
        # entrées orphelines d'abord, puis id croissant, remove avant apply
        return (
            -1 if self.peer_id is None else self.peer_id,
            0 if self.op is OpKind.REMOVE else 1,
            self.peer_ref,
        )


@dataclass
class ReconcileReport:
    applied: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    finalised: List[int] = field(default_factory=list)
    promoted: List[int] = field(default_factory=list)

    @property
    def operations(self) -> int:
        return len(self.applied) + len(self.removed) + len(self.failed)

    def to_dict(self) -> dict:
        return {
            "applied": list(self.applied),
            "removed": list(self.removed),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
            "finalised": list(self.finalised),
            "promoted": list(self.promoted),
        }
