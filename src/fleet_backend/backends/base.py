# src/fleet_backend/backends/base.py
from __future__ import annotations
import abc
import logging
from pathlib import Path
from typing import Dict, Iterator, Set, Union

from ..errors import CommandError, ConfigError
from ..models import Ack, ActualEntry, BackendError, BackendKind, Peer, PeerStats

logger = logging.getLogger(__name__)

ApplyResult = Union[Ack, BackendError]
StateResult = Union[Set[ActualEntry], BackendError]
StatsResult = Union[Dict[str, PeerStats], BackendError]


class BackendAdapter(abc.ABC):
    """
    Traduit les opérations abstraites sur un peer en mutations propres au
    backend. Les échecs backend sont retournés (BackendError), jamais levés.

    apply_peer et remove_peer doivent être idempotents : ré-appliquer un peer
    déjà présent (même peer_ref) ne crée pas de doublon.
    """

    kind: BackendKind

    @abc.abstractmethod
    async def apply_peer(self, peer: Peer) -> ApplyResult:
        ...

    @abc.abstractmethod
    async def remove_peer(self, peer_ref: str) -> ApplyResult:
        ...

    @abc.abstractmethod
    async def read_actual_state(self) -> StateResult:
        ...

    @abc.abstractmethod
    async def client_config(self, peer: Peer) -> str:
        """
        Configuration côté client (texte). Lève KeyError si absente,
        BackendUnavailable si le backend ne répond pas.
        """

    async def read_stats(self) -> StatsResult:
        """Télémétrie par peer_ref. Optionnel : un backend sans compteurs renvoie {}."""
        return {}

    async def close(self) -> None:
        return None


def classify_command_error(err: CommandError, *, failure_is_permanent: bool) -> BackendError:
    if err.missing:
        return BackendError.permanent(str(err))
    if err.timed_out:
        return BackendError.transient(str(err))
    if failure_is_permanent:
        return BackendError.permanent(str(err))
    return BackendError.transient(str(err))


def write_private_file(path: Path, content: str) -> None:
    # fichiers contenant des clés : 600
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        f.write(content)
    tmp.chmod(0o600)
    tmp.replace(path)


class BackendRegistry:
    """Un adaptateur par BackendKind."""

    def __init__(self) -> None:
        self._adapters: Dict[BackendKind, BackendAdapter] = {}

    def register(self, adapter: BackendAdapter) -> None:
        if adapter.kind in self._adapters:
            raise ConfigError(f"Backend '{adapter.kind.value}' registered twice")
        self._adapters[adapter.kind] = adapter

    def get(self, kind: BackendKind) -> BackendAdapter:
        try:
            return self._adapters[kind]
        except KeyError:
            raise ConfigError(f"Backend '{kind.value}' is not configured") from None

    def __contains__(self, kind: BackendKind) -> bool:
        return kind in self._adapters

    def __iter__(self) -> Iterator[BackendAdapter]:
        # ordre stable pour des passes déterministes
        return iter(sorted(self._adapters.values(), key=lambda a: a.kind.value))

    def kinds(self) -> Set[BackendKind]:
        return set(self._adapters)

    async def close(self) -> None:
        for adapter in self:
            try:
                await adapter.close()
            except Exception:
                logger.exception("error while closing %s adapter", adapter.kind.value)
