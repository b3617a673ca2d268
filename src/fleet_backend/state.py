# src/fleet_backend/state.py
from __future__ import annotations
import json
import os
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Tuple

from .models import BackendKind, Fault, Peer, PeerState


DEFAULT_STATE_PATH = Path("data/state.json")
STATE_FORMAT = 1


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def peer_to_dict(p: Peer) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "backend": p.backend.value,
        "address": p.address,
        "state": p.state.value,
        "key_version": p.key_version,
        "key_material": p.key_material,
        "created_at": _dt(p.created_at),
        "revoked_at": _dt(p.revoked_at),
        "removed_at": _dt(p.removed_at),
        "last_error": p.last_error,
        "fault": p.fault.value if p.fault else None,
        "retry_count": p.retry_count,
        "next_retry_at": _dt(p.next_retry_at),
        "version": p.version,
    }


def dict_to_peer(data: dict) -> Peer:
    return Peer(
        id=data["id"],
        name=data["name"],
        backend=BackendKind(data["backend"]),
        address=data["address"],
        state=PeerState(data["state"]),
        key_version=data.get("key_version", 1),
        key_material=data.get("key_material"),
        created_at=_parse_dt(data["created_at"]),
        revoked_at=_parse_dt(data.get("revoked_at")),
        removed_at=_parse_dt(data.get("removed_at")),
        last_error=data.get("last_error"),
        fault=Fault(data["fault"]) if data.get("fault") else None,
        retry_count=data.get("retry_count", 0),
        next_retry_at=_parse_dt(data.get("next_retry_at")),
        version=data.get("version", 1),
    )


def state_to_dict(peers: Dict[int, Peer], next_id: int) -> dict:
    return {
        "format": STATE_FORMAT,
        "next_id": next_id,
        "peers": [peer_to_dict(p) for _, p in sorted(peers.items())],
    }


def dict_to_state(data: dict) -> Tuple[Dict[int, Peer], int]:
    peers = {}
    for raw in data.get("peers", []):
        peer = dict_to_peer(raw)
        peers[peer.id] = peer
    # next_id ne redescend jamais : les ids ne sont pas réutilisés
    next_id = max([data.get("next_id", 1)] + [pid + 1 for pid in peers])
    return peers, next_id


def load_state(path: Optional[Path] = None) -> Tuple[Dict[int, Peer], int]:
    path = path or DEFAULT_STATE_PATH
    if not path.exists():
        return {}, 1
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    return dict_to_state(data)


def save_state(peers: Dict[int, Peer], next_id: int, path: Optional[Path] = None) -> None:
    """
    Écriture atomique : fichier temporaire + fsync + rename, un crash
    laisse soit l'ancien état soit le nouveau.
    """
    path = path or DEFAULT_STATE_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    data = state_to_dict(peers, next_id)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    tmp.chmod(0o600)
    os.replace(tmp, path)
