# src/fleet_backend/backends/shadowsocks.py
from __future__ import annotations
import asyncio
import logging
from typing import Any, Optional, Union

import aiohttp

from ..config import ShadowsocksConfig
from ..errors import BackendUnavailable
from ..models import Ack, ActualEntry, BackendError, BackendKind, Peer, PeerStats, parse_peer_ref
from .base import ApplyResult, BackendAdapter, StateResult, StatsResult

logger = logging.getLogger(__name__)


class ShadowsocksAdapter(BackendAdapter):
    """
    Access keys Outline via l'API de management (https://host:port/<secret>).
    L'id de l'access key est le peer_ref, ce qui rend PUT idempotent.
    """

    kind = BackendKind.SHADOWSOCKS

    def __init__(self, cfg: ShadowsocksConfig, session: Optional[aiohttp.ClientSession] = None):
        self.cfg = cfg
        self._session = session
        self._owns_session = session is None

    def _ssl(self) -> Any:
        if self.cfg.cert_sha256:
            # Outline publie le sha256 de son certificat auto-signé
            return aiohttp.Fingerprint(bytes.fromhex(self.cfg.cert_sha256.replace(":", "")))
        if not self.cfg.verify_tls:
            return False
        return None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.cfg.timeout),
                headers={"Content-Type": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _call(
        self, method: str, path: str, payload: Optional[dict] = None, ok_missing: bool = False,
    ) -> Union[dict, None, BackendError]:
        url = self.cfg.api_url.rstrip("/") + path
        try:
            async with self._get_session().request(method, url, json=payload, ssl=self._ssl()) as resp:
                if resp.status == 404 and ok_missing:
                    return None
                if resp.status >= 500:
                    return BackendError.transient(f"{method} {path}: HTTP {resp.status}")
                if resp.status >= 400:
                    text = await resp.text()
                    return BackendError.permanent(f"{method} {path}: HTTP {resp.status} {text[:200]}")
                if resp.status == 204:
                    return {}
                return await resp.json(content_type=None) or {}
        except asyncio.TimeoutError:
            return BackendError.transient(f"{method} {path}: timeout")
        except aiohttp.ClientError as e:
            return BackendError.transient(f"{method} {path}: {e}")

    async def _list_keys(self) -> Union[list, BackendError]:
        data = await self._call("GET", "/access-keys")
        if isinstance(data, BackendError):
            return data
        keys = data.get("accessKeys")
        if not isinstance(keys, list):
            return BackendError.transient("GET /access-keys: unexpected payload")
        return keys

    async def _find_key(self, ref: str) -> Union[dict, None, BackendError]:
        keys = await self._list_keys()
        if isinstance(keys, BackendError):
            return keys
        return next((k for k in keys if str(k.get("id")) == ref), None)

    # ---------- Opérations ----------

    async def apply_peer(self, peer: Peer) -> ApplyResult:
        ref = peer.peer_ref
        existing = await self._find_key(ref)
        if isinstance(existing, BackendError):
            return existing
        if existing is not None:
            return Ack(ref, str(existing["id"]), "already present")

        try:
            port = int(peer.address)
        except ValueError:
            return BackendError.permanent(f"invalid shadowsocks port slot '{peer.address}'")

        payload = {"name": peer.name, "method": self.cfg.method, "port": port}
        if self.cfg.data_limit_bytes:
            payload["limit"] = {"bytes": self.cfg.data_limit_bytes}

        created = await self._call("PUT", f"/access-keys/{ref}", payload)
        if isinstance(created, BackendError):
            return created
        if str(created.get("id")) != ref or not created.get("accessUrl"):
            # pas d'accusé structuré : on ne considère pas la clé comme créée
            return BackendError.permanent(f"PUT /access-keys/{ref}: server did not return the access key")

        logger.info("outline access key %s created on port %d", ref, port)
        return Ack(ref, ref)

    async def remove_peer(self, peer_ref: str) -> ApplyResult:
        res = await self._call("DELETE", f"/access-keys/{peer_ref}", ok_missing=True)
        if isinstance(res, BackendError):
            return res
        if res is None:
            return Ack(peer_ref, detail="absent")
        logger.info("outline access key %s deleted", peer_ref)
        return Ack(peer_ref)

    async def read_actual_state(self) -> StateResult:
        keys = await self._list_keys()
        if isinstance(keys, BackendError):
            return keys
        entries = set()
        for k in keys:
            ref = str(k.get("id", ""))
            if parse_peer_ref(ref) is None:
                continue
            port = k.get("port")
            entries.add(ActualEntry(ref, str(port) if port is not None else None))
        return entries

    async def client_config(self, peer: Peer) -> str:
        key = await self._find_key(peer.peer_ref)
        if isinstance(key, BackendError):
            raise BackendUnavailable(self.kind.value, key.reason)
        if key is None:
            raise KeyError(f"No access key for '{peer.name}'")
        return key["accessUrl"] + "\n"

    async def read_stats(self) -> StatsResult:
        # compteur cumulé par access key, pas de sens rx/tx côté Outline
        data = await self._call("GET", "/metrics/transfer")
        if isinstance(data, BackendError):
            return data
        usage = data.get("bytesTransferredByUserId")
        if not isinstance(usage, dict):
            return BackendError.transient("GET /metrics/transfer: unexpected payload")
        return {
            str(ref): PeerStats(str(ref), transfer_bytes=int(total))
            for ref, total in usage.items()
            if parse_peer_ref(str(ref)) is not None
        }
