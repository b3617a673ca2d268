# src/fleet_backend/backends/wireguard.py
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

from ..config import WireGuardConfig
from ..errors import CommandError
from ..models import Ack, ActualEntry, BackendError, BackendKind, Peer, PeerStats, parse_peer_ref
from ..runner import CommandRunner
from .base import ApplyResult, BackendAdapter, StateResult, StatsResult, classify_command_error, write_private_file

logger = logging.getLogger(__name__)


# ---------- Table des peers (fichier serveur) ----------

@dataclass
class PeerBlock:
    public_key: str
    allowed_ips: str
    preshared_key: Optional[str] = None
    ref: Optional[str] = None   # None : peer ajouté à la main, on n'y touche pas
    name: Optional[str] = None
    extra: List[str] = field(default_factory=list)


@dataclass
class ServerConf:
    address: str
    listen_port: int
    private_key: str
    extra: List[str] = field(default_factory=list)  # PostUp, MTU...
    peers: List[PeerBlock] = field(default_factory=list)

    def find(self, ref: str) -> Optional[PeerBlock]:
        return next((p for p in self.peers if p.ref == ref), None)


def _split_kv(line: str) -> tuple[str, str]:
    key, _, value = line.partition("=")
    return key.strip(), value.strip()


def parse_server_conf(text: str) -> ServerConf:
    interface: dict = {}
    iface_extra: List[str] = []
    peers: List[PeerBlock] = []
    section = None
    current: Optional[dict] = None

    def flush_peer():
        if current is not None:
            peers.append(PeerBlock(
                public_key=current.get("PublicKey", ""),
                allowed_ips=current.get("AllowedIPs", ""),
                preshared_key=current.get("PresharedKey"),
                ref=current.get("Ref"),
                name=current.get("Name"),
                extra=current["_extra"],
            ))

    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        if line == "[Interface]":
            flush_peer()
            current = None
            section = "interface"
            continue
        if line == "[Peer]":
            flush_peer()
            current = {"_extra": []}
            section = "peer"
            continue

        if line.startswith("#"):
            body = line.lstrip("#").strip()
            key, value = _split_kv(body)
            if section == "peer" and key in ("Ref", "Name") and value:
                current[key] = value
            continue

        key, value = _split_kv(line)
        if section == "interface":
            if key in ("Address", "ListenPort", "PrivateKey"):
                interface[key] = value
            else:
                iface_extra.append(line)
        elif section == "peer":
            if key in ("PublicKey", "AllowedIPs", "PresharedKey"):
                current[key] = value
            else:
                current["_extra"].append(line)
    flush_peer()

    return ServerConf(
        address=interface.get("Address", ""),
        listen_port=int(interface.get("ListenPort", "0") or 0),
        private_key=interface.get("PrivateKey", ""),
        extra=iface_extra,
        peers=peers,
    )


# ---------- Rendu des configs ----------

def render_server_conf(conf: ServerConf) -> str:
    lines = [
        "[Interface]",
        f"Address = {conf.address}",
        f"ListenPort = {conf.listen_port}",
        f"PrivateKey = {conf.private_key}",
        *conf.extra,
        "",  # blank line
    ]

    for p in conf.peers:
        lines.append("[Peer]")
        if p.ref:
            lines.append(f"# Ref = {p.ref}")
        if p.name:
            lines.append(f"# Name = {p.name}")
        lines.append(f"PublicKey = {p.public_key}")
        if p.preshared_key:
            lines.append(f"PresharedKey = {p.preshared_key}")
        lines.append(f"AllowedIPs = {p.allowed_ips}")
        lines.extend(p.extra)
        lines.append("")  # blank

    return "\n".join(lines).strip() + "\n"


def render_client_conf(
    cfg: WireGuardConfig,
    address: str,
    private_key: str,
    server_public_key: str,
    preshared_key: Optional[str] = None,
) -> str:
    lines = [
        "[Interface]",
        f"Address = {address}",
        f"PrivateKey = {private_key}",
    ]

    if cfg.dns:
        lines.append(f"DNS = {', '.join(cfg.dns)}")

    lines += [
        "",
        "[Peer]",
        f"PublicKey = {server_public_key}",
    ]

    if preshared_key:
        lines.append(f"PresharedKey = {preshared_key}")

    lines.append(f"AllowedIPs = {', '.join(cfg.client_allowed_ips or [cfg.network_cidr])}")

    if cfg.endpoint:
        lines.append(f"Endpoint = {cfg.endpoint}")

    # keepalive pour le roaming téléphone
    lines.append("PersistentKeepalive = 25")

    return "\n".join(lines).strip() + "\n"


# ---------- wg show <iface> dump ----------

# au-delà, le noyau refuse la session sans nouveau handshake
HANDSHAKE_TIMEOUT = timedelta(seconds=180)


@dataclass
class DumpPeer:
    public_key: str
    endpoint: Optional[str]
    allowed_ips: str
    latest_handshake: Optional[datetime]
    rx_bytes: int
    tx_bytes: int


def parse_dump(text: str) -> Dict[str, DumpPeer]:
    """
    Sortie de `wg show <iface> dump` -> {clé publique: compteurs}.

    Première ligne : l'interface (4 champs). Puis un peer par ligne,
    séparé par des tabulations : clé publique, psk, endpoint, allowed ips,
    dernier handshake (epoch, 0 si jamais), rx, tx, keepalive.
    """
    peers = {}
    for line in text.splitlines()[1:]:
        fields = line.split("\t")
        if len(fields) < 8:
            continue
        try:
            handshake = int(fields[4])
            rx, tx = int(fields[5]), int(fields[6])
        except ValueError:
            continue
        peers[fields[0]] = DumpPeer(
            public_key=fields[0],
            endpoint=None if fields[2] == "(none)" else fields[2],
            allowed_ips=fields[3],
            latest_handshake=datetime.fromtimestamp(handshake, timezone.utc) if handshake else None,
            rx_bytes=rx,
            tx_bytes=tx,
        )
    return peers


# ---------- Adaptateur ----------

class WireGuardAdapter(BackendAdapter):
    kind = BackendKind.WIREGUARD

    def __init__(self, cfg: WireGuardConfig, runner: Optional[CommandRunner] = None):
        self.cfg = cfg
        self.runner = runner or CommandRunner()
        self._lock = asyncio.Lock()
        self._server_public_key: Optional[str] = None

    @property
    def server_conf_path(self) -> Path:
        return Path(self.cfg.config_dir) / f"{self.cfg.interface}.conf"

    def client_conf_path(self, peer_ref: str) -> Path:
        return Path(self.cfg.clients_dir) / f"{peer_ref}.conf"

    @property
    def reload_marker_path(self) -> Path:
        return Path(self.cfg.config_dir) / f"{self.cfg.interface}.reload-pending"

    # Le fichier serveur peut être en avance sur le noyau (reload échoué,
    # process redémarré). Le marqueur survit au process : tant qu'il existe,
    # le fichier ne fait pas foi.
    @property
    def _reload_pending(self) -> bool:
        return self.reload_marker_path.exists()

    @_reload_pending.setter
    def _reload_pending(self, pending: bool) -> None:
        if pending:
            self.reload_marker_path.parent.mkdir(parents=True, exist_ok=True)
            self.reload_marker_path.touch()
        else:
            self.reload_marker_path.unlink(missing_ok=True)

    # ---------- Génération de clés ----------

    async def generate_keypair(self) -> tuple[str, str]:
        priv = (await self.runner.run(["wg", "genkey"])).stdout.strip()
        # pubkey lit la clé privée sur stdin
        pub = (await self.runner.run(["wg", "pubkey"], input=priv + "\n")).stdout.strip()
        if not priv or not pub:
            raise CommandError(["wg", "pubkey"], 1, "empty key")
        return priv, pub

    async def generate_preshared_key(self) -> str:
        return (await self.runner.run(["wg", "genpsk"])).stdout.strip()

    async def _server_public(self, conf: ServerConf) -> str:
        if self._server_public_key is None:
            res = await self.runner.run(["wg", "pubkey"], input=conf.private_key + "\n")
            self._server_public_key = res.stdout.strip()
        return self._server_public_key

    # ---------- Fichier serveur ----------

    async def _load(self) -> ServerConf:
        path = self.server_conf_path
        if path.exists():
            return parse_server_conf(path.read_text(encoding="utf-8"))

        # première utilisation : on initialise l'interface
        private_key, public_key = await self.generate_keypair()
        self._server_public_key = public_key
        conf = ServerConf(
            address=self.cfg.server_address,
            listen_port=self.cfg.listen_port,
            private_key=private_key,
        )
        self._save(conf)
        logger.info("initialised %s with address %s", path, conf.address)
        return conf

    def _save(self, conf: ServerConf) -> None:
        if self.cfg.reload:
            # posé avant l'écriture : un crash entre les deux force un reload
            self._reload_pending = True
        write_private_file(self.server_conf_path, render_server_conf(conf))

    async def _reload(self) -> None:
        if not self.cfg.reload:
            self._reload_pending = False
            return
        self._reload_pending = True
        # équivalent de : wg syncconf wg0 <(wg-quick strip wg0)
        stripped = await self.runner.run(["wg-quick", "strip", str(self.server_conf_path)])
        await self.runner.run(["wg", "syncconf", self.cfg.interface, "/dev/stdin"], input=stripped.stdout)
        self._reload_pending = False
        logger.debug("%s reloaded", self.cfg.interface)

    # ---------- Opérations ----------

    async def apply_peer(self, peer: Peer) -> ApplyResult:
        ref = peer.peer_ref
        async with self._lock:
            try:
                conf = await self._load()
                existing = conf.find(ref)
                if existing is not None:
                    if self._reload_pending:
                        # bloc écrit par une tentative précédente, jamais chargé
                        try:
                            await self._reload()
                        except CommandError as e:
                            return classify_command_error(e, failure_is_permanent=False)
                    return Ack(ref, existing.public_key, "already present")

                clash = next((p for p in conf.peers if p.allowed_ips == peer.address), None)
                if clash is not None:
                    owner = parse_peer_ref(clash.ref) if clash.ref else None
                    if owner is not None and owner[1] == peer.id:
                        # ancienne clé du même peer pas encore retirée
                        return BackendError.transient(f"previous key {clash.ref} still holds {peer.address}")
                    return BackendError.permanent(f"address {peer.address} already used by another peer")

                priv, pub = await self.generate_keypair()
                psk = await self.generate_preshared_key() if self.cfg.with_preshared else None
                server_pub = await self._server_public(conf)
            except CommandError as e:
                return classify_command_error(e, failure_is_permanent=True)
            except OSError as e:
                return BackendError.permanent(f"cannot write {self.server_conf_path}: {e}")

            try:
                # la clé privée ne vit que dans la config client
                write_private_file(
                    self.client_conf_path(ref),
                    render_client_conf(self.cfg, peer.address, priv, server_pub, psk),
                )
                conf.peers.append(PeerBlock(
                    public_key=pub, allowed_ips=peer.address, preshared_key=psk, ref=ref, name=peer.name,
                ))
                self._save(conf)
            except OSError as e:
                return BackendError.permanent(f"cannot write {self.server_conf_path}: {e}")

            try:
                await self._reload()
            except CommandError as e:
                return classify_command_error(e, failure_is_permanent=False)

        logger.info("wireguard peer %s added (%s)", ref, peer.address)
        return Ack(ref, pub)

    async def remove_peer(self, peer_ref: str) -> ApplyResult:
        async with self._lock:
            try:
                if not self.server_conf_path.exists():
                    return Ack(peer_ref, detail="absent")
                conf = parse_server_conf(self.server_conf_path.read_text(encoding="utf-8"))
                before = len(conf.peers)
                conf.peers = [p for p in conf.peers if p.ref != peer_ref]
                if len(conf.peers) != before:
                    self._save(conf)
                self.client_conf_path(peer_ref).unlink(missing_ok=True)
            except OSError as e:
                return BackendError.permanent(f"cannot update {self.server_conf_path}: {e}")

            if len(conf.peers) == before and not self._reload_pending:
                return Ack(peer_ref, detail="absent")
            try:
                await self._reload()
            except CommandError as e:
                return classify_command_error(e, failure_is_permanent=False)

        logger.info("wireguard peer %s removed", peer_ref)
        return Ack(peer_ref)

    async def read_actual_state(self) -> StateResult:
        async with self._lock:
            if self._reload_pending:
                # le fichier n'est pas encore appliqué côté noyau
                try:
                    await self._reload()
                except CommandError as e:
                    return classify_command_error(e, failure_is_permanent=False)
            if not self.server_conf_path.exists():
                return set()
            try:
                conf = parse_server_conf(self.server_conf_path.read_text(encoding="utf-8"))
            except OSError as e:
                return BackendError.transient(f"cannot read {self.server_conf_path}: {e}")

        return {
            ActualEntry(p.ref, p.allowed_ips)
            for p in conf.peers
            if p.ref and parse_peer_ref(p.ref) is not None
        }

    async def client_config(self, peer: Peer) -> str:
        path = self.client_conf_path(peer.peer_ref)
        if not path.exists():
            raise KeyError(f"No client configuration for '{peer.name}'")
        return path.read_text(encoding="utf-8")

    async def read_stats(self) -> StatsResult:
        if not self.server_conf_path.exists():
            return {}
        try:
            dump = await self.runner.run(["wg", "show", self.cfg.interface, "dump"])
            conf = parse_server_conf(self.server_conf_path.read_text(encoding="utf-8"))
        except CommandError as e:
            return classify_command_error(e, failure_is_permanent=False)
        except OSError as e:
            return BackendError.transient(f"cannot read {self.server_conf_path}: {e}")

        live = parse_dump(dump.stdout)
        now = datetime.now(timezone.utc)
        stats = {}
        # le noyau ne connaît que les clés publiques, le fichier donne la ref
        for block in conf.peers:
            if not block.ref or parse_peer_ref(block.ref) is None:
                continue
            peer = live.get(block.public_key)
            if peer is None:
                continue
            stats[block.ref] = PeerStats(
                peer_ref=block.ref,
                rx_bytes=peer.rx_bytes,
                tx_bytes=peer.tx_bytes,
                latest_handshake=peer.latest_handshake,
                connected=peer.latest_handshake is not None and now - peer.latest_handshake < HANDSHAKE_TIMEOUT,
                endpoint=peer.endpoint,
            )
        return stats
