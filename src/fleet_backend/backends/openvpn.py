# src/fleet_backend/backends/openvpn.py
from __future__ import annotations
import asyncio
import ipaddress
import logging
import re
from pathlib import Path
from typing import Dict, Optional, Set

from ..config import OpenVPNConfig
from ..errors import CommandError
from ..models import Ack, ActualEntry, BackendError, BackendKind, Peer, PeerStats, parse_peer_ref
from ..runner import CommandRunner
from .base import ApplyResult, BackendAdapter, StateResult, StatsResult, classify_command_error, write_private_file

logger = logging.getLogger(__name__)

_CN_RE = re.compile(r"/CN=([^/]+)")
_PEM_RE = re.compile(r"-----BEGIN CERTIFICATE-----.*?-----END CERTIFICATE-----", re.S)


def _index_entries(text: str):
    for line in text.splitlines():
        fields = line.split("\t")
        if len(fields) < 6:
            continue
        m = _CN_RE.search(fields[5])
        if m:
            yield fields[0], m.group(1), fields[3]


def parse_index(text: str) -> Dict[str, str]:
    """
    pki/index.txt d'easy-rsa -> {common_name: serial} des certificats valides.

    Format : statut, expiration, date de révocation, serial, fichier, DN
    (séparés par des tabulations, la date de révocation est vide pour V).
    """
    return {cn: serial for status, cn, serial in _index_entries(text) if status == "V"}


def parse_revoked(text: str) -> Set[str]:
    return {cn for status, cn, _ in _index_entries(text) if status == "R"}


def parse_status(text: str) -> Dict[str, PeerStats]:
    """
    Fichier `status` du serveur OpenVPN, versions 1 (section CLIENT LIST)
    et 2/3 (lignes CLIENT_LIST, virgules ou tabulations).
    """
    clients = {}
    in_v1_list = False
    for line in text.splitlines():
        fields = re.split(r"[,\t]", line.strip())
        if fields[0] == "CLIENT_LIST" and len(fields) >= 8:
            cn, real, rx, tx = fields[1], fields[2], fields[5], fields[6]
        elif fields[0] == "Common Name":
            in_v1_list = True
            continue
        elif fields[0] in ("ROUTING TABLE", "GLOBAL STATS", "END"):
            in_v1_list = False
            continue
        elif in_v1_list and len(fields) >= 4:
            cn, real, rx, tx = fields[0], fields[1], fields[2], fields[3]
        else:
            continue
        try:
            clients[cn] = PeerStats(cn, rx_bytes=int(rx), tx_bytes=int(tx), connected=True, endpoint=real)
        except ValueError:
            continue
    return clients


class OpenVPNAdapter(BackendAdapter):
    kind = BackendKind.OPENVPN

    def __init__(self, cfg: OpenVPNConfig, runner: Optional[CommandRunner] = None):
        self.cfg = cfg
        self.runner = runner or CommandRunner()
        self._lock = asyncio.Lock()

    # ---------- Chemins ----------

    @property
    def pki(self) -> Path:
        return Path(self.cfg.easyrsa_dir) / "pki"

    def ccd_path(self, ref: str) -> Path:
        return Path(self.cfg.ccd_dir) / ref

    def profile_path(self, ref: str) -> Path:
        return Path(self.cfg.clients_dir) / f"{ref}.ovpn"

    def _easyrsa(self, *args: str) -> list:
        return [str(Path(self.cfg.easyrsa_dir) / "easyrsa"), "--batch", *args]

    def _index_text(self) -> str:
        index = self.pki / "index.txt"
        if not index.exists():
            return ""
        return index.read_text(encoding="utf-8")

    def _valid_certs(self) -> Dict[str, str]:
        return parse_index(self._index_text())

    def _crl_stale(self) -> bool:
        """
        La CRL date d'avant la dernière modification de l'index : une
        révocation n'a pas encore été publiée, OpenVPN accepte encore le
        certificat.
        """
        index, crl = self.pki / "index.txt", self.pki / "crl.pem"
        if not index.exists():
            return False
        return not crl.exists() or crl.stat().st_mtime < index.stat().st_mtime

    def _unpublished_revocations(self) -> Set[str]:
        if not self._crl_stale():
            return set()
        return parse_revoked(self._index_text())

    # ---------- Rendu ----------

    def render_ccd(self, address: str) -> str:
        net = ipaddress.ip_network(self.cfg.network_cidr)
        host = address.split("/")[0]
        return f"ifconfig-push {host} {net.netmask}\n"

    def render_profile(self, ref: str) -> str:
        ca = (self.pki / "ca.crt").read_text(encoding="utf-8").strip()
        cert_text = (self.pki / "issued" / f"{ref}.crt").read_text(encoding="utf-8")
        # easy-rsa met le dump texte devant le PEM
        m = _PEM_RE.search(cert_text)
        cert = m.group(0) if m else cert_text.strip()
        key = (self.pki / "private" / f"{ref}.key").read_text(encoding="utf-8").strip()

        lines = [
            "client",
            "dev tun",
            f"proto {self.cfg.proto}",
            f"remote {self.cfg.remote_host} {self.cfg.remote_port}",
            "resolv-retry infinite",
            "nobind",
            "persist-key",
            "persist-tun",
            "remote-cert-tls server",
            f"cipher {self.cfg.cipher}",
            f"auth {self.cfg.auth}",
            "verb 3",
            "<ca>", ca, "</ca>",
            "<cert>", cert, "</cert>",
            "<key>", key, "</key>",
        ]
        if self.cfg.tls_crypt_key:
            tc = Path(self.cfg.tls_crypt_key).read_text(encoding="utf-8").strip()
            lines += ["<tls-crypt>", tc, "</tls-crypt>"]
        return "\n".join(lines) + "\n"

    def _write_client_files(self, ref: str, address: str) -> None:
        ccd = self.ccd_path(ref)
        ccd.parent.mkdir(parents=True, exist_ok=True)
        ccd.write_text(self.render_ccd(address), encoding="utf-8")
        write_private_file(self.profile_path(ref), self.render_profile(ref))

    # ---------- Opérations ----------

    async def apply_peer(self, peer: Peer) -> ApplyResult:
        ref = peer.peer_ref
        async with self._lock:
            try:
                valid = self._valid_certs()
                if ref not in valid:
                    await self.runner.run(
                        self._easyrsa("build-client-full", ref, "nopass"),
                        cwd=Path(self.cfg.easyrsa_dir),
                    )
                    valid = self._valid_certs()
                # accusé structuré : le certificat doit exister et être valide
                if ref not in valid or not (self.pki / "issued" / f"{ref}.crt").exists():
                    return BackendError.permanent(f"easyrsa did not issue a certificate for {ref}")
                self._write_client_files(ref, peer.address)
            except CommandError as e:
                return classify_command_error(e, failure_is_permanent=True)
            except OSError as e:
                return BackendError.transient(f"cannot write client files for {ref}: {e}")

        logger.info("openvpn client %s issued (serial %s, %s)", ref, valid[ref], peer.address)
        return Ack(ref, valid[ref])

    async def remove_peer(self, peer_ref: str) -> ApplyResult:
        async with self._lock:
            try:
                detail = "absent"
                just_revoked = False
                if peer_ref in self._valid_certs():
                    try:
                        await self.runner.run(self._easyrsa("revoke", peer_ref), cwd=Path(self.cfg.easyrsa_dir))
                    except CommandError as e:
                        return classify_command_error(e, failure_is_permanent=True)
                    if peer_ref in self._valid_certs():
                        return BackendError.permanent(f"certificate {peer_ref} is still valid after revoke")
                    just_revoked = True
                # ou révoqué lors d'une tentative précédente, CRL jamais régénérée
                if just_revoked or peer_ref in self._unpublished_revocations():
                    try:
                        await self.runner.run(self._easyrsa("gen-crl"), cwd=Path(self.cfg.easyrsa_dir))
                    except CommandError as e:
                        return classify_command_error(e, failure_is_permanent=False)
                    if self._crl_stale():
                        return BackendError.transient("easyrsa gen-crl did not refresh crl.pem")
                    detail = "revoked"
                self.ccd_path(peer_ref).unlink(missing_ok=True)
                self.profile_path(peer_ref).unlink(missing_ok=True)
            except OSError as e:
                return BackendError.transient(f"cannot remove client files for {peer_ref}: {e}")

        logger.info("openvpn client %s %s", peer_ref, detail)
        return Ack(peer_ref, detail=detail)

    async def read_actual_state(self) -> StateResult:
        async with self._lock:
            try:
                valid = self._valid_certs()
                # un certificat révoqué absent de la CRL est encore accepté
                pending = self._unpublished_revocations()
            except OSError as e:
                return BackendError.transient(f"cannot read easy-rsa index: {e}")
            entries = set()
            for cn in valid:
                if parse_peer_ref(cn) is None:
                    continue
                address = None
                ccd = self.ccd_path(cn)
                if ccd.exists():
                    parts = ccd.read_text(encoding="utf-8").split()
                    if len(parts) >= 2 and parts[0] == "ifconfig-push":
                        address = f"{parts[1]}/32"
                entries.add(ActualEntry(cn, address))
            entries.update(ActualEntry(cn, None) for cn in pending if parse_peer_ref(cn) is not None)
        return entries

    async def read_stats(self) -> StatsResult:
        status = Path(self.cfg.status_file)
        try:
            valid = self._valid_certs()
            if not status.exists():
                return {}
            connected = parse_status(status.read_text(encoding="utf-8"))
        except OSError as e:
            return BackendError.transient(f"cannot read {status}: {e}")

        stats = {}
        for cn in valid:
            if parse_peer_ref(cn) is None:
                continue
            stats[cn] = connected.get(cn, PeerStats(cn, connected=False))
        return stats

    async def client_config(self, peer: Peer) -> str:
        path = self.profile_path(peer.peer_ref)
        if not path.exists():
            raise KeyError(f"No client profile for '{peer.name}'")
        return path.read_text(encoding="utf-8")
