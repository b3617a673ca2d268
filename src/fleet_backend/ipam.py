# src/fleet_backend/ipam.py
from __future__ import annotations
import ipaddress
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Set

from .errors import ConfigError, PoolExhausted


@dataclass(frozen=True)
class AddressPool:
    """
    Pool d'adresses d'un backend.

    - kind "cidr"  : IP hôtes d'un réseau, rendues en '10.8.0.X/32'
    - kind "ports" : ports d'une plage inclusive (access keys shadowsocks)
    """
    name: str
    kind: str
    network_cidr: Optional[str] = None
    server_address: Optional[str] = None   # ex "10.8.0.1/24", jamais alloué
    port_start: Optional[int] = None
    port_end: Optional[int] = None

    @classmethod
    def from_cidr(cls, name: str, network_cidr: str, server_address: Optional[str] = None) -> "AddressPool":
        try:
            ipaddress.ip_network(network_cidr)
        except ValueError as e:
            raise ConfigError(f"Invalid network for pool {name}: {e}") from e
        return cls(name=name, kind="cidr", network_cidr=network_cidr, server_address=server_address)

    @classmethod
    def from_ports(cls, name: str, start: int, end: int) -> "AddressPool":
        if not (0 < start <= end <= 65535):
            raise ConfigError(f"Invalid port range for pool {name}: {start}-{end}")
        return cls(name=name, kind="ports", port_start=start, port_end=end)

    # ---------- Slots ----------

    def _reserved(self) -> Set[str]:
        if self.kind != "cidr":
            return set()
        net = ipaddress.ip_network(self.network_cidr)
        reserved = {str(net.network_address), str(net.broadcast_address)}
        if self.server_address:
            # IP du serveur
            reserved.add(self.server_address.split("/")[0])
        return reserved

    def _candidates(self) -> Iterator[str]:
        if self.kind == "ports":
            for port in range(self.port_start, self.port_end + 1):
                yield str(port)
            return

        net = ipaddress.ip_network(self.network_cidr)
        reserved = self._reserved()
        suffix = 32 if net.version == 4 else 128
        for host in net.hosts():
            if str(host) not in reserved:
                yield f"{host}/{suffix}"

    def contains(self, address: str) -> bool:
        if self.kind == "ports":
            try:
                port = int(address)
            except ValueError:
                return False
            return self.port_start <= port <= self.port_end

        host = address.split("/")[0]
        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            return False
        return ip in ipaddress.ip_network(self.network_cidr) and host not in self._reserved()

    def capacity(self) -> int:
        return sum(1 for _ in self._candidates())

    def allocate(self, used: Iterable[str]) -> str:
        """
        Retourne le premier slot libre du pool.
        """
        used = set(used)
        for candidate in self._candidates():
            if candidate not in used:
                return candidate
        raise PoolExhausted(self.name)
