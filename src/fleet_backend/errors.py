# src/fleet_backend/errors.py
from __future__ import annotations
from typing import Optional, Sequence


class FleetError(Exception):
    """Base de toutes les erreurs synchrones remontées à l'appelant."""


class ValidationError(FleetError):
    pass


class DuplicateName(FleetError):
    def __init__(self, name: str):
        super().__init__(f"Peer name '{name}' is already in use")
        self.name = name


class NotFound(FleetError):
    def __init__(self, peer_id: int):
        super().__init__(f"Peer {peer_id} does not exist or is revoked")
        self.peer_id = peer_id


class PoolExhausted(FleetError):
    def __init__(self, pool: str):
        super().__init__(f"No free address left in pool {pool}")
        self.pool = pool


class InvalidTransition(FleetError):
    def __init__(self, peer_id: int, current: str, requested: str):
        super().__init__(f"Peer {peer_id}: transition {current} -> {requested} is not allowed")
        self.peer_id = peer_id
        self.current = current
        self.requested = requested


class StaleRecord(FleetError):
    def __init__(self, peer_id: int, expected: int, actual: int):
        super().__init__(f"Peer {peer_id} changed concurrently (version {actual}, expected {expected})")
        self.peer_id = peer_id


class ConfigError(FleetError):
    pass


class BackendUnavailable(FleetError):
    """Lecture synchrone impossible (API Outline injoignable, wg absent...)."""

    def __init__(self, backend: str, reason: str):
        super().__init__(f"Backend '{backend}' is unavailable: {reason}")
        self.backend = backend
        self.reason = reason


class CommandError(Exception):
    """Commande externe en échec (code retour non nul, binaire absent, timeout)."""

    def __init__(
        self,
        cmd: Sequence[str],
        returncode: Optional[int] = None,
        stderr: str = "",
        timed_out: bool = False,
        missing: bool = False,
    ):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr.strip()
        self.timed_out = timed_out
        self.missing = missing
        if missing:
            msg = f"command not found: {self.cmd[0]}"
        elif timed_out:
            msg = f"command timed out: {' '.join(self.cmd)}"
        else:
            msg = f"command failed ({returncode}): {' '.join(self.cmd)}"
            if self.stderr:
                msg += f": {self.stderr}"
        super().__init__(msg)
