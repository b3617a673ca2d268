# src/fleet_backend/runner.py
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from .errors import CommandError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandResult:
    cmd: List[str]
    returncode: int
    stdout: str
    stderr: str


class CommandRunner:
    """
    Exécute les outils externes (wg, wg-quick, easyrsa...) sans shell.
    Lève CommandError sur code retour non nul, binaire absent ou timeout.
    """

    def __init__(self, timeout: Optional[float] = 30.0):
        self.timeout = timeout

    async def run(
        self,
        cmd: Sequence[str],
        input: Optional[str] = None,
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
        check: bool = True,
    ) -> CommandResult:
        timeout = timeout if timeout is not None else self.timeout
        logger.debug("exec: %s", " ".join(cmd))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
            )
        except FileNotFoundError:
            raise CommandError(cmd, missing=True) from None

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(input.encode() if input is not None else None),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise CommandError(cmd, timed_out=True) from None

        result = CommandResult(
            cmd=list(cmd),
            returncode=proc.returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )
        if check and result.returncode != 0:
            raise CommandError(cmd, result.returncode, result.stderr)
        return result
