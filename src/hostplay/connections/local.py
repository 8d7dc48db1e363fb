"""
Hostplay Local Connection

Execute commands on the control node (no remote connection).
"""

import asyncio
import os
import shlex
from pathlib import Path
from typing import Optional

from hostplay.connections.base import Connection, RunResult
from hostplay.engine.inventory import Host


class LocalConnection(Connection):
    """
    Local connection - execute commands on the control node.

    Used for localhost execution without any network operations.
    """

    def __init__(self, host: Host):
        super().__init__(host)
        self._connected = False

    async def connect(self) -> None:
        """Local connection is always available."""
        self._connected = True

    async def close(self) -> None:
        """Nothing to close for local connection."""
        self._connected = False

    async def run(
        self,
        command: str,
        shell: bool = True,
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
        environment: Optional[dict] = None,
    ) -> RunResult:
        """Run a command locally."""
        env = os.environ.copy()
        if environment:
            env.update({k: str(v) for k, v in environment.items()})

        try:
            if shell:
                process = await asyncio.create_subprocess_shell(
                    command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=env,
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *shlex.split(command),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=env,
                )
        except OSError as e:
            return RunResult(rc=127 if isinstance(e, FileNotFoundError) else 1, stdout="", stderr=str(e))

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return RunResult(rc=124, stdout="", stderr="Command timed out")
        except asyncio.CancelledError:
            # The scheduler's task timeout cancels us; don't leave the child behind
            process.kill()
            raise

        return RunResult(
            rc=process.returncode or 0,
            stdout=stdout_bytes.decode('utf-8', errors='replace'),
            stderr=stderr_bytes.decode('utf-8', errors='replace'),
        )

    async def exists(self, path: str) -> bool:
        return Path(path).exists()
