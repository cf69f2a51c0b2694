"""
Worker process control.

A supervisor starts a worker of a given kind on a host, reports whether it is
still alive and kills it. `wait_for_exit` is the only blocking primitive the
scheduler uses: it polls liveness at a fixed interval.
"""

import asyncio
import itertools
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

import structlog

from batchnet.common.constants import TIMEOUTS


logger = structlog.get_logger(__name__)

PLACEHOLDER_KIND = "placeholder"

_handle_ids = itertools.count(1)


@dataclass
class ProcessHandle:
    """Opaque reference to a launched worker"""
    kind: str
    host_id: str
    threads: int
    target_id: str
    handle_id: int = field(default_factory=lambda: next(_handle_ids))
    pid: Optional[int] = None


class ProcessSupervisor(Protocol):
    async def launch(
        self,
        kind: str,
        host_id: str,
        threads: int,
        target_id: str,
        args: Sequence[Any] = (),
    ) -> Optional[ProcessHandle]: ...

    async def is_alive(self, handle: ProcessHandle) -> bool: ...

    async def kill(self, handle: ProcessHandle) -> None: ...


async def wait_for_exit(
    supervisor: ProcessSupervisor,
    handle: ProcessHandle,
    poll_interval: float = TIMEOUTS["PROCESS_POLL"],
) -> None:
    """Return once the process is no longer alive"""
    while await supervisor.is_alive(handle):
        await asyncio.sleep(poll_interval)


class LocalProcessSupervisor:
    """Runs workers as local subprocesses.

    `commands` maps a worker kind to an argv template. Templates may use the
    placeholders {kind}, {host}, {threads} and {target}; extra launch args are
    appended. The host id is exported as BATCHNET_HOST so a wrapper command can
    forward the job to the right machine.
    """

    def __init__(self, commands: Dict[str, List[str]], env: Optional[Dict[str, str]] = None):
        self.commands = commands
        self.env = env
        self._procs: Dict[int, asyncio.subprocess.Process] = {}

    async def launch(
        self,
        kind: str,
        host_id: str,
        threads: int,
        target_id: str,
        args: Sequence[Any] = (),
    ) -> Optional[ProcessHandle]:
        template = self.commands.get(kind)
        if not template:
            logger.warning("No command configured for worker kind", kind=kind)
            return None

        values = {"kind": kind, "host": host_id, "threads": threads, "target": target_id}
        argv = [part.format(**values) for part in template] + [str(a) for a in args]
        env = dict(os.environ, **(self.env or {}), BATCHNET_HOST=host_id, BATCHNET_THREADS=str(threads))

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                env=env,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.warning("Launch failed", kind=kind, host_id=host_id, threads=threads, error=str(e))
            return None

        handle = ProcessHandle(kind=kind, host_id=host_id, threads=threads, target_id=target_id, pid=proc.pid)
        self._procs[handle.handle_id] = proc
        return handle

    async def is_alive(self, handle: ProcessHandle) -> bool:
        proc = self._procs.get(handle.handle_id)
        if proc is None:
            return False
        # returncode is filled in by the event loop's child watcher
        if proc.returncode is None:
            return True
        self._procs.pop(handle.handle_id, None)
        return False

    async def kill(self, handle: ProcessHandle) -> None:
        proc = self._procs.pop(handle.handle_id, None)
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()
