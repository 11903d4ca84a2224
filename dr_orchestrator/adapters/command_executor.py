"""
Subprocess dump/restore executor
Runs a native dump tool (pg_dump, mysqldump, redis-cli --rdb ...) and streams
its stdout; restores by streaming into the restore tool's stdin.
"""

import asyncio
import os
from typing import AsyncIterator, Dict, List, Optional

from pydantic import BaseModel, Field

from ..logging_adapter import get_safe_logger
from ..models import WorkloadSpec

logger = get_safe_logger("dr_orchestrator.command_executor")

CHUNK_SIZE = 1024 * 1024
STDERR_TAIL = 2000


class ExecutorCommand(BaseModel):
    """
    Argument vectors for one executor reference. ``{namespace}``, ``{name}``
    and ``{region}`` placeholders are filled per workload and region.
    """
    dump: List[str] = Field(..., min_length=1)
    restore: List[str] = Field(..., min_length=1)
    env: Dict[str, str] = Field(default_factory=dict)


class CommandExecutor:
    """DumpRestoreExecutor backed by two subprocesses"""

    def __init__(self, command: ExecutorCommand, region: str):
        self.command = command
        self.region = region

    def _argv(self, template: List[str], spec: WorkloadSpec) -> List[str]:
        return [part.format(namespace=spec.namespace, name=spec.name, region=self.region)
                for part in template]

    def _env(self) -> Optional[Dict[str, str]]:
        if not self.command.env:
            return None
        env = dict(os.environ)
        env.update(self.command.env)
        return env

    async def dump(self, spec: WorkloadSpec) -> AsyncIterator[bytes]:
        argv = self._argv(self.command.dump, spec)
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self._env()
        )
        stderr_task = asyncio.create_task(process.stderr.read())
        completed = False
        try:
            while True:
                chunk = await process.stdout.read(CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
            returncode = await process.wait()
            stderr = await stderr_task
            if returncode != 0:
                raise RuntimeError(
                    f"{argv[0]} exited with {returncode}: {stderr.decode(errors='replace')[-STDERR_TAIL:]}"
                )
            completed = True
        finally:
            if not completed:
                await _terminate(process)
                stderr_task.cancel()
                logger.warning("dump_process_terminated", workload_id=spec.workload_id,
                               region=self.region, command=argv[0])

    async def restore(self, spec: WorkloadSpec, chunks: AsyncIterator[bytes]) -> None:
        argv = self._argv(self.command.restore, spec)
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
            env=self._env()
        )
        stderr_task = asyncio.create_task(process.stderr.read())
        completed = False
        try:
            async for chunk in chunks:
                process.stdin.write(chunk)
                await process.stdin.drain()
            process.stdin.close()
            await process.stdin.wait_closed()
            returncode = await process.wait()
            stderr = await stderr_task
            if returncode != 0:
                raise RuntimeError(
                    f"{argv[0]} exited with {returncode}: {stderr.decode(errors='replace')[-STDERR_TAIL:]}"
                )
            completed = True
        finally:
            if not completed:
                await _terminate(process)
                stderr_task.cancel()
                logger.warning("restore_process_terminated", workload_id=spec.workload_id,
                               region=self.region, command=argv[0])


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()


def build_executors(commands: Dict[str, ExecutorCommand], region: str) -> Dict[str, CommandExecutor]:
    return {reference: CommandExecutor(command, region) for reference, command in commands.items()}
