"""
Process runner for executing commands inside the workspace container.

The rest of the engine treats a running command as an opaque source of
stdout/stderr chunks plus an exit code (see ``ProcessHandle``).
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Mapping, Optional, Protocol, Sequence

from ..config import RuntimeConfig

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 4096


class ProcessSpawnError(RuntimeError):
    """The command could not be started at all (tool missing, permission denied)."""

    def __init__(self, command: str, reason: str) -> None:
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to execute '{command}': {reason}")


@dataclass()
class RunOptions:
    remove_after_run: bool = True
    mount_workspace: bool = True
    additional_args: Sequence[str] = ()


class ProcessHandle(Protocol):
    """A spawned command: incremental text output and an awaitable exit code."""

    command: str

    def stdout(self) -> AsyncIterator[str]: ...

    def stderr(self) -> AsyncIterator[str]: ...

    async def wait(self) -> int: ...


class ProcessRunner(Protocol):
    async def run_command(
        self,
        workspace: Path,
        container_ref: str,
        command: str,
        shell: str = "/bin/bash",
        options: Optional[RunOptions] = None,
    ) -> ProcessHandle: ...


def container_ref_for(workspace: Path | str) -> str:
    """Derive a container image name from a workspace path."""
    name = str(workspace)
    if name.startswith("/"):
        name = name[1:]
    name = re.sub(r"[/\\]", "_", name)
    name = name.replace(":", "_")
    name = re.sub(r"[^a-zA-Z0-9._-]", "_", name)
    name = name.lower()
    name = re.sub(r"^[.-]+", "", name)
    if not name:
        raise ValueError("The computed workspace folder is empty")
    return name[:100]


async def _decoded_chunks(
    stream: Optional[asyncio.StreamReader],
) -> AsyncIterator[str]:
    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await stream.read(_CHUNK_SIZE)
        if not data:
            tail = decoder.decode(b"", final=True)
            if tail:
                yield tail
            return
        text = decoder.decode(data)
        if text:
            yield text


@dataclass()
class SubprocessHandle:
    """ProcessHandle backed by an asyncio subprocess."""

    command: str
    process: asyncio.subprocess.Process

    def stdout(self) -> AsyncIterator[str]:
        return _decoded_chunks(self.process.stdout)

    def stderr(self) -> AsyncIterator[str]:
        return _decoded_chunks(self.process.stderr)

    async def wait(self) -> int:
        returncode = await self.process.wait()
        return returncode if returncode is not None else -1


@dataclass()
class ContainerProcessRunner:
    """
    Runs shell commands in a fresh container of the workspace image.

    Equivalent to:
        docker run [--rm] [-v WS:WS -w WS] [ARGS...] IMAGE SHELL -c COMMAND
    """

    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)

    def build_argv(
        self,
        workspace: Path,
        container_ref: str,
        command: str,
        shell: str,
        options: RunOptions,
    ) -> list[str]:
        argv = [self.runtime.docker_command, "run"]
        if options.remove_after_run:
            argv.append("--rm")
        if options.mount_workspace:
            workspace_str = str(workspace)
            argv.extend(["-v", f"{workspace_str}:{workspace_str}", "-w", workspace_str])
        argv.extend(render_env_args(self.runtime.extra_env))
        argv.extend(options.additional_args)
        argv.extend([container_ref, shell, "-c", command])
        return argv

    async def run_command(
        self,
        workspace: Path,
        container_ref: str,
        command: str,
        shell: str = "/bin/bash",
        options: Optional[RunOptions] = None,
    ) -> ProcessHandle:
        options = options or RunOptions()
        argv = self.build_argv(Path(workspace), container_ref, command, shell, options)

        if shutil.which(argv[0]) is None and not os.path.isabs(argv[0]):
            raise ProcessSpawnError(command, f"'{argv[0]}' not found in PATH")

        logger.debug("Spawning: %s", " ".join(argv))
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=workspace,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
            raise ProcessSpawnError(command, str(e)) from e

        return SubprocessHandle(command=command, process=process)


def render_env_args(env: Mapping[str, str]) -> list[str]:
    """Turn an environment mapping into ``-e KEY=VALUE`` container arguments."""
    args: list[str] = []
    for key, value in env.items():
        args.extend(["-e", f"{key}={value}"])
    return args
