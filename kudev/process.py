"""Async subprocess helpers for the docker, kind and minikube CLIs."""

import asyncio
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass
class CommandResult:
    """Result of a finished command."""

    args: list[str]
    returncode: int
    output: str

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def command(self) -> str:
        return " ".join(self.args)


async def run_command(
    args: list[str],
    cwd: Optional[str] = None,
    on_line: Optional[Callable[[str], None]] = None,
) -> CommandResult:
    """
    Run a command, collecting combined stdout and stderr.

    If the awaiting task is cancelled the child process is killed before the
    cancellation propagates.

    Args:
        args: Command and arguments
        cwd: Working directory
        on_line: Called with each non-empty output line as it arrives

    Returns:
        CommandResult

    Raises:
        FileNotFoundError: If the executable does not exist
    """
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )

    lines: list[str] = []
    try:
        while True:
            raw = await process.stdout.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            lines.append(line)
            if on_line is not None:
                on_line(line)
        returncode = await process.wait()
    except asyncio.CancelledError:
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise

    return CommandResult(args=list(args), returncode=returncode, output="\n".join(lines))
