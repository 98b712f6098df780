"""Shell command execution behind the :class:`CommandRunner` boundary."""

from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass, field
from typing import Protocol, Sequence

from ..orchestration.tools.types import ToolContext, ToolResult
from .args import RunCommandArgs
from .filesystem import resolve_path

__all__ = [
    "CommandResult",
    "CommandRunner",
    "SubprocessRunner",
    "RunCommandTool",
    "split_command",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT = 50_000


@dataclass(slots=True)
class CommandResult:
    """Outcome of one command.

    ``exit_code`` is ``None`` when the process never ran to completion
    (spawn failure or timeout).
    """

    output: str = ""
    exit_code: int | None = None
    error: str | None = None
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class CommandRunner(Protocol):
    async def run(self, argv: Sequence[str], *, cwd: str | None, timeout: float) -> CommandResult:
        ...


def split_command(command: str) -> list[str]:
    """Split a command line into argv, honoring shell-style quoting."""
    return shlex.split(command.strip())


@dataclass(slots=True)
class SubprocessRunner:
    """Runs commands with :func:`asyncio.create_subprocess_exec`; no shell is involved."""

    max_output_size: int = DEFAULT_MAX_OUTPUT
    env: dict[str, str] | None = field(default=None)

    async def run(self, argv: Sequence[str], *, cwd: str | None, timeout: float) -> CommandResult:
        if not argv:
            return CommandResult(error="Empty command")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=self.env,
            )
        except OSError as exc:
            LOGGER.debug("Failed to start %s", argv[0], exc_info=True)
            return CommandResult(error=f"Failed to start command: {exc}")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return CommandResult(exit_code=None, error=f"Command timed out after {timeout:g}s", timed_out=True)

        output = self._decode(stdout)
        errors = self._decode(stderr)
        if errors:
            output = f"{output}\n[stderr]\n{errors}" if output else errors
        return CommandResult(output=output.strip(), exit_code=process.returncode)

    def _decode(self, data: bytes | None) -> str:
        text = (data or b"").decode("utf-8", errors="replace")
        if len(text) > self.max_output_size:
            text = text[: self.max_output_size] + "\n... (output truncated)"
        return text


@dataclass(slots=True)
class RunCommandTool:
    runner: CommandRunner

    async def run(self, args: RunCommandArgs, context: ToolContext) -> ToolResult:
        cwd = resolve_path(args.cwd, context.workspace_path) if args.cwd else context.workspace_path
        try:
            argv = split_command(args.command)
        except ValueError as exc:
            return ToolResult.fail(f"Invalid command: {exc}")

        result = await self.runner.run(argv, cwd=cwd, timeout=args.timeout)
        if result.timed_out or (result.exit_code is None and result.error):
            return ToolResult.fail(result.error or "Command failed", command=args.command, cwd=cwd)

        # a non-zero exit is reported to the model as output, not as a tool failure
        text = result.output or ("Command executed" if result.success else "Command failed")
        return ToolResult.ok(text, command=args.command, cwd=cwd, exit_code=result.exit_code)
