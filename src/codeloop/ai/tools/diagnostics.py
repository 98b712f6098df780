"""Lint and compile diagnostics through an external provider."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence

from ..orchestration.tools.types import ToolContext, ToolResult
from .args import GetLintErrorsArgs
from .filesystem import resolve_path

__all__ = ["Diagnostic", "DiagnosticsProvider", "NullDiagnostics", "LintErrorsTool", "format_diagnostics"]

NO_LINT_ERRORS = "No lint errors found."


@dataclass(slots=True, frozen=True)
class Diagnostic:
    message: str
    severity: str = "error"
    start_line: int = 1
    source: str | None = None


class DiagnosticsProvider(Protocol):
    """Language-server style diagnostics for one file."""

    async def get_diagnostics(self, path: str, *, refresh: bool = False) -> Sequence[Diagnostic]:
        ...


class NullDiagnostics:
    """Provider used when no language tooling is attached."""

    async def get_diagnostics(self, path: str, *, refresh: bool = False) -> Sequence[Diagnostic]:
        return ()


def format_diagnostics(diagnostics: Sequence[Diagnostic]) -> str:
    if not diagnostics:
        return NO_LINT_ERRORS
    return "\n".join(f"[{item.severity}] {item.message} (Line {item.start_line})" for item in diagnostics)


@dataclass(slots=True)
class LintErrorsTool:
    provider: DiagnosticsProvider

    async def run(self, args: GetLintErrorsArgs, context: ToolContext) -> ToolResult:
        path = resolve_path(args.path, context.workspace_path)
        diagnostics = list(await self.provider.get_diagnostics(path, refresh=args.refresh))
        errors = sum(1 for item in diagnostics if item.severity == "error")
        return ToolResult.ok(format_diagnostics(diagnostics), file_path=path, error_count=errors)
