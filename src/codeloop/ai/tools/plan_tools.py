"""``create_plan`` and ``update_plan``: the model's execution checklist."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass

from ..orchestration.plan import PlanStore
from ..orchestration.tools.types import ToolContext, ToolResult
from .args import CreatePlanArgs, UpdatePlanArgs
from .filesystem import FileSystem

__all__ = ["CreatePlanTool", "UpdatePlanTool", "plan_directory", "plan_file_name"]

LOGGER = logging.getLogger(__name__)

PLANS_DIR = "plans"
ACTIVE_PLAN_FILE = "active_plan.txt"
_TITLE_HEADING = re.compile(r"^# 📋 (.*)$", re.MULTILINE)
_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9一-龥]")


def plan_directory(workspace_path: str, storage_dir: str = ".codeloop") -> str:
    return f"{workspace_path.rstrip('/')}/{storage_dir}/{PLANS_DIR}"


def plan_file_name(title: str | None, *, now: float | None = None) -> str:
    if title:
        return _UNSAFE_NAME_CHARS.sub("_", title)[:30] + ".md"
    stamp = time.strftime("%Y-%m-%dT%H-%M-%S", time.localtime(now))
    return f"plan_{stamp}.md"


@dataclass(slots=True)
class CreatePlanTool:
    """Create the plan and, inside a workspace, mirror it to a markdown file."""

    plan_store: PlanStore
    file_system: FileSystem
    storage_dir: str = ".codeloop"

    async def run(self, args: CreatePlanArgs, context: ToolContext) -> ToolResult:
        items = [{"title": item.title, "description": item.description} for item in args.items]
        plan = self.plan_store.create_plan(items, args.title)
        meta: dict[str, object] = {"plan_id": plan.id}
        if context.workspace_path:
            root = f"{context.workspace_path.rstrip('/')}/{self.storage_dir}"
            directory = plan_directory(context.workspace_path, self.storage_dir)
            path = f"{directory}/{plan_file_name(args.title)}"
            await self.file_system.mkdir(directory)
            if await self.file_system.write_file(path, self.plan_store.to_markdown(args.title)):
                await self.file_system.write_file(f"{root}/{ACTIVE_PLAN_FILE}", path)
                meta["plan_file"] = path
            else:
                LOGGER.warning("Could not write plan file %s", path)
        return ToolResult.ok(f"Plan created with {len(plan.items)} items", **meta)


@dataclass(slots=True)
class UpdatePlanTool:
    """Update plan status, individual items and the current step."""

    plan_store: PlanStore
    file_system: FileSystem
    storage_dir: str = ".codeloop"

    async def run(self, args: UpdatePlanArgs, context: ToolContext) -> ToolResult:
        store = self.plan_store
        if store.plan is None:
            return ToolResult.fail("No active plan. Use create_plan first.")

        if args.status:
            store.update_plan_status(args.status)

        unmatched: list[str] = []
        for update in args.items:
            item = store.find_item(update.id) if update.id else None
            if item is None and update.title:
                item = store.find_by_title(update.title)
            if item is None:
                unmatched.append(update.id or update.title or "?")
                continue
            store.update_plan_item(
                item.id,
                status=update.status,
                title=update.title,
                description=update.description,
            )

        if args.has_step:
            step = store.find_item(args.current_step_id) if args.current_step_id else None
            store.set_plan_step(step.id if step is not None else args.current_step_id)

        if context.workspace_path:
            await self._sync_file(context.workspace_path, args.title)

        if unmatched:
            LOGGER.debug("update_plan could not match items: %s", unmatched)
            return ToolResult.ok(f"Plan updated successfully (unmatched items: {', '.join(unmatched)})")
        return ToolResult.ok("Plan updated successfully")

    async def _sync_file(self, workspace_path: str, title: str | None) -> None:
        root = f"{workspace_path.rstrip('/')}/{self.storage_dir}"
        pointer = await self.file_system.read_file(f"{root}/{ACTIVE_PLAN_FILE}")
        path = (pointer or f"{root}/plan.md").strip()
        if not title:
            previous = await self.file_system.read_file(path)
            match = _TITLE_HEADING.search(previous or "")
            if match:
                title = match.group(1)
        if not await self.file_system.write_file(path, self.plan_store.to_markdown(title)):
            LOGGER.warning("Could not update plan file %s", path)
