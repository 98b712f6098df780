"""Execution plans the model maintains through the plan tools."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterable, Mapping

__all__ = [
    "PlanItemStatus",
    "PlanStatus",
    "PlanItem",
    "Plan",
    "PlanStore",
    "plan_to_markdown",
]

LOGGER = logging.getLogger(__name__)


class PlanItemStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class PlanStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


_CHECKBOXES = {
    PlanItemStatus.COMPLETED: ("[x]", "✅"),
    PlanItemStatus.IN_PROGRESS: ("[/]", "🔄"),
    PlanItemStatus.FAILED: ("[!]", "❌"),
    PlanItemStatus.PENDING: ("[ ]", "⬜"),
}


@dataclass(slots=True, frozen=True)
class PlanItem:
    id: str
    title: str
    description: str | None = None
    status: PlanItemStatus = PlanItemStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "title": self.title, "status": self.status.value}
        if self.description:
            data["description"] = self.description
        return data


@dataclass(slots=True, frozen=True)
class Plan:
    id: str
    items: tuple[PlanItem, ...]
    status: PlanStatus = PlanStatus.DRAFT
    current_step_id: str | None = None
    title: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status.value,
            "current_step_id": self.current_step_id,
            "items": [item.to_dict() for item in self.items],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def plan_to_markdown(plan: Plan, title: str | None = None) -> str:
    """Render ``plan`` as a checklist document."""
    heading = title or plan.title or "Execution Plan"
    lines = [f"# 📋 {heading}", "", "## Steps"]
    for item in plan.items:
        checkbox, icon = _CHECKBOXES[item.status]
        lines.append(f"- {checkbox} {icon} [id: {item.id}] {item.title}")
        if item.description:
            lines.append(f"  > {item.description}")
    lines.extend(["", "---", f"*Plan ID: {plan.id[:8]}*", ""])
    return "\n".join(lines)


class PlanStore:
    """Holds the plan of the active conversation.

    Plans are immutable; every update swaps in a new :class:`Plan`.
    """

    def __init__(self) -> None:
        self._plan: Plan | None = None

    @property
    def plan(self) -> Plan | None:
        return self._plan

    def create_plan(self, items: Iterable[Mapping[str, Any]], title: str | None = None) -> Plan:
        plan_items = tuple(
            PlanItem(
                id=uuid.uuid4().hex[:8],
                title=str(item.get("title", "")).strip(),
                description=item.get("description") or None,
            )
            for item in items
        )
        self._plan = Plan(id=uuid.uuid4().hex, items=plan_items, title=title)
        LOGGER.debug("Created plan %s with %d item(s)", self._plan.id, len(plan_items))
        return self._plan

    def update_plan_status(self, status: PlanStatus | str) -> Plan | None:
        if self._plan is None:
            return None
        self._plan = replace(self._plan, status=PlanStatus(status), updated_at=time.time())
        return self._plan

    def update_plan_item(
        self,
        item_id: str,
        *,
        status: PlanItemStatus | str | None = None,
        title: str | None = None,
        description: str | None = None,
    ) -> PlanItem | None:
        if self._plan is None:
            return None
        updated: PlanItem | None = None
        items: list[PlanItem] = []
        for item in self._plan.items:
            if item.id == item_id:
                changes: dict[str, Any] = {}
                if status is not None:
                    changes["status"] = PlanItemStatus(status)
                if title:
                    changes["title"] = title
                if description is not None:
                    changes["description"] = description or None
                item = replace(item, **changes)
                updated = item
            items.append(item)
        if updated is not None:
            self._plan = replace(self._plan, items=tuple(items), updated_at=time.time())
        return updated

    def set_plan_step(self, step_id: str | None) -> Plan | None:
        if self._plan is None:
            return None
        self._plan = replace(self._plan, current_step_id=step_id, updated_at=time.time())
        return self._plan

    def find_item(self, ref: str | int | None) -> PlanItem | None:
        """Look up an item by exact id, unique id prefix (4+ chars) or 1-based index."""
        if self._plan is None or ref is None:
            return None
        items = self._plan.items
        key = str(ref).strip()
        for item in items:
            if item.id == key:
                return item
        if len(key) >= 4:
            matches = [item for item in items if item.id.startswith(key)]
            if len(matches) == 1:
                return matches[0]
        try:
            index = int(key)
        except ValueError:
            return None
        if 1 <= index <= len(items):
            return items[index - 1]
        return None

    def find_by_title(self, title: str) -> PlanItem | None:
        if self._plan is None:
            return None
        for item in self._plan.items:
            if item.title == title:
                return item
        return None

    def clear_plan(self) -> None:
        self._plan = None

    def to_markdown(self, title: str | None = None) -> str:
        if self._plan is None:
            return ""
        return plan_to_markdown(self._plan, title)
