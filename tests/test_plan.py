"""Tests for :mod:`codeloop.ai.orchestration.plan`."""

from __future__ import annotations

import pytest

from codeloop.ai.orchestration.plan import PlanItemStatus, PlanStatus, PlanStore, plan_to_markdown


@pytest.fixture
def store() -> PlanStore:
    store = PlanStore()
    store.create_plan(
        [{"title": " Read code "}, {"title": "Fix bug", "description": "in parser"}, {"title": "Run tests"}],
        "Bugfix",
    )
    return store


def test_create_plan(store: PlanStore) -> None:
    plan = store.plan

    assert plan.status is PlanStatus.DRAFT
    assert [item.title for item in plan.items] == ["Read code", "Fix bug", "Run tests"]
    assert all(item.status is PlanItemStatus.PENDING for item in plan.items)
    assert len({item.id for item in plan.items}) == 3


def test_find_item_by_id_prefix_and_index(store: PlanStore) -> None:
    first, second, third = store.plan.items

    assert store.find_item(second.id) == second
    assert store.find_item(third.id[:6]) == third
    assert store.find_item(1) == first
    assert store.find_item("3") == third
    assert store.find_item("9") is None
    assert store.find_item(None) is None
    assert store.find_by_title("Fix bug") == second


def test_updates_replace_the_plan(store: PlanStore) -> None:
    before = store.plan
    item = before.items[1]

    updated = store.update_plan_item(item.id, status="in_progress", description="")
    store.update_plan_status("active")
    store.set_plan_step(item.id)

    assert updated.status is PlanItemStatus.IN_PROGRESS
    assert updated.description is None
    assert before.items[1].status is PlanItemStatus.PENDING
    assert store.plan.status is PlanStatus.ACTIVE
    assert store.plan.current_step_id == item.id
    assert store.update_plan_item("missing", status="completed") is None


def test_invalid_status_is_rejected(store: PlanStore) -> None:
    with pytest.raises(ValueError):
        store.update_plan_status("paused")


def test_markdown_rendering(store: PlanStore) -> None:
    first, second, third = store.plan.items
    store.update_plan_item(first.id, status="completed")
    store.update_plan_item(third.id, status="failed")

    markdown = plan_to_markdown(store.plan)

    assert markdown.splitlines()[:7] == [
        "# 📋 Bugfix",
        "",
        "## Steps",
        f"- [x] ✅ [id: {first.id}] Read code",
        f"- [ ] ⬜ [id: {second.id}] Fix bug",
        "  > in parser",
        f"- [!] ❌ [id: {third.id}] Run tests",
    ]
    assert f"*Plan ID: {store.plan.id[:8]}*" in markdown
    assert store.to_markdown("Renamed").startswith("# 📋 Renamed\n")


def test_operations_without_plan_are_noops() -> None:
    store = PlanStore()

    assert store.update_plan_status("active") is None
    assert store.set_plan_step("x") is None
    assert store.find_item(1) is None
    assert store.to_markdown() == ""


def test_clear_plan(store: PlanStore) -> None:
    store.clear_plan()

    assert store.plan is None
