"""Tests for the per-turn JSONL event logs."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from codeloop.ai.orchestration.event_log import ChatEventLogger


def _read_entries(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]


def _start(logger: ChatEventLogger, run_id: str = "run-test"):
    return logger.start_run(
        run_id=run_id,
        prompt="Fix the bug",
        workspace_path="/work",
        mode="agent",
        metadata={"model": "gpt-4o-mini"},
        history=[{"role": "user", "content": "Hi"}],
    )


def test_chat_event_logger_writes_entries(tmp_path: Path) -> None:
    logger = ChatEventLogger(enabled=True, base_dir=tmp_path)
    run = _start(logger)

    with run:
        run.log_context({"original_tokens": 100, "final_tokens": 40}, summary="earlier")
        run.log_assistant_message(
            loop_index=1,
            response_text="Reading",
            tool_calls=[{"id": "call-1", "name": "read_file", "arguments": {"path": "a.py"}}],
            usage={"total_tokens": 12},
        )
        run.log_tool_batch(loop_index=1, records=[{"id": "call-1", "status": "success", "result": b"bytes"}])
        run.log_tool_batch(loop_index=1, records=[])
        run.log_completion(response_text="Done", tool_call_count=1, loops=2, reason="completed", warnings=["test"])

    log_files = list(tmp_path.glob("turn-*.jsonl"))
    assert len(log_files) == 1
    assert log_files[0].name.endswith("-runtest.jsonl")
    entries = _read_entries(log_files[0])
    assert [entry["event"] for entry in entries] == ["start", "context", "assistant", "tools", "completion"]
    assert entries[0]["prompt"] == "Fix the bug"
    assert entries[0]["mode"] == "agent"
    assert entries[3]["tool_records"][0]["result"] == "bytes"
    assert entries[-1]["status"] == "success"
    assert entries[-1]["reason"] == "completed"


def test_leaving_without_completion_records_failure(tmp_path: Path) -> None:
    logger = ChatEventLogger(enabled=True, base_dir=tmp_path)

    with pytest.raises(RuntimeError):
        with _start(logger):
            raise RuntimeError("model went away")

    entries = _read_entries(next(tmp_path.glob("*.jsonl")))
    assert entries[-1]["event"] == "failure"
    assert entries[-1]["message"] == "model went away"


def test_unfinished_run_is_marked_failed(tmp_path: Path) -> None:
    logger = ChatEventLogger(enabled=True, base_dir=tmp_path)

    with _start(logger):
        pass

    entries = _read_entries(next(tmp_path.glob("*.jsonl")))
    assert entries[-1]["event"] == "failure"
    assert entries[-1]["message"] == "turn ended without completion"


def test_failure_after_completion_is_ignored(tmp_path: Path) -> None:
    logger = ChatEventLogger(enabled=True, base_dir=tmp_path)
    run = _start(logger)

    run.log_completion(response_text="", tool_call_count=0, loops=1, reason="completed")
    run.log_failure(message="late")

    entries = _read_entries(run.path)
    assert [entry["event"] for entry in entries] == ["start", "completion"]


def test_unserializable_values_are_stringified(tmp_path: Path) -> None:
    logger = ChatEventLogger(enabled=True, base_dir=tmp_path)
    run = _start(logger)

    run.log_failure(message="boom", details={"error": ValueError("bad"), "paths": {"a.py"}})

    entry = _read_entries(run.path)[-1]
    assert entry["details"] == {"error": "ValueError('bad')", "paths": ["a.py"]}


def test_chat_event_logger_disabled_is_noop(tmp_path: Path) -> None:
    logger = ChatEventLogger(enabled=False, base_dir=tmp_path)
    run = _start(logger, "no-log")

    with run:
        run.log_completion(response_text="", tool_call_count=0, loops=0, reason="completed")

    assert run.path is None
    assert list(tmp_path.glob("*.jsonl")) == []
