"""Tests for the task store: lifecycle, conditional transitions, cancellation."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
import os
import threading

import pytest

from agentdesk.core.errors import InvalidTransition, TaskCancelled, TaskNotFound
from agentdesk.core.realtime import StatusChannel
from agentdesk.core.tasks import TaskStore, can_transition


@pytest.fixture
def data_dir(tmp_path):
    return str(tmp_path)


@pytest.fixture
def store(data_dir):
    return TaskStore(data_dir=data_dir)


# ── Creation & queries ───────────────────────────────────────

class TestTaskCreation:
    def test_create_task_basic(self, store):
        task = store.create_task("user-1", "research", intent="research: llamas")
        assert task.id.startswith("task-")
        assert task.status == "pending"
        assert task.agent == "research"
        assert task.cost_usd == 0.0
        assert task.completed_at is None

    def test_create_queued_child(self, store):
        parent = store.create_task("user-1", "dispatcher")
        child = store.create_task("user-1", "coder", status="queued", parent_task_id=parent.id)
        assert child.status == "queued"
        assert store.children(parent.id) == [child]

    def test_create_rejects_non_initial_status(self, store):
        with pytest.raises(ValueError):
            store.create_task("user-1", "coder", status="running")

    def test_list_filters_by_user_and_status(self, store):
        a = store.create_task("user-1", "coder")
        store.create_task("user-2", "coder")
        store.start(a.id)
        assert [t.id for t in store.list_tasks(user_id="user-1")] == [a.id]
        assert [t.id for t in store.list_tasks(status="running")] == [a.id]
        assert len(store.list_tasks()) == 2

    def test_count_active_counts_running_and_queued(self, store):
        a = store.create_task("user-1", "coder")
        store.create_task("user-1", "coder", status="queued")
        store.create_task("user-1", "coder")
        store.start(a.id)
        assert store.count_active("user-1") == 2

    def test_count_created_since(self, store):
        store.create_task("user-1", "coder")
        store.create_task("user-1", "coder")
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        future = datetime.now(timezone.utc) + timedelta(minutes=1)
        assert store.count_created_since("user-1", past) == 2
        assert store.count_created_since("user-1", future) == 0

    def test_get_missing_returns_none(self, store):
        assert store.get("task-nope") is None


# ── Transitions ──────────────────────────────────────────────

class TestTransitions:
    def test_transition_table(self):
        assert can_transition("pending", "running")
        assert can_transition("running", "awaiting_ci")
        assert can_transition("awaiting_ci", "completed")
        assert not can_transition("awaiting_ci", "cancelled")
        assert not can_transition("completed", "running")
        assert not can_transition("cancelled", "completed")

    def test_complete_sets_output_and_completed_at(self, store):
        task = store.create_task("user-1", "coder")
        assert store.start(task.id)
        assert store.complete(task.id, {"response": "done"})
        task = store.get(task.id)
        assert task.status == "completed"
        assert task.output == {"response": "done"}
        assert task.completed_at is not None

    def test_fail_records_error(self, store):
        task = store.create_task("user-1", "coder")
        store.start(task.id)
        assert store.fail(task.id, "boom")
        assert store.get(task.id).error == "boom"

    def test_terminal_is_sticky(self, store):
        task = store.create_task("user-1", "coder")
        store.start(task.id)
        store.complete(task.id)
        assert store.fail(task.id, "late") is False
        assert store.get(task.id).status == "completed"

    def test_strict_raises_invalid_transition(self, store):
        task = store.create_task("user-1", "coder")
        with pytest.raises(InvalidTransition):
            store.update_status(task.id, "awaiting_ci", strict=True)

    def test_unknown_status_rejected(self, store):
        task = store.create_task("user-1", "coder")
        with pytest.raises(ValueError):
            store.update_status(task.id, "paused")

    def test_unknown_task_raises(self, store):
        with pytest.raises(TaskNotFound):
            store.update_status("task-missing", "running")

    def test_completion_after_cancel_is_discarded(self, store):
        task = store.create_task("user-1", "coder")
        store.start(task.id)
        store.cancel(task.id)
        assert store.complete(task.id, {"response": "too late"}) is False
        task = store.get(task.id)
        assert task.status == "cancelled"
        assert task.output is None


# ── Cost ─────────────────────────────────────────────────────

class TestCost:
    def test_add_cost_accumulates(self, store):
        task = store.create_task("user-1", "research")
        store.start(task.id)
        store.add_cost(task.id, 0.25)
        assert store.add_cost(task.id, 0.5) == pytest.approx(0.75)

    def test_negative_cost_rejected(self, store):
        task = store.create_task("user-1", "research")
        with pytest.raises(ValueError):
            store.add_cost(task.id, -1)

    def test_cost_frozen_after_terminal(self, store):
        task = store.create_task("user-1", "research")
        store.start(task.id)
        store.add_cost(task.id, 1.0)
        store.complete(task.id)
        assert store.add_cost(task.id, 5.0) == pytest.approx(1.0)


# ── Cancellation ─────────────────────────────────────────────

class TestCancellation:
    def test_cancel_running_task(self, store):
        task = store.create_task("user-1", "coder")
        store.start(task.id)
        token = store.cancellation_token(task.id)
        store.cancel(task.id)
        task = store.get(task.id)
        assert task.status == "cancelled"
        assert task.error == "Cancelled by user"
        assert task.cancelled_at is not None
        assert task.completed_at is not None
        assert token.cancelled
        with pytest.raises(TaskCancelled):
            token.raise_if_cancelled()

    def test_cancel_is_idempotent_on_terminal(self, store):
        task = store.create_task("user-1", "coder")
        store.start(task.id)
        store.complete(task.id)
        result = store.cancel(task.id)
        assert result.status == "completed"
        assert result.cancelled_at is None

    def test_cancel_does_not_touch_awaiting_ci(self, store):
        task = store.create_task("user-1", "coder")
        store.start(task.id)
        store.update_status(task.id, "awaiting_ci")
        assert store.cancel_many("user-1") == []
        assert store.get(task.id).status == "awaiting_ci"

    def test_cancel_many_only_active_for_user(self, store):
        running = store.create_task("user-1", "coder")
        store.start(running.id)
        queued = store.create_task("user-1", "research", status="queued")
        done = store.create_task("user-1", "save")
        store.start(done.id)
        store.complete(done.id)
        other = store.create_task("user-2", "coder")

        ids = store.cancel_many("user-1", reason="Cancelled via Slack")
        assert sorted(ids) == sorted([running.id, queued.id])
        assert store.get(running.id).error == "Cancelled via Slack"
        assert store.get(done.id).status == "completed"
        assert store.get(other.id).status == "pending"

    def test_cancel_many_restricted_to_ids(self, store):
        a = store.create_task("user-1", "coder")
        b = store.create_task("user-1", "coder")
        assert store.cancel_many("user-1", task_ids=[a.id]) == [a.id]
        assert store.get(b.id).status == "pending"

    def test_cancel_all_second_call_counts_zero(self, store):
        store.create_task("user-1", "coder")
        store.create_task("user-1", "coder")
        assert store.cancel_all("user-1") == 2
        assert store.cancel_all("user-1") == 0

    def test_racing_bulk_cancels_never_double_count(self, store):
        for _ in range(20):
            store.create_task("user-1", "coder")
        counts: list[int] = []
        barrier = threading.Barrier(4)

        def stopper() -> None:
            barrier.wait()
            counts.append(store.cancel_all("user-1"))

        threads = [threading.Thread(target=stopper) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sum(counts) == 20

    def test_token_for_unknown_task(self, store):
        with pytest.raises(TaskNotFound):
            store.cancellation_token("task-missing")


# ── Stale cleanup ────────────────────────────────────────────

class TestFailStale:
    def test_old_running_tasks_fail(self, store):
        old = store.create_task("user-1", "coder")
        store.start(old.id)
        store.get(old.id).created_at = datetime.now(timezone.utc) - timedelta(minutes=11)
        fresh = store.create_task("user-1", "coder", status="queued")

        assert store.fail_stale("user-1", 600) == [old.id]
        assert store.get(old.id).status == "failed"
        assert store.get(old.id).error == "Timed out (stale >10min)"
        assert store.get(fresh.id).status == "queued"

    def test_pending_tasks_are_not_stale(self, store):
        task = store.create_task("user-1", "coder")
        store.get(task.id).created_at = datetime.now(timezone.utc) - timedelta(hours=1)
        assert store.fail_stale("user-1", 600) == []


# ── Activity log ─────────────────────────────────────────────

class TestActivityLog:
    def test_record_and_read_back(self, store):
        task = store.create_task("user-1", "research")
        first = store.record_log(task.id, "web_search", "started", {"query": "llamas"})
        second = store.record_log(task.id, "web_search", "completed", {"result_count": 5}, duration_ms=120)
        entries = store.activity(task_id=task.id)
        assert [e.id for e in entries] == [first.id, second.id]
        assert entries[0].user_id == "user-1"
        assert entries[0].agent == "research"
        assert entries[1].duration_ms == 120

    def test_limit_keeps_newest(self, store):
        task = store.create_task("user-1", "research")
        for i in range(5):
            store.record_log(task.id, f"step-{i}", "info")
        assert [e.step for e in store.activity(limit=2)] == ["step-3", "step-4"]
        assert store.activity(limit=0) == []

    def test_invalid_status_rejected(self, store):
        task = store.create_task("user-1", "research")
        with pytest.raises(ValueError):
            store.record_log(task.id, "web_search", "done")

    @pytest.mark.parametrize("status", ["started", "info"])
    def test_duration_only_on_terminal_entries(self, store, status):
        task = store.create_task("user-1", "research")
        with pytest.raises(ValueError):
            store.record_log(task.id, "web_search", status, duration_ms=15)
        assert store.activity(task_id=task.id) == []

    def test_empty_step_rejected(self, store):
        task = store.create_task("user-1", "research")
        with pytest.raises(ValueError):
            store.record_log(task.id, "", "started")

    def test_unknown_task_rejected(self, store):
        with pytest.raises(TaskNotFound):
            store.record_log("task-missing", "x", "started")


# ── Persistence ──────────────────────────────────────────────

class TestPersistence:
    def test_reload_from_disk(self, data_dir):
        store = TaskStore(data_dir=data_dir)
        task = store.create_task("user-1", "coder", input={"query": "fix it"})
        store.start(task.id)
        store.add_cost(task.id, 0.1)
        store.record_log(task.id, "edit", "started")
        store.cancel(task.id)

        reloaded = TaskStore(data_dir=data_dir)
        again = reloaded.get(task.id)
        assert again.status == "cancelled"
        assert again.input == {"query": "fix it"}
        assert again.cost_usd == pytest.approx(0.1)
        assert reloaded.is_cancelled(task.id)
        assert reloaded.cancellation_token(task.id).cancelled
        assert [e.step for e in reloaded.activity()] == ["edit"]

    def test_tasks_file_is_json(self, store, data_dir):
        store.create_task("user-1", "coder")
        with open(os.path.join(data_dir, "tasks.json"), "r", encoding="utf-8") as f:
            raw = json.load(f)
        assert len(raw["tasks"]) == 1
        assert not os.path.exists(os.path.join(data_dir, "tasks.json.tmp"))

    def test_corrupt_activity_line_skipped(self, data_dir):
        store = TaskStore(data_dir=data_dir)
        task = store.create_task("user-1", "coder")
        store.record_log(task.id, "edit", "started")
        with open(os.path.join(data_dir, "activity.jsonl"), "a", encoding="utf-8") as f:
            f.write("{not json\n")
        assert len(TaskStore(data_dir=data_dir).activity()) == 1


# ── Change events ────────────────────────────────────────────

class TestChangeEvents:
    def test_mutations_publish_events(self, data_dir):
        channel = StatusChannel()
        store = TaskStore(data_dir=data_dir, channel=channel)
        seen = []
        channel.subscribe("user-1", seen.append)

        task = store.create_task("user-1", "coder")
        store.start(task.id)
        store.record_log(task.id, "edit", "started")
        store.cancel(task.id)

        kinds = [(e.table, e.event_type, e.status) for e in seen]
        assert kinds == [
            ("agent_tasks", "INSERT", "pending"),
            ("agent_tasks", "UPDATE", "running"),
            ("activity_log", "INSERT", "started"),
            ("agent_tasks", "UPDATE", "cancelled"),
        ]

    def test_noop_cancel_publishes_nothing(self, data_dir):
        channel = StatusChannel()
        store = TaskStore(data_dir=data_dir, channel=channel)
        task = store.create_task("user-1", "coder")
        store.start(task.id)
        store.complete(task.id)
        seen = []
        channel.subscribe("user-1", seen.append)
        store.cancel(task.id)
        assert seen == []
