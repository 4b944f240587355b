"""
tests/test_notifications.py — Inbox and Notifier Tests
=======================================================
Inbox storage and read state, and the approval notice reaching both the
inbox and the push gateway from a worker thread.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from conftest import FakeGateway, add_program, add_users

from rally.engine.policy import DbPolicySource
from rally.services.admission_service import AdmissionController
from rally.services.delivery import DeliveryService
from rally.services.notification_service import NotificationService, Notifier

NOW = datetime(2026, 5, 10, 9, 0, tzinfo=UTC)


def run_async(coro):
    """Run a coroutine to completion (no pytest-asyncio needed)."""
    return asyncio.run(coro)


@pytest.fixture
def inbox(db_engine):
    ticks = iter(NOW + timedelta(minutes=n) for n in range(100))
    return NotificationService(db_engine, clock=lambda: next(ticks))


class TestInbox:
    def test_one_row_per_distinct_user(self, inbox):
        saved = inbox.save(["u1", "u2", "u1", ""], {"title": "Hi", "body": "Welcome"})

        assert saved == 2
        [item] = inbox.list_for_user("u1")["items"]
        assert item["title"] == "Hi"
        assert item["body"] == "Welcome"
        assert item["type"] == "general"
        assert item["data"] == {}
        assert item["is_read"] is False
        assert item["created_at"] == NOW.isoformat()

    def test_extra_keys_kept_as_data(self, inbox):
        inbox.save(["u1"], {"title": "Approved", "type": "program", "program_id": "7"})
        [item] = inbox.list_for_user("u1")["items"]
        assert item["type"] == "program"
        assert item["data"] == {"program_id": "7"}

    def test_title_required(self, inbox):
        with pytest.raises(ValueError):
            inbox.save(["u1"], {"body": "no title"})
        assert inbox.save_best_effort(["u1"], {"body": "no title"}) == 0

    def test_newest_first_with_paging(self, inbox):
        for n in range(5):
            inbox.save(["u1"], {"title": f"n{n}"})

        first = inbox.list_for_user("u1", page=0, size=2)
        last = inbox.list_for_user("u1", page=2, size=2)

        assert [i["title"] for i in first["items"]] == ["n4", "n3"]
        assert first["total"] == 5
        assert first["has_more"] is True
        assert [i["title"] for i in last["items"]] == ["n0"]
        assert last["has_more"] is False

    def test_mark_as_read(self, inbox):
        inbox.save(["u1"], {"title": "a"})
        inbox.save(["u1"], {"title": "b"})
        target = inbox.list_for_user("u1")["items"][0]["id"]

        assert inbox.mark_as_read("u1", target) is True
        assert inbox.mark_as_read("u1", target) is False

        listing = inbox.list_for_user("u1")
        assert listing["unread_count"] == 1
        assert [i["title"] for i in inbox.list_for_user("u1", unread_only=True)["items"]] == ["a"]
        assert listing["items"][0]["read_at"] is not None

    def test_cannot_read_someone_elses(self, inbox):
        inbox.save(["u1"], {"title": "private"})
        target = inbox.list_for_user("u1")["items"][0]["id"]

        assert inbox.mark_as_read("u2", target) is None
        assert inbox.mark_as_read("u1", 9999) is None
        assert inbox.list_for_user("u1")["unread_count"] == 1

    def test_mark_all_as_read(self, inbox):
        inbox.save(["u1", "u2"], {"title": "a"})
        inbox.save(["u1"], {"title": "b"})

        assert inbox.mark_all_as_read("u1") == 2
        assert inbox.mark_all_as_read("u1") == 0
        assert inbox.list_for_user("u1")["unread_count"] == 0
        assert inbox.list_for_user("u2")["unread_count"] == 1


class TestNotifier:
    def test_without_loop_only_inbox(self, db_engine):
        gateway = FakeGateway()
        inbox = NotificationService(db_engine)
        notifier = Notifier(inbox, DeliveryService(db_engine, gateway, inbox=inbox))

        notifier.notify(["u1"], {"title": "Hi"})

        assert inbox.list_for_user("u1")["total"] == 1
        assert gateway.calls == []

    def test_approval_pushed_from_worker_thread(self, file_engine):
        add_users(file_engine, ["u1"])
        program_id = add_program(file_engine, name="Sunrise 5K")
        gateway = FakeGateway()
        inbox = NotificationService(file_engine)
        notifier = Notifier(inbox, DeliveryService(file_engine, gateway, inbox=inbox))
        controller = AdmissionController(
            file_engine, DbPolicySource(file_engine), notifier=notifier
        )
        assert controller.apply(program_id, "u1", "runner_01").success

        async def scenario():
            notifier.bind_loop(asyncio.get_running_loop())
            result = await asyncio.to_thread(controller.approve, program_id, "u1")
            me = asyncio.current_task()
            for _ in range(200):
                if asyncio.all_tasks() == {me}:
                    break
                await asyncio.sleep(0.01)
            return result

        assert run_async(scenario()).success
        [(tokens, payload)] = gateway.calls
        assert tokens == ["tok-u1-0"]
        assert payload["title"] == "Application approved"
        assert "Sunrise 5K" in payload["body"]
        [item] = inbox.list_for_user("u1")["items"]
        assert item["type"] == "program"
        assert item["data"] == {"program_id": str(program_id)}


class TestApprovalNotice:
    @pytest.fixture
    def notifier(self):
        return MagicMock(spec=Notifier)

    @pytest.fixture
    def controller(self, db_engine, notifier):
        return AdmissionController(db_engine, DbPolicySource(db_engine), notifier=notifier)

    def test_approve_notifies_once(self, controller, notifier, db_engine):
        program_id = add_program(db_engine)
        controller.apply(program_id, "u1", "runner_01")

        controller.approve(program_id, "u1")
        controller.approve(program_id, "u1")

        notifier.notify.assert_called_once()
        user_ids, payload = notifier.notify.call_args.args
        assert user_ids == ["u1"]
        assert payload["title"] == "Application approved"

    def test_reject_does_not_notify(self, controller, notifier, db_engine):
        program_id = add_program(db_engine)
        controller.apply(program_id, "u1", "runner_01")

        controller.reject(program_id, "u1")

        notifier.notify.assert_not_called()

    def test_notifier_failure_does_not_undo_approval(self, controller, notifier, db_engine):
        program_id = add_program(db_engine)
        controller.apply(program_id, "u1", "runner_01")
        notifier.notify.side_effect = RuntimeError("inbox down")

        assert controller.approve(program_id, "u1").success
