"""
tests/test_fanout.py — Bulk Broadcast Tests
============================================
Partial-failure accounting, batching, eligibility filtering, idempotent
re-runs and persisted broadcast records.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import FakeGateway, add_users, make_policies
from sqlalchemy import select
from sqlalchemy.orm import Session

from rally.config import FanoutSettings
from rally.database.models import AdminLog, Broadcast, BroadcastStatus, utcnow
from rally.engine.results import AddResult
from rally.services.delivery import DeliveryService
from rally.services.fanout_service import ConsentFilter, FanoutCoordinator
from rally.services.mirror import NullMirror
from rally.services.reward_service import RewardEngine

MESSAGE = {"title": "Spring challenge", "body": "Thanks for running with us"}
USERS = [f"u{n}" for n in range(10)]


def run_async(coro):
    """Run a coroutine to completion (no pytest-asyncio needed)."""
    return asyncio.run(coro)


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _mock_rewards(failing=()) -> MagicMock:
    rewards = MagicMock(spec=RewardEngine)

    def add_reward(user_id, amount, action_key, entry_id, *args, **kwargs):
        if user_id in failing:
            raise ConnectionResetError(f"reward store reset for {user_id}")
        return AddResult(entry_id=entry_id, is_duplicate=False)

    rewards.add_reward_to_user.side_effect = add_reward
    return rewards


def _coordinator(
    engine, rewards, gateway, batch_size=100, mirror=None, sleep=None, clock=None, lease_seconds=900
):
    return FanoutCoordinator(
        engine,
        rewards,
        DeliveryService(engine, gateway),
        FanoutSettings(
            batch_size=batch_size, batch_delay_seconds=0.5, lease_seconds=lease_seconds
        ),
        mirror=mirror,
        sleep=sleep or SleepRecorder(),
        clock=clock or utcnow,
    )


class TestPartialFailure:
    def test_reward_and_delivery_failures_counted(self, db_engine):
        add_users(db_engine, USERS)
        rewards = _mock_rewards(failing={"u0", "u1", "u2"})
        gateway = FakeGateway(failing_tokens=["tok-u3-0", "tok-u4-0"])
        coordinator = _coordinator(db_engine, rewards, gateway)

        report = run_async(coordinator.run_broadcast(USERS, MESSAGE, reward_amount=10, job_key="spring"))

        assert report.status == BroadcastStatus.PARTIAL.value
        assert report.success_count == 5
        assert report.failure_count == 5
        assert report.failed_ids.reward_failed == ["u0", "u1", "u2"]
        assert sorted(report.failed_ids.delivery_failed) == ["u3", "u4"]
        assert rewards.add_reward_to_user.call_count == 10

    def test_reward_failures_not_notified(self, db_engine):
        add_users(db_engine, USERS)
        gateway = FakeGateway()
        coordinator = _coordinator(db_engine, _mock_rewards(failing={"u0"}), gateway)

        run_async(coordinator.run_broadcast(USERS, MESSAGE, reward_amount=10))

        assert "tok-u0-0" not in gateway.sent_tokens
        assert len(gateway.sent_tokens) == 9

    def test_entry_ids_are_per_job_and_user(self, db_engine):
        add_users(db_engine, ["u1"])
        rewards = _mock_rewards()
        coordinator = _coordinator(db_engine, rewards, FakeGateway())

        run_async(coordinator.run_broadcast(["u1"], MESSAGE, reward_amount=10, job_key="42"))

        args = rewards.add_reward_to_user.call_args.args
        assert args[0] == "u1"
        assert args[1] == 10
        assert args[3] == "broadcast:42:u1"

    def test_everyone_delivered_is_completed(self, db_engine):
        add_users(db_engine, USERS)
        coordinator = _coordinator(db_engine, _mock_rewards(), FakeGateway())

        report = run_async(coordinator.run_broadcast(USERS, MESSAGE, reward_amount=10))

        assert report.status == BroadcastStatus.COMPLETED.value
        assert report.success_count == 10
        assert report.failure_count == 0

    def test_nobody_delivered_is_failed(self, db_engine):
        add_users(db_engine, USERS[:3])
        coordinator = _coordinator(db_engine, _mock_rewards(failing=set(USERS)), FakeGateway())

        report = run_async(coordinator.run_broadcast(USERS[:3], MESSAGE, reward_amount=10))

        assert report.status == BroadcastStatus.FAILED.value
        assert report.failure_count == 3

    def test_empty_recipient_list(self, db_engine):
        coordinator = _coordinator(db_engine, _mock_rewards(), FakeGateway())
        report = run_async(coordinator.run_broadcast([], MESSAGE))
        assert report.status == BroadcastStatus.FAILED.value
        assert report.success_count == 0
        assert report.failure_count == 0


class TestBatching:
    def test_failed_batch_does_not_stop_run(self, db_engine):
        add_users(db_engine, USERS[:8])
        gateway = FakeGateway(raise_on_call=1)
        sleep = SleepRecorder()
        coordinator = _coordinator(db_engine, _mock_rewards(), gateway, batch_size=4, sleep=sleep)

        report = run_async(coordinator.run_broadcast(USERS[:8], MESSAGE))

        assert report.status == BroadcastStatus.PARTIAL.value
        assert report.failed_ids.delivery_failed == ["u0", "u1", "u2", "u3"]
        assert report.success_count == 4
        assert sleep.calls == [0.5]

    def test_pause_between_batches_only(self, db_engine):
        add_users(db_engine, USERS)
        sleep = SleepRecorder()
        gateway = FakeGateway()
        coordinator = _coordinator(db_engine, _mock_rewards(), gateway, batch_size=3, sleep=sleep)

        run_async(coordinator.run_broadcast(USERS, MESSAGE))

        assert len(gateway.calls) == 4
        assert sleep.calls == [0.5, 0.5, 0.5]

    def test_duplicate_recipients_collapsed(self, db_engine):
        add_users(db_engine, ["u1", "u2"])
        rewards = _mock_rewards()
        coordinator = _coordinator(db_engine, rewards, FakeGateway())

        report = run_async(
            coordinator.run_broadcast(["u1", "u2", "u1", ""], MESSAGE, reward_amount=5)
        )

        assert report.success_count == 2
        assert rewards.add_reward_to_user.call_count == 2

    def test_no_reward_skips_reward_engine(self, db_engine):
        add_users(db_engine, ["u1"])
        rewards = _mock_rewards()
        coordinator = _coordinator(db_engine, rewards, FakeGateway())

        report = run_async(coordinator.run_broadcast(["u1"], MESSAGE))

        assert report.success_count == 1
        rewards.add_reward_to_user.assert_not_called()
        rewards.deduct.assert_not_called()


class TestEligibility:
    def test_consent_filter(self, db_engine):
        add_users(db_engine, ["u1", "u2"])
        add_users(db_engine, ["u3"], marketing=False)
        rewards = _mock_rewards()
        coordinator = _coordinator(db_engine, rewards, FakeGateway())

        report = run_async(coordinator.run_broadcast(
            ["u1", "u2", "u3", "ghost"], MESSAGE, reward_amount=5,
            eligibility=ConsentFilter(db_engine),
        ))

        assert report.eligible_count == 2
        assert report.failed_ids.filtered == ["u3", "ghost"]
        assert report.success_count == 2
        assert report.failure_count == 2
        assert report.status == BroadcastStatus.COMPLETED.value
        assert rewards.add_reward_to_user.call_count == 2

    def test_nobody_eligible(self, db_engine):
        add_users(db_engine, ["u1"], marketing=False)
        coordinator = _coordinator(db_engine, _mock_rewards(), FakeGateway())

        report = run_async(coordinator.run_broadcast(
            ["u1"], MESSAGE, eligibility=ConsentFilter(db_engine)
        ))
        assert report.status == BroadcastStatus.FAILED.value


class TestWithLedger:
    @pytest.fixture
    def reward_engine(self, file_engine):
        return RewardEngine(file_engine, make_policies())

    def test_rerun_pays_nobody_twice(self, file_engine, reward_engine):
        add_users(file_engine, ["u1", "u2", "u3"])
        coordinator = _coordinator(file_engine, reward_engine, FakeGateway())

        first = run_async(coordinator.run_broadcast(
            ["u1", "u2", "u3"], MESSAGE, reward_amount=10, job_key="job-1"
        ))
        second = run_async(coordinator.run_broadcast(
            ["u1", "u2", "u3"], MESSAGE, reward_amount=10, job_key="job-1"
        ))

        assert first.success_count == 3
        assert second.success_count == 3
        assert [reward_engine.balance(u) for u in ("u1", "u2", "u3")] == [10, 10, 10]

    def test_negative_amount_deducts(self, file_engine, reward_engine):
        add_users(file_engine, ["u1", "u2"])
        coordinator = _coordinator(file_engine, reward_engine, FakeGateway())
        run_async(coordinator.run_broadcast(["u1"], MESSAGE, reward_amount=10, job_key="grant"))

        report = run_async(coordinator.run_broadcast(
            ["u1", "u2"], MESSAGE, reward_amount=-4, job_key="penalty"
        ))

        assert report.success_count == 2
        assert reward_engine.balance("u1") == 6
        assert reward_engine.balance("u2") == 0


class TestBroadcastRecords:
    def _add_broadcast(self, engine, recipients, **fields) -> int:
        with Session(engine) as session:
            broadcast = Broadcast(
                title="Spring challenge",
                body="Thanks for running with us",
                recipient_ids=recipients,
                created_by="admin-1",
                **fields,
            )
            session.add(broadcast)
            session.commit()
            return broadcast.id

    def test_result_written_back(self, file_engine):
        add_users(file_engine, ["u1", "u2"])
        add_users(file_engine, ["u3"], marketing=False)
        broadcast_id = self._add_broadcast(
            file_engine, ["u1", "u2", "u3"], reward_amount=5, requires_marketing_consent=True
        )
        mirror = MagicMock(spec=NullMirror)
        reward_engine = RewardEngine(file_engine, make_policies())
        coordinator = _coordinator(file_engine, reward_engine, FakeGateway(), mirror=mirror)

        report = run_async(coordinator.run_broadcast_record(broadcast_id))

        assert report.job_key == str(broadcast_id)
        assert report.status == BroadcastStatus.COMPLETED.value
        with Session(file_engine) as session:
            row = session.get(Broadcast, broadcast_id)
            assert row.status == BroadcastStatus.COMPLETED.value
            assert row.success_count == 2
            assert row.failure_count == 1
            assert row.failed_ids["filtered"] == ["u3"]
            assert row.sent_at is not None
            [log] = session.scalars(select(AdminLog)).all()
            assert log.action_type == "BROADCAST"
            assert log.actor_id == "admin-1"
        mirror.update_broadcast_status.assert_called_once_with(broadcast_id, report.to_dict())
        assert reward_engine.balance("u1") == 5

    def test_not_pending_is_skipped(self, file_engine):
        add_users(file_engine, ["u1"])
        broadcast_id = self._add_broadcast(file_engine, ["u1"])
        coordinator = _coordinator(file_engine, _mock_rewards(), FakeGateway())

        assert run_async(coordinator.run_broadcast_record(broadcast_id)) is not None
        assert run_async(coordinator.run_broadcast_record(broadcast_id)) is None
        assert run_async(coordinator.run_broadcast_record(9999)) is None

    def test_mirror_failure_is_ignored(self, file_engine):
        add_users(file_engine, ["u1"])
        broadcast_id = self._add_broadcast(file_engine, ["u1"])
        mirror = MagicMock(spec=NullMirror)
        mirror.update_broadcast_status.side_effect = ConnectionResetError("mirror down")
        coordinator = _coordinator(file_engine, _mock_rewards(), FakeGateway(), mirror=mirror)

        report = run_async(coordinator.run_broadcast_record(broadcast_id))
        assert report.status == BroadcastStatus.COMPLETED.value

    def test_aborted_run_returns_to_pending(self, file_engine):
        broadcast_id = self._add_broadcast(file_engine, ["u1"])
        coordinator = _coordinator(file_engine, _mock_rewards(), FakeGateway())
        coordinator.run_broadcast = AsyncMock(side_effect=RuntimeError("worker killed"))

        with pytest.raises(RuntimeError):
            run_async(coordinator.run_broadcast_record(broadcast_id))

        with Session(file_engine) as session:
            assert session.get(Broadcast, broadcast_id).status == BroadcastStatus.PENDING.value

    def test_run_pending_broadcasts(self, file_engine):
        add_users(file_engine, ["u1", "u2"])
        first = self._add_broadcast(file_engine, ["u1"])
        second = self._add_broadcast(file_engine, ["u2"])
        coordinator = _coordinator(file_engine, _mock_rewards(), FakeGateway())

        reports = run_async(coordinator.run_pending_broadcasts())

        assert [r.job_key for r in reports] == [str(first), str(second)]
        assert run_async(coordinator.run_pending_broadcasts()) == []

    def test_lapsed_lease_is_run_again(self, file_engine):
        add_users(file_engine, ["u1"])
        broadcast_id = self._add_broadcast(file_engine, ["u1"])
        now = [datetime(2026, 5, 10, 9, 0, tzinfo=UTC)]
        coordinator = _coordinator(
            file_engine, _mock_rewards(), FakeGateway(), clock=lambda: now[0], lease_seconds=60
        )
        # A run that claimed the row and then died before writing a result.
        assert coordinator._claim_broadcast(broadcast_id) is not None

        assert run_async(coordinator.run_pending_broadcasts()) == []

        now[0] += timedelta(seconds=61)
        [report] = run_async(coordinator.run_pending_broadcasts())

        assert report.status == BroadcastStatus.COMPLETED.value
        with Session(file_engine) as session:
            row = session.get(Broadcast, broadcast_id)
            assert row.status == BroadcastStatus.COMPLETED.value
            assert row.claimed_until is None

    def test_live_lease_blocks_second_runner(self, file_engine):
        add_users(file_engine, ["u1"])
        broadcast_id = self._add_broadcast(file_engine, ["u1"])
        coordinator = _coordinator(file_engine, _mock_rewards(), FakeGateway())
        assert coordinator._claim_broadcast(broadcast_id) is not None

        assert run_async(coordinator.run_broadcast_record(broadcast_id)) is None
        with Session(file_engine) as session:
            assert session.get(Broadcast, broadcast_id).status == BroadcastStatus.SENDING.value
