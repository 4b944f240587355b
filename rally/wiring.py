"""
rally.wiring — Service Graph
=============================

Builds the long-lived service objects from an engine and config once, so
the API process and the worker wire things identically.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from rally.config import RallyConfig
from rally.engine.policy import DbPolicySource, PolicySource
from rally.services.admission_service import AdmissionController
from rally.services.delivery import DeliveryService, HttpPushGateway, PushGateway
from rally.services.fanout_service import FanoutCoordinator
from rally.services.ledger import ActionLedger
from rally.services.mirror import ContentMirror, HttpContentMirror, NullMirror
from rally.services.notification_service import NotificationService, Notifier
from rally.services.pending_service import PendingRewardStore
from rally.services.retry_shell import RewardService
from rally.services.reward_service import RewardEngine

if TYPE_CHECKING:
    from sqlalchemy import Engine


@dataclass(frozen=True, slots=True)
class Services:
    config: RallyConfig
    policies: PolicySource
    ledger: ActionLedger
    engine: RewardEngine
    pending: PendingRewardStore
    rewards: RewardService
    admission: AdmissionController
    delivery: DeliveryService
    notifications: NotificationService
    notifier: Notifier
    fanout: FanoutCoordinator


def build_services(
    db_engine: Engine,
    config: RallyConfig | None = None,
    *,
    policies: PolicySource | None = None,
    gateway: PushGateway | None = None,
    mirror: ContentMirror | None = None,
) -> Services:
    """Wire every service over *db_engine*.

    Without an explicit *gateway* the HTTP relay from ``PUSH_GATEWAY_URL``
    is used; without a *mirror* the HTTP mirror from
    ``CONTENT_MIRROR_URL`` if set, else a no-op mirror.
    """
    config = config or RallyConfig()
    policies = policies or DbPolicySource(db_engine)
    mirror = mirror or HttpContentMirror.from_env() or NullMirror()
    gateway = gateway or HttpPushGateway.from_env()

    ledger = ActionLedger(db_engine, config)
    reward_engine = RewardEngine(db_engine, policies, config)
    pending = PendingRewardStore(db_engine, config.pending)
    rewards = RewardService(reward_engine, pending, config.retry)
    notifications = NotificationService(db_engine)
    delivery = DeliveryService(
        db_engine,
        gateway,
        config.fanout.max_tokens_per_send,
        inbox=notifications,
        max_tokens_per_user=config.fanout.max_tokens_per_user,
    )
    notifier = Notifier(notifications, delivery)
    admission = AdmissionController(
        db_engine, policies, rewards, mirror, config, notifier=notifier
    )
    fanout = FanoutCoordinator(db_engine, reward_engine, delivery, config.fanout, mirror)

    return Services(
        config=config,
        policies=policies,
        ledger=ledger,
        engine=reward_engine,
        pending=pending,
        rewards=rewards,
        admission=admission,
        delivery=delivery,
        notifications=notifications,
        notifier=notifier,
        fanout=fanout,
    )
