"""
rally.services.delivery — Push Delivery to Users
=================================================

Maps users to their device tokens, hands the tokens to a
:class:`PushGateway` and folds per-token results back into per-user
success: a user counts as delivered if **any** of their tokens succeeded.

Users with push consent withdrawn, or with no registered tokens, count as
delivery failures without touching the gateway.  Every recipient still
gets the message in their inbox.
"""

from __future__ import annotations

import logging
import os
from collections import defaultdict
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

import httpx
from sqlalchemy import delete, select, update

from rally.database.engine import get_session, run_db
from rally.database.models import DeviceToken, User, as_utc, utcnow
from rally.engine.errors import GatewayError

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from rally.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


class PushGateway(Protocol):
    async def send(self, tokens: Sequence[str], payload: Mapping) -> list[bool]:
        """Deliver *payload* to each token; return one success flag per token."""


class HttpPushGateway:
    """Posts multicast requests to a push relay (``PUSH_GATEWAY_URL``).

    Expected response: ``{"results": [{"success": true}, ...]}`` in token
    order.
    """

    def __init__(self, base_url: str, api_key: str | None = None, timeout: float = 10.0) -> None:
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout
        )

    @classmethod
    def from_env(cls) -> HttpPushGateway:
        url = os.getenv("PUSH_GATEWAY_URL", "").strip()
        if not url:
            raise RuntimeError("PUSH_GATEWAY_URL is not set.")
        return cls(url, api_key=os.getenv("PUSH_GATEWAY_KEY") or None)

    async def send(self, tokens: Sequence[str], payload: Mapping) -> list[bool]:
        resp = await self._client.post(
            "/send", json={"tokens": list(tokens), "notification": dict(payload)}
        )
        resp.raise_for_status()
        results = resp.json().get("results", [])
        return [bool(item.get("success")) for item in results]


@dataclass(slots=True)
class DeliveryReport:
    delivered: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class DeliveryService:
    """User-level delivery on top of a token-level gateway.

    Also owns the device-token lifecycle: registration (capped per user,
    least recently used evicted), removal and ``last_used_at`` upkeep.
    """

    def __init__(
        self,
        engine: Engine,
        gateway: PushGateway,
        max_tokens_per_send: int = 500,
        inbox: NotificationService | None = None,
        max_tokens_per_user: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.gateway = gateway
        self.max_tokens_per_send = max_tokens_per_send
        self.inbox = inbox
        self.max_tokens_per_user = max_tokens_per_user
        self._clock = clock

    # -------------------------------------------------------------------
    # Device tokens
    # -------------------------------------------------------------------
    def register_token(self, user_id: str, token: str) -> dict:
        """Save or refresh *token* for *user_id*.

        A token already held by another user moves to this one.  Past
        ``max_tokens_per_user`` the least recently used tokens are dropped.
        """
        token = token.strip()
        if not token:
            raise ValueError("token must not be empty")
        now = self._clock()
        with get_session(self.engine) as session:
            if session.get(User, user_id) is None:
                session.add(User(id=user_id, created_at=now))
                session.flush()
            row = session.scalar(select(DeviceToken).where(DeviceToken.token == token))
            created = row is None
            if created:
                row = DeviceToken(user_id=user_id, token=token, created_at=now)
                session.add(row)
            else:
                row.user_id = user_id
            row.last_used_at = now
            session.flush()

            stale = session.scalars(
                select(DeviceToken)
                .where(DeviceToken.user_id == user_id, DeviceToken.id != row.id)
                .order_by(DeviceToken.last_used_at.desc().nulls_last(), DeviceToken.id.desc())
                .offset(max(self.max_tokens_per_user - 1, 0))
            ).all()
            for old in stale:
                session.delete(old)
            if stale:
                logger.info("Evicted %d stale tokens for %s", len(stale), user_id)
            return {"id": row.id, "created": created}

    def delete_token(self, user_id: str, token: str) -> bool:
        with get_session(self.engine) as session:
            result = session.execute(
                delete(DeviceToken).where(
                    DeviceToken.user_id == user_id, DeviceToken.token == token
                )
            )
            return result.rowcount > 0

    def list_tokens(self, user_id: str) -> list[dict]:
        with get_session(self.engine) as session:
            rows = session.scalars(
                select(DeviceToken)
                .where(DeviceToken.user_id == user_id)
                .order_by(DeviceToken.id)
            ).all()
            return [
                {
                    "id": row.id,
                    "token": row.token,
                    "last_used_at": as_utc(row.last_used_at).isoformat()
                    if row.last_used_at else None,
                }
                for row in rows
            ]

    def touch_tokens(self, tokens: Sequence[str]) -> None:
        if not tokens:
            return
        with get_session(self.engine) as session:
            session.execute(
                update(DeviceToken)
                .where(DeviceToken.token.in_(list(tokens)))
                .values(last_used_at=self._clock())
            )

    def load_tokens(self, user_ids: Sequence[str]) -> dict[str, list[str]]:
        """Tokens per user, for users who have not withdrawn push consent."""
        if not user_ids:
            return {}
        with get_session(self.engine) as session:
            rows = session.execute(
                select(DeviceToken.user_id, DeviceToken.token)
                .join(User, User.id == DeviceToken.user_id)
                .where(DeviceToken.user_id.in_(list(user_ids)), User.push_consent.is_(True))
                .order_by(DeviceToken.user_id, DeviceToken.id)
            ).all()
        tokens: dict[str, list[str]] = defaultdict(list)
        for user_id, token in rows:
            tokens[user_id].append(token)
        return dict(tokens)

    # -------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------
    async def deliver(self, user_ids: Sequence[str], payload: Mapping) -> DeliveryReport:
        """Save *payload* to each user's inbox and push it to their devices.

        A chunk the gateway rejects (exception or malformed reply) fails only
        the users whose tokens were in it; earlier chunks keep their result.
        """
        report = DeliveryReport()
        unique_ids = list(dict.fromkeys(user_ids))
        if self.inbox is not None:
            await run_db(self.inbox.save_best_effort, unique_ids, payload)
        tokens_by_user = await run_db(self.load_tokens, unique_ids)

        owners: list[str] = []
        tokens: list[str] = []
        for user_id in unique_ids:
            user_tokens = tokens_by_user.get(user_id, [])
            if not user_tokens:
                report.failed.append(user_id)
                continue
            for token in user_tokens:
                owners.append(user_id)
                tokens.append(token)

        succeeded: set[str] = set()
        used: list[str] = []
        step = self.max_tokens_per_send
        for start in range(0, len(tokens), step):
            chunk = tokens[start:start + step]
            try:
                results = await self.gateway.send(chunk, payload)
                if len(results) != len(chunk):
                    raise GatewayError(
                        f"Gateway returned {len(results)} results for {len(chunk)} tokens"
                    )
            except Exception:
                logger.exception(
                    "Push chunk at offset %d failed; %d tokens marked failed", start, len(chunk)
                )
                continue
            for owner, token, ok in zip(owners[start:start + step], chunk, results):
                if ok:
                    succeeded.add(owner)
                    used.append(token)

        for user_id in unique_ids:
            if user_id in succeeded:
                report.delivered.append(user_id)
            elif user_id in tokens_by_user:
                report.failed.append(user_id)

        if used:
            try:
                await run_db(self.touch_tokens, used)
            except Exception:
                logger.warning("Could not update last_used_at for %d tokens", len(used))
        if report.failed:
            logger.debug("Delivery failed for %d of %d users", len(report.failed), len(unique_ids))
        return report
