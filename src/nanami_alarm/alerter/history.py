"""Delivery history and deduplication.

Remembers which items were delivered per source in Redis, so a restart that
re-derives an overlapping window does not post the same item twice. The
history is advisory: Redis failures are logged and never block alarms.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


@dataclass
class DeliveryRecord:
    """Record of a delivered alarm.

    Attributes:
        source: Source key the item came from.
        item_id: Item id (the last-seen marker value).
        link: Canonical link of the item.
        sent_at: When the item was delivered.
    """

    source: str
    item_id: str
    link: str | None = None
    sent_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for storage."""
        return {
            "source": self.source,
            "item_id": self.item_id,
            "link": self.link,
            "sent_at": self.sent_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeliveryRecord:
        """Deserialize from dictionary."""
        sent_at = data.get("sent_at")
        if isinstance(sent_at, str):
            sent_at = datetime.fromisoformat(sent_at)
        elif sent_at is None:
            sent_at = datetime.now(UTC)

        return cls(
            source=data["source"],
            item_id=data["item_id"],
            link=data.get("link"),
            sent_at=sent_at,
        )


class DeliveryHistory:
    """Tracks delivered items per source with a TTL dedup key in Redis.

    Each key holds the JSON ``DeliveryRecord`` of the delivery and expires
    after ``dedup_ttl_hours``.
    """

    KEY_PREFIX_SENT = "nanami:sent:"

    def __init__(
        self,
        redis: Any,
        *,
        dedup_ttl_hours: int = 72,
    ) -> None:
        """Initialize delivery history.

        Args:
            redis: Redis client (async).
            dedup_ttl_hours: Hours a delivered item is remembered.
        """
        self.redis = redis
        self.dedup_ttl_hours = dedup_ttl_hours
        self._dedup_ttl = dedup_ttl_hours * 3600

    def _sent_key(self, source: str, item_id: str) -> str:
        return f"{self.KEY_PREFIX_SENT}{source}:{item_id}"

    async def should_send(self, source: str, item_id: str) -> bool:
        """Check whether an item has not been delivered yet.

        Returns:
            False only when Redis confirms an earlier delivery.
        """
        try:
            exists = await self.redis.exists(self._sent_key(source, item_id))
        except RedisError as e:
            logger.warning("Delivery history lookup failed for %s/%s: %s", source, item_id, e)
            return True

        if exists:
            logger.debug("Duplicate delivery for %s/%s", source, item_id)
            return False
        return True

    async def record_sent(self, source: str, item_id: str, link: str | None = None) -> bool:
        """Remember a delivered item.

        Returns:
            True if the record was stored.
        """
        record = DeliveryRecord(source=source, item_id=item_id, link=link)
        try:
            await self.redis.set(
                self._sent_key(source, item_id),
                json.dumps(record.to_dict()),
                ex=self._dedup_ttl,
            )
        except RedisError as e:
            logger.warning("Could not record delivery of %s/%s: %s", source, item_id, e)
            return False
        return True
