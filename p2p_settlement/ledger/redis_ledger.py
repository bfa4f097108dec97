"""
Redis implementation of the payment ledger.

Key schema (shared with the intake flow):

    payment:{id}               hash, one string field per payment attribute
    payments:pending           set of payment ids
    payments:completed         set of payment ids
    payments:expiry            sorted set, score = expiry epoch ms
    user:{id}:activePayment    string, current payment id of a chat user

Status transitions WATCH the payment hash, re-read the status and write it in
a MULTI block, so a concurrent writer (e.g. the expiry reaper racing the
reconciliation cycle) can never be clobbered.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from p2p_settlement.exceptions import LedgerError
from p2p_settlement.ledger.base import (
    COMPLETED_KEY,
    EXPIRY_KEY,
    PENDING_KEY,
    PaymentLedger,
    active_payment_key,
    payment_key,
)
from p2p_settlement.models.enums import PaymentStatus, can_transition
from p2p_settlement.models.payment import HASH_FIELDS, PaymentRequest, to_epoch_ms, utcnow

logger = logging.getLogger("p2p_settlement.ledger")

MAX_CAS_ATTEMPTS = 5


def _hash_fields(fields: dict[str, Any]) -> dict[str, str]:
    """Map attribute names to hash field names and stringify values."""
    data = {}
    for name, value in fields.items():
        if value is None:
            continue
        if isinstance(value, datetime):
            value = to_epoch_ms(value)
        elif isinstance(value, PaymentStatus):
            value = value.value
        data[HASH_FIELDS.get(name, name)] = str(value)
    return data


class RedisPaymentLedger(PaymentLedger):
    """Payment ledger backed by a Redis server."""

    def __init__(self, client: redis.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisPaymentLedger":
        return cls(redis.from_url(url, encoding="utf-8", decode_responses=True))

    async def close(self) -> None:
        await self._redis.aclose()

    @asynccontextmanager
    async def _errors(self, action: str):
        try:
            yield
        except RedisError as e:
            logger.error("Ledger %s failed: %s", action, e)
            raise LedgerError(f"Ledger {action} failed: {e}") from e

    async def get(self, payment_id: str) -> Optional[PaymentRequest]:
        async with self._errors(f"read of payment {payment_id}"):
            data = await self._redis.hgetall(payment_key(payment_id))
        if not data:
            return None
        return PaymentRequest.from_hash(payment_id, data)

    async def create(self, payment: PaymentRequest) -> None:
        async with self._errors(f"create of payment {payment.id}"):
            async with self._redis.pipeline(transaction=False) as pipe:
                pipe.hset(payment_key(payment.id), mapping=payment.to_hash())
                pipe.zadd(EXPIRY_KEY, {payment.id: to_epoch_ms(payment.expires_at)})
                pipe.sadd(PENDING_KEY, payment.id)
                if payment.user_id:
                    pipe.set(active_payment_key(payment.user_id), payment.id)
                await pipe.execute()

    async def transition(
        self,
        payment_id: str,
        target: PaymentStatus,
        fields: Optional[dict[str, Any]] = None,
    ) -> bool:
        key = payment_key(payment_id)
        now = str(to_epoch_ms(utcnow()))
        data = _hash_fields(fields or {})
        data.update({"status": target.value, f"{target.value}At": now, "lastUpdated": now})

        async with self._errors(f"transition of payment {payment_id} to {target.value}"):
            for _ in range(MAX_CAS_ATTEMPTS):
                async with self._redis.pipeline(transaction=True) as pipe:
                    try:
                        await pipe.watch(key)
                        current = await pipe.hget(key, "status")
                        if current is None:
                            return False
                        try:
                            current_status = PaymentStatus(current)
                        except ValueError:
                            logger.warning("Payment %s has unknown status %r", payment_id, current)
                            return False
                        if not can_transition(current_status, target):
                            logger.info(
                                "Refusing transition of payment %s: %s -> %s",
                                payment_id,
                                current_status.value,
                                target.value,
                            )
                            return False

                        pipe.multi()
                        pipe.hset(key, mapping=data)
                        await pipe.execute()
                        return True
                    except WatchError:
                        logger.debug("Payment %s changed during transition, retrying", payment_id)

        raise LedgerError(f"Payment {payment_id} kept changing, transition to {target.value} abandoned")

    async def update_fields(self, payment_id: str, fields: dict[str, Any]) -> None:
        data = _hash_fields(fields)
        if not data:
            return
        data["lastUpdated"] = str(to_epoch_ms(utcnow()))
        async with self._errors(f"update of payment {payment_id}"):
            await self._redis.hset(payment_key(payment_id), mapping=data)

    async def pending_ids(self) -> list[str]:
        async with self._errors("read of pending index"):
            return sorted(await self._redis.smembers(PENDING_KEY))

    async def completed_ids(self) -> list[str]:
        async with self._errors("read of completed index"):
            return sorted(await self._redis.smembers(COMPLETED_KEY))

    async def payment_ids(self) -> list[str]:
        prefix = payment_key("")
        async with self._errors("scan of payment records"):
            keys = [key async for key in self._redis.scan_iter(match=f"{prefix}*")]
        return sorted(key[len(prefix):] for key in keys)

    async def mark_completed(self, payment_id: str) -> None:
        async with self._errors(f"completion of payment {payment_id}"):
            await self._redis.srem(PENDING_KEY, payment_id)
            await self._redis.sadd(COMPLETED_KEY, payment_id)

    async def remove_pending(self, payment_id: str) -> None:
        async with self._errors(f"pending removal of payment {payment_id}"):
            await self._redis.srem(PENDING_KEY, payment_id)

    async def due_for_expiry(self, now: datetime) -> list[str]:
        async with self._errors("read of expiry index"):
            return list(await self._redis.zrangebyscore(EXPIRY_KEY, 0, to_epoch_ms(now)))

    async def remove_from_expiry(self, payment_id: str) -> None:
        async with self._errors(f"expiry removal of payment {payment_id}"):
            await self._redis.zrem(EXPIRY_KEY, payment_id)

    async def get_active_payment(self, user_id: str) -> Optional[str]:
        async with self._errors(f"read of active payment for user {user_id}"):
            return await self._redis.get(active_payment_key(user_id))

    async def clear_active_payment(self, user_id: str) -> None:
        async with self._errors(f"clear of active payment for user {user_id}"):
            await self._redis.delete(active_payment_key(user_id))

    async def memo_in_use(self, memo: str) -> bool:
        for payment_id in await self.pending_ids():
            async with self._errors(f"memo read of payment {payment_id}"):
                if await self._redis.hget(payment_key(payment_id), "memo") == memo:
                    return True
        return False
