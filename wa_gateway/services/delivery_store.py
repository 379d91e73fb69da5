"""
Delivery Record Store

Durable persistence for queued webhook deliveries.

Claiming is a single conditional UPDATE ... RETURNING guarded by the row's
current status. That compare-and-swap is the only concurrency control between
workers: never replace it with a SELECT followed by an UPDATE.
"""
import asyncio
import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import (
    DBAPIError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wa_gateway.config import settings
from wa_gateway.logging_config import get_logger
from wa_gateway.models.base import utcnow
from wa_gateway.models.delivery import CLAIMABLE_STATUSES, DeliveryRecord, DeliveryStatus
from wa_gateway.services.http_delivery import is_sendable_header_value


logger = get_logger(component="delivery_store")

T = TypeVar("T")

QUEUE_TABLE = DeliveryRecord.__tablename__
RECOVERED_ERROR = "Recovered from unexpected shutdown"

# Postgres "undefined_table"
UNDEFINED_TABLE_SQLSTATE = "42P01"


class DeliveryQueueUnavailableError(Exception):
    """The webhook_delivery_queue table is missing (migration not applied)."""

    def __init__(self, message: str | None = None):
        super().__init__(message or f"{QUEUE_TABLE} table not found")


class InvalidDeliveryError(ValueError):
    """A delivery cannot be enqueued (bad webhook URL or secret, or non-JSON payload)."""


def is_missing_table_error(exc: BaseException) -> bool:
    """Check whether a database error means the queue table does not exist."""
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate == UNDEFINED_TABLE_SQLSTATE:
        return True

    message = str(orig if orig is not None else exc).lower()
    if QUEUE_TABLE not in message:
        return False
    return "no such table" in message or "does not exist" in message


def is_transient_error(exc: BaseException) -> bool:
    """Connection drops, lock timeouts and pool exhaustion are worth retrying."""
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, (OperationalError, InterfaceError, PoolTimeoutError))


def _webhook_field(webhook: Any, name: str, default: Any = None) -> Any:
    if isinstance(webhook, dict):
        return webhook.get(name, default)
    return getattr(webhook, name, default)


class DeliveryStore:
    """Async CRUD over DeliveryRecord with the compare-and-swap claim."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        retry_attempts: int | None = None,
        retry_base_delay: float | None = None,
    ):
        if session_factory is None:
            from wa_gateway.database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.retry_attempts = max(1, retry_attempts or settings.DB_RETRY_ATTEMPTS)
        self.retry_base_delay = (
            settings.DB_RETRY_BASE_SECONDS if retry_base_delay is None else retry_base_delay
        )

    async def _run(self, operation: str, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """
        Run fn in a fresh session, retrying transient storage errors.

        A missing queue table is re-raised as DeliveryQueueUnavailableError
        and never retried.
        """
        delay = self.retry_base_delay
        for attempt in range(1, self.retry_attempts + 1):
            try:
                async with self.session_factory() as session:
                    return await fn(session)
            except SQLAlchemyError as e:
                if is_missing_table_error(e):
                    raise DeliveryQueueUnavailableError() from e
                if not is_transient_error(e) or attempt == self.retry_attempts:
                    raise
                logger.warning(
                    "delivery_store_retry",
                    operation=operation,
                    attempt=attempt,
                    max_attempts=self.retry_attempts,
                    delay_seconds=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)
                delay *= 2
        raise RuntimeError("unreachable")  # pragma: no cover

    async def enqueue(
        self,
        account_id: str,
        webhook: Any,
        payload: dict,
        max_retries: int | None = None,
    ) -> DeliveryRecord:
        """
        Persist one pending delivery for one webhook.

        Args:
            account_id: Owning WhatsApp account
            webhook: Webhook row, WebhookTarget or dict with id/url/secret
            payload: JSON body to POST, stored verbatim
            max_retries: Attempt ceiling; defaults to the webhook's or WEBHOOK_MAX_RETRIES

        Returns:
            The new DeliveryRecord in PENDING status
        """
        url = _webhook_field(webhook, "url")
        if not isinstance(url, str) or not url.lower().startswith(("http://", "https://")):
            raise InvalidDeliveryError(f"Invalid webhook URL: {url!r}")
        secret = _webhook_field(webhook, "secret") or None
        if secret is not None and not (isinstance(secret, str) and is_sendable_header_value(secret)):
            raise InvalidDeliveryError("Webhook secret cannot be sent as an HTTP header")
        if not isinstance(payload, dict):
            raise InvalidDeliveryError("Webhook payload must be a JSON object")
        try:
            json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise InvalidDeliveryError(f"Webhook payload is not JSON serialisable: {e}") from e

        if max_retries is None:
            max_retries = _webhook_field(webhook, "max_retries") or settings.WEBHOOK_MAX_RETRIES

        webhook_id = _webhook_field(webhook, "id")
        # Generated before the retry loop so a replayed insert collides instead of duplicating
        record_id = str(uuid.uuid4())

        async def _insert(session: AsyncSession) -> DeliveryRecord:
            now = utcnow()
            record = DeliveryRecord(
                id=record_id,
                account_id=str(account_id),
                webhook_id=str(webhook_id) if webhook_id is not None else None,
                webhook_url=url,
                webhook_secret=secret,
                payload=payload,
                status=DeliveryStatus.PENDING,
                attempt_count=0,
                max_retries=int(max_retries),
                next_attempt_at=now,
                created_at=now,
                updated_at=now,
            )
            session.add(record)
            await session.commit()
            return record

        record = await self._run("enqueue", _insert)
        logger.debug(
            "delivery_enqueued",
            record_id=record.id,
            account_id=record.account_id,
            webhook_id=record.webhook_id,
        )
        return record

    async def get(self, record_id: str) -> DeliveryRecord | None:
        """Get a delivery record by ID."""
        async def _get(session: AsyncSession) -> DeliveryRecord | None:
            return await session.get(DeliveryRecord, record_id)

        return await self._run("get", _get)

    async def due_records(self, limit: int = 10, now: datetime | None = None) -> list[DeliveryRecord]:
        """
        Records ready for an attempt, oldest next_attempt_at first.

        Args:
            limit: Maximum batch size
            now: Reference time, defaults to the current UTC time
        """
        async def _due(session: AsyncSession) -> list[DeliveryRecord]:
            stmt = (
                select(DeliveryRecord)
                .where(
                    DeliveryRecord.status.in_(CLAIMABLE_STATUSES),
                    DeliveryRecord.next_attempt_at <= (now or utcnow()),
                )
                .order_by(DeliveryRecord.next_attempt_at.asc(), DeliveryRecord.created_at.asc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

        return await self._run("due_records", _due)

    async def claim(self, record: DeliveryRecord | str) -> DeliveryRecord | None:
        """
        Atomically move a record to PROCESSING and count the attempt.

        Returns:
            The claimed record, or None if another claimant got there first
        """
        record_id = record if isinstance(record, str) else record.id

        async def _claim(session: AsyncSession) -> DeliveryRecord | None:
            stmt = (
                update(DeliveryRecord)
                .where(
                    DeliveryRecord.id == record_id,
                    DeliveryRecord.status.in_(CLAIMABLE_STATUSES),
                )
                .values(
                    status=DeliveryStatus.PROCESSING,
                    attempt_count=DeliveryRecord.attempt_count + 1,
                    updated_at=utcnow(),
                )
                .returning(DeliveryRecord)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            claimed = result.scalars().first()
            await session.commit()
            return claimed

        claimed = await self._run("claim", _claim)
        if claimed is None:
            logger.debug("delivery_claim_lost", record_id=record_id)
        return claimed

    async def complete(self, record_id: str, response_status: int | None) -> bool:
        """Mark a delivery successful. Returns False if the record is gone."""
        async def _complete(session: AsyncSession) -> bool:
            stmt = (
                update(DeliveryRecord)
                .where(DeliveryRecord.id == record_id)
                .values(
                    status=DeliveryStatus.SUCCESS,
                    response_status=response_status,
                    last_error=None,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

        return await self._run("complete", _complete)

    async def fail(
        self,
        record: DeliveryRecord | str,
        error_message: str,
        next_attempt_at: datetime,
        is_dead_letter: bool = False,
        response_status: int | None = None,
    ) -> bool:
        """
        Record a failed attempt and either reschedule or dead-letter it.

        A record that already reached SUCCESS is left untouched.
        """
        record_id = record if isinstance(record, str) else record.id
        status = DeliveryStatus.DEAD_LETTER if is_dead_letter else DeliveryStatus.FAILED

        async def _fail(session: AsyncSession) -> bool:
            stmt = (
                update(DeliveryRecord)
                .where(
                    DeliveryRecord.id == record_id,
                    DeliveryRecord.status != DeliveryStatus.SUCCESS,
                )
                .values(
                    status=status,
                    last_error=error_message,
                    response_status=response_status,
                    next_attempt_at=next_attempt_at,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount > 0

        return await self._run("fail", _fail)

    async def reset_stuck(self, max_age_minutes: int = 5) -> int:
        """
        Return abandoned PROCESSING records to the pool.

        A record still PROCESSING after max_age_minutes belonged to a worker
        that died mid-attempt. Must run at worker startup.

        Returns:
            Number of records reset
        """
        async def _reset(session: AsyncSession) -> int:
            now = utcnow()
            cutoff = now - timedelta(minutes=max_age_minutes)
            stmt = (
                update(DeliveryRecord)
                .where(
                    DeliveryRecord.status == DeliveryStatus.PROCESSING,
                    DeliveryRecord.updated_at <= cutoff,
                )
                .values(
                    status=DeliveryStatus.FAILED,
                    next_attempt_at=now,
                    last_error=RECOVERED_ERROR,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount

        count = await self._run("reset_stuck", _reset)
        if count:
            logger.warning("delivery_stuck_records_reset", count=count, max_age_minutes=max_age_minutes)
        return count

    async def queue_stats(self) -> dict[str, int]:
        """Count records per status. Every status is present in the result."""
        async def _stats(session: AsyncSession) -> dict[str, int]:
            stmt = select(DeliveryRecord.status, func.count(DeliveryRecord.id)).group_by(DeliveryRecord.status)
            result = await session.execute(stmt)
            stats = {status.value: 0 for status in DeliveryStatus}
            for status, count in result.all():
                key = status.value if isinstance(status, DeliveryStatus) else str(status)
                stats[key] = count
            return stats

        return await self._run("queue_stats", _stats)

    async def list_records(
        self,
        status: DeliveryStatus | str | None = None,
        account_id: str | None = None,
        limit: int = 50,
    ) -> list[DeliveryRecord]:
        """List records, most recently updated first. Used to inspect dead letters."""
        async def _list(session: AsyncSession) -> list[DeliveryRecord]:
            stmt = select(DeliveryRecord)
            if status is not None:
                stmt = stmt.where(DeliveryRecord.status == DeliveryStatus(status))
            if account_id is not None:
                stmt = stmt.where(DeliveryRecord.account_id == account_id)
            stmt = stmt.order_by(DeliveryRecord.updated_at.desc()).limit(limit)
            result = await session.execute(stmt)
            return list(result.scalars().all())

        return await self._run("list_records", _list)

    async def purge_account(self, account_id: str) -> int:
        """
        Drop deliveries that can no longer matter because the account is gone.

        Only PENDING and FAILED records are removed; a PROCESSING record
        finishes its attempt and terminal records are kept for inspection.
        """
        async def _purge(session: AsyncSession) -> int:
            stmt = delete(DeliveryRecord).where(
                DeliveryRecord.account_id == account_id,
                DeliveryRecord.status.in_(CLAIMABLE_STATUSES),
            ).execution_options(synchronize_session=False)
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount

        count = await self._run("purge_account", _purge)
        logger.info("delivery_account_purged", account_id=account_id, count=count)
        return count
