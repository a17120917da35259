"""SQLAlchemy asyncio implementation of the billing ledger."""

from datetime import datetime, timezone

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from metering.config import Settings
from metering.errors import LedgerError, TenantNotFoundError
from metering.models import EDITED_IMAGE, LedgerEntry, Meter, Subscription, Tenant
from metering.store.base import BillingStore
from metering.store.tables import BillingEventRow, SubscriptionRow, TenantRow
from metering.utils.logging import get_logger

logger = get_logger(__name__)


class SqlBillingStore(BillingStore):
    """Billing ledger backed by PostgreSQL (asyncpg) or SQLite (aiosqlite)."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._sessions = async_sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SqlBillingStore":
        options = {}
        if settings.database_url.startswith("postgresql"):
            options = {
                "pool_size": settings.db_pool_size,
                "max_overflow": settings.db_max_overflow,
                "pool_pre_ping": True,
            }
        return cls(create_async_engine(settings.database_url, **options))

    async def list_tenants_with_billing(self, tenant_id: str | None = None) -> list[Tenant]:
        stmt = (
            select(TenantRow)
            .where(TenantRow.stripe_customer_id.is_not(None), TenantRow.is_active.is_(True))
            .order_by(TenantRow.created_at, TenantRow.id)
        )
        if tenant_id:
            stmt = stmt.where(TenantRow.id == tenant_id)

        try:
            async with self._sessions() as session:
                rows = (await session.scalars(stmt)).all()
                subs = await self._active_subscription_ids(session, [r.id for r in rows])
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to fetch tenants: {e}") from e

        return [
            Tenant(
                id=row.id,
                name=row.name,
                external_customer_ref=row.stripe_customer_id,
                active_subscription_ref=subs.get(row.id),
                is_active=row.is_active,
            )
            for row in rows
        ]

    async def _active_subscription_ids(self, session, tenant_ids: list[str]) -> dict[str, str]:
        if not tenant_ids:
            return {}
        stmt = select(SubscriptionRow.tenant_id, SubscriptionRow.id).where(
            SubscriptionRow.tenant_id.in_(tenant_ids),
            SubscriptionRow.status == "active",
        )
        return {tenant_id: sub_id for tenant_id, sub_id in (await session.execute(stmt)).all()}

    async def get_active_subscription(self, tenant_id: str) -> Subscription | None:
        stmt = (
            select(SubscriptionRow)
            .where(SubscriptionRow.tenant_id == tenant_id, SubscriptionRow.status == "active")
            .order_by(SubscriptionRow.current_period_start.desc())
            .limit(1)
        )
        try:
            async with self._sessions() as session:
                row = await session.scalar(stmt)
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to fetch subscription for {tenant_id}: {e}") from e

        if row is None:
            return None

        meter = None
        if row.meter_id and row.meter_event_name:
            meter = Meter(id=row.meter_id, event_name=row.meter_event_name)

        return Subscription(
            id=row.id,
            tenant_id=row.tenant_id,
            status=row.status,
            current_period_start=row.current_period_start,
            current_period_end=row.current_period_end,
            included_usage=row.included_usage,
            meter=meter,
        )

    async def list_unreported_entries(self, tenant_id: str) -> list[LedgerEntry]:
        stmt = (
            select(BillingEventRow)
            .where(BillingEventRow.tenant_id == tenant_id, BillingEventRow.reported.is_(False))
            .order_by(BillingEventRow.created_at.asc(), BillingEventRow.id.asc())
        )
        try:
            async with self._sessions() as session:
                rows = (await session.scalars(stmt)).all()
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to fetch unreported events: {e}") from e
        return [_to_entry(row) for row in rows]

    async def count_reported_entries(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime | None = None,
        billable_only: bool = False,
    ) -> int:
        stmt = select(func.count(BillingEventRow.id)).where(
            BillingEventRow.tenant_id == tenant_id,
            BillingEventRow.reported.is_(True),
            BillingEventRow.created_at >= start,
        )
        if end is not None:
            stmt = stmt.where(BillingEventRow.created_at < end)
        if billable_only:
            stmt = stmt.where(BillingEventRow.external_event_id.is_not(None))

        try:
            async with self._sessions() as session:
                return int(await session.scalar(stmt) or 0)
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to count reported events: {e}") from e

    async def mark_entries_reported(
        self,
        entry_ids: list[str],
        external_event_ref: str | None = None,
        reported_at: datetime | None = None,
    ) -> int:
        if not entry_ids:
            return 0
        stmt = (
            update(BillingEventRow)
            .where(BillingEventRow.id.in_(entry_ids), BillingEventRow.reported.is_(False))
            .values(
                reported=True,
                reported_at=reported_at or datetime.now(timezone.utc),
                external_event_id=external_event_ref,
            )
        )
        try:
            async with self._sessions.begin() as session:
                result = await session.execute(stmt)
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to mark events reported: {e}") from e

        if result.rowcount != len(entry_ids):
            logger.warning(
                "mark_reported_partial",
                requested=len(entry_ids),
                updated=result.rowcount,
            )
        return result.rowcount

    async def append_entry(
        self,
        tenant_id: str,
        event_type: str = EDITED_IMAGE,
        created_at: datetime | None = None,
    ) -> LedgerEntry:
        row = BillingEventRow(
            tenant_id=tenant_id,
            event_type=event_type,
            created_at=created_at or datetime.now(timezone.utc),
            reported=False,
        )
        try:
            async with self._sessions.begin() as session:
                if await session.get(TenantRow, tenant_id) is None:
                    raise TenantNotFoundError(tenant_id)
                session.add(row)
        except IntegrityError as e:
            # Tenant deleted between the lookup and the insert
            raise TenantNotFoundError(tenant_id) from e
        except SQLAlchemyError as e:
            raise LedgerError(f"Failed to record billing event: {e}") from e
        return _to_entry(row)

    async def health_check(self) -> bool:
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning("datastore_unhealthy", error=str(e))
            return False

    async def close(self) -> None:
        await self._engine.dispose()


def _to_entry(row: BillingEventRow) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,
        tenant_id=row.tenant_id,
        event_type=row.event_type,
        created_at=row.created_at,
        reported=row.reported,
        reported_at=row.reported_at,
        external_event_ref=row.external_event_id,
    )
