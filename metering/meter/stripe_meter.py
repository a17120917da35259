"""Stripe Billing Meters client for usage submission and aggregation."""

import asyncio
from datetime import datetime, timezone
from typing import Any

import stripe

from metering.config import Settings
from metering.errors import MeteringAuthError, MeteringError, MeteringTransientError
from metering.meter.base import MeteringService
from metering.models import Meter
from metering.utils.logging import get_logger
from metering.utils.periods import align_to_minute

logger = get_logger(__name__)


def translate_stripe_error(error: stripe.StripeError) -> MeteringError:
    """Map SDK exceptions onto the retryable / fatal split used by the engine."""
    code = getattr(error, "code", None)
    message = getattr(error, "user_message", None) or str(error)

    if isinstance(error, (stripe.RateLimitError, stripe.APIConnectionError)):
        return MeteringTransientError(message, code=code)
    if isinstance(error, (stripe.AuthenticationError, stripe.PermissionError)):
        return MeteringAuthError(message, code=code)
    if isinstance(error, stripe.APIError):
        # 5xx from Stripe
        return MeteringTransientError(message, code=code)
    return MeteringError(message, code=code)


class StripeMeteringService(MeteringService):
    """
    Usage metering on Stripe Billing Meters.

    Meter events carry the idempotency key both as the event ``identifier``
    (Stripe deduplicates identifiers within a rolling 24h window) and as the
    request idempotency key.
    """

    def __init__(self, api_key: str, api_version: str | None = None) -> None:
        if not api_key:
            raise ValueError("Stripe secret key not configured")
        self._api_key = api_key
        self._api_version = api_version

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeMeteringService":
        if settings.stripe_secret_key is None:
            raise ValueError("STRIPE_SECRET_KEY is required for usage reporting")
        return cls(
            api_key=settings.stripe_secret_key.get_secret_value(),
            api_version=settings.stripe_api_version,
        )

    def _options(self) -> dict[str, Any]:
        options: dict[str, Any] = {"api_key": self._api_key}
        if self._api_version:
            options["stripe_version"] = self._api_version
        return options

    async def _call(self, func, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except stripe.StripeError as e:
            raise translate_stripe_error(e) from e

    async def submit_usage_event(
        self,
        meter: Meter,
        idempotency_key: str,
        customer_ref: str,
        value: int = 1,
        timestamp: datetime | None = None,
    ) -> str:
        if value < 1:
            raise ValueError(f"Invalid usage value: {value}")

        when = timestamp or datetime.now(timezone.utc)
        try:
            event = await self._call(
                stripe.billing.MeterEvent.create,
                event_name=meter.event_name,
                payload={"value": str(value), "stripe_customer_id": customer_ref},
                identifier=idempotency_key,
                timestamp=int(when.timestamp()),
                idempotency_key=idempotency_key,
                **self._options(),
            )
        except MeteringError as e:
            if isinstance(e.__cause__, stripe.IdempotencyError):
                # Key already used with other parameters: the event exists
                logger.info("usage_event_duplicate", identifier=idempotency_key)
                return idempotency_key
            logger.error(
                "usage_event_failed",
                identifier=idempotency_key,
                meter=meter.id,
                error=str(e),
            )
            raise

        logger.debug("usage_event_submitted", identifier=event.identifier, meter=meter.id)
        return event.identifier

    async def get_aggregated_usage(
        self,
        meter: Meter,
        customer_ref: str,
        start: datetime,
        end: datetime,
    ) -> int:
        start_ts, end_ts = align_to_minute(start, end)

        def _sum_summaries() -> float:
            summaries = stripe.billing.Meter.list_event_summaries(
                meter.id,
                customer=customer_ref,
                start_time=start_ts,
                end_time=end_ts,
                **self._options(),
            )
            return sum(s.aggregated_value for s in summaries.auto_paging_iter())

        total = await self._call(_sum_summaries)
        logger.debug("meter_summaries_fetched", meter=meter.id, total=total)
        return int(round(total))


def create_metering_service(settings: Settings) -> MeteringService:
    """Factory function to create the configured metering service."""
    logger.info("creating_stripe_metering_service", api_version=settings.stripe_api_version)
    return StripeMeteringService.from_settings(settings)
