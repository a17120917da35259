"""External metering service interface."""

from abc import ABC, abstractmethod
from datetime import datetime

from metering.models import Meter


class MeteringService(ABC):
    """
    Abstract base class for the usage metering/invoicing provider.

    Implementations must raise a ``MeteringError`` subclass on any failure
    and must deduplicate submissions that reuse an idempotency key.
    """

    @abstractmethod
    async def submit_usage_event(
        self,
        meter: Meter,
        idempotency_key: str,
        customer_ref: str,
        value: int = 1,
        timestamp: datetime | None = None,
    ) -> str:
        """
        Record usage against a meter.

        Args:
            meter: Meter the customer's metered price reports to
            idempotency_key: Caller-chosen key; repeats are deduplicated
            customer_ref: Provider customer identifier
            value: Units of usage
            timestamp: When the usage happened (defaults to now)

        Returns:
            Provider reference of the recorded event
        """

    @abstractmethod
    async def get_aggregated_usage(
        self,
        meter: Meter,
        customer_ref: str,
        start: datetime,
        end: datetime,
    ) -> int:
        """
        Total usage recorded for a customer on a meter within a window.

        Must use the provider's event aggregation, never an invoice preview.
        """

    async def close(self) -> None:
        """Release client resources."""
