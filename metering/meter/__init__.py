"""External metering service clients."""

from metering.meter.base import MeteringService
from metering.meter.stripe_meter import (
    StripeMeteringService,
    create_metering_service,
    translate_stripe_error,
)

__all__ = [
    "MeteringService",
    "StripeMeteringService",
    "create_metering_service",
    "translate_stripe_error",
]
