"""HTTP invocation surface."""

from metering.api.main import create_app

__all__ = ["create_app"]
