"""Usage metering reconciliation for the dealer photo platform."""

__version__ = "0.1.0"
