"""Exception hierarchy shared by the ledger, the metering client and the runners."""


class LedgerError(Exception):
    """The billing ledger datastore failed."""


class MeteringError(Exception):
    """The external metering service rejected or failed a call."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class MeteringTransientError(MeteringError):
    """Rate limiting, network or 5xx failure. Safe to retry on the same key."""


class MeteringAuthError(MeteringError):
    """Credentials rejected. Retrying will not help."""


class RunLockedError(Exception):
    """Another reconciliation run holds the lock for this scope."""

    def __init__(self, scope: str) -> None:
        super().__init__(f"Reconciliation already running for scope '{scope}'")
        self.scope = scope


class TenantNotFoundError(LedgerError):
    """The tenant does not exist in the ledger."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Unknown tenant '{tenant_id}'")
        self.tenant_id = tenant_id
