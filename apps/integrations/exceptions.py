"""
Exceptions raised by the building-block clients.

Callers decide whether a failure is fatal: a roster fetch failure aborts a
reconciliation pass, account lookups and notification sends are degraded.
"""


class IntegrationError(Exception):
    """Base exception for failed calls to an external building block."""

    def __init__(self, message, *, service=None, status_code=None):
        super().__init__(message)
        self.service = service
        self.status_code = status_code


class IntegrationNotConfiguredError(IntegrationError):
    """Raised when a client is used without a base URL."""
    pass
