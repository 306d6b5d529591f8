from typing import Optional


class VaultError(RuntimeError):
    """
    Base class for upstream pinning service failures.

    `status_code` carries the upstream HTTP status, or None when the
    service was unreachable or answered with an unusable body.
    """

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StoreError(VaultError):
    """The pin write endpoint rejected the record or was unreachable."""


class FetchError(VaultError):
    """The pin index or the gateway rejected the request or was unreachable."""
