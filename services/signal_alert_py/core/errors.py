"""Exceptions raised by the upstream clients.

Every client (market data, charting, webhook) raises ``ProviderError``
carrying the HTTP status the API should answer with.
"""
from __future__ import annotations

from typing import Optional


class ProviderError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    @property
    def http_status(self) -> int:
        code = self.status_code
        if isinstance(code, int) and not isinstance(code, bool) and 400 <= code <= 599:
            return code
        return 500


class DeliveryError(ProviderError):
    """The messaging webhook refused or did not confirm a message."""
