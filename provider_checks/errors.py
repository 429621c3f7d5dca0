from __future__ import annotations


class CheckError(Exception):
    """Base class for failures raised while running a single provider check."""


class TransportError(CheckError):
    """Network, DNS or connection failure before a usable HTTP response."""


class CheckTimeoutError(CheckError):
    """The per-check deadline elapsed or the call was cancelled."""


class ProtocolError(CheckError):
    """Non-2xx status or a body that could not be understood.

    ``status_code`` and ``response_body`` are kept for diagnostics only; they are
    never shown verbatim to users.
    """

    def __init__(self, message: str, *, status_code: int | None = None, response_body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class EmptyResponseError(CheckError):
    """The provider answered but no usable text could be extracted."""


class ConfigurationError(CheckError):
    """The provider config cannot be checked at all (e.g. unsupported type)."""
