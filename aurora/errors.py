"""Error taxonomy shared by capture and transcription."""

from __future__ import annotations


class AuroraError(Exception):
    pass


class CaptureUnavailable(AuroraError):
    """The input device could not be acquired."""


class InvalidState(AuroraError):
    """Operation is illegal for the current session state."""


class ConversionError(AuroraError):
    """Audio payload could not be decoded."""


class MalformedResponse(AuroraError):
    """Remote payload failed structural validation."""


class TransportError(AuroraError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class NonRetriableTransport(TransportError):
    pass


class RetriableTransport(TransportError):
    pass


class Timeout(RetriableTransport, TimeoutError):
    def __init__(self, message: str = "Request timed out") -> None:
        super().__init__(message, status_code=None)


class Aborted(AuroraError):
    def __init__(self, message: str = "Operation aborted") -> None:
        super().__init__(message)


__all__ = [
    "AuroraError",
    "Aborted",
    "CaptureUnavailable",
    "ConversionError",
    "InvalidState",
    "MalformedResponse",
    "NonRetriableTransport",
    "RetriableTransport",
    "Timeout",
    "TransportError",
]
