"""
Domain exceptions for URL Finder.

Services raise these; the discovery pipeline and job queue translate them
into ``ResultCode`` / ``ErrorCode`` values on the produced result. Per-URL
probe failures are never raised, they are counted by the tester.
"""

from typing import Optional

from .types import ErrorCode


class UrlFinderError(RuntimeError):
    """Base class for all URL Finder errors."""

    error_code: Optional[ErrorCode] = None

    def __init__(self, message: str, error_code: Optional[ErrorCode] = None):
        super().__init__(message)
        if error_code is not None:
            self.error_code = error_code


class InvalidJobRequest(UrlFinderError):
    """Raised before a job is created when neither provider nor client was given."""

    error_code = ErrorCode.NO_PROVIDER_OR_CLIENT


class EndpointResolutionError(UrlFinderError):
    """Raised when the peer id or directory lookup fails for a provider."""


class DealSamplingError(UrlFinderError):
    """Raised when the deal table cannot be queried."""

    error_code = ErrorCode.FAILED_TO_GET_DEALS


class LotusRpcError(UrlFinderError):
    """Raised when the Lotus JSON-RPC endpoint fails or returns an error payload."""


class CidContactError(UrlFinderError):
    """Raised when cid.contact cannot be reached after retries."""

    error_code = ErrorCode.FAILED_TO_RETRIEVE_CID_CONTACT_DATA


class CidContactNoData(UrlFinderError):
    """Raised when cid.contact answers but has no usable record for the peer."""


class BmsError(UrlFinderError):
    """Raised when the bandwidth measurement service fails."""


class CircuitOpenError(BmsError):
    """Raised instead of calling BMS while its circuit breaker is open."""
