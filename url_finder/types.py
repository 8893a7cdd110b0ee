"""
Result taxonomy and identifier helpers for URL Finder.

Every outcome a discovery run can produce is a member of one of the closed
enumerations below. The string values are the stable vocabulary stored in
``url_results.result_code`` / ``url_results.error_code`` and returned to
callers, so they must never be renamed.

Usage:
    from url_finder.types import ResultCode, normalize_provider_id

    code = ResultCode.SUCCESS
    provider_id = normalize_provider_id("f01234")   # -> "1234"
"""

import re
from enum import Enum
from typing import Optional


class ResultCode(str, Enum):
    """Outcome of a discovery run (validation results and upstream reasons)."""
    NO_CID_CONTACT_DATA = "NoCidContactData"
    MISSING_ADDR_FROM_CID_CONTACT = "MissingAddrFromCidContact"
    MISSING_HTTP_ADDR_FROM_CID_CONTACT = "MissingHttpAddrFromCidContact"
    FAILED_TO_GET_WORKING_URL = "FailedToGetWorkingUrl"
    NO_DEALS_FOUND = "NoDealsFound"
    TIMED_OUT = "TimedOut"
    SUCCESS = "Success"
    REACHABLE_BUT_INVALID = "ReachableButInvalid"
    JOB_CREATED = "JobCreated"
    ERROR = "Error"

    def message(self) -> Optional[str]:
        """Human-readable explanation, None for success."""
        return _RESULT_MESSAGES.get(self)


_RESULT_MESSAGES = {
    ResultCode.NO_CID_CONTACT_DATA: "No data available from cid.contact for this provider",
    ResultCode.MISSING_ADDR_FROM_CID_CONTACT: "No address information found from cid.contact",
    ResultCode.MISSING_HTTP_ADDR_FROM_CID_CONTACT: "No HTTP address found in cid.contact data",
    ResultCode.FAILED_TO_GET_WORKING_URL: "Failed to find a working URL for this provider",
    ResultCode.NO_DEALS_FOUND: "No deals found for this provider",
    ResultCode.TIMED_OUT: "Request timed out while discovering URL",
    ResultCode.REACHABLE_BUT_INVALID: "Piece URLs respond but fail content validation",
    ResultCode.JOB_CREATED: "Discovery job queued",
    ResultCode.ERROR: "An error occurred during URL discovery",
}


class ErrorCode(str, Enum):
    """Infrastructure and input errors attached to a result."""
    NO_PROVIDER_OR_CLIENT = "NoProviderOrClient"
    NO_PROVIDERS_FOUND = "NoProvidersFound"
    FAILED_TO_RETRIEVE_CID_CONTACT_DATA = "FailedToRetrieveCidContactData"
    FAILED_TO_GET_PEER_ID = "FailedToGetPeerId"
    FAILED_TO_GET_DEALS = "FailedToGetDeals"


class DiscoveryType(str, Enum):
    """Whether a run sampled all of a provider's deals or one client's."""
    PROVIDER = "Provider"
    PROVIDER_CLIENT = "ProviderClient"


class JobStatus(str, Enum):
    """Lifecycle of a background discovery job."""
    CREATED = "Created"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED)


class ProbeOutcome(str, Enum):
    """Classification of a single HEAD probe, in rule order."""
    TIMEOUT = "timeout"                        # timed out, counts toward reliability
    TRANSPORT_ERROR = "transport_error"        # connection refused, TLS, DNS...
    UNREACHABLE = "unreachable"                # non-2xx status
    WRONG_HEADERS = "wrong_headers"            # bad content-type or no etag
    REACHABLE_INVALID = "reachable_invalid"    # headers ok, length missing or too small
    VALID = "valid"


# Scheduling status values stored on storage_providers
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


# =========================================================================
# Provider / client identifiers
# =========================================================================

_ADDRESS_RE = re.compile(r"^f0(\d{1,8})$")
_ID_RE = re.compile(r"^\d{1,8}$")


def _normalize(value: str, kind: str) -> str:
    if value is None:
        raise ValueError(f"{kind} id is required")
    value = value.strip()
    match = _ADDRESS_RE.match(value)
    if match:
        return match.group(1)
    if _ID_RE.match(value):
        return value
    raise ValueError(f"Invalid {kind} id: {value!r}")


def normalize_provider_id(value: str) -> str:
    """Return the bare numeric provider id for ``f01234`` or ``1234``."""
    return _normalize(value, "provider")


def normalize_client_id(value: str) -> str:
    """Return the bare numeric client id for ``f01234`` or ``1234``."""
    return _normalize(value, "client")


def to_address(id_value: str) -> str:
    """Return the ``f0``-prefixed address used by Lotus and BMS."""
    return f"f0{_normalize(id_value, 'actor')}"
