"""
Tests for the result taxonomy and identifier helpers.
"""

import pytest

from url_finder.exceptions import CidContactError, DealSamplingError, InvalidJobRequest, UrlFinderError
from url_finder.types import (
    DiscoveryType,
    ErrorCode,
    JobStatus,
    ResultCode,
    normalize_client_id,
    normalize_provider_id,
    to_address,
)


class TestResultCode:
    """Stored vocabulary and messages."""

    def test_values_are_stable(self):
        assert ResultCode.NO_CID_CONTACT_DATA.value == "NoCidContactData"
        assert ResultCode.MISSING_ADDR_FROM_CID_CONTACT.value == "MissingAddrFromCidContact"
        assert ResultCode.MISSING_HTTP_ADDR_FROM_CID_CONTACT.value == "MissingHttpAddrFromCidContact"
        assert ResultCode.FAILED_TO_GET_WORKING_URL.value == "FailedToGetWorkingUrl"
        assert ResultCode.NO_DEALS_FOUND.value == "NoDealsFound"
        assert ResultCode.TIMED_OUT.value == "TimedOut"
        assert ResultCode.SUCCESS.value == "Success"
        assert ResultCode.REACHABLE_BUT_INVALID.value == "ReachableButInvalid"
        assert ResultCode.JOB_CREATED.value == "JobCreated"
        assert ResultCode.ERROR.value == "Error"

    def test_success_has_no_message(self):
        assert ResultCode.SUCCESS.message() is None

    def test_every_failure_has_a_message(self):
        for code in ResultCode:
            if code is not ResultCode.SUCCESS:
                assert code.message()

    def test_round_trips_from_stored_value(self):
        assert ResultCode("ReachableButInvalid") is ResultCode.REACHABLE_BUT_INVALID

    def test_error_codes(self):
        assert {e.value for e in ErrorCode} == {
            "NoProviderOrClient",
            "NoProvidersFound",
            "FailedToRetrieveCidContactData",
            "FailedToGetPeerId",
            "FailedToGetDeals",
        }

    def test_discovery_types(self):
        assert DiscoveryType.PROVIDER.value == "Provider"
        assert DiscoveryType.PROVIDER_CLIENT.value == "ProviderClient"


class TestJobStatus:
    def test_terminal_states(self):
        assert JobStatus.SUCCEEDED.is_terminal
        assert JobStatus.FAILED.is_terminal
        assert not JobStatus.CREATED.is_terminal
        assert not JobStatus.RUNNING.is_terminal


class TestIdentifiers:
    """Provider/client id normalization."""

    @pytest.mark.parametrize("value", ["f01234", "1234", " f01234 "])
    def test_normalize_provider_id(self, value):
        assert normalize_provider_id(value) == "1234"

    def test_normalize_client_id(self):
        assert normalize_client_id("f03000") == "3000"

    @pytest.mark.parametrize("value", ["", "f1abc", "t01234", "f0", "123456789", "abc"])
    def test_invalid_ids_raise(self, value):
        with pytest.raises(ValueError):
            normalize_provider_id(value)

    def test_to_address(self):
        assert to_address("1234") == "f01234"
        assert to_address("f01234") == "f01234"


class TestExceptions:
    def test_class_level_error_codes(self):
        assert InvalidJobRequest("x").error_code == ErrorCode.NO_PROVIDER_OR_CLIENT
        assert DealSamplingError("x").error_code == ErrorCode.FAILED_TO_GET_DEALS
        assert CidContactError("x").error_code == ErrorCode.FAILED_TO_RETRIEVE_CID_CONTACT_DATA

    def test_error_code_override(self):
        error = UrlFinderError("boom", ErrorCode.FAILED_TO_GET_PEER_ID)
        assert error.error_code == ErrorCode.FAILED_TO_GET_PEER_ID
        assert str(error) == "boom"
