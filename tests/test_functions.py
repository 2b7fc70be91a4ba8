"""Tests for util.functions and util.errors."""

from datetime import datetime, timezone

import pytest

from util import functions
from util.enums import ErrorMessage
from util.errors import AdmissionRejected


@pytest.mark.parametrize(
    "amount,expected",
    [(0, "0.00"), (10_000, "0.01"), (1_234_567, "1.23"), (1_999_999, "1.99")],
)
def test_format_units_truncates(amount, expected):
    assert functions.format_units(amount, 6) == expected


def test_day_and_minute_strings_are_utc():
    at = datetime(2026, 10, 19, 23, 59, 30, tzinfo=timezone.utc)
    assert functions.day_str_utc(at) == "2026-10-19"
    assert functions.minute_str_utc(at) == "202610192359"
    assert functions.seconds_left_in_minute(at) == 30


def test_is_valid_address():
    assert functions.is_valid_address("0x" + "aB" * 20)
    assert not functions.is_valid_address("0x" + "a" * 39)
    assert not functions.is_valid_address(None)


def test_admission_rejected_body():
    err = AdmissionRejected(ErrorMessage.RATE_LIMIT_MINUTE, retry_after=12)

    assert err.status_code == 429
    assert err.body() == {
        "ok": False,
        "error": "RATE_LIMIT_MINUTE",
        "message": ErrorMessage.RATE_LIMIT_MINUTE.value.message,
        "retryAfter": 12,
    }
    assert "retryAfter" not in AdmissionRejected(ErrorMessage.DUPLICATE_CLAIM).body()
