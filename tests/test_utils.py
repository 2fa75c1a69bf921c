from datetime import datetime, timezone

import pytest

from utils import RetryHelper, is_valid_key, parse_timestamp, strip_html, truncate_string, viral_score


@pytest.mark.parametrize("key", [
    "https://x/1",
    "https://www.example.com/story?id=1",
    "yt_dQw4w9WgXcQ",
    "reddit_1abcd",
    "hn_40000000",
])
def test_valid_keys(key):
    assert is_valid_key(key)


@pytest.mark.parametrize("key", [
    "",
    None,
    " padded",
    "has space",
    "http://",
    "ftp://example.com/file",
    "x" * 3000,
])
def test_invalid_keys(key):
    assert not is_valid_key(key)


def test_parse_timestamp_formats():
    expected = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert parse_timestamp("2024-05-01T10:00:00Z") == expected
    assert parse_timestamp("Wed, 01 May 2024 10:00:00 GMT") == expected
    assert parse_timestamp(1714557600) == expected
    assert parse_timestamp("1714557600") == expected
    assert parse_timestamp("2024-05-01T10:00:00") == expected
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None
    assert parse_timestamp(0) is None


def test_strip_html():
    assert strip_html("<p>Hello <b>world</b></p><script>x()</script>") == "Hello world"
    assert strip_html("  plain   text ") == "plain text"
    assert strip_html(None) == ""


def test_truncate_string():
    assert truncate_string("short", 10) == "short"
    assert truncate_string("a" * 20, 10) == "aaaaaaa..."


def test_viral_score_is_bounded():
    assert viral_score(0, 0) == 0
    assert viral_score(100, 20) == 4
    assert viral_score(10**6, 10**6) == 100


def test_retry_delay_is_capped():
    helper = RetryHelper(base_delay=1.0, max_delay=5.0)
    assert helper.calculate_delay(0) == 1.0
    assert helper.calculate_delay(2) == 4.0
    assert helper.calculate_delay(10) == 5.0
