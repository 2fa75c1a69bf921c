import json
import re
from datetime import datetime, timezone

import pytest

from records import ContentRecord, FetchRequest, FetchResult, Scope, generate_request_id, normalize_priority


def test_scope_parse_and_str():
    assert Scope.parse("us") == Scope("us")
    assert Scope.parse("US:10") == Scope("US", "10")
    assert str(Scope("US", "10")) == "US:10"
    assert str(Scope("us")) == "us"
    with pytest.raises(ValueError):
        Scope.parse("")
    with pytest.raises(ValueError):
        Scope.parse(":10")


def test_normalize_priority():
    assert normalize_priority("HIGH") == "high"
    assert normalize_priority(None) == "normal"
    assert normalize_priority("urgent") == "normal"


def test_request_id_format():
    when = datetime(2024, 5, 1, 10, 30, 5, tzinfo=timezone.utc)
    assert re.fullmatch(r"US:10-20240501-103005-[0-9a-f]{6}", generate_request_id(Scope("US", "10"), when))

    request = FetchRequest(domain="news", region="us", requested_at=when)
    assert re.fullmatch(r"us-20240501-103005-[0-9a-f]{6}", request.request_id)


def test_request_ids_in_the_same_second_are_distinct():
    when = datetime(2024, 5, 1, 10, 30, 5, tzinfo=timezone.utc)
    first = FetchRequest(domain="news", region="us", requested_at=when)
    second = FetchRequest(domain="news", region="us", requested_at=when)
    assert first.request_id != second.request_id


def test_fetch_request_json_uses_camel_case():
    request = FetchRequest(domain="videos", region="US", category="10", max_items=20, priority="high")

    data = json.loads(request.to_json())

    assert data["maxItems"] == 20
    assert data["requestId"] == request.request_id
    assert data["priority"] == "high"

    decoded = FetchRequest.from_json(request.to_json())
    assert decoded.scope == Scope("US", "10")
    assert decoded.requested_at == request.requested_at


def test_fetch_request_accepts_max_videos_alias():
    decoded = FetchRequest.from_json('{"domain": "videos", "region": "IN", "maxVideos": 15}')
    assert decoded.max_items == 15
    assert decoded.priority == "normal"
    assert decoded.request_id.startswith("IN-")


@pytest.mark.parametrize("payload", ["{not json", "[]", '{"domain": "news"}', '{"domain": "news", "region": "us", "maxPages": "x"}'])
def test_fetch_request_rejects_bad_payloads(payload):
    with pytest.raises(ValueError):
        FetchRequest.from_json(payload)


def test_fetch_result_omits_empty_error():
    request = FetchRequest(domain="news", region="us")
    result = FetchResult.for_request(request, attempt=2)
    result.success = True
    result.item_count = 12

    data = json.loads(result.to_json())

    assert "error" not in data
    assert data["itemCount"] == 12
    assert data["attempt"] == 2
    assert FetchResult.from_json(result.to_json()).request_id == request.request_id


def test_content_hash_ignores_fetched_at():
    a = ContentRecord(domain="news", key="k", title="T", fetched_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
    b = ContentRecord(domain="news", key="k", title="T", fetched_at=datetime(2024, 2, 1, tzinfo=timezone.utc))
    c = ContentRecord(domain="news", key="k", title="Other")

    assert a.content_hash() == b.content_hash()
    assert a.content_hash() != c.content_hash()


def test_record_to_dict():
    record = ContentRecord(
        domain="videos",
        key="yt_abc",
        title="Clip",
        region="US",
        category="10",
        published_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
    )

    data = record.to_dict()

    assert data["scope"] == "US:10"
    assert data["publishedAt"] == "2024-05-01T00:00:00+00:00"
    assert data["fetchedAt"] is None
    assert "extra" not in data
