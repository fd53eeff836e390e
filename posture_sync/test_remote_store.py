"""
Tests for the HTTP summary client: error mapping and cache invalidation
"""
import asyncio

import pytest
import requests

from posture_sync.errors import AuthRequired, TransientSyncError, ValidationRejected
from posture_sync.models import DailyAggregate, Principal
from posture_sync.remote_store import HttpSummaryStore, build_upsert_payload, classify_response

PRINCIPAL = Principal(user_id="user-1", token="token-1")


class FakeResponse:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self._body = body if body is not None else {}
        self.text = str(self._body)

    def json(self):
        return self._body


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []
        self.timeouts = []

    def request(self, method, url, json=None, headers=None, timeout=None):
        self.requests.append((method, url, json, headers))
        self.timeouts.append(timeout)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def day(**overrides):
    values = dict(user_id="user-1", date_iso="2024-03-05", sum_weighted=8.5, weight_seconds=35.0, count=3)
    values.update(overrides)
    return DailyAggregate(**values)


@pytest.mark.parametrize("status, error", [
    (401, AuthRequired), (403, AuthRequired),
    (408, TransientSyncError), (429, TransientSyncError), (500, TransientSyncError), (503, TransientSyncError),
    (400, ValidationRejected), (422, ValidationRejected),
])
def test_status_codes_map_to_error_taxonomy(status, error):
    with pytest.raises(error):
        classify_response(status, "detail")


def test_success_codes_pass():
    classify_response(200)
    classify_response(204)


def test_upsert_sends_bearer_token_and_wire_body():
    session = FakeSession([FakeResponse(200, {"dateISO": "2024-03-05"})])
    client = HttpSummaryStore("http://summaries.test/", timeout=1.0, session=session)

    result = asyncio.run(client.upsert(PRINCIPAL, build_upsert_payload(day())))

    method, url, body, headers = session.requests[0]
    assert (method, url) == ("PUT", "http://summaries.test/summaries")
    assert headers == {"Authorization": "Bearer token-1"}
    assert body == {"dateISO": "2024-03-05", "sumWeighted": 8.5, "weightSeconds": 35.0,
                    "count": 3, "badSeconds": 0.0}
    assert result == {"dateISO": "2024-03-05"}


def test_network_errors_are_transient():
    session = FakeSession([requests.ConnectionError("refused"), requests.Timeout("slow")])
    client = HttpSummaryStore("http://summaries.test", session=session)
    payload = build_upsert_payload(day())

    for _ in range(2):
        with pytest.raises(TransientSyncError) as exc:
            client.upsert_sync(PRINCIPAL, payload)
        assert exc.value.retryable


def test_missing_token_is_auth_required_without_request():
    session = FakeSession([])
    client = HttpSummaryStore("http://summaries.test", session=session)
    with pytest.raises(AuthRequired):
        client.upsert_sync(Principal(user_id="user-1", token=""), build_upsert_payload(day()))
    assert session.requests == []


def test_invalid_local_aggregate_never_leaves_device():
    with pytest.raises(ValidationRejected):
        build_upsert_payload(day(date_iso="2024-13-40"))
    with pytest.raises(ValidationRejected):
        build_upsert_payload(day(count=0, weight_seconds=0.0, sum_weighted=0.0))
    with pytest.raises(ValidationRejected):
        build_upsert_payload(day(weight_seconds=1.0, bad_seconds=4.0))


def test_cached_summary_invalidated_after_upsert():
    session = FakeSession([
        FakeResponse(200, {"count": 3}),
        FakeResponse(200, {"count": 4}),
    ])
    client = HttpSummaryStore("http://summaries.test", session=session)

    assert client.get_summary(PRINCIPAL, "2024-03-05") == {"count": 3}
    assert client.get_summary(PRINCIPAL, "2024-03-05") == {"count": 3}
    assert len(session.requests) == 1

    client.invalidate("user-1", "2024-03-05")
    assert client.get_summary(PRINCIPAL, "2024-03-05") == {"count": 4}


def test_missing_remote_summary_is_none():
    client = HttpSummaryStore("http://summaries.test", session=FakeSession([FakeResponse(404)]))
    assert client.get_summary(PRINCIPAL, "2024-03-05") is None


def test_request_timeout_can_only_be_shortened():
    session = FakeSession([FakeResponse(200), FakeResponse(200), FakeResponse(200)])
    client = HttpSummaryStore("http://summaries.test", timeout=10.0, session=session)
    payload = build_upsert_payload(day())

    client.upsert_sync(PRINCIPAL, payload)
    client.upsert_sync(PRINCIPAL, payload, timeout=0.2)
    client.upsert_sync(PRINCIPAL, payload, timeout=30.0)
    assert session.timeouts == [10.0, 0.2, 10.0]
