import json
from unittest import mock

import pytest
import requests

from client import ApiError, EWasteClient, TokenCache


class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self.content = json.dumps(body).encode() if body is not None else b""
        self._body = body

    def json(self):
        return self._body


@pytest.fixture
def cache(tmp_path):
    return TokenCache(str(tmp_path / "session" / "token.json"))


@pytest.fixture
def session():
    return mock.Mock(spec=requests.Session)


@pytest.fixture
def api(cache, session):
    return EWasteClient("http://localhost:8000/api/", cache, session=session)


def test_token_cache_round_trip(cache):
    assert cache.token is None
    cache.save("abc", {"id": "1"})
    assert cache.token == "abc"
    assert cache.user == {"id": "1"}
    cache.clear()
    assert cache.load() == {}


def test_corrupt_cache_reads_as_empty(tmp_path):
    path = tmp_path / "token.json"
    path.write_text("{not json")
    assert TokenCache(str(path)).load() == {}


def test_login_caches_token_and_later_calls_send_it(api, cache, session):
    session.request.side_effect = [
        FakeResponse(200, {"success": True, "token": "tok", "user": {"id": "u1", "role": "collector"}}),
        FakeResponse(200, {"success": True, "count": 0, "data": []}),
    ]
    user = api.login("a@example.com", "secret123")
    assert user["role"] == "collector"
    assert cache.token == "tok"

    assert api.ewaste.all(status="pending", condition=None) == []
    kwargs = session.request.call_args.kwargs
    assert kwargs["url"] == "http://localhost:8000/api/ewaste"
    assert kwargs["headers"]["Authorization"] == "Bearer tok"
    assert kwargs["params"] == {"status": "pending"}


def test_success_flag_is_required(api, session):
    session.request.return_value = FakeResponse(200, {"data": {"id": "x"}})
    with pytest.raises(ApiError) as exc:
        api.ewaste.get("x")
    assert exc.value.status_code == 200


def test_error_message_is_surfaced(api, session):
    session.request.return_value = FakeResponse(400, {"success": False, "error": "E-waste already collected"})
    with pytest.raises(ApiError) as exc:
        api.ewaste.mark("abc")
    assert exc.value.status_code == 400
    assert exc.value.message == "E-waste already collected"
    assert session.request.call_args.kwargs["url"].endswith("/ewaste/abc/collect")


def test_transport_failure(api, session):
    session.request.side_effect = requests.ConnectionError("refused")
    with pytest.raises(ApiError) as exc:
        api.bulk.my_posts()
    assert exc.value.status_code == 0


def test_create_sends_form_fields_and_images(api, session):
    session.request.return_value = FakeResponse(201, {"success": True, "data": {"id": "lot1"}})
    api.bulk.create({"title": "Cables", "weight_in_kg": 50, "price_per_kg": None}, images=[("a.png", b"png")])
    kwargs = session.request.call_args.kwargs
    assert kwargs["method"] == "POST"
    assert kwargs["url"].endswith("/bulk-ewaste")
    assert kwargs["data"] == {"title": "Cables", "weight_in_kg": "50", "price_per_kg": ""}
    assert kwargs["files"] == [("images", ("a.png", b"png"))]


def test_sold_path_and_logout(api, cache, session):
    cache.save("tok", None)
    session.request.return_value = FakeResponse(200, {"success": True, "data": {"status": "sold"}})
    assert api.bulk.mark("lot1")["status"] == "sold"
    assert session.request.call_args.kwargs["url"].endswith("/bulk-ewaste/lot1/sold")
    api.logout()
    assert cache.token is None


def test_mark_shorthands(api, session):
    session.request.return_value = FakeResponse(200, {"success": True, "data": {"status": "collected"}})
    api.mark_collected("item1")
    assert session.request.call_args.kwargs["method"] == "PUT"
    assert session.request.call_args.kwargs["url"].endswith("/ewaste/item1/collect")
    api.mark_sold("lot1")
    assert session.request.call_args.kwargs["url"].endswith("/bulk-ewaste/lot1/sold")
