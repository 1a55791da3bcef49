"""Retry/backoff behaviour of the API client."""

import requests

from runner_agent.api_client import ApiClient

from conftest import FakeResponse, FakeSession

URL = "https://api.example/orgs/acme/actions/runners"


def make_client(session, sleeps, **kwargs):
    return ApiClient(credential="ghp_test", session=session, sleep=sleeps.append, **kwargs)


def test_backoff_schedule_then_success():
    session = FakeSession()
    session.add("GET", URL,
                requests.ConnectionError("reset"),
                requests.Timeout("slow"),
                FakeResponse(200, {"runners": []}))
    sleeps = []

    resp = make_client(session, sleeps, retries=3, initial_delay=1, backoff=2).call_json("GET", URL)

    assert resp.ok
    assert resp.data == {"runners": []}
    assert resp.attempts == 3
    assert sleeps == [1, 2]
    assert sum(sleeps) == 3


def test_invalid_json_is_retried():
    session = FakeSession()
    session.add("POST", URL, FakeResponse(502, text="<html>Bad Gateway</html>"), FakeResponse(201, {"token": "t"}))
    sleeps = []

    resp = make_client(session, sleeps).call_json("POST", URL)

    assert resp.ok and resp.data == {"token": "t"}
    assert session.count("POST") == 2
    assert sleeps == [1]


def test_json_error_payload_is_final():
    session = FakeSession()
    session.add("POST", URL, FakeResponse(401, {"message": "Bad credentials"}))
    sleeps = []

    resp = make_client(session, sleeps).call_json("POST", URL)

    assert resp.ok
    assert resp.status == 401
    assert resp.data["message"] == "Bad credentials"
    assert session.count("POST") == 1
    assert sleeps == []


def test_exhaustion_returns_last_response():
    session = FakeSession()
    session.add("GET", URL, FakeResponse(503, text="unavailable"))
    sleeps = []

    resp = make_client(session, sleeps).call_json("GET", URL)

    assert not resp.ok
    assert resp.status == 503
    assert resp.text == "unavailable"
    assert resp.attempts == 6
    assert sleeps == [1, 2, 4, 8, 16]


def test_per_call_retries_override():
    session = FakeSession()
    session.add("GET", URL, requests.ConnectionError("down"))
    sleeps = []

    resp = make_client(session, sleeps, retries=6).call_json("GET", URL, retries=1)

    assert not resp.ok
    assert resp.attempts == 1
    assert session.count("GET") == 1
    assert sleeps == []


def test_status_call_retries_outside_2xx():
    session = FakeSession()
    session.add("DELETE", f"{URL}/5", FakeResponse(500), FakeResponse(422, {"message": "busy"}), FakeResponse(204))
    sleeps = []

    resp = make_client(session, sleeps, initial_delay=0.5).call_status("DELETE", f"{URL}/5")

    assert resp.ok
    assert resp.status == 204
    assert sleeps == [0.5, 1.0]


def test_headers():
    client = ApiClient(credential="ghp_test", session=FakeSession())
    assert client.headers() == {
        "Accept": "application/vnd.github+json",
        "Authorization": "token ghp_test",
    }
    assert "Authorization" not in ApiClient(session=FakeSession()).headers()
