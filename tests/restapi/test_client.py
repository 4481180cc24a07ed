"""Tests for the REST API client: paths, retries, errors and headers."""

import httpx
import pytest

from testbed_reservation import errors
from testbed_reservation.restapi import Resource, RestClient, client

# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def test_client_checks_connection_at_construction(api):
    """The API root is fetched once while the client is built."""
    RestClient("https://api.test/", transport=httpx.MockTransport(api))
    assert [r.url.path for r in api.requests] == ["/"]


def test_client_rejected_credentials_raise_authentication_error(api):
    """A 401 on the API root is fatal and points at the configuration."""
    api.add("GET", "/", httpx.Response(401, text="Unauthorized"))
    with pytest.raises(errors.AuthenticationError, match="testbed_api.json"):
        RestClient(
            "https://api.test/",
            username="alice",
            password="wrong",
            transport=httpx.MockTransport(api),
        )


def test_client_other_construction_errors_propagate(api):
    """Server errors while checking the connection are not hidden."""
    api.add("GET", "/", httpx.Response(503, text="maintenance"))
    with pytest.raises(errors.ApiError) as exc_info:
        RestClient("https://api.test/", transport=httpx.MockTransport(api))
    assert exc_info.value.status_code == 503


def test_client_sends_basic_auth_when_credentials_given(api, rest_client):
    """Both username and password produce a Basic Authorization header."""
    assert api.requests[0].headers["Authorization"].startswith("Basic ")


def test_client_without_credentials_sends_no_auth(api):
    """Inside the testbed no credentials are sent."""
    RestClient("https://api.test/", username="alice", transport=httpx.MockTransport(api))
    assert "Authorization" not in api.requests[0].headers


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"base_url": ""}, "base_url"),
        ({"base_url": "https://api.test/", "timeout": 0}, "timeout"),
        ({"base_url": "https://api.test/", "retries": -1}, "retries"),
    ],
)
def test_client_rejects_invalid_settings(kwargs, message):
    """Invalid settings fail before any request is attempted."""
    with pytest.raises(ValueError, match=message):
        RestClient(**kwargs)


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def test_api_path_prefixes_version_and_strips_leading_slash(rest_client):
    assert rest_client.api_path("/sites/nancy") == "sid/sites/nancy"
    assert rest_client.api_path("sites") == "sid/sites"


def test_get_strips_leading_separator(api, rest_client):
    """Absolute hrefs from links do not produce double separators."""
    api.add("GET", "/sid/sites", {"items": []})
    rest_client.get("/sid/sites")
    assert api.requests[-1].url == "https://api.test/sid/sites"


def test_get_sends_json_accept_and_user_agent(api, rest_client):
    api.add("GET", "/sid/sites", {"items": []})
    rest_client.get("sid/sites")
    request = api.requests[-1]
    assert request.headers["Accept"] == "application/json"
    assert request.headers["User-Agent"].startswith("testbed-reservation/")
    assert "Python" in request.headers["User-Agent"]


def test_get_passes_query_parameters(api, rest_client):
    api.add("GET", "/sid/sites/nancy/jobs", {"items": []})
    rest_client.get("sid/sites/nancy/jobs", params={"state": "running"})
    assert api.requests[-1].url.params["state"] == "running"


def test_get_decodes_envelope(api, rest_client):
    api.add("GET", "/sid/sites", {"items": [{"uid": "nancy"}, {"uid": "lyon"}]})
    sites = rest_client.get("sid/sites")
    assert [s.uid for s in sites.items] == ["nancy", "lyon"]


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------


def test_get_retries_timeouts_within_bound(api, rest_client):
    """Two timeouts followed by a success return the successful result."""
    api.add(
        "GET",
        "/sid/sites",
        httpx.ReadTimeout("timed out"),
        httpx.ReadTimeout("timed out"),
        {"items": [{"uid": "nancy"}]},
    )
    sites = rest_client.get("sid/sites")
    assert sites.items[0].uid == "nancy"
    assert len(api.sent("GET", "/sid/sites")) == 3


def test_get_succeeds_after_three_timeouts(api, rest_client):
    """Three retries are allowed: the fourth attempt still counts."""
    api.add(
        "GET",
        "/sid/sites",
        httpx.ReadTimeout("timed out"),
        httpx.ConnectTimeout("timed out"),
        httpx.ReadTimeout("timed out"),
        {"items": []},
    )
    assert rest_client.get("sid/sites").items == []


def test_get_raises_after_four_consecutive_timeouts(api, rest_client):
    api.add("GET", "/sid/sites", httpx.ReadTimeout("timed out"))
    with pytest.raises(httpx.TimeoutException):
        rest_client.get("sid/sites")
    assert len(api.sent("GET", "/sid/sites")) == 4


def test_get_sleeps_backoff_between_retries(api, monkeypatch):
    """The configured backoff separates two attempts."""
    sleeps = []
    monkeypatch.setattr(client.time, "sleep", sleeps.append)
    rest = RestClient(
        "https://api.test/",
        retries=2,
        retry_backoff=1.5,
        transport=httpx.MockTransport(api),
    )
    api.add("GET", "/x", httpx.ReadTimeout("timed out"), {"uid": "x"})
    rest.get("x")
    assert sleeps == [1.5]


def test_get_does_not_retry_server_errors(api, rest_client):
    """Non-timeout failures propagate immediately, untried."""
    api.add("GET", "/sid/sites/nowhere", httpx.Response(404, text="Site not found"))
    with pytest.raises(errors.ApiError) as exc_info:
        rest_client.get("sid/sites/nowhere")
    assert exc_info.value.status_code == 404
    assert exc_info.value.body == "Site not found"
    assert len(api.sent("GET", "/sid/sites/nowhere")) == 1


def test_post_does_not_retry_timeouts(api, rest_client):
    api.add("POST", "/sid/sites/nancy/jobs", httpx.ReadTimeout("timed out"))
    with pytest.raises(httpx.TimeoutException):
        rest_client.post("sid/sites/nancy/jobs", {"resources": "/nodes=1"})
    assert len(api.sent("POST")) == 1


# ---------------------------------------------------------------------------
# POST and DELETE
# ---------------------------------------------------------------------------


def test_post_sends_json_payload(api, rest_client):
    api.add("POST", "/sid/sites/nancy/jobs", {"uid": 42})
    result = rest_client.post("sid/sites/nancy/jobs", {"resources": "/nodes=1"})
    request = api.sent("POST")[0]
    assert result.uid == 42
    assert api.body(request) == {"resources": "/nodes=1"}
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["Accept"] == "application/json"


def test_post_error_keeps_server_message(api, rest_client):
    """Scheduler diagnostics reach the caller untouched."""
    message = "[ADMISSION RULE] Bad resource request: /nodez=1"
    api.add("POST", "/sid/sites/nancy/jobs", httpx.Response(400, text=message))
    with pytest.raises(errors.ApiError) as exc_info:
        rest_client.post("sid/sites/nancy/jobs", {"resources": "/nodez=1"})
    assert exc_info.value.body == message
    assert message in str(exc_info.value)


def test_delete_returns_response(api, rest_client):
    api.add("DELETE", "/sid/sites/nancy/jobs/1", httpx.Response(202))
    response = rest_client.delete("/sid/sites/nancy/jobs/1")
    assert response.status_code == 202


@pytest.mark.parametrize(
    "body",
    [
        "Job 1 already killed",
        "Deployment is already terminated",
    ],
)
def test_delete_already_released_is_success(api, rest_client, body):
    api.add("DELETE", "/sid/sites/nancy/jobs/1", httpx.Response(500, text=body))
    assert rest_client.delete("sid/sites/nancy/jobs/1") is None


def test_delete_other_errors_propagate(api, rest_client):
    api.add("DELETE", "/sid/sites/nancy/jobs/1", httpx.Response(500, text="boom"))
    with pytest.raises(errors.ApiError, match="boom"):
        rest_client.delete("sid/sites/nancy/jobs/1")


def test_follow_parent(api, rest_client):
    api.add("GET", "/sid/sites/nancy", api.site("nancy"))
    parent = rest_client.follow_parent(Resource(api.job(uid=7, site="nancy")))
    assert parent.uid == "nancy"


def test_context_manager_closes_client(api):
    with RestClient("https://api.test/", transport=httpx.MockTransport(api)) as rest:
        http = rest.client
    assert http.is_closed
