"""Shared fixtures: an in-memory testbed API served through httpx.MockTransport."""

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from testbed_reservation.restapi import RestClient

BASE_URL = "https://api.test/"

Reply = dict | list | httpx.Response | Exception | Callable[[httpx.Request], Any]


class FakeApi:
    """Route table answering requests with canned replies.

    Each route holds a queue of replies; every request consumes one, except
    the last which is repeated forever. A reply is a JSON-able dict, an
    ``httpx.Response``, an exception to raise, or a callable taking the
    request.
    """

    def __init__(self, version: str = "sid"):
        self.version = version
        self.requests: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], list[Reply]] = {}
        self.add("GET", "/", {"links": [{"rel": "self", "href": "/"}]})

    def add(self, method: str, path: str, *replies: Reply) -> None:
        self._routes[(method, path)] = list(replies)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self._routes:
            return httpx.Response(404, text=f"No route for {key}")
        queue = self._routes[key]
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(request)
        if isinstance(reply, httpx.Response):
            return reply
        return httpx.Response(200, json=reply)

    def sent(self, method: str, path: str | None = None) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.method == method and (path is None or r.url.path == path)
        ]

    def body(self, request: httpx.Request) -> dict:
        return json.loads(request.content)

    # -- canned resources -------------------------------------------------

    def job_path(self, site: str, uid: int) -> str:
        return f"/{self.version}/sites/{site}/jobs/{uid}"

    def job(self, uid: int = 1234, site: str = "nancy", state: str = "running", **fields) -> dict:
        data = {
            "uid": uid,
            "user_uid": "alice",
            "state": state,
            "walltime": 600,
            "types": [],
            "assigned_nodes": [],
            "resources_by_type": {},
            "links": [
                {"rel": "self", "href": self.job_path(site, uid), "type": "application/json"},
                {"rel": "parent", "href": f"/{self.version}/sites/{site}"},
            ],
        }
        data.update(fields)
        return data

    def deployment(self, uid: str = "D-1", site: str = "nancy", status: str = "processing", **fields) -> dict:
        data = {
            "uid": uid,
            "status": status,
            "environment": "debian11-base",
            "nodes": [],
            "created_at": 1000,
            "links": [
                {"rel": "self", "href": f"/{self.version}/sites/{site}/deployments/{uid}"},
                {"rel": "parent", "href": f"/{self.version}/sites/{site}"},
            ],
        }
        data.update(fields)
        return data

    def site(self, uid: str = "nancy") -> dict:
        return {
            "uid": uid,
            "links": [{"rel": "self", "href": f"/{self.version}/sites/{uid}"}],
        }


@pytest.fixture
def api() -> FakeApi:
    """Fake testbed API with only the root resource routed."""
    return FakeApi()


@pytest.fixture
def rest_client(api: FakeApi) -> RestClient:
    """RestClient talking to the fake API, without retry backoff."""
    client = RestClient(
        BASE_URL,
        username="alice",
        password="secret",
        retry_backoff=0.0,
        transport=httpx.MockTransport(api),
    )
    yield client
    client.close()


@pytest.fixture
def anonymous_client(api: FakeApi) -> RestClient:
    """RestClient without credentials, as used from inside the testbed."""
    client = RestClient(BASE_URL, retry_backoff=0.0, transport=httpx.MockTransport(api))
    yield client
    client.close()
