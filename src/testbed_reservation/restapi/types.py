"""Resource envelopes for testbed REST API responses.

Every entity returned by the API (site, cluster, job, deployment, switch,
collection) is decoded into the same :class:`Resource` type. It wraps the
decoded JSON object and exposes a handful of projections plus navigation
over the ``links`` array. Envelopes are snapshots: nothing mutates them in
place, refreshing returns a new one.
"""

import copy
from collections.abc import Iterator, Mapping
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from ..errors import NotFoundError

if TYPE_CHECKING:
    from .client import RestClient


class Link(BaseModel):
    """Hyperlink relation as returned in a resource's ``links`` array."""

    rel: str
    href: str
    type: str = ""
    title: str | None = None


class Resource:
    """Immutable snapshot of a JSON object returned by the API.

    Supports read-only mapping access to the raw fields (``resource["uid"]``,
    ``get``, ``in``, ``keys``). Values handed out are copies, so callers
    cannot change the snapshot through them.
    """

    __slots__ = ("_data",)

    def __init__(self, data: Mapping[str, Any] | None = None):
        self._data: dict[str, Any] = copy.deepcopy(dict(data or {}))

    def __getitem__(self, key: str) -> Any:
        return copy.deepcopy(self._data[key])

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def keys(self):
        return self._data.keys()

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def __repr__(self) -> str:
        if "uid" in self._data:
            return f"Resource(uid={self._data['uid']!r})"
        return f"Resource({self._data!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Resource):
            return self._data == other._data
        if isinstance(other, Mapping):
            return self._data == dict(other)
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def to_dict(self) -> dict[str, Any]:
        """Return a deep copy of the underlying JSON object."""
        return copy.deepcopy(self._data)

    def with_fields(self, **updates: Any) -> "Resource":
        """Return a copy of this snapshot with some fields replaced."""
        data = self.to_dict()
        data.update(updates)
        return Resource(data)

    def without_links(self) -> "Resource":
        """Return a copy of this snapshot with the ``links`` field removed."""
        data = self.to_dict()
        data.pop("links", None)
        return Resource(data)

    @property
    def uid(self) -> Any:
        return self._data.get("uid")

    @property
    def items(self) -> list["Resource"]:
        """Members of a collection response, empty for singular resources."""
        return [Resource(item) for item in self._data.get("items") or []]

    @property
    def nodes(self) -> Any:
        """The ``nodes`` field: a list for switches and deployments, a
        mapping of node name to status for site status responses."""
        nodes = self._data.get("nodes")
        return copy.deepcopy(nodes) if nodes is not None else []

    @property
    def assigned_nodes(self) -> list[str]:
        return list(self._data.get("assigned_nodes") or [])

    @property
    def resources_by_type(self) -> dict[str, list[Any]]:
        return copy.deepcopy(self._data.get("resources_by_type") or {})

    @property
    def state(self) -> str | None:
        return self._data.get("state")

    @property
    def status(self) -> str | None:
        return self._data.get("status")

    @property
    def links(self) -> list[Link]:
        return [Link.model_validate(link) for link in self._data.get("links") or []]

    def rel(self, relation: str) -> str:
        """Return the href of the given link relation.

        Raises:
            NotFoundError: If the resource has no such relation or no links.
        """
        for link in self.links:
            if link.rel == relation:
                return link.href
        msg = f"Relation '{relation}' not found in {self!r}"
        raise NotFoundError(msg)

    def refresh(self, client: "RestClient") -> "Resource":
        """Fetch a fresh snapshot of this resource through its ``self`` link."""
        return client.get(self.rel("self"))


class Job:
    """A reservation on the testbed.

    Wraps the job envelope together with the deployments attached to it.
    Both are snapshots; operations that observe or change the job return a
    new ``Job``.
    """

    __slots__ = ("_deployments", "_resource")

    def __init__(
        self,
        resource: Resource | Mapping[str, Any],
        deployments: tuple[Resource, ...] | list[Resource] = (),
    ):
        if not isinstance(resource, Resource):
            resource = Resource(resource)
        self._resource = resource
        self._deployments = tuple(
            d if isinstance(d, Resource) else Resource(d) for d in deployments
        )

    def __repr__(self) -> str:
        return f"Job(uid={self.uid!r}, state={self.state!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Job):
            return NotImplemented
        return (
            self._resource == other._resource
            and self._deployments == other._deployments
        )

    __hash__ = None  # type: ignore[assignment]

    @property
    def resource(self) -> Resource:
        return self._resource

    @property
    def deployments(self) -> tuple[Resource, ...]:
        return self._deployments

    @property
    def uid(self) -> Any:
        return self._resource.uid

    @property
    def user(self) -> str | None:
        return self._resource.get("user_uid") or self._resource.get("user")

    @property
    def state(self) -> str | None:
        return self._resource.state

    @property
    def walltime(self) -> int | None:
        return self._resource.get("walltime")

    @property
    def resources(self) -> str | None:
        """The resource expression as declared by the scheduler."""
        resources = self._resource.get("resources")
        return resources if isinstance(resources, str) else None

    @property
    def types(self) -> list[str]:
        return list(self._resource.get("types") or [])

    @property
    def scheduled_at(self) -> int | None:
        return self._resource.get("scheduled_at")

    @property
    def started_at(self) -> int | None:
        return self._resource.get("started_at")

    @property
    def assigned_nodes(self) -> list[str]:
        return self._resource.assigned_nodes

    @property
    def resources_by_type(self) -> dict[str, list[Any]]:
        return self._resource.resources_by_type

    def rel(self, relation: str) -> str:
        return self._resource.rel(relation)

    def refresh(self, client: "RestClient") -> "Job":
        """Fetch the job again; attached deployments are carried over."""
        return Job(self._resource.refresh(client), self._deployments)

    def with_deployment(self, deployment: Resource) -> "Job":
        """Return a copy of the job with one more deployment attached."""
        return Job(self._resource, (*self._deployments, deployment))

    def with_deployments(self, deployments: tuple[Resource, ...] | list[Resource]) -> "Job":
        """Return a copy of the job with its deployments replaced."""
        return Job(self._resource, tuple(deployments))
