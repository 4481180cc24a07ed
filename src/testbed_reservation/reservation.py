"""Reservation of testbed resources.

Builds scheduler resource expressions from a structured request, submits
jobs, follows them until they run and releases them. A job moves through
``waiting`` → ``launching`` → ``running`` → ``finishing`` → ``terminated``
on the server; this module only ever observes those transitions by fetching
the job again.
"""

import enum
import ipaddress
import os
import re
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime
from typing import Any

import pydantic
import structlog

from . import remote
from .catalog import Catalog
from .deployment import DEFAULT_WAIT_TIME, DeploymentEngine
from .errors import ApiError, JobEndedError, PreconditionError, WaitTimeoutError
from .restapi import Job, Resource, RestClient
from .walltime import to_hhmm, to_seconds, to_timestamp

DEFAULT_POLL_INTERVAL = 5.0

DEFAULT_RELEASE_WAIT = 20.0

# Delay before a job submitted through the scheduler's own API shows up.
DEFAULT_SETTLE_DELAY = 1.0

DEFAULT_JOB_NAME = "testbed-reservation job"

DEPLOY_TYPE = "deploy"

# Lets the user ssh into the nodes of a job without a job key.
CLASSIC_SSH_TYPE = "allow_classic_ssh"

ENDED_STATES = ("finishing", "terminated", "error")

_NODE_NAME = re.compile(r"^(\w+-\d+)(\..*)$")


class VlanMode(str, enum.Enum):
    """Kind of VLAN reserved alongside the nodes."""

    ROUTED = "routed"
    GLOBAL = "global"
    LOCAL = "local"

    @property
    def vlan_type(self) -> str:
        """Name of the VLAN type in resource expressions."""
        return {
            VlanMode.ROUTED: "kavlan",
            VlanMode.GLOBAL: "kavlan-global",
            VlanMode.LOCAL: "kavlan-local",
        }[self]


class SubnetSpec(pydantic.BaseModel):
    """Request for ``count`` IP subnets of size ``/prefix``."""

    prefix: int = pydantic.Field(ge=1, le=32)
    count: int = pydantic.Field(1, ge=1)


class ReservationRequest(pydantic.BaseModel):
    """Everything needed to submit one reservation.

    ``nodes``, ``walltime`` and ``site`` are required by
    :meth:`ReservationEngine.reserve`; they are optional here so that
    requests can be built up incrementally.
    """

    model_config = pydantic.ConfigDict(extra="forbid")

    nodes: pydantic.StrictInt | list[str] | None = None
    walltime: str | None = None
    site: str | None = None
    name: str = DEFAULT_JOB_NAME
    command: str | None = None
    cluster: str | None = None
    switches: pydantic.StrictInt | None = None
    cpus: pydantic.StrictInt | None = None
    cores: pydantic.StrictInt | None = None
    subnets: SubnetSpec | None = None
    vlan: VlanMode | None = None
    resources: str | None = None
    keys: str | None = None
    properties: str | None = None
    types: list[str] = pydantic.Field(default_factory=list)
    queue: str | None = None
    reservation: datetime | int | float | str | None = None
    wait: bool = True
    wait_time: float = pydantic.Field(DEFAULT_WAIT_TIME, gt=0)
    ignore_dead: bool = False
    env: str | None = None
    wait_deploy: bool = False

    @pydantic.field_validator("nodes", "switches", "cpus", "cores")
    @classmethod
    def _positive(cls, value):
        if isinstance(value, int) and value < 1:
            msg = "must be a positive integer"
            raise ValueError(msg)
        return value

    @pydantic.field_validator("walltime")
    @classmethod
    def _valid_walltime(cls, value):
        if value is not None:
            to_hhmm(value)
        return value

    @pydantic.field_validator("subnets", mode="before")
    @classmethod
    def _subnet_pair(cls, value):
        # (prefix, count) pairs are accepted as a shorthand
        if isinstance(value, list | tuple):
            if len(value) != 2:  # noqa: PLR2004
                msg = "subnets must be a (prefix, count) pair"
                raise ValueError(msg)
            return {"prefix": value[0], "count": value[1]}
        return value

    @pydantic.field_validator("types", mode="before")
    @classmethod
    def _type_list(cls, value):
        if isinstance(value, str):
            return [value]
        return value

    @property
    def is_deploy(self) -> bool:
        return self.env is not None or DEPLOY_TYPE in self.types


def build_resource_expression(request: ReservationRequest, node_count: int | None = None) -> str:
    """Build the scheduler resource expression for a request.

    A raw ``resources`` expression is used verbatim. Otherwise the hierarchy
    is composed as switch, nodes, cpu, core; then prefixed with the cluster
    selector, the VLAN clause and the subnet clause, in that order. The
    ``walltime`` clause is appended unless the expression already has one.

    Args:
        request: The reservation request.
        node_count: Node count to use instead of ``request.nodes`` (for
            host lists filtered before submission). A host list counts its
            hosts by default.
    """
    if request.resources:
        expression = request.resources
    else:
        nodes = node_count if node_count is not None else request.nodes
        if isinstance(nodes, list):
            nodes = len(nodes)
        expression = ""
        if request.switches is not None:
            expression += f"/switch={request.switches}"
        expression += f"/nodes={nodes}"
        if request.cpus is not None:
            expression += f"/cpu={request.cpus}"
        if request.cores is not None:
            expression += f"/core={request.cores}"
        if request.cluster is not None:
            expression = f"{{cluster='{request.cluster}'}}{expression}"
        if request.vlan is not None:
            expression = f"{{type='{request.vlan.vlan_type}'}}/vlan=1+{expression}"
        if request.subnets is not None:
            expression = (
                f"slash_{request.subnets.prefix}={request.subnets.count}+{expression}"
            )
    if "walltime" not in expression and request.walltime is not None:
        expression += f",walltime={to_hhmm(request.walltime)}"
    return expression


def get_subnets(job: Job) -> list[ipaddress.IPv4Network]:
    """IP subnets reserved with a job, empty when it has none."""
    return [
        ipaddress.IPv4Network(subnet, strict=False)
        for subnet in job.resources_by_type.get("subnets") or []
    ]


def vlan_nodes(job: Job) -> list[str]:
    """Names of the job's nodes inside its VLAN, empty without a VLAN."""
    vlans = job.resources_by_type.get("vlans") or []
    if not vlans:
        return []
    vlan_id = vlans[0]
    names = []
    for name in job.assigned_nodes:
        match = _NODE_NAME.match(name)
        if match:
            names.append(f"{match.group(1)}-kavlan-{vlan_id}{match.group(2)}")
        else:
            names.append(name)
    return names


class ReservationEngine:
    """Submits reservations and follows them until they can be used."""

    def __init__(
        self,
        client: RestClient,
        deployer: DeploymentEngine | None = None,
        catalog: Catalog | None = None,
        liveness_probe: Callable[[str], bool] = remote.host_alive,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        logger: Any = None,
    ):
        """Initialize the engine.

        Args:
            client: REST API client.
            deployer: Engine used for reservations with an environment.
            catalog: Listings used by :meth:`release_all`.
            liveness_probe: Tells whether a host is alive, used with
                ``ignore_dead``.
            poll_interval: Seconds between two checks of a waiting job.
            settle_delay: Seconds to wait after a submission through the
                scheduler's own API.
            logger: structlog logger for progress messages.
        """
        self._client = client
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._deployer = deployer or DeploymentEngine(client, logger=self._logger)
        self._catalog = catalog or Catalog(client)
        self._probe = liveness_probe
        self._poll_interval = poll_interval
        self._settle_delay = settle_delay

    def reserve(self, request: ReservationRequest | None = None, **options) -> Job:
        """Submit a reservation and, unless asked not to, wait until it runs.

        Options are the fields of :class:`ReservationRequest`; they override
        the fields of ``request`` when both are given. With ``env`` the job
        is of type deploy and the environment is deployed as soon as the job
        runs.

        Raises:
            PreconditionError: If nodes, walltime or site is missing or an
                option is invalid. Nothing is sent in that case.
            ApiError: If the API rejects the submission.
            JobEndedError: If the job ends before running.
            WaitTimeoutError: If the job does not run within ``wait_time``.
        """
        request = self._validate(request, options)

        command = request.command
        seconds = to_seconds(request.walltime)
        if command is None:
            command = f"sleep {int(seconds)}"

        properties = request.properties
        node_count = None
        if isinstance(request.nodes, list):
            hosts = request.nodes
            if request.ignore_dead:
                hosts = [host for host in hosts if self._probe(host)]
                dropped = sorted(set(request.nodes) - set(hosts))
                if dropped:
                    self._logger.warning("Ignoring dead hosts", hosts=dropped)
            quoted = ",".join(f"'{host}'" for host in sorted(hosts))
            host_filter = f"host in ({quoted})"
            properties = f"({properties}) AND {host_filter}" if properties else host_filter
            node_count = len(hosts)

        resources = build_resource_expression(request, node_count=node_count)
        types = list(request.types)
        if request.env is not None and DEPLOY_TYPE not in types:
            types.append(DEPLOY_TYPE)

        payload: dict[str, Any] = {
            "resources": resources,
            "name": request.name,
            "command": command,
        }
        if properties is not None:
            payload["properties"] = properties
        if request.queue is not None:
            payload["queue"] = request.queue
        if request.reservation is not None:
            payload["reservation"] = to_timestamp(request.reservation)
            self._logger.info("Scheduling reservation", start=request.reservation)

        keyed = request.keys is not None and not request.is_deploy
        if keyed:
            payload["import-job-key-from-file"] = [os.path.expanduser(request.keys)]
        elif not request.is_deploy and CLASSIC_SSH_TYPE not in types:
            types.append(CLASSIC_SSH_TYPE)
        if types:
            payload["types"] = types

        self._logger.info(
            "Reserving resources",
            site=request.site,
            resources=resources,
            types=types,
        )
        try:
            if keyed:
                job = self._submit_keyed(request.site, payload)
            else:
                submitted = self._client.post(
                    self._client.api_path(f"sites/{request.site}/jobs"), payload
                )
                self._logger.info("Reservation submitted", job_id=submitted.uid)
                job = Job(self._client.get(submitted.rel("self")))
        except ApiError as exc:
            self._logger.error(
                "Reservation rejected",
                site=request.site,
                status_code=exc.status_code,
                body=exc.body,
            )
            raise

        if request.wait:
            job = self.wait_for_running(job, max_wait=request.wait_time)
            if request.env is not None:
                job = self._deployer.deploy(
                    job,
                    env=request.env,
                    keys=request.keys,
                    wait=request.wait_deploy,
                    wait_time=request.wait_time,
                )
        elif request.env is not None:
            self._logger.info(
                "Not waiting for the job, deploy it once it runs",
                job_id=job.uid,
                env=request.env,
            )
        return job

    def _validate(self, request: ReservationRequest | None, options: dict) -> ReservationRequest:
        try:
            if request is None:
                request = ReservationRequest(**options)
            elif options:
                request = ReservationRequest(
                    **{**request.model_dump(exclude_unset=True), **options}
                )
        except pydantic.ValidationError as exc:
            msg = f"Invalid reservation options: {exc}"
            raise PreconditionError(msg) from exc

        missing = [
            name
            for name in ("nodes", "walltime", "site")
            if getattr(request, name) is None
        ]
        if missing:
            msg = f"At least nodes, walltime and site must be given (missing: {', '.join(missing)})"
            raise PreconditionError(msg)
        return request

    def _submit_keyed(self, site: str, payload: dict[str, Any]) -> Job:
        """Submit through the scheduler's own API, which takes a job key.

        That API expects the resource expression between literal quotes and
        the job is only visible in the testbed API after a short delay.
        """
        payload = {**payload, "resources": f'"{payload["resources"]}"'}
        submitted = self._client.post(
            self._client.api_path(f"sites/{site}/internal/oarapi/jobs.json"), payload
        )
        job_id = submitted.get("id", submitted.uid)
        self._logger.info("Reservation submitted", job_id=job_id, keyed=True)
        time.sleep(self._settle_delay)
        return Job(self._client.get(self._client.api_path(f"sites/{site}/jobs/{job_id}")))

    def wait_for_running(self, job: Job, max_wait: float = DEFAULT_WAIT_TIME) -> Job:
        """Poll a job until it runs.

        Raises:
            JobEndedError: If the job is finishing (or already ended).
            WaitTimeoutError: If the job is not running after ``max_wait``
                seconds. The job itself is left untouched.
        """
        log = self._logger.bind(job_id=job.uid)
        log.info("Waiting for reservation")
        deadline = time.monotonic() + max_wait
        while True:
            job = job.refresh(self._client)
            if job.scheduled_at is not None:
                remaining = max(int(job.scheduled_at - time.time()), 0)
                log.info(
                    "Reservation scheduled",
                    scheduled_at=datetime.fromtimestamp(job.scheduled_at).isoformat(),
                    remaining_seconds=remaining,
                )
            if job.state == "running":
                log.info("Reservation ready", nodes=job.assigned_nodes)
                return job
            if job.state in ENDED_STATES:
                raise JobEndedError(job.uid, job.state)

            left = deadline - time.monotonic()
            if left <= 0:
                msg = f"Job {job.uid} not running after {max_wait} seconds"
                raise WaitTimeoutError(msg)
            time.sleep(min(self._poll_interval, left))

    def release(self, target: Job | Resource) -> None:
        """Release a job (or cancel a deployment). Releasing twice is fine."""
        resource = target.resource if isinstance(target, Job) else target
        self._logger.info("Releasing", uid=resource.uid)
        self._client.delete(resource.rel("self"))

    def release_all(self, site: str, max_wait: float = DEFAULT_RELEASE_WAIT) -> list[Job]:
        """Release every running or waiting job of the user on a site.

        Jobs are those of :meth:`Catalog.caller`, never of other users.

        Returns:
            The released jobs, empty when there was nothing to release.

        Raises:
            PreconditionError: If the owner of the jobs cannot be determined.
            WaitTimeoutError: If listing and releasing take longer than
                ``max_wait`` seconds. The releases already started keep
                running in the background, so some jobs may still be
                released after the error.
        """
        owner = self._catalog.caller()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="release-all")
        future = executor.submit(self._release_jobs, site, owner)
        try:
            return future.result(timeout=max_wait)
        except FutureTimeoutError as exc:
            msg = f"Releasing jobs on {site} took more than {max_wait} seconds"
            raise WaitTimeoutError(msg) from exc
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _release_jobs(self, site: str, owner: str) -> list[Job]:
        # a job may change state between the two listings
        by_uid: dict[Any, Job] = {}
        for state in ("running", "waiting"):
            for job in self._catalog.jobs(site, owner=owner, state=state):
                by_uid.setdefault(job.uid, job)
        jobs = list(by_uid.values())
        for job in jobs:
            self.release(job)
        self._logger.info("Released jobs", site=site, count=len(jobs))
        return jobs
