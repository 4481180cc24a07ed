"""One-stop entry point for scripts driving the testbed."""

import ipaddress
import os

import httpx

from . import reservation
from .catalog import Catalog
from .config import ApiConfig, resolve_config
from .deployment import DEFAULT_WAIT_TIME, DeploymentEngine
from .reservation import DEFAULT_RELEASE_WAIT, ReservationEngine, ReservationRequest
from .restapi import Job, Resource, RestClient


class TestbedAPI:
    """Catalog, reservation and deployment engines sharing one REST client.

    Example::

        with TestbedAPI.from_config() as testbed:
            job = testbed.reserve(site="nancy", nodes=2, walltime="1h")
            try:
                ...  # use job.assigned_nodes
            finally:
                testbed.release(job)
    """

    __test__ = False

    def __init__(self, config: ApiConfig, transport: httpx.BaseTransport | None = None):
        self.config = config
        self.client = RestClient(
            base_url=config.uri,
            username=config.username,
            password=config.password,
            api_version=config.version,
            timeout=config.timeout,
            retries=config.retries,
            retry_backoff=config.retry_backoff,
            transport=transport,
        )
        self.catalog = Catalog(self.client, domain=config.domain)
        self.deployments = DeploymentEngine(self.client)
        self.reservations = ReservationEngine(
            self.client,
            deployer=self.deployments,
            catalog=self.catalog,
        )

    @classmethod
    def from_config(
        cls,
        conf_file: str | os.PathLike | None = None,
        transport: httpx.BaseTransport | None = None,
        **overrides,
    ) -> "TestbedAPI":
        """Connect using explicit settings and the configuration files.

        See :func:`~.config.resolve_config` for the precedence rules.
        """
        return cls(resolve_config(conf_file, **overrides), transport=transport)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        self.client.close()

    def my_jobs(self, site: str, state: str | None = "running") -> list[Job]:
        return self.catalog.my_jobs(site, state=state)

    def reserve(self, request: ReservationRequest | None = None, **options) -> Job:
        return self.reservations.reserve(request, **options)

    def wait_for_job(self, job: Job, wait_time: float = DEFAULT_WAIT_TIME) -> Job:
        return self.reservations.wait_for_running(job, max_wait=wait_time)

    def release(self, target: Job | Resource) -> None:
        self.reservations.release(target)

    def release_all(self, site: str, wait_time: float = DEFAULT_RELEASE_WAIT) -> list[Job]:
        return self.reservations.release_all(site, max_wait=wait_time)

    def deploy(self, job: Job, env: str, **options) -> Job:
        return self.deployments.deploy(job, env=env, **options)

    def deploy_status(self, job: Job) -> Resource | None:
        return self.deployments.deployment_status(job)

    def wait_for_deploy(self, job: Job, wait_time: float = DEFAULT_WAIT_TIME) -> Job:
        return self.deployments.wait_for_deploy(job, max_wait=wait_time)

    def get_subnets(self, job: Job) -> list[ipaddress.IPv4Network]:
        return reservation.get_subnets(job)

    def get_vlan_nodes(self, job: Job) -> list[str]:
        return reservation.vlan_nodes(job)
