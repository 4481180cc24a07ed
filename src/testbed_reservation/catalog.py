"""Read-only queries over the testbed REST API.

Sites, clusters, environments, switches, jobs and deployments. Every call is
a live request; nothing is cached.
"""

import getpass
import re

import structlog

from .config import DEFAULT_DOMAIN
from .errors import NotFoundError, PreconditionError
from .restapi import Job, Resource, RestClient

logger = structlog.get_logger(__name__)

# Page size used when listing jobs without any filter.
DEFAULT_JOBS_LIMIT = 25

# Environments are named like "debian11-x64-base-2023052617".
_VERSIONED_ENVIRONMENT = re.compile(r"(.*)-(.*)")


def associate_deployments(job: Job, deployments: list[Resource]) -> Job:
    """Attach the deployments that plausibly belong to a running job.

    The API does not link deployments back to jobs, so a deployment is taken
    as a candidate when it was created after the job started. Every
    candidate is attached, oldest first; callers decide which one matters.
    """
    if job.state != "running" or job.started_at is None:
        return job
    candidates = [
        d
        for d in deployments
        if d.get("created_at") is not None and d["created_at"] > job.started_at
    ]
    candidates.sort(key=lambda d: d["created_at"])
    return job.with_deployments(candidates)


class Catalog:
    """Live listings of testbed resources."""

    def __init__(self, client: RestClient, domain: str = DEFAULT_DOMAIN):
        self._client = client
        self._domain = domain

    def caller(self) -> str:
        """Login of the user the client acts for.

        The configured username, else the local login: without credentials
        the client runs inside the testbed, where both are the same.

        Raises:
            PreconditionError: If neither can be determined.
        """
        if self._client.username:
            return self._client.username
        try:
            return getpass.getuser()
        except (OSError, KeyError) as exc:
            msg = "Cannot tell which user the jobs belong to, configure a username"
            raise PreconditionError(msg) from exc

    def _get(self, path: str, params: dict | None = None) -> Resource:
        return self._client.get(self._client.api_path(path), params=params)

    def sites(self) -> list[Resource]:
        return self._get("sites").items

    def site_uids(self) -> list[str]:
        return [site.uid for site in self.sites()]

    def clusters(self, site: str) -> list[Resource]:
        return self._get(f"sites/{site}/clusters").items

    def cluster_uids(self, site: str) -> list[str]:
        return [cluster.uid for cluster in self.clusters(site)]

    def environments(self, site: str) -> list[Resource]:
        return self._get(f"sites/{site}/environments").items

    def environment_uids(self, site: str) -> list[str]:
        """Environment names without their version suffix, de-duplicated."""
        names: list[str] = []
        for env in self.environments(site):
            match = _VERSIONED_ENVIRONMENT.match(env.uid or "")
            name = match.group(1) if match else ""
            if name not in names:
                names.append(name)
        return names

    def site_status(self, site: str) -> Resource:
        return self._get(f"sites/{site}/status")

    def nodes_status(self, site: str) -> dict[str, str]:
        """Map every node of a site to its scheduler ("soft") state."""
        nodes = self.site_status(site).get("nodes") or {}
        return {name: status.get("soft") for name, status in nodes.items()}

    def switches(self, site: str) -> list[Resource]:
        """Switches of a site with the fully qualified names of their nodes.

        Only network equipment of kind ``switch`` with a line-card of kind
        ``node`` is returned (InfiniBand switches, for example, have none).
        """
        equipments = self._get(f"sites/{site}/network_equipments").items
        switches = []
        for equipment in equipments:
            if equipment.get("kind") != "switch":
                continue
            linecard = next(
                (
                    card
                    for card in equipment.get("linecards") or []
                    if card.get("kind") == "node"
                ),
                None,
            )
            if linecard is None:
                continue
            nodes = [
                f"{port['uid']}.{site}.{self._domain}"
                for port in linecard.get("ports") or []
                if port and port.get("uid")
            ]
            switches.append(equipment.with_fields(nodes=nodes))
        return switches

    def switch(self, site: str, name: str) -> Resource:
        """Return one switch of a site by name.

        Raises:
            NotFoundError: If the site has no switch with this name.
        """
        for switch in self.switches(site):
            if switch.uid == name:
                return switch
        msg = f"Unknown switch '{name}'"
        raise NotFoundError(msg)

    def jobs(
        self,
        site: str,
        owner: str | None = None,
        state: str | None = None,
        expand: bool = False,
    ) -> list[Job]:
        """List the jobs of a site.

        Args:
            site: Site name.
            owner: Only jobs of this user.
            state: Only jobs in this state (e.g. "running", "waiting").
            expand: Fetch every job through its self link. Listing items
                lack fields such as ``assigned_nodes``; this costs one
                request per job.

        Returns:
            The jobs. Without any filter at most ``DEFAULT_JOBS_LIMIT``.
        """
        params: dict[str, str | int] = {}
        if state is not None:
            params["state"] = state
        if owner is not None:
            params["user"] = owner
        if not params:
            params["limit"] = DEFAULT_JOBS_LIMIT

        items = self._get(f"sites/{site}/jobs", params=params).items
        if expand:
            items = [item.refresh(self._client) for item in items]
        return [Job(item) for item in items]

    def job(self, site: str, job_id: int | str) -> Job:
        return Job(self._get(f"sites/{site}/jobs/{job_id}"))

    def deployments(
        self,
        site: str,
        owner: str | None = None,
        limit: int | None = None,
    ) -> list[Resource]:
        """List the latest deployments of a site."""
        params: dict[str, str | int] = {}
        if owner is not None:
            params["user"] = owner
        if limit is not None:
            params["limit"] = limit
        return self._get(f"sites/{site}/deployments", params=params or None).items

    def my_jobs(self, site: str, state: str | None = "running") -> list[Job]:
        """Jobs of the configured user, with candidate deployments attached.

        Args:
            site: Site name.
            state: Only jobs in this state, ``None`` for every state.
        """
        owner = self.caller()
        jobs = self.jobs(site, owner=owner, state=state, expand=True)
        if not any(job.state == "running" for job in jobs):
            return jobs
        deployments = self.deployments(site, owner=owner)
        logger.debug(
            "Associating deployments with jobs",
            site=site,
            jobs=len(jobs),
            deployments=len(deployments),
        )
        return [associate_deployments(job, deployments) for job in jobs]
