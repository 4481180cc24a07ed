"""Deployment of operating system images on reserved nodes.

A deployment is bound to the nodes of a running job of type deploy. Its
status goes from ``processing`` to ``terminated`` (or ``error``). A job can
be deployed several times; every deployment is kept on the job, oldest
first.
"""

import pathlib
import time
from typing import Any

import structlog

from .errors import PreconditionError, WaitTimeoutError
from .restapi import Job, Resource, RestClient

DEFAULT_POLL_INTERVAL = 4.0

DEFAULT_WAIT_TIME = 36000.0

DEFAULT_KEY_PATH = "~/.ssh/id_rsa"


def resolve_public_key(keys: str | None = None) -> str:
    """Return the public key material to install on deployed nodes.

    Args:
        keys: ``None`` for the default key pair, an HTTP(S) URL (passed to
            the API as is), the text of a public key, or the path of a
            private key whose ``.pub`` sibling is read.

    Raises:
        PreconditionError: If the public key file does not exist.
    """
    if keys is not None and keys.startswith(("http://", "https://", "ssh-", "ecdsa-")):
        return keys

    base = keys if keys is not None else DEFAULT_KEY_PATH
    path = pathlib.Path(f"{base}.pub").expanduser()
    if not path.exists():
        msg = f"No public ssh key found at {path}"
        raise PreconditionError(msg)
    return path.read_text().strip()


class DeploymentEngine:
    """Deploys environments on the nodes of a job and follows them."""

    def __init__(
        self,
        client: RestClient,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        logger: Any = None,
    ):
        self._client = client
        self._poll_interval = poll_interval
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def deploy(
        self,
        job: Job,
        env: str | None = None,
        keys: str | None = None,
        nodes: list[str] | None = None,
        wait: bool = False,
        wait_time: float = DEFAULT_WAIT_TIME,
    ) -> Job:
        """Deploy an environment on the nodes of a job.

        Args:
            job: A running job of type deploy.
            env: Name (or URL of the description) of the environment.
            keys: Public key to install, see :func:`resolve_public_key`.
            nodes: Subset of the job's nodes, all of them by default.
            wait: Wait until the deployment is over.
            wait_time: Bound in seconds of that wait.

        Returns:
            The job with the new deployment attached last.

        Raises:
            PreconditionError: If no environment is given or no key is found.
            ApiError: If the API rejects the deployment.
        """
        if not env:
            msg = "Environment must be given"
            raise PreconditionError(msg)
        key = resolve_public_key(keys)

        site = self._client.follow_parent(job.resource).uid
        payload: dict[str, Any] = {
            "nodes": nodes if nodes is not None else job.assigned_nodes,
            "environment": env,
            "key": key,
        }
        vlans = job.resources_by_type.get("vlans") or []
        if vlans:
            payload["vlan"] = vlans[0]
            self._logger.info("Found VLAN", vlan=vlans[0])

        self._logger.info(
            "Creating deployment",
            job_id=job.uid,
            site=site,
            environment=env,
            nodes=payload["nodes"],
        )
        deployment = self._client.post(
            self._client.api_path(f"sites/{site}/deployments"), payload
        )
        job = job.with_deployment(deployment)
        if wait:
            job = self.wait_for_deploy(job, max_wait=wait_time)
        return job

    def deployment_status(self, job: Job) -> Resource | None:
        """Fresh state of the first deployment of a job, without its links.

        Returns ``None`` for a job without deployments.
        """
        if not job.deployments:
            return None
        return job.deployments[0].refresh(self._client).without_links()

    def deployment_statuses(self, job: Job) -> list[str | None]:
        """Fresh status of every deployment of a job, oldest first."""
        return [d.refresh(self._client).status for d in job.deployments]

    def wait_for_deploy(self, job: Job, max_wait: float = DEFAULT_WAIT_TIME) -> Job:
        """Poll the latest deployment of a job until it is no longer processing.

        Returns:
            The job with its latest deployment refreshed.

        Raises:
            PreconditionError: If the job carries no deployment.
            WaitTimeoutError: If the deployment is still processing after
                ``max_wait`` seconds.
        """
        if not job.deployments:
            msg = f"Job {job.uid} carries no deployment"
            raise PreconditionError(msg)

        log = self._logger.bind(job_id=job.uid)
        log.info("Waiting for installation", nodes=job.assigned_nodes)
        deadline = time.monotonic() + max_wait
        *earlier, latest = job.deployments
        while True:
            latest = latest.refresh(self._client)
            if latest.status != "processing":
                log.info("Deployment finished", deployment=latest.uid, status=latest.status)
                return job.with_deployments([*earlier, latest])

            left = deadline - time.monotonic()
            if left <= 0:
                msg = f"Deployment {latest.uid} still processing after {max_wait} seconds"
                raise WaitTimeoutError(msg)
            time.sleep(min(self._poll_interval, left))
