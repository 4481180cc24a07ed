"""Testbed reservation client.

Client library for reserving nodes on a Grid'5000-style testbed through its
REST API, deploying operating system images on them and running commands on
the allocated hosts.
"""

__version__ = "0.1.0"

from .api import TestbedAPI  # noqa: E402
from .errors import (  # noqa: E402
    ApiError,
    AuthenticationError,
    ClientError,
    JobEndedError,
    NotFoundError,
    PreconditionError,
    WaitTimeoutError,
)
from .reservation import ReservationRequest, SubnetSpec, VlanMode  # noqa: E402
from .restapi import Job, Resource  # noqa: E402

__all__ = [
    "ApiError",
    "AuthenticationError",
    "ClientError",
    "Job",
    "JobEndedError",
    "NotFoundError",
    "PreconditionError",
    "ReservationRequest",
    "Resource",
    "SubnetSpec",
    "TestbedAPI",
    "VlanMode",
    "WaitTimeoutError",
    "__version__",
]
