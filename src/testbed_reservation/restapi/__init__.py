"""Testbed REST API client package.

Provides a lightweight HTTP client for the testbed REST API that returns
generic resource envelopes. Reservation and deployment workflows are built
on top of it by the engine modules.

Exports:
    RestClient: HTTP client with authentication, retries and error handling.
    Resource: Immutable envelope around a decoded JSON object.
    Job: A reservation together with its attached deployments.
    Link: A link relation of a resource.
    types: Module containing the envelope types.
    DEFAULT_API_VERSION: Default API version prefix.
    DEFAULT_TIMEOUT: Default HTTP request timeout.
"""

from . import types
from .client import (
    DEFAULT_API_VERSION,
    DEFAULT_RETRIES,
    DEFAULT_RETRY_BACKOFF,
    DEFAULT_TIMEOUT,
    RestClient,
)
from .types import Job, Link, Resource

__all__ = [
    "DEFAULT_API_VERSION",
    "DEFAULT_RETRIES",
    "DEFAULT_RETRY_BACKOFF",
    "DEFAULT_TIMEOUT",
    "Job",
    "Link",
    "Resource",
    "RestClient",
    "types",
]
