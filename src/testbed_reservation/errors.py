"""Exceptions raised by the reservation client."""


class ClientError(Exception):
    """Base class for every error raised by this package."""


class PreconditionError(ClientError, ValueError):
    """Raised when options are missing or invalid, before any request is sent."""


class AuthenticationError(ClientError):
    """Raised when the API rejects the configured credentials."""


class NotFoundError(ClientError, LookupError):
    """Raised when a link relation or a named resource does not exist."""


class ApiError(ClientError):
    """Raised when the API answers with an error status.

    The response body is kept verbatim: scheduler diagnostics are often the
    only clue about a malformed resource expression.
    """

    def __init__(self, status_code: int, url: str, body: str):
        self.status_code = status_code
        self.url = url
        self.body = body
        super().__init__(f"API request to {url} failed with {status_code}: {body}")


class JobEndedError(ClientError):
    """Raised when a job ends before it was observed running."""

    def __init__(self, job_id, state: str):
        self.job_id = job_id
        self.state = state
        super().__init__(f"Job {job_id} is {state}")


class WaitTimeoutError(ClientError, TimeoutError):
    """Raised when a bounded wait expires before the awaited event."""
