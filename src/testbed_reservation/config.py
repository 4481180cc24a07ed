"""Configuration and logging setup for the reservation client."""

import json
import logging
import os
import pathlib

import pydantic
import structlog

from . import restapi
from .errors import PreconditionError

CONFIG_ENV_VAR = "TESTBED_API_CONFIG"
DEFAULT_CONFIG_PATH = pathlib.Path("~/.testbed_api.json")
DEFAULT_DOMAIN = "grid5000.fr"

logger = structlog.get_logger(__name__)


class ApiConfig(pydantic.BaseModel):
    """Connection settings for the testbed REST API."""

    uri: str = pydantic.Field(description="Root URL of the testbed REST API")
    username: str | None = pydantic.Field(
        None,
        description="User name, not needed from inside the testbed",
    )
    password: str | None = pydantic.Field(None, description="Password for username")
    version: str = pydantic.Field(
        restapi.DEFAULT_API_VERSION,
        description="API version prefix",
    )
    timeout: float = pydantic.Field(
        restapi.DEFAULT_TIMEOUT,
        description="Request timeout in seconds",
        gt=0,
    )
    retries: int = pydantic.Field(
        restapi.DEFAULT_RETRIES,
        description="Retries of a timed-out GET request",
        ge=0,
    )
    retry_backoff: float = pydantic.Field(
        restapi.DEFAULT_RETRY_BACKOFF,
        description="Seconds between retries",
        ge=0,
    )
    domain: str = pydantic.Field(
        DEFAULT_DOMAIN,
        description="DNS domain appended to node names",
    )
    log_level: str = pydantic.Field("INFO", description="Logging level")


def configure_logging(log_level_name: str) -> None:
    """Configure structlog for logfmt output."""
    log_level = getattr(logging, log_level_name.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.EventRenamer("msg"),
            structlog.processors.format_exc_info,
            structlog.processors.LogfmtRenderer(
                key_order=("timestamp", "level", "msg"),
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def load_config_file(config_path: str | os.PathLike) -> dict:
    """Read the raw settings from a JSON configuration file."""
    path = pathlib.Path(config_path).expanduser()
    if not path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    with path.open("r") as f:
        return json.load(f)


def resolve_config(
    conf_file: str | os.PathLike | None = None,
    **overrides,
) -> ApiConfig:
    """Build the configuration from parameters and configuration files.

    Explicit keyword arguments win over the configuration file. The file is
    ``conf_file`` when given, else the path in the ``TESTBED_API_CONFIG``
    environment variable, else ``~/.testbed_api.json`` if it exists.

    Raises:
        FileNotFoundError: If an explicitly named file does not exist.
        PreconditionError: If no API URI can be determined or a setting is
            invalid.
    """
    named = conf_file or os.environ.get(CONFIG_ENV_VAR)
    data: dict = {}
    if named:
        data = load_config_file(named)
        logger.debug("Loaded configuration", path=str(named))
    elif DEFAULT_CONFIG_PATH.expanduser().exists():
        data = load_config_file(DEFAULT_CONFIG_PATH)
        logger.debug("Loaded configuration", path=str(DEFAULT_CONFIG_PATH))

    data.update({k: v for k, v in overrides.items() if v is not None})
    if not data.get("uri"):
        msg = (
            "No API URI configured. Create ~/.testbed_api.json with uri, "
            "username and password, or pass them explicitly (or set "
            f"{CONFIG_ENV_VAR} to another configuration file)"
        )
        raise PreconditionError(msg)

    try:
        return ApiConfig(**data)
    except pydantic.ValidationError as exc:
        msg = f"Invalid configuration: {exc}"
        raise PreconditionError(msg) from exc
