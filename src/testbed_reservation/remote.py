"""Running commands on reserved hosts.

A liveness probe used to filter dead hosts out of reservations, and a
parallel "run this everywhere, collect the outputs" helper over explicit
connection handles.
"""

import socket
import subprocess
import time
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Protocol

import structlog

logger = structlog.get_logger(__name__)

SSH_PORT = 22

DEFAULT_SSH_OPTIONS = [
    "-o",
    "BatchMode=yes",
    "-o",
    "StrictHostKeyChecking=no",
    "-o",
    "ConnectTimeout=10",
]


def port_open(host: str, port: int = SSH_PORT, timeout: float = 5.0) -> bool:
    """Tell whether a TCP connection to ``host:port`` can be established."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def wait_open_port(host: str, port: int = SSH_PORT, timeout: float = 120.0) -> bool:
    """Wait until a port accepts connections.

    Returns:
        True once the port is open, False if ``timeout`` seconds elapse.
    """
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        start = time.monotonic()
        if port_open(host, port):
            return True
        elapsed = time.monotonic() - start
        if elapsed < 0.5:  # noqa: PLR2004
            time.sleep(0.5 - elapsed)
    return False


def host_alive(host: str) -> bool:
    """Default liveness probe: the host accepts SSH connections."""
    return port_open(host, SSH_PORT)


@dataclass
class CommandResult:
    """Outcome of one command on one host."""

    host: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class Connection(Protocol):
    """Anything able to run a command on one host."""

    host: str

    def run(self, command: str) -> CommandResult: ...


class SSHConnection:
    """Connection running commands through the ``ssh`` client binary."""

    def __init__(
        self,
        host: str,
        user: str | None = None,
        key_file: str | None = None,
        options: list[str] | None = None,
        timeout: float | None = None,
    ):
        self.host = host
        self.user = user
        self.key_file = key_file
        self.options = DEFAULT_SSH_OPTIONS if options is None else options
        self.timeout = timeout

    def command_line(self, command: str) -> list[str]:
        cmd = ["ssh", *self.options]
        if self.key_file:
            cmd += ["-i", self.key_file]
        target = f"{self.user}@{self.host}" if self.user else self.host
        return [*cmd, target, command]

    def run(self, command: str) -> CommandResult:
        proc = subprocess.run(
            self.command_line(command),
            capture_output=True,
            text=True,
            timeout=self.timeout,
            check=False,
        )
        return CommandResult(
            host=self.host,
            stdout=proc.stdout.strip(),
            stderr=proc.stderr.strip(),
            exit_code=proc.returncode,
        )


def exec_on_hosts(
    connections: Iterable[Connection],
    command: str,
    max_workers: int | None = None,
) -> dict[str, CommandResult]:
    """Run a command on every connection in parallel and collect the results.

    Args:
        connections: One connection per host.
        command: Shell command to run.
        max_workers: Thread pool size, one thread per host by default.

    Returns:
        Results keyed by host name.
    """
    connections = list(connections)
    if not connections:
        return {}

    results: dict[str, CommandResult] = {}
    with ThreadPoolExecutor(max_workers=max_workers or len(connections)) as pool:
        futures = {pool.submit(conn.run, command): conn for conn in connections}
        for future, conn in futures.items():
            result = future.result()
            logger.debug("Executed command", host=conn.host, command=command)
            if not result.ok:
                logger.debug(
                    "Command failed",
                    host=conn.host,
                    command=command,
                    exit_code=result.exit_code,
                    stdout=result.stdout,
                    stderr=result.stderr,
                )
            results[conn.host] = result
    return results
