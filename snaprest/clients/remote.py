"""
Remote execution channel.

Commands are typed requests (argv tuples), never shell strings. For remote
hosts the argv is quoted with shlex.join and handed to `ssh` as a single
argument, so values coming from configuration cannot inject shell syntax.
Hosts listed as local are executed directly with subprocess.
"""

import logging
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Sequence

from snaprest.errors import ConnectivityError, SnaprestError

logger = logging.getLogger(__name__)

# ssh reserves exit status 255 for its own (connection) errors
SSH_CONNECTION_FAILURE = 255


@dataclass(frozen=True)
class Command:
    """
    A command to run on a host.

    Attributes:
        argv: Program and arguments
        run_as: Run through `sudo -u <user>` when set
        stdin: Text fed to the command's standard input
    """
    argv: tuple[str, ...]
    run_as: Optional[str] = None
    stdin: Optional[str] = None

    def __post_init__(self):
        if not self.argv:
            raise ValueError("Command argv must not be empty")

    @classmethod
    def of(cls, *argv: str, run_as: Optional[str] = None, stdin: Optional[str] = None) -> "Command":
        return cls(argv=tuple(str(a) for a in argv), run_as=run_as, stdin=stdin)

    def full_argv(self) -> list[str]:
        if self.run_as:
            return ["sudo", "-u", self.run_as, *self.argv]
        return list(self.argv)

    def display(self) -> str:
        return shlex.join(self.full_argv())


@dataclass(frozen=True)
class CommandResult:
    """Result of running a Command."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Combined output, stdout first."""
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


@dataclass(frozen=True)
class ConfigDestination:
    """A configuration file on a host."""
    host: str
    path: str
    run_as: Optional[str] = None


class RemoteExecutor(ABC):
    """Interface used by the core to reach other hosts."""

    @abstractmethod
    def execute(self, host: str, command: Command) -> CommandResult:
        """
        Run a command on host.

        Raises:
            ConnectivityError: If the host cannot be reached
        """
        pass

    def check(self, host: str, command: Command) -> CommandResult:
        """Run a command and raise SnaprestError on a non-zero exit."""
        result = self.execute(host, command)
        if not result.ok:
            raise SnaprestError(
                f"Command failed with exit code {result.exit_code}: {command.display()}"
                + (f": {result.output}" if result.output else ""),
                host=host,
            )
        return result

    def ping(self, host: str) -> None:
        """Verify host is reachable, raising ConnectivityError otherwise."""
        result = self.execute(host, Command.of("true"))
        if not result.ok:
            raise ConnectivityError(f"Host {host} did not answer: {result.output}", host=host)

    def read_config(self, destination: ConfigDestination) -> str:
        """Return the file contents, or an empty string if it does not exist."""
        exists = self.execute(
            destination.host,
            Command.of("test", "-f", destination.path, run_as=destination.run_as),
        )
        if not exists.ok:
            return ""
        result = self.check(
            destination.host,
            Command.of("cat", destination.path, run_as=destination.run_as),
        )
        return result.stdout

    def mount_source(self, host: str, mount_point: str) -> Optional[str]:
        """Device mounted at mount_point on host, or None when it is not a mount point."""
        result = self.execute(
            host,
            Command.of("findmnt", "-n", "-o", "SOURCE", "--mountpoint", mount_point),
        )
        source = result.stdout.strip() if result.ok else ""
        return source or None

    def write_config(self, destination: ConfigDestination, text: str) -> None:
        """Replace the file, keeping the previous version as <path>.bak."""
        self.execute(
            destination.host,
            Command.of("cp", "-p", destination.path, destination.path + ".bak", run_as=destination.run_as),
        )
        tmp_path = destination.path + ".tmp"
        self.check(
            destination.host,
            Command.of("tee", tmp_path, run_as=destination.run_as, stdin=text),
        )
        self.check(
            destination.host,
            Command.of("mv", "-f", tmp_path, destination.path, run_as=destination.run_as),
        )
        logger.info(f"Wrote {destination.path} on {destination.host}")


class SshRemoteExecutor(RemoteExecutor):
    """
    RemoteExecutor backed by the ssh client.

    Args:
        user: Remote login user
        identity_file: Private key passed with -i (optional)
        connect_timeout: ssh ConnectTimeout in seconds
        local_hosts: Hosts executed locally without ssh
        extra_options: Additional `-o` options (e.g. StrictHostKeyChecking=no)
    """

    def __init__(
        self,
        user: str = "postgres",
        identity_file: Optional[str] = None,
        connect_timeout: int = 5,
        local_hosts: Sequence[str] = ("localhost", "127.0.0.1"),
        extra_options: Sequence[str] = (),
    ):
        self.user = user
        self.identity_file = identity_file
        self.connect_timeout = connect_timeout
        self.local_hosts = set(local_hosts)
        self.extra_options = list(extra_options)

    def is_local(self, host: str) -> bool:
        return host in self.local_hosts

    def build_argv(self, host: str, command: Command) -> list[str]:
        """Build the local argv used to run command on host."""
        if self.is_local(host):
            return command.full_argv()

        argv = [
            "ssh",
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self.connect_timeout}",
        ]
        for option in self.extra_options:
            argv.extend(["-o", option])
        if self.identity_file:
            argv.extend(["-i", self.identity_file])
        argv.append(f"{self.user}@{host}")
        # The login user already is the target user; no sudo on the far side
        remote_argv = command.argv if command.run_as in (None, self.user) else command.full_argv()
        argv.append(shlex.join(remote_argv))
        return argv

    def execute(self, host: str, command: Command) -> CommandResult:
        argv = self.build_argv(host, command)
        logger.debug(f"[{host}] {command.display()}")
        try:
            completed = subprocess.run(
                argv,
                input=command.stdin,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as e:
            raise ConnectivityError(f"Cannot execute {argv[0]}: {e}", host=host) from e

        if not self.is_local(host) and completed.returncode == SSH_CONNECTION_FAILURE:
            raise ConnectivityError(
                f"Cannot reach {self.user}@{host} over ssh: {completed.stderr.strip()}",
                host=host,
            )

        return CommandResult(
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
