"""
pgBackRest CLI client.

Wraps the commands the orchestrator needs (stanza-create, backup, info,
check) and renders the source host's own pgbackrest.conf.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional

from snaprest.clients.remote import Command, RemoteExecutor
from snaprest.errors import BackupError
from snaprest.schemas import BackupCatalog, BackupType
from snaprest.slot_allocator import SlotRetention

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceConfigParams:
    """Settings for the backup source's own pgbackrest.conf."""
    stanza: str
    pg_data_dir: str
    primary_host: str
    repo_path: str
    log_path: str
    slot_number: int
    retention: SlotRetention = SlotRetention()
    process_max: int = 8


def render_source_config(params: SourceConfigParams) -> str:
    """
    Configuration for taking backups on the standby.

    The local repository is always repo1 and points at the directory of the
    slot allocated on the primary.
    """
    r = params.retention
    lines = [
        f"[{params.stanza}]",
        "# Local standby server",
        f"pg1-path={params.pg_data_dir}",
        "pg1-port=5432",
        "pg1-socket-path=/tmp",
        "",
        "# Primary server (required for standby backups)",
        f"pg2-host={params.primary_host}",
        f"pg2-path={params.pg_data_dir}",
        "pg2-port=5432",
        "pg2-host-user=postgres",
        "pg2-socket-path=/tmp",
        "",
        "backup-standby=y",
        "delta=y",
        "",
        "[global]",
        f"# Local repo1, mapped to repo{params.slot_number} on the primary",
        f"repo1-path={params.repo_path}",
        f"repo1-retention-full={r.full}",
        f"repo1-retention-diff={r.diff}",
        f"repo1-retention-archive={r.archive}",
        "",
        f"process-max={params.process_max}",
        "start-fast=y",
        "stop-auto=y",
        "compress-type=zst",
        "compress-level=3",
        "log-level-console=info",
        "log-level-file=detail",
        f"log-path={params.log_path}",
        "",
        "archive-get-queue-max=128MB",
        "archive-push-queue-max=128MB",
    ]
    return "\n".join(lines) + "\n"


class PgBackRestClient:
    """
    Runs pgBackRest on a host through the remote executor.

    Args:
        executor: RemoteExecutor used for every call
        host: Host the commands run on (the backup source)
        run_as: OS user pgBackRest runs as
        binary: pgBackRest executable
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        host: str,
        run_as: Optional[str] = "postgres",
        binary: str = "pgbackrest",
    ):
        self._executor = executor
        self.host = host
        self.run_as = run_as
        self.binary = binary

    def _command(self, *args: str) -> Command:
        return Command.of(self.binary, *args, run_as=self.run_as)

    def create_stanza(self, stanza: str) -> None:
        """Create the stanza (idempotent in pgBackRest)."""
        result = self._executor.execute(self.host, self._command(f"--stanza={stanza}", "stanza-create"))
        if not result.ok:
            raise BackupError(
                f"stanza-create for {stanza} failed (exit {result.exit_code}): {result.output}",
                host=self.host,
            )
        logger.info(f"Stanza {stanza} ready on {self.host}")

    def run_backup(self, stanza: str, backup_type: BackupType) -> None:
        """Take a backup of the given type."""
        if backup_type == BackupType.SKIP:
            raise ValueError("run_backup called with backup type 'skip'")
        result = self._executor.execute(
            self.host,
            self._command(f"--stanza={stanza}", f"--type={backup_type.value}", "backup"),
        )
        if not result.ok:
            raise BackupError(
                f"{backup_type.value} backup of {stanza} failed (exit {result.exit_code}): "
                f"{result.output or 'check pgBackRest logs'}",
                host=self.host,
            )
        logger.info(f"{backup_type.value} backup of {stanza} completed on {self.host}")

    def info(self, stanza: str) -> BackupCatalog:
        """Return the stanza's backup catalog."""
        result = self._executor.execute(
            self.host,
            self._command(f"--stanza={stanza}", "info", "--output=json"),
        )
        if not result.ok:
            raise BackupError(
                f"info for {stanza} failed (exit {result.exit_code}): {result.output}",
                host=self.host,
            )
        try:
            parsed = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as e:
            raise BackupError(f"Unparseable info output for {stanza}: {e}", host=self.host) from e
        if not isinstance(parsed, list):
            raise BackupError(f"Unexpected info output for {stanza}", host=self.host)
        return BackupCatalog.from_info(stanza, parsed)

    def check(self, stanza: str, repo: Optional[int] = None, host: Optional[str] = None) -> bool:
        """Run `pgbackrest check`; returns False instead of raising on failure."""
        args = [f"--stanza={stanza}"]
        if repo is not None:
            args.append(f"--repo={repo}")
        args.append("check")
        target = host or self.host
        result = self._executor.execute(target, self._command(*args))
        if not result.ok:
            logger.warning(f"pgbackrest check on {target} reported: {result.output}")
        return result.ok
