"""
PostgreSQL role and catalog queries.
"""

import logging
from typing import Optional, Sequence

from snaprest.clients.pgbackrest import PgBackRestClient
from snaprest.clients.remote import Command, RemoteExecutor
from snaprest.errors import ConfigurationError

logger = logging.getLogger(__name__)


class PostgresCatalog:
    """
    Answers role and catalog questions for the orchestrator.

    Args:
        executor: RemoteExecutor used to run psql
        backup_tool: pgBackRest client used for catalog questions
        run_as: OS user psql runs as
        psql: psql executable
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        backup_tool: PgBackRestClient,
        run_as: Optional[str] = "postgres",
        psql: str = "psql",
    ):
        self._executor = executor
        self._backup_tool = backup_tool
        self.run_as = run_as
        self.psql = psql

    def _query(self, host: str, sql: str) -> str:
        result = self._executor.execute(
            host,
            Command.of(self.psql, "-X", "-t", "-A", "-c", sql, run_as=self.run_as),
        )
        if not result.ok:
            raise ConfigurationError(
                f"Query failed on {host} ({sql!r}): {result.output}", host=host
            )
        return result.stdout.strip()

    def is_replica_role(self, host: str) -> bool:
        """True when the server on host is in recovery (a standby)."""
        return self._query(host, "SELECT pg_is_in_recovery();") == "t"

    def catalog_has_full_backup(self, stanza: str) -> bool:
        """True when the stanza's catalog holds at least one full backup."""
        return self._backup_tool.info(stanza).has_full_backup

    def archive_command(self, host: str) -> str:
        return self._query(host, "SHOW archive_command;")

    def set_archive_command(self, host: str, stanza: str) -> None:
        """Point archive_command at pgBackRest and reload the configuration."""
        setting = f"pgbackrest --stanza={stanza} archive-push %p"
        escaped = setting.replace("'", "''")
        self._query(host, f"ALTER SYSTEM SET archive_command = '{escaped}';")
        self._query(host, "SELECT pg_reload_conf();")
        logger.info(f"archive_command on {host} set to {setting!r}")

    def repmgr_role(self, host: str, binaries: Sequence[str], config_path: str) -> Optional[str]:
        """
        Role reported by `repmgr node status` on host.

        Returns None when none of the repmgr binaries exists, and an empty
        string when the status output carries no role.
        """
        binary = next(
            (b for b in binaries if self._executor.execute(host, Command.of("test", "-f", b)).ok),
            None,
        )
        if binary is None:
            return None
        result = self._executor.execute(
            host,
            Command.of(binary, "-f", config_path, "node", "status", run_as=self.run_as),
        )
        for line in result.stdout.splitlines():
            if line.strip().startswith("Role:"):
                return line.split(":", 1)[1].strip()
        return ""
