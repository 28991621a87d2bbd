import json
from datetime import datetime, timezone
from typing import Optional, Sequence
from unittest.mock import patch

import pytest

from snaprest.clients import BlockStorage, Command, CommandResult, RemoteExecutor
from snaprest.config import SnaprestConfig
from snaprest.errors import ConnectivityError, SnapshotError
from snaprest.schemas import Snapshot

# Monday and Sunday used throughout the tests
MONDAY = datetime(2026, 10, 19, 3, 0, tzinfo=timezone.utc)
SUNDAY = datetime(2026, 10, 18, 3, 0, tzinfo=timezone.utc)

PRIMARY = "10.40.0.24"
STANDBY = "10.40.0.17"


class FakeExecutor(RemoteExecutor):
    """
    Scripted RemoteExecutor.

    Keeps files per (host, path), answers the psql and pgbackrest calls the
    orchestrator makes, and records every command.
    """

    def __init__(self):
        self.calls: list[tuple[str, Command]] = []
        self.files: dict[tuple[str, str], str] = {}
        self.unreachable: set[str] = set()
        self.replica_hosts: set[str] = {STANDBY}
        self.archive_commands: dict[str, str] = {}
        self.backups: list[dict] = []
        self.failures: dict[str, CommandResult] = {}
        self.mounts: dict[str, str] = {STANDBY: "/dev/nvme1n1"}
        self.instance_ids: dict[str, str] = {}
        self.repmgr_roles: dict[str, str] = {}
        self._clock = 1_760_000_000

    def fail(self, fragment: str, exit_code: int = 1, stderr: str = "boom") -> None:
        """Make every command whose display contains fragment fail."""
        self.failures[fragment] = CommandResult(exit_code=exit_code, stderr=stderr)

    def programs(self, name: str) -> list[tuple[str, Command]]:
        return [(h, c) for h, c in self.calls if c.argv[0] == name]

    def backup_types(self) -> list[str]:
        return [b["type"] for b in self.backups]

    def execute(self, host: str, command: Command) -> CommandResult:
        self.calls.append((host, command))
        if host in self.unreachable:
            raise ConnectivityError(f"Cannot reach {host}", host=host)
        display = command.display()
        for fragment, result in self.failures.items():
            if fragment in display:
                return result

        argv = command.argv
        program = argv[0]
        if program == "test":
            return CommandResult(0 if (host, argv[2]) in self.files else 1)
        if program == "cat":
            return CommandResult(0, stdout=self.files.get((host, argv[1]), ""))
        if program == "cp":
            if (host, argv[2]) in self.files:
                self.files[(host, argv[3])] = self.files[(host, argv[2])]
                return CommandResult(0)
            return CommandResult(1, stderr="No such file")
        if program == "tee":
            self.files[(host, argv[1])] = command.stdin or ""
            return CommandResult(0, stdout=command.stdin or "")
        if program == "mv":
            self.files[(host, argv[3])] = self.files.pop((host, argv[2]))
            return CommandResult(0)
        if program == "psql":
            return self._psql(host, argv[-1])
        if program == "pgbackrest":
            return self._pgbackrest(argv)
        if program == "findmnt":
            source = self.mounts.get(host)
            return CommandResult(0, stdout=source + "\n") if source else CommandResult(1)
        if program == "curl":
            return self._imds(host, argv)
        if program.endswith("/repmgr"):
            role = self.repmgr_roles.get(host, "")
            return CommandResult(0, stdout=f"Node \"{host}\":\n\tRole: {role}\n")
        return CommandResult(0)

    def _psql(self, host: str, sql: str) -> CommandResult:
        if "pg_is_in_recovery" in sql:
            return CommandResult(0, stdout="t\n" if host in self.replica_hosts else "f\n")
        if sql.startswith("SHOW archive_command"):
            return CommandResult(0, stdout=self.archive_commands.get(host, "(disabled)") + "\n")
        if sql.startswith("ALTER SYSTEM SET archive_command"):
            value = sql.split("= '", 1)[1].rsplit("'", 1)[0].replace("''", "'")
            self.archive_commands[host] = value
            return CommandResult(0, stdout="ALTER SYSTEM\n")
        return CommandResult(0, stdout="t\n")

    def _imds(self, host: str, argv: Sequence[str]) -> CommandResult:
        if host not in self.instance_ids:
            return CommandResult(7, stderr="Failed to connect")
        if "PUT" in argv:
            return CommandResult(0, stdout="imds-token")
        return CommandResult(0, stdout=self.instance_ids[host])

    def _pgbackrest(self, argv: Sequence[str]) -> CommandResult:
        stanza = next(a.split("=", 1)[1] for a in argv if a.startswith("--stanza="))
        if "info" in argv:
            payload = [{"name": stanza, "backup": list(self.backups), "status": {"message": "ok"}}]
            return CommandResult(0, stdout=json.dumps(payload))
        if "backup" in argv:
            backup_type = next(a.split("=", 1)[1] for a in argv if a.startswith("--type="))
            self._clock += 60
            self.backups.append({
                "type": backup_type,
                "label": f"20261019-{len(self.backups):06d}F",
                "timestamp": {"start": self._clock, "stop": self._clock + 30},
            })
        return CommandResult(0)


class FakeBlockStorage(BlockStorage):
    """In-memory BlockStorage."""

    def __init__(self, volumes: Optional[dict[tuple[str, str], str]] = None):
        self.snapshots: dict[str, Snapshot] = {}
        self.volumes = volumes or {}
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.fail_delete: set[str] = set()
        self.describe_states: list[str] = []
        self.credentials_error: Optional[SnapshotError] = None
        self.now = MONDAY

    def add(self, snapshot_id: str, created_at: datetime, **tags: str) -> Snapshot:
        snapshot = Snapshot(
            id=snapshot_id,
            volume_id="vol-backup",
            created_at=created_at,
            state="completed",
            tags=dict(tags),
        )
        self.snapshots[snapshot_id] = snapshot
        return snapshot

    def create_snapshot(self, volume_id: str, tags: dict[str, str], description: str = "") -> str:
        snapshot_id = f"snap-{len(self.created) + 1:04d}"
        self.snapshots[snapshot_id] = Snapshot(
            id=snapshot_id, volume_id=volume_id, created_at=self.now, tags=dict(tags)
        )
        self.created.append(snapshot_id)
        return snapshot_id

    def describe_snapshot(self, snapshot_id: str) -> str:
        if self.describe_states:
            return self.describe_states.pop(0)
        return "completed"

    def delete_snapshot(self, snapshot_id: str) -> None:
        if snapshot_id in self.fail_delete:
            raise SnapshotError(f"delete-snapshot failed for {snapshot_id}")
        self.snapshots.pop(snapshot_id, None)
        self.deleted.append(snapshot_id)

    def list_snapshots(self, tag_filters: dict[str, str]) -> list[Snapshot]:
        return [
            s for s in self.snapshots.values()
            if all(s.tags.get(k) == v for k, v in tag_filters.items())
        ]

    def find_volume(self, instance_id: str, devices: Sequence[str]) -> Optional[str]:
        for device in devices:
            if (instance_id, device) in self.volumes:
                return self.volumes[(instance_id, device)]
        return None

    def verify_credentials(self) -> str:
        if self.credentials_error is not None:
            raise self.credentials_error
        return "arn:aws:iam::123456789012:role/standby-backup"


@pytest.fixture
def test_config(tmp_path):
    return SnaprestConfig(
        primary_host=PRIMARY,
        source_host=STANDBY,
        stanza="main",
        pg_version="13",
        region="ap-northeast-1",
        backup_volume_id="vol-backup",
        state_file=str(tmp_path / "state.env"),
        schedule_file=str(tmp_path / "crontab"),
    )


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def storage():
    return FakeBlockStorage()



@pytest.fixture(autouse=True)
def mock_load_config(request, test_config):
    # Don't patch for config tests
    if "test_config" in request.module.__name__:
        yield
        return

    with patch("snaprest.config.load_config", return_value=test_config):
        yield
