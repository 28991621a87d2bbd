"""Tests for the BackupOrchestrator.

End-to-end runs of the static step list against the fake executor and block
storage from conftest.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from snaprest.clients import Command, PgBackRestClient, PostgresCatalog
from snaprest.errors import ConfigurationError, ConnectivityError, SnapshotError, StepError
from snaprest.orchestrator import BackupOrchestrator, build_orchestrator
from snaprest.schemas import RunMode, StepStatus
from snaprest.slot_allocator import parse_slots
from snaprest.state_store import FileStateStore, InMemoryStateStore

from conftest import MONDAY, PRIMARY, STANDBY, SUNDAY


CONF_PATH = "/etc/pgbackrest/pgbackrest.conf"
TUESDAY = MONDAY + timedelta(days=1)
SATURDAY = SUNDAY - timedelta(days=1)

ALL_STEPS = ["backup_volume", "repository", "stanza", "backup", "snapshot", "retention", "schedule"]


@pytest.fixture
def state():
    return InMemoryStateStore()


@pytest.fixture
def make_orchestrator(test_config, executor, storage, state):
    def _make(config=None, state_store=None):
        backup_tool = PgBackRestClient(executor, STANDBY)
        return BackupOrchestrator(
            config=config or test_config,
            executor=executor,
            state=state_store or state,
            backup_tool=backup_tool,
            postgres=PostgresCatalog(executor, backup_tool),
            storage=storage,
            sleep=lambda seconds: None,
        )
    return _make


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


def _mutating_calls(calls):
    return [(h, c) for h, c in calls if c.argv[0] not in ("psql", "true", "test", "cat")]


# =============================================================================
# SETUP
# =============================================================================


class TestSetupRun:
    """A first setup run executes every step."""

    def test_full_setup(self, orchestrator, executor, storage, state, test_config):
        result = orchestrator.run(RunMode.SETUP, now=MONDAY)

        assert result.executed == ALL_STEPS
        assert state.loaded

        # Slot 1 allocated in a fresh primary configuration
        primary_conf = executor.files[(PRIMARY, CONF_PATH)]
        assert parse_slots(primary_conf)[1]["host"] == STANDBY
        assert parse_slots(primary_conf)[1]["path"] == "/backup/pgbackrest/repo1"
        assert state.get("STANDBY_REPO_NUMBER") == "1"

        # Source configuration maps repo1 to the slot
        source_conf = executor.files[(STANDBY, CONF_PATH)]
        assert "# Local repo1, mapped to repo1 on the primary" in source_conf
        assert f"pg2-host={PRIMARY}" in source_conf
        assert "repo1-path=/backup/pgbackrest/repo1" in source_conf

        # archive_command switched to pgBackRest
        assert executor.archive_commands[PRIMARY] == "pgbackrest --stanza=main archive-push %p"

        # First backup is full
        assert executor.backup_types() == ["full"]
        assert state.get("LAST_BACKUP_TYPE") == "full"
        assert state.get("INITIAL_BACKUP_COMPLETED") == "true"
        assert state.get("BACKUP_FROM_STANDBY") == "true"
        assert state.get("LAST_BACKUP_DATE") == "2026-10-19 03:00:00"

        # Snapshot tagged and recorded
        assert storage.created == ["snap-0001"]
        tags = storage.snapshots["snap-0001"].tags
        assert tags["BackupType"] == "full"
        assert tags["Source"] == "standby"
        assert tags["SourceIP"] == STANDBY
        assert tags["Day"] == "Monday"
        assert state.get("LATEST_SNAPSHOT_ID") == "snap-0001"
        assert state.get("BACKUP_VOLUME_ID") == "vol-backup"
        assert state.get("SNAPSHOT_AVAILABLE") == "true"

        # Markers
        assert state.get("PGBACKREST_CONFIGURED") == "true"
        assert state.get("BACKUP_COMPLETED") == "2026-10-19"
        assert state.get("PERIODIC_SNAPSHOTS_CONFIGURED") == "true"

        schedule = test_config.schedule_path().read_text()
        assert "0 3 * * * snaprest run --scheduled --yes" in schedule

    def test_backup_volume_directories(self, orchestrator, executor):
        orchestrator.run(RunMode.SETUP, now=MONDAY)
        host, command = executor.programs("mkdir")[0]
        assert host == STANDBY
        assert command.argv == (
            "mkdir", "-p",
            "/backup/pgbackrest/repo", "/backup/pgbackrest/logs", "/backup/pgbackrest/archive",
        )

    def test_setup_waits_for_snapshot(self, orchestrator, storage):
        storage.describe_states = ["pending", "pending", "completed"]
        orchestrator.run(RunMode.SETUP, now=MONDAY)
        assert storage.describe_states == []

    def test_second_run_same_day_has_no_side_effects(self, orchestrator, executor, storage, state):
        orchestrator.run(RunMode.SETUP, now=MONDAY)
        calls_before = len(executor.calls)
        writes_before = list(state.writes)

        result = orchestrator.run(RunMode.SETUP, now=MONDAY + timedelta(hours=1))

        assert result.executed == []
        assert result.skipped == ALL_STEPS
        assert _mutating_calls(executor.calls[calls_before:]) == []
        assert storage.created == ["snap-0001"]
        assert state.writes == writes_before

    def test_existing_slot_is_reused(self, orchestrator, executor, state):
        existing = (
            "[main]\npg1-path=/var/lib/pgsql/13/data\n\n[global]\n"
            "repo1-host=10.40.0.11\nrepo1-path=/backup/pgbackrest/repo\n"
            f"repo2-host={STANDBY}\nrepo2-path=/backup/pgbackrest/repo\n"
        )
        executor.files[(PRIMARY, CONF_PATH)] = existing

        orchestrator.run(RunMode.SETUP, now=MONDAY)

        assert state.get("STANDBY_REPO_NUMBER") == "2"
        assert executor.files[(PRIMARY, CONF_PATH)] == existing
        assert [h for h, c in executor.programs("tee")] == [STANDBY]

    def test_new_source_gets_next_slot(self, orchestrator, executor, state):
        executor.files[(PRIMARY, CONF_PATH)] = (
            "[global]\nrepo1-host=10.40.0.11\nrepo2-host=10.40.0.12\n"
        )

        orchestrator.run(RunMode.SETUP, now=MONDAY)

        assert state.get("STANDBY_REPO_NUMBER") == "3"
        assert sorted(parse_slots(executor.files[(PRIMARY, CONF_PATH)])) == [1, 2, 3]
        assert executor.files[(PRIMARY, CONF_PATH + ".bak")].startswith("[global]\nrepo1-host")

    def test_repository_path_follows_slot(self, orchestrator, executor, state):
        executor.files[(PRIMARY, CONF_PATH)] = (
            "[global]\nrepo1-host=10.40.0.11\nrepo1-path=/backup/pgbackrest/repo1\n"
        )

        orchestrator.run(RunMode.SETUP, now=MONDAY)

        assert state.get("STANDBY_REPO_NUMBER") == "2"
        primary_conf = executor.files[(PRIMARY, CONF_PATH)]
        assert "repo2-path=/backup/pgbackrest/repo2" in primary_conf
        assert "repo1-path=/backup/pgbackrest/repo1" in primary_conf
        source_conf = executor.files[(STANDBY, CONF_PATH)]
        assert "repo1-path=/backup/pgbackrest/repo2" in source_conf
        created = [c.argv for h, c in executor.programs("mkdir") if h == STANDBY]
        assert ("mkdir", "-p", "/backup/pgbackrest/repo2") in created

    def test_archive_command_left_alone_when_configured(self, orchestrator, executor):
        executor.archive_commands[PRIMARY] = "pgbackrest --stanza=main archive-push %p"
        orchestrator.run(RunMode.SETUP, now=MONDAY)
        sql = [c.argv[-1] for _, c in executor.programs("psql")]
        assert not any(s.startswith("ALTER SYSTEM") for s in sql)

    def test_failed_check_is_not_fatal(self, orchestrator, executor):
        executor.fail("--repo=1 check")
        result = orchestrator.run(RunMode.SETUP, now=MONDAY)
        assert result.get_outcome("repository").status == StepStatus.COMPLETED


# =============================================================================
# PREREQUISITES
# =============================================================================


class TestPrerequisites:
    """Prerequisite failures happen before any state access."""

    def test_non_replica_source_scheduled(self, make_orchestrator, executor, tmp_path):
        executor.replica_hosts.clear()
        state_file = tmp_path / "never.env"
        orchestrator = make_orchestrator(state_store=FileStateStore(state_file))

        with pytest.raises(ConfigurationError, match="not a replica"):
            orchestrator.run(RunMode.SCHEDULED, now=MONDAY)

        assert not state_file.exists()

    def test_non_replica_source_setup(self, orchestrator, executor, state):
        executor.replica_hosts.clear()
        with pytest.raises(ConfigurationError):
            orchestrator.run(RunMode.SETUP, now=MONDAY)
        assert state.loaded is False
        assert state.writes == []

    def test_unreachable_primary(self, orchestrator, executor, state):
        executor.unreachable.add(PRIMARY)
        with pytest.raises(ConnectivityError):
            orchestrator.run(RunMode.SETUP, now=MONDAY)
        assert state.loaded is False

    def test_missing_setting(self, make_orchestrator, test_config, state):
        orchestrator = make_orchestrator(config=test_config.with_overrides(stanza=""))
        with pytest.raises(ConfigurationError, match="stanza"):
            orchestrator.run(RunMode.SETUP, now=MONDAY)
        assert state.loaded is False

    def test_missing_aws_credentials(self, orchestrator, executor, storage, state):
        storage.credentials_error = SnapshotError("Unable to locate credentials")
        with pytest.raises(ConfigurationError, match="AWS credentials not configured properly"):
            orchestrator.run(RunMode.SETUP, now=MONDAY)
        assert state.loaded is False
        assert executor.calls == []

    def test_credentials_not_needed_without_snapshots(self, make_orchestrator, test_config, storage, state):
        storage.credentials_error = SnapshotError("Unable to locate credentials")
        config = test_config.with_overrides(skip_snapshot=True, retention_enabled=False)

        result = make_orchestrator(config=config).run(RunMode.SETUP, now=MONDAY)

        assert result.get_outcome("snapshot").artifacts == {}
        assert storage.created == []

    def test_repmgr_reports_primary(self, orchestrator, executor, state):
        executor.files[(STANDBY, "/usr/pgsql-13/bin/repmgr")] = ""
        executor.repmgr_roles[STANDBY] = "primary"

        with pytest.raises(ConfigurationError, match="according to repmgr"):
            orchestrator.run(RunMode.SETUP, now=MONDAY)
        assert state.loaded is False

    def test_repmgr_standby_passes(self, orchestrator, executor):
        executor.files[(STANDBY, "/usr/pgsql-13/bin/repmgr")] = ""
        executor.repmgr_roles[STANDBY] = "standby"

        orchestrator.run(RunMode.SETUP, now=MONDAY)

        status = [c.argv for h, c in executor.calls if c.argv[0] == "/usr/pgsql-13/bin/repmgr"]
        assert status == [("/usr/pgsql-13/bin/repmgr", "-f", "/var/lib/pgsql/repmgr.conf", "node", "status")]

    def test_scheduled_before_setup(self, orchestrator, executor, state):
        with pytest.raises(ConfigurationError, match="Setup has not completed"):
            orchestrator.run(RunMode.SCHEDULED, now=MONDAY)
        assert executor.backup_types() == []
        assert state.writes == []


# =============================================================================
# SCHEDULED RUNS
# =============================================================================


class TestScheduledRun:
    """Daily scheduled runs after setup."""

    def test_next_day_is_incremental(self, orchestrator, executor, storage, state):
        orchestrator.run(RunMode.SETUP, now=MONDAY)
        storage.describe_states = ["pending"]

        result = orchestrator.run(RunMode.SCHEDULED, now=TUESDAY)

        assert result.executed == ["backup", "snapshot", "retention"]
        assert executor.backup_types() == ["full", "incr"]
        assert state.get("LAST_BACKUP_TYPE") == "incr"
        assert storage.snapshots["snap-0002"].tags["BackupType"] == "incr"
        # Scheduled runs do not wait for the snapshot
        assert storage.describe_states == ["pending"]

    def test_weekly_day_takes_full_twice(self, orchestrator, executor):
        """On the weekly day the selector answers full every time it is asked."""
        orchestrator.run(RunMode.SETUP, now=SATURDAY)

        orchestrator.run(RunMode.SCHEDULED, now=SUNDAY)
        orchestrator.run(RunMode.SCHEDULED, force_step="backup", now=SUNDAY + timedelta(hours=1))

        assert executor.backup_types() == ["full", "full", "full"]

    def test_force_full(self, make_orchestrator, test_config, executor, state):
        make_orchestrator().run(RunMode.SETUP, now=MONDAY)
        make_orchestrator().run(RunMode.SCHEDULED, now=TUESDAY)

        forced = make_orchestrator(config=test_config.with_overrides(force_full=True))
        result = forced.run(RunMode.SCHEDULED, now=TUESDAY + timedelta(hours=2))

        assert executor.backup_types() == ["full", "incr", "full"]
        assert result.executed == ["backup"]
        assert result.skipped == ["snapshot", "retention"]

    def test_force_full_conflicts_with_other_force_step(self, make_orchestrator, test_config):
        forced = make_orchestrator(config=test_config.with_overrides(force_full=True))
        with pytest.raises(ConfigurationError, match="force_full"):
            forced.run(RunMode.SCHEDULED, force_step="snapshot", now=MONDAY)

    def test_skip_backup_still_snapshots(self, make_orchestrator, test_config, executor, storage, state):
        make_orchestrator().run(RunMode.SETUP, now=MONDAY)

        skipping = make_orchestrator(config=test_config.with_overrides(skip_backup=True))
        result = skipping.run(RunMode.SCHEDULED, now=TUESDAY)

        assert executor.backup_types() == ["full"]
        assert result.get_outcome("backup").artifacts == {}
        assert storage.created == ["snap-0001", "snap-0002"]
        assert storage.snapshots["snap-0002"].tags["BackupType"] == "full"

    def test_skip_snapshot(self, make_orchestrator, test_config, storage, state):
        make_orchestrator().run(RunMode.SETUP, now=MONDAY)
        skipping = make_orchestrator(config=test_config.with_overrides(skip_snapshot=True))

        skipping.run(RunMode.SCHEDULED, now=TUESDAY)

        assert storage.created == ["snap-0001"]
        assert state.get("SNAPSHOT_COMPLETED") == "2026-10-20"

    def test_backup_failure_stops_run_and_resumes(self, orchestrator, executor, storage, state):
        orchestrator.run(RunMode.SETUP, now=MONDAY)
        executor.fail("--type=incr", stderr="ERROR: [082] WAL segment missing")

        with pytest.raises(StepError) as exc_info:
            orchestrator.run(RunMode.SCHEDULED, now=TUESDAY)

        assert exc_info.value.step == "backup"
        assert exc_info.value.host == STANDBY
        assert "082" in str(exc_info.value)
        assert state.get("BACKUP_COMPLETED") == "2026-10-19"
        assert storage.created == ["snap-0001"]

        executor.failures.clear()
        result = orchestrator.run(RunMode.SCHEDULED, now=TUESDAY + timedelta(hours=1))
        assert result.executed == ["backup", "snapshot", "retention"]
        assert executor.backup_types() == ["full", "incr"]

    def test_retention_prunes_old_snapshots(self, orchestrator, storage, state):
        orchestrator.run(RunMode.SETUP, now=MONDAY)
        storage.add(
            "snap-ancient", MONDAY - timedelta(days=30),
            Source="standby", SourceIP=STANDBY, Stanza="main", BackupType="full",
        )

        orchestrator.run(RunMode.SCHEDULED, now=TUESDAY)

        assert "snap-ancient" in storage.deleted
        assert state.get("LAST_RETENTION_DELETED") == "1"

    def test_retention_disabled(self, make_orchestrator, test_config, storage):
        make_orchestrator().run(RunMode.SETUP, now=MONDAY)
        storage.add(
            "snap-ancient", MONDAY - timedelta(days=30),
            Source="standby", SourceIP=STANDBY, Stanza="main", BackupType="full",
        )
        disabled = make_orchestrator(config=test_config.with_overrides(retention_enabled=False))

        disabled.run(RunMode.SCHEDULED, now=TUESDAY)

        assert storage.deleted == []


# =============================================================================
# VOLUME RESOLUTION
# =============================================================================


class TestVolumeResolution:
    """How the snapshot step finds the backup volume."""

    def test_lookup_by_instance(self, make_orchestrator, test_config, storage, state):
        storage.volumes[("i-0abc", "/dev/sdb")] = "vol-found"
        config = test_config.with_overrides(instance_id="i-0abc")
        config.backup_volume_id = None

        make_orchestrator(config=config).run(RunMode.SETUP, now=MONDAY)

        assert state.get("BACKUP_VOLUME_ID") == "vol-found"
        assert storage.snapshots["snap-0001"].volume_id == "vol-found"

    def test_root_filesystem_completes_without_snapshot(self, orchestrator, executor, storage, state):
        del executor.mounts[STANDBY]

        result = orchestrator.run(RunMode.SETUP, now=MONDAY)

        assert storage.created == []
        assert state.get("SNAPSHOT_AVAILABLE") == "false"
        assert result.get_outcome("snapshot").status == StepStatus.COMPLETED

    def test_instance_id_from_metadata(self, make_orchestrator, test_config, executor, storage, state):
        executor.instance_ids[STANDBY] = "i-0meta"
        storage.volumes[("i-0meta", "/dev/nvme1n1")] = "vol-mounted"
        config = test_config.with_overrides()
        config.backup_volume_id = None

        make_orchestrator(config=config).run(RunMode.SETUP, now=MONDAY)

        assert state.get("BACKUP_VOLUME_ID") == "vol-mounted"
        token_call = executor.programs("curl")[0][1]
        assert "PUT" in token_call.argv

    def test_unknown_instance_fails_snapshot_step(self, make_orchestrator, test_config, storage, state):
        config = test_config.with_overrides()
        config.backup_volume_id = None

        with pytest.raises(StepError, match="Could not retrieve instance ID") as exc_info:
            make_orchestrator(config=config).run(RunMode.SETUP, now=MONDAY)

        assert exc_info.value.step == "snapshot"
        assert state.get("SNAPSHOT_COMPLETED") is None
        assert storage.created == []

    def test_unresolvable_volume_fails_snapshot_step(self, make_orchestrator, test_config, storage, state):
        config = test_config.with_overrides(instance_id="i-0abc")
        config.backup_volume_id = None

        with pytest.raises(StepError, match="Could not determine backup volume ID"):
            make_orchestrator(config=config).run(RunMode.SETUP, now=MONDAY)

        assert state.get("SNAPSHOT_COMPLETED") is None
        assert state.get("SNAPSHOT_AVAILABLE") is None

    def test_remembered_volume_is_reused(self, make_orchestrator, test_config, storage, state):
        state.set("BACKUP_VOLUME_ID", "vol-remembered")
        config = test_config.with_overrides()
        config.backup_volume_id = None

        make_orchestrator(config=config).run(RunMode.SETUP, now=MONDAY)

        assert storage.snapshots["snap-0001"].volume_id == "vol-remembered"


# =============================================================================
# PRODUCTION WIRING
# =============================================================================


class TestBuildOrchestrator:
    """Command routing of the orchestrator built for production."""

    @pytest.fixture(autouse=True)
    def no_aws(self):
        with patch("snaprest.orchestrator.Ec2BlockStorage") as storage_class:
            yield storage_class

    def test_primary_commands_run_as_login_user(self, test_config):
        orchestrator = build_orchestrator(test_config)
        command = Command.of("psql", "-c", "SHOW archive_command;", run_as="postgres")

        argv = orchestrator.executor.build_argv(PRIMARY, command)

        assert argv[0] == "ssh"
        assert argv[-2] == f"postgres@{PRIMARY}"
        assert argv[-1] == "psql -c 'SHOW archive_command;'"

    def test_source_commands_run_locally(self, test_config):
        orchestrator = build_orchestrator(test_config)
        command = Command.of("pgbackrest", "--stanza=main", "check", run_as="postgres")

        argv = orchestrator.executor.build_argv(STANDBY, command)

        assert argv == ["sudo", "-u", "postgres", "pgbackrest", "--stanza=main", "check"]

    def test_remote_source(self, test_config):
        config = test_config.with_overrides(source_is_local=False)
        assert STANDBY not in config.execution_local_hosts

        orchestrator = build_orchestrator(config)
        argv = orchestrator.executor.build_argv(STANDBY, Command.of("true"))

        assert argv[0] == "ssh"
        assert argv[-1] == "true"

    def test_region_passed_to_storage(self, test_config, no_aws):
        build_orchestrator(test_config)
        no_aws.assert_called_once_with(region="ap-northeast-1")
