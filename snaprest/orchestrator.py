"""
BackupOrchestrator - the static step list and its wiring.

Steps, in order:
    backup_volume   (setup)      BACKUP_VOLUME_CONFIGURED
    repository      (setup)      PGBACKREST_CONFIGURED
    stanza          (setup)      STANZA_CREATED
    backup          (recurring)  BACKUP_COMPLETED
    snapshot        (recurring)  SNAPSHOT_COMPLETED
    retention       (recurring)  RETENTION_COMPLETED
    schedule        (setup)      PERIODIC_SNAPSHOTS_CONFIGURED

Prerequisites are checked before the state store is loaded, so a run against
the wrong server never reads or writes state.
"""

import logging
import shlex
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from snaprest.backup_type import (
    WeeklyDayPredicate,
    designated_weekday,
    needs_catalog,
    select_backup_type,
)
from snaprest.clients import (
    BlockStorage,
    Command,
    ConfigDestination,
    Ec2BlockStorage,
    PgBackRestClient,
    PostgresCatalog,
    RemoteExecutor,
    SourceConfigParams,
    SshRemoteExecutor,
    fetch_instance_id,
    render_source_config,
)
from snaprest.config import SnaprestConfig, get_snaprest_home
from snaprest.errors import ConfigurationError, SnapshotError
from snaprest.runner import StepRunner
from snaprest.schemas import BackupMode, BackupType, RunMode, RunResult, Step, StepContext
from snaprest.slot_allocator import RepositorySlotAllocator, SlotRetention, insert_slot_entry
from snaprest.snapshots import SnapshotLifecycleManager, snapshot_tags
from snaprest.state_store import FileStateStore, StateStore

logger = logging.getLogger(__name__)

# Artifact keys
STANDBY_REPO_NUMBER = "STANDBY_REPO_NUMBER"
LAST_BACKUP_TYPE = "LAST_BACKUP_TYPE"
LAST_BACKUP_DATE = "LAST_BACKUP_DATE"
INITIAL_BACKUP_COMPLETED = "INITIAL_BACKUP_COMPLETED"
BACKUP_FROM_STANDBY = "BACKUP_FROM_STANDBY"
BACKUP_VOLUME_ID = "BACKUP_VOLUME_ID"
LATEST_SNAPSHOT_ID = "LATEST_SNAPSHOT_ID"
LAST_SNAPSHOT_DATE = "LAST_SNAPSHOT_DATE"
SNAPSHOT_AVAILABLE = "SNAPSHOT_AVAILABLE"
LAST_RETENTION_DELETED = "LAST_RETENTION_DELETED"
SCHEDULE_FILE = "SCHEDULE_FILE"

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class BackupOrchestrator:
    """
    Wires configuration, collaborators and the StepRunner together.

    Args:
        config: Resolved configuration
        executor: Remote execution channel
        state: State store (loaded only after prerequisites pass)
        backup_tool: pgBackRest client bound to the source host
        postgres: Role and catalog queries
        storage: Block-storage provider
        is_weekly_day: Weekly-day predicate (defaults to config.weekly_full_day)
        sleep: Sleep used while waiting for snapshots
    """

    def __init__(
        self,
        config: SnaprestConfig,
        executor: RemoteExecutor,
        state: StateStore,
        backup_tool: PgBackRestClient,
        postgres: PostgresCatalog,
        storage: BlockStorage,
        is_weekly_day: Optional[WeeklyDayPredicate] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.executor = executor
        self.state = state
        self.backup_tool = backup_tool
        self.postgres = postgres
        self.storage = storage
        self.is_weekly_day = is_weekly_day or designated_weekday(config.weekly_full_day)
        self.allocator = RepositorySlotAllocator(executor)
        self.snapshots = SnapshotLifecycleManager(
            storage,
            source=config.snapshot_source_tag,
            source_ip=config.source_host,
            stanza=config.stanza,
            is_weekly_day=self.is_weekly_day,
            poll_interval=config.snapshot_poll_seconds,
            sleep=sleep,
        )
        self.runner = StepRunner(state)

    def repo_path(self, slot_number: int) -> str:
        """Repository directory on the source for a slot (<mount>/repo<N>)."""
        return f"{self.config.backup_mount_point}/repo{slot_number}"

    @property
    def retention(self) -> SlotRetention:
        c = self.config
        return SlotRetention(
            full=c.repo_retention_full,
            diff=c.repo_retention_diff,
            archive=c.repo_retention_archive,
        )

    def check_prerequisites(self) -> None:
        """
        Verify the run can start. Touches no state.

        Order: settings, AWS credentials, recovery mode of the source, repmgr
        role (when repmgr is installed), primary reachability.

        Raises:
            ConfigurationError: Missing settings, no AWS credentials, or the
                source is not a standby
            ConnectivityError: The primary cannot be reached
        """
        self.config.validate()
        cfg = self.config

        if cfg.skip_snapshot and not cfg.retention_enabled:
            logger.info("Snapshots and retention disabled; skipping AWS credentials check")
        else:
            logger.info("Checking AWS credentials...")
            try:
                self.storage.verify_credentials()
            except SnapshotError as e:
                raise ConfigurationError(f"AWS credentials not configured properly: {e}") from e

        logger.info(f"Checking that {cfg.source_host} is a replica...")
        if not self.postgres.is_replica_role(cfg.source_host):
            raise ConfigurationError(
                f"{cfg.source_host} is not a replica (pg_is_in_recovery() is false); "
                "backups must be taken from a standby",
                host=cfg.source_host,
            )

        role = self.postgres.repmgr_role(cfg.source_host, cfg.repmgr_binaries, cfg.repmgr_config_path)
        if role is not None and role != "standby":
            raise ConfigurationError(
                f"{cfg.source_host} is not a standby according to repmgr (role: {role or 'unknown'})",
                host=cfg.source_host,
            )

        logger.info(f"Checking connectivity to primary {cfg.primary_host}...")
        self.executor.ping(cfg.primary_host)
        logger.info("Prerequisites satisfied")

    def build_steps(self) -> list[Step]:
        """The static step list."""
        return [
            Step("backup_volume", "BACKUP_VOLUME_CONFIGURED", self._prepare_backup_volume, setup_only=True),
            Step(
                "repository",
                "PGBACKREST_CONFIGURED",
                self._configure_repository,
                setup_only=True,
                produces=(STANDBY_REPO_NUMBER,),
            ),
            Step("stanza", "STANZA_CREATED", self._create_stanza, setup_only=True),
            Step(
                "backup",
                "BACKUP_COMPLETED",
                self._take_backup,
                recurring=True,
                produces=(LAST_BACKUP_TYPE, LAST_BACKUP_DATE, INITIAL_BACKUP_COMPLETED, BACKUP_FROM_STANDBY),
            ),
            Step(
                "snapshot",
                "SNAPSHOT_COMPLETED",
                self._take_snapshot,
                recurring=True,
                produces=(BACKUP_VOLUME_ID, LATEST_SNAPSHOT_ID, LAST_SNAPSHOT_DATE, SNAPSHOT_AVAILABLE),
            ),
            Step(
                "retention",
                "RETENTION_COMPLETED",
                self._apply_retention,
                recurring=True,
                produces=(LAST_RETENTION_DELETED,),
            ),
            Step(
                "schedule",
                "PERIODIC_SNAPSHOTS_CONFIGURED",
                self._write_schedule,
                setup_only=True,
                produces=(SCHEDULE_FILE,),
            ),
        ]

    def run(
        self,
        mode: RunMode,
        force_step: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RunResult:
        """
        Check prerequisites, load state and execute the step list.

        Raises:
            ConfigurationError: Prerequisites or step selection failed
            ConnectivityError: The primary cannot be reached
            StepError: A step failed
        """
        if self.config.force_full:
            if force_step not in (None, "backup"):
                raise ConfigurationError(
                    f"force_full forces the backup step; cannot also force '{force_step}'"
                )
            force_step = "backup"

        self.check_prerequisites()
        self.state.load()

        logger.info(
            f"Starting {mode.value} run for stanza {self.config.stanza} "
            f"({self.config.source_host} -> {self.config.primary_host})",
            extra={"event": "run_started", "metadata": {"mode": mode.value}},
        )
        result = self.runner.run(self.build_steps(), mode, force_step=force_step, now=now)
        logger.info(
            f"Run finished: executed={result.executed} skipped={result.skipped}",
            extra={"event": "run_completed"},
        )
        return result

    # Step actions

    def _prepare_backup_volume(self, ctx: StepContext) -> dict[str, str]:
        cfg = self.config
        mount = cfg.backup_mount_point
        dirs = [f"{mount}/repo", f"{mount}/logs", f"{mount}/archive"]
        self.executor.check(cfg.source_host, Command.of("mkdir", "-p", *dirs, run_as=cfg.db_user))
        logger.info(f"Backup directories ready under {mount} on {cfg.source_host}")
        return {}

    def _configure_repository(self, ctx: StepContext) -> dict[str, str]:
        cfg = self.config
        destination = ConfigDestination(cfg.primary_host, cfg.repo_config_path, run_as=cfg.repo_config_user)

        assignment = self.allocator.allocate(destination, cfg.source_host)
        repo_path = self.repo_path(assignment.slot_number)
        if not assignment.existing:
            text = insert_slot_entry(
                self.allocator.last_config_text,
                assignment,
                stanza=cfg.stanza,
                pg_data_dir=cfg.pg_data_dir,
                repo_path=repo_path,
                log_path=cfg.log_path,
                host_user=cfg.db_user,
                retention=self.retention,
                process_max=cfg.primary_process_max,
            )
            self.executor.write_config(destination, text)

        current = self.postgres.archive_command(cfg.primary_host)
        if "pgbackrest" not in current:
            logger.info(f"archive_command on {cfg.primary_host} is {current!r}; switching to pgBackRest")
            self.postgres.set_archive_command(cfg.primary_host, cfg.stanza)

        if not self.backup_tool.check(cfg.stanza, repo=assignment.slot_number, host=cfg.primary_host):
            logger.warning(
                f"pgbackrest check for {assignment.prefix} failed on {cfg.primary_host}; "
                "it passes once the stanza exists"
            )

        self.executor.check(cfg.source_host, Command.of("mkdir", "-p", repo_path, run_as=cfg.db_user))
        params = SourceConfigParams(
            stanza=cfg.stanza,
            pg_data_dir=cfg.pg_data_dir,
            primary_host=cfg.primary_host,
            repo_path=repo_path,
            log_path=cfg.log_path,
            slot_number=assignment.slot_number,
            retention=self.retention,
            process_max=cfg.source_process_max,
        )
        self.executor.write_config(
            ConfigDestination(cfg.source_host, cfg.repo_config_path, run_as=cfg.repo_config_user),
            render_source_config(params),
        )
        return {STANDBY_REPO_NUMBER: str(assignment.slot_number)}

    def _create_stanza(self, ctx: StepContext) -> dict[str, str]:
        self.backup_tool.create_stanza(self.config.stanza)
        return {}

    def _requested_mode(self, ctx: StepContext) -> BackupMode:
        mode = BackupMode.FULL if self.config.force_full else self.config.mode
        if ctx.mode == RunMode.SETUP and mode == BackupMode.AUTO:
            return BackupMode.SETUP
        return mode

    def _take_backup(self, ctx: StepContext) -> dict[str, str]:
        cfg = self.config
        mode = self._requested_mode(ctx)
        weekly = self.is_weekly_day(ctx.run_date)

        has_full = False
        if needs_catalog(mode, cfg.skip_backup, weekly):
            has_full = self.postgres.catalog_has_full_backup(cfg.stanza)

        backup_type = select_backup_type(mode, cfg.skip_backup, weekly, has_full)
        logger.info(
            f"Backup type: {backup_type.value} (mode={mode.value}, weekly_day={weekly}, has_full={has_full})",
            extra={"step": "backup", "event": "backup_type_selected",
                   "metadata": {"type": backup_type.value, "mode": mode.value}},
        )
        if backup_type == BackupType.SKIP:
            logger.info("Skipping backup creation")
            return {}

        self.backup_tool.run_backup(cfg.stanza, backup_type)
        return {
            LAST_BACKUP_TYPE: backup_type.value,
            LAST_BACKUP_DATE: ctx.now.strftime(TIMESTAMP_FORMAT),
            INITIAL_BACKUP_COMPLETED: "true",
            BACKUP_FROM_STANDBY: "true",
        }

    def _resolve_volume(self, ctx: StepContext, mount_source: str) -> str:
        """
        Volume id of the backup device.

        Raises:
            SnapshotError: If the instance id or the volume cannot be determined
        """
        cfg = self.config
        if cfg.backup_volume_id:
            return cfg.backup_volume_id
        known = ctx.state.get(BACKUP_VOLUME_ID)
        if known:
            return known

        instance_id = cfg.instance_id or fetch_instance_id(self.executor, cfg.source_host)
        if not instance_id:
            raise SnapshotError("Could not retrieve instance ID", host=cfg.source_host)

        devices = [mount_source] + [d for d in cfg.backup_devices if d != mount_source]
        volume_id = self.storage.find_volume(instance_id, devices)
        if not volume_id:
            raise SnapshotError(
                f"Could not determine backup volume ID for {mount_source} on {instance_id}",
                host=cfg.source_host,
            )
        return volume_id

    def _take_snapshot(self, ctx: StepContext) -> dict[str, str]:
        cfg = self.config
        if cfg.skip_snapshot:
            logger.info("Snapshot creation skipped")
            return {}

        mount_source = self.executor.mount_source(cfg.source_host, cfg.backup_mount_point)
        if not mount_source or not mount_source.startswith("/dev/"):
            logger.warning(
                f"{cfg.backup_mount_point} is on the root filesystem; cannot create an EBS snapshot. "
                "Attach a dedicated volume for snapshot capability"
            )
            return {SNAPSHOT_AVAILABLE: "false"}

        volume_id = self._resolve_volume(ctx, mount_source)

        backup_type = ctx.state.get(LAST_BACKUP_TYPE) or BackupType.FULL.value
        tags = snapshot_tags(cfg.snapshot_source_tag, cfg.source_host, cfg.stanza, backup_type, ctx.now)
        snapshot_id = self.snapshots.create(volume_id, tags, wait=ctx.interactive)
        return {
            BACKUP_VOLUME_ID: volume_id,
            LATEST_SNAPSHOT_ID: snapshot_id,
            LAST_SNAPSHOT_DATE: ctx.now.strftime(TIMESTAMP_FORMAT),
            SNAPSHOT_AVAILABLE: "true",
        }

    def _apply_retention(self, ctx: StepContext) -> dict[str, str]:
        if not self.config.retention_enabled:
            logger.info("Snapshot retention disabled")
            return {}
        report = self.snapshots.apply_retention(
            self.config.retention_policy, now=ctx.now, today=ctx.run_date
        )
        return {LAST_RETENTION_DELETED: str(report.deleted_count)}

    def _write_schedule(self, ctx: StepContext) -> dict[str, str]:
        path = self.config.schedule_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        command = shlex.join(["snaprest", "run", "--scheduled", "--yes"])
        path.write_text(
            "# snaprest scheduled backup\n"
            f"SNAPREST_HOME={get_snaprest_home()}\n"
            f"{self.config.schedule_cron} {command}\n"
        )
        logger.info(f"Crontab entry written to {path}; install it with: crontab {path}")
        return {SCHEDULE_FILE: str(path)}


def build_orchestrator(config: SnaprestConfig, state_path: Optional[Path] = None) -> BackupOrchestrator:
    """Build an orchestrator with the production collaborators."""
    from botocore.exceptions import BotoCoreError

    executor = SshRemoteExecutor(
        user=config.ssh_user,
        identity_file=config.ssh_identity_file,
        connect_timeout=config.ssh_connect_timeout,
        local_hosts=config.execution_local_hosts,
        extra_options=config.ssh_options,
    )
    backup_tool = PgBackRestClient(executor, config.source_host, run_as=config.db_user)
    postgres = PostgresCatalog(executor, backup_tool, run_as=config.db_user)
    try:
        storage = Ec2BlockStorage(region=config.region)
    except BotoCoreError as e:
        raise ConfigurationError(f"Cannot create EC2 client: {e}")

    return BackupOrchestrator(
        config=config,
        executor=executor,
        state=FileStateStore(state_path or config.state_path()),
        backup_tool=backup_tool,
        postgres=postgres,
        storage=storage,
    )
