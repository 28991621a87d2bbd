"""
snaprest - Resumable pgBackRest backup and snapshot orchestrator

Takes backups from a PostgreSQL standby into a repository slot on the
primary's shared configuration, snapshots the backup volume, and prunes old
snapshots. Progress is recorded per step so a failed run resumes where it
stopped.
"""

__version__ = "0.1.0"


__all__ = ["SnaprestConfig", "load_config", "get_snaprest_home"]

from .config import SnaprestConfig, load_config, get_snaprest_home
