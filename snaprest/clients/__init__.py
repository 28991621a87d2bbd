"""
snaprest.clients - Adapters for the systems the orchestrator talks to.

- remote: command execution on hosts (ssh)
- pgbackrest: backup tool CLI
- postgres: role and catalog queries
- block_storage: EBS snapshots (boto3)
- metadata: EC2 instance metadata
"""

from .block_storage import BlockStorage, Ec2BlockStorage
from .metadata import fetch_instance_id
from .pgbackrest import PgBackRestClient, SourceConfigParams, render_source_config
from .postgres import PostgresCatalog
from .remote import (
    Command,
    CommandResult,
    ConfigDestination,
    RemoteExecutor,
    SshRemoteExecutor,
)

__all__ = [
    "BlockStorage",
    "Ec2BlockStorage",
    "fetch_instance_id",
    "PgBackRestClient",
    "SourceConfigParams",
    "render_source_config",
    "PostgresCatalog",
    "Command",
    "CommandResult",
    "ConfigDestination",
    "RemoteExecutor",
    "SshRemoteExecutor",
]
