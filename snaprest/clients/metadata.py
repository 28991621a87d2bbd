"""
EC2 instance metadata (IMDSv2) lookups run on the backup source.
"""

import logging
from typing import Optional

from snaprest.clients.remote import Command, RemoteExecutor

logger = logging.getLogger(__name__)

IMDS_BASE_URL = "http://169.254.169.254/latest"
TOKEN_TTL_SECONDS = 21600


def fetch_instance_id(executor: RemoteExecutor, host: str, timeout: int = 2) -> Optional[str]:
    """
    Return the instance id of host from IMDSv2, or None when unavailable.

    A session token is requested first; the metadata call is made with it.
    """
    token = executor.execute(
        host,
        Command.of(
            "curl", "-s", "-f", "-m", str(timeout), "-X", "PUT",
            f"{IMDS_BASE_URL}/api/token",
            "-H", f"X-aws-ec2-metadata-token-ttl-seconds: {TOKEN_TTL_SECONDS}",
        ),
    )
    if not token.ok or not token.stdout.strip():
        logger.warning(f"No IMDSv2 token from {host}: {token.output or 'empty response'}")
        return None

    result = executor.execute(
        host,
        Command.of(
            "curl", "-s", "-f", "-m", str(timeout),
            "-H", f"X-aws-ec2-metadata-token: {token.stdout.strip()}",
            f"{IMDS_BASE_URL}/meta-data/instance-id",
        ),
    )
    instance_id = result.stdout.strip() if result.ok else ""
    if not instance_id:
        logger.warning(f"Could not retrieve instance ID on {host}")
        return None
    logger.info(f"Instance ID: {instance_id}")
    return instance_id
