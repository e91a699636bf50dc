"""
providers/aws.py -- AWS inventory via boto3 (EC2, S3, RDS).

boto3 is synchronous, so the whole listing runs in one worker thread per
request. A botocore failure on any service fails the branch as a whole: a
partially listed account would report a misleading cost.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from core.errors import ProviderFetchError
from core.models import Database, Instance, ProviderInventory, StorageVolume
from credentials.models import Credentials
from credentials.resolver import CredentialResolver
from providers.base import CostModel, ProviderClient, summarize

logger = logging.getLogger("cloudboard.providers.aws")

AWS_COSTS = CostModel(instance=150, storage=50, database=200, instance_label="EC2 Instance", database_label="RDS Database")

SessionFactory = Callable[[dict[str, Any]], Any]


def _default_session(values: dict[str, Any]) -> boto3.session.Session:
    return boto3.session.Session(
        aws_access_key_id=values["access_key_id"],
        aws_secret_access_key=values["secret_access_key"],
        aws_session_token=values.get("session_token"),
        region_name=values.get("region") or "us-east-1",
    )


def memory_for_instance_type(instance_type: str | None) -> float:
    """Rough GiB for an EC2 size suffix. xlarge is checked before large."""
    if not instance_type:
        return 4
    size = instance_type.rsplit(".", 1)[-1]
    for suffix, memory in (("nano", 0.5), ("micro", 1), ("small", 2), ("medium", 4), ("xlarge", 16), ("large", 8)):
        if size.endswith(suffix):
            return memory
    return 4


class AwsClient(ProviderClient):
    name = "aws"
    cost_model = AWS_COSTS

    def __init__(self, resolver: CredentialResolver, session_factory: SessionFactory | None = None) -> None:
        super().__init__(resolver)
        self.session_factory = session_factory or _default_session

    async def collect(self, credentials: Credentials) -> ProviderInventory:
        try:
            return await asyncio.to_thread(self._collect_sync, credentials.values)
        except (ClientError, BotoCoreError) as exc:
            logger.warning("AWS inventory query failed: %s", exc)
            raise ProviderFetchError("aws", f"AWS query failed: {exc.__class__.__name__}") from exc

    def _collect_sync(self, values: dict[str, Any]) -> ProviderInventory:
        session = self.session_factory(values)
        region = values.get("region") or "us-east-1"

        instances: list[Instance] = []
        ec2 = session.client("ec2", region_name=region)
        for page in ec2.get_paginator("describe_instances").paginate():
            for reservation in page.get("Reservations", []):
                for raw in reservation.get("Instances", []):
                    tags = {t["Key"]: t["Value"] for t in raw.get("Tags", [])}
                    instances.append(
                        Instance(
                            name=tags.get("Name") or raw["InstanceId"],
                            type=raw.get("InstanceType", "unknown"),
                            status=raw.get("State", {}).get("Name", "unknown"),
                            region=region,
                            provider="AWS",
                            cpu=raw.get("CpuOptions", {}).get("CoreCount", 2),
                            memory=memory_for_instance_type(raw.get("InstanceType")),
                        )
                    )

        s3 = session.client("s3", region_name=region)
        storage = [
            StorageVolume(name=b["Name"], type="S3", region=region, provider="AWS")
            for b in s3.list_buckets().get("Buckets", [])
        ]

        databases: list[Database] = []
        rds = session.client("rds", region_name=region)
        for page in rds.get_paginator("describe_db_instances").paginate():
            for raw in page.get("DBInstances", []):
                databases.append(
                    Database(
                        name=raw["DBInstanceIdentifier"],
                        engine=raw.get("Engine", "unknown"),
                        version=raw.get("EngineVersion", ""),
                        size=raw.get("DBInstanceClass", ""),
                        provider="AWS",
                    )
                )

        logger.debug(
            "AWS %s: %d instances, %d buckets, %d databases", region, len(instances), len(storage), len(databases)
        )
        return summarize("aws", "AWS", AWS_COSTS, instances, storage, databases, database_region=region)
