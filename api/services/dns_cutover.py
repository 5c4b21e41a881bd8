"""DNS cut-over: point the production record at the promoted environment."""

import asyncio
import logging
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from api.errors import CutoverError
from api.models import PromotionRequest, RolloutDefinitionResolved
from api.settings import settings

logger = logging.getLogger(__name__)


class Route53Cutover:
    """Point the application record at the promoted environment.

    app.<zone> becomes a CNAME for <host_prefix>.<env>.<zone>.
    """

    def __init__(
        self,
        definition: RolloutDefinitionResolved,
        client: Optional[Any] = None,
        ttl: int = settings.cutover_ttl_seconds,
    ):
        self.definition = definition
        self.ttl = ttl
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("route53")
        return self._client

    @property
    def record_name(self) -> str:
        return f"{self.definition.app_record_name}.{self.definition.domain_name}"

    def target_host(self, environment: str) -> str:
        prefix = self.definition.validation.host_prefix
        return f"{prefix}.{environment}.{self.definition.domain_name}"

    def _apply_sync(self, environment: str) -> str:
        try:
            response = self.client.change_resource_record_sets(
                HostedZoneId=self.definition.hosted_zone_id,
                ChangeBatch={
                    "Comment": f"Promote {environment} ({self.definition.rollout_id})",
                    "Changes": [
                        {
                            "Action": "UPSERT",
                            "ResourceRecordSet": {
                                "Name": self.record_name,
                                "Type": "CNAME",
                                "TTL": self.ttl,
                                "ResourceRecords": [{"Value": self.target_host(environment)}],
                            },
                        }
                    ],
                },
            )
        except (ClientError, BotoCoreError) as e:
            raise CutoverError(f"Failed to update {self.record_name}: {e}") from e

        return response["ChangeInfo"]["Id"]

    async def apply(self, request: PromotionRequest) -> None:
        environment = request.target.name
        change_id = await asyncio.to_thread(self._apply_sync, environment)
        logger.info(
            "DNS cut-over %s: %s -> %s",
            change_id,
            self.record_name,
            self.target_host(environment),
        )
