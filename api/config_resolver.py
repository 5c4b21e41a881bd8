"""Resolve rollout definitions into their stored, fully specified form.

External configuration (hosted zone name and id) is looked up eagerly here,
so nothing downstream ever sees a placeholder value.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from api.errors import RolloutConfigError
from api.models import RolloutDefinitionInput, RolloutDefinitionResolved
from api.settings import settings

logger = logging.getLogger(__name__)


def get_ssm_parameter(ssm_client: Any, name: str) -> str:
    """Read a string parameter from SSM Parameter Store."""
    try:
        response = ssm_client.get_parameter(Name=name)
    except ClientError as e:
        code = e.response.get("Error", {}).get("Code", "")
        if code == "ParameterNotFound":
            raise RolloutConfigError(f"SSM parameter {name} does not exist") from e
        raise RolloutConfigError(f"Failed to read SSM parameter {name}: {e}") from e
    except BotoCoreError as e:
        raise RolloutConfigError(f"Failed to read SSM parameter {name}: {e}") from e

    value = response["Parameter"]["Value"].strip()
    if not value:
        raise RolloutConfigError(f"SSM parameter {name} is empty")
    return value


def resolve_rollout_definition(
    config: RolloutDefinitionInput,
    ssm_client: Optional[Any] = None,
    created_at: Optional[datetime] = None,
) -> RolloutDefinitionResolved:
    """Resolve a rollout definition, filling DNS settings from SSM when missing."""
    domain_name = config.domain_name
    hosted_zone_id = config.hosted_zone_id

    if domain_name is None or hosted_zone_id is None:
        if ssm_client is None:
            ssm_client = boto3.client("ssm", region_name=settings.aws_region)
        if domain_name is None:
            domain_name = get_ssm_parameter(ssm_client, settings.zone_name_parameter)
            logger.info("Resolved zone name for %s from SSM: %s", config.rollout_id, domain_name)
        if hosted_zone_id is None:
            hosted_zone_id = get_ssm_parameter(ssm_client, settings.hosted_zone_id_parameter)

    domain_name = domain_name.rstrip(".").lower()

    endpoints = {
        env.name: config.validation.endpoint_for(env.name, domain_name)
        for env in config.environments
    }

    now = datetime.now(timezone.utc)
    return RolloutDefinitionResolved(
        rollout_id=config.rollout_id,
        domain_name=domain_name,
        hosted_zone_id=hosted_zone_id,
        environments=list(config.environments),
        promotion_target=config.promotion_target,
        wave_policy=config.wave_policy,
        max_concurrency=config.max_concurrency,
        validation=config.validation,
        app_record_name=config.app_record_name,
        endpoints=endpoints,
        tags=config.tags,
        created_at=created_at or now,
        updated_at=now,
    )
