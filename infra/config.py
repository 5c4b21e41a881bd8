import json
from dataclasses import dataclass, field
from typing import Callable, Optional

import pulumi
import pulumi_aws as aws

from api.models import AmiType, CapacityType

DEFAULT_VPC_ID_PARAMETER = "/lz/vpc/id"
DEFAULT_SUBNET_ID_PARAMETERS = [
    "/lz/vpc/app-subnet-1a/id",
    "/lz/vpc/app-subnet-2a/id",
    "/lz/vpc/app-subnet-3a/id",
]


@dataclass
class NodeGroupSettings:
    """Managed node group of one environment's cluster."""

    name: str = "app-ng"
    instance_type: str = "t3a.medium"
    capacity_type: CapacityType = CapacityType.ON_DEMAND
    ami_type: AmiType = AmiType.AL2_X86_64
    disk_size: int = 20
    min_size: int = 3
    max_size: int = 6
    desired_size: int = 3


@dataclass
class EnvironmentStackConfig:
    """Stack configuration of one environment, as written by the provisioner."""

    environment: str
    cluster_name: str
    cluster_version: str
    aws_region: str
    aws_account: Optional[str]

    # Landing zone network, resolved from SSM
    vpc_id: str
    subnet_ids: list[str]

    node_group: NodeGroupSettings = field(default_factory=NodeGroupSettings)
    tags: dict[str, str] = field(default_factory=dict)


def _parse_list(value: Optional[str], default: Optional[list[str]] = None) -> list[str]:
    """Parse a comma-separated string into a list."""
    if value is None:
        return default or []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_json(value: Optional[str], default: dict | list | None = None) -> dict | list | None:
    """Parse a JSON string."""
    if value is None:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _load_node_group(get: Callable[[str], Optional[str]]) -> NodeGroupSettings:
    defaults = NodeGroupSettings()
    min_size = int(get("nodeMinSize") or defaults.min_size)
    max_size = int(get("nodeMaxSize") or defaults.max_size)
    desired_size = int(get("nodeDesiredSize") or min_size)

    if not min_size <= desired_size <= max_size:
        raise ValueError(
            f"Node group sizes must satisfy min <= desired <= max, "
            f"got {min_size}/{desired_size}/{max_size}"
        )

    return NodeGroupSettings(
        name=get("nodeGroupName") or defaults.name,
        instance_type=get("nodeInstanceType") or defaults.instance_type,
        capacity_type=CapacityType(get("nodeCapacityType") or defaults.capacity_type.value),
        ami_type=AmiType(get("nodeAmiType") or defaults.ami_type.value),
        disk_size=int(get("nodeDiskSize") or defaults.disk_size),
        min_size=min_size,
        max_size=max_size,
        desired_size=desired_size,
    )


def build_environment_config(
    get: Callable[[str], Optional[str]],
    lookup_parameter: Callable[[str], str],
) -> EnvironmentStackConfig:
    """Build the stack configuration from config values and SSM lookups.

    ``get`` returns a stack config value or None; ``lookup_parameter`` reads
    an SSM parameter. Both are passed in so the program and tests share this.
    """
    environment = get("environmentName")
    if not environment:
        raise ValueError("Missing required configuration value 'environmentName'")

    cluster_version = get("clusterVersion")
    if not cluster_version:
        raise ValueError("Missing required configuration value 'clusterVersion'")

    cluster_name = get("clusterName") or f"acme-{environment}"
    aws_region = get("awsRegion") or "us-east-1"

    vpc_id = lookup_parameter(get("vpcIdParameter") or DEFAULT_VPC_ID_PARAMETER)
    subnet_parameters = _parse_list(get("subnetIdParameters"), DEFAULT_SUBNET_ID_PARAMETERS)
    subnet_ids = [lookup_parameter(name) for name in subnet_parameters]

    tags: dict[str, str] = {
        "Environment": environment,
        "ManagedBy": "pulumi",
    }
    custom_tags = _parse_json(get("tags"), {})
    if custom_tags and isinstance(custom_tags, dict):
        tags.update(custom_tags)

    return EnvironmentStackConfig(
        environment=environment,
        cluster_name=cluster_name,
        cluster_version=cluster_version,
        aws_region=aws_region,
        aws_account=get("awsAccount"),
        vpc_id=vpc_id,
        subnet_ids=subnet_ids,
        node_group=_load_node_group(get),
        tags=tags,
    )


def load_environment_config() -> EnvironmentStackConfig:
    """Load the environment's configuration from Pulumi config and SSM."""
    config = pulumi.Config()

    def lookup_parameter(name: str) -> str:
        return aws.ssm.get_parameter(name=name).value

    return build_environment_config(config.get, lookup_parameter)
