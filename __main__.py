import pulumi
import pulumi_aws as aws

from infra.components.eks import EksCluster
from infra.components.iam import EksIamRoles
from infra.config import load_environment_config
from infra.providers import create_aws_provider

config = load_environment_config()

aws_provider = create_aws_provider(config)

vpc = aws.ec2.get_vpc_output(
    id=config.vpc_id,
    opts=pulumi.InvokeOptions(provider=aws_provider),
)


iam = EksIamRoles(
    name=config.cluster_name,
    provider=aws_provider,
)


eks = EksCluster(
    name=config.cluster_name,
    environment=config.environment,
    cluster_name=config.cluster_name,
    version=config.cluster_version,
    vpc_id=config.vpc_id,
    vpc_cidr=vpc.cidr_block,
    subnet_ids=config.subnet_ids,
    cluster_role_arn=iam.cluster_role_arn,
    node_role_arn=iam.node_role_arn,
    node_group=config.node_group,
    provider=aws_provider,
    tags=config.tags,
    opts=pulumi.ResourceOptions(depends_on=[iam]),
)


pulumi.export("environment", config.environment)
pulumi.export("cluster_name", eks.cluster_name)
pulumi.export("cluster_endpoint", eks.cluster_endpoint)
pulumi.export("cluster_arn", eks.cluster_arn)
pulumi.export("oidc_provider_arn", eks.oidc_provider_arn)
pulumi.export("aws_node_role_arn", eks.aws_node_role.arn)
pulumi.export("node_role_arn", iam.node_role_arn)
