import pulumi
import pulumi_aws as aws

from infra.config import EnvironmentStackConfig


def create_aws_provider(config: EnvironmentStackConfig) -> aws.Provider:
    """Create the AWS provider for one environment, tagging everything it creates."""

    default_tags = {
        "ManagedBy": "Pulumi",
        "Environment": config.environment,
        "Stack": pulumi.get_stack(),
    }

    all_tags = {**default_tags, **config.tags}

    provider_args: dict = {
        "region": config.aws_region,
        "default_tags": aws.ProviderDefaultTagsArgs(tags=all_tags),
    }
    if config.aws_account:
        provider_args["allowed_account_ids"] = [config.aws_account]

    return aws.Provider(f"{config.environment}-aws", **provider_args)
