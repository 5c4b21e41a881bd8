"""Semantic validation of rollout definitions beyond what the models enforce."""

import re
from collections import Counter

from api.models import (
    RolloutDefinitionInput,
    ValidationErrorDetail,
    ValidationErrorResponse,
    WavePolicy,
)

KUBERNETES_VERSION_PATTERN = re.compile(r"^\d+\.\d+$")
ACCOUNT_ID_PATTERN = re.compile(r"^\d{12}$")
DOMAIN_NAME_PATTERN = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)(\.(?!-)[a-z0-9-]{1,63}(?<!-))+\.?$")


class ConfigValidationError(Exception):
    """Exception raised when rollout definition validation fails."""

    def __init__(self, errors: list[ValidationErrorDetail]):
        self.errors = errors
        messages = [f"{e.field}: {e.message}" for e in errors]
        super().__init__(f"Rollout definition validation failed: {'; '.join(messages)}")

    def to_response(self) -> ValidationErrorResponse:
        """Convert to API response format."""
        return ValidationErrorResponse(
            error="validation_error",
            message=f"Rollout definition validation failed with {len(self.errors)} error(s)",
            details=self.errors,
        )


def validate_environments(config: RolloutDefinitionInput) -> list[ValidationErrorDetail]:
    """Check the wave: non-empty, unique names, well-formed versions and accounts."""
    errors: list[ValidationErrorDetail] = []

    if not config.environments:
        errors.append(
            ValidationErrorDetail(
                field="environments",
                message="At least one environment is required",
            )
        )
        return errors

    counts = Counter(env.name for env in config.environments)
    for name, count in counts.items():
        if count > 1:
            errors.append(
                ValidationErrorDetail(
                    field="environments",
                    message=f"Environment name '{name}' appears {count} times; names must be unique",
                    value=name,
                )
            )

    for i, env in enumerate(config.environments):
        if not KUBERNETES_VERSION_PATTERN.match(env.version):
            errors.append(
                ValidationErrorDetail(
                    field=f"environments[{i}].version",
                    message="Kubernetes version must look like <major>.<minor>",
                    value=env.version,
                )
            )
        if env.account is not None and not ACCOUNT_ID_PATTERN.match(env.account):
            errors.append(
                ValidationErrorDetail(
                    field=f"environments[{i}].account",
                    message="AWS account ID must be 12 digits",
                    value=env.account,
                )
            )

    return errors


def validate_promotion(config: RolloutDefinitionInput) -> list[ValidationErrorDetail]:
    """The promotion target must be one of the wave's environments."""
    names = {env.name for env in config.environments}
    if config.promotion_target not in names:
        return [
            ValidationErrorDetail(
                field="promotion_target",
                message=f"Promotion target must be one of: {', '.join(sorted(names)) or '(none)'}",
                value=config.promotion_target,
            )
        ]
    return []


def validate_dns(config: RolloutDefinitionInput) -> list[ValidationErrorDetail]:
    errors: list[ValidationErrorDetail] = []
    if config.domain_name is not None and not DOMAIN_NAME_PATTERN.match(config.domain_name.lower()):
        errors.append(
            ValidationErrorDetail(
                field="domain_name",
                message="Invalid DNS domain name",
                value=config.domain_name,
            )
        )
    if config.hosted_zone_id is not None and not config.hosted_zone_id.strip():
        errors.append(
            ValidationErrorDetail(
                field="hosted_zone_id",
                message="Hosted zone ID must not be blank",
            )
        )
    return errors


def validate_rollout_definition(config: RolloutDefinitionInput) -> None:
    """Validate a rollout definition before it is resolved or stored.

    Raises ConfigValidationError if validation fails.
    """
    errors: list[ValidationErrorDetail] = []

    errors.extend(validate_environments(config))
    errors.extend(validate_promotion(config))
    errors.extend(validate_dns(config))

    if config.max_concurrency is not None and config.wave_policy == WavePolicy.SEQUENTIAL:
        errors.append(
            ValidationErrorDetail(
                field="max_concurrency",
                message="max_concurrency only applies to the parallel wave policy",
                value=str(config.max_concurrency),
            )
        )

    if errors:
        raise ConfigValidationError(errors)
