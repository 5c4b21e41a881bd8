"""Pydantic models for rollout definitions, runs, validation results and promotions."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


class RolloutStatus(str, Enum):
    """Status of a rollout run."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    AWAITING_APPROVAL = "awaiting_approval"
    PROMOTED = "promoted"
    REJECTED = "rejected"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_ROLLOUT_STATES = {RolloutStatus.PENDING, RolloutStatus.IN_PROGRESS}


class ValidationStatus(str, Enum):
    """Outcome of one environment's provision + validate sequence."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PROVISIONING_FAILED = "provisioning_failed"
    CANCELLED = "cancelled"


class PromotionState(str, Enum):
    """Promotion request lifecycle: pending -> approved -> applied, or pending -> rejected."""

    PENDING = "pending"
    APPROVED = "approved"
    APPLIED = "applied"
    REJECTED = "rejected"


class WavePolicy(str, Enum):
    """How the environments of a wave are scheduled."""

    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class CapacityType(str, Enum):
    """EC2 capacity type for node groups."""

    ON_DEMAND = "ON_DEMAND"
    SPOT = "SPOT"


class AmiType(str, Enum):
    """AMI type for EKS nodes."""

    AL2_X86_64 = "AL2_x86_64"
    AL2_ARM_64 = "AL2_ARM_64"
    AL2023_X86_64_STANDARD = "AL2023_x86_64_STANDARD"
    AL2023_ARM_64_STANDARD = "AL2023_ARM_64_STANDARD"
    BOTTLEROCKET_X86_64 = "BOTTLEROCKET_x86_64"


class EnvironmentDescriptor(BaseModel):
    """One target environment of a rollout. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(
        ...,
        description="Environment name suffix, unique within a rollout (e.g. blue, green)",
        pattern=r"^[a-z0-9][a-z0-9-]*$",
        max_length=32,
    )
    version: str = Field(..., description="Kubernetes version of the cluster, e.g. 1.21")
    region: str = Field(default="us-east-1", description="AWS region")
    account: Optional[str] = Field(default=None, description="AWS account ID (12 digits)")


class ValidationSettings(BaseModel):
    """Health validation parameters. Defaults probe 12 times, 10 seconds apart."""

    max_attempts: int = Field(default=12, ge=1, le=1000)
    interval_seconds: float = Field(default=10.0, gt=0)
    request_timeout_seconds: float = Field(default=5.0, gt=0)
    host_prefix: str = Field(default="echoserver", pattern=r"^[a-z0-9][a-z0-9-]*$")
    scheme: str = Field(default="http", pattern=r"^https?$")
    path: str = Field(default="/")

    def endpoint_for(self, environment: str, domain_name: str) -> str:
        """Build the probe URL for an environment: <scheme>://<prefix>.<env>.<domain><path>."""
        path = self.path if self.path.startswith("/") else f"/{self.path}"
        return f"{self.scheme}://{self.host_prefix}.{environment}.{domain_name}{path}"


class ValidationResult(BaseModel):
    """Result of validating one environment."""

    status: ValidationStatus
    attempts: int = 0
    last_error: Optional[str] = None
    endpoint_url: Optional[str] = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success(self) -> bool:
        return self.status == ValidationStatus.SUCCEEDED

    @classmethod
    def succeeded(cls, attempts: int, endpoint_url: Optional[str] = None) -> "ValidationResult":
        return cls(status=ValidationStatus.SUCCEEDED, attempts=attempts, endpoint_url=endpoint_url)

    @classmethod
    def failed(
        cls, attempts: int, last_error: Optional[str], endpoint_url: Optional[str] = None
    ) -> "ValidationResult":
        return cls(
            status=ValidationStatus.FAILED,
            attempts=attempts,
            last_error=last_error,
            endpoint_url=endpoint_url,
        )

    @classmethod
    def provisioning_failed(cls, error: str) -> "ValidationResult":
        return cls(status=ValidationStatus.PROVISIONING_FAILED, attempts=0, last_error=error)

    @classmethod
    def cancelled(cls, attempts: int = 0, last_error: Optional[str] = None) -> "ValidationResult":
        return cls(status=ValidationStatus.CANCELLED, attempts=attempts, last_error=last_error)


class WaveReport(BaseModel):
    """Aggregated results of one wave, keyed by environment name in wave order."""

    results: dict[str, ValidationResult]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def succeeded(self) -> bool:
        return bool(self.results) and all(r.success for r in self.results.values())

    @computed_field  # type: ignore[prop-decorator]
    @property
    def cancelled(self) -> bool:
        return any(r.status == ValidationStatus.CANCELLED for r in self.results.values())

    @property
    def failed_environments(self) -> list[str]:
        return [name for name, r in self.results.items() if not r.success]


class ProvisioningResult(BaseModel):
    """What the provisioning collaborator returns once an environment is reachable."""

    environment: str
    stack_name: str
    deployment_id: Optional[str] = None
    outputs: dict[str, Any] = Field(default_factory=dict)


class PromotionRequest(BaseModel):
    """Request to promote one environment to production traffic."""

    id: str
    target: EnvironmentDescriptor
    state: PromotionState
    run_id: Optional[str] = None
    cutover_applied: bool = False
    last_error: Optional[str] = None
    created_at: datetime
    decided_at: Optional[datetime] = None
    applied_at: Optional[datetime] = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def approved(self) -> bool:
        return self.state in (PromotionState.APPROVED, PromotionState.APPLIED)


# =============================================================================
# ROLLOUT DEFINITIONS
# =============================================================================


class RolloutDefinitionInput(BaseModel):
    """Rollout definition as submitted by an operator.

    domain_name and hosted_zone_id may be omitted; they are then looked up
    in SSM when the definition is resolved.
    """

    rollout_id: str = Field(
        ...,
        description="Unique identifier of the rollout definition",
        pattern=r"^[a-z0-9][a-z0-9-]*$",
        min_length=3,
        max_length=50,
    )
    domain_name: Optional[str] = Field(default=None, description="Hosted zone name")
    hosted_zone_id: Optional[str] = Field(default=None, description="Route 53 hosted zone ID")
    environments: list[EnvironmentDescriptor] = Field(
        ...,
        description="Environments of the wave, in order",
    )
    promotion_target: str = Field(..., description="Environment promoted after a healthy wave")
    wave_policy: WavePolicy = Field(default=WavePolicy.PARALLEL)
    max_concurrency: Optional[int] = Field(default=None, ge=1)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    app_record_name: str = Field(
        default="app",
        description="Record (relative to the zone) moved to the promoted environment",
        pattern=r"^[a-z0-9][a-z0-9-]*$",
    )
    tags: dict[str, str] = Field(default_factory=dict)


class RolloutDefinitionResolved(BaseModel):
    """Fully resolved rollout definition. This is what gets stored."""

    rollout_id: str
    domain_name: str
    hosted_zone_id: str
    environments: list[EnvironmentDescriptor]
    promotion_target: str
    wave_policy: WavePolicy
    max_concurrency: Optional[int] = None
    validation: ValidationSettings
    app_record_name: str
    endpoints: dict[str, str]
    tags: dict[str, str]

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def environment(self, name: str) -> EnvironmentDescriptor:
        for descriptor in self.environments:
            if descriptor.name == name:
                return descriptor
        raise KeyError(name)


class RolloutDefinitionListResponse(BaseModel):
    """Response model for listing rollout definitions."""

    definitions: list[RolloutDefinitionResolved]
    total: int
    skipped: list[str] = Field(
        default_factory=list,
        description="Stored files that could not be read",
    )


# =============================================================================
# RUNS AND API RESPONSES
# =============================================================================


class RolloutRun(BaseModel):
    """One execution of a rollout definition."""

    run_id: str
    rollout_id: str
    status: RolloutStatus
    error_message: Optional[str] = None
    results: dict[str, ValidationResult] = Field(default_factory=dict)
    promotion_request_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class DecommissionResponse(BaseModel):
    """Destroy triggered for one environment of a run."""

    run_id: str
    environment: str
    deployment_id: Optional[str] = None


class RejectRequest(BaseModel):
    """Request body for rejecting a promotion."""

    reason: Optional[str] = Field(default=None, max_length=500)


class ValidationErrorDetail(BaseModel):
    """Single validation error detail."""

    field: str
    message: str
    value: Optional[str] = None


class ValidationErrorResponse(BaseModel):
    """Structured validation error response."""

    error: str = "validation_error"
    message: str
    details: list[ValidationErrorDetail]
