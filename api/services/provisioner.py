"""Provisioning collaborator backed by Pulumi Deployments."""

import asyncio
import logging
import time
from typing import Optional

import httpx

from api.errors import ProvisioningError
from api.models import EnvironmentDescriptor, ProvisioningResult
from api.pulumi_deployments import PulumiDeploymentsClient
from api.settings import settings

logger = logging.getLogger(__name__)

DEPLOYMENT_SUCCEEDED = "succeeded"
DEPLOYMENT_FAILED_STATES = {"failed", "skipped"}


def get_pulumi_client() -> PulumiDeploymentsClient:
    """Get Pulumi Deployments client."""
    return PulumiDeploymentsClient(
        organization=settings.pulumi_org,
        access_token=settings.pulumi_access_token,
        aws_access_key_id=settings.aws_access_key_id,
        aws_secret_access_key=settings.aws_secret_access_key,
        github_token=settings.github_token or None,
    )


class PulumiProvisioner:
    """Create or update one environment's EKS stack and wait for it to finish."""

    def __init__(
        self,
        client: PulumiDeploymentsClient,
        project_name: str = settings.pulumi_project,
        stack_prefix: str = settings.stack_prefix,
        cluster_name_prefix: str = settings.cluster_name_prefix,
        poll_interval: float = settings.deployment_poll_interval_seconds,
        timeout: float = settings.deployment_timeout_seconds,
        tags: dict[str, str] | None = None,
    ):
        self.client = client
        self.project_name = project_name
        self.stack_prefix = stack_prefix
        self.cluster_name_prefix = cluster_name_prefix
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.tags = tags or {}

    def stack_name(self, environment: EnvironmentDescriptor) -> str:
        return f"{self.stack_prefix}-{environment.name}"

    def cluster_name(self, environment: EnvironmentDescriptor) -> str:
        return f"{self.cluster_name_prefix}-{environment.name}"

    async def provision(self, environment: EnvironmentDescriptor) -> ProvisioningResult:
        """Deploy the environment's stack. Raises ProvisioningError on any failure."""
        stack_name = self.stack_name(environment)

        try:
            await self._ensure_stack(stack_name)

            await self.client.configure_deployment_settings(
                project_name=self.project_name,
                stack_name=stack_name,
                environment=environment,
                cluster_name=self.cluster_name(environment),
                repo_url=settings.git_repo_url,
                repo_branch=settings.git_repo_branch,
                repo_dir=settings.git_repo_dir,
                tags=self.tags,
            )

            result = await self.client.trigger_deployment(
                project_name=self.project_name,
                stack_name=stack_name,
                operation="update",
            )
            deployment_id = result.get("id", "")
            logger.info("Deployment %s triggered for stack %s", deployment_id, stack_name)

            await self._wait_for_deployment(environment, stack_name, deployment_id)

            outputs = await self.client.get_stack_outputs(
                project_name=self.project_name,
                stack_name=stack_name,
            )
        except httpx.HTTPError as e:
            raise ProvisioningError(environment.name, f"Pulumi API error: {e}") from e

        return ProvisioningResult(
            environment=environment.name,
            stack_name=stack_name,
            deployment_id=deployment_id or None,
            outputs=outputs,
        )

    async def destroy(self, environment: EnvironmentDescriptor) -> Optional[str]:
        """Trigger a destroy of the environment's stack. Returns the deployment id."""
        stack_name = self.stack_name(environment)
        try:
            result = await self.client.trigger_deployment(
                project_name=self.project_name,
                stack_name=stack_name,
                operation="destroy",
            )
        except httpx.HTTPError as e:
            raise ProvisioningError(environment.name, f"Destroy failed: {e}") from e

        deployment_id = result.get("id") or None
        logger.info("Destroy %s triggered for stack %s", deployment_id, stack_name)
        return deployment_id

    async def _ensure_stack(self, stack_name: str) -> None:
        try:
            await self.client.create_stack(
                project_name=self.project_name,
                stack_name=stack_name,
            )
            logger.info("Created stack %s", stack_name)
        except httpx.HTTPStatusError as e:
            if e.response.status_code != 409:
                raise
            logger.debug("Stack %s already exists", stack_name)

    async def _wait_for_deployment(
        self,
        environment: EnvironmentDescriptor,
        stack_name: str,
        deployment_id: str,
    ) -> None:
        deadline = time.monotonic() + self.timeout

        while True:
            status = await self.client.get_deployment_status(
                project_name=self.project_name,
                stack_name=stack_name,
                deployment_id=deployment_id,
            )
            state = status.get("status", "")

            if state == DEPLOYMENT_SUCCEEDED:
                logger.info("Deployment %s of %s succeeded", deployment_id, stack_name)
                return
            if state in DEPLOYMENT_FAILED_STATES:
                raise ProvisioningError(
                    environment.name,
                    status.get("message") or f"deployment {deployment_id} {state}",
                )
            if time.monotonic() >= deadline:
                raise ProvisioningError(
                    environment.name,
                    f"deployment {deployment_id} still '{state}' after {self.timeout:.0f}s",
                )

            logger.debug("Deployment %s of %s is %s", deployment_id, stack_name, state)
            await asyncio.sleep(self.poll_interval)
