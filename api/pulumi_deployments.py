"""Client for the Pulumi Deployments REST API."""

import json
from typing import Any, Optional

import httpx

from api.models import EnvironmentDescriptor

PULUMI_API_BASE = "https://api.pulumi.com"


class PulumiDeploymentsClient:
    """Client for interacting with Pulumi Deployments API."""

    def __init__(
        self,
        organization: str,
        access_token: str,
        aws_access_key_id: str,
        aws_secret_access_key: str,
        github_token: str | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.organization = organization
        self.access_token = access_token
        self.aws_access_key_id = aws_access_key_id
        self.aws_secret_access_key = aws_secret_access_key
        self.github_token = github_token
        self._transport = transport

        self.headers = {
            "Authorization": f"token {self.access_token}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport)

    def _stack_url(self, project_name: str, stack_name: str) -> str:
        return f"{PULUMI_API_BASE}/api/stacks/{self.organization}/{project_name}/{stack_name}"

    async def create_stack(
        self,
        project_name: str,
        stack_name: str,
    ) -> dict[str, Any]:
        """Create a new Pulumi stack."""
        url = f"{PULUMI_API_BASE}/api/stacks/{self.organization}/{project_name}"

        async with self._client() as client:
            response = await client.post(
                url,
                headers=self.headers,
                json={"stackName": stack_name},
                timeout=30.0,
            )
            response.raise_for_status()
            return response.json()

    async def configure_deployment_settings(
        self,
        project_name: str,
        stack_name: str,
        environment: EnvironmentDescriptor,
        cluster_name: str,
        repo_url: str,
        repo_branch: str = "main",
        repo_dir: str = ".",
        tags: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Configure deployment settings for a stack."""
        url = f"{self._stack_url(project_name, stack_name)}/deployments/settings"

        stack_id = f"{self.organization}/{project_name}/{stack_name}"

        pre_run_commands = self._build_pre_run_commands(
            stack_id, environment, cluster_name, tags or {}
        )

        source_context: dict[str, Any] = {
            "git": {
                "repoUrl": repo_url,
                "branch": f"refs/heads/{repo_branch}",
                "repoDir": repo_dir,
            }
        }

        if self.github_token:
            source_context["git"]["gitAuth"] = {"accessToken": {"secret": self.github_token}}

        deployment_settings = {
            "sourceContext": source_context,
            "operationContext": {
                "preRunCommands": pre_run_commands,
                "environmentVariables": {
                    "AWS_ACCESS_KEY_ID": self.aws_access_key_id,
                    "AWS_SECRET_ACCESS_KEY": {"secret": self.aws_secret_access_key},
                    "AWS_REGION": environment.region,
                },
            },
        }

        async with self._client() as client:
            response = await client.post(
                url,
                headers=self.headers,
                json=deployment_settings,
                timeout=30.0,
            )
            response.raise_for_status()
            return response.json()

    def _build_pre_run_commands(
        self,
        stack_id: str,
        environment: EnvironmentDescriptor,
        cluster_name: str,
        tags: dict[str, str],
    ) -> list[str]:
        """Build pre-run commands that set the stack config read by the infra program."""
        commands = [
            "pip install .",
        ]

        def config_set(key: str, value: str, secret: bool = False) -> str:
            secret_flag = "--secret " if secret else ""

            escaped_value = value.replace("'", "'\\''")
            return f"pulumi config set --stack {stack_id} {secret_flag}{key} '{escaped_value}'"

        commands.append(config_set("environmentName", environment.name))
        commands.append(config_set("clusterName", cluster_name))
        commands.append(config_set("clusterVersion", environment.version))
        commands.append(config_set("awsRegion", environment.region))

        if environment.account:
            commands.append(config_set("awsAccount", environment.account))

        if tags:
            commands.append(config_set("tags", json.dumps(tags)))

        return commands

    async def trigger_deployment(
        self,
        project_name: str,
        stack_name: str,
        operation: str = "update",
        inherit_settings: bool = True,
    ) -> dict[str, Any]:
        """Trigger a Pulumi deployment."""
        url = f"{self._stack_url(project_name, stack_name)}/deployments"

        payload = {
            "operation": operation,
            "inheritSettings": inherit_settings,
        }

        async with self._client() as client:
            response = await client.post(
                url,
                headers=self.headers,
                json=payload,
                timeout=30.0,
            )
            response.raise_for_status()
            return response.json()

    async def get_deployment_status(
        self,
        project_name: str,
        stack_name: str,
        deployment_id: str,
    ) -> dict[str, Any]:
        """Get the status of a deployment."""
        url = f"{self._stack_url(project_name, stack_name)}/deployments/{deployment_id}"

        async with self._client() as client:
            response = await client.get(
                url,
                headers=self.headers,
                timeout=30.0,
            )
            response.raise_for_status()
            return response.json()

    async def get_stack_outputs(
        self,
        project_name: str,
        stack_name: str,
    ) -> dict[str, Any]:
        """Get stack outputs."""
        url = f"{self._stack_url(project_name, stack_name)}/export"

        async with self._client() as client:
            response = await client.get(
                url,
                headers=self.headers,
                timeout=30.0,
            )
            response.raise_for_status()
            data = response.json()

            deployment = data.get("deployment", {})
            resources = deployment.get("resources", [])

            for resource in resources:
                if resource.get("type") == "pulumi:pulumi:Stack":
                    return resource.get("outputs", {})

            return {}
