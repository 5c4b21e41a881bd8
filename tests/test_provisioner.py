"""Tests for the Pulumi Deployments provisioner."""

import json

import httpx
import pytest

from api.errors import ProvisioningError
from api.models import EnvironmentDescriptor
from api.pulumi_deployments import PulumiDeploymentsClient
from api.services.provisioner import PulumiProvisioner

STACK_PATH = "/api/stacks/acme-org/eks-bluegreen/eks-cluster-green"


class FakePulumiApi:
    """Minimal Pulumi Deployments API keyed on method and path."""

    def __init__(self, statuses, stack_exists=False, create_status=201):
        self.statuses = list(statuses)
        self.stack_exists = stack_exists
        self.create_status = create_status
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.method == "POST" and path == "/api/stacks/acme-org/eks-bluegreen":
            if self.stack_exists:
                return httpx.Response(409, json={"message": "stack already exists"})
            return httpx.Response(self.create_status, json={})
        if request.method == "POST" and path == f"{STACK_PATH}/deployments/settings":
            return httpx.Response(200, json={})
        if request.method == "POST" and path == f"{STACK_PATH}/deployments":
            return httpx.Response(202, json={"id": "dep-1", "version": 1})
        if request.method == "GET" and path == f"{STACK_PATH}/deployments/dep-1":
            status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            return httpx.Response(200, json={"status": status})
        if request.method == "GET" and path == f"{STACK_PATH}/export":
            return httpx.Response(
                200,
                json={
                    "deployment": {
                        "resources": [
                            {"type": "aws:eks/cluster:Cluster", "outputs": {}},
                            {
                                "type": "pulumi:pulumi:Stack",
                                "outputs": {"cluster_name": "acme-green"},
                            },
                        ]
                    }
                },
            )
        return httpx.Response(404, json={"message": f"unexpected {request.method} {path}"})

    def bodies(self, path: str) -> list[dict]:
        return [json.loads(r.content) for r in self.requests if r.url.path == path and r.content]


def _provisioner(api: FakePulumiApi, timeout: float = 5.0) -> PulumiProvisioner:
    client = PulumiDeploymentsClient(
        organization="acme-org",
        access_token="pul-token",
        aws_access_key_id="AKIAEXAMPLE",
        aws_secret_access_key="secret",
        transport=httpx.MockTransport(api),
    )
    return PulumiProvisioner(
        client,
        project_name="eks-bluegreen",
        stack_prefix="eks-cluster",
        cluster_name_prefix="acme",
        poll_interval=0.01,
        timeout=timeout,
        tags={"team": "platform"},
    )


@pytest.fixture
def green_account() -> EnvironmentDescriptor:
    return EnvironmentDescriptor(name="green", version="1.21", account="123456789012")


@pytest.mark.asyncio
async def test_provision_waits_for_deployment_and_returns_outputs(green_account):
    api = FakePulumiApi(["not-started", "running", "succeeded"])

    result = await _provisioner(api).provision(green_account)

    assert result.environment == "green"
    assert result.stack_name == "eks-cluster-green"
    assert result.deployment_id == "dep-1"
    assert result.outputs == {"cluster_name": "acme-green"}

    status_polls = [r for r in api.requests if r.url.path.endswith("/deployments/dep-1")]
    assert len(status_polls) == 3


@pytest.mark.asyncio
async def test_deployment_settings_carry_environment_config(green_account):
    api = FakePulumiApi(["succeeded"])

    await _provisioner(api).provision(green_account)

    (settings,) = api.bodies(f"{STACK_PATH}/deployments/settings")
    commands = settings["operationContext"]["preRunCommands"]
    stack_id = "acme-org/eks-bluegreen/eks-cluster-green"
    assert f"pulumi config set --stack {stack_id} environmentName 'green'" in commands
    assert f"pulumi config set --stack {stack_id} clusterName 'acme-green'" in commands
    assert f"pulumi config set --stack {stack_id} clusterVersion '1.21'" in commands
    assert f"pulumi config set --stack {stack_id} awsAccount '123456789012'" in commands
    assert settings["operationContext"]["environmentVariables"]["AWS_REGION"] == "us-east-1"
    assert "gitAuth" not in settings["sourceContext"]["git"]

    (trigger,) = api.bodies(f"{STACK_PATH}/deployments")
    assert trigger == {"operation": "update", "inheritSettings": True}


@pytest.mark.asyncio
async def test_existing_stack_is_reused(green_account):
    api = FakePulumiApi(["succeeded"], stack_exists=True)

    result = await _provisioner(api).provision(green_account)

    assert result.deployment_id == "dep-1"


@pytest.mark.asyncio
async def test_failed_deployment_raises_provisioning_error(green_account):
    api = FakePulumiApi(["running", "failed"])

    with pytest.raises(ProvisioningError) as exc_info:
        await _provisioner(api).provision(green_account)

    assert exc_info.value.environment == "green"
    assert "failed" in str(exc_info.value)


@pytest.mark.asyncio
async def test_deployment_timeout_raises_provisioning_error(green_account):
    api = FakePulumiApi(["running"])

    with pytest.raises(ProvisioningError, match="still 'running'"):
        await _provisioner(api, timeout=0.05).provision(green_account)


@pytest.mark.asyncio
async def test_api_errors_raise_provisioning_error(green_account):
    api = FakePulumiApi(["succeeded"], create_status=500)

    with pytest.raises(ProvisioningError, match="Pulumi API error"):
        await _provisioner(api).provision(green_account)


@pytest.mark.asyncio
async def test_destroy_triggers_destroy_operation(green_account):
    api = FakePulumiApi(["succeeded"])

    deployment_id = await _provisioner(api).destroy(green_account)

    assert deployment_id == "dep-1"
    (trigger,) = api.bodies(f"{STACK_PATH}/deployments")
    assert trigger["operation"] == "destroy"
