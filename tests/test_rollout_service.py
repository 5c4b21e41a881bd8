"""Tests for rollout runs: wave, promotion request, operator decisions."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from api.errors import (
    CutoverError,
    InvalidStateTransition,
    ProvisioningError,
    RolloutConflictError,
    RolloutNotFoundError,
)
from api.models import (
    EnvironmentDescriptor,
    PromotionState,
    ProvisioningResult,
    RolloutStatus,
    ValidationSettings,
    ValidationStatus,
)
from api.services.health_validator import HealthValidator
from api.services.rollout import ABANDONED_REASON, RolloutService


class FakeProvisioner:
    def __init__(self, fail: tuple[str, ...] = ()):
        self.fail = set(fail)
        self.provisioned: list[str] = []
        self.destroyed: list[str] = []

    async def provision(self, env: EnvironmentDescriptor) -> ProvisioningResult:
        self.provisioned.append(env.name)
        if env.name in self.fail:
            raise ProvisioningError(env.name, "stack update failed")
        return ProvisioningResult(environment=env.name, stack_name=f"eks-cluster-{env.name}")

    async def destroy(self, env: EnvironmentDescriptor) -> str:
        self.destroyed.append(env.name)
        return f"destroy-{env.name}"


class Endpoints:
    """HTTP handler answering per environment host."""

    def __init__(self, status_by_env: dict[str, int]):
        self.status_by_env = status_by_env
        self.probed: dict[str, asyncio.Event] = {}

    def event(self, env: str) -> asyncio.Event:
        return self.probed.setdefault(env, asyncio.Event())

    def __call__(self, request: httpx.Request) -> httpx.Response:
        env = request.url.host.split(".")[1]
        self.event(env).set()
        return httpx.Response(self.status_by_env.get(env, 404))


@pytest.fixture
def provisioner() -> FakeProvisioner:
    return FakeProvisioner()


@pytest.fixture
def endpoints() -> Endpoints:
    return Endpoints({"blue": 200, "green": 200})


@pytest.fixture
def cutover() -> MagicMock:
    cutover = MagicMock()
    cutover.apply = AsyncMock(return_value=None)
    return cutover


@pytest.fixture
def service(database, storage, definition, provisioner, endpoints, cutover) -> RolloutService:
    storage.save(definition)
    return RolloutService(
        database,
        storage,
        provisioner_factory=lambda d: provisioner,
        validator_factory=lambda v: HealthValidator(
            v.request_timeout_seconds, transport=httpx.MockTransport(endpoints)
        ),
        cutover_factory=lambda d: cutover,
    )


async def _run_to_completion(service: RolloutService, rollout_id: str = "blue-green"):
    run = await service.start(rollout_id)
    await service.wait(run.run_id)
    return service.get_run(run.run_id)


@pytest.mark.asyncio
async def test_healthy_wave_waits_for_approval(service, provisioner):
    run = await _run_to_completion(service)

    assert run.status == RolloutStatus.AWAITING_APPROVAL
    assert provisioner.provisioned == ["blue", "green"]
    assert set(run.results) == {"blue", "green"}
    assert all(r.success for r in run.results.values())

    promotion = service.get_promotion(run.promotion_request_id)
    assert promotion.state == PromotionState.PENDING
    assert promotion.target.name == "green"
    assert promotion.run_id == run.run_id


@pytest.mark.asyncio
async def test_approval_cuts_over_and_promotes(service, cutover):
    run = await _run_to_completion(service)

    promotion = await service.approve(run.promotion_request_id)

    assert promotion.state == PromotionState.APPLIED
    assert service.get_run(run.run_id).status == RolloutStatus.PROMOTED
    cutover.apply.assert_awaited_once()
    assert cutover.apply.await_args.args[0].target.name == "green"


@pytest.mark.asyncio
async def test_rejection_leaves_traffic_alone(service, cutover):
    run = await _run_to_completion(service)

    await service.reject(run.promotion_request_id, reason="not today")

    rejected = service.get_run(run.run_id)
    assert rejected.status == RolloutStatus.REJECTED
    assert rejected.error_message == "not today"

    with pytest.raises(InvalidStateTransition):
        await service.approve(run.promotion_request_id)
    cutover.apply.assert_not_awaited()


@pytest.mark.asyncio
async def test_unhealthy_environment_fails_the_run(service, endpoints):
    endpoints.status_by_env["green"] = 503

    run = await _run_to_completion(service)

    assert run.status == RolloutStatus.FAILED
    assert run.promotion_request_id is None
    assert run.results["blue"].success
    assert run.results["green"].status == ValidationStatus.FAILED
    assert run.results["green"].attempts == 3
    assert "green (failed: HTTP 503)" in run.error_message


@pytest.mark.asyncio
async def test_provisioning_failure_fails_the_run(service, provisioner):
    provisioner.fail.add("blue")

    run = await _run_to_completion(service)

    assert run.status == RolloutStatus.FAILED
    assert run.results["blue"].status == ValidationStatus.PROVISIONING_FAILED
    assert run.results["green"].success


@pytest.mark.asyncio
async def test_only_one_active_run_per_rollout(service):
    first = await service.start("blue-green")

    with pytest.raises(RolloutConflictError):
        await service.start("blue-green")

    await service.wait(first.run_id)

    # Still blocked while the promotion is pending
    with pytest.raises(RolloutConflictError):
        await service.start("blue-green")


@pytest.mark.asyncio
async def test_new_run_allowed_after_decision(service):
    run = await _run_to_completion(service)
    await service.reject(run.promotion_request_id)

    second = await _run_to_completion(service)

    assert second.run_id != run.run_id
    assert [r.run_id for r in service.list_runs("blue-green")] == [second.run_id, run.run_id]


@pytest.mark.asyncio
async def test_unknown_rollout_and_run(service):
    with pytest.raises(RolloutNotFoundError):
        await service.start("missing")

    with pytest.raises(RolloutNotFoundError):
        service.get_run("missing")


@pytest.mark.asyncio
async def test_cancel_before_wave_starts(service, provisioner):
    run = await service.start("blue-green")

    await service.cancel(run.run_id)
    await service.wait(run.run_id)

    cancelled = service.get_run(run.run_id)
    assert cancelled.status == RolloutStatus.CANCELLED
    assert all(r.status == ValidationStatus.CANCELLED for r in cancelled.results.values())
    assert provisioner.provisioned == []


@pytest.mark.asyncio
async def test_cancel_interrupts_validation(service, storage, definition, endpoints):
    slow = definition.model_copy(
        update={"validation": ValidationSettings(max_attempts=12, interval_seconds=30.0)}
    )
    storage.save(slow)
    endpoints.status_by_env["green"] = 503

    run = await service.start("blue-green")
    await asyncio.wait_for(endpoints.event("green").wait(), timeout=5.0)

    await service.cancel(run.run_id)
    await asyncio.wait_for(service.wait(run.run_id), timeout=5.0)

    cancelled = service.get_run(run.run_id)
    assert cancelled.status == RolloutStatus.CANCELLED
    assert cancelled.results["blue"].success
    assert cancelled.results["green"].status == ValidationStatus.CANCELLED
    assert cancelled.results["green"].attempts == 1


@pytest.mark.asyncio
async def test_cancel_while_awaiting_approval_abandons_promotion(service):
    run = await _run_to_completion(service)

    cancelled = await service.cancel(run.run_id)

    assert cancelled.status == RolloutStatus.CANCELLED
    promotion = service.get_promotion(run.promotion_request_id)
    assert promotion.state == PromotionState.REJECTED
    assert promotion.last_error == ABANDONED_REASON


@pytest.mark.asyncio
async def test_cancel_finished_run_is_a_conflict(service):
    run = await _run_to_completion(service)
    await service.approve(run.promotion_request_id)

    with pytest.raises(RolloutConflictError):
        await service.cancel(run.run_id)


@pytest.mark.asyncio
async def test_failed_cutover_can_be_retried(service, cutover):
    cutover.apply.side_effect = [CutoverError("Route 53 throttled"), None]
    run = await _run_to_completion(service)

    with pytest.raises(CutoverError):
        await service.approve(run.promotion_request_id)

    assert service.get_run(run.run_id).status == RolloutStatus.AWAITING_APPROVAL

    promotion = await service.approve(run.promotion_request_id)

    assert promotion.state == PromotionState.APPLIED
    assert service.get_run(run.run_id).status == RolloutStatus.PROMOTED


@pytest.mark.asyncio
async def test_cutover_uses_the_definition_the_run_started_with(service, storage, definition):
    seen = []
    cutover = MagicMock()
    cutover.apply = AsyncMock(return_value=None)
    service.cutover_factory = lambda d: seen.append(d) or cutover
    run = await _run_to_completion(service)

    storage.save(definition.model_copy(update={"hosted_zone_id": "ZOTHER"}))
    await service.approve(run.promotion_request_id)

    assert [d.hosted_zone_id for d in seen] == ["Z123EXAMPLE"]


@pytest.mark.asyncio
async def test_cutover_needs_a_rollout_definition(service, storage):
    run = await _run_to_completion(service)
    storage.delete("blue-green")
    (storage.runs_dir / f"{run.run_id}.json").unlink()

    with pytest.raises(CutoverError, match="no longer exists"):
        await service.approve(run.promotion_request_id)


@pytest.mark.asyncio
async def test_cancel_after_failed_cutover_is_a_conflict(service, cutover):
    cutover.apply.side_effect = [CutoverError("Route 53 throttled"), None]
    run = await _run_to_completion(service)
    with pytest.raises(CutoverError):
        await service.approve(run.promotion_request_id)

    with pytest.raises(RolloutConflictError, match="pending retry"):
        await service.cancel(run.run_id)

    assert service.get_run(run.run_id).status == RolloutStatus.AWAITING_APPROVAL
    assert service.get_promotion(run.promotion_request_id).state == PromotionState.APPROVED

    promotion = await service.approve(run.promotion_request_id)

    assert promotion.state == PromotionState.APPLIED
    assert service.get_run(run.run_id).status == RolloutStatus.PROMOTED


@pytest.mark.asyncio
async def test_broken_provisioner_factory_fails_the_run(database, storage, definition):
    def broken_factory(d):
        raise RuntimeError("PULUMI_ACCESS_TOKEN is not set")

    storage.save(definition)
    service = RolloutService(database, storage, provisioner_factory=broken_factory)

    run = await _run_to_completion(service)

    assert run.status == RolloutStatus.FAILED
    assert "PULUMI_ACCESS_TOKEN is not set" in run.error_message

    second = await service.start("blue-green")
    await service.wait(second.run_id)
    assert second.run_id != run.run_id


@pytest.mark.asyncio
async def test_error_after_the_wave_fails_the_run(service, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(service.gate, "request_promotion", broken)

    run = await _run_to_completion(service)

    assert run.status == RolloutStatus.FAILED
    assert run.error_message == "Run aborted: database is locked"
    assert all(r.success for r in run.results.values())


@pytest.mark.asyncio
async def test_decommission_the_environment_left_behind(service, provisioner):
    run = await _run_to_completion(service)
    await service.approve(run.promotion_request_id)

    deployment_id = await service.decommission(run.run_id, "blue")

    assert deployment_id == "destroy-blue"
    assert provisioner.destroyed == ["blue"]


@pytest.mark.asyncio
async def test_decommission_refuses_the_promotion_target(service, provisioner):
    run = await _run_to_completion(service)

    with pytest.raises(RolloutConflictError, match="promotion target"):
        await service.decommission(run.run_id, "green")

    await service.reject(run.promotion_request_id)
    await service.decommission(run.run_id, "green")

    assert provisioner.destroyed == ["green"]


@pytest.mark.asyncio
async def test_decommission_refuses_active_runs_and_unknown_environments(service, provisioner):
    run = await service.start("blue-green")

    with pytest.raises(RolloutConflictError, match="still pending"):
        await service.decommission(run.run_id, "blue")

    await service.wait(run.run_id)

    with pytest.raises(RolloutNotFoundError, match="purple"):
        await service.decommission(run.run_id, "purple")
    assert provisioner.destroyed == []
