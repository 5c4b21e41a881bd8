"""Rollout runs: one wave, then a promotion waiting for an operator."""

import asyncio
import logging
import uuid
from typing import Callable, Optional, Protocol

from api.config_storage import DefinitionStore, config_storage
from api.database import Database, RolloutRunRecord, db
from api.errors import (
    CutoverError,
    RolloutConfigError,
    RolloutConflictError,
    RolloutNotFoundError,
    ValidationTimeout,
)
from api.models import (
    ACTIVE_ROLLOUT_STATES,
    EnvironmentDescriptor,
    PromotionRequest,
    PromotionState,
    ProvisioningResult,
    RolloutDefinitionResolved,
    RolloutRun,
    RolloutStatus,
    ValidationResult,
    ValidationSettings,
    WaveReport,
)
from api.services.dns_cutover import Route53Cutover
from api.services.health_validator import HealthValidator
from api.services.promotion_gate import PromotionGate
from api.services.provisioner import PulumiProvisioner, get_pulumi_client
from api.services.wave_orchestrator import WaveOrchestrator

logger = logging.getLogger(__name__)

ABANDONED_REASON = "abandoned: rollout run cancelled"


class Provisioner(Protocol):
    async def provision(self, environment: EnvironmentDescriptor) -> ProvisioningResult: ...

    async def destroy(self, environment: EnvironmentDescriptor) -> Optional[str]: ...


class Cutover(Protocol):
    async def apply(self, request: PromotionRequest) -> None: ...


def default_provisioner_factory(definition: RolloutDefinitionResolved) -> Provisioner:
    return PulumiProvisioner(get_pulumi_client(), tags=definition.tags)


def default_validator_factory(validation: ValidationSettings) -> HealthValidator:
    return HealthValidator(request_timeout=validation.request_timeout_seconds)


class RolloutService:
    """Run rollout definitions and route operator decisions to the promotion gate."""

    def __init__(
        self,
        database: Database,
        storage: DefinitionStore,
        provisioner_factory: Callable[
            [RolloutDefinitionResolved], Provisioner
        ] = default_provisioner_factory,
        validator_factory: Callable[[ValidationSettings], HealthValidator] = default_validator_factory,
        cutover_factory: Callable[[RolloutDefinitionResolved], Cutover] = Route53Cutover,
    ):
        self.db = database
        self.storage = storage
        self.provisioner_factory = provisioner_factory
        self.validator_factory = validator_factory
        self.cutover_factory = cutover_factory
        self.gate = PromotionGate(database, self._cutover)
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    # -- runs --

    async def start(self, rollout_id: str) -> RolloutRun:
        """Create a run for a stored definition and execute it in the background."""
        definition = self._definition(rollout_id)

        for existing in self.db.get_runs_by_rollout(rollout_id):
            if existing.status in ACTIVE_ROLLOUT_STATES | {RolloutStatus.AWAITING_APPROVAL}:
                raise RolloutConflictError(
                    f"Run {existing.run_id} of rollout '{rollout_id}' is {existing.status.value}"
                )

        run_id = str(uuid.uuid4())
        self.storage.freeze(run_id, definition)
        self.db.create_run(run_id, rollout_id)
        self._cancel_events[run_id] = asyncio.Event()

        task = asyncio.create_task(self.run(run_id, definition))
        self._tasks[run_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(run_id, None))

        logger.info("Started run %s of rollout %s", run_id, rollout_id)
        return self.get_run(run_id)

    async def run(self, run_id: str, definition: RolloutDefinitionResolved) -> Optional[WaveReport]:
        """Execute the wave of a run and open a promotion request if it is healthy."""
        cancel_event = self._cancel_events.setdefault(run_id, asyncio.Event())
        self.db.update_run_status(run_id, RolloutStatus.IN_PROGRESS)

        try:
            report = await self._run_wave(definition, cancel_event)
            self._finish(run_id, definition, report)
        except RolloutConfigError as e:
            logger.error("Run %s rejected: %s", run_id, e)
            self.db.update_run_status(run_id, RolloutStatus.FAILED, error_message=str(e))
            return None
        except Exception as e:
            logger.exception("Run %s aborted", run_id)
            self.db.update_run_status(
                run_id, RolloutStatus.FAILED, error_message=f"Run aborted: {e}"
            )
            return None
        finally:
            self._cancel_events.pop(run_id, None)

        return report

    async def _run_wave(
        self, definition: RolloutDefinitionResolved, cancel_event: asyncio.Event
    ) -> WaveReport:
        provisioner = self.provisioner_factory(definition)
        validator = self.validator_factory(definition.validation)
        orchestrator = WaveOrchestrator(definition.wave_policy, definition.max_concurrency)

        async def validate(environment: EnvironmentDescriptor) -> ValidationResult:
            result = await validator.validate(
                definition.endpoints[environment.name],
                max_attempts=definition.validation.max_attempts,
                interval_seconds=definition.validation.interval_seconds,
                cancel_event=cancel_event,
            )
            if not result.success:
                raise ValidationTimeout(environment.name, result)
            return result

        return await orchestrator.run_wave(
            definition.environments,
            provisioner.provision,
            validate,
            cancel_event,
        )

    def _finish(
        self, run_id: str, definition: RolloutDefinitionResolved, report: WaveReport
    ) -> None:
        """Persist the wave's results and move the run to its next state."""
        for name, result in report.results.items():
            self.db.record_environment_result(run_id, name, result)

        if report.cancelled:
            self.db.update_run_status(
                run_id, RolloutStatus.CANCELLED, error_message="Cancelled by operator"
            )
            logger.info("Run %s cancelled", run_id)
        elif not report.succeeded:
            failures = ", ".join(
                f"{name} ({report.results[name].status.value}: {report.results[name].last_error})"
                for name in report.failed_environments
            )
            self.db.update_run_status(
                run_id,
                RolloutStatus.FAILED,
                error_message=f"Wave failed: {failures}",
            )
            logger.warning("Run %s failed: %s", run_id, failures)
        else:
            target = definition.environment(definition.promotion_target)
            request = self.gate.request_promotion(target, run_id=run_id)
            self.db.update_run_status(
                run_id,
                RolloutStatus.AWAITING_APPROVAL,
                promotion_request_id=request.id,
            )

    async def cancel(self, run_id: str) -> RolloutRun:
        """Request cancellation of a run.

        An in-flight wave stops at its next cancellation check; a run waiting
        for approval has its promotion request rejected as abandoned, unless
        the request is already approved and only its cut-over is outstanding.
        """
        record = self._run(run_id)

        if record.status in ACTIVE_ROLLOUT_STATES:
            event = self._cancel_events.get(run_id)
            if event is not None:
                logger.info("Cancellation requested for run %s", run_id)
                event.set()
            else:
                # No live task (e.g. the service restarted); nothing left to interrupt
                self.db.update_run_status(
                    run_id, RolloutStatus.CANCELLED, error_message="Cancelled by operator"
                )
        elif record.status == RolloutStatus.AWAITING_APPROVAL:
            if record.promotion_request_id:
                promotion = self.gate.get(record.promotion_request_id)
                if promotion.state == PromotionState.APPROVED:
                    # Approved but the cut-over failed; only another approve can finish it
                    raise RolloutConflictError(
                        f"Promotion {promotion.id} of run {run_id} is approved with its "
                        "cut-over pending retry; approve it again to finish the cut-over"
                    )
                await self.gate.reject(record.promotion_request_id, reason=ABANDONED_REASON)
            self.db.update_run_status(
                run_id, RolloutStatus.CANCELLED, error_message="Cancelled by operator"
            )
        else:
            raise RolloutConflictError(f"Run {run_id} is already {record.status.value}")

        return self.get_run(run_id)

    async def decommission(self, run_id: str, environment: str) -> Optional[str]:
        """Destroy one environment of a finished run's wave.

        The promotion target of a run that is promoted, or waiting to be, keeps
        running. Returns the id of the destroy deployment.
        """
        record = self._run(run_id)
        if record.status in ACTIVE_ROLLOUT_STATES:
            raise RolloutConflictError(f"Run {run_id} is still {record.status.value}")

        definition = self._run_definition(record)
        if definition is None:
            raise RolloutNotFoundError(f"Rollout definition '{record.rollout_id}' not found")
        try:
            descriptor = definition.environment(environment)
        except KeyError:
            raise RolloutNotFoundError(
                f"Environment '{environment}' is not part of run {run_id}"
            ) from None

        if environment == definition.promotion_target and record.status in (
            RolloutStatus.AWAITING_APPROVAL,
            RolloutStatus.PROMOTED,
        ):
            raise RolloutConflictError(
                f"Environment '{environment}' is the promotion target of run {run_id} "
                f"({record.status.value})"
            )

        deployment_id = await self.provisioner_factory(definition).destroy(descriptor)
        logger.info(
            "Decommissioning %s of run %s (deployment %s)", environment, run_id, deployment_id
        )
        return deployment_id

    async def wait(self, run_id: str) -> None:
        """Wait for the background task of a run, if one is still running."""
        task = self._tasks.get(run_id)
        if task is not None:
            await task

    def get_run(self, run_id: str) -> RolloutRun:
        record = self._run(run_id)
        results = {
            r.environment: ValidationResult(
                status=r.status,
                attempts=r.attempts,
                last_error=r.last_error,
                endpoint_url=r.endpoint_url,
            )
            for r in self.db.get_environment_results(run_id)
        }
        return RolloutRun(
            run_id=record.run_id,
            rollout_id=record.rollout_id,
            status=record.status,
            error_message=record.error_message,
            results=results,
            promotion_request_id=record.promotion_request_id,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    def list_runs(self, rollout_id: str) -> list[RolloutRun]:
        return [self.get_run(r.run_id) for r in self.db.get_runs_by_rollout(rollout_id)]

    # -- promotions --

    def get_promotion(self, request_id: str) -> PromotionRequest:
        return self.gate.get(request_id)

    async def approve(self, request_id: str) -> PromotionRequest:
        request = await self.gate.approve(request_id)
        if request.run_id and request.state == PromotionState.APPLIED:
            self.db.update_run_status(request.run_id, RolloutStatus.PROMOTED)
        return request

    async def reject(self, request_id: str, reason: Optional[str] = None) -> PromotionRequest:
        request = await self.gate.reject(request_id, reason=reason)
        if request.run_id:
            run = self.db.get_run(request.run_id)
            if run is not None and run.status == RolloutStatus.AWAITING_APPROVAL:
                self.db.update_run_status(
                    request.run_id,
                    RolloutStatus.REJECTED,
                    error_message=reason or "Promotion rejected",
                )
        return request

    async def _cutover(self, request: PromotionRequest) -> None:
        if not request.run_id:
            raise CutoverError(f"Promotion request {request.id} is not attached to a rollout run")
        run = self._run(request.run_id)
        definition = self._run_definition(run)
        if definition is None:
            raise CutoverError(f"Rollout definition '{run.rollout_id}' no longer exists")
        await self.cutover_factory(definition).apply(request)

    def _definition(self, rollout_id: str) -> RolloutDefinitionResolved:
        definition = self.storage.get(rollout_id)
        if definition is None:
            raise RolloutNotFoundError(f"Rollout definition '{rollout_id}' not found")
        return definition

    def _run_definition(self, run: RolloutRunRecord) -> Optional[RolloutDefinitionResolved]:
        """Definition the run was started with, else the current one."""
        return self.storage.frozen(run.run_id) or self.storage.get(run.rollout_id)

    def _run(self, run_id: str) -> RolloutRunRecord:
        record = self.db.get_run(run_id)
        if record is None:
            raise RolloutNotFoundError(f"Run {run_id} not found")
        return record


rollout_service = RolloutService(db, config_storage)


def get_rollout_service() -> RolloutService:
    """FastAPI dependency returning the process-wide rollout service."""
    return rollout_service
