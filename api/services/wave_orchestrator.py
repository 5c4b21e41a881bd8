"""Deployment-wave orchestration.

A wave provisions each environment, then validates it. Environments are
independent: one failing never aborts its siblings, and the report always
holds one result per environment.
"""

import asyncio
import logging
from collections import Counter
from typing import Any, Awaitable, Callable, Iterable, Optional

from api.errors import (
    CancellationRequested,
    ProvisioningError,
    RolloutConfigError,
    ValidationTimeout,
)
from api.models import EnvironmentDescriptor, ValidationResult, WavePolicy, WaveReport

logger = logging.getLogger(__name__)

ProvisionFn = Callable[[EnvironmentDescriptor], Awaitable[Any]]
ValidateFn = Callable[[EnvironmentDescriptor], Awaitable[ValidationResult]]


class WaveResults:
    """Results keyed by environment name. Each key can be written exactly once."""

    def __init__(self) -> None:
        self._results: dict[str, ValidationResult] = {}

    def record(self, name: str, result: ValidationResult) -> None:
        if name in self._results:
            raise ValueError(f"Result for environment '{name}' already recorded")
        self._results[name] = result

    def __contains__(self, name: str) -> bool:
        return name in self._results

    def __len__(self) -> int:
        return len(self._results)

    def ordered(self, names: list[str]) -> dict[str, ValidationResult]:
        return {name: self._results[name] for name in names}


def check_wave(descriptors: list[EnvironmentDescriptor]) -> None:
    """Reject empty waves and duplicate environment names."""
    if not descriptors:
        raise RolloutConfigError("A wave needs at least one environment")

    duplicates = sorted(name for name, n in Counter(d.name for d in descriptors).items() if n > 1)
    if duplicates:
        raise RolloutConfigError(f"Duplicate environment names in wave: {', '.join(duplicates)}")


class WaveOrchestrator:
    """Run provision + validate for every environment of a wave."""

    def __init__(
        self,
        policy: WavePolicy = WavePolicy.PARALLEL,
        max_concurrency: Optional[int] = None,
    ):
        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError("max_concurrency must be a positive integer")
        self.policy = policy
        self.max_concurrency = max_concurrency

    async def run_wave(
        self,
        descriptors: Iterable[EnvironmentDescriptor],
        provision_fn: ProvisionFn,
        validate_fn: ValidateFn,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> WaveReport:
        """Provision and validate every descriptor; return once all have a result."""
        descriptors = list(descriptors)
        check_wave(descriptors)

        results = WaveResults()
        names = [d.name for d in descriptors]
        logger.info("Starting wave %s (%s)", names, self.policy.value)

        if self.policy == WavePolicy.SEQUENTIAL:
            for descriptor in descriptors:
                await self._run_environment(
                    descriptor, provision_fn, validate_fn, cancel_event, results
                )
        else:
            semaphore = (
                asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None
            )
            await asyncio.gather(
                *(
                    self._run_bounded(
                        semaphore, descriptor, provision_fn, validate_fn, cancel_event, results
                    )
                    for descriptor in descriptors
                )
            )

        report = WaveReport(results=results.ordered(names))
        if report.succeeded:
            logger.info("Wave %s succeeded", names)
        else:
            logger.warning(
                "Wave %s did not succeed; failed environments: %s",
                names,
                report.failed_environments,
            )
        return report

    async def _run_bounded(
        self,
        semaphore: Optional[asyncio.Semaphore],
        descriptor: EnvironmentDescriptor,
        provision_fn: ProvisionFn,
        validate_fn: ValidateFn,
        cancel_event: Optional[asyncio.Event],
        results: WaveResults,
    ) -> None:
        if semaphore is None:
            await self._run_environment(descriptor, provision_fn, validate_fn, cancel_event, results)
            return
        async with semaphore:
            await self._run_environment(descriptor, provision_fn, validate_fn, cancel_event, results)

    async def _run_environment(
        self,
        descriptor: EnvironmentDescriptor,
        provision_fn: ProvisionFn,
        validate_fn: ValidateFn,
        cancel_event: Optional[asyncio.Event],
        results: WaveResults,
    ) -> None:
        name = descriptor.name

        if _cancelled(cancel_event):
            logger.info("Skipping %s: cancellation requested", name)
            results.record(name, ValidationResult.cancelled())
            return

        try:
            logger.info("Provisioning %s (version %s)", name, descriptor.version)
            await provision_fn(descriptor)
        except ProvisioningError as e:
            logger.error("Provisioning %s failed: %s", name, e)
            results.record(name, ValidationResult.provisioning_failed(str(e)))
            return
        except Exception as e:
            logger.exception("Unexpected error provisioning %s", name)
            results.record(name, ValidationResult.provisioning_failed(f"{type(e).__name__}: {e}"))
            return

        if _cancelled(cancel_event):
            logger.info("Not validating %s: cancellation requested", name)
            results.record(name, ValidationResult.cancelled())
            return

        try:
            result = await validate_fn(descriptor)
        except ValidationTimeout as e:
            result = e.result
        except CancellationRequested as e:
            logger.info("Validation of %s cancelled after %d attempt(s)", name, e.attempts)
            result = ValidationResult.cancelled(e.attempts, e.last_error)
        except Exception as e:
            logger.exception("Unexpected error validating %s", name)
            result = ValidationResult.failed(0, f"{type(e).__name__}: {e}")

        results.record(name, result)


def _cancelled(cancel_event: Optional[asyncio.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()
