"""Manual approval gate in front of the production cut-over."""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from api.database import Database, PromotionRecord
from api.errors import InvalidStateTransition, PromotionNotFoundError
from api.models import EnvironmentDescriptor, PromotionRequest, PromotionState

logger = logging.getLogger(__name__)

CutoverFn = Callable[[PromotionRequest], Awaitable[None]]


class PromotionGate:
    """Promotion requests move pending -> approved -> applied, or pending -> rejected.

    Repeating the action that produced a terminal state is a no-op; any other
    action on a non-pending request raises InvalidStateTransition. A failed
    cut-over leaves the request approved so approve() can retry it.
    """

    def __init__(self, database: Database, cutover: CutoverFn):
        self.db = database
        self._cutover = cutover
        self._lock = asyncio.Lock()

    def request_promotion(
        self,
        target: EnvironmentDescriptor,
        run_id: Optional[str] = None,
    ) -> PromotionRequest:
        """Open a pending promotion request for target."""
        record = self.db.create_promotion(
            request_id=str(uuid.uuid4()),
            target_environment=target.name,
            target=target.model_dump_json(),
            run_id=run_id,
        )
        logger.info(
            "Promotion request %s opened for %s, waiting for approval",
            record.request_id,
            target.name,
        )
        return self._to_model(record)

    def get(self, request_id: str) -> PromotionRequest:
        return self._to_model(self._load(request_id))

    async def approve(self, request_id: str) -> PromotionRequest:
        """Approve a request and apply the cut-over."""
        async with self._lock:
            record = self._load(request_id)

            if record.state == PromotionState.APPLIED:
                logger.info("Promotion %s already applied, nothing to do", request_id)
                return self._to_model(record)
            if record.state == PromotionState.REJECTED:
                raise InvalidStateTransition(request_id, record.state.value, "approve")

            if record.state == PromotionState.PENDING:
                record = self.db.update_promotion(
                    request_id,
                    PromotionState.APPROVED,
                    decided_at=datetime.now(timezone.utc),
                )
                logger.info("Promotion %s approved for %s", request_id, record.target_environment)
            else:
                logger.info("Retrying cut-over for approved promotion %s", request_id)

            request = self._to_model(record)
            try:
                await self._cutover(request)
            except Exception as e:
                logger.exception("Cut-over to %s failed", record.target_environment)
                self.db.update_promotion(
                    request_id,
                    PromotionState.APPROVED,
                    cutover_applied=False,
                    last_error=str(e),
                )
                raise

            record = self.db.update_promotion(
                request_id,
                PromotionState.APPLIED,
                cutover_applied=True,
                last_error="",
                applied_at=datetime.now(timezone.utc),
            )
            logger.info(
                "Promotion %s applied: %s now serves production",
                request_id,
                record.target_environment,
            )
            return self._to_model(record)

    async def reject(self, request_id: str, reason: Optional[str] = None) -> PromotionRequest:
        """Reject a pending request. Nothing is cut over."""
        async with self._lock:
            record = self._load(request_id)

            if record.state == PromotionState.REJECTED:
                return self._to_model(record)
            if record.state != PromotionState.PENDING:
                raise InvalidStateTransition(request_id, record.state.value, "reject")

            record = self.db.update_promotion(
                request_id,
                PromotionState.REJECTED,
                last_error=reason,
                decided_at=datetime.now(timezone.utc),
            )
            logger.info(
                "Promotion %s for %s rejected%s",
                request_id,
                record.target_environment,
                f": {reason}" if reason else "",
            )
            return self._to_model(record)

    def _load(self, request_id: str) -> PromotionRecord:
        record = self.db.get_promotion(request_id)
        if record is None:
            raise PromotionNotFoundError(f"Promotion request {request_id} not found")
        return record

    @staticmethod
    def _to_model(record: PromotionRecord) -> PromotionRequest:
        return PromotionRequest(
            id=record.request_id,
            target=EnvironmentDescriptor.model_validate_json(record.target),
            state=record.state,
            run_id=record.run_id,
            cutover_applied=record.cutover_applied,
            last_error=record.last_error or None,
            created_at=record.created_at,
            decided_at=record.decided_at,
            applied_at=record.applied_at,
        )
