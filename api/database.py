"""SQLite database for tracking rollout runs and promotion requests."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    Session,
    mapped_column,
    sessionmaker,
)
from sqlalchemy.pool import StaticPool

from api.models import PromotionState, RolloutStatus, ValidationResult, ValidationStatus
from api.settings import settings


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


class RolloutRunRecord(Base):
    """Database model for one run of a rollout definition."""

    __tablename__ = "rollout_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True, index=True)
    rollout_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    status: Mapped[RolloutStatus] = mapped_column(
        Enum(RolloutStatus), nullable=False, default=RolloutStatus.PENDING
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    promotion_request_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class EnvironmentResultRecord(Base):
    """Per-environment result of a run. Written once per (run, environment)."""

    __tablename__ = "environment_results"
    __table_args__ = (UniqueConstraint("run_id", "environment", name="uq_run_environment"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    environment: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[ValidationStatus] = mapped_column(Enum(ValidationStatus), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    endpoint_url: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class PromotionRecord(Base):
    """Database model for promotion requests."""

    __tablename__ = "promotion_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True, index=True)
    run_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    target_environment: Mapped[str] = mapped_column(String(32), nullable=False)
    target: Mapped[str] = mapped_column(Text, nullable=False)
    state: Mapped[PromotionState] = mapped_column(
        Enum(PromotionState), nullable=False, default=PromotionState.PENDING
    )
    cutover_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    applied_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class Database:
    """Database connection and operations."""

    def __init__(self, database_url: str = "sqlite:///./rollouts.db"):
        """Initialize database connection."""
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees an empty database
            self.engine = create_engine(
                database_url,
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(database_url, echo=False)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    # -- rollout runs --

    def create_run(self, run_id: str, rollout_id: str) -> RolloutRunRecord:
        """Create a new run record in PENDING state."""
        with self.get_session() as session:
            record = RolloutRunRecord(
                run_id=run_id,
                rollout_id=rollout_id,
                status=RolloutStatus.PENDING,
            )
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def get_run(self, run_id: str) -> Optional[RolloutRunRecord]:
        with self.get_session() as session:
            return session.query(RolloutRunRecord).filter_by(run_id=run_id).first()

    def get_runs_by_rollout(self, rollout_id: str) -> list[RolloutRunRecord]:
        """Get all runs of a rollout definition, newest first."""
        with self.get_session() as session:
            return list(
                session.query(RolloutRunRecord)
                .filter_by(rollout_id=rollout_id)
                .order_by(RolloutRunRecord.id.desc())
                .all()
            )

    def update_run_status(
        self,
        run_id: str,
        status: RolloutStatus,
        error_message: Optional[str] = None,
        promotion_request_id: Optional[str] = None,
    ) -> Optional[RolloutRunRecord]:
        """Update run status."""
        with self.get_session() as session:
            record = session.query(RolloutRunRecord).filter_by(run_id=run_id).first()
            if not record:
                return None

            record.status = status
            record.updated_at = _utcnow()

            if error_message is not None:
                record.error_message = error_message
            if promotion_request_id:
                record.promotion_request_id = promotion_request_id

            session.commit()
            session.refresh(record)
            return record

    def record_environment_result(
        self,
        run_id: str,
        environment: str,
        result: ValidationResult,
    ) -> EnvironmentResultRecord:
        """Persist one environment's result. Raises ValueError if already recorded."""
        with self.get_session() as session:
            record = EnvironmentResultRecord(
                run_id=run_id,
                environment=environment,
                status=result.status,
                attempts=result.attempts,
                last_error=result.last_error,
                endpoint_url=result.endpoint_url,
            )
            session.add(record)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ValueError(
                    f"Result for {environment} in run {run_id} already recorded"
                ) from e
            session.refresh(record)
            return record

    def get_environment_results(self, run_id: str) -> list[EnvironmentResultRecord]:
        with self.get_session() as session:
            return list(
                session.query(EnvironmentResultRecord)
                .filter_by(run_id=run_id)
                .order_by(EnvironmentResultRecord.id)
                .all()
            )

    # -- promotion requests --

    def create_promotion(
        self,
        request_id: str,
        target_environment: str,
        target: str,
        run_id: Optional[str] = None,
    ) -> PromotionRecord:
        """Create a new promotion request in PENDING state."""
        with self.get_session() as session:
            record = PromotionRecord(
                request_id=request_id,
                run_id=run_id,
                target_environment=target_environment,
                target=target,
                state=PromotionState.PENDING,
            )
            session.add(record)
            session.commit()
            session.refresh(record)
            return record

    def get_promotion(self, request_id: str) -> Optional[PromotionRecord]:
        with self.get_session() as session:
            return session.query(PromotionRecord).filter_by(request_id=request_id).first()

    def update_promotion(
        self,
        request_id: str,
        state: PromotionState,
        cutover_applied: Optional[bool] = None,
        last_error: Optional[str] = None,
        decided_at: Optional[datetime] = None,
        applied_at: Optional[datetime] = None,
    ) -> Optional[PromotionRecord]:
        """Update promotion request state."""
        with self.get_session() as session:
            record = session.query(PromotionRecord).filter_by(request_id=request_id).first()
            if not record:
                return None

            record.state = state
            if cutover_applied is not None:
                record.cutover_applied = cutover_applied
            if last_error is not None:
                record.last_error = last_error
            if decided_at is not None:
                record.decided_at = decided_at
            if applied_at is not None:
                record.applied_at = applied_at

            session.commit()
            session.refresh(record)
            return record


db = Database(settings.database_url)
