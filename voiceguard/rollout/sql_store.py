"""SQLAlchemy-backed rollout store.

Tables:
- platform_feature_flags: one row per feature flag with its rollout state
- rollout_history: append-only log of stage and tenant changes

Database calls run in a worker thread so the event loop never blocks.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, TypeVar

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text, create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from voiceguard.alerting import AlertSeverity
from voiceguard.clock import Clock, system_clock, to_datetime

from .config import RolloutStage
from .models import (
    HealthCheckResult,
    HistoryAction,
    IssueType,
    RecommendedAction,
    RolloutHistoryEntry,
    RolloutIssue,
    RolloutMetrics,
    RolloutStatus,
)
from .store import RolloutStoreError, apply_tenant_override

logger = logging.getLogger(__name__)

Base = declarative_base()

T = TypeVar("T")


class FeatureFlagRow(Base):
    """Rollout state for a feature flag."""

    __tablename__ = "platform_feature_flags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False, index=True)
    enabled = Column(Boolean, nullable=False, default=True)
    percentage = Column(Integer, nullable=False, default=0)
    current_stage = Column(String(32), nullable=False, default=RolloutStage.DISABLED.value)
    enabled_tenants = Column(JSON, nullable=False, default=list)
    disabled_tenants = Column(JSON, nullable=False, default=list)
    stage_started_at = Column(DateTime(timezone=True), nullable=False)
    stage_initiated_by = Column(String(100))
    last_health_check = Column(JSON)
    updated_at = Column(DateTime(timezone=True))


class RolloutHistoryRow(Base):
    """One stage or tenant change."""

    __tablename__ = "rollout_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entry_id = Column(String(64), unique=True, nullable=False)
    flag_name = Column(String(100), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    action = Column(String(32), nullable=False)
    from_stage = Column(String(32), nullable=False)
    to_stage = Column(String(32), nullable=False)
    from_percentage = Column(Integer, nullable=False)
    to_percentage = Column(Integer, nullable=False)
    initiated_by = Column(String(100), nullable=False)
    reason = Column(Text)
    tenant_id = Column(String(100))
    health_metrics = Column(JSON)


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def health_check_from_dict(data: dict) -> HealthCheckResult:
    return HealthCheckResult(
        timestamp=datetime.fromisoformat(data["timestamp"]),
        healthy=data["healthy"],
        can_advance=data["can_advance"],
        should_rollback=data["should_rollback"],
        metrics=RolloutMetrics(**data["metrics"]),
        issues=[
            RolloutIssue(
                severity=AlertSeverity(i["severity"]),
                issue_type=IssueType(i["type"]),
                message=i["message"],
                current_value=i["current_value"],
                threshold_value=i["threshold_value"],
                recommended_action=RecommendedAction(i["recommended_action"]),
            )
            for i in data.get("issues", [])
        ],
        blockers=list(data.get("blockers", [])),
    )


class SqlRolloutStore:
    """Rollout store persisted through SQLAlchemy.

    Example:
        store = SqlRolloutStore.from_url("sqlite:///rollout.db")
        status = await store.get_status()
    """

    def __init__(
        self,
        engine: Engine,
        flag_name: str = "voice_agent_v2",
        clock: Clock = system_clock,
        create_tables: bool = True,
    ):
        self._engine = engine
        self._session_factory: Callable[[], Session] = sessionmaker(bind=engine, expire_on_commit=False)
        self._flag_name = flag_name
        self._clock = clock
        if create_tables:
            Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, url: str, flag_name: str = "voice_agent_v2", clock: Clock = system_clock) -> "SqlRolloutStore":
        return cls(create_engine(url, pool_pre_ping=True), flag_name=flag_name, clock=clock)

    async def _run(self, fn: Callable[[Session], T]) -> T:
        def work() -> T:
            with self._session_factory() as session:
                with session.begin():
                    return fn(session)

        try:
            return await asyncio.to_thread(work)
        except SQLAlchemyError as e:
            logger.error("Rollout store operation failed: %s", e)
            raise RolloutStoreError(str(e)) from e

    def _flag(self, session: Session) -> FeatureFlagRow:
        row = session.execute(
            select(FeatureFlagRow).where(FeatureFlagRow.name == self._flag_name)
        ).scalar_one_or_none()
        if row is None:
            now = to_datetime(self._clock())
            row = FeatureFlagRow(
                name=self._flag_name,
                enabled=True,
                percentage=0,
                current_stage=RolloutStage.DISABLED.value,
                enabled_tenants=[],
                disabled_tenants=[],
                stage_started_at=now,
                updated_at=now,
            )
            session.add(row)
            session.flush()
        return row

    @staticmethod
    def _to_status(row: FeatureFlagRow) -> RolloutStatus:
        return RolloutStatus(
            current_stage=RolloutStage(row.current_stage),
            percentage=row.percentage,
            enabled=row.enabled,
            stage_started_at=_aware(row.stage_started_at),
            enabled_tenants=list(row.enabled_tenants or []),
            disabled_tenants=list(row.disabled_tenants or []),
            stage_initiated_by=row.stage_initiated_by,
            last_health_check=health_check_from_dict(row.last_health_check) if row.last_health_check else None,
        )

    async def get_status(self) -> RolloutStatus:
        return await self._run(lambda s: self._to_status(self._flag(s)))

    async def set_percentage_and_stage(
        self,
        stage: RolloutStage,
        percentage: int,
        initiated_by: str,
    ) -> RolloutStatus:
        def update(session: Session) -> RolloutStatus:
            row = self._flag(session)
            now = to_datetime(self._clock())
            row.current_stage = stage.value
            row.percentage = percentage
            row.stage_started_at = now
            row.stage_initiated_by = initiated_by
            row.updated_at = now
            return self._to_status(row)

        return await self._run(update)

    async def append_history_entry(self, entry: RolloutHistoryEntry) -> None:
        def insert(session: Session) -> None:
            session.add(RolloutHistoryRow(
                entry_id=entry.entry_id,
                flag_name=self._flag_name,
                timestamp=entry.timestamp,
                action=entry.action.value,
                from_stage=entry.from_stage.value,
                to_stage=entry.to_stage.value,
                from_percentage=entry.from_percentage,
                to_percentage=entry.to_percentage,
                initiated_by=entry.initiated_by,
                reason=entry.reason,
                tenant_id=entry.tenant_id,
                health_metrics=entry.health_metrics.to_dict() if entry.health_metrics else None,
            ))

        await self._run(insert)

    async def set_tenant_override(self, tenant_id: str, enable: bool) -> RolloutStatus:
        def update(session: Session) -> RolloutStatus:
            row = self._flag(session)
            status = self._to_status(row)
            apply_tenant_override(status, tenant_id, enable)
            # reassign so the JSON columns are flagged dirty
            row.enabled_tenants = list(status.enabled_tenants)
            row.disabled_tenants = list(status.disabled_tenants)
            row.updated_at = to_datetime(self._clock())
            return status

        return await self._run(update)

    async def get_history(self, limit: int = 50) -> List[RolloutHistoryEntry]:
        def query(session: Session) -> List[RolloutHistoryEntry]:
            rows = session.execute(
                select(RolloutHistoryRow)
                .where(RolloutHistoryRow.flag_name == self._flag_name)
                .order_by(RolloutHistoryRow.timestamp.desc(), RolloutHistoryRow.id.desc())
                .limit(limit)
            ).scalars().all()
            return [
                RolloutHistoryEntry(
                    entry_id=r.entry_id,
                    timestamp=_aware(r.timestamp),
                    action=HistoryAction(r.action),
                    from_stage=RolloutStage(r.from_stage),
                    to_stage=RolloutStage(r.to_stage),
                    from_percentage=r.from_percentage,
                    to_percentage=r.to_percentage,
                    initiated_by=r.initiated_by,
                    reason=r.reason or "",
                    tenant_id=r.tenant_id,
                    health_metrics=RolloutMetrics(**r.health_metrics) if r.health_metrics else None,
                )
                for r in rows
            ]

        return await self._run(query)

    async def save_health_check(self, result: HealthCheckResult) -> None:
        def update(session: Session) -> None:
            row = self._flag(session)
            row.last_health_check = result.to_dict()

        await self._run(update)

    async def set_enabled(self, enabled: bool) -> RolloutStatus:
        def update(session: Session) -> RolloutStatus:
            row = self._flag(session)
            row.enabled = enabled
            row.updated_at = to_datetime(self._clock())
            return self._to_status(row)

        return await self._run(update)

    def dispose(self) -> None:
        self._engine.dispose()
