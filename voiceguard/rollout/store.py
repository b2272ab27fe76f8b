"""Rollout store contract and the in-memory adapter."""

import logging
from collections import deque
from dataclasses import replace
from typing import Deque, List, Optional, Protocol, runtime_checkable

from voiceguard.clock import Clock, system_clock, to_datetime

from .config import RolloutStage
from .models import HealthCheckResult, RolloutHistoryEntry, RolloutStatus

logger = logging.getLogger(__name__)


class RolloutStoreError(Exception):
    """Raised when the rollout store cannot be read or written."""


@runtime_checkable
class RolloutStore(Protocol):
    """Source of truth for rollout state. Every call may suspend."""

    async def get_status(self) -> RolloutStatus: ...

    async def set_percentage_and_stage(
        self,
        stage: RolloutStage,
        percentage: int,
        initiated_by: str,
    ) -> RolloutStatus: ...

    async def append_history_entry(self, entry: RolloutHistoryEntry) -> None: ...

    async def set_tenant_override(self, tenant_id: str, enable: bool) -> RolloutStatus: ...

    async def get_history(self, limit: int = 50) -> List[RolloutHistoryEntry]: ...

    async def save_health_check(self, result: HealthCheckResult) -> None: ...


def apply_tenant_override(status: RolloutStatus, tenant_id: str, enable: bool) -> None:
    """Move a tenant into the enabled or disabled override list."""
    if enable:
        status.disabled_tenants = [t for t in status.disabled_tenants if t != tenant_id]
        if tenant_id not in status.enabled_tenants:
            status.enabled_tenants.append(tenant_id)
    else:
        status.enabled_tenants = [t for t in status.enabled_tenants if t != tenant_id]
        if tenant_id not in status.disabled_tenants:
            status.disabled_tenants.append(tenant_id)


class InMemoryRolloutStore:
    """Process-local rollout store for tests and single-node deployments."""

    def __init__(
        self,
        status: Optional[RolloutStatus] = None,
        clock: Clock = system_clock,
        history_limit: int = 1000,
    ):
        self._clock = clock
        self._status = status or RolloutStatus(
            current_stage=RolloutStage.DISABLED,
            percentage=0,
            enabled=True,
            stage_started_at=to_datetime(clock()),
        )
        self._history: Deque[RolloutHistoryEntry] = deque(maxlen=history_limit)

    async def get_status(self) -> RolloutStatus:
        return self._copy(self._status)

    async def set_percentage_and_stage(
        self,
        stage: RolloutStage,
        percentage: int,
        initiated_by: str,
    ) -> RolloutStatus:
        self._status.current_stage = stage
        self._status.percentage = percentage
        self._status.stage_started_at = to_datetime(self._clock())
        self._status.stage_initiated_by = initiated_by
        logger.info(
            "Rollout set to %s (%d%%)",
            stage.value,
            percentage,
            extra={"extra_data": {"initiated_by": initiated_by}},
        )
        return self._copy(self._status)

    async def append_history_entry(self, entry: RolloutHistoryEntry) -> None:
        self._history.append(entry)

    async def set_tenant_override(self, tenant_id: str, enable: bool) -> RolloutStatus:
        apply_tenant_override(self._status, tenant_id, enable)
        return self._copy(self._status)

    async def get_history(self, limit: int = 50) -> List[RolloutHistoryEntry]:
        """Return history entries, newest first."""
        return list(reversed(self._history))[:limit]

    async def save_health_check(self, result: HealthCheckResult) -> None:
        self._status.last_health_check = result

    async def set_enabled(self, enabled: bool) -> RolloutStatus:
        self._status.enabled = enabled
        return self._copy(self._status)

    @staticmethod
    def _copy(status: RolloutStatus) -> RolloutStatus:
        return replace(
            status,
            enabled_tenants=list(status.enabled_tenants),
            disabled_tenants=list(status.disabled_tenants),
        )
