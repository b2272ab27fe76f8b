"""Control plane composition root.

Builds one instance of each component and wires them together:

    MetricsRegistry -> AlertRuleEngine -> DispatchQueue -> NotificationDispatcher
                             ^
    RolloutHealthController -+ (manual alerts, rollout rules)

Example:
    plane = ControlPlane.from_settings(get_settings(), setup_logging=True)
    await plane.start()
    ...
    await plane.stop()
"""

import logging
from typing import Optional

from voiceguard.alerting import AlertEngineConfig, AlertRuleEngine
from voiceguard.clock import Clock, system_clock
from voiceguard.logging_config import LoggingConfig, configure_logging
from voiceguard.notifications import (
    DispatchQueue,
    NotificationDispatcher,
    channel_configs_from_settings,
    dispatcher_config_from_settings,
)
from voiceguard.observability import MetricsConfig, MetricsRegistry, VoiceMetrics, create_metrics_router
from voiceguard.rollout import (
    CallLogSource,
    HealthControllerConfig,
    InMemoryRolloutStore,
    MetricsSummaryProvider,
    RolloutHealthController,
    RolloutStore,
    SqlRolloutStore,
)
from voiceguard.scheduling import PeriodicTask
from voiceguard.settings import Settings

logger = logging.getLogger(__name__)


class ControlPlane:
    """Owns the registry, engine, dispatcher, queue and rollout controller."""

    def __init__(
        self,
        registry: Optional[MetricsRegistry] = None,
        alert_engine: Optional[AlertRuleEngine] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        store: Optional[RolloutStore] = None,
        call_log: Optional[CallLogSource] = None,
        controller_config: Optional[HealthControllerConfig] = None,
        housekeeping_interval: float = 300.0,
        queue_size: int = 1000,
        clock: Clock = system_clock,
    ):
        self.clock = clock
        self.registry = registry or MetricsRegistry(clock=clock)
        self.voice_metrics = VoiceMetrics(self.registry)
        self.dispatcher = dispatcher or NotificationDispatcher(clock=clock)
        self.queue = DispatchQueue(self.dispatcher, max_size=queue_size)
        self.alert_engine = alert_engine or AlertRuleEngine(self.registry, clock=clock)
        self.alert_engine.notification_handler = self.queue.submit
        self.store = store or InMemoryRolloutStore(clock=clock)
        self.metrics_provider = MetricsSummaryProvider(
            self.registry,
            alert_engine=self.alert_engine,
            call_log=call_log,
            clock=clock,
        )
        self.controller = RolloutHealthController(
            self.store,
            self.alert_engine,
            self.metrics_provider,
            config=controller_config,
            clock=clock,
        )
        self._housekeeping = PeriodicTask(
            "housekeeping",
            self.run_housekeeping,
            housekeeping_interval,
            run_immediately=False,
        )

    @classmethod
    def from_settings(
        cls, settings: Settings, clock: Clock = system_clock, setup_logging: bool = False
    ) -> "ControlPlane":
        """Build a control plane from environment settings.

        With ``setup_logging`` the root logger is configured from the
        settings' log level and format before any component is built.
        """
        if setup_logging:
            configure_logging(LoggingConfig.from_settings(settings))
        registry = MetricsRegistry(MetricsConfig(), clock=clock)
        engine = AlertRuleEngine(
            registry,
            AlertEngineConfig(
                enabled=settings.alerts_enabled,
                evaluation_interval_seconds=settings.alert_evaluation_interval,
                environment=settings.environment,
                service_name=settings.service_name,
            ),
            clock=clock,
        )
        dispatcher = NotificationDispatcher(
            dispatcher_config_from_settings(settings),
            channel_configs=channel_configs_from_settings(settings),
            clock=clock,
        )
        if settings.use_database:
            store: RolloutStore = SqlRolloutStore.from_url(
                settings.database_url,
                flag_name=settings.feature_flag_name,
                clock=clock,
            )
        else:
            store = InMemoryRolloutStore(clock=clock)
        return cls(
            registry=registry,
            alert_engine=engine,
            dispatcher=dispatcher,
            store=store,
            controller_config=HealthControllerConfig(
                enabled=settings.rollout_monitoring_enabled,
                monitoring_interval_seconds=settings.rollout_monitoring_interval,
                auto_rollback_on_critical=settings.auto_rollback_on_critical,
            ),
            housekeeping_interval=settings.housekeeping_interval,
            clock=clock,
        )

    @property
    def is_running(self) -> bool:
        return self._housekeeping.is_running

    async def start(self) -> None:
        if self.is_running:
            return
        await self.queue.start()
        await self.alert_engine.start()
        await self.controller.start()
        await self._housekeeping.start()
        logger.info("Control plane started")

    async def stop(self) -> None:
        if not self.is_running:
            return
        await self._housekeeping.stop()
        await self.controller.stop()
        await self.alert_engine.stop()
        await self.queue.stop()
        logger.info("Control plane stopped")

    async def aclose(self) -> None:
        """Stop everything and release the HTTP client and database engine."""
        await self.stop()
        await self.dispatcher.aclose()
        if isinstance(self.store, SqlRolloutStore):
            self.store.dispose()

    def run_housekeeping(self) -> dict:
        """Sweep expired dedup, rate-limit and alert-state entries."""
        swept = self.dispatcher.cleanup()
        swept["alert_states"] = self.alert_engine.sweep_states()
        logger.debug("Housekeeping complete", extra={"extra_data": swept})
        return swept

    def reset(self) -> None:
        self.registry.reset()
        self.alert_engine.reset()
        self.dispatcher.reset()
        self.controller.reset()

    def metrics_router(self):
        """FastAPI router serving /metrics and /metrics/json."""
        return create_metrics_router(self.registry, self.registry.config)
