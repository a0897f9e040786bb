"""Dependency injection container for Orchestra.

Lightweight wiring of core services at application startup.
Uses lazy initialization: services are created on first access.
"""

import logging
from typing import Any, Dict, Optional

from orchestra.config.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class OrchestraContainer:
    """Central service container: one store, bus, runner and scheduler per process."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings
        self._store = None
        self._event_bus = None
        self._capabilities = None
        self._resolver = None
        self._runner = None
        self._scheduler = None
        self._planner = None
        self._orchestrator = None
        self._audit_log = None

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    @property
    def store(self):
        if self._store is None:
            if self.settings.store_backend == "sqlite":
                from orchestra.storage.sqlite_store import SQLiteTaskStore
                self._store = SQLiteTaskStore(self.settings.db_path)
                logger.info("SQLiteTaskStore initialized at %s", self.settings.db_path)
            else:
                from orchestra.storage.memory_store import InMemoryTaskStore
                self._store = InMemoryTaskStore()
                logger.info("InMemoryTaskStore initialized")
        return self._store

    @property
    def event_bus(self):
        if self._event_bus is None:
            from orchestra.event_bus import InMemoryEventBus
            self._event_bus = InMemoryEventBus()
            # Audit trail sees every event from the start
            self.audit_log.attach(self._event_bus)
        return self._event_bus

    @property
    def audit_log(self):
        if self._audit_log is None:
            from orchestra.observability.audit_log import AuditLog
            self._audit_log = AuditLog(
                path=self.settings.audit_log_path,
                buffer_size=self.settings.audit_buffer_size,
            )
        return self._audit_log

    @property
    def capabilities(self):
        if self._capabilities is None:
            from orchestra.agents.capabilities import CapabilityRegistry, HttpCapability
            from orchestra.models import AgentRole
            self._capabilities = CapabilityRegistry()
            for role, url in self.settings.agent_urls.items():
                self._capabilities.register(AgentRole(role), HttpCapability(
                    name=f"{role.lower()}-service",
                    url=url,
                    timeout=self.settings.agent_timeout,
                    api_key=self.settings.agent_api_key,
                ))
            if not self.settings.agent_urls:
                logger.warning("No agent services configured; register capabilities before dispatching")
        return self._capabilities

    @property
    def resolver(self):
        if self._resolver is None:
            from orchestra.scheduling.dependency_resolver import DependencyResolver
            self._resolver = DependencyResolver(self.store, self.event_bus)
        return self._resolver

    @property
    def runner(self):
        if self._runner is None:
            from orchestra.scheduling.execution_runner import ExecutionRunner
            self._runner = ExecutionRunner(self.store, self.event_bus, self.capabilities)
        return self._runner

    @property
    def scheduler(self):
        if self._scheduler is None:
            from orchestra.scheduling.auto_executor import AutoExecutor
            self._scheduler = AutoExecutor(self.store, self.resolver, self.runner, self.event_bus)
            self._scheduler.configure(**self.settings.scheduler_overrides())
            logger.info("AutoExecutor initialized: %s", self._scheduler.get_config().to_dict())
        return self._scheduler

    @property
    def planner(self):
        if self._planner is None:
            from orchestra.planning.planner import HttpPlanner
            self._planner = HttpPlanner(
                url=self.settings.planner_url,
                timeout=self.settings.planner_timeout,
                api_key=self.settings.planner_api_key,
            )
            if not self.settings.planner_url:
                logger.warning("No planner URL configured; orchestrations need an explicit plan")
        return self._planner

    @property
    def orchestrator(self):
        if self._orchestrator is None:
            from orchestra.orchestration.orchestrator import Orchestrator
            self._orchestrator = Orchestrator(
                store=self.store,
                event_bus=self.event_bus,
                planner=self.planner,
                resolver=self.resolver,
                runner=self.runner,
                scheduler=self.scheduler,
            )
            logger.info("Orchestrator initialized")
        return self._orchestrator

    async def aclose(self) -> None:
        """Stop background loops and in-flight calls; stored state is kept."""
        if self._scheduler is not None:
            await self._scheduler.shutdown()
        if self._runner is not None:
            await self._runner.shutdown()
        if self._event_bus is not None:
            await self._event_bus.drain()
        if self._audit_log is not None:
            self._audit_log.detach()

    def status(self) -> Dict[str, Any]:
        """Report which services are initialized."""
        return {
            "store": self._store is not None,
            "event_bus": self._event_bus is not None,
            "capabilities": self._capabilities is not None,
            "resolver": self._resolver is not None,
            "runner": self._runner is not None,
            "scheduler": self._scheduler is not None,
            "planner": self._planner is not None,
            "orchestrator": self._orchestrator is not None,
            "audit_log": self._audit_log is not None,
        }


# Global container
_container: Optional[OrchestraContainer] = None


def get_container() -> OrchestraContainer:
    global _container
    if _container is None:
        _container = OrchestraContainer()
    return _container


def init_container(settings: Optional[Settings] = None) -> OrchestraContainer:
    global _container
    if _container is None:
        _container = OrchestraContainer(settings)
    return _container


async def shutdown_container() -> None:
    global _container
    if _container is not None:
        await _container.aclose()
    _container = None
