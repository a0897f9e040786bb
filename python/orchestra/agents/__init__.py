"""Agent capability executors."""

from orchestra.agents.capabilities import (
    AgentCapability,
    CallableCapability,
    CapabilityRegistry,
    CapabilityResult,
    ExecutionContext,
    HttpCapability,
)

__all__ = [
    "AgentCapability",
    "CallableCapability",
    "CapabilityRegistry",
    "CapabilityResult",
    "ExecutionContext",
    "HttpCapability",
]
