"""Tool-call orchestration core."""

from chat_relay.core.executor import RoundExecutor
from chat_relay.core.orchestrator import OrchestrationOutcome, ToolCallOrchestrator
from chat_relay.core.reconciler import StreamReconciler
from chat_relay.core.state import OrchestratorState, RecentSignatures, RoundState

__all__ = [
    "OrchestrationOutcome",
    "OrchestratorState",
    "RecentSignatures",
    "RoundExecutor",
    "RoundState",
    "StreamReconciler",
    "ToolCallOrchestrator",
]
