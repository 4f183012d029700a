"""Turn execution: stream processor, resilience, operations and orchestrator."""

from chat_gateway.core.operations import StreamingOperation, StreamingOperationManager
from chat_gateway.core.orchestrator import ChatTurnOrchestrator
from chat_gateway.core.processor import StreamProcessor
from chat_gateway.core.resilience import ResilienceHandler

__all__ = [
    "ChatTurnOrchestrator",
    "ResilienceHandler",
    "StreamProcessor",
    "StreamingOperation",
    "StreamingOperationManager",
]
