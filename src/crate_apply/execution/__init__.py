from .engine import ExecutionEngine
from .types import ToolInvocation, ToolOutcome

__all__ = [
    "ExecutionEngine",
    "ToolInvocation",
    "ToolOutcome",
]
