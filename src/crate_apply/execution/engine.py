from __future__ import annotations

from typing import Protocol

from .types import ToolInvocation, ToolOutcome


class ExecutionEngine(Protocol):
    def invoke(self, request: ToolInvocation) -> ToolOutcome:
        """Run the build/test tool once and return its normalized outcome.

        Implementations must enforce `request.timeout_seconds` themselves and
        leave no process behind when they return.

        Example:
            ```python
            outcome = engine.invoke(ToolInvocation(Mode.BUILD, root, scratch, timeout_seconds=60))
            ```
        """
        ...
