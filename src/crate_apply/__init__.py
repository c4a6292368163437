from .execution.docker_engine import DockerEngine
from .execution.local_engine import LocalEngine
from .fetch import CratesIoFetcher
from .policy import HarnessPolicy
from .registry import CratesIoClient
from .results import ExecutionResult, RunSummary
from .runner import run_batch
from .store import ResultStore
from .targets import Mode, Target, parse_specifier

__all__ = [
    "CratesIoClient",
    "CratesIoFetcher",
    "DockerEngine",
    "ExecutionResult",
    "HarnessPolicy",
    "LocalEngine",
    "Mode",
    "ResultStore",
    "RunSummary",
    "Target",
    "parse_specifier",
    "run_batch",
]
