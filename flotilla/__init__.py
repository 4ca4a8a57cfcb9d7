"""Flotilla: release and orchestration controller.

Maps git refs to release tags, builds a stage graph with fingerprint-keyed
caching, publishes terminal artifacts, and brings services up in
dependency order behind health gates.
"""

__version__ = "0.1.0"
__description__ = "Release tagging, memoised graph builds and health-gated service orchestration"

from flotilla.core.build_executor import BuildGraphExecutor
from flotilla.core.ref_tags import RefTagResolver
from flotilla.core.release import ReleaseController
from flotilla.core.service_orchestrator import ServiceOrchestrator

__all__ = [
    "BuildGraphExecutor",
    "RefTagResolver",
    "ReleaseController",
    "ServiceOrchestrator",
    "__version__",
]
