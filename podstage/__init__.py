"""
podstage - Stage orchestrator for multi-stage image builds

Runs the stages of a job specification as independent worker units and
coordinates them through readiness gates polling a shared object store.
"""

__version__ = "0.1.0"
__author__ = "Build Pipeline Team"


__all__ = ["Settings", "load_config", "Orchestrator", "OrchestrationResult"]

from .config import Settings, load_config
from .orchestrator import Orchestrator, OrchestrationResult
