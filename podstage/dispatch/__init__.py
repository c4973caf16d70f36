"""
podstage.dispatch - Worker dispatchers.

Each dispatcher turns the work specification of a ready stage into a running
worker and blocks until it finishes.
"""

from .base import Dispatcher, NoOpDispatcher, PodHandle
from .local import LocalDispatcher
from .pod import PodClient, PodDispatcher
from .registry import DispatcherRegistry

__all__ = [
    "Dispatcher",
    "NoOpDispatcher",
    "PodHandle",
    "LocalDispatcher",
    "PodClient",
    "PodDispatcher",
    "DispatcherRegistry",
]
