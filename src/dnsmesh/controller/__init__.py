"""
Policy controller.

Keeps the policy index in line with the DnsPolicy objects in the store.
"""

from dnsmesh.controller.events import DatabaseEventRecorder, EventRecorder, PolicyEvent
from dnsmesh.controller.manager import ControllerManager
from dnsmesh.controller.manifests import ManifestSync, SyncResult
from dnsmesh.controller.reconciler import (
    TRANSITIONS,
    Phase,
    ReconcileResult,
    Reconciler,
    observe_phase,
)
from dnsmesh.controller.store import InMemoryObjectStore, ObjectStore
from dnsmesh.controller.workqueue import ShutDown, WorkQueue

__all__ = [
    # Store
    "InMemoryObjectStore",
    "ObjectStore",
    # Events
    "DatabaseEventRecorder",
    "EventRecorder",
    "PolicyEvent",
    # Reconciler
    "Phase",
    "ReconcileResult",
    "Reconciler",
    "TRANSITIONS",
    "observe_phase",
    # Dispatch
    "ControllerManager",
    "ShutDown",
    "WorkQueue",
    # Manifests
    "ManifestSync",
    "SyncResult",
]
