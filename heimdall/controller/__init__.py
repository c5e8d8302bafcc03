"""Injection controller.

Submodules:
    state       -- annotation-derived injection state machine.
    queue       -- deduplicating rate-limited work queue.
    watcher     -- Deployment list/watch and local indexer.
    recorder    -- Kubernetes Event recorder.
    controller  -- InjectionController: handlers, workers, pipeline.
"""

from heimdall.controller.controller import InjectionController, build_injected_workload
from heimdall.controller.queue import ExponentialRateLimiter, RateLimitingQueue
from heimdall.controller.recorder import EventRecorder
from heimdall.controller.state import InjectionState, classify, mark_injected
from heimdall.controller.watcher import WorkloadIndexer, WorkloadWatcher

__all__ = [
    "EventRecorder",
    "ExponentialRateLimiter",
    "InjectionController",
    "InjectionState",
    "RateLimitingQueue",
    "WorkloadIndexer",
    "WorkloadWatcher",
    "build_injected_workload",
    "classify",
    "mark_injected",
]
