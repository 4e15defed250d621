"""Controller assembly: informers, intake, queue and reconciler."""

import threading
from typing import Any, Dict, Optional

from vapgen.controller import runner
from vapgen.controller.events import EventRecorder
from vapgen.controller.intake import ChangeIntake
from vapgen.controller.queue import RateLimitingQueue, default_controller_rate_limiter
from vapgen.controller.reconciler import EXCEPTION_POLICY_INDEX, Eligibility, Reconciler
from vapgen.controller.resolver import OwnerResolver, exception_policy_index
from vapgen.controller.status import StatusReporter
from vapgen.core.config import Settings, get_settings
from vapgen.core.logging import get_logger
from vapgen.exceptions import NotFoundError
from vapgen.models.resources import Kind, name_of, namespace_of, object_key
from vapgen.repositories.informer import DELETED, Informer
from vapgen.repositories.store import Store
from vapgen.services import admissionpolicy
from vapgen.services.auth import AuthChecker
from vapgen.services.discovery import Discovery

logger = get_logger(__name__)

CONTROLLER_NAME = "validatingadmissionpolicy-generate-controller"

# ClusterPolicies first, so dependents resolve against a populated index
SYNC_ORDER = (
    Kind.CLUSTER_POLICY,
    Kind.POLICY_EXCEPTION,
    Kind.VALIDATING_ADMISSION_POLICY,
    Kind.VALIDATING_ADMISSION_POLICY_BINDING,
)


class Controller:
    """Runs the reconcile loop for generated admission policies."""

    def __init__(
        self,
        queue: RateLimitingQueue,
        informers: Dict[Kind, Informer],
        reconciler: Reconciler,
        recorder: EventRecorder,
        settings: Settings,
    ):
        self.queue = queue
        self.informers = informers
        self.reconciler = reconciler
        self.recorder = recorder
        self.settings = settings
        self._running = threading.Event()

    def informer(self, kind: Kind) -> Informer:
        return self.informers[kind]

    def sync(self, store: Store) -> None:
        """Populate every informer from a full listing of its kind."""
        for kind in SYNC_ORDER:
            self.informers[kind].replace(store.list(kind))

    def prune(self, store: Store) -> int:
        """Evict cached objects the API server no longer has.

        Covers deletions that happened between the initial listing and the
        start of the watches. Candidates missing from a fresh listing are
        confirmed with a get, so objects the watch delivered after the
        listing are kept.
        """
        evicted = 0
        for kind in SYNC_ORDER:
            informer = self.informers[kind]
            listed = {object_key(o) for o in store.list(kind)}
            for obj in informer.list():
                if object_key(obj) in listed:
                    continue
                try:
                    store.get(kind, name_of(obj), namespace_of(obj))
                except NotFoundError:
                    informer.handle_event(DELETED, obj)
                    evicted += 1
        if evicted:
            logger.info(f"Evicted {evicted} stale objects from the cache")
        return evicted

    def run(self, stop_event: threading.Event, workers: Optional[int] = None) -> None:
        """Block running workers until ``stop_event`` is set."""
        self.recorder.start()
        self._running.set()
        try:
            runner.run(
                self.queue,
                self.reconciler.reconcile,
                workers or self.settings.workers,
                stop_event,
                self.settings.max_retries,
                name=CONTROLLER_NAME,
            )
        finally:
            self._running.clear()
            self.recorder.stop()

    def health(self) -> Dict[str, Any]:
        return {
            "running": self._running.is_set(),
            "queue_depth": len(self.queue),
            "synced": all(i.has_synced for i in self.informers.values()),
            "policies": len(self.informers[Kind.CLUSTER_POLICY]),
        }


def build_controller(
    store: Store,
    checker: AuthChecker,
    discovery: Discovery,
    recorder: EventRecorder,
    settings: Optional[Settings] = None,
    can_generate: Eligibility = admissionpolicy.can_generate,
) -> Controller:
    """Wire informers to the intake and the reconciler."""
    settings = settings or get_settings()

    informers = {
        Kind.CLUSTER_POLICY: Informer(Kind.CLUSTER_POLICY),
        Kind.POLICY_EXCEPTION: Informer(
            Kind.POLICY_EXCEPTION,
            indexers={EXCEPTION_POLICY_INDEX: exception_policy_index},
        ),
        Kind.VALIDATING_ADMISSION_POLICY: Informer(Kind.VALIDATING_ADMISSION_POLICY),
        Kind.VALIDATING_ADMISSION_POLICY_BINDING: Informer(
            Kind.VALIDATING_ADMISSION_POLICY_BINDING
        ),
    }

    queue = RateLimitingQueue(
        name=CONTROLLER_NAME,
        rate_limiter=default_controller_rate_limiter(
            settings.queue_base_delay,
            settings.queue_max_delay,
            settings.queue_qps,
            settings.queue_burst,
        ),
    )

    intake = ChangeIntake(queue, OwnerResolver(informers[Kind.CLUSTER_POLICY]))
    for kind, informer in informers.items():
        informer.add_event_handlers(intake.handlers_for(kind))

    reconciler = Reconciler(
        store=store,
        policies=informers[Kind.CLUSTER_POLICY],
        exceptions=informers[Kind.POLICY_EXCEPTION],
        admission_policies=informers[Kind.VALIDATING_ADMISSION_POLICY],
        bindings=informers[Kind.VALIDATING_ADMISSION_POLICY_BINDING],
        checker=checker,
        discovery=discovery,
        status=StatusReporter(store),
        recorder=recorder,
        can_generate=can_generate,
    )

    return Controller(queue, informers, reconciler, recorder, settings)
