"""Audit events for successful generation."""

import queue
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from kubernetes import client

from vapgen.core import metrics
from vapgen.core.logging import get_logger
from vapgen.models.resources import Kind, name_of, uid_of

logger = get_logger(__name__)

REPORTING_CONTROLLER = "vapgen-controller"
REASON_POLICY_APPLIED = "PolicyApplied"
ACTION_RESOURCE_GENERATED = "Resource Generated"
EVENT_TYPE_NORMAL = "Normal"


@dataclass
class Event:
    """An event about a ClusterPolicy."""

    regarding_name: str
    regarding_uid: str
    reason: str
    action: str
    message: str
    type: str = EVENT_TYPE_NORMAL

    def to_body(self, namespace: str, reporting_instance: str) -> Dict[str, Any]:
        rk = Kind.CLUSTER_POLICY.value
        return {
            "apiVersion": "events.k8s.io/v1",
            "kind": "Event",
            "metadata": {
                "generateName": f"{self.regarding_name}.",
                "namespace": namespace,
            },
            "eventTime": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "regarding": {
                "apiVersion": rk.api_version,
                "kind": rk.kind,
                "name": self.regarding_name,
                "uid": self.regarding_uid,
            },
            "reason": self.reason,
            "action": self.action,
            "note": self.message,
            "type": self.type,
            "reportingController": REPORTING_CONTROLLER,
            "reportingInstance": reporting_instance,
        }


def new_generation_events(
    policy: Dict[str, Any], vap_name: str, binding_name: str
) -> List[Event]:
    return [
        Event(
            regarding_name=name_of(policy),
            regarding_uid=uid_of(policy),
            reason=REASON_POLICY_APPLIED,
            action=ACTION_RESOURCE_GENERATED,
            message=(
                f"ValidatingAdmissionPolicy {vap_name} and "
                f"ValidatingAdmissionPolicyBinding {binding_name} are generated successfully"
            ),
        )
    ]


class EventRecorder:
    """Posts events from a bounded buffer on a background thread."""

    def __init__(
        self,
        events_api: Optional[client.EventsV1Api] = None,
        namespace: str = "default",
        buffer_size: int = 1000,
        enabled: bool = True,
        reporting_instance: str = REPORTING_CONTROLLER,
    ):
        self.events_api = events_api
        self.namespace = namespace
        self.enabled = enabled and events_api is not None
        self.reporting_instance = reporting_instance
        self._buffer: "queue.Queue[Optional[Event]]" = queue.Queue(maxsize=buffer_size)
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if not self.enabled or self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._drain, name="event-recorder", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        try:
            self._buffer.put(None, timeout=timeout)
        except queue.Full:
            logger.warning("Event buffer full during shutdown, pending events dropped")
        self._thread.join(timeout)
        self._thread = None

    def add(self, *events: Event) -> None:
        if not self.enabled:
            return
        for event in events:
            try:
                self._buffer.put_nowait(event)
            except queue.Full:
                metrics.events_posted.labels(result="dropped").inc()
                logger.warning(
                    f"Event buffer full, dropping {event.reason} event for {event.regarding_name}"
                )

    def post(self, event: Event) -> None:
        body = event.to_body(self.namespace, self.reporting_instance)
        try:
            self.events_api.create_namespaced_event(namespace=self.namespace, body=body)
            metrics.events_posted.labels(result="success").inc()
        except Exception as e:
            metrics.events_posted.labels(result="error").inc()
            logger.error(f"Failed to post event for policy {event.regarding_name}: {e}")

    def _drain(self) -> None:
        while True:
            event = self._buffer.get()
            if event is None:
                return
            self.post(event)
