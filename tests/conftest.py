"""Pytest configuration and shared fixtures for controller tests."""

import copy
import itertools
import threading
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from vapgen.controller.controller import build_controller
from vapgen.controller.events import EventRecorder
from vapgen.core.config import Settings
from vapgen.exceptions import ConflictError, GenerationError, NotFoundError
from vapgen.models.resources import Kind, name_of, namespace_of
from vapgen.repositories.informer import ADDED, DELETED, MODIFIED
from vapgen.services.auth import Capability

# ============================================================================
# Test Doubles
# ============================================================================


class FakeStore:
    """In-memory object store with resource versions.

    Writes are echoed to attached informers the way watch streams would
    deliver them.
    """

    def __init__(self):
        self.objects: Dict[Tuple[Kind, str, str], Dict[str, Any]] = {}
        self.writes: List[Tuple[str, Kind, str]] = []
        self.failures: Dict[Tuple[str, Kind], Exception] = {}
        self.informers: Dict[Kind, Any] = {}
        self._versions = itertools.count(1)
        self._lock = threading.Lock()

    def attach(self, informers) -> None:
        self.informers = informers

    def _notify(self, kind: Kind, event_type: str, obj: Dict[str, Any]) -> None:
        informer = self.informers.get(kind)
        if informer is not None:
            informer.handle_event(event_type, copy.deepcopy(obj))

    def _maybe_fail(self, op: str, kind: Kind) -> None:
        error = self.failures.get((op, kind))
        if error is not None:
            raise error

    def _stamp(self, obj: Dict[str, Any]) -> None:
        meta = obj.setdefault("metadata", {})
        meta["resourceVersion"] = str(next(self._versions))
        meta.setdefault("uid", f"uid-{meta.get('name')}")

    # Store protocol

    def get(self, kind: Kind, name: str, namespace: str = "") -> Dict[str, Any]:
        self._maybe_fail("get", kind)
        with self._lock:
            obj = self.objects.get((kind, namespace, name))
            if obj is None:
                raise NotFoundError(kind.value.kind, name, namespace)
            return copy.deepcopy(obj)

    def list(self, kind: Kind, label_selector: str = "") -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(o) for (k, _, _), o in self.objects.items() if k is kind]

    def create(self, kind: Kind, obj: Dict[str, Any]) -> Dict[str, Any]:
        self._maybe_fail("create", kind)
        key = (kind, namespace_of(obj), name_of(obj))
        with self._lock:
            if key in self.objects:
                raise ConflictError(f"{name_of(obj)} already exists")
            stored = copy.deepcopy(obj)
            self._stamp(stored)
            self.objects[key] = stored
            self.writes.append(("create", kind, name_of(obj)))
        self._notify(kind, ADDED, stored)
        return copy.deepcopy(stored)

    def _replace(self, op: str, kind: Kind, obj: Dict[str, Any], status_only: bool) -> Dict[str, Any]:
        self._maybe_fail(op, kind)
        key = (kind, namespace_of(obj), name_of(obj))
        with self._lock:
            current = self.objects.get(key)
            if current is None:
                raise NotFoundError(kind.value.kind, name_of(obj), namespace_of(obj))
            if obj["metadata"].get("resourceVersion") != current["metadata"]["resourceVersion"]:
                raise ConflictError()
            if status_only:
                stored = copy.deepcopy(current)
                stored["status"] = copy.deepcopy(obj.get("status"))
            else:
                stored = copy.deepcopy(obj)
                if "status" in current:
                    stored["status"] = copy.deepcopy(current["status"])
            self._stamp(stored)
            self.objects[key] = stored
            self.writes.append((op, kind, name_of(obj)))
        self._notify(kind, MODIFIED, stored)
        return copy.deepcopy(stored)

    def update(self, kind: Kind, obj: Dict[str, Any]) -> Dict[str, Any]:
        return self._replace("update", kind, obj, status_only=False)

    def update_status(self, kind: Kind, obj: Dict[str, Any]) -> Dict[str, Any]:
        return self._replace("update_status", kind, obj, status_only=True)

    def delete(self, kind: Kind, name: str, namespace: str = "") -> None:
        self._maybe_fail("delete", kind)
        with self._lock:
            obj = self.objects.pop((kind, namespace, name), None)
            if obj is None:
                raise NotFoundError(kind.value.kind, name, namespace)
            self.writes.append(("delete", kind, name))
        self._notify(kind, DELETED, obj)

    # Test helpers

    def seed(self, kind: Kind, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Store an object as if created by someone else."""
        created = self.create(kind, obj)
        self.writes.pop()
        return created

    def find(self, kind: Kind, name: str, namespace: str = "") -> Optional[Dict[str, Any]]:
        obj = self.objects.get((kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def mutations(self, *kinds: Kind) -> List[Tuple[str, Kind, str]]:
        """create/update/delete writes, optionally restricted to ``kinds``."""
        return [
            w
            for w in self.writes
            if w[0] in ("create", "update", "delete") and (not kinds or w[1] in kinds)
        ]


class FakeAuthChecker:
    def __init__(self, allowed: Optional[Set[Capability]] = None):
        self.allowed = set(Capability) if allowed is None else set(allowed)
        self.calls: List[Capability] = []

    def has_permission(self, capability: Capability) -> bool:
        self.calls.append(capability)
        return capability in self.allowed


class FakeDiscovery:
    RESOURCES = {
        "Pod": [("", "v1", "pods")],
        "Deployment": [("apps", "v1", "deployments")],
        "ConfigMap": [("", "v1", "configmaps")],
    }

    def resolve(self, group: str, version: str, kind: str):
        if kind not in self.RESOURCES:
            raise GenerationError(f"unable to find API resource for kind {kind!r}")
        return [
            gvr
            for gvr in self.RESOURCES[kind]
            if (not group or gvr[0] == group) and (not version or gvr[1] == version)
        ]


class RecordingEventRecorder(EventRecorder):
    def __init__(self):
        super().__init__(None, enabled=False)
        self.events = []

    def add(self, *events) -> None:
        self.events.extend(events)


# ============================================================================
# Object Factories
# ============================================================================


def _policy(
    name: str = "p1",
    rule_name: str = "r1",
    kinds=("Deployment",),
    expression: str = "object.spec.replicas <= 5",
    action: str = "Audit",
) -> Dict[str, Any]:
    return {
        "apiVersion": "kyverno.io/v1",
        "kind": "ClusterPolicy",
        "metadata": {"name": name, "uid": f"uid-{name}"},
        "spec": {
            "validationFailureAction": action,
            "rules": [
                {
                    "name": rule_name,
                    "match": {"any": [{"resources": {"kinds": list(kinds)}}]},
                    "validate": {
                        "cel": {
                            "expressions": [
                                {"expression": expression, "message": "too many replicas"}
                            ]
                        }
                    },
                }
            ],
        },
    }


def _exception(
    name: str = "polex-1",
    policy_name: str = "p1",
    rule_names=("r1",),
    namespace: str = "default",
    kinds=("Deployment",),
    names=(),
    namespaces=(),
    conditions=None,
) -> Dict[str, Any]:
    resources: Dict[str, Any] = {"kinds": list(kinds)}
    if names:
        resources["names"] = list(names)
    if namespaces:
        resources["namespaces"] = list(namespaces)
    spec: Dict[str, Any] = {
        "exceptions": [{"policyName": policy_name, "ruleNames": list(rule_names)}],
        "match": {"any": [{"resources": resources}]},
    }
    if conditions:
        spec["conditions"] = conditions
    return {
        "apiVersion": "kyverno.io/v2",
        "kind": "PolicyException",
        "metadata": {"name": name, "namespace": namespace, "uid": f"uid-{name}"},
        "spec": spec,
    }


@pytest.fixture
def make_policy():
    """Factory for ClusterPolicies with a single CEL rule."""
    return _policy


@pytest.fixture
def make_exception():
    """Factory for PolicyExceptions."""
    return _exception


# ============================================================================
# Controller Fixtures
# ============================================================================


@pytest.fixture
def settings():
    return Settings(
        workers=2,
        max_retries=3,
        queue_base_delay=0.001,
        queue_max_delay=0.05,
        event_recording_enabled=False,
    )


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def checker():
    return FakeAuthChecker()


@pytest.fixture
def discovery():
    return FakeDiscovery()


@pytest.fixture
def recorder():
    return RecordingEventRecorder()


@pytest.fixture
def controller(store, checker, discovery, recorder, settings):
    """Controller wired to the in-memory store; the worker pool is not started."""
    built = build_controller(
        store=store,
        checker=checker,
        discovery=discovery,
        recorder=recorder,
        settings=settings,
    )
    store.attach(built.informers)
    yield built
    built.queue.shut_down()


@pytest.fixture
def reconciler(controller):
    return controller.reconciler
