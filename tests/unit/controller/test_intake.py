"""Unit tests for turning watch events into queue keys."""

import copy

import pytest

from vapgen.controller.intake import ChangeIntake, unwrap_tombstone
from vapgen.controller.resolver import OwnerResolver
from vapgen.models.resources import Kind
from vapgen.repositories.informer import ADDED, DELETED, MODIFIED, DeletedFinalStateUnknown


def drain(queue):
    keys = []
    while len(queue):
        key, _ = queue.get(timeout=0.1)
        keys.append(key)
        queue.done(key)
        queue.forget(key)
    return keys


def owned_by(name, policy="p1", kind="ValidatingAdmissionPolicy"):
    return {
        "apiVersion": "admissionregistration.k8s.io/v1",
        "kind": kind,
        "metadata": {
            "name": name,
            "ownerReferences": [
                {"apiVersion": "kyverno.io/v1", "kind": "ClusterPolicy", "name": policy, "uid": "u"}
            ],
        },
        "spec": {"validations": [{"expression": "true"}]},
    }


@pytest.fixture
def policies(controller):
    return controller.informer(Kind.CLUSTER_POLICY)


@pytest.fixture
def exceptions(controller):
    return controller.informer(Kind.POLICY_EXCEPTION)


@pytest.fixture
def queue(controller, policies, make_policy):
    policies.handle_event(ADDED, make_policy("p1"))
    drain(controller.queue)
    return controller.queue


@pytest.mark.unit
class TestPolicyEvents:
    def test_add_enqueues(self, controller, policies, make_policy):
        policies.handle_event(ADDED, make_policy("p2"))

        assert drain(controller.queue) == ["p2"]

    def test_spec_change_enqueues(self, queue, policies, make_policy):
        changed = make_policy("p1", expression="false")
        policies.handle_event(MODIFIED, changed)

        assert drain(queue) == ["p1"]

    def test_status_only_change_ignored(self, queue, policies, make_policy):
        policy = make_policy("p1")
        policy["status"] = {"validatingadmissionpolicy": {"generated": True, "message": ""}}
        policy["metadata"]["resourceVersion"] = "42"
        policies.handle_event(MODIFIED, policy)

        assert drain(queue) == []

    def test_delete_enqueues(self, queue, policies, make_policy):
        policies.handle_event(DELETED, make_policy("p1"))

        assert drain(queue) == ["p1"]

    def test_repeated_events_coalesce(self, queue, policies, make_policy):
        for i in range(5):
            policies.handle_event(MODIFIED, make_policy("p1", expression=f"x < {i}"))

        assert drain(queue) == ["p1"]


@pytest.mark.unit
class TestExceptionEvents:
    def test_add_enqueues_target(self, queue, exceptions, make_exception):
        exceptions.handle_event(ADDED, make_exception())

        assert drain(queue) == ["p1"]

    def test_update_gated_on_spec(self, queue, exceptions, make_exception):
        polex = make_exception()
        exceptions.handle_event(ADDED, polex)
        drain(queue)

        relabelled = copy.deepcopy(polex)
        relabelled["metadata"]["labels"] = {"team": "a"}
        exceptions.handle_event(MODIFIED, relabelled)
        assert drain(queue) == []

        changed = make_exception(names=("web",))
        exceptions.handle_event(MODIFIED, changed)
        assert drain(queue) == ["p1"]

    def test_delete_enqueues_target(self, queue, exceptions, make_exception):
        exceptions.handle_event(ADDED, make_exception())
        drain(queue)

        exceptions.handle_event(DELETED, make_exception())

        assert drain(queue) == ["p1"]

    def test_namespaced_policy_name_ignored(self, queue, exceptions, make_exception):
        exceptions.handle_event(ADDED, make_exception(policy_name="ns/p1"))

        assert drain(queue) == []

    def test_unknown_policy_ignored(self, queue, exceptions, make_exception):
        exceptions.handle_event(ADDED, make_exception(policy_name="nope"))

        assert drain(queue) == []


@pytest.mark.unit
class TestOwnedEvents:
    @pytest.mark.parametrize(
        "kind, name, resource_kind",
        [
            (Kind.VALIDATING_ADMISSION_POLICY, "p1", "ValidatingAdmissionPolicy"),
            (
                Kind.VALIDATING_ADMISSION_POLICY_BINDING,
                "p1-binding",
                "ValidatingAdmissionPolicyBinding",
            ),
        ],
    )
    def test_add_update_delete(self, controller, queue, kind, name, resource_kind):
        informer = controller.informer(kind)
        obj = owned_by(name, kind=resource_kind)

        informer.handle_event(ADDED, obj)
        assert drain(queue) == ["p1"]

        informer.handle_event(MODIFIED, copy.deepcopy(obj))
        assert drain(queue) == []

        changed = copy.deepcopy(obj)
        changed["spec"] = {"validations": [{"expression": "false"}]}
        informer.handle_event(MODIFIED, changed)
        assert drain(queue) == ["p1"]

        informer.handle_event(DELETED, changed)
        assert drain(queue) == ["p1"]

    def test_unowned_object_ignored(self, controller, queue):
        informer = controller.informer(Kind.VALIDATING_ADMISSION_POLICY)
        informer.handle_event(ADDED, {"metadata": {"name": "handwritten"}, "spec": {}})

        assert drain(queue) == []

    def test_owner_not_in_index_ignored(self, controller, queue):
        informer = controller.informer(Kind.VALIDATING_ADMISSION_POLICY)
        informer.handle_event(ADDED, owned_by("orphan", policy="deleted"))

        assert drain(queue) == []


@pytest.mark.unit
class TestTombstones:
    @pytest.fixture
    def intake(self, controller, queue):
        resolver = OwnerResolver(controller.informer(Kind.CLUSTER_POLICY))
        return ChangeIntake(queue, resolver)

    def test_unwrap_tombstone(self, make_policy):
        policy = make_policy("p1")

        assert unwrap_tombstone(policy) is policy
        assert unwrap_tombstone(DeletedFinalStateUnknown(key="p1", obj=policy)) is policy
        assert unwrap_tombstone("garbage") is None

    def test_policy_tombstone_enqueues(self, intake, queue, make_policy):
        """Deletes observed only on relist still reach the queue."""
        intake.delete_policy(DeletedFinalStateUnknown(key="p9", obj=make_policy("p9")))

        assert drain(queue) == ["p9"]

    def test_exception_tombstone_enqueues(self, intake, queue, make_exception):
        polex = make_exception()
        intake.delete_exception(DeletedFinalStateUnknown(key="default/polex-1", obj=polex))

        assert drain(queue) == ["p1"]

    def test_unknown_delete_payload_dropped(self, intake, queue):
        intake.delete_policy("not-an-object")
        intake.delete_exception(None)
        intake.delete_owned(42)

        assert drain(queue) == []

    def test_relist_emits_tombstones(self, controller, queue, make_policy):
        controller.informer(Kind.CLUSTER_POLICY).replace([make_policy("p2")])

        assert sorted(drain(queue)) == ["p1", "p2"]
