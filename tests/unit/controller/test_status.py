"""Unit tests for ClusterPolicy status reporting."""

import pytest

from vapgen.controller.status import StatusReporter
from vapgen.exceptions import StoreError
from vapgen.models.resources import Kind, vap_status


@pytest.fixture
def reporter(store):
    return StatusReporter(store)


@pytest.mark.unit
class TestStatusReporter:
    def test_writes_status(self, store, reporter, make_policy):
        policy = store.seed(Kind.CLUSTER_POLICY, make_policy("p1"))

        reporter.report(policy, True, "")

        assert vap_status(store.find(Kind.CLUSTER_POLICY, "p1")) == {
            "generated": True,
            "message": "",
        }
        assert ("update_status", Kind.CLUSTER_POLICY, "p1") in store.writes

    def test_caller_object_untouched(self, store, reporter, make_policy):
        policy = store.seed(Kind.CLUSTER_POLICY, make_policy("p1"))

        reporter.report(policy, False, "nope")

        assert "status" not in policy

    def test_unchanged_status_not_rewritten(self, store, reporter, make_policy):
        policy = store.seed(Kind.CLUSTER_POLICY, make_policy("p1"))
        reporter.report(policy, False, "skip")
        store.writes.clear()

        reporter.report(policy, False, "skip")

        assert store.writes == []

    def test_uses_latest_version(self, store, reporter, make_policy):
        """A stale caller copy does not cause a conflict."""
        stale = store.seed(Kind.CLUSTER_POLICY, make_policy("p1"))
        fresh = store.find(Kind.CLUSTER_POLICY, "p1")
        fresh["spec"]["background"] = False
        store.update(Kind.CLUSTER_POLICY, fresh)

        reporter.report(stale, True, "")

        assert vap_status(store.find(Kind.CLUSTER_POLICY, "p1"))["generated"] is True

    def test_preserves_other_status_fields(self, store, reporter, make_policy):
        policy = make_policy("p1")
        policy["status"] = {"ready": True}
        seeded = store.seed(Kind.CLUSTER_POLICY, policy)

        reporter.report(seeded, True, "")

        assert store.find(Kind.CLUSTER_POLICY, "p1")["status"]["ready"] is True

    def test_policy_gone(self, store, reporter, make_policy):
        reporter.report(make_policy("missing"), True, "")

        assert store.writes == []

    def test_write_failure_swallowed(self, store, reporter, make_policy):
        policy = store.seed(Kind.CLUSTER_POLICY, make_policy("p1"))
        store.failures[("update_status", Kind.CLUSTER_POLICY)] = StoreError("boom", 500)

        reporter.report(policy, True, "")

        assert vap_status(store.find(Kind.CLUSTER_POLICY, "p1")) == {}
