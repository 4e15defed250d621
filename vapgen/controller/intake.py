"""Normalizes watch events from the four watched kinds into queue keys."""

from typing import Any, Dict, Optional

from vapgen.controller.queue import RateLimitingQueue
from vapgen.controller.resolver import OwnerResolver
from vapgen.core.logging import get_logger
from vapgen.models.resources import Kind, name_of, spec_of, uid_of
from vapgen.repositories.informer import DeletedFinalStateUnknown, EventHandlers

logger = get_logger(__name__)


def unwrap_tombstone(obj: Any) -> Optional[Dict[str, Any]]:
    """Return the last known object for a delete notification."""
    if isinstance(obj, DeletedFinalStateUnknown):
        obj = obj.obj
    if isinstance(obj, dict):
        return obj
    return None


def spec_changed(old: Dict[str, Any], new: Dict[str, Any]) -> bool:
    return spec_of(old) != spec_of(new)


class ChangeIntake:
    """Event handlers feeding the shared work queue, keyed by ClusterPolicy name."""

    def __init__(self, queue: RateLimitingQueue, resolver: OwnerResolver):
        self.queue = queue
        self.resolver = resolver

    def handlers_for(self, kind: Kind) -> EventHandlers:
        if kind is Kind.CLUSTER_POLICY:
            return EventHandlers(self.add_policy, self.update_policy, self.delete_policy)
        if kind is Kind.POLICY_EXCEPTION:
            return EventHandlers(
                self.add_exception, self.update_exception, self.delete_exception
            )
        if kind in (
            Kind.VALIDATING_ADMISSION_POLICY,
            Kind.VALIDATING_ADMISSION_POLICY_BINDING,
        ):
            return EventHandlers(self.add_owned, self.update_owned, self.delete_owned)
        raise ValueError(f"No handlers for kind {kind}")

    # ------------------------------------------------------------------
    # ClusterPolicy
    # ------------------------------------------------------------------

    def add_policy(self, obj: Dict[str, Any]) -> None:
        logger.debug(f"Policy created: {name_of(obj)} ({uid_of(obj)})")
        self.enqueue_policy(obj)

    def update_policy(self, old: Dict[str, Any], obj: Dict[str, Any]) -> None:
        if not spec_changed(old, obj):
            return
        logger.debug(f"Policy updated: {name_of(obj)} ({uid_of(obj)})")
        self.enqueue_policy(obj)

    def delete_policy(self, obj: Any) -> None:
        policy = unwrap_tombstone(obj)
        if policy is None:
            logger.info(f"Failed to get deleted policy object: {obj!r}")
            return
        logger.debug(f"Policy deleted: {name_of(policy)} ({uid_of(policy)})")
        self.enqueue_policy(policy)

    def enqueue_policy(self, obj: Dict[str, Any]) -> None:
        key = name_of(obj)
        if not key:
            logger.error("Failed to extract policy name")
            return
        self.queue.add(key)

    # ------------------------------------------------------------------
    # PolicyException
    # ------------------------------------------------------------------

    def add_exception(self, obj: Dict[str, Any]) -> None:
        logger.debug(f"Policy exception created: {name_of(obj)} ({uid_of(obj)})")
        self.enqueue_exception(obj)

    def update_exception(self, old: Dict[str, Any], obj: Dict[str, Any]) -> None:
        if not spec_changed(old, obj):
            return
        logger.debug(f"Policy exception updated: {name_of(obj)} ({uid_of(obj)})")
        self.enqueue_exception(obj)

    def delete_exception(self, obj: Any) -> None:
        polex = unwrap_tombstone(obj)
        if polex is None:
            logger.info(f"Failed to get deleted policy exception: {obj!r}")
            return
        logger.debug(f"Policy exception deleted: {name_of(polex)} ({uid_of(polex)})")
        self.enqueue_exception(polex)

    def enqueue_exception(self, obj: Dict[str, Any]) -> None:
        for key in self.resolver.resolve_exception(obj):
            self.queue.add(key)

    # ------------------------------------------------------------------
    # ValidatingAdmissionPolicy / ValidatingAdmissionPolicyBinding
    # ------------------------------------------------------------------

    def add_owned(self, obj: Dict[str, Any]) -> None:
        self.enqueue_owned(obj)

    def update_owned(self, old: Dict[str, Any], obj: Dict[str, Any]) -> None:
        if not spec_changed(old, obj):
            return
        self.enqueue_owned(obj)

    def delete_owned(self, obj: Any) -> None:
        owned = unwrap_tombstone(obj)
        if owned is None:
            return
        self.enqueue_owned(owned)

    def enqueue_owned(self, obj: Dict[str, Any]) -> None:
        key = self.resolver.resolve_owned(obj)
        if key:
            self.queue.add(key)
