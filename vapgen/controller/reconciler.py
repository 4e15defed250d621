"""Reconciliation of ClusterPolicies into ValidatingAdmissionPolicies and bindings."""

import copy
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from vapgen.controller.events import EventRecorder, new_generation_events
from vapgen.controller.resolver import exception_applies
from vapgen.controller.status import StatusReporter
from vapgen.core import metrics
from vapgen.core.logging import get_logger
from vapgen.exceptions import NotFoundError
from vapgen.models.resources import (
    Kind,
    binding_name_for,
    first_rule_name,
    has_validate,
    name_of,
    resource_version,
    spec_of,
)
from vapgen.repositories.informer import DELETED, Informer
from vapgen.repositories.store import Store
from vapgen.services import admissionpolicy
from vapgen.services.auth import AuthChecker, Capability
from vapgen.services.discovery import Discovery

logger = get_logger(__name__)

EXCEPTION_POLICY_INDEX = "policy"

MISSING_VAP_PERMISSION = "insufficient permissions to generate ValidatingAdmissionPolicies"
MISSING_BINDING_PERMISSION = (
    "insufficient permissions to generate ValidatingAdmissionPolicyBindings"
)
DEFAULT_SKIP_MESSAGE = "skip generating: a policy exception is configured."

Eligibility = Callable[[Dict[str, Any], Sequence[Dict[str, Any]]], Tuple[bool, str]]


class Reconciler:
    """Converges the generated objects of one ClusterPolicy per call.

    Reads come from the informers' local index; writes go to the store and
    are version-checked. Callers guarantee at most one concurrent call per
    key.
    """

    def __init__(
        self,
        store: Store,
        policies: Informer,
        exceptions: Informer,
        admission_policies: Informer,
        bindings: Informer,
        checker: AuthChecker,
        discovery: Discovery,
        status: StatusReporter,
        recorder: EventRecorder,
        can_generate: Eligibility = admissionpolicy.can_generate,
    ):
        self.store = store
        self.policies = policies
        self.exceptions = exceptions
        self.admission_policies = admission_policies
        self.bindings = bindings
        self.checker = checker
        self.discovery = discovery
        self.status = status
        self.recorder = recorder
        self.can_generate = can_generate

    def reconcile(self, key: str) -> None:
        """Reconcile one ClusterPolicy. Raises to request a retry."""
        with metrics.reconcile_duration.time():
            try:
                result = self._reconcile(key)
            except Exception:
                metrics.reconcile_total.labels(result="error").inc()
                raise
        metrics.reconcile_total.labels(result=result).inc()

    def _reconcile(self, key: str) -> str:
        try:
            policy = self.policies.get(key)
        except NotFoundError:
            logger.debug(f"Policy {key} no longer exists", extra={"policy": key})
            return "skipped"

        spec = spec_of(policy)
        if not has_validate(spec):
            return "skipped"

        if not self.checker.has_permission(Capability.MANAGE_ADMISSION_POLICY):
            logger.info(MISSING_VAP_PERMISSION, extra={"policy": key})
            self.status.report(policy, False, MISSING_VAP_PERMISSION)
            return "skipped"

        if not self.checker.has_permission(Capability.MANAGE_BINDING):
            logger.info(MISSING_BINDING_PERMISSION, extra={"policy": key})
            self.status.report(policy, False, MISSING_BINDING_PERMISSION)
            return "skipped"

        vap_name = name_of(policy)
        binding_name = binding_name_for(vap_name)

        observed_vap = self._observe(self.admission_policies, vap_name)
        observed_binding = self._observe(self.bindings, binding_name)

        exceptions = self._exceptions_for(key, first_rule_name(policy) or "")

        ok, message = self.can_generate(spec, exceptions)
        if not ok:
            if observed_vap is not None:
                self._delete(Kind.VALIDATING_ADMISSION_POLICY, vap_name)
            if observed_binding is not None:
                self._delete(Kind.VALIDATING_ADMISSION_POLICY_BINDING, binding_name)

            message = message or DEFAULT_SKIP_MESSAGE
            logger.info(
                f"Not generating admission policy for {key}: {message}",
                extra={"policy": key},
            )
            self.status.report(policy, False, message)
            return "skipped"

        missing = observed_vap is None or observed_binding is None
        if missing and not self._still_exists(policy):
            return "skipped"

        try:
            self._apply(
                Kind.VALIDATING_ADMISSION_POLICY,
                observed_vap or {"metadata": {"name": vap_name}},
                lambda target: admissionpolicy.build_admission_policy(
                    self.discovery, target, policy, exceptions
                ),
            )
            self._apply(
                Kind.VALIDATING_ADMISSION_POLICY_BINDING,
                observed_binding or {"metadata": {"name": binding_name}},
                lambda target: admissionpolicy.build_binding(target, policy),
            )
        except Exception as e:
            logger.error(
                f"Failed to generate admission policy for {key}: {e}",
                extra={"policy": key},
            )
            self.status.report(policy, False, str(e))
            raise

        self.status.report(policy, True, "")
        self.recorder.add(*new_generation_events(policy, vap_name, binding_name))
        logger.info(
            f"Generated {vap_name} and {binding_name} for policy {key}",
            extra={"policy": key},
        )
        return "success"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _observe(informer: Informer, name: str) -> Optional[Dict[str, Any]]:
        try:
            return informer.get(name)
        except NotFoundError:
            return None

    def _still_exists(self, policy: Dict[str, Any]) -> bool:
        """Confirm a cached policy against the API server before creating for it.

        A policy deleted before its watch started stays in the local index
        until the next relist. It is evicted here instead of generated.
        """
        key = name_of(policy)
        try:
            self.store.get(Kind.CLUSTER_POLICY, key)
        except NotFoundError:
            logger.info(
                f"Policy {key} no longer exists, evicting it from the cache",
                extra={"policy": key},
            )
            self.policies.handle_event(DELETED, policy)
            return False
        return True

    def _exceptions_for(self, policy_name: str, rule_name: str) -> List[Dict[str, Any]]:
        """Exceptions targeting the policy's rule, without namespace qualifiers."""
        return [
            polex
            for polex in self.exceptions.by_index(EXCEPTION_POLICY_INDEX, policy_name)
            if exception_applies(polex, policy_name, rule_name)
        ]

    def _apply(
        self,
        kind: Kind,
        observed: Dict[str, Any],
        build: Callable[[Dict[str, Any]], None],
    ) -> Dict[str, Any]:
        """Create the object when it has never been stored, otherwise update it.

        Updates rebuild a copy of the observed object and are skipped when
        nothing changed.
        """
        label = kind.value.kind
        target = copy.deepcopy(observed)
        build(target)

        if not resource_version(observed):
            try:
                created = self.store.create(kind, target)
            except Exception:
                metrics.derived_operations.labels(kind=label, operation="create", result="error").inc()
                raise
            metrics.derived_operations.labels(kind=label, operation="create", result="success").inc()
            return created

        if target == observed:
            return observed
        try:
            updated = self.store.update(kind, target)
        except Exception:
            metrics.derived_operations.labels(kind=label, operation="update", result="error").inc()
            raise
        metrics.derived_operations.labels(kind=label, operation="update", result="success").inc()
        return updated

    def _delete(self, kind: Kind, name: str) -> None:
        label = kind.value.kind
        try:
            self.store.delete(kind, name)
        except NotFoundError:
            return
        except Exception:
            metrics.derived_operations.labels(kind=label, operation="delete", result="error").inc()
            raise
        metrics.derived_operations.labels(kind=label, operation="delete", result="success").inc()
        logger.info(f"Deleted {label} {name}")
