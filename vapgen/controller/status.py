"""Writes the generation outcome onto ClusterPolicy status."""

import copy
from typing import Any, Dict

from vapgen.core.logging import get_logger
from vapgen.models.resources import (
    VALIDATING_ADMISSION_POLICY_STATUS,
    Kind,
    name_of,
    vap_status,
)
from vapgen.repositories.store import Store

logger = get_logger(__name__)


class StatusReporter:
    """Best-effort writer for ``status.validatingadmissionpolicy``."""

    def __init__(self, store: Store):
        self.store = store

    def report(self, policy: Dict[str, Any], generated: bool, message: str) -> None:
        """Record the outcome on the latest version of ``policy``.

        The caller's object is left untouched. Failures are logged and never
        raised: status is telemetry, not part of the reconcile result.
        """
        name = name_of(policy)
        desired = {"generated": generated, "message": message}
        try:
            latest = self.store.get(Kind.CLUSTER_POLICY, name)
            if vap_status(latest) == desired:
                logger.debug(f"Status of policy {name} already up to date")
                return

            updated = copy.deepcopy(latest)
            status = updated.setdefault("status", {}) or {}
            status[VALIDATING_ADMISSION_POLICY_STATUS] = desired
            updated["status"] = status

            self.store.update_status(Kind.CLUSTER_POLICY, updated)
            logger.debug(f"Updated status of policy {name}: {desired}")
        except Exception as e:
            logger.error(f"Failed to update status of policy {name}: {e}")
