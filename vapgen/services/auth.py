"""Runtime permission checks for the generated object kinds."""

from enum import Enum
from typing import Sequence

from kubernetes import client

from vapgen.core.logging import get_logger

logger = get_logger(__name__)

ADMISSION_GROUP = "admissionregistration.k8s.io"
REQUIRED_VERBS = ("get", "list", "watch", "create", "update", "delete")


class Capability(str, Enum):
    MANAGE_ADMISSION_POLICY = "validatingadmissionpolicies"
    MANAGE_BINDING = "validatingadmissionpolicybindings"


class AuthChecker:
    """Asks the API server what the controller's service account may do.

    Answers are never cached: RBAC can change while the controller runs.
    """

    def __init__(
        self,
        authorization_api: client.AuthorizationV1Api,
        verbs: Sequence[str] = REQUIRED_VERBS,
    ):
        self.api = authorization_api
        self.verbs = tuple(verbs)

    def can_i(self, group: str, resource: str, verb: str) -> bool:
        review = client.V1SelfSubjectAccessReview(
            spec=client.V1SelfSubjectAccessReviewSpec(
                resource_attributes=client.V1ResourceAttributes(
                    group=group, resource=resource, verb=verb
                )
            )
        )
        try:
            result = self.api.create_self_subject_access_review(body=review)
        except Exception as e:
            logger.error(f"Failed to check permission {verb} {group}/{resource}: {e}")
            return False
        return bool(result.status and result.status.allowed)

    def has_permission(self, capability: Capability) -> bool:
        for verb in self.verbs:
            if not self.can_i(ADMISSION_GROUP, capability.value, verb):
                logger.debug(f"Missing permission: {verb} {capability.value}")
                return False
        return True
