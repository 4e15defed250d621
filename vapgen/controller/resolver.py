"""Maps dependent objects back to the ClusterPolicy they belong to."""

from typing import Any, Dict, List, Optional

from vapgen.core.logging import get_logger
from vapgen.exceptions import NotFoundError
from vapgen.models.resources import (
    Kind,
    exception_contains,
    exception_entries,
    exception_policy_name,
    is_cluster_scoped_single_rule,
    name_of,
    owner_references,
)
from vapgen.repositories.informer import Informer

logger = get_logger(__name__)


def exception_applies(polex: Dict[str, Any], policy_name: str, rule_name: str) -> bool:
    """Whether a PolicyException suppresses ``rule_name`` of ``policy_name``."""
    return exception_contains(polex, policy_name, rule_name)


def exception_policy_index(polex: Dict[str, Any]) -> List[str]:
    """Index values for the PolicyException informer: targeted ClusterPolicy names."""
    return sorted(
        {
            exception_policy_name(entry)
            for entry in exception_entries(polex)
            if is_cluster_scoped_single_rule(entry)
        }
    )


class OwnerResolver:
    """Resolves exceptions and generated objects to ClusterPolicy keys."""

    def __init__(self, policy_informer: Informer):
        self.policies = policy_informer

    def resolve_exception(self, polex: Dict[str, Any]) -> List[str]:
        """Keys of the ClusterPolicies a PolicyException targets.

        Resolution stops at the first entry whose policy is not in the index;
        a later change to the exception or the policy re-triggers naturally.
        """
        keys: List[str] = []
        for entry in exception_entries(polex):
            if not is_cluster_scoped_single_rule(entry):
                continue

            policy_name = exception_policy_name(entry)
            try:
                policy = self.policies.get(policy_name)
            except NotFoundError:
                break
            except Exception as e:
                logger.error(f"Unable to get policy {policy_name} from the index: {e}")
                break
            keys.append(name_of(policy))
        return keys

    def resolve_owned(self, obj: Dict[str, Any]) -> Optional[str]:
        """Key of the ClusterPolicy owning a generated object, if any.

        The owner reference is looked up in the policy index directly; generated
        objects are named after their policy, so no reverse index is kept.
        """
        refs = owner_references(obj)
        if len(refs) != 1:
            return None

        owner = refs[0]
        if owner.kind != Kind.CLUSTER_POLICY.value.kind:
            return None
        try:
            return name_of(self.policies.get(owner.name))
        except NotFoundError:
            return None
        except Exception as e:
            logger.debug(f"Unable to resolve owner {owner.name}: {e}")
            return None
