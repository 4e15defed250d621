"""Resource kinds and accessors for the objects the controller watches.

Objects are kept in the JSON shape returned by the API server. The helpers
here centralise the few fields the controller reads so the rest of the code
never reaches into nested dicts directly.
"""

from dataclasses import dataclass
from enum import Enum
from fnmatch import fnmatchcase
from typing import Any, Dict, List, Optional

VALIDATING_ADMISSION_POLICY_STATUS = "validatingadmissionpolicy"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "kyverno"
BINDING_SUFFIX = "-binding"


@dataclass(frozen=True)
class ResourceKind:
    """A watched API resource."""

    group: str
    version: str
    kind: str
    plural: str
    namespaced: bool = False

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version


class Kind(Enum):
    CLUSTER_POLICY = ResourceKind("kyverno.io", "v1", "ClusterPolicy", "clusterpolicies")
    POLICY_EXCEPTION = ResourceKind(
        "kyverno.io", "v2", "PolicyException", "policyexceptions", namespaced=True
    )
    VALIDATING_ADMISSION_POLICY = ResourceKind(
        "admissionregistration.k8s.io",
        "v1",
        "ValidatingAdmissionPolicy",
        "validatingadmissionpolicies",
    )
    VALIDATING_ADMISSION_POLICY_BINDING = ResourceKind(
        "admissionregistration.k8s.io",
        "v1",
        "ValidatingAdmissionPolicyBinding",
        "validatingadmissionpolicybindings",
    )


@dataclass(frozen=True)
class OwnerReference:
    """Back-link from a generated object to the ClusterPolicy that produced it."""

    api_version: str
    kind: str
    name: str
    uid: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OwnerReference":
        return cls(
            api_version=data.get("apiVersion", ""),
            kind=data.get("kind", ""),
            name=data.get("name", ""),
            uid=data.get("uid", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
        }


# ---------------------------------------------------------------------------
# Generic metadata accessors
# ---------------------------------------------------------------------------


def metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("metadata") or {}


def name_of(obj: Dict[str, Any]) -> str:
    return metadata(obj).get("name", "")


def namespace_of(obj: Dict[str, Any]) -> str:
    return metadata(obj).get("namespace", "") or ""


def uid_of(obj: Dict[str, Any]) -> str:
    return metadata(obj).get("uid", "")


def resource_version(obj: Dict[str, Any]) -> str:
    return metadata(obj).get("resourceVersion", "") or ""


def object_key(obj: Dict[str, Any]) -> str:
    """Cache key in the ``namespace/name`` form, or ``name`` for cluster scope."""
    namespace = namespace_of(obj)
    name = name_of(obj)
    return f"{namespace}/{name}" if namespace else name


def spec_of(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("spec") or {}


def owner_references(obj: Dict[str, Any]) -> List[OwnerReference]:
    return [OwnerReference.from_dict(o) for o in metadata(obj).get("ownerReferences") or []]


def owner_reference_for(policy: Dict[str, Any]) -> OwnerReference:
    return OwnerReference(
        api_version=Kind.CLUSTER_POLICY.value.api_version,
        kind=Kind.CLUSTER_POLICY.value.kind,
        name=name_of(policy),
        uid=uid_of(policy),
    )


# ---------------------------------------------------------------------------
# ClusterPolicy
# ---------------------------------------------------------------------------


def rules_of(policy: Dict[str, Any]) -> List[Dict[str, Any]]:
    return spec_of(policy).get("rules") or []


def has_validate(spec: Dict[str, Any]) -> bool:
    """True when any rule in the policy spec carries a validate block."""
    return any(rule.get("validate") for rule in spec.get("rules") or [])


def vap_status(policy: Dict[str, Any]) -> Dict[str, Any]:
    return (policy.get("status") or {}).get(VALIDATING_ADMISSION_POLICY_STATUS) or {}


def binding_name_for(vap_name: str) -> str:
    return vap_name + BINDING_SUFFIX


# ---------------------------------------------------------------------------
# PolicyException
# ---------------------------------------------------------------------------


def exception_entries(polex: Dict[str, Any]) -> List[Dict[str, Any]]:
    return spec_of(polex).get("exceptions") or []


def exception_policy_name(entry: Dict[str, Any]) -> str:
    return entry.get("policyName", "")


def exception_rule_names(entry: Dict[str, Any]) -> List[str]:
    return entry.get("ruleNames") or []


def is_cluster_scoped_single_rule(entry: Dict[str, Any]) -> bool:
    """Entries the generator can project onto a single ValidatingAdmissionPolicy.

    Namespace-qualified policy names refer to namespaced Policies, and entries
    naming several rules cannot be expressed on one generated object.
    """
    return "/" not in exception_policy_name(entry) and len(exception_rule_names(entry)) <= 1


def exception_contains(polex: Dict[str, Any], policy_name: str, rule_name: str) -> bool:
    """Whether the exception targets the policy and rule.

    Rule names may be shell-style wildcards.
    """
    for entry in exception_entries(polex):
        if not is_cluster_scoped_single_rule(entry):
            continue
        if exception_policy_name(entry) != policy_name:
            continue
        rule_names = exception_rule_names(entry)
        if not rule_names or any(fnmatchcase(rule_name, n) for n in rule_names):
            return True
    return False


def first_rule_name(policy: Dict[str, Any]) -> Optional[str]:
    rules = rules_of(policy)
    return rules[0].get("name") if rules else None
