"""Translation of Kyverno CEL rules into ValidatingAdmissionPolicy objects.

Only policies with a single ``validate.cel`` rule whose match and exclude
blocks can be expressed through VAP match constraints are translated;
``can_generate`` decides that up front so the build functions only fail on
input the cluster cannot resolve (unknown kinds and the like).
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

from vapgen.exceptions import GenerationError
from vapgen.models.resources import (
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    Kind,
    binding_name_for,
    name_of,
    owner_reference_for,
    rules_of,
    spec_of,
)
from vapgen.services.discovery import Discovery, parse_kind

SKIP_PREFIX = "skip generating ValidatingAdmissionPolicy"
DEFAULT_OPERATIONS = ["CREATE", "UPDATE"]
NAMESPACE_NAME_LABEL = "kubernetes.io/metadata.name"

SUPPORTED_RESOURCE_FIELDS = {"kinds", "names", "operations", "namespaceSelector", "objectSelector"}
SUPPORTED_EXCEPTION_FIELDS = {"kinds", "names", "namespaces"}
USER_INFO_FIELDS = {"subjects", "roles", "clusterRoles"}


# ============================================================================
# ELIGIBILITY
# ============================================================================


def _resource_filters(block: Optional[Dict[str, Any]]) -> Tuple[str, List[Dict[str, Any]]]:
    """Flatten a match/exclude block into ``(mode, filters)``.

    ``mode`` is ``any`` or ``all``; the legacy single ``resources`` form is
    reported as ``any`` with one filter.
    """
    if not block:
        return "any", []
    if block.get("all"):
        return "all", list(block["all"])
    if block.get("any"):
        return "any", list(block["any"])
    legacy = {k: v for k, v in block.items() if k not in ("any", "all")}
    return ("any", [legacy]) if legacy else ("any", [])


def _has_wildcard(values: Sequence[str]) -> bool:
    return any("*" in v or "?" in v for v in values)


def _check_filters(block: Optional[Dict[str, Any]], label: str) -> Optional[str]:
    mode, filters = _resource_filters(block)
    if mode == "all" and len(filters) > 1:
        return f"{SKIP_PREFIX}: multiple 'all' filters in {label} are not supported."

    selectors = 0
    for f in filters:
        if USER_INFO_FIELDS & set(f):
            return f"{SKIP_PREFIX}: user information in {label} is not supported."
        resources = f.get("resources") or {}
        unsupported = set(resources) - SUPPORTED_RESOURCE_FIELDS
        if unsupported:
            fields = ", ".join(sorted(unsupported))
            return f"{SKIP_PREFIX}: {fields} in {label} is not supported."
        if _has_wildcard(resources.get("kinds") or []) or _has_wildcard(resources.get("names") or []):
            return f"{SKIP_PREFIX}: wildcards in {label} are not supported."
        if resources.get("namespaceSelector") or resources.get("objectSelector"):
            selectors += 1

    if selectors and len(filters) > 1:
        return f"{SKIP_PREFIX}: selectors across multiple {label} filters are not supported."
    return None


def _exception_translatable(polex: Dict[str, Any]) -> bool:
    spec = spec_of(polex)
    if spec.get("conditions") or spec.get("podSecurity"):
        return False
    match = spec.get("match") or {}
    if match.get("all") or not match.get("any"):
        return False
    for f in match["any"]:
        if USER_INFO_FIELDS & set(f):
            return False
        resources = f.get("resources") or {}
        if not resources.get("kinds") or set(resources) - SUPPORTED_EXCEPTION_FIELDS:
            return False
        if resources.get("names") and resources.get("namespaces"):
            return False
        if any(_has_wildcard(resources.get(field) or []) for field in SUPPORTED_EXCEPTION_FIELDS):
            return False
    return True


def can_generate(spec: Dict[str, Any], exceptions: Sequence[Dict[str, Any]]) -> Tuple[bool, str]:
    """Decide whether a ClusterPolicy spec can be expressed as a VAP.

    Returns ``(False, "")`` when an exception cannot be projected onto the
    generated objects; callers report that case with a default message.
    """
    rules = spec.get("rules") or []
    if len(rules) != 1:
        return False, f"{SKIP_PREFIX} for multiple rules."

    rule = rules[0]
    validate = rule.get("validate") or {}
    if not validate.get("cel"):
        return False, f"{SKIP_PREFIX} for non CEL rules."

    if spec.get("validationFailureActionOverrides") or validate.get("failureActionOverrides"):
        return False, f"{SKIP_PREFIX}: validationFailureActionOverrides is not supported."

    for block, label in ((rule.get("match"), "match"), (rule.get("exclude"), "exclude")):
        reason = _check_filters(block, label)
        if reason:
            return False, reason

    for polex in exceptions:
        if not _exception_translatable(polex):
            return False, ""

    return True, ""


# ============================================================================
# BUILDERS
# ============================================================================


def _resource_rules(
    discovery: Discovery, resources: Dict[str, Any], default_operations: List[str]
) -> List[Dict[str, Any]]:
    rules: List[Dict[str, Any]] = []
    names = list(resources.get("names") or [])
    operations = list(resources.get("operations") or default_operations)
    for kind_ref in resources.get("kinds") or []:
        group, version, kind = parse_kind(kind_ref)
        for g, v, plural in discovery.resolve(group, version, kind):
            rule = {
                "apiGroups": [g],
                "apiVersions": [v],
                "resources": [plural],
                "operations": operations,
                "scope": "*",
            }
            if names:
                rule["resourceNames"] = names
            rules.append(rule)
    return rules


def _exception_namespaces(exceptions: Sequence[Dict[str, Any]]) -> List[str]:
    namespaces: List[str] = []
    for polex in exceptions:
        for f in (spec_of(polex).get("match") or {}).get("any") or []:
            for ns in (f.get("resources") or {}).get("namespaces") or []:
                if ns not in namespaces:
                    namespaces.append(ns)
    return namespaces


def _match_constraints(
    discovery: Discovery,
    rule: Dict[str, Any],
    exceptions: Sequence[Dict[str, Any]],
) -> Dict[str, Any]:
    _, match_filters = _resource_filters(rule.get("match"))
    _, exclude_filters = _resource_filters(rule.get("exclude"))

    resource_rules: List[Dict[str, Any]] = []
    namespace_selector: Dict[str, Any] = {}
    object_selector: Dict[str, Any] = {}
    for f in match_filters:
        resources = f.get("resources") or {}
        resource_rules.extend(_resource_rules(discovery, resources, DEFAULT_OPERATIONS))
        namespace_selector = resources.get("namespaceSelector") or namespace_selector
        object_selector = resources.get("objectSelector") or object_selector

    if not resource_rules:
        raise GenerationError("the rule does not match any resource kinds")

    exclude_rules: List[Dict[str, Any]] = []
    for f in exclude_filters:
        exclude_rules.extend(
            _resource_rules(discovery, f.get("resources") or {}, ["*"])
        )
    for polex in exceptions:
        for f in (spec_of(polex).get("match") or {}).get("any") or []:
            resources = f.get("resources") or {}
            # Namespace-scoped exceptions go through the namespace selector
            if not resources.get("namespaces"):
                exclude_rules.extend(_resource_rules(discovery, resources, ["*"]))

    excluded_namespaces = _exception_namespaces(exceptions)
    if excluded_namespaces:
        namespace_selector = dict(namespace_selector)
        expressions = list(namespace_selector.get("matchExpressions") or [])
        expressions.append(
            {
                "key": NAMESPACE_NAME_LABEL,
                "operator": "NotIn",
                "values": excluded_namespaces,
            }
        )
        namespace_selector["matchExpressions"] = expressions

    # API server defaults are spelled out so a rebuilt object compares equal
    # to the stored one.
    constraints = {
        "matchPolicy": "Equivalent",
        "namespaceSelector": namespace_selector,
        "objectSelector": object_selector,
        "resourceRules": resource_rules,
    }
    if exclude_rules:
        constraints["excludeResourceRules"] = exclude_rules
    return constraints


def _own(target: Dict[str, Any], policy: Dict[str, Any], name: str, kind: Kind) -> None:
    rk = kind.value
    target["apiVersion"] = rk.api_version
    target["kind"] = rk.kind
    meta = target.setdefault("metadata", {})
    meta["name"] = name
    labels = dict(meta.get("labels") or {})
    labels[MANAGED_BY_LABEL] = MANAGED_BY_VALUE
    meta["labels"] = labels
    meta["ownerReferences"] = [owner_reference_for(policy).to_dict()]


def build_admission_policy(
    discovery: Discovery,
    target: Dict[str, Any],
    policy: Dict[str, Any],
    exceptions: Sequence[Dict[str, Any]],
) -> None:
    """Fill ``target`` in place with the VAP generated from ``policy``."""
    rules = rules_of(policy)
    if not rules:
        raise GenerationError("the policy has no rules")
    rule = rules[0]
    cel = (rule.get("validate") or {}).get("cel") or {}
    if not cel.get("expressions"):
        raise GenerationError(f"rule {rule.get('name')!r} has no CEL expressions")

    _own(target, policy, name_of(policy), Kind.VALIDATING_ADMISSION_POLICY)

    failure_policy = spec_of(policy).get("failurePolicy") or "Fail"
    spec: Dict[str, Any] = {
        "failurePolicy": "Ignore" if failure_policy == "Ignore" else "Fail",
        "matchConstraints": _match_constraints(discovery, rule, exceptions),
        "validations": list(cel["expressions"]),
    }
    if cel.get("paramKind"):
        spec["paramKind"] = cel["paramKind"]
    if cel.get("auditAnnotations"):
        spec["auditAnnotations"] = list(cel["auditAnnotations"])
    if cel.get("variables"):
        spec["variables"] = list(cel["variables"])
    if rule.get("celPreconditions"):
        spec["matchConditions"] = list(rule["celPreconditions"])

    target["spec"] = spec


def validation_actions(policy: Dict[str, Any]) -> List[str]:
    rule = (rules_of(policy) or [{}])[0]
    action = (rule.get("validate") or {}).get("failureAction") or spec_of(policy).get(
        "validationFailureAction", "Audit"
    )
    if action.lower() == "enforce":
        return ["Deny"]
    return ["Audit", "Warn"]


def build_binding(target: Dict[str, Any], policy: Dict[str, Any]) -> None:
    """Fill ``target`` in place with the binding activating the generated VAP."""
    vap_name = name_of(policy)
    if not vap_name:
        raise GenerationError("the policy has no name")

    binding_name = (target.get("metadata") or {}).get("name") or binding_name_for(vap_name)
    _own(target, policy, binding_name, Kind.VALIDATING_ADMISSION_POLICY_BINDING)

    spec: Dict[str, Any] = {
        "policyName": vap_name,
        "validationActions": validation_actions(policy),
    }
    rule = (rules_of(policy) or [{}])[0]
    param_ref = ((rule.get("validate") or {}).get("cel") or {}).get("paramRef")
    if param_ref:
        spec["paramRef"] = param_ref
    target["spec"] = spec
