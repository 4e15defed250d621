"""Kind to API resource resolution."""

from typing import List, Protocol, Tuple

from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError

from vapgen.exceptions import GenerationError

GroupVersionResource = Tuple[str, str, str]


class Discovery(Protocol):
    def resolve(self, group: str, version: str, kind: str) -> List[GroupVersionResource]: ...


def parse_kind(value: str) -> Tuple[str, str, str]:
    """Split a policy kind reference into ``(group, version, kind)``.

    Accepts ``Kind``, ``version/Kind`` and ``group/version/Kind``. Empty group
    or version means "any".
    """
    parts = value.split("/")
    if len(parts) == 1:
        return "", "", parts[0]
    if len(parts) == 2:
        return "", parts[0], parts[1]
    if len(parts) == 3:
        return parts[0], parts[1], parts[2]
    raise GenerationError(f"invalid kind reference {value!r}")


class DynamicDiscovery:
    """Discovery backed by the dynamic client's cached API discovery."""

    def __init__(self, dynamic_client: DynamicClient):
        self.client = dynamic_client

    def resolve(self, group: str, version: str, kind: str) -> List[GroupVersionResource]:
        query = {"kind": kind}
        if group:
            query["group"] = group
        if version:
            query["api_version"] = version
        try:
            found = self.client.resources.search(**query)
        except ResourceNotFoundError:
            found = []

        results: List[GroupVersionResource] = []
        for resource in found:
            name = getattr(resource, "name", "") or ""
            # Subresources share their parent's kind
            if not name or "/" in name:
                continue
            gvr = (resource.group or "", resource.api_version, name)
            if gvr not in results:
                results.append(gvr)

        if not results:
            raise GenerationError(f"unable to find API resource for kind {kind!r}")
        return results
