"""Backing object store: typed access to the Kubernetes API."""

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Protocol

from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ConflictError as ApiConflictError
from kubernetes.dynamic.exceptions import DynamicApiError
from kubernetes.dynamic.exceptions import NotFoundError as ApiNotFoundError

from vapgen.core.logging import get_logger
from vapgen.exceptions import ConflictError, NotFoundError, StoreError
from vapgen.models.resources import Kind, name_of, namespace_of

logger = get_logger(__name__)


class Store(Protocol):
    """Operations the controller needs from the API server.

    Writes carry ``metadata.resourceVersion`` when present, so updates are
    version-checked and a stale write raises ``ConflictError``.
    """

    def get(self, kind: Kind, name: str, namespace: str = "") -> Dict[str, Any]: ...

    def list(self, kind: Kind, label_selector: str = "") -> List[Dict[str, Any]]: ...

    def create(self, kind: Kind, obj: Dict[str, Any]) -> Dict[str, Any]: ...

    def update(self, kind: Kind, obj: Dict[str, Any]) -> Dict[str, Any]: ...

    def update_status(self, kind: Kind, obj: Dict[str, Any]) -> Dict[str, Any]: ...

    def delete(self, kind: Kind, name: str, namespace: str = "") -> None: ...


class KubernetesStore:
    """Store backed by the Kubernetes dynamic client."""

    def __init__(self, dynamic_client: DynamicClient):
        self.client = dynamic_client
        self._resources: Dict[Kind, Any] = {}

    def _resource(self, kind: Kind):
        if kind not in self._resources:
            rk = kind.value
            self._resources[kind] = self.client.resources.get(
                api_version=rk.api_version, kind=rk.kind
            )
        return self._resources[kind]

    @contextmanager
    def _translate_errors(self, kind: Kind, name: str = "", namespace: str = "") -> Iterator[None]:
        try:
            yield
        except ApiNotFoundError:
            raise NotFoundError(kind.value.kind, name, namespace)
        except ApiConflictError as e:
            raise ConflictError(str(e.summary()))
        except DynamicApiError as e:
            raise StoreError(str(e.summary()), status=e.status or 0)

    def get(self, kind: Kind, name: str, namespace: str = "") -> Dict[str, Any]:
        with self._translate_errors(kind, name, namespace):
            return self._resource(kind).get(name=name, namespace=namespace or None).to_dict()

    def list(self, kind: Kind, label_selector: str = "") -> List[Dict[str, Any]]:
        with self._translate_errors(kind):
            result = self._resource(kind).get(label_selector=label_selector or None)
            return [item.to_dict() for item in result.items]

    def create(self, kind: Kind, obj: Dict[str, Any]) -> Dict[str, Any]:
        name, namespace = name_of(obj), namespace_of(obj)
        with self._translate_errors(kind, name, namespace):
            created = self._resource(kind).create(body=obj, namespace=namespace or None)
        logger.debug(f"Created {kind.value.kind} {name}")
        return created.to_dict()

    def update(self, kind: Kind, obj: Dict[str, Any]) -> Dict[str, Any]:
        name, namespace = name_of(obj), namespace_of(obj)
        with self._translate_errors(kind, name, namespace):
            updated = self._resource(kind).replace(body=obj, namespace=namespace or None)
        logger.debug(f"Updated {kind.value.kind} {name}")
        return updated.to_dict()

    def update_status(self, kind: Kind, obj: Dict[str, Any]) -> Dict[str, Any]:
        name, namespace = name_of(obj), namespace_of(obj)
        with self._translate_errors(kind, name, namespace):
            updated = self._resource(kind).status.replace(
                body=obj, namespace=namespace or None
            )
        return updated.to_dict()

    def delete(self, kind: Kind, name: str, namespace: str = "") -> None:
        with self._translate_errors(kind, name, namespace):
            self._resource(kind).delete(name=name, namespace=namespace or None)
        logger.debug(f"Deleted {kind.value.kind} {name}")

