"""
Kopf entry point for the ValidatingAdmissionPolicy generation controller.
Watches ClusterPolicies, PolicyExceptions and the generated admission objects,
and runs the reconcile workers in a background thread.
"""

import asyncio
import threading
from typing import Any, Dict, Optional

import kopf
from kubernetes import client, config
from kubernetes.dynamic import DynamicClient
from prometheus_client import start_http_server

from vapgen.controller.controller import Controller, build_controller
from vapgen.controller.events import EventRecorder
from vapgen.core.config import get_settings
from vapgen.core.logging import get_logger, setup_logging
from vapgen.models.resources import Kind
from vapgen.repositories.store import KubernetesStore
from vapgen.services.auth import AuthChecker
from vapgen.services.discovery import DynamicDiscovery

logger = get_logger("vapgen-controller")

controller: Optional[Controller] = None
controller_thread: Optional[threading.Thread] = None
stop_event = threading.Event()

# ============================================================================
# KUBERNETES CLIENT
# ============================================================================


def load_kube_config() -> client.ApiClient:
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes config")
    return client.ApiClient()


# ============================================================================
# WATCH STREAMS
# ============================================================================


def feed(kind: Kind, event: Dict[str, Any]) -> None:
    """Apply a raw watch event to the matching informer."""
    if controller is None:
        return
    obj = event.get("object")
    if not obj:
        return
    controller.informer(kind).handle_event(event.get("type"), obj)


@kopf.on.event("kyverno.io", "v1", "clusterpolicies")
async def cluster_policy_event(event: Dict[str, Any], **kwargs):
    feed(Kind.CLUSTER_POLICY, event)


@kopf.on.event("kyverno.io", "v2", "policyexceptions")
async def policy_exception_event(event: Dict[str, Any], **kwargs):
    feed(Kind.POLICY_EXCEPTION, event)


@kopf.on.event("admissionregistration.k8s.io", "v1", "validatingadmissionpolicies")
async def admission_policy_event(event: Dict[str, Any], **kwargs):
    feed(Kind.VALIDATING_ADMISSION_POLICY, event)


@kopf.on.event(
    "admissionregistration.k8s.io", "v1", "validatingadmissionpolicybindings"
)
async def admission_policy_binding_event(event: Dict[str, Any], **kwargs):
    feed(Kind.VALIDATING_ADMISSION_POLICY_BINDING, event)


# ============================================================================
# STARTUP AND SHUTDOWN
# ============================================================================


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_):
    """Configure kopf settings"""
    app_settings = get_settings()
    setup_logging(app_settings)

    settings.posting.enabled = False
    settings.watching.server_timeout = app_settings.watch_server_timeout
    settings.watching.client_timeout = app_settings.watch_client_timeout
    settings.watching.connect_timeout = app_settings.watch_connect_timeout
    settings.batching.idle_timeout = 1.0
    settings.batching.batch_window = 0.5

    logger.info("Kopf configured")


@kopf.on.startup()
async def startup_handler(**kwargs):
    """Build the controller, prime its caches and start the workers"""
    global controller, controller_thread

    app_settings = get_settings()
    if app_settings.metrics_port:
        start_http_server(app_settings.metrics_port)
        logger.info(f"Serving metrics on port {app_settings.metrics_port}")

    api_client = load_kube_config()
    dynamic_client = DynamicClient(api_client)
    store = KubernetesStore(dynamic_client)

    recorder = EventRecorder(
        client.EventsV1Api(api_client),
        namespace=app_settings.namespace,
        buffer_size=app_settings.event_buffer_size,
        enabled=app_settings.event_recording_enabled,
    )
    built = build_controller(
        store=store,
        checker=AuthChecker(client.AuthorizationV1Api(api_client)),
        discovery=DynamicDiscovery(dynamic_client),
        recorder=recorder,
        settings=app_settings,
    )

    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, built.sync, store)

    stop_event.clear()
    controller = built
    controller_thread = threading.Thread(
        target=built.run, args=(stop_event,), name="controller", daemon=True
    )
    controller_thread.start()

    if app_settings.prune_interval:
        asyncio.create_task(periodic_prune(built, store, app_settings.prune_interval))

    logger.info("Controller ready")


async def periodic_prune(built: Controller, store: KubernetesStore, interval: int):
    """Periodically evict cached objects deleted behind the watches"""
    while not stop_event.is_set():
        try:
            await asyncio.sleep(interval)
            await asyncio.get_running_loop().run_in_executor(None, built.prune, store)
        except Exception as e:
            logger.error(f"Error pruning controller caches: {e}")


@kopf.on.cleanup()
async def cleanup_handler(**kwargs):
    """Stop the workers after their in-flight reconciles"""
    logger.info("Controller shutting down")
    stop_event.set()
    if controller_thread is not None:
        await asyncio.get_running_loop().run_in_executor(None, controller_thread.join)


@kopf.on.probe(id="controller")
async def health_probe(**kwargs):
    """Worker liveness and queue depth"""
    if controller is None:
        return {"status": "starting"}
    health = controller.health()
    health["status"] = "healthy" if health["running"] else "unhealthy"
    return health


# ============================================================================
# MAIN
# ============================================================================


def main() -> None:
    kopf.run(clusterwide=True, liveness_endpoint=get_settings().liveness_endpoint)


if __name__ == "__main__":
    main()
