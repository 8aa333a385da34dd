"""
ObjectStore reconcile loop.

One pass, level-triggered and re-entrant:

    absent      -> nothing to do
    deleting    -> best-effort cleanup, remove finalizer, stop
    converging  -> finalizer, PVC, Service (address), Deployment,
                   wait for the gateway pod, multisite step for the role
    ready       -> everything above converged

A pass replayed after a partial failure converges to the same end state:
every step is create-or-update, "already exists" is success and the
multisite steps detect work that was already done.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging
import time

from kubernetes import client
from kubernetes.client.rest import ApiException

from ..config import GatewayDefaults, Settings
from ..models import MultisiteRole, ObjectStore, finalizer_name
from ..utils.resource_naming import get_labels, realm_token_secret_name, zone_job_name
from .multisite import JOIN_MODE_EXEC, MultisiteHandshake
from .orchestration.kubernetes.client import KubernetesClient, OperationResult
from .orchestration.kubernetes.executor import RemotePodCommandExecutor
from .orchestration.kubernetes.helpers import (
    create_gateway_deployment,
    create_owner_reference,
    create_pvc_manifest,
    create_service_manifest,
    ensure_labels,
    ensure_owner_reference,
)
from .orchestration.kubernetes.polling import (
    DeadlineExceeded,
    pod_policy,
    wait_for_labeled_pods_running,
)
from .rgw_cli import endpoint_url

logger = logging.getLogger(__name__)

PHASE_ABSENT = "Absent"
PHASE_DELETED = "Deleted"
PHASE_READY = "Ready"
PHASE_PROGRESSING = "Progressing"


class ServiceAddressError(Exception):
    """The gateway Service has no cluster address to advertise yet."""


@dataclass
class ReconcileResult:
    phase: str
    role: Optional[MultisiteRole] = None
    endpoint: Optional[str] = None


class ObjectStoreReconciler:
    """Converges the children of ObjectStore custom resources."""

    def __init__(
        self,
        k8s_client: KubernetesClient,
        settings: Settings,
        defaults: GatewayDefaults,
        executor: Optional[RemotePodCommandExecutor] = None,
        handshake: Optional[MultisiteHandshake] = None
    ):
        self.k8s_client = k8s_client
        self.settings = settings
        self.defaults = defaults
        self.executor = executor or RemotePodCommandExecutor(k8s_client, defaults)
        self.handshake = handshake or MultisiteHandshake(k8s_client, self.executor, defaults)
        self.finalizer = finalizer_name(settings.kind, settings.api_group, settings.api_version)

    async def reconcile(
        self,
        name: str,
        namespace: str,
        deadline: Optional[float] = None
    ) -> ReconcileResult:
        """
        Run one reconcile pass for an ObjectStore.

        Args:
            name: ObjectStore name
            namespace: ObjectStore namespace
            deadline: time.monotonic() value after which the pass aborts
                between steps and polling iterations

        Raises:
            InvalidObjectStoreError: The spec cannot be reconciled as is
            Exception: Any step failure; the caller requeues the pass
        """
        key = f"{namespace}/{name}"
        logger.info(f"[RECONCILE] Reconciling ObjectStore {key}")

        body = await self.k8s_client.get_object_store(name, namespace)
        if body is None:
            logger.info(f"[RECONCILE] ObjectStore {key} not found, it must have been deleted")
            return ReconcileResult(PHASE_ABSENT)

        # Deletion only needs the metadata, a spec that no longer parses
        # must not keep the finalizer on the object
        if (body.get("metadata") or {}).get("deletionTimestamp"):
            await self.finalize(body)
            return ReconcileResult(PHASE_DELETED)

        object_store = ObjectStore.from_body(body)

        role = object_store.resolve_role()
        logger.info(f"[RECONCILE] ObjectStore {key} has multisite role {role}")
        if role is MultisiteRole.JOINING_ORIGIN:
            logger.warning(
                f"[RECONCILE] ObjectStore {key} sets both multisite.isMainSite and "
                f"multisite.realmTokenSecretName, it will join the referenced realm "
                f"and only bootstrap one if none exists afterwards"
            )

        await self.ensure_finalizer(object_store, body)

        # A joiner cannot start without its token, check before touching anything
        token = None
        if role.joins_realm:
            token = await self.handshake.load_realm_token(object_store)

        self._check_deadline(deadline, "converging the PVC")
        await self.converge_pvc(object_store)

        self._check_deadline(deadline, "converging the Service")
        address = await self.converge_service(object_store)
        endpoint = endpoint_url(address, object_store.gateway_port(self.defaults.default_port))

        self._check_deadline(deadline, "converging the Deployment")
        await self.converge_deployment(object_store, role, endpoint)

        await wait_for_labeled_pods_running(
            self.k8s_client,
            object_store.namespace,
            get_labels(object_store.name),
            pod_policy(self.defaults.pod_ready_retries, self.defaults.pod_ready_interval_seconds),
            deadline=deadline
        )

        if role.joins_realm:
            self._check_deadline(deadline, "joining the realm")
            await self.handshake.join(object_store, endpoint, token, deadline=deadline)
        if role.bootstraps_realm:
            self._check_deadline(deadline, "bootstrapping the realm")
            await self.handshake.bootstrap_realm(object_store, endpoint, deadline=deadline)

        logger.info(f"[RECONCILE] ✅ Successfully reconciled ObjectStore {key}")
        return ReconcileResult(PHASE_READY, role=role, endpoint=endpoint)

    def _check_deadline(self, deadline: Optional[float], step: str) -> None:
        if deadline is not None and time.monotonic() >= deadline:
            raise DeadlineExceeded(f"deadline passed before {step}")

    # =========================================================================
    # FINALIZER
    # =========================================================================

    async def ensure_finalizer(self, object_store: ObjectStore, body: Dict[str, Any]) -> None:
        finalizers = list(object_store.metadata.finalizers)
        if self.finalizer in finalizers:
            return

        await self.k8s_client.set_object_store_finalizers(body, finalizers + [self.finalizer])
        logger.info(f"[RECONCILE] Added finalizer {self.finalizer} to {object_store.key}")

    async def finalize(self, body: Dict[str, Any]) -> None:
        """
        Clean up a deleted ObjectStore and release it.

        Works from the object's metadata alone. Cleanup is best effort: its
        failures are logged and never keep the finalizer on the object.
        """
        metadata = body["metadata"]
        name, namespace = metadata["name"], metadata["namespace"]
        key = f"{namespace}/{name}"
        logger.info(f"[RECONCILE] ObjectStore {key} is being deleted")

        try:
            await self.cleanup(name, namespace)
        except Exception as e:
            logger.warning(f"[RECONCILE] Cleanup of {key} failed, continuing: {e}", exc_info=True)

        finalizers = list(metadata.get("finalizers") or [])
        if self.finalizer not in finalizers:
            return

        remaining = [f for f in finalizers if f != self.finalizer]
        try:
            await self.k8s_client.set_object_store_finalizers(body, remaining)
        except ApiException as e:
            if e.status == 404:
                return
            raise
        logger.info(f"[RECONCILE] Successfully deleted ObjectStore {key}")

    async def cleanup(self, name: str, namespace: str) -> None:
        """
        Remove multisite leftovers right away.

        Everything else is owned by the ObjectStore and garbage collected
        with it.
        """
        await self.k8s_client.delete_job(zone_job_name(name, namespace), namespace)
        await self.k8s_client.delete_secret(realm_token_secret_name(name, namespace), namespace)

    # =========================================================================
    # CONVERGERS
    # =========================================================================

    async def converge_pvc(self, object_store: ObjectStore) -> OperationResult:
        """Create the data PVC. Its spec is immutable once bound."""
        owner = create_owner_reference(object_store)
        labels = get_labels(object_store.name)

        def mutate(pvc: client.V1PersistentVolumeClaim) -> None:
            ensure_owner_reference(pvc.metadata, owner)
            ensure_labels(pvc.metadata, labels)

        result, _ = await self.k8s_client.create_or_update_pvc(create_pvc_manifest(object_store), mutate)
        logger.info(f"[RECONCILE] PVC for {object_store.key}: {result}")
        return result

    async def converge_service(self, object_store: ObjectStore) -> str:
        """
        Converge the gateway Service.

        Returns:
            The Service's cluster IP

        Raises:
            ServiceAddressError: No cluster IP has been allocated
        """
        desired = create_service_manifest(object_store, self.defaults)
        owner = create_owner_reference(object_store)

        def mutate(service: client.V1Service) -> None:
            ensure_owner_reference(service.metadata, owner)
            ensure_labels(service.metadata, desired.metadata.labels)
            if service.spec is None:
                service.spec = client.V1ServiceSpec()
            # clusterIP is immutable, only selector and ports are converged
            service.spec.selector = desired.spec.selector
            service.spec.ports = desired.spec.ports

        result, service = await self.k8s_client.create_or_update_service(desired, mutate)

        cluster_ip = service.spec.cluster_ip if service.spec is not None else None
        if not cluster_ip or cluster_ip == "None":
            raise ServiceAddressError(f"service {service.metadata.name} has no cluster IP yet")

        logger.info(
            f"[RECONCILE] Gateway service for {object_store.key}: {result} at {cluster_ip} "
            f"port {object_store.gateway_port(self.defaults.default_port)}"
        )
        return cluster_ip

    async def converge_deployment(
        self,
        object_store: ObjectStore,
        role: MultisiteRole,
        endpoint: str
    ) -> OperationResult:
        desired = create_gateway_deployment(
            object_store,
            self.defaults,
            endpoint,
            # In job mode the Job is the only zone creator
            join_zone=role.joins_realm and self.defaults.multisite_join_mode == JOIN_MODE_EXEC
        )
        owner = create_owner_reference(object_store)

        def mutate(deployment: client.V1Deployment) -> None:
            ensure_owner_reference(deployment.metadata, owner)
            ensure_labels(deployment.metadata, desired.metadata.labels)
            if deployment.spec is None:
                deployment.spec = client.V1DeploymentSpec(selector=desired.spec.selector, template=desired.spec.template)
            deployment.spec.replicas = desired.spec.replicas
            deployment.spec.selector = desired.spec.selector
            deployment.spec.template = desired.spec.template

        result, _ = await self.k8s_client.create_or_update_deployment(desired, mutate)
        logger.info(f"[RECONCILE] Gateway deployment for {object_store.key}: {result}")
        return result
