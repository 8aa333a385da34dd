"""
Kubernetes Client for Managing Object Store Gateways

This module provides the operator's interface to the Kubernetes API:
reading the ObjectStore custom resource, converging its child resources
(PVC, Service, Deployment, Job, Secret) and streaming commands into pods.

All blocking kubernetes-client calls run in a worker thread so a slow API
server never stalls the kopf event loop.
"""

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream
from kubernetes.stream.ws_client import ERROR_CHANNEL
from enum import Enum
import logging
import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class OperationResult(str, Enum):
    """Outcome of a create-or-update call."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"

    def __str__(self) -> str:
        return self.value


class KubernetesClient:
    """
    Manages Kubernetes resources owned by ObjectStore custom resources.

    Every mutation of an existing child goes through read-modify-replace with
    the resourceVersion returned by the read, so a concurrent writer makes
    the replace fail with 409 instead of being silently overwritten.
    """

    def __init__(self, settings=None):
        """Initialize Kubernetes client with in-cluster or kubeconfig."""
        if settings is None:
            from ....config import get_settings
            settings = get_settings()

        self.settings = settings

        try:
            # Try in-cluster config first (for production)
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes configuration")
        except config.ConfigException:
            try:
                # Fall back to kubeconfig (for development)
                config.load_kube_config()
                logger.info("Loaded kubeconfig for development")
            except config.ConfigException as e:
                logger.error(f"Failed to load Kubernetes config: {e}")
                raise RuntimeError("Cannot load Kubernetes configuration") from e

        # Initialize API clients
        self.api_client = client.ApiClient()
        self.apps_v1 = client.AppsV1Api(self.api_client)
        self.core_v1 = client.CoreV1Api(self.api_client)
        self.batch_v1 = client.BatchV1Api(self.api_client)
        self.custom_objects = client.CustomObjectsApi(self.api_client)

        logger.info(
            f"Kubernetes client initialized - watching {self.settings.plural}."
            f"{self.settings.api_group}/{self.settings.api_version}"
        )

    # =========================================================================
    # OBJECT STORE CUSTOM RESOURCE
    # =========================================================================

    async def get_object_store(self, name: str, namespace: str) -> Optional[Dict[str, Any]]:
        """
        Read an ObjectStore custom object.

        Returns:
            The raw object, or None if it no longer exists
        """
        try:
            return await asyncio.to_thread(
                self.custom_objects.get_namespaced_custom_object,
                group=self.settings.api_group,
                version=self.settings.api_version,
                namespace=namespace,
                plural=self.settings.plural,
                name=name
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def set_object_store_finalizers(
        self,
        body: Dict[str, Any],
        finalizers: List[str]
    ) -> Dict[str, Any]:
        """
        Replace the finalizer list of an ObjectStore.

        The body must be the object as last read: its resourceVersion makes
        the API server reject the write with 409 if the object changed since.
        """
        metadata = body["metadata"]
        updated = dict(body)
        updated["metadata"] = dict(metadata, finalizers=finalizers)
        return await asyncio.to_thread(
            self.custom_objects.replace_namespaced_custom_object,
            group=self.settings.api_group,
            version=self.settings.api_version,
            namespace=metadata["namespace"],
            plural=self.settings.plural,
            name=metadata["name"],
            body=updated
        )

    # =========================================================================
    # CREATE OR UPDATE
    # =========================================================================

    def _serialize(self, obj: Any) -> Any:
        return self.api_client.sanitize_for_serialization(obj)

    async def _create_or_update(
        self,
        kind: str,
        desired: Any,
        mutate: Callable[[Any], None],
        read: Callable,
        create: Callable,
        replace: Callable
    ) -> Tuple[OperationResult, Any]:
        """
        Create the object if it is missing, otherwise mutate and replace it.

        Args:
            kind: Resource kind (for logging)
            desired: Object to create when none exists
            mutate: Brings an object's mutable fields in line with the
                desired state, in place. Applied to `desired` before create
                and to the live object before replace.
            read/create/replace: Namespaced API methods of the kind

        Returns:
            (OperationResult, live object)
        """
        name = desired.metadata.name
        namespace = desired.metadata.namespace

        try:
            existing = await asyncio.to_thread(read, name=name, namespace=namespace)
        except ApiException as e:
            if e.status != 404:
                raise
            existing = None

        if existing is None:
            mutate(desired)
            try:
                created = await asyncio.to_thread(create, namespace=namespace, body=desired)
                logger.info(f"[K8S] ✅ Created {kind}: {namespace}/{name}")
                return OperationResult.CREATED, created
            except ApiException as e:
                if e.status != 409:
                    raise
                # Lost a create race, the winner's object is as good as ours
                logger.info(f"[K8S] {kind} {namespace}/{name} already exists")
                existing = await asyncio.to_thread(read, name=name, namespace=namespace)
                return OperationResult.UNCHANGED, existing

        before = self._serialize(existing)
        mutate(existing)
        if self._serialize(existing) == before:
            logger.debug(f"[K8S] {kind} {namespace}/{name} unchanged")
            return OperationResult.UNCHANGED, existing

        updated = await asyncio.to_thread(replace, name=name, namespace=namespace, body=existing)
        logger.info(f"[K8S] ✅ Updated {kind}: {namespace}/{name}")
        return OperationResult.UPDATED, updated

    async def create_or_update_pvc(
        self,
        pvc: client.V1PersistentVolumeClaim,
        mutate: Callable[[client.V1PersistentVolumeClaim], None]
    ) -> Tuple[OperationResult, client.V1PersistentVolumeClaim]:
        return await self._create_or_update(
            "PVC",
            pvc,
            mutate,
            read=self.core_v1.read_namespaced_persistent_volume_claim,
            create=self.core_v1.create_namespaced_persistent_volume_claim,
            replace=self.core_v1.replace_namespaced_persistent_volume_claim
        )

    async def create_or_update_service(
        self,
        service: client.V1Service,
        mutate: Callable[[client.V1Service], None]
    ) -> Tuple[OperationResult, client.V1Service]:
        return await self._create_or_update(
            "Service",
            service,
            mutate,
            read=self.core_v1.read_namespaced_service,
            create=self.core_v1.create_namespaced_service,
            replace=self.core_v1.replace_namespaced_service
        )

    async def create_or_update_deployment(
        self,
        deployment: client.V1Deployment,
        mutate: Callable[[client.V1Deployment], None]
    ) -> Tuple[OperationResult, client.V1Deployment]:
        return await self._create_or_update(
            "Deployment",
            deployment,
            mutate,
            read=self.apps_v1.read_namespaced_deployment,
            create=self.apps_v1.create_namespaced_deployment,
            replace=self.apps_v1.replace_namespaced_deployment
        )

    # =========================================================================
    # SECRETS
    # =========================================================================

    async def get_secret(self, name: str, namespace: str) -> Optional[client.V1Secret]:
        try:
            return await asyncio.to_thread(
                self.core_v1.read_namespaced_secret,
                name=name,
                namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def create_secret(self, secret: client.V1Secret) -> bool:
        """
        Create a Secret.

        Returns:
            True if created, False if it already existed
        """
        secret_name = secret.metadata.name
        try:
            await asyncio.to_thread(
                self.core_v1.create_namespaced_secret,
                namespace=secret.metadata.namespace,
                body=secret
            )
            logger.info(f"[K8S] ✅ Created secret: {secret_name}")
            return True
        except ApiException as e:
            if e.status == 409:
                logger.info(f"[K8S] Secret {secret_name} already exists")
                return False
            raise

    async def delete_secret(self, name: str, namespace: str) -> None:
        try:
            await asyncio.to_thread(
                self.core_v1.delete_namespaced_secret,
                name=name,
                namespace=namespace
            )
            logger.info(f"[K8S] Deleted secret: {name}")
        except ApiException as e:
            if e.status != 404:
                raise

    # =========================================================================
    # JOBS
    # =========================================================================

    async def get_job(self, name: str, namespace: str) -> Optional[client.V1Job]:
        try:
            return await asyncio.to_thread(
                self.batch_v1.read_namespaced_job,
                name=name,
                namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def create_job(self, job: client.V1Job) -> bool:
        """
        Create a Job.

        Returns:
            True if created, False if it already existed
        """
        job_name = job.metadata.name
        try:
            await asyncio.to_thread(
                self.batch_v1.create_namespaced_job,
                namespace=job.metadata.namespace,
                body=job
            )
            logger.info(f"[K8S] ✅ Created job: {job_name}")
            return True
        except ApiException as e:
            if e.status == 409:
                logger.info(f"[K8S] Job {job_name} already exists")
                return False
            raise

    async def delete_job(self, name: str, namespace: str) -> None:
        """Delete a Job together with its pods."""
        try:
            await asyncio.to_thread(
                self.batch_v1.delete_namespaced_job,
                name=name,
                namespace=namespace,
                propagation_policy="Foreground"
            )
            logger.info(f"[K8S] Deleted job: {name}")
        except ApiException as e:
            if e.status != 404:
                raise

    # =========================================================================
    # POD OPERATIONS
    # =========================================================================

    async def list_pods(self, namespace: str, label_selector: str) -> List[client.V1Pod]:
        pods = await asyncio.to_thread(
            self.core_v1.list_namespaced_pod,
            namespace=namespace,
            label_selector=label_selector
        )
        return list(pods.items)

    async def delete_pod(self, name: str, namespace: str) -> None:
        try:
            await asyncio.to_thread(
                self.core_v1.delete_namespaced_pod,
                name=name,
                namespace=namespace
            )
            logger.info(f"[K8S] Deleted pod: {name}")
        except ApiException as e:
            if e.status != 404:
                raise

    def _get_stream_client(self) -> client.CoreV1Api:
        """
        Create a fresh CoreV1Api client for stream operations.

        IMPORTANT: The kubernetes-python `stream()` function temporarily patches
        the api_client.request method to use WebSocket. If we use the shared
        self.core_v1 client, concurrent regular API calls (like list_namespaced_pod)
        will accidentally use the WebSocket-patched method, causing errors like:
        "WebSocketBadStatusException: Handshake status 200 OK"
        """
        return client.CoreV1Api()

    def _exec_in_pod(
        self,
        pod_name: str,
        namespace: str,
        container_name: str,
        command: List[str],
        timeout: float
    ) -> Tuple[str, str, Optional[int], Optional[str]]:
        """
        Execute a command in a pod without stdin.

        Args:
            pod_name: Name of the pod
            namespace: Namespace
            container_name: Container name within pod
            command: Command to execute as list
            timeout: Seconds to wait for the remote process to finish

        Returns:
            (stdout, stderr, exit code, error message). The exit code is None
            when the API server did not report one.

        Raises:
            ApiException, WebSocket errors: The stream could not be set up
            TimeoutError: The remote process was still running at timeout
        """
        stream_client = self._get_stream_client()

        resp = stream(
            stream_client.connect_get_namespaced_pod_exec,
            pod_name,
            namespace,
            container=container_name,
            command=command,
            stderr=True,
            stdin=False,
            stdout=True,
            tty=False,
            _preload_content=False,
            _request_timeout=timeout
        )

        try:
            resp.run_forever(timeout=timeout)
            if resp.is_open():
                raise TimeoutError(f"command did not finish within {timeout} seconds")

            stdout = resp.read_stdout() or ""
            stderr = resp.read_stderr() or ""
            exit_code, error_message = parse_exec_status(resp.read_channel(ERROR_CHANNEL))
            return stdout, stderr, exit_code, error_message
        finally:
            resp.close()


def parse_exec_status(raw: Optional[str]) -> Tuple[Optional[int], Optional[str]]:
    """
    Decode the v1.Status the API server sends on the exec error channel.

    Returns:
        (exit code, error message). Exit code 0 on "Success", the reported
        code on "NonZeroExitCode", None when no code can be recovered.
    """
    if not raw:
        return None, None

    try:
        status = json.loads(raw)
    except ValueError:
        return None, raw

    if not isinstance(status, dict):
        return None, raw

    if status.get("status") == "Success":
        return 0, None

    message = status.get("message") or raw
    causes = (status.get("details") or {}).get("causes") or []
    for cause in causes:
        if cause.get("reason") == "ExitCode":
            try:
                return int(cause.get("message")), message
            except (TypeError, ValueError):
                break
    return None, message


# Global instance - lazily initialized
_k8s_client_instance: Optional[KubernetesClient] = None


def get_k8s_client() -> KubernetesClient:
    """Get or create the global Kubernetes client instance."""
    global _k8s_client_instance
    if _k8s_client_instance is None:
        _k8s_client_instance = KubernetesClient()
    return _k8s_client_instance
