"""
Test configuration and fixtures for pytest.

This file provides the fixtures shared by the operator tests:
gateway defaults with fast polling, raw ObjectStore bodies, and an
in-memory Kubernetes client that stands in for the API server.
"""

import sys
import os
import base64
import copy
import json
import itertools
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

# Add the orchestrator directory to sys.path
orchestrator_dir = Path(__file__).parent.parent
sys.path.insert(0, str(orchestrator_dir))

from kubernetes import client
from kubernetes.client.rest import ApiException

from rgw_operator.config import GatewayDefaults, Settings
from rgw_operator.services.orchestration.kubernetes.client import KubernetesClient


def pytest_configure(config):
    """
    Pytest hook called before test collection.
    Registers custom markers.
    """
    os.environ.setdefault("LOG_LEVEL", "DEBUG")

    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "kubernetes: mark test as requiring Kubernetes")
    config.addinivalue_line("markers", "slow: mark test as slow running")


TEST_TOKEN = base64.b64encode(b"realm-token-payload").decode()


class FakeKubernetesClient(KubernetesClient):
    """
    In-memory stand-in for the Kubernetes API.

    Keeps the real create-or-update logic of KubernetesClient and only
    replaces the API calls underneath it. Objects are deep-copied in and out
    like they would be serialized over the wire, resourceVersions are
    checked on replace, and a created Deployment gets a Running pod when
    `auto_schedule` is on.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self.api_client = client.ApiClient()

        self.objects: Dict[Tuple[str, str, str], Any] = {}
        self.object_stores: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.pods: List[client.V1Pod] = []
        self.exec_calls: List[List[str]] = []
        self.created: List[Tuple[str, str]] = []
        self.updated: List[Tuple[str, str]] = []
        self.deleted: List[Tuple[str, str]] = []

        self.auto_schedule = True
        # Status given to Jobs as they are created, None leaves them pending
        self.job_status_on_create: Optional[Dict[str, int]] = None
        self.realms: List[str] = []
        self.realm_token = TEST_TOKEN
        self.exec_handler: Callable[[List[str]], Tuple[str, str, Optional[int], Optional[str]]] = self.default_exec_handler

        self._versions = itertools.count(100)
        self._ips = itertools.count(10)

    # -- storage -------------------------------------------------------------

    def _next_version(self) -> str:
        return str(next(self._versions))

    def _read(self, kind: str):
        def read(name: str, namespace: str):
            key = (kind, namespace, name)
            if key not in self.objects:
                raise ApiException(status=404, reason="Not Found")
            return copy.deepcopy(self.objects[key])
        return read

    def _create(self, kind: str):
        def create(namespace: str, body: Any):
            key = (kind, namespace, body.metadata.name)
            if key in self.objects:
                raise ApiException(status=409, reason="AlreadyExists")
            stored = copy.deepcopy(body)
            stored.metadata.resource_version = self._next_version()
            stored.metadata.uid = f"uid-{kind}-{body.metadata.name}"
            if kind == "Service":
                stored.spec.cluster_ip = f"10.96.0.{next(self._ips)}"
            if kind == "Deployment" and self.auto_schedule:
                self.add_pod(
                    f"{body.metadata.name}-{stored.metadata.resource_version}",
                    namespace,
                    dict(body.spec.template.metadata.labels)
                )
            if kind == "Secret" and stored.string_data:
                stored.data = {
                    k: base64.b64encode(v.encode()).decode() for k, v in stored.string_data.items()
                }
                stored.string_data = None
            if kind == "Job" and self.job_status_on_create is not None:
                stored.status = client.V1JobStatus(**self.job_status_on_create)
            self.objects[key] = stored
            self.created.append((kind, body.metadata.name))
            return copy.deepcopy(stored)
        return create

    def _replace(self, kind: str):
        def replace(name: str, namespace: str, body: Any):
            key = (kind, namespace, name)
            if key not in self.objects:
                raise ApiException(status=404, reason="Not Found")
            if body.metadata.resource_version != self.objects[key].metadata.resource_version:
                raise ApiException(status=409, reason="Conflict")
            stored = copy.deepcopy(body)
            stored.metadata.resource_version = self._next_version()
            self.objects[key] = stored
            self.updated.append((kind, name))
            return copy.deepcopy(stored)
        return replace

    def get(self, kind: str, name: str, namespace: str = "default") -> Any:
        return self.objects.get((kind, namespace, name))

    def count(self, kind: str) -> int:
        return sum(1 for key in self.objects if key[0] == kind)

    # -- object stores --------------------------------------------------------

    def add_object_store(self, body: Dict[str, Any]) -> None:
        body = copy.deepcopy(body)
        body["metadata"].setdefault("resourceVersion", self._next_version())
        self.object_stores[(body["metadata"]["namespace"], body["metadata"]["name"])] = body

    def object_store(self, name: str, namespace: str = "default") -> Optional[Dict[str, Any]]:
        return self.object_stores.get((namespace, name))

    async def get_object_store(self, name, namespace):
        body = self.object_stores.get((namespace, name))
        return copy.deepcopy(body) if body is not None else None

    async def set_object_store_finalizers(self, body, finalizers):
        key = (body["metadata"]["namespace"], body["metadata"]["name"])
        current = self.object_stores.get(key)
        if current is None:
            raise ApiException(status=404, reason="Not Found")
        if current["metadata"]["resourceVersion"] != body["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        if not finalizers and current["metadata"].get("deletionTimestamp"):
            del self.object_stores[key]
            return None
        current["metadata"]["finalizers"] = list(finalizers)
        current["metadata"]["resourceVersion"] = self._next_version()
        return copy.deepcopy(current)

    # -- create or update -------------------------------------------------------

    async def create_or_update_pvc(self, pvc, mutate):
        return await self._create_or_update(
            "PVC", pvc, mutate, self._read("PVC"), self._create("PVC"), self._replace("PVC")
        )

    async def create_or_update_service(self, service, mutate):
        return await self._create_or_update(
            "Service", service, mutate, self._read("Service"), self._create("Service"), self._replace("Service")
        )

    async def create_or_update_deployment(self, deployment, mutate):
        return await self._create_or_update(
            "Deployment", deployment, mutate,
            self._read("Deployment"), self._create("Deployment"), self._replace("Deployment")
        )

    # -- secrets and jobs ------------------------------------------------------------

    def add_secret(self, name: str, data: Optional[Dict[str, str]], namespace: str = "default") -> None:
        """Store a secret, `data` values given in clear text."""
        encoded = None
        if data is not None:
            encoded = {k: base64.b64encode(v.encode()).decode() for k, v in data.items()}
        self.objects[("Secret", namespace, name)] = client.V1Secret(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace, resource_version=self._next_version()),
            data=encoded
        )

    async def get_secret(self, name, namespace):
        secret = self.objects.get(("Secret", namespace, name))
        return copy.deepcopy(secret) if secret is not None else None

    async def create_secret(self, secret):
        try:
            self._create("Secret")(namespace=secret.metadata.namespace, body=secret)
            return True
        except ApiException as e:
            if e.status == 409:
                return False
            raise

    async def delete_secret(self, name, namespace):
        if self.objects.pop(("Secret", namespace, name), None) is not None:
            self.deleted.append(("Secret", name))

    def set_job_status(self, name: str, namespace: str = "default", **status) -> None:
        job = self.objects[("Job", namespace, name)]
        job.status = client.V1JobStatus(**status)

    async def get_job(self, name, namespace):
        job = self.objects.get(("Job", namespace, name))
        return copy.deepcopy(job) if job is not None else None

    async def create_job(self, job):
        try:
            self._create("Job")(namespace=job.metadata.namespace, body=job)
            return True
        except ApiException as e:
            if e.status == 409:
                return False
            raise

    async def delete_job(self, name, namespace):
        if self.objects.pop(("Job", namespace, name), None) is not None:
            self.deleted.append(("Job", name))

    # -- pods ---------------------------------------------------------------------

    def add_pod(self, name: str, namespace: str, labels: Dict[str, str], phase: str = "Running") -> client.V1Pod:
        pod = client.V1Pod(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=labels),
            status=client.V1PodStatus(phase=phase)
        )
        self.pods.append(pod)
        return pod

    async def list_pods(self, namespace, label_selector):
        wanted = dict(part.split("=", 1) for part in label_selector.split(",") if part)
        return [
            copy.deepcopy(pod) for pod in self.pods
            if pod.metadata.namespace == namespace
            and all((pod.metadata.labels or {}).get(k) == v for k, v in wanted.items())
        ]

    async def delete_pod(self, name, namespace):
        for pod in list(self.pods):
            if pod.metadata.name == name and pod.metadata.namespace == namespace:
                self.pods.remove(pod)
                self.deleted.append(("Pod", name))
                # The ReplicaSet brings up a replacement
                self.add_pod(f"{name}-restarted", namespace, dict(pod.metadata.labels))

    # -- exec ---------------------------------------------------------------------

    def default_exec_handler(self, command: List[str]) -> Tuple[str, str, Optional[int], Optional[str]]:
        if "realm" in command and "list" in command:
            return json.dumps({"realms": self.realms}), "", 0, None
        if "realm" in command and "bootstrap" in command:
            self.realms.append("gold")
            return f"Realm created\nRealm Token: {self.realm_token}\n", "debug: noise on stderr", 0, None
        if "zone" in command and "create" in command:
            # Joining pulls the realm of the origin
            if "gold" not in self.realms:
                self.realms.append("gold")
            return "Zone created", "", 0, None
        return "", f"unexpected command {command}", 1, "command terminated with non-zero exit code"

    def _exec_in_pod(self, pod_name, namespace, container_name, command, timeout):
        self.exec_calls.append(list(command))
        return self.exec_handler(list(command))


@pytest.fixture
def settings():
    """Operator settings with defaults only."""
    return Settings()


@pytest.fixture
def gateway_defaults():
    """Gateway constants with polling shortened for tests."""
    return GatewayDefaults(
        pod_ready_retries=3,
        pod_ready_interval_seconds=0,
        job_poll_interval_seconds=0,
        job_timeout_seconds=2,
    )


@pytest.fixture
def fake_k8s(settings):
    """In-memory Kubernetes API."""
    return FakeKubernetesClient(settings)


def make_object_store_body(
    name: str = "store",
    namespace: str = "default",
    port: int = 0,
    multisite: Optional[Dict[str, Any]] = None,
    deletion_timestamp: Optional[str] = None,
    finalizers: Optional[List[str]] = None
) -> Dict[str, Any]:
    """Raw ObjectStore custom object as the API server returns it."""
    spec: Dict[str, Any] = {
        "image": "quay.io/ceph/daemon-base:latest-rgw-sqlite",
        "gateway": {"port": port},
        "volumeClaimTemplate": {
            "metadata": {"name": "data"},
            "spec": {
                "storageClassName": "standard",
                "resources": {"requests": {"storage": "10Gi"}},
            },
        },
    }
    if multisite is not None:
        spec["multisite"] = multisite

    metadata: Dict[str, Any] = {
        "name": name,
        "namespace": namespace,
        "uid": f"uid-{name}",
        "resourceVersion": "1",
        "generation": 1,
        "finalizers": list(finalizers or []),
    }
    if deletion_timestamp:
        metadata["deletionTimestamp"] = deletion_timestamp

    return {
        "apiVersion": "object.rook-s3-nano/v1alpha1",
        "kind": "ObjectStore",
        "metadata": metadata,
        "spec": spec,
    }


@pytest.fixture
def object_store_body():
    """Standalone ObjectStore body."""
    return make_object_store_body()


@pytest.fixture
def make_body():
    """Factory building raw ObjectStore bodies."""
    return make_object_store_body
