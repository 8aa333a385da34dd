"""
Kubernetes Orchestration Module - Object Store Gateways

This module contains all Kubernetes-specific code of the operator:
- KubernetesClient: Low-level Kubernetes API interactions and create-or-update
- Helpers: Manifests of the PVC, Service, Deployment, zone Job and token Secret
- RemotePodCommandExecutor: Runs the radosgw admin tools inside gateway pods
- Polling: Bounded waits for running pods and completed jobs

Every child resource carries an owner reference to its ObjectStore and is
garbage collected with it.
"""

from .client import KubernetesClient, OperationResult, get_k8s_client
from .executor import (
    ExecOptions,
    ExecResult,
    ExecTransportError,
    PodNotFoundError,
    RemoteCommandError,
    RemotePodCommandExecutor,
)
from .helpers import (
    create_owner_reference,
    create_pvc_manifest,
    create_service_manifest,
    create_gateway_deployment,
    create_zone_job_manifest,
    create_realm_token_secret,
)
from .polling import (
    DeadlineExceeded,
    JobFailedError,
    PollTimeoutError,
    RetryPolicy,
    wait_for_job_completion,
    wait_for_labeled_pods_running,
)

__all__ = [
    # Client
    "KubernetesClient",
    "OperationResult",
    "get_k8s_client",
    # Executor
    "ExecOptions",
    "ExecResult",
    "ExecTransportError",
    "PodNotFoundError",
    "RemoteCommandError",
    "RemotePodCommandExecutor",
    # Manifest Helpers
    "create_owner_reference",
    "create_pvc_manifest",
    "create_service_manifest",
    "create_gateway_deployment",
    "create_zone_job_manifest",
    "create_realm_token_secret",
    # Polling
    "DeadlineExceeded",
    "JobFailedError",
    "PollTimeoutError",
    "RetryPolicy",
    "wait_for_job_completion",
    "wait_for_labeled_pods_running",
]
