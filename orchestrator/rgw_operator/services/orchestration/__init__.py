"""
Orchestration Module

Kubernetes primitives the reconcile loop is built from: the API client,
manifest builders, remote exec and the readiness pollers.
"""

from .kubernetes import (
    KubernetesClient,
    OperationResult,
    RemotePodCommandExecutor,
    RetryPolicy,
    get_k8s_client,
)

__all__ = [
    "KubernetesClient",
    "OperationResult",
    "RemotePodCommandExecutor",
    "RetryPolicy",
    "get_k8s_client",
]
