"""
Kubernetes Helpers for Object Store Gateways

This module builds the manifests of every child resource an ObjectStore
owns. Builders are pure functions of the ObjectStore and GatewayDefaults so
two reconciles of the same object always produce the same manifests.

Key components:
- PVC: Holds the sqlite database of the gateway
- Service: Stable address advertised to the other multisite site
- Deployment: chown init container, optional zone-join init container,
  radosgw daemon container
- Zone Job: One-shot zone create for the job-based multisite join
- Realm token Secret: Published by the origin site
"""

from kubernetes import client
from typing import Any, Dict, List, Optional
import logging

from ....config import GatewayDefaults
from ....models import ObjectStore
from ....utils.resource_naming import (
    container_env_var_reference,
    get_labels,
    instance_name,
    new_flag,
    realm_token_secret_name,
    stable_hash,
    zone_job_name,
    zone_name,
)
from ...rgw_cli import ceph_args_env, daemon_flags, zone_create_args

logger = logging.getLogger(__name__)

POD_NAME_ENV_VAR = "POD_NAME"
REALM_TOKEN_ENV_VAR = "REALM_TOKEN"
DATA_VOLUME_NAME = "ceph-daemon-data"
CHOWN_CONTAINER_NAME = "chown-container-data-dir"
ZONE_CREATE_CONTAINER_NAME = "object-store-multisite-create-zone"


# =============================================================================
# Ownership
# =============================================================================

def create_owner_reference(object_store: ObjectStore) -> client.V1OwnerReference:
    """
    Controller owner reference pointing at the ObjectStore.

    Children carrying it are garbage collected with their parent.
    """
    return client.V1OwnerReference(
        api_version=object_store.api_version,
        kind=object_store.kind,
        name=object_store.name,
        uid=object_store.metadata.uid,
        controller=True,
        block_owner_deletion=True
    )


def ensure_owner_reference(
    metadata: client.V1ObjectMeta,
    owner: client.V1OwnerReference
) -> None:
    """Add the owner reference to an object's metadata unless already there."""
    references = list(metadata.owner_references or [])
    if any(ref.uid == owner.uid for ref in references):
        return
    references.append(owner)
    metadata.owner_references = references


def ensure_labels(metadata: client.V1ObjectMeta, labels: Dict[str, str]) -> None:
    """Merge labels into an object's metadata, keeping labels set by others."""
    merged = dict(metadata.labels or {})
    merged.update(labels)
    metadata.labels = merged


# =============================================================================
# Shared container pieces
# =============================================================================

def daemon_env_vars(image: str, defaults: GatewayDefaults) -> List[client.V1EnvVar]:
    """Environment variables used by the radosgw daemon and admin tools."""
    def field_ref(path: str) -> client.V1EnvVarSource:
        return client.V1EnvVarSource(
            field_ref=client.V1ObjectFieldSelector(field_path=path)
        )

    return [
        client.V1EnvVar(name="CONTAINER_IMAGE", value=image),
        client.V1EnvVar(name=POD_NAME_ENV_VAR, value_from=field_ref("metadata.name")),
        client.V1EnvVar(name="POD_NAMESPACE", value_from=field_ref("metadata.namespace")),
        client.V1EnvVar(name="NODE_NAME", value_from=field_ref("spec.nodeName")),
        client.V1EnvVar(name="CEPH_LIB", value=defaults.ceph_lib_path),
        client.V1EnvVar(name="CEPH_ARGS", value=ceph_args_env(defaults)),
    ]


def realm_token_env_var(secret_name: str, key: str) -> client.V1EnvVar:
    """REALM_TOKEN sourced from the token secret, never inlined in args."""
    return client.V1EnvVar(
        name=REALM_TOKEN_ENV_VAR,
        value_from=client.V1EnvVarSource(
            secret_key_ref=client.V1SecretKeySelector(name=secret_name, key=key)
        )
    )


def data_volume(pvc_name: str) -> client.V1Volume:
    return client.V1Volume(
        name=DATA_VOLUME_NAME,
        persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
            claim_name=pvc_name
        )
    )


def data_volume_mount(defaults: GatewayDefaults) -> client.V1VolumeMount:
    return client.V1VolumeMount(
        name=DATA_VOLUME_NAME,
        mount_path=defaults.data_directory
    )


# =============================================================================
# PVC Manifest
# =============================================================================

def _quantities(values: Optional[Dict[str, Any]]) -> Optional[Dict[str, str]]:
    """Resource quantities as strings, `storage: 10` is as valid as `storage: 10Gi`."""
    if not values:
        return None
    return {key: str(value) for key, value in values.items()}


def create_pvc_manifest(
    object_store: ObjectStore,
    default_access_mode: str = "ReadWriteOnce"
) -> client.V1PersistentVolumeClaim:
    """
    Create the PVC manifest holding the gateway database.

    The claim spec comes from spec.volumeClaimTemplate. Access modes default
    to ReadWriteOnce when the template has none; the volume mode is always
    Filesystem since the gateway mounts it as its data directory.
    """
    template = object_store.spec.volume_claim_template
    claim = template.spec if template is not None else None

    access_modes = list(claim.access_modes) if claim and claim.access_modes else [default_access_mode]
    resources = None
    if claim and claim.resources:
        resources = client.V1VolumeResourceRequirements(
            requests=_quantities(claim.resources.get("requests")),
            limits=_quantities(claim.resources.get("limits"))
        )
    selector = None
    if claim and claim.selector:
        selector = client.V1LabelSelector(
            match_labels=claim.selector.get("matchLabels"),
            match_expressions=claim.selector.get("matchExpressions")
        )

    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(
            name=instance_name(object_store.name, object_store.namespace),
            namespace=object_store.namespace,
            labels=get_labels(object_store.name)
        ),
        spec=client.V1PersistentVolumeClaimSpec(
            access_modes=access_modes,
            storage_class_name=claim.storage_class_name if claim else None,
            resources=resources,
            selector=selector,
            volume_mode="Filesystem"
        )
    )


# =============================================================================
# Service Manifest
# =============================================================================

def create_service_manifest(
    object_store: ObjectStore,
    defaults: GatewayDefaults
) -> client.V1Service:
    """
    Create the Service exposing the gateway.

    Listens on spec.gateway.port (defaults.default_port when unset) and
    always targets the daemon's internal port.
    """
    port = object_store.gateway_port(defaults.default_port)

    return client.V1Service(
        metadata=client.V1ObjectMeta(
            name=instance_name(object_store.name, object_store.namespace),
            namespace=object_store.namespace,
            labels=get_labels(object_store.name)
        ),
        spec=client.V1ServiceSpec(
            selector=get_labels(object_store.name),
            ports=[
                client.V1ServicePort(
                    name="http",
                    port=port,
                    target_port=defaults.internal_port,
                    protocol="TCP"
                )
            ]
        )
    )


# =============================================================================
# Deployment Manifest
# =============================================================================

def create_chown_init_container(
    image: str,
    defaults: GatewayDefaults
) -> client.V1Container:
    """
    Init container chowning the data directory to the ceph user.

    Some CSI drivers do not honour the fsGroup policy, and a chown in a
    postStart hook is not guaranteed to finish before the daemon starts.
    """
    return client.V1Container(
        name=CHOWN_CONTAINER_NAME,
        image=image,
        command=["chown"],
        args=[
            "--verbose",
            "--recursive",
            "ceph:ceph",
            defaults.data_directory,
        ],
        volume_mounts=[data_volume_mount(defaults)],
        security_context=client.V1SecurityContext(
            privileged=True,
            run_as_user=0
        )
    )


def create_zone_container(
    object_store: ObjectStore,
    endpoint: str,
    defaults: GatewayDefaults,
    name: str = ZONE_CREATE_CONTAINER_NAME
) -> client.V1Container:
    """Container running zone create with the token taken from the secret."""
    return client.V1Container(
        name=name,
        image=object_store.spec.image,
        command=[defaults.multisite_binary],
        args=zone_create_args(
            token=container_env_var_reference(REALM_TOKEN_ENV_VAR),
            endpoint=endpoint,
            zone=zone_name(object_store.name, object_store.namespace)
        ),
        volume_mounts=[data_volume_mount(defaults)],
        env=daemon_env_vars(object_store.spec.image, defaults) + [
            realm_token_env_var(
                object_store.spec.multisite.realm_token_secret_name,
                defaults.realm_token_secret_key
            )
        ]
    )


def create_daemon_container(
    object_store: ObjectStore,
    defaults: GatewayDefaults
) -> client.V1Container:
    """radosgw daemon running in the foreground."""
    pod_name_ref = container_env_var_reference(POD_NAME_ENV_VAR)
    identity = stable_hash(instance_name(object_store.name, object_store.namespace))

    args = daemon_flags(defaults) + [
        # A hash keeps the admin socket path short enough
        new_flag("id", identity),
        new_flag("host", pod_name_ref),
    ] + [new_flag(key, value) for key, value in defaults.extra_daemon_flags]

    return client.V1Container(
        name=defaults.container_name,
        image=object_store.spec.image,
        command=[defaults.daemon_binary],
        args=args,
        ports=[
            client.V1ContainerPort(
                container_port=defaults.internal_port,
                name="http"
            )
        ],
        volume_mounts=[data_volume_mount(defaults)],
        env=daemon_env_vars(object_store.spec.image, defaults)
    )


def create_gateway_deployment(
    object_store: ObjectStore,
    defaults: GatewayDefaults,
    endpoint: str,
    join_zone: bool = False
) -> client.V1Deployment:
    """
    Create the gateway Deployment manifest.

    Args:
        object_store: Parent ObjectStore
        defaults: Gateway constants
        endpoint: Service URL of this gateway, advertised on zone create
        join_zone: Add an init container joining the realm before the daemon
            starts (joining sites only)

    Returns:
        V1Deployment manifest
    """
    name = instance_name(object_store.name, object_store.namespace)
    labels = get_labels(object_store.name)

    init_containers = [
        create_chown_init_container(object_store.spec.image, defaults),
    ]
    if join_zone:
        init_containers.append(create_zone_container(object_store, endpoint, defaults))

    pod_spec = client.V1PodSpec(
        init_containers=init_containers,
        containers=[create_daemon_container(object_store, defaults)],
        restart_policy="Always",
        security_context=client.V1PodSecurityContext(
            run_as_user=defaults.ceph_uid,
            run_as_group=defaults.ceph_gid,
            fs_group=defaults.ceph_gid
        ),
        volumes=[data_volume(name)]
    )

    return client.V1Deployment(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=object_store.namespace,
            labels=labels
        ),
        spec=client.V1DeploymentSpec(
            replicas=1,
            selector=client.V1LabelSelector(match_labels=labels),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=pod_spec
            )
        )
    )


# =============================================================================
# Multisite Job and Secret
# =============================================================================

def create_zone_job_manifest(
    object_store: ObjectStore,
    endpoint: str,
    defaults: GatewayDefaults
) -> client.V1Job:
    """
    One-shot Job joining the realm as a new zone.

    The token reaches the pod through a secretKeyRef env var so it never
    shows up in the Job spec.
    """
    job_name = zone_job_name(object_store.name, object_store.namespace)
    container = create_zone_container(object_store, endpoint, defaults, name="zone-create")

    return client.V1Job(
        metadata=client.V1ObjectMeta(
            name=job_name,
            namespace=object_store.namespace,
            labels=get_labels(object_store.name),
            owner_references=[create_owner_reference(object_store)]
        ),
        spec=client.V1JobSpec(
            backoff_limit=defaults.job_backoff_limit,
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels={"app": job_name}),
                spec=client.V1PodSpec(
                    containers=[container],
                    volumes=[data_volume(instance_name(object_store.name, object_store.namespace))],
                    restart_policy="OnFailure"
                )
            )
        )
    )


def create_realm_token_secret(
    object_store: ObjectStore,
    token: str,
    key: str = "token",
    name: Optional[str] = None
) -> client.V1Secret:
    """Secret publishing the realm token of an origin site."""
    return client.V1Secret(
        metadata=client.V1ObjectMeta(
            name=name or realm_token_secret_name(object_store.name, object_store.namespace),
            namespace=object_store.namespace,
            labels=get_labels(object_store.name),
            owner_references=[create_owner_reference(object_store)]
        ),
        type="Opaque",
        string_data={key: token}
    )
