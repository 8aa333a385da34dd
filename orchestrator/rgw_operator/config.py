"""
Operator configuration.

Settings are read from the environment (or a .env file) once and cached by
get_settings(). GatewayDefaults is the frozen subset handed to the manifest
builders, the executor and the pollers so they never read the environment.
"""

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Tuple

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    # ==========================================================================
    # Custom Resource
    # ==========================================================================
    api_group: str = "object.rook-s3-nano"
    api_version: str = "v1alpha1"
    kind: str = "ObjectStore"
    plural: str = "objectstores"

    # Empty means cluster-wide
    watch_namespace: str = ""

    # Delay before kopf re-runs a failed reconcile pass
    requeue_delay_seconds: int = 30

    # Wall-clock budget of one reconcile pass, polling aborts once it is spent
    reconcile_timeout_seconds: float = 900.0

    # Periodic re-reconcile of objects that saw no change for resync_idle_seconds
    resync_interval_seconds: float = 300.0
    resync_idle_seconds: float = 60.0

    # ==========================================================================
    # Gateway
    # ==========================================================================
    gateway_default_port: int = 8080  # Service port when spec.gateway.port is unset
    gateway_internal_port: int = 7480  # Port radosgw listens on inside the pod
    gateway_container_name: str = "rgw"

    ceph_uid: int = 167
    ceph_gid: int = 167
    data_directory: str = "/var/lib/ceph/radosgw/data"

    # Dummy ceph.conf, ceph only checks that the file exists
    ceph_conf_path: str = "/etc/ceph/rbdmap"
    ceph_lib_path: str = "/usr/lib64/rados-classes"

    daemon_binary: str = "radosgw-sqlite"
    admin_binary: str = "radosgw-admin-sqlite"
    multisite_binary: str = "rgwam-sqlite"

    # ==========================================================================
    # Remote exec and polling
    # ==========================================================================
    exec_timeout_seconds: int = 15
    pod_ready_retries: int = 5
    pod_ready_interval_seconds: float = 30.0
    job_poll_interval_seconds: float = 5.0
    job_timeout_seconds: float = 600.0
    job_backoff_limit: int = 600

    # ==========================================================================
    # Multisite
    # ==========================================================================
    # "exec" runs zone create inside the gateway pod, "job" uses a one-shot Job
    multisite_join_mode: str = "exec"
    # Restart the origin gateway so it serves the freshly bootstrapped realm
    restart_gateway_after_bootstrap: bool = True
    realm_token_secret_key: str = "token"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
        case_sensitive = False


@lru_cache()
def get_settings():
    return Settings()


@dataclass(frozen=True)
class GatewayDefaults:
    """
    Immutable gateway constants handed to the manifest builders, the executor
    and the pollers.

    Built from Settings in production; tests build their own so intervals
    and ports can be overridden without touching process-wide state.
    """

    default_port: int = 8080
    internal_port: int = 7480
    container_name: str = "rgw"
    ceph_uid: int = 167
    ceph_gid: int = 167
    data_directory: str = "/var/lib/ceph/radosgw/data"
    ceph_conf_path: str = "/etc/ceph/rbdmap"
    ceph_lib_path: str = "/usr/lib64/rados-classes"
    daemon_binary: str = "radosgw-sqlite"
    admin_binary: str = "radosgw-admin-sqlite"
    multisite_binary: str = "rgwam-sqlite"
    exec_timeout_seconds: int = 15
    pod_ready_retries: int = 5
    pod_ready_interval_seconds: float = 30.0
    job_poll_interval_seconds: float = 5.0
    job_timeout_seconds: float = 600.0
    job_backoff_limit: int = 600
    multisite_join_mode: str = "exec"
    restart_gateway_after_bootstrap: bool = True
    realm_token_secret_key: str = "token"
    # Extra daemon flags, appended after the identity flags
    # TODO: drop rgw cache override once the sqlite backend handles cache invalidation
    extra_daemon_flags: Tuple[Tuple[str, str], ...] = field(
        default=(("debug rgw", "15"), ("rgw cache enabled", "false"))
    )

    @classmethod
    def from_settings(cls, settings: Settings) -> "GatewayDefaults":
        return cls(
            default_port=settings.gateway_default_port,
            internal_port=settings.gateway_internal_port,
            container_name=settings.gateway_container_name,
            ceph_uid=settings.ceph_uid,
            ceph_gid=settings.ceph_gid,
            data_directory=settings.data_directory,
            ceph_conf_path=settings.ceph_conf_path,
            ceph_lib_path=settings.ceph_lib_path,
            daemon_binary=settings.daemon_binary,
            admin_binary=settings.admin_binary,
            multisite_binary=settings.multisite_binary,
            exec_timeout_seconds=settings.exec_timeout_seconds,
            pod_ready_retries=settings.pod_ready_retries,
            pod_ready_interval_seconds=settings.pod_ready_interval_seconds,
            job_poll_interval_seconds=settings.job_poll_interval_seconds,
            job_timeout_seconds=settings.job_timeout_seconds,
            job_backoff_limit=settings.job_backoff_limit,
            multisite_join_mode=settings.multisite_join_mode.lower().strip(),
            restart_gateway_after_bootstrap=settings.restart_gateway_after_bootstrap,
            realm_token_secret_key=settings.realm_token_secret_key,
        )
