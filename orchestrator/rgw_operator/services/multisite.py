"""
Multisite handshake between two ObjectStores.

Origin site:
1. ``realm list`` in its gateway pod; an existing realm means nothing to do
2. ``realm bootstrap`` advertising its own service endpoint
3. Publish the printed token in a Secret owned by the ObjectStore
4. Restart the gateway so it serves the new realm, wait for it again

Joining site (the operator user copies the origin's Secret over):
1. Read the token from the referenced Secret, fail before any remote call
   when it is missing or empty
2. ``zone create`` with the token and its own service endpoint, either
   exec'd in the gateway pod or run by a one-shot Job

Both directions advertise "how to reach me" through the Service address,
so callers must resolve it before calling in here.
"""

import base64
import binascii
import errno
import logging
from typing import List, Optional

from ..config import GatewayDefaults
from ..models import ObjectStore
from ..utils.resource_naming import (
    get_label_selector,
    get_labels,
    realm_token_secret_name,
    zone_job_name,
    zone_name,
)
from .orchestration.kubernetes.client import KubernetesClient
from .orchestration.kubernetes.executor import ExecResult, RemotePodCommandExecutor
from .orchestration.kubernetes.helpers import create_realm_token_secret, create_zone_job_manifest
from .orchestration.kubernetes.polling import (
    job_policy,
    pod_policy,
    wait_for_job_completion,
    wait_for_labeled_pods_running,
)
from .rgw_cli import (
    parse_realm_list,
    parse_realm_token,
    realm_bootstrap_command,
    realm_list_command,
    zone_create_command,
)

logger = logging.getLogger(__name__)

JOIN_MODE_EXEC = "exec"
JOIN_MODE_JOB = "job"

# zone create exits with EEXIST when this site already joined
ZONE_EXISTS_EXIT_CODES = (errno.EEXIST,)


class MultisiteError(Exception):
    """A step of the multisite handshake failed."""


class RealmTokenSecretError(MultisiteError):
    """The realm token secret of a joining site is missing or unusable."""


class MultisiteHandshake:
    """Runs the origin and joining sides of the multisite bootstrap."""

    def __init__(
        self,
        k8s_client: KubernetesClient,
        executor: RemotePodCommandExecutor,
        defaults: GatewayDefaults
    ):
        self.k8s_client = k8s_client
        self.executor = executor
        self.defaults = defaults

    async def _exec(self, object_store: ObjectStore, command: List[str]) -> ExecResult:
        return await self.executor.exec_with_timeout(
            get_label_selector(object_store.name),
            self.defaults.container_name,
            object_store.namespace,
            command
        )

    # =========================================================================
    # ORIGIN SITE
    # =========================================================================

    async def get_realms(self, object_store: ObjectStore) -> List[str]:
        result = await self._exec(object_store, realm_list_command(self.defaults))
        if result.failed:
            raise MultisiteError(f"failed to list realms: {result.stderr}") from result.error
        return parse_realm_list(result.stdout)

    async def bootstrap_realm(
        self,
        object_store: ObjectStore,
        endpoint: str,
        deadline: Optional[float] = None
    ) -> bool:
        """
        Bootstrap a realm on the origin site and publish its token.

        Returns:
            True if a realm was bootstrapped, False if one already existed

        Raises:
            MultisiteError: A remote command failed
            ProtocolError: The bootstrap output carried no valid token; no
                secret is created in that case
        """
        realms = await self.get_realms(object_store)
        if realms:
            logger.info(f"[MULTISITE] Realm {realms[0]} already exists for {object_store.key}")
            await self._check_published_token(object_store, realms[0])
            return False

        logger.info(f"[MULTISITE] Bootstrapping realm for {object_store.key} at {endpoint}")
        result = await self._exec(object_store, realm_bootstrap_command(self.defaults, endpoint))
        if result.failed:
            raise MultisiteError(f"failed to bootstrap realm: {result.stderr}") from result.error

        token = parse_realm_token(result.stdout)

        secret = create_realm_token_secret(
            object_store,
            token,
            key=self.defaults.realm_token_secret_key
        )
        created = await self.k8s_client.create_secret(secret)
        if not created:
            logger.warning(
                f"[MULTISITE] Realm token secret {secret.metadata.name} already exists, "
                f"keeping its current token"
            )

        if self.defaults.restart_gateway_after_bootstrap:
            await self.restart_gateway(object_store, deadline=deadline)

        logger.info(
            f"[MULTISITE] ✅ Realm bootstrapped for {object_store.key}, "
            f"token published in secret {realm_token_secret_name(object_store.name, object_store.namespace)}"
        )
        return True

    async def _check_published_token(self, object_store: ObjectStore, realm: str) -> None:
        # A realm joined from elsewhere has its token published by the other site
        if object_store.spec.is_multisite:
            return
        secret_name = realm_token_secret_name(object_store.name, object_store.namespace)
        if await self.k8s_client.get_secret(secret_name, object_store.namespace) is None:
            logger.warning(
                f"[MULTISITE] Realm {realm} exists for {object_store.key} but its token secret "
                f"{secret_name} is missing; joiners cannot use it until it is recreated by hand"
            )

    async def restart_gateway(self, object_store: ObjectStore, deadline: Optional[float] = None) -> None:
        """Delete the running gateway pod(s) and wait for the replacement."""
        pods = await self.k8s_client.list_pods(object_store.namespace, get_label_selector(object_store.name))
        for pod in pods:
            if pod.metadata.deletion_timestamp is None:
                logger.info(f"[MULTISITE] Restarting gateway pod {pod.metadata.name} to load the new realm")
                await self.k8s_client.delete_pod(pod.metadata.name, object_store.namespace)

        await wait_for_labeled_pods_running(
            self.k8s_client,
            object_store.namespace,
            get_labels(object_store.name),
            pod_policy(self.defaults.pod_ready_retries, self.defaults.pod_ready_interval_seconds),
            deadline=deadline
        )

    # =========================================================================
    # JOINING SITE
    # =========================================================================

    async def load_realm_token(self, object_store: ObjectStore) -> str:
        """
        Read the realm token a joining site was given.

        Raises:
            RealmTokenSecretError: Secret missing, key missing or empty
        """
        secret_name = object_store.spec.multisite.realm_token_secret_name
        key = self.defaults.realm_token_secret_key

        secret = await self.k8s_client.get_secret(secret_name, object_store.namespace)
        if secret is None:
            raise RealmTokenSecretError(
                f"failed to get realm token secret {object_store.namespace}/{secret_name}: not found"
            )

        raw = (secret.data or {}).get(key)
        if not raw:
            raise RealmTokenSecretError(
                f"realm token secret {secret_name} has no {key!r} key or it is empty"
            )

        try:
            token = base64.b64decode(raw).decode("utf-8").strip()
        except (binascii.Error, UnicodeDecodeError) as e:
            raise RealmTokenSecretError(f"realm token secret {secret_name} is not readable: {e}") from e

        if not token:
            raise RealmTokenSecretError(f"realm token secret {secret_name} has an empty {key!r} key")
        return token

    async def join_zone(self, object_store: ObjectStore, endpoint: str, token: str) -> None:
        """Create this site's zone by exec'ing zone create in the gateway pod."""
        command = zone_create_command(
            self.defaults,
            token,
            endpoint,
            zone=zone_name(object_store.name, object_store.namespace)
        )
        result = await self._exec(object_store, command)

        if result.failed:
            if result.exit_code in ZONE_EXISTS_EXIT_CODES:
                logger.info(f"[MULTISITE] Zone for {object_store.key} already exists")
                return
            raise MultisiteError(f"failed to create zone: {result.stderr}") from result.error

        logger.info(f"[MULTISITE] ✅ Zone created for {object_store.key}")
        if result.stdout:
            logger.debug(result.stdout)

    async def join_zone_with_job(
        self,
        object_store: ObjectStore,
        endpoint: str,
        deadline: Optional[float] = None
    ) -> None:
        """
        Create this site's zone with a one-shot Job and wait for it.

        A Job that already succeeded is left alone. A failed one is deleted
        and the pass fails, so the next pass starts a fresh Job.
        """
        job_name = zone_job_name(object_store.name, object_store.namespace)
        namespace = object_store.namespace

        existing = await self.k8s_client.get_job(job_name, namespace)
        if existing is not None and existing.status is not None:
            if existing.status.succeeded and existing.status.succeeded > 0:
                logger.info(f"[MULTISITE] Zone job {job_name} already succeeded")
                return
            if existing.status.failed and existing.status.failed > 0:
                await self.k8s_client.delete_job(job_name, namespace)
                raise MultisiteError(f"zone job {job_name} failed, deleted it so the next pass retries")

        if existing is None:
            job = create_zone_job_manifest(object_store, endpoint, self.defaults)
            await self.k8s_client.create_job(job)

        await wait_for_job_completion(
            self.k8s_client,
            job_name,
            namespace,
            job_policy(self.defaults.job_poll_interval_seconds, self.defaults.job_timeout_seconds),
            deadline=deadline
        )
        logger.info(f"[MULTISITE] ✅ Zone job {job_name} completed for {object_store.key}")

    async def join(
        self,
        object_store: ObjectStore,
        endpoint: str,
        token: str,
        deadline: Optional[float] = None
    ) -> None:
        """Join the realm using the configured join mode."""
        if self.defaults.multisite_join_mode == JOIN_MODE_JOB:
            await self.join_zone_with_job(object_store, endpoint, deadline=deadline)
        elif self.defaults.multisite_join_mode == JOIN_MODE_EXEC:
            await self.join_zone(object_store, endpoint, token)
        else:
            raise MultisiteError(f"unknown multisite join mode {self.defaults.multisite_join_mode!r}")
