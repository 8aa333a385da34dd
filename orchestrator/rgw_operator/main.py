"""
Operator entry point.

kopf watches ObjectStore resources and calls the reconciler on every
create, update and resume, and periodically for objects left idle.
kopf runs one change handler at a time per object, while different
objects are handled concurrently. The reconcile pass is idempotent, so
the timer overlapping a change handler only repeats work.

Run with either:
    kopf run -m rgw_operator.main
    rgw-operator
"""

import logging
import time

import kopf

from .config import GatewayDefaults, get_settings
from .models import InvalidObjectStoreError
from .services.orchestration.kubernetes.client import get_k8s_client
from .services.reconciler import PHASE_PROGRESSING, PHASE_READY, ObjectStoreReconciler, ReconcileResult

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logging.getLogger("rgw_operator").setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

RESOURCE = dict(group=settings.api_group, version=settings.api_version, plural=settings.plural)


@kopf.on.startup()
def configure(memo: kopf.Memo, **kwargs) -> None:
    """Build the reconciler once, share it through the memo."""
    operator_settings: kopf.OperatorSettings = kwargs["settings"]
    # Failures are already logged, keep the event stream for warnings
    operator_settings.posting.level = logging.WARNING

    defaults = GatewayDefaults.from_settings(settings)
    memo.reconciler = ObjectStoreReconciler(get_k8s_client(), settings, defaults)
    logger.info(
        f"ObjectStore operator started (join mode: {defaults.multisite_join_mode}, "
        f"restart after bootstrap: {defaults.restart_gateway_after_bootstrap})"
    )


async def run_reconcile(reconciler: ObjectStoreReconciler, name: str, namespace: str) -> ReconcileResult:
    """
    Run one pass and translate failures for kopf.

    Invalid specs are permanent until the object changes, everything else
    is requeued after the configured delay.
    """
    deadline = time.monotonic() + settings.reconcile_timeout_seconds
    try:
        return await reconciler.reconcile(name, namespace, deadline=deadline)
    except InvalidObjectStoreError as e:
        logger.error(f"ObjectStore {namespace}/{name} is invalid: {e}")
        raise kopf.PermanentError(str(e)) from e
    except Exception as e:
        logger.error(f"Failed to reconcile ObjectStore {namespace}/{name}: {e}")
        raise kopf.TemporaryError(str(e), delay=settings.requeue_delay_seconds) from e


@kopf.on.resume(**RESOURCE)
@kopf.on.create(**RESOURCE)
@kopf.on.update(**RESOURCE)
async def reconcile_object_store(name: str, namespace: str, memo: kopf.Memo, patch: kopf.Patch, **_) -> None:
    try:
        result = await run_reconcile(memo.reconciler, name, namespace)
    except kopf.TemporaryError:
        patch.status["phase"] = PHASE_PROGRESSING
        raise
    if result.phase == PHASE_READY:
        patch.status["phase"] = result.phase


@kopf.timer(**RESOURCE, interval=settings.resync_interval_seconds, idle=settings.resync_idle_seconds)
async def resync_object_store(name: str, namespace: str, memo: kopf.Memo, patch: kopf.Patch, **_) -> None:
    """Re-run the pass so drifted children and lost realm state are repaired without an event."""
    await reconcile_object_store(name=name, namespace=namespace, memo=memo, patch=patch)


@kopf.on.delete(**RESOURCE, optional=True)
async def finalize_object_store(name: str, namespace: str, memo: kopf.Memo, **_) -> None:
    # The finalizer is ours, not kopf's, the reconciler releases it
    await run_reconcile(memo.reconciler, name, namespace)


def run() -> None:
    """Console script entry point."""
    namespaces = [settings.watch_namespace] if settings.watch_namespace else []
    kopf.run(standalone=True, clusterwide=not namespaces, namespaces=namespaces)
