"""
Bounded polling for pod readiness and job completion.

Implements the waits of a reconcile pass on top of tenacity:
- RetryPolicy: max attempts and/or timeout, fixed interval between probes
- A probe returns None while the condition is not met yet, a value when it
  is, and raises to abort polling immediately
- An optional caller deadline (time.monotonic() based) is checked between
  probes and caps every sleep, so a cancelled pass stops promptly

Swapping the fixed interval for exponential backoff only touches
RetryPolicy.wait_strategy().
"""

from dataclasses import dataclass
from functools import reduce
from typing import Any, Awaitable, Callable, Dict, Optional
import logging
import operator
import time

from kubernetes import client
from kubernetes.client.rest import ApiException
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    stop_never,
    wait_fixed,
)
from tenacity.stop import stop_base
from tenacity.wait import wait_base

from .client import KubernetesClient

logger = logging.getLogger(__name__)


class PollTimeoutError(Exception):
    """The condition was not met within the retry budget."""


class DeadlineExceeded(Exception):
    """The caller's deadline passed while polling."""


class JobFailedError(Exception):
    """The polled Job reported a failed completion."""


class stop_at_deadline(stop_base):
    """Stop once the monotonic deadline has passed."""

    def __init__(self, deadline: float):
        self.deadline = deadline

    def __call__(self, retry_state) -> bool:
        return time.monotonic() >= self.deadline


class wait_capped_by_deadline(wait_base):
    """Never sleep past the caller's deadline."""

    def __init__(self, wait: wait_base, deadline: float):
        self.wait = wait
        self.deadline = deadline

    def __call__(self, retry_state) -> float:
        remaining = max(0.0, self.deadline - time.monotonic())
        return min(self.wait(retry_state), remaining)


@dataclass(frozen=True)
class RetryPolicy:
    """
    How long and how often to poll.

    Attributes:
        max_attempts: Number of probes before giving up (None = unbounded)
        interval: Seconds between probes
        timeout: Seconds since the first probe before giving up (None = unbounded)
    """

    max_attempts: Optional[int] = None
    interval: float = 5.0
    timeout: Optional[float] = None

    def wait_strategy(self) -> wait_base:
        return wait_fixed(self.interval)

    def stop_strategy(self, deadline: Optional[float] = None) -> stop_base:
        stops = []
        if self.max_attempts is not None:
            stops.append(stop_after_attempt(self.max_attempts))
        if self.timeout is not None:
            stops.append(stop_after_delay(self.timeout))
        if deadline is not None:
            stops.append(stop_at_deadline(deadline))
        if not stops:
            return stop_never
        return reduce(operator.or_, stops)

    async def poll(
        self,
        probe: Callable[[], Awaitable[Any]],
        description: str,
        deadline: Optional[float] = None
    ) -> Any:
        """
        Call `probe` until it returns something other than None.

        Raises:
            PollTimeoutError: The policy's attempts or timeout ran out
            DeadlineExceeded: The caller's deadline passed first
            Exception: Whatever the probe raised, unchanged
        """
        wait = self.wait_strategy()
        if deadline is not None:
            if time.monotonic() >= deadline:
                raise DeadlineExceeded(f"deadline passed before {description}")
            wait = wait_capped_by_deadline(wait, deadline)

        retrying = AsyncRetrying(
            stop=self.stop_strategy(deadline),
            wait=wait,
            retry=retry_if_result(lambda result: result is None),
            reraise=True
        )

        try:
            return await retrying(probe)
        except RetryError as e:
            attempts = e.last_attempt.attempt_number
            if deadline is not None and time.monotonic() >= deadline:
                raise DeadlineExceeded(
                    f"deadline passed after {attempts} attempt(s) {description}"
                ) from None
            raise PollTimeoutError(
                f"giving up {description} after {attempts} attempt(s)"
            ) from None


def pod_policy(retries: int, interval: float) -> RetryPolicy:
    return RetryPolicy(max_attempts=retries, interval=interval)


def job_policy(interval: float, timeout: float) -> RetryPolicy:
    return RetryPolicy(interval=interval, timeout=timeout)


async def wait_for_labeled_pods_running(
    k8s_client: KubernetesClient,
    namespace: str,
    labels: Dict[str, str],
    policy: RetryPolicy,
    deadline: Optional[float] = None
) -> client.V1Pod:
    """
    Wait until every pod matching the labels is Running.

    Terminating pods are ignored so a pod that was just deleted does not
    count as the running instance.

    Returns:
        The first running pod
    """
    label_selector = ",".join(f"{key}={value}" for key, value in labels.items())

    async def probe() -> Optional[client.V1Pod]:
        try:
            pods = await k8s_client.list_pods(namespace, label_selector)
        except ApiException as e:
            logger.warning(f"[POLL] Failed to list pods with label {label_selector}: {e.reason}")
            return None

        pods = [pod for pod in pods if pod.metadata.deletion_timestamp is None]
        running = [pod for pod in pods if pod.status is not None and pod.status.phase == "Running"]
        if pods and len(running) == len(pods):
            logger.info(f"[POLL] All {len(pods)} pod(s) with label {label_selector} running")
            return running[0]

        last_status = pods[-1].status.phase if pods and pods[-1].status is not None else ""
        logger.info(
            f"[POLL] Waiting for pod(s) with label {label_selector}: "
            f"{len(running)}/{len(pods)} running, last status {last_status!r}"
        )
        return None

    return await policy.poll(
        probe,
        f"waiting for pod with label {label_selector} to be running",
        deadline=deadline
    )


async def wait_for_job_completion(
    k8s_client: KubernetesClient,
    name: str,
    namespace: str,
    policy: RetryPolicy,
    deadline: Optional[float] = None
) -> client.V1Job:
    """
    Wait for a Job to report a successful completion.

    Raises:
        JobFailedError: The Job reported a failed completion or vanished
        PollTimeoutError: The Job neither succeeded nor failed in time
    """
    logger.info(f"[POLL] Waiting for job {namespace}/{name} to complete...")

    async def probe() -> Optional[client.V1Job]:
        job = await k8s_client.get_job(name, namespace)
        if job is None:
            raise JobFailedError(f"job {namespace}/{name} not found")

        status = job.status
        if status is None:
            logger.info(f"[POLL] Job {name} is still initializing")
            return None
        if status.succeeded and status.succeeded > 0:
            logger.info(f"[POLL] Job {name} succeeded")
            return job
        if status.failed and status.failed > 0:
            raise JobFailedError(f"job {namespace}/{name} failed")
        if status.active and status.active > 0:
            logger.info(f"[POLL] Job {name} is still running")
        else:
            logger.info(f"[POLL] Job {name} is still initializing")
        return None

    return await policy.poll(
        probe,
        f"waiting for job {namespace}/{name} to complete",
        deadline=deadline
    )
