"""
Remote command execution in gateway pods.

Runs the radosgw admin tools inside the running gateway container, the only
place where the gateway's sqlite database is reachable.

Exit codes are the only reliable failure signal: rgwam-sqlite logs
non-fatal diagnostics to stderr, so callers must branch on
ExecResult.failed, never on stderr content.
"""

from dataclasses import dataclass
from typing import List, Optional
import asyncio
import logging

from kubernetes.client.rest import ApiException

from ....config import GatewayDefaults
from ...rgw_cli import redact_command
from .client import KubernetesClient

logger = logging.getLogger(__name__)


class PodNotFoundError(Exception):
    """No pod matched the label selector; nothing was executed."""


class ExecTransportError(Exception):
    """The exec stream could not be established or did not complete."""


class RemoteCommandError(Exception):
    """The remote process exited with a non-zero status."""

    def __init__(self, command: List[str], exit_code: Optional[int], stderr: str, message: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        detail = message or f"command terminated with exit code {exit_code}"
        super().__init__(f"{detail}: {stderr}" if stderr else detail)


@dataclass
class ExecOptions:
    command: List[str]
    namespace: str
    pod_name: str
    container_name: str
    timeout: float
    # If False, whitespace around stdout and stderr is removed
    preserve_whitespace: bool = False


@dataclass
class ExecResult:
    """Captured output of a remote command."""

    stdout: str
    stderr: str
    exit_code: Optional[int] = None
    error: Optional[RemoteCommandError] = None

    @property
    def failed(self) -> bool:
        """
        Whether the command failed.

        A known exit code decides. When none was reported the command only
        counts as failed if the API server also reported an error.
        """
        if self.exit_code is not None:
            return self.exit_code != 0
        return self.error is not None


class RemotePodCommandExecutor:
    """Executes commands in a container of a pod selected by labels."""

    def __init__(self, k8s_client: KubernetesClient, defaults: GatewayDefaults):
        self.k8s_client = k8s_client
        self.defaults = defaults

    async def exec_with_options(self, options: ExecOptions) -> ExecResult:
        """
        Execute a command in the given pod and container.

        Raises:
            ExecTransportError: The stream failed or timed out
        """
        # Never log the raw command, it can carry a realm token
        logger.info(
            f"[EXEC] {options.namespace}/{options.pod_name}[{options.container_name}]: "
            f"{' '.join(redact_command(options.command))}"
        )

        try:
            stdout, stderr, exit_code, error_message = await asyncio.to_thread(
                self.k8s_client._exec_in_pod,
                options.pod_name,
                options.namespace,
                options.container_name,
                options.command,
                options.timeout
            )
        except (ApiException, OSError, TimeoutError) as e:
            raise ExecTransportError(
                f"failed to exec in pod {options.namespace}/{options.pod_name}: {e}"
            ) from e
        except Exception as e:
            # websocket-client raises its own exception hierarchy
            raise ExecTransportError(
                f"exec stream to pod {options.namespace}/{options.pod_name} failed: {e}"
            ) from e

        if not options.preserve_whitespace:
            stdout = stdout.strip()
            stderr = stderr.strip()

        error = None
        if exit_code != 0 and (exit_code is not None or error_message):
            error = RemoteCommandError(redact_command(options.command), exit_code, stderr, error_message or "")

        logger.debug(f"[EXEC] exit code {exit_code} ({len(stdout)} bytes stdout, {len(stderr)} bytes stderr)")
        return ExecResult(stdout=stdout, stderr=stderr, exit_code=exit_code, error=error)

    async def exec_in_labeled_pod(
        self,
        label_selector: str,
        container_name: str,
        namespace: str,
        command: List[str],
        timeout: Optional[float] = None
    ) -> ExecResult:
        """
        Execute a command in the first pod matching a label selector.

        Raises:
            PodNotFoundError: No pod matches the selector
            ExecTransportError: The stream failed or timed out
        """
        try:
            pods = await self.k8s_client.list_pods(namespace, label_selector)
        except ApiException as e:
            raise ExecTransportError(f"failed to list pods with selector {label_selector!r}: {e}") from e

        if not pods:
            raise PodNotFoundError(f"no pods found with selector {label_selector!r} in {namespace}")

        if timeout is None:
            timeout = self.defaults.exec_timeout_seconds

        return await self.exec_with_options(ExecOptions(
            command=command,
            namespace=namespace,
            pod_name=pods[0].metadata.name,
            container_name=container_name,
            # Leave the remote `timeout` room to kill the process and report
            timeout=timeout + 5
        ))

    async def exec_with_timeout(
        self,
        label_selector: str,
        container_name: str,
        namespace: str,
        command: List[str]
    ) -> ExecResult:
        """
        Execute a command wrapped in `timeout` so an overrunning remote
        process is killed.
        """
        seconds = self.defaults.exec_timeout_seconds
        wrapped = ["timeout", str(int(seconds))] + list(command)
        return await self.exec_in_labeled_pod(
            label_selector,
            container_name,
            namespace,
            wrapped,
            timeout=seconds
        )
