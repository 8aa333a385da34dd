"""
Test remote command execution in gateway pods.

Verifies:
- No pod selected means nothing is executed
- Commands are wrapped in `timeout` and output is trimmed
- Exit codes, not stderr, decide failure
- Transport failures are distinguished from command failures
- Exec status parsing from the API server's error channel
"""

import json
from unittest.mock import MagicMock

import pytest

pytest.importorskip("kubernetes")

from kubernetes.client.rest import ApiException

from rgw_operator.config import GatewayDefaults
from rgw_operator.services.orchestration.kubernetes.client import parse_exec_status
from rgw_operator.services.orchestration.kubernetes.executor import (
    ExecOptions,
    ExecResult,
    ExecTransportError,
    PodNotFoundError,
    RemoteCommandError,
    RemotePodCommandExecutor,
)


@pytest.fixture
def executor(fake_k8s):
    return RemotePodCommandExecutor(fake_k8s, GatewayDefaults(exec_timeout_seconds=15))


class TestExecInLabeledPod:
    """Test pod selection."""

    @pytest.mark.asyncio
    async def test_no_pods(self, fake_k8s, executor):
        with pytest.raises(PodNotFoundError):
            await executor.exec_in_labeled_pod("object_store=store", "rgw", "default", ["true"])

        assert fake_k8s.exec_calls == []

    @pytest.mark.asyncio
    async def test_first_pod_selected(self, fake_k8s, executor):
        fake_k8s.add_pod("rgw-a", "default", {"object_store": "store"})
        fake_k8s.add_pod("rgw-b", "default", {"object_store": "store"})
        fake_k8s._exec_in_pod = MagicMock(return_value=("ok", "", 0, None))

        await executor.exec_in_labeled_pod("object_store=store", "rgw", "default", ["true"])

        pod_name, namespace, container, command, timeout = fake_k8s._exec_in_pod.call_args[0]
        assert (pod_name, namespace, container, command) == ("rgw-a", "default", "rgw", ["true"])
        assert timeout == 20

    @pytest.mark.asyncio
    async def test_other_namespace_not_selected(self, fake_k8s, executor):
        fake_k8s.add_pod("rgw-a", "other", {"object_store": "store"})

        with pytest.raises(PodNotFoundError):
            await executor.exec_in_labeled_pod("object_store=store", "rgw", "default", ["true"])


class TestExecWithTimeout:
    """Test the timeout wrapper and result handling."""

    @pytest.fixture(autouse=True)
    def gateway_pod(self, fake_k8s):
        fake_k8s.add_pod("rgw-a", "default", {"object_store": "store"})

    @pytest.mark.asyncio
    async def test_command_wrapped_in_timeout(self, fake_k8s, executor):
        fake_k8s.exec_handler = lambda command: ("  out\n", "\n", 0, None)

        result = await executor.exec_with_timeout("object_store=store", "rgw", "default", ["echo", "out"])

        assert fake_k8s.exec_calls == [["timeout", "15", "echo", "out"]]
        assert result.stdout == "out"
        assert result.stderr == ""
        assert result.exit_code == 0
        assert not result.failed

    @pytest.mark.asyncio
    async def test_stderr_alone_is_not_failure(self, fake_k8s, executor):
        """Test that diagnostics on stderr do not fail a command that exited 0."""
        fake_k8s.exec_handler = lambda command: ("done", "warning: something", 0, None)

        result = await executor.exec_with_timeout("object_store=store", "rgw", "default", ["cmd"])

        assert not result.failed
        assert result.error is None
        assert result.stderr == "warning: something"

    @pytest.mark.asyncio
    async def test_non_zero_exit(self, fake_k8s, executor):
        fake_k8s.exec_handler = lambda command: ("", "no such realm", 2, "command terminated with non-zero exit code")

        result = await executor.exec_with_timeout("object_store=store", "rgw", "default", ["cmd"])

        assert result.failed
        assert result.exit_code == 2
        assert isinstance(result.error, RemoteCommandError)
        assert result.error.exit_code == 2
        assert "no such realm" in str(result.error)

    @pytest.mark.asyncio
    async def test_unknown_exit_code_with_error(self, fake_k8s, executor):
        fake_k8s.exec_handler = lambda command: ("", "", None, "container not found")

        result = await executor.exec_with_timeout("object_store=store", "rgw", "default", ["cmd"])

        assert result.failed
        assert result.exit_code is None

    @pytest.mark.asyncio
    async def test_error_redacts_token(self, fake_k8s, executor):
        fake_k8s.exec_handler = lambda command: ("", "bad token", 1, None)

        result = await executor.exec_with_timeout(
            "object_store=store", "rgw", "default", ["rgwam-sqlite", "--realm-token=c2VjcmV0"]
        )

        assert "--realm-token=<redacted>" in result.error.command
        assert "--realm-token=c2VjcmV0" not in result.error.command

    @pytest.mark.asyncio
    async def test_transport_error(self, fake_k8s, executor):
        fake_k8s._exec_in_pod = MagicMock(side_effect=ApiException(status=500, reason="upgrade failed"))

        with pytest.raises(ExecTransportError):
            await executor.exec_with_timeout("object_store=store", "rgw", "default", ["cmd"])

    @pytest.mark.asyncio
    async def test_stream_timeout(self, fake_k8s, executor):
        fake_k8s._exec_in_pod = MagicMock(side_effect=TimeoutError("still running"))

        with pytest.raises(ExecTransportError, match="still running"):
            await executor.exec_with_timeout("object_store=store", "rgw", "default", ["cmd"])


class TestExecWithOptions:
    """Test exec_with_options directly."""

    @pytest.mark.asyncio
    async def test_preserve_whitespace(self, fake_k8s, executor):
        fake_k8s.exec_handler = lambda command: ("  a  \n", " b ", 0, None)

        result = await executor.exec_with_options(ExecOptions(
            command=["cat"],
            namespace="default",
            pod_name="rgw-a",
            container_name="rgw",
            timeout=5,
            preserve_whitespace=True
        ))

        assert result.stdout == "  a  \n"
        assert result.stderr == " b "


class TestExecResult:
    """Test ExecResult.failed."""

    def test_known_exit_code_decides(self):
        assert not ExecResult(stdout="", stderr="noise", exit_code=0).failed
        assert ExecResult(stdout="", stderr="", exit_code=1).failed

    def test_unknown_exit_code(self):
        assert not ExecResult(stdout="", stderr="").failed
        error = RemoteCommandError(["cmd"], None, "", "stream closed")
        assert ExecResult(stdout="", stderr="", error=error).failed


class TestParseExecStatus:
    """Test parse_exec_status."""

    def test_success(self):
        assert parse_exec_status(json.dumps({"status": "Success"})) == (0, None)

    def test_non_zero_exit_code(self):
        raw = json.dumps({
            "status": "Failure",
            "message": "command terminated with non-zero exit code: exit status 17",
            "reason": "NonZeroExitCode",
            "details": {"causes": [{"reason": "ExitCode", "message": "17"}]},
        })

        exit_code, message = parse_exec_status(raw)

        assert exit_code == 17
        assert "exit status 17" in message

    def test_failure_without_exit_code(self):
        raw = json.dumps({"status": "Failure", "message": "container not found"})
        assert parse_exec_status(raw) == (None, "container not found")

    def test_empty_channel(self):
        assert parse_exec_status("") == (None, None)
        assert parse_exec_status(None) == (None, None)

    def test_not_json(self):
        assert parse_exec_status("oops") == (None, "oops")
