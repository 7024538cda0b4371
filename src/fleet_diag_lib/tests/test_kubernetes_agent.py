"""
Unit tests for KubernetesPodAgent.

The Kubernetes exec stream is replaced by FakeExecResponse objects,
no cluster is needed to run them.
"""

import base64
import io
import os
import tarfile
import tempfile
import unittest
from unittest.mock import Mock, PropertyMock, patch

from fleet_diag_lib.agent import KubernetesPodAgent
from fleet_diag_lib.models.collector import (
    AgentConnectionException,
    RemoteCommandException,
    TransferException,
)


class FakeExecResponse:
    """
    Mimics the non preloaded websocket client returned
    by kubernetes.stream.stream
    """

    def __init__(self, stdout: list[str] = None, stderr: list[str] = None):
        self.stdout = list(stdout or [])
        self.stderr = list(stderr or [])
        self.closed = False

    def is_open(self) -> bool:
        return not self.closed and bool(self.stdout or self.stderr)

    def update(self, timeout: int = 1):
        pass

    def peek_stdout(self) -> bool:
        return bool(self.stdout)

    def read_stdout(self) -> str:
        return self.stdout.pop(0)

    def peek_stderr(self) -> bool:
        return bool(self.stderr)

    def read_stderr(self) -> str:
        return self.stderr.pop(0)

    def close(self):
        self.closed = True


def running_pod(ready: bool = True, phase: str = "Running") -> Mock:
    pod = Mock()
    pod.status.phase = phase
    pod.status.container_statuses = [Mock(ready=ready)]
    return pod


class KubernetesPodAgentTest(unittest.TestCase):
    def setUp(self):
        self.agent = KubernetesPodAgent(
            "/tmp/kubeconfig", "prometheus-0", "monitoring", "prometheus"
        )
        self.agent.shell = "bash"
        stream_patcher = patch("fleet_diag_lib.agent.kubernetes_agent.stream")
        self.mock_stream = stream_patcher.start()
        self.addCleanup(stream_patcher.stop)
        cli_patcher = patch.object(
            KubernetesPodAgent, "cli", new_callable=PropertyMock
        )
        self.mock_cli = cli_patcher.start().return_value
        self.addCleanup(cli_patcher.stop)


class TestExecuteCommand(KubernetesPodAgentTest):
    def test_separated_streams(self):
        self.mock_stream.return_value = FakeExecResponse(
            stdout=["line 1\n", "line 2\n"], stderr=["warning\n"]
        )

        stdout, stderr = self.agent.execute_command("ls -d /var/data/*/")

        self.assertEqual(stdout, b"line 1\nline 2\n")
        self.assertEqual(stderr, b"warning\n")
        keyword_args = self.mock_stream.call_args[1]
        self.assertEqual(
            keyword_args["command"], ["bash", "-c", "ls -d /var/data/*/"]
        )
        self.assertEqual(keyword_args["container"], "prometheus")
        self.assertFalse(keyword_args["_preload_content"])
        self.assertEqual(
            self.mock_stream.call_args[0][1:], ("prometheus-0", "monitoring")
        )

    def test_without_container(self):
        agent = KubernetesPodAgent("/tmp/kubeconfig", "prometheus-0")
        self.mock_stream.return_value = FakeExecResponse(stdout=["ok"])

        stdout, stderr = agent.execute_command("true")

        self.assertEqual(stdout, b"ok")
        self.assertEqual(stderr, b"")
        self.assertNotIn("container", self.mock_stream.call_args[1])
        self.assertEqual(agent.host_identity(), "default/prometheus-0")

    def test_transport_error(self):
        self.mock_stream.side_effect = Exception("Handshake status 500")

        with self.assertRaises(RemoteCommandException) as context:
            self.agent.execute_command("cat meta.json")

        self.assertIn("Handshake status 500", str(context.exception))
        self.assertEqual(context.exception.command, "cat meta.json")

    def test_oci_runtime_failure(self):
        self.mock_stream.return_value = FakeExecResponse(
            stdout=["OCI runtime exec failed: exec failed: not found"]
        )

        with self.assertRaises(RemoteCommandException):
            self.agent.execute_command("cat meta.json")

    def test_host_identity(self):
        self.assertEqual(
            self.agent.host_identity(), "monitoring/prometheus-0/prometheus"
        )


class TestConnect(KubernetesPodAgentTest):
    def setUp(self):
        super().setUp()
        self.agent.shell = None
        config_patcher = patch("fleet_diag_lib.agent.kubernetes_agent.config")
        self.mock_config = config_patcher.start()
        self.addCleanup(config_patcher.stop)
        token_patcher = patch(
            "fleet_diag_lib.agent.kubernetes_agent.SERVICE_TOKEN_FILENAME",
            "/not/existing/token",
        )
        token_patcher.start()
        self.addCleanup(token_patcher.stop)

    def test_connect(self):
        self.mock_cli.read_namespaced_pod.return_value = running_pod()
        self.mock_stream.return_value = "True\n"

        self.agent.connect()

        self.mock_config.load_kube_config.assert_called_once_with(
            "/tmp/kubeconfig"
        )
        self.assertEqual(self.agent.shell, "bash")

    def test_connect_falls_back_on_sh(self):
        self.mock_cli.read_namespaced_pod.return_value = running_pod()
        self.mock_stream.side_effect = [
            "OCI runtime exec failed: bash: not found",
            "True\n",
        ]

        self.agent.connect()

        self.assertEqual(self.agent.shell, "sh")

    def test_connect_without_shell(self):
        self.mock_cli.read_namespaced_pod.return_value = running_pod()
        self.mock_stream.side_effect = Exception("exec failed")

        with self.assertRaises(AgentConnectionException):
            self.agent.connect()

    def test_connect_pod_not_ready(self):
        self.mock_cli.read_namespaced_pod.return_value = running_pod(
            ready=False
        )

        with self.assertRaises(AgentConnectionException):
            self.agent.connect()
        self.mock_stream.assert_not_called()

    def test_connect_pod_pending(self):
        self.mock_cli.read_namespaced_pod.return_value = running_pod(
            phase="Pending"
        )

        with self.assertRaises(AgentConnectionException):
            self.agent.connect()

    def test_connect_invalid_kubeconfig(self):
        self.mock_config.load_kube_config.side_effect = OSError()

        with self.assertRaises(AgentConnectionException) as context:
            self.agent.connect()
        self.assertIn("Invalid kube-config file", str(context.exception))


class TestRetrieveDirectory(KubernetesPodAgentTest):
    def setUp(self):
        super().setUp()
        self.workdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.workdir.cleanup)
        self.destination = os.path.join(self.workdir.name, "snapshot")

    def base64_chunks(self, payload: bytes) -> list[str]:
        encoded = base64.encodebytes(payload).decode("utf-8")
        return [encoded[i: i + 1000] for i in range(0, len(encoded), 1000)]

    def get_tarball(self, files: dict[str, bytes]) -> bytes:
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tarball:
            for name, content in files.items():
                info = tarfile.TarInfo(name=name)
                info.size = len(content)
                tarball.addfile(info, io.BytesIO(content))
        return buffer.getvalue()

    def test_retrieve_directory(self):
        tarball = self.get_tarball(
            {
                "./01BLOCK/meta.json": b'{"version": 1}',
                "./01BLOCK/index": os.urandom(2048),
            }
        )
        self.mock_stream.side_effect = [
            FakeExecResponse(stdout=["directory\n"]),
            FakeExecResponse(stdout=self.base64_chunks(tarball)),
        ]

        self.agent.retrieve_directory(
            "/var/data/snapshots/abc", self.destination
        )

        with open(
            os.path.join(self.destination, "01BLOCK", "meta.json"), "rb"
        ) as f:
            self.assertEqual(f.read(), b'{"version": 1}')
        self.assertEqual(os.listdir(self.destination), ["01BLOCK"])
        dump_command = self.mock_stream.call_args_list[1][1]["command"]
        self.assertEqual(
            dump_command[2],
            "tar cf - -C /var/data/snapshots/abc . | base64",
        )

    def test_retrieve_file(self):
        payload = os.urandom(4096)
        self.mock_stream.side_effect = [
            FakeExecResponse(stdout=["file\n"]),
            FakeExecResponse(stdout=self.base64_chunks(payload)),
        ]

        self.agent.retrieve_directory(
            "/tmp/InstaclustrCollection.tar", self.destination
        )

        self.assertEqual(
            os.listdir(self.destination), ["InstaclustrCollection.tar"]
        )
        with open(
            os.path.join(self.destination, "InstaclustrCollection.tar"), "rb"
        ) as f:
            self.assertEqual(f.read(), payload)

    def test_retrieve_directory_rejects_escaping_members(self):
        tarball = self.get_tarball({"../outside.txt": b"escaped"})
        self.mock_stream.side_effect = [
            FakeExecResponse(stdout=["directory\n"]),
            FakeExecResponse(stdout=self.base64_chunks(tarball)),
        ]

        with self.assertRaises(TransferException):
            self.agent.retrieve_directory(
                "/var/data/snapshots/abc", self.destination
            )

        self.assertFalse(
            os.path.exists(os.path.join(self.workdir.name, "outside.txt"))
        )
        self.assertEqual(os.listdir(self.destination), [])

    def test_retrieve_missing_path(self):
        self.mock_stream.return_value = FakeExecResponse(stdout=["\n"])

        with self.assertRaises(TransferException) as context:
            self.agent.retrieve_directory("/tmp/missing", self.destination)

        self.assertEqual(context.exception.resource, "/tmp/missing")
        self.assertEqual(os.listdir(self.destination), [])

    def test_retrieve_stderr_cleans_temporary_files(self):
        self.mock_stream.side_effect = [
            FakeExecResponse(stdout=["directory\n"]),
            FakeExecResponse(
                stdout=["dGFy"], stderr=["tar: ./wal: file changed"]
            ),
        ]

        with self.assertRaises(TransferException) as context:
            self.agent.retrieve_directory(
                "/var/data/snapshots/abc", self.destination
            )

        self.assertIn("file changed", str(context.exception))
        self.assertEqual(os.listdir(self.destination), [])

    def test_retrieve_transport_error(self):
        self.mock_stream.side_effect = Exception("connection refused")

        with self.assertRaises(TransferException):
            self.agent.retrieve_directory(
                "/var/data/snapshots/abc", self.destination
            )
