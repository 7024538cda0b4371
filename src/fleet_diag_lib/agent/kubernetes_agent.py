import logging
import os
import posixpath
import shlex
import tarfile
import warnings
from typing import Optional
from urllib.parse import urlparse

import kubernetes
import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream

from fleet_diag_lib.agent.remote_agent import RemoteAgent, RetrieveOptions
from fleet_diag_lib.models.collector import (
    AgentConnectionException,
    RemoteCommandException,
    TransferException,
)
from fleet_diag_lib.utils import decode_base64_file, get_random_string

SERVICE_TOKEN_FILENAME = "/var/run/secrets/kubernetes.io/serviceaccount/token"
SUPPORTED_SHELLS = ["bash", "sh"]


class KubernetesPodAgent(RemoteAgent):
    """
    Remote agent running commands in a pod (typically the Prometheus
    pod of a node) through the Kubernetes exec API.
    """

    client_config: kubernetes.client.Configuration = None
    shell: Optional[str] = None

    @property
    def api_client(self) -> client.ApiClient:
        return client.ApiClient(self.client_config)

    @property
    def cli(self) -> client.CoreV1Api:
        return client.CoreV1Api(self.api_client)

    def __init__(
        self,
        kubeconfig_path: str,
        pod_name: str,
        namespace: str = "default",
        container: str = None,
    ):
        """
        :param kubeconfig_path: kubeconfig path, if the file does not
            exist and the agent runs in a pod the service account is used
        :param pod_name: pod where the commands will be executed
        :param namespace: namespace of the pod
        :param container: container where the commands will be executed
            (optional default `None`)

        >>> agent = KubernetesPodAgent(
        ...     "~/.kube/config", "prometheus-k8s-0", "monitoring"
        ... )
        >>> agent.connect()
        """
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        warnings.filterwarnings(
            action="ignore", message="unclosed", category=ResourceWarning
        )
        self.kubeconfig_path = kubeconfig_path
        self.pod_name = pod_name
        self.namespace = namespace
        self.container = container

    def __initialize_config(self, kubeconfig_path: str = None):
        """
        Initialize the client configuration from the kubeconfig path
        or from the service account if running in a cluster

        :param kubeconfig_path: kubeconfig path,
            (optional default KUBE_CONFIG_DEFAULT_LOCATION)
        """
        if kubeconfig_path is None:
            kubeconfig_path = config.KUBE_CONFIG_DEFAULT_LOCATION
        if "~/" in kubeconfig_path:
            kubeconfig_path = os.path.expanduser(kubeconfig_path)

        if not os.path.isfile(kubeconfig_path) and os.path.isfile(
            SERVICE_TOKEN_FILENAME
        ):
            config.load_incluster_config()
        else:
            try:
                config.load_kube_config(kubeconfig_path)
            except OSError:
                raise Exception(
                    "Invalid kube-config file: {0}. "
                    "No configuration found.".format(kubeconfig_path)
                )

        self.client_config = client.Configuration().get_default_copy()
        http_proxy = os.getenv("http_proxy", None)
        if http_proxy is not None:
            self.client_config.proxy = http_proxy
            proxy_auth = urlparse(http_proxy)
            if proxy_auth.username is not None:
                auth_string = f"{proxy_auth.username}:{proxy_auth.password}"
                self.client_config.proxy_headers = urllib3.util.make_headers(
                    proxy_basic_auth=auth_string
                )
        # the kubernetes client logs every request at DEBUG level
        logging.getLogger("kubernetes").setLevel(logging.INFO)

    def connect(self):
        try:
            self.__initialize_config(self.kubeconfig_path)
        except Exception as e:
            raise AgentConnectionException(
                f"failed to load kubernetes configuration: {e}"
            )

        if not self.is_pod_running():
            raise AgentConnectionException(
                f"pod: {self.pod_name}, namespace: {self.namespace} "
                f"not found or not running"
            )

        self.shell = self.get_pod_shell()
        if not self.shell:
            raise AgentConnectionException(
                f"impossible to determine the shell to run commands "
                f"on {self.host_identity()}"
            )

    def host_identity(self) -> str:
        if self.container:
            return f"{self.namespace}/{self.pod_name}/{self.container}"
        return f"{self.namespace}/{self.pod_name}"

    def is_pod_running(self) -> bool:
        """
        Checks if the pod and all its containers are running

        :return: True if is running or False if not
        """
        try:
            response = self.cli.read_namespaced_pod(
                name=self.pod_name, namespace=self.namespace
            )
            if response.status.phase != "Running":
                return False
            for status in response.status.container_statuses or []:
                if not status.ready:
                    return False
            return True
        except ApiException:
            return False

    def get_pod_shell(self) -> Optional[str]:
        """
        Gets the shell running on the pod, checking against
        /bin/bash and /bin/sh.

        :return: the shell name or None
        """
        for shell in SUPPORTED_SHELLS:
            try:
                ret = self._stream_exec(
                    [shell, "-c", f'test -f /bin/{shell} && echo "True"'],
                    preload_content=True,
                )
                # the stream API doesn't raise if the binary is missing
                if "True" in ret and "OCI runtime exec failed" not in ret:
                    return shell
            except Exception:
                continue
        return None

    def _stream_exec(self, exec_command: list[str], preload_content: bool):
        keyword_args = {
            "command": exec_command,
            "stderr": True,
            "stdin": False,
            "stdout": True,
            "tty": False,
            "_preload_content": preload_content,
        }
        if self.container:
            keyword_args["container"] = self.container
        return stream(
            self.cli.connect_get_namespaced_pod_exec,
            self.pod_name,
            self.namespace,
            **keyword_args,
        )

    def _read_streams(
        self, command: str, stdout_writer, timeout: int = 1
    ) -> str:
        """
        Runs the command in the pod shell, writes the stdout
        chunks with `stdout_writer` and returns the stderr

        :param command: command line executed with `<shell> -c`
        :param stdout_writer: callable receiving the stdout chunks
        :param timeout: poll interval of the websocket
        :return: the command stderr
        """
        stderr = []
        resp = self._stream_exec(
            [self.shell or "sh", "-c", command], preload_content=False
        )
        try:
            while resp.is_open():
                resp.update(timeout=timeout)
                if resp.peek_stdout():
                    stdout_writer(resp.read_stdout())
                if resp.peek_stderr():
                    stderr.append(resp.read_stderr())
        finally:
            resp.close()
        return "".join(stderr)

    def execute_command(self, command: str) -> tuple[bytes, bytes]:
        stdout = []
        try:
            stderr = self._read_streams(command, stdout.append)
        except Exception as e:
            raise RemoteCommandException(
                f"failed to execute command on {self.host_identity()}: {e}",
                command=command,
            )
        output = "".join(stdout)
        if "OCI runtime exec failed" in output:
            raise RemoteCommandException(output, command=command)
        return output.encode("utf-8"), stderr.encode("utf-8")

    def remote_path_type(self, remote_path: str) -> Optional[str]:
        """
        :param remote_path: path on the remote host
        :return: `directory`, `file` or None if the path does not exist
        """
        quoted = shlex.quote(remote_path)
        stdout, _ = self.execute_command(
            f"if [ -d {quoted} ]; then echo directory; "
            f"elif [ -e {quoted} ]; then echo file; fi"
        )
        path_type = stdout.decode("utf-8").strip()
        return path_type if path_type else None

    def retrieve_directory(
        self,
        remote_path: str,
        local_path: str,
        options: Optional[RetrieveOptions] = None,
    ):
        """
        Downloads the remote path in base64 format to avoid
        corruptions caused by the Kubernetes WebSocket API and decodes
        it locally. Directories are transferred as a tar stream and
        unpacked in `local_path`.
        """
        if options is None:
            options = RetrieveOptions()
        encoded_file = os.path.join(
            local_path, f".{get_random_string(10)}.b64"
        )
        decoded_file = encoded_file[: -len(".b64")]
        temporary_files = [encoded_file, decoded_file]
        try:
            if options.create_destination:
                os.makedirs(local_path, exist_ok=True)
            if not os.path.isdir(local_path):
                raise Exception(f"{local_path} is not a local directory")

            path_type = self.remote_path_type(remote_path)
            if path_type is None:
                raise Exception(f"remote path {remote_path} does not exist")

            quoted = shlex.quote(remote_path)
            if path_type == "directory":
                dump_command = f"tar cf - -C {quoted} . | base64"
            else:
                dump_command = f"base64 {quoted}"
                decoded_file = os.path.join(
                    local_path, posixpath.basename(remote_path.rstrip("/"))
                )

            with open(encoded_file, "x") as file_buffer:
                stderr = self._read_streams(
                    dump_command, file_buffer.write, options.stream_timeout
                )
                file_buffer.flush()
            if stderr:
                raise Exception(stderr)

            decode_base64_file(encoded_file, decoded_file)
            if path_type == "directory":
                with tarfile.open(decoded_file) as tarball:
                    tarball.extractall(local_path, filter="data")
        except Exception as e:
            raise TransferException(remote_path, str(e))
        finally:
            for temporary_file in temporary_files:
                if os.path.exists(temporary_file):
                    os.unlink(temporary_file)
