from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True, order=False)
class RetrieveOptions:
    """
    Options of a remote path retrieval
    """

    create_destination: bool = True
    """
    Creates the local destination folder if missing
    """
    stream_timeout: int = 1
    """
    Poll interval in seconds of the transfer stream
    """


class RemoteAgent(ABC):
    """
    Remote command/execution channel towards a single host.
    Implementations are not expected to be shared between threads,
    each collection run owns its agent.
    """

    @abstractmethod
    def connect(self):
        """
        Establishes the channel.

        :raises AgentConnectionException: if the host is not reachable
        """
        ...

    @abstractmethod
    def execute_command(self, command: str) -> tuple[bytes, bytes]:
        """
        Runs a command string on the remote host. The caller must
        treat a non empty stderr as a failure independently of the
        exit status.

        :param command: the full command line, interpreted by the
            remote shell
        :raises RemoteCommandException: on transport errors
        :return: the (stdout, stderr) tuple
        """
        ...

    @abstractmethod
    def retrieve_directory(
        self,
        remote_path: str,
        local_path: str,
        options: Optional[RetrieveOptions] = None,
    ):
        """
        Copies a remote directory tree into `local_path`. If
        `remote_path` is a regular file it is stored as
        `local_path/<basename>`.

        :param remote_path: the remote directory or file
        :param local_path: local destination folder
        :param options: retrieval options, defaults if None
        :raises TransferException: on transport errors
        """
        ...

    @abstractmethod
    def host_identity(self) -> str:
        """
        :return: a string identifying the host in the logs
        """
        ...
