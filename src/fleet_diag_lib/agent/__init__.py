from .kubernetes_agent import KubernetesPodAgent
from .remote_agent import RemoteAgent, RetrieveOptions

__all__ = ["KubernetesPodAgent", "RemoteAgent", "RetrieveOptions"]
