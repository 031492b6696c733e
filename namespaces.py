import logging
from typing import Dict, Mapping, Optional, Protocol

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from resolver import InjectorError

logger = logging.getLogger(__name__)


class NamespaceLookupError(InjectorError):
    def __init__(self, namespace: str, reason: str):
        super().__init__(f"error describing namespace {namespace!r}: {reason}")
        self.namespace = namespace


class NamespaceLookup(Protocol):
    def labels(self, namespace: str) -> Dict[str, str]:
        ...


class KubernetesNamespaceLookup:
    """Reads namespace labels from the API server on every call; nothing is cached."""

    def __init__(self, core_v1: client.CoreV1Api, timeout: Optional[float] = None):
        self.core_v1 = core_v1
        self.timeout = timeout

    @classmethod
    def from_cluster(cls, timeout: Optional[float] = None) -> "KubernetesNamespaceLookup":
        try:
            config.load_incluster_config()
        except config.ConfigException:
            logger.info("Not running in a cluster; falling back to kubeconfig")
            config.load_kube_config()
        return cls(client.CoreV1Api(), timeout=timeout)

    def labels(self, namespace: str) -> Dict[str, str]:
        try:
            ns = self.core_v1.read_namespace(namespace, _request_timeout=self.timeout)
        except ApiException as e:
            raise NamespaceLookupError(namespace, f"{e.status} {e.reason}") from e
        except HTTPError as e:
            raise NamespaceLookupError(namespace, str(e)) from e

        labels = dict(ns.metadata.labels or {}) if ns.metadata else {}
        logger.debug("Namespace %s labels: %s", namespace, labels)
        return labels


class StaticNamespaceLookup:
    """Serves labels from a fixed mapping; unknown namespaces fail like a 404."""

    def __init__(self, namespaces: Mapping[str, Mapping[str, str]]):
        self.namespaces = namespaces

    def labels(self, namespace: str) -> Dict[str, str]:
        if namespace not in self.namespaces:
            raise NamespaceLookupError(namespace, "404 Not Found")
        return dict(self.namespaces[namespace])
