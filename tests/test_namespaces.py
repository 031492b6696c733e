from unittest.mock import Mock

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import ReadTimeoutError

from namespaces import KubernetesNamespaceLookup, NamespaceLookupError, StaticNamespaceLookup
from resolver import InjectorError


def _namespace(labels):
    return client.V1Namespace(metadata=client.V1ObjectMeta(name="team-a", labels=labels))


class TestKubernetesNamespaceLookup:
    def setup_method(self) -> None:
        self.core_v1 = Mock(spec=client.CoreV1Api)
        self.lookup = KubernetesNamespaceLookup(self.core_v1, timeout=3)

    def test_returns_labels(self) -> None:
        self.core_v1.read_namespace.return_value = _namespace({"sidecar-inject": "true"})
        assert self.lookup.labels("team-a") == {"sidecar-inject": "true"}
        self.core_v1.read_namespace.assert_called_once_with("team-a", _request_timeout=3)

    def test_no_labels(self) -> None:
        self.core_v1.read_namespace.return_value = _namespace(None)
        assert self.lookup.labels("team-a") == {}

    def test_fetches_every_time(self) -> None:
        self.core_v1.read_namespace.side_effect = [
            _namespace({"sidecar-inject": "true"}),
            _namespace({"sidecar-inject": "false"}),
        ]
        assert self.lookup.labels("team-a")["sidecar-inject"] == "true"
        assert self.lookup.labels("team-a")["sidecar-inject"] == "false"

    def test_api_error(self) -> None:
        self.core_v1.read_namespace.side_effect = ApiException(status=403, reason="Forbidden")
        with pytest.raises(NamespaceLookupError, match="403 Forbidden") as excinfo:
            self.lookup.labels("team-a")
        assert excinfo.value.namespace == "team-a"
        assert isinstance(excinfo.value, InjectorError)

    def test_timeout(self) -> None:
        self.core_v1.read_namespace.side_effect = ReadTimeoutError(None, "/api/v1/namespaces/team-a", "timed out")
        with pytest.raises(NamespaceLookupError, match="timed out"):
            self.lookup.labels("team-a")


class TestStaticNamespaceLookup:
    def test_known_namespace(self) -> None:
        lookup = StaticNamespaceLookup({"team-a": {"sidecar-inject": "true"}})
        assert lookup.labels("team-a") == {"sidecar-inject": "true"}

    def test_unknown_namespace(self) -> None:
        with pytest.raises(NamespaceLookupError):
            StaticNamespaceLookup({}).labels("missing")
