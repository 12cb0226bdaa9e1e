import socket
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import ProtocolError

from clusterdeck.exceptions import ClientConstructionError, KubernetesApiError, NotFoundError
from clusterdeck.schemas.cluster import ClusterRecord
from clusterdeck.services import kube_client
from clusterdeck.services.kube_client import ClusterClient, KubeClientFactory, LogFollow, PodWatch, abort_response


def record(**overrides) -> ClusterRecord:
    data = dict(
        id="c1",
        name="dev",
        context_name="dev",
        config_path="/vault/c1.yaml",
        created_at=1,
        last_accessed=1,
    )
    data.update(overrides)
    return ClusterRecord(**data)


@pytest.fixture
def registry() -> MagicMock:
    registry = MagicMock()
    registry.require = AsyncMock(return_value=record())
    registry.vault.read_credential.return_value = {"contexts": [], "clusters": [], "users": []}
    return registry


class TestKubeClientFactory:
    async def test_builds_client_for_registered_cluster(self, registry, monkeypatch):
        api_client = MagicMock()
        build = MagicMock(return_value=api_client)
        monkeypatch.setattr(kube_client, "build_api_client", build)

        result = await KubeClientFactory(registry, connect_timeout=1).for_cluster("c1")

        assert isinstance(result, ClusterClient)
        assert result.api_client is api_client
        registry.vault.read_credential.assert_called_once_with("/vault/c1.yaml")
        build.assert_called_once_with(registry.vault.read_credential.return_value, "dev")

    async def test_bad_config_is_a_construction_error(self, registry, monkeypatch):
        monkeypatch.setattr(kube_client, "build_api_client", MagicMock(side_effect=ConfigException("no server")))

        with pytest.raises(ClientConstructionError):
            await KubeClientFactory(registry, connect_timeout=1).for_cluster("c1")

    async def test_stalled_construction_times_out(self, registry, monkeypatch):
        def slow(bundle, context):
            time.sleep(0.3)

        monkeypatch.setattr(kube_client, "build_api_client", slow)

        with pytest.raises(ClientConstructionError):
            await KubeClientFactory(registry, connect_timeout=0.05).for_cluster("c1")


class TestClusterClient:
    def make(self) -> ClusterClient:
        api = ClusterClient("c1", MagicMock())
        api.core_v1 = MagicMock()
        return api

    def test_list_namespaces_sorted(self):
        api = self.make()
        ns = [MagicMock(), MagicMock()]
        ns[0].metadata.name = "kube-system"
        ns[1].metadata.name = "default"
        api.core_v1.list_namespace.return_value.items = ns

        assert api.list_namespaces() == ["default", "kube-system"]

    def test_list_pods_all_namespaces(self):
        api = self.make()
        api.core_v1.list_pod_for_all_namespaces.return_value.items = ["p"]
        assert api.list_pods("all") == ["p"]
        api.core_v1.list_namespaced_pod.assert_not_called()

    def test_list_pods_in_namespace(self):
        api = self.make()
        api.core_v1.list_namespaced_pod.return_value.items = ["p"]
        assert api.list_pods("shop") == ["p"]
        api.core_v1.list_namespaced_pod.assert_called_once_with("shop")

    def test_delete_missing_pod(self):
        api = self.make()
        api.core_v1.delete_namespaced_pod.side_effect = ApiException(status=404, reason="Not Found")
        with pytest.raises(NotFoundError):
            api.delete_pod("shop", "web")

    def test_delete_forbidden(self):
        api = self.make()
        api.core_v1.delete_namespaced_pod.side_effect = ApiException(status=403, reason="Forbidden")
        with pytest.raises(KubernetesApiError):
            api.delete_pod("shop", "web")


class FakeWatch:
    """Scripted stand-in for kubernetes.watch.Watch: one entry per stream() call."""

    script: list = []
    calls: list = []

    def __init__(self) -> None:
        self.stopped = False

    def stream(self, func, *args, **kwargs):
        FakeWatch.calls.append((func, args, kwargs))
        step = FakeWatch.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        yield from step

    def stop(self) -> None:
        self.stopped = True


def event(name: str, version: str) -> dict:
    obj = MagicMock()
    obj.metadata.name = name
    obj.metadata.resource_version = version
    return {"type": "ADDED", "object": obj}


class TestPodWatch:
    @pytest.fixture(autouse=True)
    def fake_watch(self, monkeypatch):
        FakeWatch.script = []
        FakeWatch.calls = []
        monkeypatch.setattr(kube_client.watch, "Watch", FakeWatch)

    def test_relists_after_expired_resource_version(self):
        core = MagicMock()
        FakeWatch.script = [
            [event("a", "10")],
            ApiException(status=410, reason="Gone"),
            [event("b", "20")],
        ]
        stream = PodWatch(core, "shop", timeout_seconds=30)
        iterator = iter(stream)

        assert next(iterator)["object"].metadata.name == "a"
        assert next(iterator)["object"].metadata.name == "b"
        stream.stop()

        first, second, third = FakeWatch.calls
        assert first[1] == ("shop",)
        assert "resource_version" not in first[2]
        assert second[2]["resource_version"] == "10"
        assert "resource_version" not in third[2]

    def test_other_api_errors_propagate(self):
        FakeWatch.script = [ApiException(status=403, reason="Forbidden")]
        with pytest.raises(ApiException):
            next(iter(PodWatch(MagicMock(), "all", timeout_seconds=30)))

    def test_all_namespaces_uses_cluster_wide_list(self):
        core = MagicMock()
        FakeWatch.script = [[event("a", "1")]]
        next(iter(PodWatch(core, "all", timeout_seconds=30)))
        func, args, _ = FakeWatch.calls[0]
        assert func.__wrapped__ is core.list_pod_for_all_namespaces
        assert args == ()


class CallThroughWatch:
    """Stand-in for kubernetes.watch.Watch that calls the API function and yields its lines."""

    def __init__(self) -> None:
        self.stopped = False

    def stream(self, func, *args, **kwargs):
        response = func(*args, **kwargs)
        yield from response.lines

    def stop(self) -> None:
        self.stopped = True


class FakeResponse:
    def __init__(self, lines) -> None:
        self.lines = lines
        self.connection = MagicMock()


class TestLogFollow:
    @pytest.fixture(autouse=True)
    def fake_watch(self, monkeypatch):
        monkeypatch.setattr(kube_client.watch, "Watch", CallThroughWatch)

    def make(self, lines):
        calls: list = []
        response = FakeResponse(lines)

        def read_namespaced_pod_log(**kwargs):
            calls.append(kwargs)
            return response

        core = MagicMock()
        core.read_namespaced_pod_log = read_namespaced_pod_log
        return LogFollow(core, "shop", "web", "app", tail_lines=100), calls, response

    def test_requests_tail_window_then_follows(self):
        follow, calls, _ = self.make(["line 1", "line 2", "line 3"])

        assert list(follow) == ["line 1", "line 2", "line 3"]
        assert calls == [
            dict(name="web", namespace="shop", container="app", follow=True, tail_lines=100)
        ]

    def test_stop_shuts_down_the_live_socket(self):
        follow, _, response = self.make(["a", "b"])
        lines = iter(follow)
        assert next(lines) == "a"

        follow.stop()

        response.connection.sock.shutdown.assert_called_once_with(socket.SHUT_RDWR)
        assert follow._watch.stopped
        with pytest.raises(StopIteration):
            next(lines)

    def test_stop_before_the_request_aborts_its_response(self):
        follow, _, response = self.make(["a"])
        follow.stop()

        assert list(follow) == []
        response.connection.sock.shutdown.assert_called_once_with(socket.SHUT_RDWR)

    def test_broken_connection_after_stop_ends_quietly(self):
        holder: dict = {}

        def lines():
            yield "a"
            holder["follow"].stop()
            raise ProtocolError("Connection broken")

        follow, _, _ = self.make(lines())
        holder["follow"] = follow

        assert list(follow) == ["a"]

    def test_broken_connection_while_running_propagates(self):
        def lines():
            yield "a"
            raise ProtocolError("Connection broken")

        follow, _, _ = self.make(lines())

        with pytest.raises(ProtocolError):
            list(follow)


class TestAbortResponse:
    def test_without_connection_is_a_no_op(self):
        abort_response(object())

    def test_already_closed_socket(self):
        response = FakeResponse([])
        response.connection.sock.shutdown.side_effect = OSError("not connected")
        abort_response(response)
