from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from ingress_adapter.src.kube import (
    RouteTableClient,
    build_clients,
    is_owned_by,
    load_kube_configuration,
)


def make_route_table(owner_uid: str | None = "uid-1") -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": "my-ingress", "namespace": "my-app"}
    if owner_uid is not None:
        metadata["ownerReferences"] = [
            {
                "apiVersion": "networking.k8s.io/v1",
                "kind": "Ingress",
                "name": "my-ingress",
                "uid": owner_uid,
            }
        ]
    return {
        "apiVersion": "gateway.solo.io/v1",
        "kind": "RouteTable",
        "metadata": metadata,
        "spec": {"routes": []},
    }


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("ingress_adapter.src.kube.config.load_incluster_config") as mock_incluster,
        patch("ingress_adapter.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "ingress_adapter.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("ingress_adapter.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


def test_build_clients_returns_tuple() -> None:
    with patch("ingress_adapter.src.kube.client") as mock_client:
        mock_client.NetworkingV1Api.return_value = SimpleNamespace(name="networking")
        mock_client.CustomObjectsApi.return_value = SimpleNamespace(name="custom")
        networking, custom = build_clients()

    assert networking.name == "networking"
    assert custom.name == "custom"


def test_apply_uses_server_side_apply() -> None:
    mock_custom_api = MagicMock()
    route_table = make_route_table()

    RouteTableClient(mock_custom_api, field_manager="gloo-ingress-adapter").apply(route_table)

    mock_custom_api.patch_namespaced_custom_object.assert_called_once()
    call_kwargs = mock_custom_api.patch_namespaced_custom_object.call_args.kwargs
    assert call_kwargs["group"] == "gateway.solo.io"
    assert call_kwargs["version"] == "v1"
    assert call_kwargs["plural"] == "routetables"
    assert call_kwargs["namespace"] == "my-app"
    assert call_kwargs["name"] == "my-ingress"
    assert call_kwargs["body"] is route_table
    assert call_kwargs["field_manager"] == "gloo-ingress-adapter"
    assert call_kwargs["force"] is True
    assert call_kwargs["_content_type"] == "application/apply-patch+yaml"


def test_get_returns_route_table() -> None:
    mock_custom_api = MagicMock()
    mock_custom_api.get_namespaced_custom_object.return_value = make_route_table()

    result = RouteTableClient(mock_custom_api, "adapter").get("my-ingress", "my-app")

    assert result == make_route_table()
    call_kwargs = mock_custom_api.get_namespaced_custom_object.call_args.kwargs
    assert call_kwargs["name"] == "my-ingress"
    assert call_kwargs["namespace"] == "my-app"


def test_get_returns_none_when_missing() -> None:
    mock_custom_api = MagicMock()
    mock_custom_api.get_namespaced_custom_object.side_effect = ApiException(status=404)

    assert RouteTableClient(mock_custom_api, "adapter").get("my-ingress", "my-app") is None


def test_get_reraises_other_errors() -> None:
    mock_custom_api = MagicMock()
    mock_custom_api.get_namespaced_custom_object.side_effect = ApiException(status=403)

    with pytest.raises(ApiException):
        RouteTableClient(mock_custom_api, "adapter").get("my-ingress", "my-app")


def test_delete_reports_whether_route_table_existed() -> None:
    mock_custom_api = MagicMock()
    route_tables = RouteTableClient(mock_custom_api, "adapter")

    assert route_tables.delete("my-ingress", "my-app") is True

    mock_custom_api.delete_namespaced_custom_object.side_effect = ApiException(status=404)
    assert route_tables.delete("my-ingress", "my-app") is False


def test_delete_reraises_other_errors() -> None:
    mock_custom_api = MagicMock()
    mock_custom_api.delete_namespaced_custom_object.side_effect = ApiException(status=500)

    with pytest.raises(ApiException):
        RouteTableClient(mock_custom_api, "adapter").delete("my-ingress", "my-app")


def test_is_owned_by_matches_owner_reference_uid() -> None:
    assert is_owned_by(make_route_table("uid-1"), "uid-1")
    assert not is_owned_by(make_route_table("uid-2"), "uid-1")
    assert not is_owned_by(make_route_table(None), "uid-1")
    assert not is_owned_by(make_route_table("uid-1"), None)
