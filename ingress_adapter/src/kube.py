from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CustomObjectsApi, NetworkingV1Api
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

ROUTE_TABLE_GROUP = "gateway.solo.io"
ROUTE_TABLE_VERSION = "v1"
ROUTE_TABLE_PLURAL = "routetables"
APPLY_PATCH_CONTENT_TYPE = "application/apply-patch+yaml"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (service account token and CA), falling
    back to the local kubeconfig (``KUBECONFIG`` or ``~/.kube/config``) for
    development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[NetworkingV1Api, CustomObjectsApi]:
    """Return networking.k8s.io and custom-object API clients using the active kube configuration."""
    return client.NetworkingV1Api(), client.CustomObjectsApi()


class RouteTableClient:
    """Reads and writes Gloo ``RouteTable`` custom resources."""

    def __init__(self, custom_api: CustomObjectsApi, field_manager: str) -> None:
        self.custom_api = custom_api
        self.field_manager = field_manager

    def apply(self, route_table: dict[str, Any]) -> None:
        """Create or update ``route_table`` via server-side apply.

        Conflicts are forced so this controller takes ownership of every field
        it sets; applying the same manifest repeatedly is a no-op server-side.
        """
        metadata = route_table["metadata"]
        self.custom_api.patch_namespaced_custom_object(
            group=ROUTE_TABLE_GROUP,
            version=ROUTE_TABLE_VERSION,
            namespace=metadata["namespace"],
            plural=ROUTE_TABLE_PLURAL,
            name=metadata["name"],
            body=route_table,
            field_manager=self.field_manager,
            force=True,
            _content_type=APPLY_PATCH_CONTENT_TYPE,
        )

    def get(self, name: str, namespace: str) -> dict[str, Any] | None:
        """Return the RouteTable, or ``None`` when it does not exist."""
        try:
            return self.custom_api.get_namespaced_custom_object(
                group=ROUTE_TABLE_GROUP,
                version=ROUTE_TABLE_VERSION,
                namespace=namespace,
                plural=ROUTE_TABLE_PLURAL,
                name=name,
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def delete(self, name: str, namespace: str) -> bool:
        """Delete the RouteTable.  Returns ``False`` if it was already gone."""
        try:
            self.custom_api.delete_namespaced_custom_object(
                group=ROUTE_TABLE_GROUP,
                version=ROUTE_TABLE_VERSION,
                namespace=namespace,
                plural=ROUTE_TABLE_PLURAL,
                name=name,
            )
        except ApiException as exc:
            if exc.status == 404:
                return False
            raise
        return True


def is_owned_by(resource: dict[str, Any], owner_uid: str | None) -> bool:
    """Return True if ``resource`` lists ``owner_uid`` among its owner references."""
    if not owner_uid:
        return False
    owner_references = (resource.get("metadata") or {}).get("ownerReferences") or []
    return any(reference.get("uid") == owner_uid for reference in owner_references)
