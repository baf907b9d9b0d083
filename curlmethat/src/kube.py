from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import CoreV1Api
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


def load_kube_configuration(kubeconfig: str | None = None) -> None:
    """Load Kubernetes client configuration.

    An explicit *kubeconfig* path (the ``KUBECONFIG`` variable) always wins.
    Otherwise in-cluster config is attempted first (running inside a pod),
    falling back to the default local kubeconfig for development.
    """
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        LOGGER.info("Loaded kubeconfig from %s", kubeconfig)
        return
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_core_api() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


def patch_config_map_data(
    core_api: CoreV1Api,
    namespace: str,
    name: str,
    data: dict[str, str],
    resource_version: str | None = None,
) -> None:
    """Merge *data* into a ConfigMap's ``data`` field.

    ConfigMap ``data`` is a plain map, so the patch adds or replaces only the
    given keys and leaves every other key untouched.  When *resource_version*
    is given the API server rejects the patch with ``409 Conflict`` if the
    ConfigMap changed since it was observed, so keys written in the meantime
    are never overwritten.
    """
    body: dict[str, Any] = {"data": data}
    if resource_version:
        body["metadata"] = {"resourceVersion": resource_version}
    core_api.patch_namespaced_config_map(
        name=name,
        namespace=namespace,
        body=body,
    )
