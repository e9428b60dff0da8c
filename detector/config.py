"""
detector.config
AUTHOR: carter-vin

Kubernetes probe configuration

The probe itself never reads the environment. The CLI builds a
KubernetesSettings once at startup (from_environ) and passes it in, so tests
can construct settings directly.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

# Env vars set by the kubelet / pod spec
KUBERNETES_SERVICE_HOST_ENV = "KUBERNETES_SERVICE_HOST"
KUBERNETES_SERVICE_PORT_ENV = "KUBERNETES_SERVICE_PORT"
HOSTNAME_ENV = "HOSTNAME"
CONTAINER_NAME_ENV = "CONTAINER_NAME"
# Alternate spelling some deployments inject through the downward API
CONTAINER_NAME_ENV_ALT = "container.name"
POD_NAMESPACE_ENV = "NAMESPACE"

DEFAULT_SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")
CA_CERT_FILE = "ca.crt"
TOKEN_FILE = "token"
NAMESPACE_FILE = "namespace"

# Give the API server time to publish container status after pod start.
DEFAULT_REQUEST_DELAY_S = 5.0
DEFAULT_REQUEST_TIMEOUT_S = 5.0


@dataclass(frozen=True)
class ServiceAccountPaths:
    """
    Service account credential files mounted into the pod
    """

    cert_file: Path
    token_file: Path
    namespace_file: Path

    @staticmethod
    def in_dir(directory: Path) -> "ServiceAccountPaths":
        return ServiceAccountPaths(
            cert_file=directory / CA_CERT_FILE,
            token_file=directory / TOKEN_FILE,
            namespace_file=directory / NAMESPACE_FILE,
        )


@dataclass(frozen=True)
class KubernetesSettings:
    """
    Everything the Kubernetes probe needs, captured once

    - service_host / service_port: API server endpoint
    - pod_hostname: pod name (HOSTNAME inside the pod)
    - container_name: which containerStatuses entry is ours
    - namespace: fallback when the namespace file is unreadable
    """

    service_host: str
    service_port: str
    pod_hostname: str
    container_name: str
    namespace: Optional[str] = None
    service_account: ServiceAccountPaths = field(
        default_factory=lambda: ServiceAccountPaths.in_dir(DEFAULT_SERVICE_ACCOUNT_DIR)
    )
    request_delay_s: float = DEFAULT_REQUEST_DELAY_S
    request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S

    @staticmethod
    def from_environ(
        environ: Optional[Mapping[str, str]] = None,
        *,
        service_account_dir: Path = DEFAULT_SERVICE_ACCOUNT_DIR,
        request_delay_s: float = DEFAULT_REQUEST_DELAY_S,
        request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
    ) -> Optional["KubernetesSettings"]:
        """
        Build settings from environment variables

        Returns None unless host, port, pod hostname and container name are
        all present and non-empty (not running in a pod; probe is skipped).
        """
        env = os.environ if environ is None else environ

        def _get(name: str) -> str:
            return (env.get(name) or "").strip()

        host = _get(KUBERNETES_SERVICE_HOST_ENV)
        port = _get(KUBERNETES_SERVICE_PORT_ENV)
        pod_hostname = _get(HOSTNAME_ENV)
        container_name = _get(CONTAINER_NAME_ENV) or _get(CONTAINER_NAME_ENV_ALT)

        if not (host and port and pod_hostname and container_name):
            return None

        return KubernetesSettings(
            service_host=host,
            service_port=port,
            pod_hostname=pod_hostname,
            container_name=container_name,
            namespace=_get(POD_NAMESPACE_ENV) or None,
            service_account=ServiceAccountPaths.in_dir(service_account_dir),
            request_delay_s=request_delay_s,
            request_timeout_s=request_timeout_s,
        )

    def pod_url(self, namespace: str) -> str:
        host = f"[{self.service_host}]" if ":" in self.service_host else self.service_host
        return f"https://{host}:{self.service_port}/api/v1/namespaces/{namespace}/pods/{self.pod_hostname}"
