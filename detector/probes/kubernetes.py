"""
detector.probes.kubernetes
AUTHOR: carter-vin

Kubernetes API probe
- only runs when KubernetesSettings exist (pod env vars present)
- service account CA/token/namespace read from disk on every call
- one GET of our own pod, status.containerStatuses[] matched by name
- TLS trust comes from the service account CA only; no unvalidated fallback

Failure semantics:
- every failure (I/O, TLS, HTTP status, JSON shape, no match) -> None
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

import requests

from detector.config import KubernetesSettings
from detector.hexid import is_valid_hex
from detector.logging import emit_event
from detector.tls import ServerCertificateValidator, build_trusted_session

RUNTIME_PREFIX_SEPARATOR = "://"

SessionFactory = Callable[[ServerCertificateValidator, str], requests.Session]


@dataclass(frozen=True)
class ContainerStatus:
    """
    One entry of status.containerStatuses
    """

    name: str
    container_id: str

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "ContainerStatus":
        return ContainerStatus(
            name=str(payload.get("name") or ""),
            container_id=str(payload.get("containerID") or ""),
        )


def parse_container_statuses(payload: Any) -> list[ContainerStatus]:
    """
    Pull container statuses out of a pod JSON document

    Missing or mistyped fields yield an empty list instead of raising.
    """
    if not isinstance(payload, dict):
        return []
    status = payload.get("status")
    if not isinstance(status, dict):
        return []
    entries = status.get("containerStatuses")
    if not isinstance(entries, list):
        return []
    return [ContainerStatus.from_dict(entry) for entry in entries if isinstance(entry, dict)]


def strip_runtime_prefix(container_id: str) -> str:
    """
    "containerd://<id>" -> "<id>"
    """
    _, sep, rest = container_id.rpartition(RUNTIME_PREFIX_SEPARATOR)
    return rest if sep else container_id


def _read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8").strip()


class KubernetesProbe:
    """
    Resolve our container ID through the pod status API

    The HTTPS session is created and closed inside each call.
    """

    def __init__(
        self,
        settings: KubernetesSettings,
        *,
        session_factory: SessionFactory = build_trusted_session,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self._session_factory = session_factory
        self._sleep = sleep

    def _namespace(self) -> Optional[str]:
        try:
            namespace = _read_text(self.settings.service_account.namespace_file)
        except OSError as e:
            emit_event(
                "file_read_failed",
                level="debug",
                probe="kubernetes",
                path=str(self.settings.service_account.namespace_file),
                error_type=type(e).__name__,
                message=str(e),
            )
            namespace = ""
        return namespace or self.settings.namespace

    def fetch_pod(self) -> Optional[Any]:
        """
        GET our pod document, None on any failure
        """
        paths = self.settings.service_account

        try:
            token = _read_text(paths.token_file)
        except OSError as e:
            emit_event(
                "file_read_failed",
                level="warning",
                probe="kubernetes",
                path=str(paths.token_file),
                error_type=type(e).__name__,
                message=str(e),
            )
            return None

        namespace = self._namespace()
        if not namespace:
            emit_event(
                "probe_failed",
                level="warning",
                probe="kubernetes",
                message="pod namespace unavailable",
            )
            return None

        validator = ServerCertificateValidator.from_certificate_file(paths.cert_file)
        if validator is None:
            # fail closed: never talk to the API server without the CA
            return None

        url = self.settings.pod_url(namespace)
        session = self._session_factory(validator, token)
        try:
            # Give the API server time to update container status
            self._sleep(self.settings.request_delay_s)
            response = session.get(url, timeout=self.settings.request_timeout_s)
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as e:
            emit_event(
                "kube_request_failed",
                level="warning",
                url=url,
                error_type=type(e).__name__,
                message=str(e),
            )
            return None
        finally:
            session.close()

    def extract_container_id(self) -> Optional[str]:
        """
        Container ID of settings.container_name, None if not found
        """
        payload = self.fetch_pod()
        if payload is None:
            return None

        for status in parse_container_statuses(payload):
            if status.name != self.settings.container_name:
                continue
            candidate = strip_runtime_prefix(status.container_id)
            if is_valid_hex(candidate):
                return candidate
            return None

        return None
