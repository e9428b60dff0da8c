"""
Shared fixtures: throwaway PKI + local HTTPS stand-in for the Kubernetes API
"""

from __future__ import annotations

import ipaddress
import json
import ssl
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from types import SimpleNamespace
from typing import Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
)
from cryptography.x509.oid import NameOID

from detector.config import (
    CONTAINER_NAME_ENV,
    CONTAINER_NAME_ENV_ALT,
    KUBERNETES_SERVICE_HOST_ENV,
    KUBERNETES_SERVICE_PORT_ENV,
    POD_NAMESPACE_ENV,
    KubernetesSettings,
    ServiceAccountPaths,
)

KUBE_SERVICE_HOST = "127.0.0.1"
POD_HOSTNAME = "demo"
CONTAINER_NAME = "test2"
TEST_NAMESPACE = "default"
TEST_TOKEN = "test-token"


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def make_ca(common_name: str = "test-cluster-ca"):
    key = ec.generate_private_key(ec.SECP256R1())
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(_name(common_name))
        .issuer_name(_name(common_name))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return cert, key


def make_leaf(
    issuer_cert: x509.Certificate,
    issuer_key,
    *,
    common_name: str = "kube-apiserver",
    ip_addresses: tuple[str, ...] = (KUBE_SERVICE_HOST,),
    dns_names: tuple[str, ...] = ("localhost",),
    not_before: Optional[datetime] = None,
    not_after: Optional[datetime] = None,
):
    key = ec.generate_private_key(ec.SECP256R1())
    now = datetime.now(timezone.utc)
    san = [x509.DNSName(name) for name in dns_names] + [
        x509.IPAddress(ipaddress.ip_address(ip)) for ip in ip_addresses
    ]
    cert = (
        x509.CertificateBuilder()
        .subject_name(_name(common_name))
        .issuer_name(issuer_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.SubjectAlternativeName(san), critical=False)
        .sign(issuer_key, hashes.SHA256())
    )
    return cert, key


def make_intermediate(issuer_cert: x509.Certificate, issuer_key, common_name: str = "test-intermediate-ca"):
    key = ec.generate_private_key(ec.SECP256R1())
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(_name(common_name))
        .issuer_name(issuer_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
        .sign(issuer_key, hashes.SHA256())
    )
    return cert, key


def write_cert(path: Path, cert: x509.Certificate) -> Path:
    path.write_bytes(cert.public_bytes(Encoding.PEM))
    return path


def write_key(path: Path, key) -> Path:
    path.write_bytes(key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()))
    return path


@dataclass
class Pki:
    ca_cert: x509.Certificate
    ca_key: object
    server_cert: x509.Certificate
    server_key: object
    server_cert_path: Path
    server_key_path: Path


@pytest.fixture
def certs() -> SimpleNamespace:
    """
    Certificate builders for tests that need extra CAs or leaves
    """
    return SimpleNamespace(
        make_ca=make_ca,
        make_intermediate=make_intermediate,
        make_leaf=make_leaf,
        write_cert=write_cert,
    )


@pytest.fixture
def pki(tmp_path: Path) -> Pki:
    ca_cert, ca_key = make_ca()
    server_cert, server_key = make_leaf(ca_cert, ca_key)
    return Pki(
        ca_cert=ca_cert,
        ca_key=ca_key,
        server_cert=server_cert,
        server_key=server_key,
        server_cert_path=write_cert(tmp_path / "server.crt", server_cert),
        server_key_path=write_key(tmp_path / "server.key", server_key),
    )


@pytest.fixture
def service_account(tmp_path: Path, pki: Pki) -> ServiceAccountPaths:
    """
    Service account dir trusting the fixture CA
    """
    sa_dir = tmp_path / "serviceaccount"
    sa_dir.mkdir()
    paths = ServiceAccountPaths.in_dir(sa_dir)
    write_cert(paths.cert_file, pki.ca_cert)
    paths.token_file.write_text(TEST_TOKEN + "\n", encoding="utf-8")
    paths.namespace_file.write_text(TEST_NAMESPACE, encoding="utf-8")
    return paths


def pod_response(container_id: str) -> dict:
    return {
        "kind": "Pod",
        "metadata": {"name": POD_HOSTNAME, "namespace": TEST_NAMESPACE},
        "status": {
            "phase": "Running",
            "containerStatuses": [
                {
                    "name": "test1",
                    "containerID": "containerd://" + "0" * 64,
                    "ready": True,
                },
                {
                    "name": CONTAINER_NAME,
                    "containerID": "containerd://" + container_id,
                    "ready": True,
                },
            ],
        },
    }


def _make_handler(body: Optional[bytes]):
    expected_path = f"/api/v1/namespaces/{TEST_NAMESPACE}/pods/{POD_HOSTNAME}"

    class _PodHandler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:
            authorized = self.headers.get("Authorization") == f"Bearer {TEST_TOKEN}"
            if body is not None and authorized and self.path == expected_path:
                self.send_response(200)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)
                return

            self.send_response(404)
            self.send_header("Content-Type", "text/plain")
            self.send_header("Content-Length", "9")
            self.end_headers()
            self.wfile.write(b"Not found")

        def log_message(self, format, *args) -> None:
            pass

    return _PodHandler


@pytest.fixture
def kube_api(pki: Pki):
    """
    Factory: start(container_id, found=True) -> port of a TLS pod endpoint
    """
    servers: list[HTTPServer] = []

    def start(container_id: str, found: bool = True) -> int:
        body = json.dumps(pod_response(container_id)).encode("utf-8") if found else None
        server = HTTPServer((KUBE_SERVICE_HOST, 0), _make_handler(body))

        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(str(pki.server_cert_path), str(pki.server_key_path))
        server.socket = context.wrap_socket(server.socket, server_side=True)

        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        servers.append(server)
        return server.server_address[1]

    yield start

    for server in servers:
        server.shutdown()
        server.server_close()


@pytest.fixture
def kube_settings(service_account: ServiceAccountPaths):
    """
    Factory: settings pointing at a kube_api port, no pre-request delay
    """

    def build(port: int) -> KubernetesSettings:
        return KubernetesSettings(
            service_host=KUBE_SERVICE_HOST,
            service_port=str(port),
            pod_hostname=POD_HOSTNAME,
            container_name=CONTAINER_NAME,
            service_account=service_account,
            request_delay_s=0.0,
            request_timeout_s=5.0,
        )

    return build


@pytest.fixture
def no_kube_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Tests may run inside a real pod; hide its env vars
    """
    for name in (
        KUBERNETES_SERVICE_HOST_ENV,
        KUBERNETES_SERVICE_PORT_ENV,
        CONTAINER_NAME_ENV,
        CONTAINER_NAME_ENV_ALT,
        POD_NAMESPACE_ENV,
    ):
        monkeypatch.delenv(name, raising=False)
