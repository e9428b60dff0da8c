"""
detector.tls
AUTHOR: carter-vin

Server certificate trust against a caller-supplied CA file

- ServerCertificateValidator: pure predicate over (cert, chain, policy errors)
- TrustedCertificateAdapter: requests adapter whose HTTPS connections run the
  predicate right after the handshake, before any request bytes are sent

Acceptance requires all of:
1) policy errors absent, or only chain errors (re-verified locally here)
2) a chain builds from the server cert with the CA file as extra anchors
   (unknown self-signed roots allowed)
3) some chain element shares its public key with a trusted certificate

Rejections are reported as events, never raised from validate().
"""

from __future__ import annotations

import enum
import ipaddress
import ssl
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

import requests
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPSConnection
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool

from detector.logging import emit_event

MAX_CHAIN_DEPTH = 8

PEM_MARKER = b"-----BEGIN CERTIFICATE-----"


class SslPolicyErrors(enum.Flag):
    """
    Transport-level verdict handed to the validator
    """

    NONE = 0
    REMOTE_CERTIFICATE_NOT_AVAILABLE = enum.auto()
    REMOTE_CERTIFICATE_NAME_MISMATCH = enum.auto()
    REMOTE_CERTIFICATE_CHAIN_ERRORS = enum.auto()


_ACCEPTABLE_POLICY = (SslPolicyErrors.NONE, SslPolicyErrors.REMOTE_CERTIFICATE_CHAIN_ERRORS)


def load_certificates(data: bytes) -> list[x509.Certificate]:
    """
    Parse one or more PEM certificates, or a single DER certificate

    Raises ValueError when nothing parses
    """
    if PEM_MARKER in data:
        return x509.load_pem_x509_certificates(data)
    return [x509.load_der_x509_certificate(data)]


def _public_key_bytes(cert: x509.Certificate) -> bytes:
    return cert.public_key().public_bytes(Encoding.DER, PublicFormat.SubjectPublicKeyInfo)


def _subject(cert: x509.Certificate) -> str:
    return cert.subject.rfc4514_string()


def _is_issued_by(cert: x509.Certificate, issuer: x509.Certificate) -> bool:
    try:
        cert.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


def _validity_problem(cert: x509.Certificate, now: datetime) -> Optional[str]:
    if now < cert.not_valid_before_utc:
        return "NotTimeValid: certificate is not yet valid"
    if now > cert.not_valid_after_utc:
        return "NotTimeValid: certificate has expired"
    return None


def _issuer_problem(issuer: x509.Certificate, cas_below: int) -> Optional[str]:
    """
    CA constraints an issuing certificate must meet

    cas_below: CA certificates between issuer and the server certificate
    """
    try:
        constraints = issuer.extensions.get_extension_for_class(x509.BasicConstraints).value
    except x509.ExtensionNotFound:
        return "InvalidBasicConstraints: issuer has no basicConstraints"
    if not constraints.ca:
        return "InvalidBasicConstraints: issuer is not a CA"
    if constraints.path_length is not None and cas_below > constraints.path_length:
        return f"InvalidBasicConstraints: path length {constraints.path_length} exceeded"

    try:
        usage = issuer.extensions.get_extension_for_class(x509.KeyUsage).value
    except x509.ExtensionNotFound:
        return None
    if not usage.key_cert_sign:
        return "NotValidForUsage: issuer key usage lacks keyCertSign"
    return None


def matches_host(cert: x509.Certificate, host: str) -> bool:
    """
    Check host (DNS name or IP literal) against the subjectAltName entries
    """
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return False

    host = host.strip("[]")
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        address = None

    if address is not None:
        return address in san.get_values_for_type(x509.IPAddress)

    host = host.rstrip(".").lower()
    for name in san.get_values_for_type(x509.DNSName):
        name = name.rstrip(".").lower()
        if name == host:
            return True
        # single-label wildcard only
        if name.startswith("*.") and "." in host and host.split(".", 1)[1] == name[2:]:
            return True
    return False


def policy_errors_for(server_cert: Optional[x509.Certificate], host: str) -> SslPolicyErrors:
    """
    Policy verdict for a handshake that skipped stock chain verification

    Chain errors are always flagged since the chain is only verified by
    ServerCertificateValidator.build_chain.
    """
    if server_cert is None:
        return SslPolicyErrors.REMOTE_CERTIFICATE_NOT_AVAILABLE

    errors = SslPolicyErrors.REMOTE_CERTIFICATE_CHAIN_ERRORS
    if not matches_host(server_cert, host):
        errors |= SslPolicyErrors.REMOTE_CERTIFICATE_NAME_MISMATCH
    return errors


class ServerCertificateValidator:
    """
    Validates server certificates against a trusted certificate set

    The set is loaded once (from_certificate_file) and never mutated.
    """

    def __init__(self, trusted_certificates: Sequence[x509.Certificate]) -> None:
        self._trusted = tuple(trusted_certificates)
        self._trusted_keys = frozenset(_public_key_bytes(cert) for cert in self._trusted)

    @property
    def trusted_certificates(self) -> tuple[x509.Certificate, ...]:
        return self._trusted

    @classmethod
    def from_certificate_file(cls, certificate_file: Path | str) -> Optional["ServerCertificateValidator"]:
        """
        Load trusted certificates from a PEM/DER file

        Returns None (and emits certificate_load_failed) when the file is
        missing or holds no certificate.
        """
        path = Path(certificate_file)
        if not path.is_file():
            emit_event(
                "certificate_load_failed",
                level="warning",
                path=str(path),
                message="Certificate file does not exist",
            )
            return None

        try:
            trusted = load_certificates(path.read_bytes())
        except (OSError, ValueError) as e:
            emit_event(
                "certificate_load_failed",
                level="warning",
                path=str(path),
                error_type=type(e).__name__,
                message=f"Failed to load certificate in trusted collection: {e}",
            )
            return None

        return cls(trusted)

    def is_trusted(self, cert: x509.Certificate) -> bool:
        return _public_key_bytes(cert) in self._trusted_keys

    def build_chain(
        self,
        server_cert: x509.Certificate,
        intermediates: Sequence[x509.Certificate] = (),
        *,
        now: Optional[datetime] = None,
    ) -> tuple[list[x509.Certificate], list[str]]:
        """
        Build a chain from server_cert towards a trusted anchor

        Issuers are searched in the presented intermediates, then in the
        trusted set. Every issuer, trusted anchors included, must be a CA
        (basicConstraints, path length, keyCertSign when key usage is set). A self-signed root outside the trusted set ends the chain
        without error (unknown CA allowed); trust is judged separately.

        Returns (chain, errors); an empty error list means a valid chain.
        """
        if now is None:
            now = datetime.now(timezone.utc)

        candidates = list(intermediates) + list(self._trusted)
        chain = [server_cert]
        errors: list[str] = []
        current = server_cert

        while True:
            problem = _validity_problem(current, now)
            if problem:
                errors.append(f"Certificate [{_subject(current)}] Status [{problem}]")

            if self.is_trusted(current):
                break

            if current.issuer == current.subject:
                if not _is_issued_by(current, current):
                    errors.append(f"Certificate [{_subject(current)}] Status [NotSignatureValid]")
                break

            if len(chain) >= MAX_CHAIN_DEPTH:
                errors.append(f"Certificate [{_subject(current)}] Status [ChainTooLong]")
                break

            issuer = next(
                (c for c in candidates if c not in chain and _is_issued_by(current, c)),
                None,
            )
            if issuer is None:
                errors.append(
                    f"Certificate [{_subject(current)}] Status [PartialChain]: "
                    f"issuer {current.issuer.rfc4514_string()} not found"
                )
                break

            # every certificate already in the chain except the server cert is a CA
            problem = _issuer_problem(issuer, len(chain) - 1)
            if problem:
                errors.append(f"Certificate [{_subject(issuer)}] Status [{problem}]")

            chain.append(issuer)
            current = issuer

        return chain, errors

    def validate(
        self,
        server_cert: Optional[x509.Certificate],
        chain: Optional[Sequence[x509.Certificate]],
        policy_errors: SslPolicyErrors = SslPolicyErrors.NONE,
    ) -> bool:
        """
        Accept iff policy, chain and trust checks all pass
        """
        is_policy_passed = policy_errors in _ACCEPTABLE_POLICY
        if not is_policy_passed:
            for flag in (
                SslPolicyErrors.REMOTE_CERTIFICATE_NOT_AVAILABLE,
                SslPolicyErrors.REMOTE_CERTIFICATE_NAME_MISMATCH,
            ):
                if flag in policy_errors:
                    emit_event(
                        "ssl_policy_error",
                        level="warning",
                        policy_error=flag.name,
                        message=f"Failed to validate certificate due to {flag.name}",
                    )

        if chain is None:
            emit_event(
                "certificate_chain_invalid",
                level="warning",
                message="Failed to validate certificate. Certificate chain is null.",
            )
            return False

        if server_cert is None:
            emit_event(
                "certificate_invalid",
                level="warning",
                message="Failed to validate certificate. Certificate is null.",
            )
            return False

        built, chain_errors = self.build_chain(server_cert, chain)
        is_valid_chain = not chain_errors
        if not is_valid_chain:
            emit_event(
                "certificate_chain_invalid",
                level="warning",
                message="Failed to validate certificate due to " + "; ".join(chain_errors),
            )

        # at least one certificate in the chain must be in our trust list
        is_trusted = any(self.is_trusted(cert) for cert in built)
        if not is_trusted:
            emit_event(
                "certificate_untrusted",
                level="warning",
                server_certificates=[_subject(cert) for cert in built],
                trusted_certificates=[_subject(cert) for cert in self._trusted],
                message="Server certificate chain doesn't match the trusted certificates provided",
            )

        return is_policy_passed and is_valid_chain and is_trusted

    def validate_peer(
        self,
        der_cert: Optional[bytes],
        host: str,
        der_intermediates: Sequence[bytes] = (),
    ) -> bool:
        """
        Validate the DER leaf (and intermediates) a TLS peer presented for host

        der_intermediates is whatever the transport can expose of the chain
        the server sent, leaf excluded. Before Python 3.13 the ssl module only
        exposes the leaf, so a server whose intermediate is missing from the
        CA file fails with PartialChain there.
        """
        server_cert = None
        try:
            if der_cert:
                server_cert = x509.load_der_x509_certificate(der_cert)
            intermediates = [x509.load_der_x509_certificate(der) for der in der_intermediates]
        except ValueError as e:
            emit_event(
                "certificate_invalid",
                level="warning",
                host=host,
                message=f"Unparseable server certificate: {e}",
            )
            return False

        return self.validate(server_cert, intermediates, policy_errors_for(server_cert, host))


def _presented_intermediates(sock: Any) -> list[bytes]:
    """
    DER intermediates the peer sent, leaf excluded; empty before Python 3.13
    """
    get_chain = getattr(sock, "get_unverified_chain", None)
    if get_chain is None:
        return []
    presented = get_chain() or []
    return [bytes(der) for der in presented[1:]]


class TrustValidatingHTTPSConnection(HTTPSConnection):
    """
    HTTPS connection whose server certificate is judged by trust_validator

    Fails closed: a missing validator or a rejected certificate closes the
    socket and raises before the request is written.
    """

    trust_validator: Optional[ServerCertificateValidator] = None

    def connect(self) -> None:
        # Stock verification is replaced, not layered: the CA file is usually
        # a private cluster CA the default store knows nothing about.
        self.cert_reqs = "CERT_NONE"
        self.ca_certs = None
        self.ca_cert_dir = None
        self.ca_cert_data = None
        self.ssl_context = None
        self.assert_hostname = False
        super().connect()

        der_cert = self.sock.getpeercert(binary_form=True)
        validator = self.trust_validator
        if validator is None or not validator.validate_peer(
            der_cert, self.host, _presented_intermediates(self.sock)
        ):
            self.close()
            raise ssl.SSLCertVerificationError(
                f"server certificate for {self.host} rejected by trusted CA check"
            )
        self.is_verified = True


def _validating_pool_class(validator: ServerCertificateValidator) -> type[HTTPSConnectionPool]:
    connection_cls = type(
        "BoundTrustValidatingHTTPSConnection",
        (TrustValidatingHTTPSConnection,),
        {"trust_validator": validator},
    )
    return type(
        "TrustValidatingHTTPSConnectionPool",
        (HTTPSConnectionPool,),
        {"ConnectionCls": connection_cls},
    )


class TrustedCertificateAdapter(HTTPAdapter):
    """HTTP adapter that validates HTTPS servers against a trusted CA set."""

    def __init__(self, validator: ServerCertificateValidator, **kwargs: Any) -> None:
        self._validator = validator
        super().__init__(**kwargs)

    def init_poolmanager(  # type: ignore[override]
        self, connections: int, maxsize: int, block: bool = False, **pool_kwargs: Any
    ) -> None:
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)
        self.poolmanager.pool_classes_by_scheme = {
            "http": HTTPConnectionPool,
            "https": _validating_pool_class(self._validator),
        }


def build_trusted_session(validator: ServerCertificateValidator, token: str) -> requests.Session:
    """
    Fresh session: bearer auth, JSON accept, HTTPS trust from validator

    Proxy and CA bundle environment variables are ignored.
    """
    session = requests.Session()
    session.trust_env = False
    session.mount("https://", TrustedCertificateAdapter(validator))
    session.headers.update(
        {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
    )
    return session
