"""
Shared fixtures: self-signed certificates and scripted collaborators.
"""

import datetime
import ipaddress
import random
import threading
import time

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from core.discovery import DiscoveryService
from core.errors import DiscoveryError, InvalidHostError
from core.probe import FailureReason, Found, NoCertificate, ProbeFailed


def make_certificate(common_name="srv1.example.com", issuer_name=None, days=90):
    """Self-signed certificate and its key."""
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Example Corp"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_name)]) if issuer_name else subject
    now = datetime.datetime.now(datetime.timezone.utc)

    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName([
            x509.DNSName(common_name),
            x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
        ]), critical=False)
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .sign(key, hashes.SHA256())
    )
    return cert, key


@pytest.fixture(scope="session")
def cert_and_key():
    return make_certificate()


@pytest.fixture(scope="session")
def der_bytes(cert_and_key):
    return cert_and_key[0].public_bytes(serialization.Encoding.DER)


@pytest.fixture(scope="session")
def pem_bytes(cert_and_key):
    return cert_and_key[0].public_bytes(serialization.Encoding.PEM)


@pytest.fixture(scope="session")
def other_der_bytes():
    cert, _ = make_certificate("other.example.com", issuer_name="DigiCert Test CA")
    return cert.public_bytes(serialization.Encoding.DER)


@pytest.fixture
def cert_files(tmp_path, cert_and_key):
    """Writes the test certificate and key as PEM files for a TLS server."""
    cert, key = cert_and_key
    cert_path = tmp_path / "server.pem"
    key_path = tmp_path / "server.key"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ))
    return cert_path, key_path


class FakeDiscovery(DiscoveryService):
    """Answers from dictionaries. Values that are exceptions are raised."""

    def __init__(self, addresses=None, ports=None):
        self.addresses = addresses or {}
        self.ports = ports or {}
        self.calls = []

    def discover_addresses(self, host_name):
        self.calls.append(('addresses', host_name))
        value = self.addresses.get(host_name.lower())
        if value is None:
            raise InvalidHostError(f"unknown host {host_name}")
        if isinstance(value, Exception):
            raise value
        return list(value)

    def discover_listening_ports(self, host_name):
        self.calls.append(('ports', host_name))
        value = self.ports.get(host_name.lower(), [])
        if isinstance(value, Exception):
            raise value
        return list(value)


class FakeProbe:
    """
    Returns scripted outcomes keyed by (address, port); unknown targets get
    NoCertificate. Optional random delay shuffles completion order.
    """

    def __init__(self, outcomes=None, delay=0.0, jitter=False, seed=None):
        self.outcomes = outcomes or {}
        self.delay = delay
        self.jitter = jitter
        self.random = random.Random(seed)
        self.calls = []
        self._lock = threading.Lock()

    def probe(self, address, port, timeout_ms=None):
        with self._lock:
            self.calls.append((address, port))
            pause = self.random.uniform(0, self.delay) if self.jitter else self.delay
        if pause:
            time.sleep(pause)
        outcome = self.outcomes.get((address, port), NoCertificate())
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def srv1_collaborators(der_bytes):
    """srv1: one address, 443 serves a certificate, 8443 times out, 22 is plain."""
    discovery = FakeDiscovery(
        addresses={"srv1": ["10.0.0.1"]},
        ports={"srv1": [443, 8443, 22]},
    )
    probe = FakeProbe({
        ("10.0.0.1", 443): Found(der_bytes),
        ("10.0.0.1", 8443): ProbeFailed(FailureReason.TIMEOUT),
        ("10.0.0.1", 22): NoCertificate(),
    })
    return discovery, probe


@pytest.fixture
def discovery_error():
    return DiscoveryError("remote shell unavailable")
