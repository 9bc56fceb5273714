"""
Certificate Probe
Bounded-time TLS handshake against one address:port that returns the leaf
certificate presented by the peer.

Every probe ends in exactly one of three outcomes:
    Found(raw_certificate)  - handshake completed and the peer sent a certificate
    NoCertificate()         - TCP connected but no TLS certificate was negotiated
    ProbeFailed(reason)     - refused, timed out, reset or another network error

Certificate verification is disabled: the goal is to see whatever certificate
is bound to the port, trusted or not.
"""

import ipaddress
import logging
import socket
import ssl
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

logger = logging.getLogger(__name__)

# Long enough for a LAN handshake, short enough that hundreds of closed
# ports do not stall a run.
DEFAULT_TIMEOUT_MS = 2000


class FailureReason(Enum):
    """Coarse classification of a failed probe, for diagnostics only."""
    TIMEOUT = "timeout"
    REFUSED = "refused"
    RESET = "reset"
    OTHER = "other"


@dataclass(frozen=True)
class Found:
    raw_certificate: bytes = field(repr=False)


@dataclass(frozen=True)
class NoCertificate:
    pass


@dataclass(frozen=True)
class ProbeFailed:
    reason: FailureReason
    detail: str = field(default='', compare=False)


ProbeOutcome = Union[Found, NoCertificate, ProbeFailed]


def _is_ip_literal(address: str) -> bool:
    try:
        ipaddress.ip_address(address)
        return True
    except ValueError:
        return False


def classify_error(error: BaseException) -> FailureReason:
    """Map a socket-level exception to a failure reason."""
    if isinstance(error, (socket.timeout, TimeoutError)):
        return FailureReason.TIMEOUT
    if isinstance(error, ConnectionRefusedError):
        return FailureReason.REFUSED
    if isinstance(error, ConnectionResetError):
        return FailureReason.RESET
    return FailureReason.OTHER


class TLSProbe:
    """Direct-socket TLS probe."""

    def __init__(self, timeout_ms: int = DEFAULT_TIMEOUT_MS):
        self.timeout_ms = timeout_ms
        self.context = self.create_ssl_context()

    def create_ssl_context(self) -> ssl.SSLContext:
        """Create SSL context for certificate retrieval."""
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        return ctx

    def probe(self, address: str, port: int, timeout_ms: Optional[int] = None) -> ProbeOutcome:
        """
        Attempt a TLS handshake with address:port.

        Args:
            address: Host name or literal IP address
            port: TCP port, 1-65535
            timeout_ms: Bound on TCP connect and handshake together

        Returns:
            Found, NoCertificate or ProbeFailed
        """
        if timeout_ms is None:
            timeout_ms = self.timeout_ms
        if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
            return ProbeFailed(FailureReason.OTHER, f"invalid port {port!r}")

        timeout = max(timeout_ms, 1) / 1000.0
        deadline = time.monotonic() + timeout

        try:
            sock = socket.create_connection((address, port), timeout=timeout)
        except OSError as e:
            reason = classify_error(e)
            logger.debug(f"Connect to {address}:{port} failed ({reason.value}): {e}")
            return ProbeFailed(reason, str(e))

        with sock:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return ProbeFailed(FailureReason.TIMEOUT, "deadline reached after connect")
            sock.settimeout(remaining)

            server_hostname = None if _is_ip_literal(address) else address
            try:
                with self.context.wrap_socket(sock, server_hostname=server_hostname) as tls_sock:
                    der_cert = tls_sock.getpeercert(binary_form=True)
            except (socket.timeout, TimeoutError) as e:
                logger.debug(f"TLS handshake with {address}:{port} timed out")
                return ProbeFailed(FailureReason.TIMEOUT, str(e))
            except ConnectionResetError as e:
                return ProbeFailed(FailureReason.RESET, str(e))
            except ssl.SSLError as e:
                logger.debug(f"No TLS on {address}:{port}: {e}")
                return NoCertificate()
            except OSError as e:
                return ProbeFailed(classify_error(e), str(e))

        if not der_cert:
            return NoCertificate()
        return Found(der_cert)
