"""
Scan Record Model
In-memory records produced by a certificate discovery run:
Certificate -> PortBinding -> AddressScan -> HostScan
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from core.errors import ScanRecordFrozenError

MIN_PORT = 0
MAX_PORT = 65535


def now_utc() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True, eq=False)
class Certificate:
    """
    Immutable certificate value created by the parser.

    Two certificates are equal when their raw DER bytes are equal; every other
    field is derived from those bytes.
    """
    subject: str
    issuer: str
    raw: bytes = field(repr=False)
    not_valid_before: datetime
    not_valid_after: datetime
    serial_number: int
    signature_algorithm: str
    common_name: str = ''
    subject_alt_names: Tuple[str, ...] = ()

    def __eq__(self, other):
        if not isinstance(other, Certificate):
            return NotImplemented
        return self.raw == other.raw

    def __hash__(self):
        return hash(self.raw)

    @property
    def fingerprint(self) -> str:
        """SHA-256 fingerprint of the DER encoding, lower-case hex."""
        return hashlib.sha256(self.raw).hexdigest()

    def to_dict(self) -> Dict:
        return {
            'subject': self.subject,
            'issuer': self.issuer,
            'common_name': self.common_name,
            'serial_number': format(self.serial_number, 'x'),
            'not_valid_before': self.not_valid_before.isoformat(),
            'not_valid_after': self.not_valid_after.isoformat(),
            'signature_algorithm': self.signature_algorithm,
            'subject_alt_names': list(self.subject_alt_names),
            'fingerprint_sha256': self.fingerprint,
        }


@dataclass(frozen=True)
class PortBinding:
    """A certificate found on one port of one address."""
    port: int
    certificate: Optional[Certificate] = None

    def __post_init__(self):
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise ValueError(f"Port must be an integer, got {self.port!r}")
        if not MIN_PORT <= self.port <= MAX_PORT:
            raise ValueError(f"Port out of range: {self.port}")

    def to_dict(self) -> Dict:
        return {
            'port': self.port,
            'certificate': self.certificate.to_dict() if self.certificate else None,
        }


class ScanState(Enum):
    """Progress of a single host scan. There is no failed state."""
    NOT_STARTED = "not_started"
    ADDRESSES_DISCOVERED = "addresses_discovered"
    PORTS_DISCOVERED = "ports_discovered"
    PROBING = "probing"
    COMPLETE = "complete"


@dataclass
class ScanDiagnostics:
    """Outcome counters used to tell absence, network failure and corruption apart."""
    bindings_found: int = 0
    no_certificate_count: int = 0
    probe_failed_count: int = 0
    parse_error_count: int = 0
    discovery_failures: int = 0
    probes_abandoned: int = 0
    probe_failures: Dict[str, int] = field(default_factory=dict)

    def record_binding(self):
        self.bindings_found += 1

    def record_no_certificate(self):
        self.no_certificate_count += 1

    def record_probe_failure(self, reason: str):
        self.probe_failed_count += 1
        self.probe_failures[reason] = self.probe_failures.get(reason, 0) + 1

    def record_parse_error(self):
        self.parse_error_count += 1

    def record_discovery_failure(self):
        self.discovery_failures += 1

    def record_abandoned(self, count: int = 1):
        self.probes_abandoned += count

    @property
    def probes_completed(self) -> int:
        return (self.bindings_found + self.no_certificate_count
                + self.probe_failed_count + self.parse_error_count)

    def merge(self, other: 'ScanDiagnostics') -> 'ScanDiagnostics':
        """Add the counters of another diagnostics record into this one."""
        self.bindings_found += other.bindings_found
        self.no_certificate_count += other.no_certificate_count
        self.probe_failed_count += other.probe_failed_count
        self.parse_error_count += other.parse_error_count
        self.discovery_failures += other.discovery_failures
        self.probes_abandoned += other.probes_abandoned
        for reason, count in other.probe_failures.items():
            self.probe_failures[reason] = self.probe_failures.get(reason, 0) + count
        return self

    def to_dict(self) -> Dict:
        return {
            'bindings_found': self.bindings_found,
            'no_certificate_count': self.no_certificate_count,
            'probe_failed_count': self.probe_failed_count,
            'probe_failures': dict(self.probe_failures),
            'parse_error_count': self.parse_error_count,
            'discovery_failures': self.discovery_failures,
            'probes_abandoned': self.probes_abandoned,
        }


class AddressScan:
    """
    Certificates bound to the ports of a single IP address.

    Bindings are kept in insertion order until finalize() is called, which
    re-orders them by ascending port number and freezes the record.
    """

    def __init__(self, address: str):
        self.address = address
        self._bindings: Dict[int, PortBinding] = {}
        self._finalized = False

    def _check_mutable(self):
        if self._finalized:
            raise ScanRecordFrozenError(f"Address scan for {self.address} is finalized")

    def add_binding(self, binding: PortBinding) -> bool:
        """Record a binding. Returns False if the port already has one."""
        self._check_mutable()
        if binding.port in self._bindings:
            return False
        self._bindings[binding.port] = binding
        return True

    def add_certificate(self, port: int, certificate: Certificate) -> bool:
        return self.add_binding(PortBinding(port, certificate))

    def remove_binding(self, port: int) -> bool:
        self._check_mutable()
        return self._bindings.pop(port, None) is not None

    def finalize(self):
        if not self._finalized:
            self._bindings = dict(sorted(self._bindings.items()))
            self._finalized = True

    @property
    def is_finalized(self) -> bool:
        return self._finalized

    @property
    def bindings(self) -> Mapping[int, PortBinding]:
        return MappingProxyType(self._bindings)

    @property
    def certificates(self) -> Dict[int, Certificate]:
        return {port: binding.certificate for port, binding in self._bindings.items()}

    @property
    def ports(self) -> List[int]:
        return list(self._bindings)

    @property
    def certificate_count(self) -> int:
        return sum(1 for binding in self._bindings.values() if binding.certificate is not None)

    def get(self, port: int) -> Optional[PortBinding]:
        return self._bindings.get(port)

    def __contains__(self, port) -> bool:
        return port in self._bindings

    def __iter__(self) -> Iterator[PortBinding]:
        return iter(list(self._bindings.values()))

    def __len__(self) -> int:
        return len(self._bindings)

    def __repr__(self):
        return f"AddressScan(address={self.address!r}, ports={self.ports!r})"

    def to_dict(self) -> Dict:
        return {
            'address': self.address,
            'certificate_count': self.certificate_count,
            'bindings': [binding.to_dict() for binding in self._bindings.values()],
        }


class HostScan:
    """All address scans discovered for one host."""

    def __init__(self, host_name: str):
        self.host_name = host_name
        self._addresses: Dict[str, AddressScan] = {}
        self.diagnostics = ScanDiagnostics()
        self.state = ScanState.NOT_STARTED
        self.started_at = now_utc()
        self.completed_at: Optional[datetime] = None
        self.cancelled = False

    def add_address(self, address: str) -> AddressScan:
        """Return the scan for an address, creating it on first sight."""
        if self.state == ScanState.COMPLETE:
            raise ScanRecordFrozenError(f"Host scan for {self.host_name} is complete")
        address_scan = self._addresses.get(address)
        if address_scan is None:
            address_scan = AddressScan(address)
            self._addresses[address] = address_scan
        return address_scan

    def finalize(self, cancelled: bool = False):
        """Freeze every address scan and mark the host complete."""
        for address_scan in self._addresses.values():
            address_scan.finalize()
        self.cancelled = self.cancelled or cancelled
        self.state = ScanState.COMPLETE
        self.completed_at = now_utc()

    @property
    def is_complete(self) -> bool:
        return self.state == ScanState.COMPLETE

    @property
    def address_scans(self) -> Mapping[str, AddressScan]:
        return MappingProxyType(self._addresses)

    @property
    def addresses(self) -> List[str]:
        return list(self._addresses)

    @property
    def certificate_count(self) -> int:
        return sum(scan.certificate_count for scan in self._addresses.values())

    def get(self, address: str) -> Optional[AddressScan]:
        return self._addresses.get(address)

    def __iter__(self) -> Iterator[AddressScan]:
        return iter(list(self._addresses.values()))

    def __len__(self) -> int:
        return len(self._addresses)

    def __repr__(self):
        return (f"HostScan(host_name={self.host_name!r}, addresses={self.addresses!r}, "
                f"state={self.state.value})")

    def to_dict(self) -> Dict:
        return {
            'host_name': self.host_name,
            'state': self.state.value,
            'cancelled': self.cancelled,
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'certificate_count': self.certificate_count,
            'diagnostics': self.diagnostics.to_dict(),
            'addresses': [scan.to_dict() for scan in self._addresses.values()],
        }
