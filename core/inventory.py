"""
Scan Inventory
Collects host scans from a scan run, keyed case-insensitively by host name.
The first scan added for a host wins; later duplicates are discarded.
"""

import logging
import threading
from typing import Dict, Iterator, List, Optional

from core.scan_records import HostScan, ScanDiagnostics

logger = logging.getLogger(__name__)


def normalize_host_name(host_name: str) -> str:
    """Canonical inventory key for a host name."""
    return host_name.strip().lower()


class ScanInventory:
    """Insertion-ordered, thread-safe collection of HostScan records."""

    def __init__(self):
        self._hosts: Dict[str, HostScan] = {}
        self._lock = threading.Lock()

    def add(self, host_scan: HostScan) -> bool:
        """
        Add a host scan.

        Returns:
            True if it was stored, False if a scan for the same host already exists
        """
        key = normalize_host_name(host_scan.host_name)
        with self._lock:
            if key in self._hosts:
                logger.debug(f"Discarding duplicate scan for {host_scan.host_name}")
                return False
            self._hosts[key] = host_scan
            return True

    def get(self, host_name: str) -> Optional[HostScan]:
        with self._lock:
            return self._hosts.get(normalize_host_name(host_name))

    def remove(self, host_name: str) -> Optional[HostScan]:
        """Drop a host so that it can be scanned again."""
        with self._lock:
            return self._hosts.pop(normalize_host_name(host_name), None)

    def host_names(self) -> List[str]:
        with self._lock:
            return [scan.host_name for scan in self._hosts.values()]

    def host_scans(self) -> List[HostScan]:
        with self._lock:
            return list(self._hosts.values())

    def diagnostics(self) -> ScanDiagnostics:
        """Counters merged across every host in the inventory."""
        merged = ScanDiagnostics()
        for host_scan in self.host_scans():
            merged.merge(host_scan.diagnostics)
        return merged

    @property
    def certificate_count(self) -> int:
        return sum(scan.certificate_count for scan in self.host_scans())

    def __contains__(self, host_name) -> bool:
        if not isinstance(host_name, str):
            return False
        return self.get(host_name) is not None

    def __iter__(self) -> Iterator[HostScan]:
        return iter(self.host_scans())

    def __len__(self) -> int:
        with self._lock:
            return len(self._hosts)

    def __repr__(self):
        return f"ScanInventory(hosts={self.host_names()!r})"

    def to_dict(self) -> Dict:
        return {
            'host_count': len(self),
            'certificate_count': self.certificate_count,
            'hosts': [scan.to_dict() for scan in self.host_scans()],
        }


def add(inventory: ScanInventory, host_scan: HostScan) -> bool:
    return inventory.add(host_scan)


def get(inventory: ScanInventory, host_name: str) -> Optional[HostScan]:
    return inventory.get(host_name)
