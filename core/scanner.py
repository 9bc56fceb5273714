"""
Certificate Scanner
Drives discovery and probing for a fleet of hosts and assembles the results
into a ScanInventory.

For each host:
    1. discover addresses, then candidate ports
    2. probe every (address, port) pair on a bounded worker pool
    3. parse Found certificates into PortBindings
    4. finalize the HostScan (bindings ordered by port)

Any failure below the host level degrades the result instead of aborting it.
"""

import logging
import time
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from core.certificate_parser import parse_certificate
from core.discovery import DNSDiscovery, DiscoveryService, StaticDiscovery
from core.errors import CertificateParseError, InvalidHostError, ScanSetupError
from core.inventory import ScanInventory, normalize_host_name
from core.probe import (DEFAULT_TIMEOUT_MS, FailureReason, Found, NoCertificate,
                        ProbeFailed, ProbeOutcome, TLSProbe)
from core.scan_records import (AddressScan, Certificate, HostScan, ScanDiagnostics,
                               ScanState, now_utc)

DEFAULT_MAX_WORKERS = 32
DEFAULT_MAX_HOSTS = 4

# How often a waiting scan checks for cancellation.
POLL_INTERVAL = 0.1


def build_discovery(config: Dict, method: str = None) -> DiscoveryService:
    """Create the discovery collaborator named in the configuration."""
    method = method or config.get('discovery', {}).get('method', 'dns')

    if method == 'dns':
        return DNSDiscovery(config)
    elif method == 'static':
        return StaticDiscovery.from_config(config)
    elif method == 'powershell':
        from agents.powershell import PowerShellDiscovery, PowerShellRunner
        return PowerShellDiscovery(PowerShellRunner(config), config)
    elif method == 'api':
        from integrations.inventory_api import InventoryAPIDiscovery
        return InventoryAPIDiscovery(config)
    else:
        raise ScanSetupError(f"Unsupported discovery method: {method}")


def build_probe(config: Dict, method: str = None):
    """Create the probe transport named in the configuration."""
    scanner_config = config.get('scanner', {})
    method = method or scanner_config.get('probe', 'socket')
    timeout_ms = int(scanner_config.get('timeout_ms', DEFAULT_TIMEOUT_MS))

    if method == 'socket':
        return TLSProbe(timeout_ms)
    elif method == 'powershell':
        from agents.powershell import PowerShellProbe, PowerShellRunner
        return PowerShellProbe(PowerShellRunner(config), timeout_ms=timeout_ms,
                               machine_name=scanner_config.get('probe_vantage_point'))
    else:
        raise ScanSetupError(f"Unsupported probe method: {method}")


@dataclass
class ScanRun:
    """Result of scanning a set of hosts."""
    inventory: ScanInventory
    host_scans: List[HostScan] = field(default_factory=list)
    failed_hosts: Dict[str, str] = field(default_factory=dict)
    skipped_hosts: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=now_utc)
    completed_at: Optional[datetime] = None
    cancelled: bool = False

    @property
    def diagnostics(self) -> ScanDiagnostics:
        merged = ScanDiagnostics()
        for host_scan in self.host_scans:
            merged.merge(host_scan.diagnostics)
        return merged

    @property
    def hosts_requested(self) -> int:
        return len(self.host_scans) + len(self.failed_hosts) + len(self.skipped_hosts)

    def to_dict(self) -> Dict:
        return {
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'cancelled': self.cancelled,
            'hosts_requested': self.hosts_requested,
            'failed_hosts': dict(self.failed_hosts),
            'skipped_hosts': list(self.skipped_hosts),
            'diagnostics': self.diagnostics.to_dict(),
            'inventory': self.inventory.to_dict(),
        }


class CertificateScanner:
    """Discovers certificates bound to the ports of a fleet of hosts."""

    def __init__(self, config: Dict = None, discovery: DiscoveryService = None,
                 probe=None, parser: Callable[[bytes], Certificate] = None):
        self.config = config or {}
        self.logger = logging.getLogger(__name__)

        scanner_config = self.config.get('scanner', {})
        self.timeout_ms = int(scanner_config.get('timeout_ms', DEFAULT_TIMEOUT_MS))
        self.max_workers = int(scanner_config.get('max_workers', DEFAULT_MAX_WORKERS))
        self.max_hosts = int(scanner_config.get('max_hosts', DEFAULT_MAX_HOSTS))
        self.run_timeout = scanner_config.get('run_timeout')

        if self.max_workers < 1 or self.max_hosts < 1:
            raise ScanSetupError("scanner.max_workers and scanner.max_hosts must be at least 1")

        self.discovery = discovery if discovery is not None else build_discovery(self.config)
        self.probe = probe if probe is not None else build_probe(self.config)
        self.parse = parser or parse_certificate

    # ========================================================================
    # SINGLE HOST
    # ========================================================================

    def scan_host(self, host_name: str, cancel_event: threading.Event = None,
                  deadline: float = None) -> HostScan:
        """
        Scan every discovered address and port of one host.

        Args:
            host_name: Host to scan
            cancel_event: Set to abandon the scan and keep partial results
            deadline: time.monotonic() value after which the scan is abandoned

        Returns:
            A completed HostScan, possibly empty or partial

        Raises:
            InvalidHostError: the discovery collaborator rejected the host name
        """
        host_scan = HostScan(host_name)

        if self._should_stop(cancel_event, deadline):
            host_scan.finalize(cancelled=True)
            return host_scan

        addresses = self._discover_addresses(host_scan)
        host_scan.state = ScanState.ADDRESSES_DISCOVERED
        if not addresses:
            host_scan.finalize()
            return host_scan

        if self._should_stop(cancel_event, deadline):
            host_scan.finalize(cancelled=True)
            return host_scan

        ports = self._discover_ports(host_scan)
        if ports is None:
            host_scan.finalize()
            return host_scan
        host_scan.state = ScanState.PORTS_DISCOVERED

        address_scans = [host_scan.add_address(address) for address in addresses]
        host_scan.state = ScanState.PROBING

        self.logger.info(f"Probing {host_name}: {len(address_scans)} addresses x {len(ports)} ports")
        cancelled = self._probe_all(host_scan, address_scans, ports, cancel_event, deadline)

        host_scan.finalize(cancelled=cancelled)
        self.logger.info(f"Scan of {host_name} complete: {host_scan.certificate_count} certificates"
                         f"{' (cancelled)' if cancelled else ''}")
        return host_scan

    def _discover_addresses(self, host_scan: HostScan) -> List[str]:
        try:
            raw_addresses = self.discovery.discover_addresses(host_scan.host_name)
        except InvalidHostError:
            raise
        except Exception as e:
            self.logger.warning(f"Address discovery failed for {host_scan.host_name}: {e}")
            host_scan.diagnostics.record_discovery_failure()
            return []

        addresses = []
        for address in raw_addresses or []:
            address = str(address).strip()
            if address and address not in addresses:
                addresses.append(address)
        return addresses

    def _discover_ports(self, host_scan: HostScan) -> Optional[List[int]]:
        """Candidate ports in collaborator order, or None if discovery failed."""
        try:
            raw_ports = self.discovery.discover_listening_ports(host_scan.host_name)
        except InvalidHostError:
            raise
        except Exception as e:
            self.logger.warning(f"Port discovery failed for {host_scan.host_name}: {e}")
            host_scan.diagnostics.record_discovery_failure()
            return None

        ports = []
        for raw_port in raw_ports or []:
            try:
                if isinstance(raw_port, bool):
                    raise ValueError(raw_port)
                port = int(raw_port)
            except (TypeError, ValueError):
                self.logger.warning(f"Ignoring non-numeric port {raw_port!r} for {host_scan.host_name}")
                continue
            if not 1 <= port <= 65535:
                self.logger.warning(f"Ignoring out-of-range port {port} for {host_scan.host_name}")
                continue
            if port not in ports:
                ports.append(port)
        return ports

    def _probe_all(self, host_scan: HostScan, address_scans: List[AddressScan], ports: List[int],
                   cancel_event: Optional[threading.Event], deadline: Optional[float]) -> bool:
        """Run all probes for a host. Returns True if the scan was cut short."""
        targets = [(address_scan, port) for address_scan in address_scans for port in ports]
        if not targets:
            return False
        if self._should_stop(cancel_event, deadline):
            host_scan.diagnostics.record_abandoned(len(targets))
            return True

        cancelled = False
        executor = ThreadPoolExecutor(max_workers=min(self.max_workers, len(targets)),
                                      thread_name_prefix='cert-probe')
        futures = {executor.submit(self._run_probe, address_scan.address, port): (address_scan, port)
                   for address_scan, port in targets}
        pending = set(futures)
        try:
            while pending:
                if self._should_stop(cancel_event, deadline):
                    cancelled = True
                    break

                wait_timeout = POLL_INTERVAL
                if deadline is not None:
                    wait_timeout = max(0.0, min(wait_timeout, deadline - time.monotonic()))

                done, pending = wait(pending, timeout=wait_timeout, return_when=FIRST_COMPLETED)
                for future in done:
                    address_scan, port = futures[future]
                    self._record_outcome(host_scan, address_scan, port, future.result())
        finally:
            if cancelled:
                for future in pending:
                    future.cancel()
                host_scan.diagnostics.record_abandoned(len(pending))
                self.logger.warning(f"Scan of {host_scan.host_name} cancelled, "
                                    f"{len(pending)} probes abandoned")
            # In-flight probes are bounded by their own timeout and close their sockets.
            executor.shutdown(wait=not cancelled, cancel_futures=True)

        return cancelled

    def _run_probe(self, address: str, port: int) -> ProbeOutcome:
        try:
            return self.probe.probe(address, port, self.timeout_ms)
        except Exception as e:
            self.logger.warning(f"Probe of {address}:{port} raised: {e}")
            return ProbeFailed(FailureReason.OTHER, str(e))

    def _record_outcome(self, host_scan: HostScan, address_scan: AddressScan, port: int,
                        outcome: ProbeOutcome):
        diagnostics = host_scan.diagnostics

        if isinstance(outcome, Found):
            try:
                certificate = self.parse(outcome.raw_certificate)
            except CertificateParseError as e:
                self.logger.warning(f"Unreadable certificate on {address_scan.address}:{port}: {e}")
                diagnostics.record_parse_error()
                return
            address_scan.add_certificate(port, certificate)
            diagnostics.record_binding()
            self.logger.debug(f"Certificate on {address_scan.address}:{port}: {certificate.subject}")

        elif isinstance(outcome, NoCertificate):
            diagnostics.record_no_certificate()

        elif isinstance(outcome, ProbeFailed):
            diagnostics.record_probe_failure(outcome.reason.value)
            self.logger.debug(f"Probe of {address_scan.address}:{port} failed: {outcome.reason.value}")

        else:
            self.logger.warning(f"Unknown probe outcome for {address_scan.address}:{port}: {outcome!r}")
            diagnostics.record_probe_failure(FailureReason.OTHER.value)

    @staticmethod
    def _should_stop(cancel_event: Optional[threading.Event], deadline: Optional[float]) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        return deadline is not None and time.monotonic() >= deadline

    # ========================================================================
    # SCAN RUN
    # ========================================================================

    def scan_hosts(self, host_names: Iterable[str], cancel_event: threading.Event = None,
                   timeout: float = None, inventory: ScanInventory = None) -> ScanRun:
        """
        Scan a set of hosts, one task per host.

        Args:
            host_names: Hosts to scan, in reporting order
            cancel_event: Set to cancel the whole run
            timeout: Seconds before the run is cancelled (defaults to scanner.run_timeout)
            inventory: Existing inventory to add to; hosts already present are skipped

        Returns:
            ScanRun holding the inventory and per-run diagnostics

        Raises:
            ScanSetupError: no hosts were supplied
        """
        requested = [name for name in (host_names or []) if isinstance(name, str) and name.strip()]
        if not requested:
            raise ScanSetupError("No hosts supplied for scan")

        inventory = inventory if inventory is not None else ScanInventory()
        run = ScanRun(inventory=inventory)

        hosts = []
        seen = set()
        for name in requested:
            key = normalize_host_name(name)
            if key in seen or key in inventory:
                self.logger.info(f"Skipping {name}: already scanned or scheduled")
                run.skipped_hosts.append(name)
                continue
            seen.add(key)
            hosts.append(name.strip())

        if timeout is None:
            timeout = self.run_timeout
        deadline = time.monotonic() + float(timeout) if timeout else None

        self.logger.info(f"Starting certificate scan of {len(hosts)} hosts")

        if hosts:
            with ThreadPoolExecutor(max_workers=min(self.max_hosts, len(hosts)),
                                    thread_name_prefix='host-scan') as executor:
                futures = [(name, executor.submit(self.scan_host, name, cancel_event, deadline))
                           for name in hosts]

                # Results are aggregated in the order hosts were supplied.
                for name, future in futures:
                    try:
                        host_scan = future.result()
                    except Exception as e:
                        self.logger.error(f"Scan of {name} failed: {e}")
                        run.failed_hosts[name] = str(e)
                        continue

                    run.host_scans.append(host_scan)
                    if not inventory.add(host_scan):
                        self.logger.info(f"Inventory already holds {name}, keeping the first scan")

        run.cancelled = any(scan.cancelled for scan in run.host_scans) or bool(
            cancel_event is not None and cancel_event.is_set())
        run.completed_at = now_utc()

        diagnostics = run.diagnostics
        self.logger.info(
            f"Scan finished: {len(run.host_scans)} hosts, {diagnostics.bindings_found} certificates, "
            f"{diagnostics.no_certificate_count} without TLS, {diagnostics.probe_failed_count} probe failures, "
            f"{diagnostics.parse_error_count} parse errors, {len(run.failed_hosts)} failed hosts"
        )
        return run
