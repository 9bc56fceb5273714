import pytest

from core.certificate_parser import parse_certificate
from core.errors import ScanRecordFrozenError
from core.scan_records import AddressScan, HostScan, PortBinding, ScanDiagnostics, ScanState


def test_port_binding_rejects_out_of_range_ports():
    assert PortBinding(0).port == 0
    assert PortBinding(65535).port == 65535
    with pytest.raises(ValueError):
        PortBinding(65536)
    with pytest.raises(ValueError):
        PortBinding(-1)
    with pytest.raises(ValueError):
        PortBinding("443")
    with pytest.raises(ValueError):
        PortBinding(True)


def test_address_scan_keeps_one_binding_per_port(der_bytes, other_der_bytes):
    scan = AddressScan("10.0.0.1")
    first = parse_certificate(der_bytes)

    assert scan.add_certificate(443, first)
    assert not scan.add_certificate(443, parse_certificate(other_der_bytes))
    assert scan.certificates[443] == first
    assert len(scan) == 1


def test_finalize_orders_by_port_and_freezes(der_bytes):
    cert = parse_certificate(der_bytes)
    scan = AddressScan("10.0.0.1")
    for port in (8443, 22, 443):
        scan.add_certificate(port, cert)

    assert scan.ports == [8443, 22, 443]
    scan.finalize()
    assert scan.ports == [22, 443, 8443]
    assert scan.is_finalized

    with pytest.raises(ScanRecordFrozenError):
        scan.add_certificate(636, cert)
    with pytest.raises(ScanRecordFrozenError):
        scan.remove_binding(443)


def test_remove_binding(der_bytes):
    scan = AddressScan("10.0.0.1")
    scan.add_certificate(443, parse_certificate(der_bytes))

    assert scan.remove_binding(443)
    assert not scan.remove_binding(443)
    assert 443 not in scan
    assert scan.certificate_count == 0


def test_bindings_view_is_read_only(der_bytes):
    scan = AddressScan("10.0.0.1")
    scan.add_certificate(443, parse_certificate(der_bytes))
    with pytest.raises(TypeError):
        scan.bindings[8443] = PortBinding(8443)


def test_host_scan_addresses_are_unique():
    host = HostScan("srv1")
    first = host.add_address("10.0.0.1")
    assert host.add_address("10.0.0.1") is first
    host.add_address("10.0.0.2")
    assert host.addresses == ["10.0.0.1", "10.0.0.2"]


def test_complete_host_scan_rejects_new_addresses():
    host = HostScan("srv1")
    host.add_address("10.0.0.1")
    host.finalize()

    assert host.state == ScanState.COMPLETE
    assert host.completed_at is not None
    assert host.get("10.0.0.1").is_finalized
    with pytest.raises(ScanRecordFrozenError):
        host.add_address("10.0.0.2")


def test_host_scan_to_dict(der_bytes):
    host = HostScan("srv1")
    host.add_address("10.0.0.1").add_certificate(443, parse_certificate(der_bytes))
    host.finalize(cancelled=True)

    data = host.to_dict()
    assert data['host_name'] == 'srv1'
    assert data['cancelled'] is True
    assert data['certificate_count'] == 1
    binding = data['addresses'][0]['bindings'][0]
    assert binding['port'] == 443
    assert binding['certificate']['common_name'] == 'srv1.example.com'


def test_diagnostics_merge():
    a = ScanDiagnostics()
    a.record_binding()
    a.record_probe_failure("timeout")
    b = ScanDiagnostics()
    b.record_no_certificate()
    b.record_probe_failure("timeout")
    b.record_probe_failure("refused")
    b.record_parse_error()

    a.merge(b)
    assert a.bindings_found == 1
    assert a.no_certificate_count == 1
    assert a.probe_failed_count == 3
    assert a.probe_failures == {"timeout": 2, "refused": 1}
    assert a.probes_completed == 6
