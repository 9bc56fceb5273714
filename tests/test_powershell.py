import base64
import json
import subprocess
from unittest.mock import patch

import pytest

from agents.powershell import (LISTENING, PowerShellDiscovery, PowerShellError, PowerShellProbe,
                               PowerShellRunner, classify_powershell_error, format_parameters,
                               quote_argument)
from core.errors import DiscoveryError, InvalidHostError
from core.probe import FailureReason, Found, NoCertificate, ProbeFailed


def completed(*records, returncode=0, stdout=None, stderr=""):
    if stdout is None:
        stdout = "\n".join(json.dumps(record) for record in records)
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def runner():
    return PowerShellRunner({'powershell': {'executable': 'pwsh', 'timeout': 5}})


def test_quote_argument_escapes_single_quotes():
    assert quote_argument("O'Brien") == "'O''Brien'"


def test_format_parameters():
    rendered = format_parameters({'MachineName': 'web01', 'Port': 443, 'Verbose': True})
    assert rendered == " -MachineName 'web01' -Port 443 -Verbose $true"
    assert format_parameters(None) == ""


def test_runner_parses_one_json_object_per_line(runner):
    stdout = '{"Address": "10.0.0.5"}\n\nnot json\n[{"Address": "10.0.0.6"}]\n'
    with patch('agents.powershell.subprocess.run', return_value=completed(stdout=stdout)) as run:
        records = runner.run_script("Write-Output 1")

    assert records == [{"Address": "10.0.0.5"}, {"Address": "10.0.0.6"}]
    args = run.call_args[0][0]
    assert args[:4] == ['pwsh', '-NoProfile', '-NonInteractive', '-Command']
    assert run.call_args[1]['timeout'] == 5


def test_runner_raises_on_non_zero_exit(runner):
    with patch('agents.powershell.subprocess.run', return_value=completed(returncode=1, stderr="denied")):
        with pytest.raises(PowerShellError, match="denied"):
            runner.run_script("Get-Item")


def test_runner_raises_on_timeout(runner):
    error = subprocess.TimeoutExpired(cmd='pwsh', timeout=5)
    with patch('agents.powershell.subprocess.run', side_effect=error):
        with pytest.raises(PowerShellError):
            runner.run_script("Start-Sleep 60")


def test_runner_raises_when_executable_is_missing(runner):
    with patch('agents.powershell.subprocess.run', side_effect=FileNotFoundError("pwsh")):
        with pytest.raises(DiscoveryError):
            runner.run_script("Get-Date")


def test_invoke_command_wraps_remote_machines(runner):
    with patch('agents.powershell.subprocess.run', return_value=completed()) as run:
        runner.invoke_command("web01", "Get-Date")
        remote_script = run.call_args[0][0][-1]
        runner.invoke_command("localhost", "Get-Date")
        local_script = run.call_args[0][0][-1]

    assert remote_script.startswith("Invoke-Command -ComputerName 'web01' -ScriptBlock {")
    assert local_script == "Get-Date"


def test_discovery_addresses(runner):
    output = completed({"Address": "10.0.0.5"}, {"Address": "10.0.0.6"}, {"Address": "10.0.0.5"})
    with patch('agents.powershell.subprocess.run', return_value=output):
        addresses = PowerShellDiscovery(runner).discover_addresses("web01")
    assert addresses == ["10.0.0.5", "10.0.0.6"]


def test_discovery_ports_by_status(runner):
    output = completed(
        {"Port": "443", "Status": "LISTENING"},
        {"Port": "3389", "Status": "LISTENING"},
        {"Port": "51000", "Status": "ESTABLISHED"},
        {"Port": "51001", "Status": "TIME_WAIT"},
        {"Port": "*", "Status": "LISTENING"},
        {"Port": "443", "Status": "LISTENING"},
    )
    discovery = PowerShellDiscovery(runner)
    with patch('agents.powershell.subprocess.run', return_value=output):
        assert discovery.port_state == LISTENING
        assert discovery.discover_listening_ports("web01") == [443, 3389]
        assert discovery.get_ports_by_status("web01", "time-wait") == [51001]
        assert (51000, "ESTABLISHED") in discovery.get_netstat_information("web01")


def test_discovery_rejects_unknown_port_state(runner):
    with pytest.raises(ValueError):
        PowerShellDiscovery(runner, {'discovery': {'port_state': 'SYN_SENT'}})


def test_discovery_rejects_invalid_host_names(runner):
    with pytest.raises(InvalidHostError):
        PowerShellDiscovery(runner).discover_addresses("bad host; Remove-Item")


def test_probe_decodes_raw_data(runner, der_bytes):
    encoded = base64.b64encode(der_bytes).decode('ascii')
    with patch('agents.powershell.subprocess.run', return_value=completed({"RawData": encoded})) as run:
        outcome = PowerShellProbe(runner, timeout_ms=1500).probe("10.0.0.5", 443)

    assert outcome == Found(der_bytes)
    script = run.call_args[0][0][-1]
    assert "Get-CertificateInformation -MachineName '10.0.0.5' -Port 443 -Timeout 1500" in script


def test_probe_from_vantage_point_uses_invoke_command(runner, der_bytes):
    encoded = base64.b64encode(der_bytes).decode('ascii')
    with patch('agents.powershell.subprocess.run', return_value=completed({"RawData": encoded})) as run:
        PowerShellProbe(runner, machine_name="jump01").probe("10.0.0.5", 443)
    assert run.call_args[0][0][-1].startswith("Invoke-Command -ComputerName 'jump01'")


@pytest.mark.parametrize("record, expected", [
    ({"NoCertificate": True}, NoCertificate()),
    ({"Error": "TimedOut"}, ProbeFailed(FailureReason.TIMEOUT)),
    ({"Error": "ConnectionRefused"}, ProbeFailed(FailureReason.REFUSED)),
    ({"Error": "ConnectionReset"}, ProbeFailed(FailureReason.RESET)),
    ({"Error": "HostUnreachable"}, ProbeFailed(FailureReason.OTHER)),
])
def test_probe_outcome_mapping(runner, record, expected):
    with patch('agents.powershell.subprocess.run', return_value=completed(record)):
        assert PowerShellProbe(runner).probe("10.0.0.5", 443) == expected


def test_probe_shell_failure_is_a_probe_failure(runner):
    with patch('agents.powershell.subprocess.run', return_value=completed(returncode=1)):
        outcome = PowerShellProbe(runner).probe("10.0.0.5", 443)
    assert outcome == ProbeFailed(FailureReason.OTHER)


def test_classify_powershell_error():
    assert classify_powershell_error("The operation timed out") == FailureReason.TIMEOUT
    assert classify_powershell_error("Unknown") == FailureReason.OTHER


def test_build_probe_and_discovery_from_config():
    from core.scanner import build_discovery, build_probe

    config = {'scanner': {'probe': 'powershell', 'timeout_ms': 900, 'probe_vantage_point': 'jump01'},
              'discovery': {'method': 'powershell'}}
    probe = build_probe(config)
    assert isinstance(probe, PowerShellProbe)
    assert probe.timeout_ms == 900
    assert probe.machine_name == 'jump01'
    assert isinstance(build_discovery(config), PowerShellDiscovery)


def test_undecodable_raw_data_counts_as_parse_error(runner):
    from conftest import FakeDiscovery
    from core.scanner import CertificateScanner

    discovery = FakeDiscovery(addresses={"web01": ["10.0.0.5"]}, ports={"web01": [443]})
    scanner = CertificateScanner({}, discovery=discovery, probe=PowerShellProbe(runner))
    with patch('agents.powershell.subprocess.run', return_value=completed({"RawData": "!!not base64!!"})):
        assert isinstance(PowerShellProbe(runner).probe("10.0.0.5", 443), Found)
        scan = scanner.scan_host("web01")

    assert scan.certificate_count == 0
    assert scan.diagnostics.parse_error_count == 1
    assert scan.diagnostics.probe_failed_count == 0
