"""
PowerShell Agent
Runs discovery and certificate retrieval scripts through PowerShell, locally
or on a remote machine via Invoke-Command. Used when hosts can only be
enumerated from their own administrative shell, or when probes must originate
from a different network vantage point than the scanner.

Scripts print one compressed JSON object per line; the runner parses each line.
"""

import base64
import binascii
import json
import logging
import platform
import subprocess
from typing import Dict, List, Optional, Tuple

from core.discovery import DiscoveryService, validate_host_name
from core.errors import DiscoveryError
from core.probe import DEFAULT_TIMEOUT_MS, FailureReason, Found, NoCertificate, ProbeFailed, ProbeOutcome

# TCP connection states reported by netstat
LISTENING = "LISTENING"
ESTABLISHED = "ESTABLISHED"
TIME_WAIT = "TIME_WAIT"
CLOSE_WAIT = "CLOSE_WAIT"
PORT_STATES = (LISTENING, ESTABLISHED, TIME_WAIT, CLOSE_WAIT)

IPCONFIG_SCRIPT = """
Get-NetIPAddress -AddressFamily IPv4 |
    Where-Object { $_.IPAddress -ne '127.0.0.1' -and $_.AddressState -eq 'Preferred' } |
    ForEach-Object { @{ 'Address' = $_.IPAddress } | ConvertTo-Json -Compress }
"""

NETSTAT_SCRIPT = """
netstat -an -p TCP | Select-String -Pattern '^\\s*TCP' | ForEach-Object {
    $fields = $_.Line.Trim() -split '\\s+'
    @{
        'Port' = ($fields[1] -split ':')[-1]
        'Status' = $fields[3]
    } | ConvertTo-Json -Compress
}
"""

CERTIFICATE_SCRIPT = """
function Get-CertificateInformation {
    param([string]$MachineName, [int]$Port, [int]$Timeout = 2000)
    $client = New-Object System.Net.Sockets.TcpClient
    try {
        $connect = $client.BeginConnect($MachineName, $Port, $null, $null)
        if (-not $connect.AsyncWaitHandle.WaitOne($Timeout)) {
            @{ 'Error' = 'TimedOut' } | ConvertTo-Json -Compress
            return
        }
        $client.EndConnect($connect)
        $client.ReceiveTimeout = $Timeout
        $client.SendTimeout = $Timeout
        $stream = New-Object System.Net.Security.SslStream($client.GetStream(), $false, { $true })
        $stream.ReadTimeout = $Timeout
        $stream.AuthenticateAsClient($MachineName)
        if ($stream.RemoteCertificate) {
            @{ 'RawData' = [Convert]::ToBase64String($stream.RemoteCertificate.GetRawCertData()) } | ConvertTo-Json -Compress
        } else {
            @{ 'NoCertificate' = $true } | ConvertTo-Json -Compress
        }
    } catch [System.Net.Sockets.SocketException] {
        @{ 'Error' = $_.Exception.SocketErrorCode.ToString() } | ConvertTo-Json -Compress
    } catch [System.Security.Authentication.AuthenticationException] {
        @{ 'NoCertificate' = $true; 'Error' = $_.Exception.Message } | ConvertTo-Json -Compress
    } catch [System.IO.IOException] {
        if ($_.Exception.InnerException -is [System.Net.Sockets.SocketException]) {
            @{ 'Error' = $_.Exception.InnerException.SocketErrorCode.ToString() } | ConvertTo-Json -Compress
        } else {
            @{ 'NoCertificate' = $true; 'Error' = $_.Exception.Message } | ConvertTo-Json -Compress
        }
    } catch {
        @{ 'Error' = $_.Exception.Message } | ConvertTo-Json -Compress
    } finally {
        $client.Close()
    }
}
"""


class PowerShellError(DiscoveryError):
    """PowerShell could not be started, timed out or exited with an error."""


def quote_argument(value: str) -> str:
    """Single-quote a string for PowerShell."""
    return "'" + str(value).replace("'", "''") + "'"


def format_parameters(parameters: Optional[Dict]) -> str:
    """Render parameters as ' -Name value' pairs."""
    if not parameters:
        return ""
    result = ""
    for name, value in parameters.items():
        if isinstance(value, bool):
            rendered = '$true' if value else '$false'
        elif isinstance(value, int):
            rendered = str(value)
        else:
            rendered = quote_argument(value)
        result += f" -{name} {rendered}"
    return result


class PowerShellRunner:
    """Executes PowerShell scripts and collects their JSON output."""

    def __init__(self, config: Dict = None):
        self.config = config or {}
        self.logger = logging.getLogger(__name__)

        ps_config = self.config.get('powershell', {})
        self.executable = ps_config.get('executable', 'powershell')
        self.timeout = ps_config.get('timeout', 30)
        self.local_names = {name.lower() for name in ps_config.get('local_names', ['localhost', '127.0.0.1', '.'])}
        self.local_names.add(platform.node().lower())

    def is_local(self, machine_name: str) -> bool:
        return machine_name.strip().lower() in self.local_names

    def run_script(self, script: str, command: str = "", parameters: Dict = None) -> List[Dict]:
        """Run a command against a script on this machine."""
        return self._execute(f"{script}\n{command}{format_parameters(parameters)}")

    def invoke_command(self, machine_name: str, script_block: str) -> List[Dict]:
        """Run a script block on a remote machine (or locally for this machine's names)."""
        if self.is_local(machine_name):
            return self._execute(script_block)
        wrapped = (f"Invoke-Command -ComputerName {quote_argument(machine_name)} "
                   f"-ScriptBlock {{\n{script_block}\n}}")
        return self._execute(wrapped)

    def _execute(self, script: str) -> List[Dict]:
        try:
            result = subprocess.run(
                [self.executable, '-NoProfile', '-NonInteractive', '-Command', script],
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except subprocess.TimeoutExpired as e:
            raise PowerShellError(f"PowerShell timed out after {self.timeout}s") from e
        except OSError as e:
            raise PowerShellError(f"Error executing PowerShell: {e}") from e

        if result.returncode != 0:
            raise PowerShellError(f"PowerShell exited with code {result.returncode}: {result.stderr.strip()}")

        records = []
        for line in result.stdout.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError as e:
                self.logger.warning(f"Error parsing PowerShell output line: {e}")
                continue
            if isinstance(data, dict):
                records.append(data)
            elif isinstance(data, list):
                records.extend(item for item in data if isinstance(item, dict))
        return records


class PowerShellDiscovery(DiscoveryService):
    """Enumerates a host's IPv4 addresses and TCP ports through its own shell."""

    def __init__(self, runner: PowerShellRunner, config: Dict = None):
        self.runner = runner
        self.config = config or {}
        self.logger = logging.getLogger(__name__)

        port_state = self.config.get('discovery', {}).get('port_state', LISTENING)
        self.port_state = port_state.upper().replace('-', '_')
        if self.port_state not in PORT_STATES:
            raise ValueError(f"Unsupported port state: {port_state}")

    def discover_addresses(self, host_name: str) -> List[str]:
        name = validate_host_name(host_name)
        addresses = []
        for record in self.runner.invoke_command(name, IPCONFIG_SCRIPT):
            address = record.get('Address')
            if address and address not in addresses:
                addresses.append(str(address))
        return addresses

    def discover_listening_ports(self, host_name: str) -> List[int]:
        return self.get_ports_by_status(host_name, self.port_state)

    def get_netstat_information(self, host_name: str) -> List[Tuple[int, str]]:
        """All active TCP ports on the host with their connection state."""
        name = validate_host_name(host_name)
        ports = []
        for record in self.runner.invoke_command(name, NETSTAT_SCRIPT):
            try:
                port = int(record.get('Port'))
            except (TypeError, ValueError):
                continue
            status = str(record.get('Status', '')).upper().replace('-', '_')
            ports.append((port, status))
        return ports

    def get_ports_by_status(self, host_name: str, status: str) -> List[int]:
        status = status.upper().replace('-', '_')
        ports = []
        for port, port_status in self.get_netstat_information(host_name):
            if port_status == status and port not in ports:
                ports.append(port)
        return ports


def classify_powershell_error(error: str) -> FailureReason:
    lowered = error.lower()
    if 'timedout' in lowered or 'timed out' in lowered or 'timeout' in lowered:
        return FailureReason.TIMEOUT
    if 'refused' in lowered:
        return FailureReason.REFUSED
    if 'reset' in lowered:
        return FailureReason.RESET
    return FailureReason.OTHER


class PowerShellProbe:
    """Certificate probe that performs the handshake from a PowerShell host."""

    def __init__(self, runner: PowerShellRunner, timeout_ms: int = DEFAULT_TIMEOUT_MS,
                 machine_name: str = None):
        self.runner = runner
        self.timeout_ms = timeout_ms
        self.machine_name = machine_name
        self.logger = logging.getLogger(__name__)

    def probe(self, address: str, port: int, timeout_ms: Optional[int] = None) -> ProbeOutcome:
        parameters = {
            'MachineName': address,
            'Port': int(port),
            'Timeout': int(timeout_ms if timeout_ms is not None else self.timeout_ms),
        }
        try:
            if self.machine_name:
                command = 'Get-CertificateInformation' + format_parameters(parameters)
                records = self.runner.invoke_command(self.machine_name, f"{CERTIFICATE_SCRIPT}\n{command}")
            else:
                records = self.runner.run_script(CERTIFICATE_SCRIPT, 'Get-CertificateInformation', parameters)
        except PowerShellError as e:
            return ProbeFailed(FailureReason.OTHER, str(e))

        for record in records:
            if record.get('RawData'):
                try:
                    return Found(base64.b64decode(record['RawData'], validate=True))
                except (binascii.Error, ValueError):
                    # Left for the parser to reject, so it counts as corrupt data.
                    self.logger.debug(f"Undecodable certificate data from {address}:{port}")
                    return Found(str(record['RawData']).encode('utf-8', 'replace'))
            if record.get('NoCertificate'):
                return NoCertificate()
            if record.get('Error'):
                error = str(record['Error'])
                self.logger.debug(f"Remote probe of {address}:{port} failed: {error}")
                return ProbeFailed(classify_powershell_error(error), error)

        return NoCertificate()
