"""
Inventory Reports
Text and JSON renderings of a ScanInventory.
"""

import json
from typing import Dict, List, Union

from jinja2 import Template

from core.inventory import ScanInventory

INVENTORY_TEMPLATE = """
{% for host in hosts %}
{{ host.host_name }}:{% if host.cancelled %} (partial){% endif %}

{% if not host.addresses %}
    (no addresses discovered)
{% endif %}
{% for address_scan in host %}
    {{ address_scan.address }}:
{% for binding in address_scan %}
        Port {{ binding.port }}  :  {{ binding.certificate.subject if binding.certificate else '-' }}
{% endfor %}
{% endfor %}
{% endfor %}
"""

_template = Template(INVENTORY_TEMPLATE, trim_blocks=True, lstrip_blocks=True)


def render_text(inventory: ScanInventory) -> str:
    """Per-host, per-address, per-port listing of discovered certificates."""
    return _template.render(hosts=inventory.host_scans()).strip('\n') + '\n'


def to_json(report: Union[ScanInventory, Dict, List], pretty: bool = True) -> str:
    """Convert an inventory (or an already serialised report) to JSON."""
    data = report.to_dict() if isinstance(report, ScanInventory) else report
    if pretty:
        return json.dumps(data, indent=2, default=str)
    return json.dumps(data, default=str)


def table_rows(inventory: ScanInventory) -> List[Dict]:
    """Flatten an inventory into one row per binding."""
    rows = []
    for host_scan in inventory:
        for address_scan in host_scan:
            for binding in address_scan:
                cert = binding.certificate
                rows.append({
                    'host': host_scan.host_name,
                    'address': address_scan.address,
                    'port': binding.port,
                    'common_name': cert.common_name if cert else '',
                    'issuer': cert.issuer if cert else '',
                    'expires': cert.not_valid_after.strftime('%Y-%m-%d') if cert else '',
                })
    return rows


def summary(run) -> List[str]:
    """Summary lines for a ScanRun."""
    diagnostics = run.diagnostics
    lines = [
        f"Hosts scanned: {len(run.host_scans)}",
        f"Certificates found: {diagnostics.bindings_found}",
        f"Ports without TLS: {diagnostics.no_certificate_count}",
        f"Probe failures: {diagnostics.probe_failed_count}",
        f"Unreadable certificates: {diagnostics.parse_error_count}",
        f"Discovery failures: {diagnostics.discovery_failures}",
    ]
    if diagnostics.probe_failures:
        breakdown = ', '.join(f"{reason}={count}" for reason, count in sorted(diagnostics.probe_failures.items()))
        lines.append(f"  Failure reasons: {breakdown}")
    if diagnostics.probes_abandoned:
        lines.append(f"Probes abandoned: {diagnostics.probes_abandoned}")
    if run.skipped_hosts:
        lines.append(f"Skipped (duplicate): {', '.join(run.skipped_hosts)}")
    for host, error in run.failed_hosts.items():
        lines.append(f"Failed: {host}: {error}")
    if run.cancelled:
        lines.append("Run was cancelled; results are partial")
    return lines
