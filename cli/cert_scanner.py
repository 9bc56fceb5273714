#!/usr/bin/env python3
"""
Certificate Discovery Scanner - Command Line Interface
Scan hosts for TLS certificates, import certificate files and browse
stored scan runs.
"""

import sys
import json
import copy
import logging
import click
from pathlib import Path

from sqlalchemy import text

from core import report
from core.certificate_parser import CertificateParser
from core.errors import CertificateParseError, CertificateScanError, ScanSetupError
from core.scanner import CertificateScanner, build_discovery, build_probe
from database.models import DatabaseManager, ScanStore, get_database_url

project_root = Path(__file__).parent.parent
DEFAULT_CONFIG_PATH = project_root / "config" / "config.json"


def load_config(config_path: str = None) -> dict:
    """Load configuration from file. Defaults apply when no file exists."""
    if not config_path:
        if not DEFAULT_CONFIG_PATH.exists():
            return {}
        config_path = DEFAULT_CONFIG_PATH

    config_file = Path(config_path)
    if not config_file.exists():
        click.echo(f"Configuration file not found: {config_file}")
        click.echo("Please copy config/config.example.json to config/config.json and configure it.")
        sys.exit(1)

    try:
        with open(config_file) as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        click.echo(f"Invalid configuration file {config_file}: {e}")
        sys.exit(1)


def get_store(config: dict) -> ScanStore:
    return ScanStore(DatabaseManager(get_database_url(config)))


@click.group()
@click.option('--config', '-c', default=None, help='Configuration file path')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.pass_context
def cli(ctx, config, verbose):
    """Certificate Discovery Scanner - find the certificates bound to your hosts."""
    if verbose:
        logging.basicConfig(level=logging.INFO)
    else:
        logging.basicConfig(level=logging.WARNING)

    ctx.ensure_object(dict)
    ctx.obj['config'] = load_config(config)
    ctx.obj['verbose'] = verbose


@cli.group()
@click.pass_context
def scan(ctx):
    """Certificate scanning operations."""
    pass


@scan.command('hosts')
@click.argument('hosts', nargs=-1)
@click.option('--port', '-p', 'ports', type=int, multiple=True,
              help='Candidate port (repeatable); overrides configured ports')
@click.option('--discovery', 'discovery_method', default=None,
              help='Discovery method: dns, static, powershell or api')
@click.option('--timeout-ms', type=int, default=None, help='Per-probe timeout in milliseconds')
@click.option('--workers', type=int, default=None, help='Concurrent probes per host')
@click.option('--run-timeout', type=float, default=None, help='Cancel the run after N seconds')
@click.option('--format', 'output_format', default='table', type=click.Choice(['table', 'text', 'json']),
              help='Output format')
@click.option('--output', '-o', type=click.Path(dir_okay=False), default=None,
              help='Write the report to a file instead of stdout')
@click.option('--save', is_flag=True, help='Store the run in the scan history database')
@click.pass_context
def scan_hosts(ctx, hosts, ports, discovery_method, timeout_ms, workers, run_timeout,
               output_format, output, save):
    """Discover certificates on HOSTS."""
    config = copy.deepcopy(ctx.obj['config'])
    verbose = ctx.obj['verbose']

    scanner_config = config.setdefault('scanner', {})
    discovery_config = config.setdefault('discovery', {})
    if ports:
        discovery_config['ports'] = list(ports)
        discovery_config.setdefault('static', {})['ports'] = list(ports)
    if discovery_method:
        discovery_config['method'] = discovery_method
    if timeout_ms is not None:
        scanner_config['timeout_ms'] = timeout_ms
    if workers is not None:
        scanner_config['max_workers'] = workers

    try:
        scanner = CertificateScanner(config)
        click.echo(f"Scanning {len(hosts)} host(s)...", err=True)
        run = scanner.scan_hosts(list(hosts), timeout=run_timeout)
    except (ScanSetupError, ValueError) as e:
        click.echo(f"✗ Scan failed: {e}", err=True)
        sys.exit(1)

    if output_format == 'json':
        rendered = report.to_json(run.to_dict())
    elif output_format == 'text':
        rendered = report.render_text(run.inventory)
    else:
        rendered = _format_table(report.table_rows(run.inventory))

    if output:
        Path(output).write_text(rendered + ('' if rendered.endswith('\n') else '\n'))
        click.echo(f"✓ Report written to {output}", err=True)
    else:
        click.echo(rendered.rstrip('\n'))

    if output_format != 'json' or verbose:
        click.echo("", err=True)
        for line in report.summary(run):
            click.echo(line, err=True)

    if save:
        try:
            job_id = get_store(config).save_run(run)
            click.echo(f"✓ Scan saved as {job_id}", err=True)
        except Exception as e:
            click.echo(f"✗ Failed to save scan: {e}", err=True)
            sys.exit(1)


def _format_table(rows) -> str:
    if not rows:
        return "No certificates found."

    lines = [
        f"{'Host':<25} {'Address':<16} {'Port':<6} {'Common Name':<30} {'Expires':<10}",
        "-" * 91,
    ]
    for row in rows:
        lines.append(f"{row['host'][:24]:<25} {row['address'][:15]:<16} {row['port']:<6} "
                     f"{row['common_name'][:29]:<30} {row['expires']:<10}")
    return "\n".join(lines)


@scan.command('file')
@click.argument('file_path', type=click.Path(exists=True))
@click.option('--format', 'output_format', default='table', type=click.Choice(['table', 'json']),
              help='Output format')
@click.pass_context
def scan_file(ctx, file_path, output_format):
    """Parse a certificate file (PEM, DER or P7B)."""
    verbose = ctx.obj['verbose']

    parser = CertificateParser()

    try:
        certificates = parser.parse_certificate_file(file_path)
    except (CertificateParseError, OSError) as e:
        click.echo(f"✗ Failed to parse certificate: {e}")
        sys.exit(1)

    if output_format == 'json':
        click.echo(report.to_json([parser.describe(cert) for cert in certificates]))
        return

    for i, cert in enumerate(certificates):
        if i > 0:
            click.echo("-" * 50)

        click.echo(f"Certificate #{i+1}:")
        click.echo(f"  Common Name: {cert.common_name}")
        click.echo(f"  Subject: {cert.subject}")
        click.echo(f"  Issuer: {cert.issuer}")
        click.echo(f"  Expires: {cert.not_valid_after.isoformat()}")
        click.echo(f"  Serial Number: {format(cert.serial_number, 'x')}")
        click.echo(f"  SHA-256: {cert.fingerprint}")

        if cert.subject_alt_names:
            click.echo(f"  SANs: {', '.join(cert.subject_alt_names)}")

        if verbose:
            details = parser.describe(cert)
            click.echo(f"  Certificate Type: {details['certificate_type']}")
            click.echo(f"  Issuer Category: {details['issuer_category']}")


@cli.group()
@click.pass_context
def history(ctx):
    """Stored scan runs."""
    pass


@history.command('list')
@click.option('--limit', default=20, help='Maximum number of results')
@click.option('--format', 'output_format', default='table', type=click.Choice(['table', 'json']),
              help='Output format')
@click.pass_context
def history_list(ctx, limit, output_format):
    """List recent scan runs."""
    config = ctx.obj['config']

    try:
        jobs = get_store(config).list_jobs(limit=limit)
    except Exception as e:
        click.echo(f"✗ Failed to list scan runs: {e}")
        sys.exit(1)

    if output_format == 'json':
        click.echo(report.to_json(jobs))
        return

    if not jobs:
        click.echo("No scan runs stored.")
        return

    click.echo(f"{'Job ID':<40} {'Status':<22} {'Hosts':<6} {'Certs':<6} {'Started':<20}")
    click.echo("-" * 98)
    for job in jobs:
        started = (job['started_at'] or '')[:19]
        click.echo(f"{job['job_id']:<40} {job['status']:<22} {job['hosts_scanned']:<6} "
                   f"{job['certificates_found']:<6} {started:<20}")


@history.command('show')
@click.argument('job_id')
@click.pass_context
def history_show(ctx, job_id):
    """Show one stored scan run."""
    config = ctx.obj['config']

    try:
        job = get_store(config).get_job(job_id)
    except Exception as e:
        click.echo(f"✗ Failed to load scan run: {e}")
        sys.exit(1)

    if job is None:
        click.echo(f"✗ Scan run {job_id} not found")
        sys.exit(1)

    click.echo(f"Scan run: {job['job_id']}")
    click.echo(f"  Status: {job['status']}")
    click.echo(f"  Started: {job['started_at']}")
    click.echo(f"  Completed: {job['completed_at']}")
    click.echo(f"  Hosts scanned: {job['hosts_scanned']}")
    click.echo(f"  Certificates found: {job['certificates_found']}")
    click.echo(f"  Ports without TLS: {job['no_certificate_count']}")
    click.echo(f"  Probe failures: {job['probe_failed_count']}")
    click.echo(f"  Unreadable certificates: {job['parse_error_count']}")
    click.echo(f"  Discovery failures: {job['discovery_failures']}")

    for host, error in job['scan_results'].get('failed_hosts', {}).items():
        click.echo(f"  Failed: {host}: {error}")

    if job['certificates']:
        click.echo()
        for cert in job['certificates']:
            click.echo(f"  {cert['host_name']} {cert['ip_address']}:{cert['port']}  {cert['subject']}")


@cli.group()
@click.pass_context
def config(ctx):
    """Configuration management."""
    pass


@config.command('test')
@click.pass_context
def config_test(ctx):
    """Check the discovery, probe and database configuration."""
    config = ctx.obj['config']
    failed = False

    try:
        discovery = build_discovery(config)
        click.echo(f"✓ Discovery: {type(discovery).__name__}")
    except (CertificateScanError, ValueError) as e:
        click.echo(f"✗ Discovery: {e}")
        failed = True

    try:
        probe = build_probe(config)
        click.echo(f"✓ Probe: {type(probe).__name__}")
    except (CertificateScanError, ValueError) as e:
        click.echo(f"✗ Probe: {e}")
        failed = True

    try:
        db_manager = DatabaseManager(get_database_url(config))
        session = db_manager.get_session()
        try:
            session.execute(text('SELECT 1'))
        finally:
            session.close()
        click.echo(f"✓ Database: {db_manager.engine.url.render_as_string(hide_password=True)}")
    except Exception as e:
        click.echo(f"✗ Database: {e}")
        failed = True

    if failed:
        sys.exit(1)


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
