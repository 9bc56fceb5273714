"""
Celery Tasks for Distributed Certificate Scans
Runs host and fleet scans as background jobs so large inventories can be
split across workers.
"""

import logging
from typing import Dict, List

from celery import Celery, Task

# Initialize Celery app
app = Celery('cert_scanner')

# Load configuration from config file or environment
app.config_from_object('workers.celeryconfig')

logger = logging.getLogger(__name__)


# ============================================================================
# BASE TASK CLASSES
# ============================================================================

class ScanTask(Task):
    """Base task with common functionality"""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        """Handle task failure"""
        logger.error(f"Task {task_id} failed: {exc}")

    def on_success(self, retval, task_id, args, kwargs):
        """Handle task success"""
        logger.info(f"Task {task_id} completed successfully")


def get_task_config(config: Dict = None) -> Dict:
    """Per-call configuration, falling back to the worker's configuration."""
    if config:
        return config
    return app.conf.get('config', {}) or {}


def build_scanner(config: Dict):
    from core.scanner import CertificateScanner
    return CertificateScanner(config)


# ============================================================================
# SCAN TASKS
# ============================================================================

@app.task(base=ScanTask, bind=True)
def scan_host(self, host_name: str, config: Dict = None) -> Dict:
    """
    Scan one host and return its HostScan as a dictionary.

    Args:
        host_name: Host to scan
        config: Scanner configuration (defaults to app.conf['config'])
    """
    logger.info(f"Scanning {host_name} (task {self.request.id})")
    scanner = build_scanner(get_task_config(config))
    host_scan = scanner.scan_host(host_name)
    return host_scan.to_dict()


@app.task(base=ScanTask, bind=True)
def scan_fleet(self, host_names: List[str], config: Dict = None, save: bool = False) -> Dict:
    """
    Scan a set of hosts in one run.

    Args:
        host_names: Hosts to scan, in reporting order
        config: Scanner configuration (defaults to app.conf['config'])
        save: Store the run in the scan history database

    Returns:
        ScanRun as a dictionary, with 'job_id' when saved
    """
    config = get_task_config(config)
    logger.info(f"Scanning {len(host_names)} hosts (task {self.request.id})")

    scanner = build_scanner(config)
    run = scanner.scan_hosts(host_names)
    result = run.to_dict()

    if save:
        from database.models import DatabaseManager, ScanStore, get_database_url

        store = ScanStore(DatabaseManager(get_database_url(config)))
        result['job_id'] = store.save_run(run)
        logger.info(f"Saved scan run {result['job_id']}")

    return result
