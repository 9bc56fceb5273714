import pytest

from conftest import FakeDiscovery, FakeProbe
from core.probe import Found
from core.scanner import CertificateScanner
from database.models import DatabaseManager, ScanStore
from workers import tasks


@pytest.fixture(autouse=True)
def eager_app(monkeypatch, der_bytes):
    tasks.app.conf.update(broker_url='memory://', result_backend='cache+memory://')

    discovery = FakeDiscovery(addresses={"srv1": ["10.0.0.1"]}, ports={"srv1": [443, 22]})
    probe = FakeProbe({("10.0.0.1", 443): Found(der_bytes)})
    monkeypatch.setattr(tasks, 'build_scanner',
                        lambda config: CertificateScanner(config, discovery=discovery, probe=probe))


def test_scan_host_task():
    result = tasks.scan_host.apply(args=("srv1",)).get()

    assert result['host_name'] == 'srv1'
    assert result['state'] == 'complete'
    assert result['certificate_count'] == 1
    assert result['addresses'][0]['bindings'][0]['port'] == 443


def test_scan_fleet_task_saves_run(tmp_path):
    config = {'database': {'type': 'sqlite', 'name': str(tmp_path / 'scans.db')}}
    result = tasks.scan_fleet.apply(args=(["srv1", "nosuchhost"],),
                                    kwargs={'config': config, 'save': True}).get()

    assert result['inventory']['certificate_count'] == 1
    assert list(result['failed_hosts']) == ['nosuchhost']

    store = ScanStore(DatabaseManager(f"sqlite:///{tmp_path / 'scans.db'}"))
    assert store.get_job(result['job_id'])['certificates_found'] == 1


def test_task_routing():
    routes = tasks.app.conf.task_routes
    assert routes['workers.tasks.scan_host']['queue'] == 'scans'
    assert tasks.scan_host.name == 'workers.tasks.scan_host'


def test_task_config_falls_back_to_worker_config():
    tasks.app.conf['config'] = {'scanner': {'timeout_ms': 500}}
    try:
        assert tasks.get_task_config(None) == {'scanner': {'timeout_ms': 500}}
        assert tasks.get_task_config({'a': 1}) == {'a': 1}
    finally:
        tasks.app.conf['config'] = {}
