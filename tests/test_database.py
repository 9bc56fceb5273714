import pytest

from conftest import FakeDiscovery, FakeProbe
from core.probe import Found
from core.scanner import CertificateScanner
from database.models import DatabaseManager, ScanStore, get_database_url


@pytest.fixture
def store(tmp_path):
    return ScanStore(DatabaseManager(f"sqlite:///{tmp_path / 'scans.db'}"))


def test_get_database_url():
    assert get_database_url({}) == "sqlite:///cert_scanner.db"
    assert get_database_url({'database': {'type': 'postgresql', 'host': 'db', 'name': 'certs',
                                          'username': 'u', 'password': 'p'}}) \
        == "postgresql://u:p@db:5432/certs"
    with pytest.raises(ValueError):
        get_database_url({'database': {'type': 'oracle'}})


def test_database_manager_accepts_database_section(tmp_path):
    manager = DatabaseManager({'type': 'sqlite', 'name': str(tmp_path / 'x.db')})
    assert str(manager.engine.url).startswith("sqlite:///")


def test_save_and_load_run(store, srv1_collaborators, der_bytes):
    discovery, probe = srv1_collaborators
    run = CertificateScanner({}, discovery=discovery, probe=probe).scan_hosts(["srv1", "nosuchhost"])

    job_id = store.save_run(run)
    assert job_id.startswith("scan_")

    jobs = store.list_jobs()
    assert [job['job_id'] for job in jobs] == [job_id]
    assert jobs[0]['status'] == 'completed_with_errors'
    assert jobs[0]['hosts_scanned'] == 1
    assert jobs[0]['certificates_found'] == 1
    assert jobs[0]['probe_failed_count'] == 1
    assert jobs[0]['hosts_requested'] == ['srv1', 'nosuchhost']

    job = store.get_job(job_id)
    assert job['scan_results']['failed_hosts'].keys() == {'nosuchhost'}
    assert len(job['certificates']) == 1
    cert = job['certificates'][0]
    assert (cert['host_name'], cert['ip_address'], cert['port']) == ('srv1', '10.0.0.1', 443)
    assert cert['subject'].startswith("CN=srv1.example.com")
    assert len(cert['fingerprint']) == 64


def test_status_and_ordering(store, der_bytes):
    discovery = FakeDiscovery(addresses={"web": ["10.0.0.5"]}, ports={"web": [443]})
    probe = FakeProbe({("10.0.0.5", 443): Found(der_bytes)})
    scanner = CertificateScanner({}, discovery=discovery, probe=probe)

    first = store.save_run(scanner.scan_hosts(["web"]))
    second = store.save_run(scanner.scan_hosts(["web"]))

    jobs = store.list_jobs()
    assert [job['job_id'] for job in jobs] == [second, first]
    assert jobs[0]['status'] == 'completed'
    assert len(store.list_jobs(limit=1)) == 1


def test_missing_job(store):
    assert store.get_job("scan_missing") is None
