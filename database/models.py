"""
Database models for the Certificate Discovery Scanner
Stores a snapshot of each finished scan run and the certificates it found.
"""

import uuid
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String, Text, create_engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from core.certificate_parser import certificate_to_pem
from core.scan_records import now_utc

Base = declarative_base()


class ScanJob(Base):
    """Certificate discovery run history."""

    __tablename__ = 'scan_jobs'

    id = Column(Integer, primary_key=True)

    # Job details
    job_id = Column(String(100), unique=True, nullable=False)
    scan_type = Column(String(50), default='certificate_discovery')
    hosts_requested = Column(JSON)

    # Results
    hosts_scanned = Column(Integer, default=0)
    certificates_found = Column(Integer, default=0)
    no_certificate_count = Column(Integer, default=0)
    probe_failed_count = Column(Integer, default=0)
    parse_error_count = Column(Integer, default=0)
    discovery_failures = Column(Integer, default=0)
    errors_count = Column(Integer, default=0)

    # Status
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    status = Column(String(50))  # completed, completed_with_errors, cancelled

    # Diagnostics and failed hosts as JSON
    scan_results = Column(JSON)

    certificates = relationship("DiscoveredCertificate", back_populates="scan_job",
                                cascade="all, delete-orphan")


class DiscoveredCertificate(Base):
    """A certificate bound to host / address / port during a scan run."""

    __tablename__ = 'discovered_certificates'

    id = Column(Integer, primary_key=True)
    scan_job_id = Column(Integer, ForeignKey('scan_jobs.id'), nullable=False)

    # Location
    host_name = Column(String(255), nullable=False)
    ip_address = Column(String(45), nullable=False)
    port = Column(Integer, nullable=False)

    # Certificate basic info
    common_name = Column(String(255))
    subject = Column(Text)
    issuer = Column(Text)
    serial_number = Column(String(100))
    signature_algorithm = Column(String(100))
    fingerprint = Column(String(64))

    # Validity period
    not_valid_before = Column(DateTime(timezone=True))
    not_valid_after = Column(DateTime(timezone=True))

    pem = Column(Text)
    discovered_at = Column(DateTime(timezone=True), default=now_utc)

    scan_job = relationship("ScanJob", back_populates="certificates")


class DatabaseManager:
    """Database connection and session management."""

    def __init__(self, database_config):
        if isinstance(database_config, str):
            database_url = database_config
        else:
            database_url = get_database_url({'database': database_config})

        self.engine = create_engine(database_url)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_tables(self):
        """Create all database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self):
        """Get a database session."""
        return self.SessionLocal()

    def drop_tables(self):
        """Drop all database tables."""
        Base.metadata.drop_all(bind=self.engine)


def get_database_url(config: dict) -> str:
    """Generate database URL from configuration."""
    db_config = config.get('database', {})
    db_type = db_config.get('type', 'sqlite')

    if db_type == 'sqlite':
        db_name = db_config.get('name', 'cert_scanner.db')
        return f"sqlite:///{db_name}"

    elif db_type == 'postgresql':
        host = db_config.get('host', 'localhost')
        port = db_config.get('port', 5432)
        name = db_config.get('name', 'cert_scanner')
        username = db_config.get('username', '')
        password = db_config.get('password', '')
        return f"postgresql://{username}:{password}@{host}:{port}/{name}"

    elif db_type == 'mysql':
        host = db_config.get('host', 'localhost')
        port = db_config.get('port', 3306)
        name = db_config.get('name', 'cert_scanner')
        username = db_config.get('username', '')
        password = db_config.get('password', '')
        return f"mysql+pymysql://{username}:{password}@{host}:{port}/{name}"

    else:
        raise ValueError(f"Unsupported database type: {db_type}")


class ScanStore:
    """Persists finished scan runs."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager
        self.db_manager.create_tables()

    def save_run(self, run) -> str:
        """
        Store a ScanRun and every binding in its inventory.

        Returns:
            The generated job id
        """
        job_id = f"scan_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"
        diagnostics = run.diagnostics

        if run.cancelled:
            status = 'cancelled'
        elif run.failed_hosts or diagnostics.discovery_failures:
            status = 'completed_with_errors'
        else:
            status = 'completed'

        session = self.db_manager.get_session()
        try:
            scan_job = ScanJob(
                job_id=job_id,
                hosts_requested=[scan.host_name for scan in run.host_scans]
                + list(run.failed_hosts) + list(run.skipped_hosts),
                hosts_scanned=len(run.host_scans),
                certificates_found=diagnostics.bindings_found,
                no_certificate_count=diagnostics.no_certificate_count,
                probe_failed_count=diagnostics.probe_failed_count,
                parse_error_count=diagnostics.parse_error_count,
                discovery_failures=diagnostics.discovery_failures,
                errors_count=len(run.failed_hosts),
                started_at=run.started_at,
                completed_at=run.completed_at,
                status=status,
                scan_results={
                    'diagnostics': diagnostics.to_dict(),
                    'failed_hosts': dict(run.failed_hosts),
                    'skipped_hosts': list(run.skipped_hosts),
                },
            )

            for host_scan in run.host_scans:
                for address_scan in host_scan:
                    for binding in address_scan:
                        cert = binding.certificate
                        if cert is None:
                            continue
                        scan_job.certificates.append(DiscoveredCertificate(
                            host_name=host_scan.host_name,
                            ip_address=address_scan.address,
                            port=binding.port,
                            common_name=cert.common_name,
                            subject=cert.subject,
                            issuer=cert.issuer,
                            serial_number=format(cert.serial_number, 'x'),
                            signature_algorithm=cert.signature_algorithm,
                            fingerprint=cert.fingerprint,
                            not_valid_before=cert.not_valid_before,
                            not_valid_after=cert.not_valid_after,
                            pem=certificate_to_pem(cert),
                        ))

            session.add(scan_job)
            session.commit()
            return job_id
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def list_jobs(self, limit: int = 20) -> List[Dict]:
        """Most recent scan runs first."""
        session = self.db_manager.get_session()
        try:
            jobs = session.query(ScanJob).order_by(ScanJob.id.desc()).limit(limit).all()
            return [self._job_to_dict(job) for job in jobs]
        finally:
            session.close()

    def get_job(self, job_id: str) -> Optional[Dict]:
        """A stored scan run with its certificates."""
        session = self.db_manager.get_session()
        try:
            job = session.query(ScanJob).filter_by(job_id=job_id).first()
            if job is None:
                return None
            result = self._job_to_dict(job)
            result['certificates'] = [
                {
                    'host_name': cert.host_name,
                    'ip_address': cert.ip_address,
                    'port': cert.port,
                    'common_name': cert.common_name,
                    'subject': cert.subject,
                    'issuer': cert.issuer,
                    'serial_number': cert.serial_number,
                    'fingerprint': cert.fingerprint,
                    'not_valid_after': cert.not_valid_after.isoformat() if cert.not_valid_after else None,
                }
                for cert in job.certificates
            ]
            return result
        finally:
            session.close()

    def _job_to_dict(self, job: ScanJob) -> Dict:
        return {
            'job_id': job.job_id,
            'status': job.status,
            'hosts_requested': job.hosts_requested or [],
            'hosts_scanned': job.hosts_scanned,
            'certificates_found': job.certificates_found,
            'no_certificate_count': job.no_certificate_count,
            'probe_failed_count': job.probe_failed_count,
            'parse_error_count': job.parse_error_count,
            'discovery_failures': job.discovery_failures,
            'errors_count': job.errors_count,
            'started_at': job.started_at.isoformat() if job.started_at else None,
            'completed_at': job.completed_at.isoformat() if job.completed_at else None,
            'scan_results': job.scan_results or {},
        }
