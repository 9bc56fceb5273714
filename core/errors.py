"""
Certificate Scanner Exceptions
Error types shared by the discovery, parsing and scanning modules
"""


class CertificateScanError(Exception):
    """Base class for all scanner errors."""


class DiscoveryError(CertificateScanError):
    """A discovery collaborator could not answer (network, remote shell, API)."""


class InvalidHostError(CertificateScanError):
    """The host name was rejected outright by a discovery collaborator."""


class CertificateParseError(CertificateScanError, ValueError):
    """Raw certificate bytes could not be decoded."""


class ScanSetupError(CertificateScanError):
    """A scan run could not start (no hosts, unusable configuration)."""


class ScanRecordFrozenError(CertificateScanError):
    """A finalized scan record was modified."""
