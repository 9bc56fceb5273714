"""
Certificate Parser Module
Decodes raw certificate bytes returned by a probe into Certificate records,
and imports certificates from PEM, DER and P7B files.
"""

import logging
from pathlib import Path
from typing import Dict, List, Union

from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding, pkcs7
from cryptography.x509.oid import ExtensionOID, NameOID

from core.errors import CertificateParseError
from core.scan_records import Certificate

logger = logging.getLogger(__name__)

PEM_MARKER = b'-----BEGIN CERTIFICATE-----'

NAME_ATTRIBUTES = {
    NameOID.COMMON_NAME: 'common_name',
    NameOID.ORGANIZATION_NAME: 'organization',
    NameOID.ORGANIZATIONAL_UNIT_NAME: 'organizational_unit',
    NameOID.COUNTRY_NAME: 'country',
    NameOID.STATE_OR_PROVINCE_NAME: 'state',
    NameOID.LOCALITY_NAME: 'locality',
}


def _oid_name(oid) -> str:
    return getattr(oid, '_name', None) or oid.dotted_string


def _common_name(name: x509.Name) -> str:
    attributes = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(attributes[0].value) if attributes else ''


def _subject_alt_names(cert: x509.Certificate) -> List[str]:
    try:
        san_extension = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
    except x509.ExtensionNotFound:
        return []

    san_list = []
    for name in san_extension.value:
        if isinstance(name, x509.DNSName):
            san_list.append(f"DNS:{name.value}")
        elif isinstance(name, x509.IPAddress):
            san_list.append(f"IP:{name.value}")
        elif isinstance(name, x509.RFC822Name):
            san_list.append(f"email:{name.value}")
        elif isinstance(name, x509.UniformResourceIdentifier):
            san_list.append(f"URI:{name.value}")
    return san_list


def _load_x509(raw: bytes) -> x509.Certificate:
    if raw.lstrip().startswith(PEM_MARKER):
        return x509.load_pem_x509_certificate(raw)
    return x509.load_der_x509_certificate(raw)


def parse_certificate(raw: Union[bytes, bytearray]) -> Certificate:
    """
    Decode one X.509 certificate.

    Args:
        raw: DER bytes as presented in a TLS handshake (a PEM block is also accepted)

    Returns:
        Immutable Certificate record

    Raises:
        CertificateParseError: the bytes are not a well-formed certificate
    """
    if not isinstance(raw, (bytes, bytearray)) or not raw:
        raise CertificateParseError("Certificate data must be non-empty bytes")

    try:
        cert = _load_x509(bytes(raw))
        # cryptography decodes names and extensions lazily, so malformed
        # fields only surface when they are read here.
        return Certificate(
            subject=cert.subject.rfc4514_string(),
            issuer=cert.issuer.rfc4514_string(),
            raw=cert.public_bytes(Encoding.DER),
            not_valid_before=cert.not_valid_before_utc,
            not_valid_after=cert.not_valid_after_utc,
            serial_number=cert.serial_number,
            signature_algorithm=_oid_name(cert.signature_algorithm_oid),
            common_name=_common_name(cert.subject),
            subject_alt_names=tuple(_subject_alt_names(cert)),
        )
    except CertificateParseError:
        raise
    except Exception as e:
        raise CertificateParseError(f"Malformed certificate: {e}") from e


class CertificateParser:
    """Parse certificate files and describe parsed certificates."""

    def __init__(self):
        self.supported_formats = ['.pem', '.crt', '.cer', '.der', '.p7b', '.p7c']

    def parse(self, raw: bytes) -> Certificate:
        return parse_certificate(raw)

    def parse_certificate_file(self, file_path: Union[str, Path]) -> List[Certificate]:
        """
        Parse a single certificate file.

        Args:
            file_path: Path to certificate file

        Returns:
            List of certificates (bundles and P7B files can hold several)
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise FileNotFoundError(f"Certificate file not found: {file_path}")

        cert_data = file_path.read_bytes()

        if file_path.suffix.lower() in ['.p7b', '.p7c']:
            return self._parse_p7b(cert_data, str(file_path))
        if PEM_MARKER in cert_data:
            return self._parse_pem_bundle(cert_data, str(file_path))
        return [parse_certificate(cert_data)]

    def _parse_pem_bundle(self, cert_data: bytes, file_path: str) -> List[Certificate]:
        """Parse every PEM block in a file, skipping blocks that do not decode."""
        certificates = []
        blocks = cert_data.split(b'-----END CERTIFICATE-----')

        for i, block in enumerate(blocks[:-1]):
            start = block.find(PEM_MARKER)
            if start < 0:
                continue
            pem = block[start:] + b'-----END CERTIFICATE-----\n'
            try:
                certificates.append(parse_certificate(pem))
            except CertificateParseError as e:
                logger.warning(f"Error parsing certificate {i} in {file_path}: {e}")

        if not certificates:
            raise CertificateParseError(f"No readable certificates in {file_path}")
        return certificates

    def _parse_p7b(self, cert_data: bytes, file_path: str) -> List[Certificate]:
        """Parse P7B/PKCS#7 bundle in DER or PEM form."""
        try:
            try:
                bundle = pkcs7.load_der_pkcs7_certificates(cert_data)
            except ValueError:
                bundle = pkcs7.load_pem_pkcs7_certificates(cert_data)
        except Exception as e:
            raise CertificateParseError(f"Error parsing P7B certificate {file_path}: {e}") from e

        return [parse_certificate(cert.public_bytes(Encoding.DER)) for cert in bundle]

    def describe(self, certificate: Certificate) -> Dict:
        """Extract detailed information from a parsed certificate."""
        cert = x509.load_der_x509_certificate(certificate.raw)

        cert_info = certificate.to_dict()
        cert_info['version'] = cert.version.name
        cert_info['issuer_info'] = self._name_info(cert.issuer)
        cert_info['subject_info'] = self._name_info(cert.subject)

        try:
            key_usage = cert.extensions.get_extension_for_oid(ExtensionOID.KEY_USAGE)
            cert_info['key_usage'] = {
                'digital_signature': key_usage.value.digital_signature,
                'key_encipherment': key_usage.value.key_encipherment,
                'key_agreement': key_usage.value.key_agreement,
                'key_cert_sign': key_usage.value.key_cert_sign,
                'crl_sign': key_usage.value.crl_sign,
            }
        except x509.ExtensionNotFound:
            cert_info['key_usage'] = {}

        try:
            ext_key_usage = cert.extensions.get_extension_for_oid(ExtensionOID.EXTENDED_KEY_USAGE)
            cert_info['extended_key_usage'] = [_oid_name(usage) for usage in ext_key_usage.value]
        except x509.ExtensionNotFound:
            cert_info['extended_key_usage'] = []

        cert_info['certificate_type'] = self._determine_cert_type(cert_info['extended_key_usage'])
        cert_info['issuer_category'] = self._categorize_issuer(
            cert_info['issuer_info'].get('common_name', '')
        )
        return cert_info

    def _name_info(self, name: x509.Name) -> Dict[str, str]:
        info = {}
        for attribute in name:
            key = NAME_ATTRIBUTES.get(attribute.oid)
            if key:
                info[key] = str(attribute.value)
        return info

    def _determine_cert_type(self, extended_key_usage: List[str]) -> str:
        """Determine the type of certificate based on its extended key usage."""
        if 'serverAuth' in extended_key_usage:
            return 'server'
        elif 'clientAuth' in extended_key_usage:
            return 'client'
        elif 'codeSigning' in extended_key_usage:
            return 'code_signing'
        elif 'emailProtection' in extended_key_usage:
            return 'email'
        else:
            return 'unknown'

    def _categorize_issuer(self, issuer_cn: str) -> str:
        """Categorize the certificate issuer."""
        issuer_cn_lower = issuer_cn.lower()

        if 'let\'s encrypt' in issuer_cn_lower or 'letsencrypt' in issuer_cn_lower:
            return 'letsencrypt'
        elif 'digicert' in issuer_cn_lower:
            return 'digicert'
        elif 'comodo' in issuer_cn_lower or 'sectigo' in issuer_cn_lower:
            return 'comodo'
        elif 'globalsign' in issuer_cn_lower:
            return 'globalsign'
        elif 'entrust' in issuer_cn_lower:
            return 'entrust'
        elif 'amazon' in issuer_cn_lower:
            return 'aws'
        elif 'microsoft' in issuer_cn_lower:
            return 'microsoft'
        else:
            return 'other'


def certificate_to_pem(certificate: Certificate) -> str:
    """PEM encoding of a parsed certificate."""
    cert = x509.load_der_x509_certificate(certificate.raw)
    return cert.public_bytes(Encoding.PEM).decode('ascii')
