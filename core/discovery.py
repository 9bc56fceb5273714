"""
Discovery Collaborators
Supply the address and candidate port lists the scanner probes for a host.

Every implementation answers two questions:
    discover_addresses(host)        -> IPv4 addresses of the host
    discover_listening_ports(host)  -> candidate TCP ports

Failures raise DiscoveryError (the host is recorded as scanned, nothing
found). A host name the collaborator cannot accept at all raises
InvalidHostError.
"""

import ipaddress
import logging
import re
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Mapping, Optional

import dns.exception
import dns.resolver

from core.errors import DiscoveryError, InvalidHostError

DEFAULT_CANDIDATE_PORTS = [443, 8443, 636, 993, 995, 465, 3389, 5986]

_HOST_LABEL = re.compile(r'^(?!-)[A-Za-z0-9_-]{1,63}(?<!-)$')


def validate_host_name(host_name: str) -> str:
    """Return the stripped host name or raise InvalidHostError."""
    if not isinstance(host_name, str):
        raise InvalidHostError(f"Host name must be a string, got {type(host_name).__name__}")
    name = host_name.strip().rstrip('.')
    if not name or len(name) > 253:
        raise InvalidHostError(f"Invalid host name: {host_name!r}")
    if not all(_HOST_LABEL.match(label) for label in name.split('.')):
        raise InvalidHostError(f"Invalid host name: {host_name!r}")
    return name


def is_ipv4(value: str) -> bool:
    try:
        return isinstance(ipaddress.ip_address(value), ipaddress.IPv4Address)
    except ValueError:
        return False


class DiscoveryService(ABC):
    """Interface between the scanner and whatever enumerates hosts."""

    @abstractmethod
    def discover_addresses(self, host_name: str) -> List[str]:
        ...

    @abstractmethod
    def discover_listening_ports(self, host_name: str) -> List[int]:
        ...


class StaticDiscovery(DiscoveryService):
    """Answers from mappings supplied up front (configuration files, tests)."""

    def __init__(self, addresses: Mapping[str, Iterable[str]] = None,
                 ports: Mapping[str, Iterable[int]] = None,
                 default_ports: Optional[Iterable[int]] = None):
        self.addresses = {k.lower(): list(v) for k, v in (addresses or {}).items()}
        self.ports = {k.lower(): list(v) for k, v in (ports or {}).items()}
        self.default_ports = list(default_ports) if default_ports is not None else None

    @classmethod
    def from_config(cls, config: Dict) -> 'StaticDiscovery':
        """
        Build from the discovery.static section:

            {"hosts": {"web01": {"addresses": ["10.0.0.5"], "ports": [443]}},
             "ports": [443, 8443]}
        """
        static = config.get('discovery', {}).get('static', {})
        hosts = static.get('hosts', {})
        return cls(
            addresses={name: entry.get('addresses', []) for name, entry in hosts.items()},
            ports={name: entry['ports'] for name, entry in hosts.items() if 'ports' in entry},
            default_ports=static.get('ports', config.get('discovery', {}).get('ports')),
        )

    def discover_addresses(self, host_name: str) -> List[str]:
        key = host_name.lower()
        if key not in self.addresses:
            raise DiscoveryError(f"No address information for {host_name}")
        return list(self.addresses[key])

    def discover_listening_ports(self, host_name: str) -> List[int]:
        key = host_name.lower()
        if key in self.ports:
            return list(self.ports[key])
        if self.default_ports is not None:
            return list(self.default_ports)
        raise DiscoveryError(f"No port information for {host_name}")


class DNSDiscovery(DiscoveryService):
    """Resolves A records and offers a fixed list of well-known TLS ports."""

    def __init__(self, config: Dict = None, resolver: dns.resolver.Resolver = None):
        self.config = config or {}
        self.logger = logging.getLogger(__name__)

        discovery_config = self.config.get('discovery', {})
        self.candidate_ports = list(discovery_config.get('ports') or DEFAULT_CANDIDATE_PORTS)

        if resolver is None:
            resolver = dns.resolver.Resolver()
            resolver.timeout = discovery_config.get('dns_timeout', 5)
            resolver.lifetime = discovery_config.get('dns_lifetime', 10)
        self.resolver = resolver

    def discover_addresses(self, host_name: str) -> List[str]:
        if is_ipv4(host_name.strip()):
            return [host_name.strip()]

        name = validate_host_name(host_name)
        try:
            answers = self.resolver.resolve(name, 'A')
        except dns.resolver.NXDOMAIN as e:
            raise InvalidHostError(f"Host does not exist: {host_name}") from e
        except dns.resolver.NoAnswer:
            self.logger.info(f"No A records for {host_name}")
            return []
        except dns.exception.DNSException as e:
            raise DiscoveryError(f"Error resolving {host_name}: {e}") from e

        addresses = []
        for rdata in answers:
            address = str(rdata)
            if address not in addresses:
                addresses.append(address)
        return addresses

    def discover_listening_ports(self, host_name: str) -> List[int]:
        return list(self.candidate_ports)
