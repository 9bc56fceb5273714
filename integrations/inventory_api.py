"""
Inventory API Integration
Discovery collaborator backed by an HTTP asset inventory (CMDB) service.

Endpoints used:
    GET {api_url}/hosts/{host}/addresses          -> {"addresses": ["10.0.0.5", ...]}
    GET {api_url}/hosts/{host}/ports?state=...    -> {"ports": [443, 8443, ...]}
"""

import logging
from typing import Dict, List
from urllib.parse import quote

import requests

from core.discovery import DiscoveryService, validate_host_name
from core.errors import DiscoveryError, InvalidHostError


class InventoryAPIDiscovery(DiscoveryService):
    """Client for the asset inventory service"""

    def __init__(self, config: Dict = None, session: requests.Session = None):
        self.config = config or {}
        self.logger = logging.getLogger(__name__)

        api_config = self.config.get('inventory_api', {})
        self.api_url = api_config.get('api_url', 'http://localhost:8080/api/v1').rstrip('/')
        self.api_key = api_config.get('api_key')
        self.timeout = api_config.get('timeout', 30)
        self.port_state = self.config.get('discovery', {}).get('port_state', 'listening').lower()

        self.session = session or requests.Session()
        if self.api_key:
            self.session.headers['Authorization'] = f'Bearer {self.api_key}'
        self.session.headers['Accept'] = 'application/json'

    def _get(self, host_name: str, path: str, params: Dict = None) -> Dict:
        name = validate_host_name(host_name)
        url = f"{self.api_url}/hosts/{quote(name, safe='')}/{path}"

        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise DiscoveryError(f"Inventory API request failed for {name}: {e}") from e

        if response.status_code == 404:
            raise InvalidHostError(f"Host not known to inventory: {name}")
        if response.status_code != 200:
            raise DiscoveryError(f"Inventory API returned HTTP {response.status_code} for {name}")

        try:
            return response.json()
        except ValueError as e:
            raise DiscoveryError(f"Inventory API returned invalid JSON for {name}") from e

    def discover_addresses(self, host_name: str) -> List[str]:
        data = self._get(host_name, 'addresses')
        addresses = data.get('addresses', []) if isinstance(data, dict) else []
        return [str(address) for address in addresses]

    def discover_listening_ports(self, host_name: str) -> List[int]:
        data = self._get(host_name, 'ports', params={'state': self.port_state})
        ports = data.get('ports', []) if isinstance(data, dict) else []
        self.logger.debug(f"Inventory API returned {len(ports)} ports for {host_name}")
        return list(ports)
