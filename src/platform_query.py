"""Read-only queries against the Proxmox platform.

Two transports share one interface:
- SshPlatformQuery runs pvesh / pvecm on the node over SSH (or locally when
  the target is this host)
- ApiPlatformQuery calls the PVE HTTP API with an API token

Every query has an explicit timeout. A transport failure (unreachable host,
timeout) raises ConnectivityError; a query the platform answered with an
error returns None.
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional

import requests
import urllib3

from common import SSH_TRANSPORT_ERROR, is_timeout, run_command, run_ssh
from errors import ConnectivityError

# Suppress SSL warnings for self-signed certs
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

logger = logging.getLogger(__name__)

LOCAL_HOSTS = ('localhost', '127.0.0.1', '::1')


class PlatformQuery:
    """Query operations common to both transports."""

    def _get_raw(self, path: str) -> Optional[str]:
        raise NotImplementedError

    def _get(self, path: str) -> Optional[Any]:
        raw = self._get_raw(path)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.debug(f"Non-JSON response for {path}: {raw[:100]}")
            return None

    def query_cluster_status(self) -> Optional[str]:
        """Structured cluster status, as raw JSON text."""
        return self._get_raw('/cluster/status')

    def query_cluster_status_text(self) -> Optional[str]:
        """Unstructured cluster status (pvecm status); None if unsupported."""
        return None

    def query_node_list(self) -> Optional[list[str]]:
        data = self._get('/nodes')
        if not isinstance(data, list):
            return None
        return sorted(str(n['node']) for n in data if isinstance(n, dict) and n.get('node'))

    def query_resource_exists(self, category: str, vmid: int, node: str) -> bool:
        kind = 'lxc' if category == 'lxcs' else 'qemu'
        return self._get(f'/nodes/{node}/{kind}/{vmid}/status/current') is not None

    def query_storage_status(self, node: str, name: str) -> Optional[dict]:
        data = self._get(f'/nodes/{node}/storage/{name}/status')
        return data if isinstance(data, dict) else None


class SshPlatformQuery(PlatformQuery):
    """Platform queries via pvesh over SSH."""

    def __init__(self, host: str, user: str = 'root', identity_file: Optional[Path] = None,
                 connect_timeout: int = 5, command_timeout: int = 20):
        self.host = host
        self.user = user
        self.identity_file = identity_file
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout

    @property
    def is_local(self) -> bool:
        return self.host in LOCAL_HOSTS

    def _execute(self, command: str) -> Optional[str]:
        if self.is_local:
            rc, out, err = run_command(['sh', '-c', command], timeout=self.command_timeout)
        else:
            rc, out, err = run_ssh(
                self.host, command,
                user=self.user,
                timeout=self.command_timeout,
                identity_file=self.identity_file,
                connect_timeout=self.connect_timeout,
            )
        if is_timeout(rc, err):
            raise ConnectivityError(
                f"Query on {self.host} timed out after {self.command_timeout}s: {command}",
                remedy="Check the node is reachable or raise VALIDATION_TIMEOUT",
            )
        if rc == SSH_TRANSPORT_ERROR and not self.is_local:
            raise ConnectivityError(
                f"Cannot reach {self.user}@{self.host} over SSH: {err.strip()}",
                remedy="Check TF_VAR_pm_ssh_host, TF_VAR_pm_ssh_user and the private key",
            )
        if rc != 0:
            logger.debug(f"Query failed on {self.host} (rc={rc}): {command}: {err.strip()}")
            return None
        return out

    def _get_raw(self, path: str) -> Optional[str]:
        return self._execute(f'pvesh get {path} --output-format json')

    def query_cluster_status_text(self) -> Optional[str]:
        return self._execute('pvecm status')


class ApiPlatformQuery(PlatformQuery):
    """Platform queries via the PVE HTTP API."""

    def __init__(self, endpoint: str, token: str, timeout: float = 20.0):
        self.endpoint = endpoint.rstrip('/')
        self.token = token
        self.timeout = timeout

    def _get_raw(self, path: str) -> Optional[str]:
        url = f"{self.endpoint}/api2/json{path}"
        try:
            resp = requests.get(
                url,
                headers={"Authorization": f"PVEAPIToken={self.token}"},
                verify=False,  # Self-signed cert
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise ConnectivityError(f"Timeout connecting to {self.endpoint}") from e
        except requests.exceptions.ConnectionError as e:
            raise ConnectivityError(
                f"Cannot connect to {self.endpoint}",
                remedy="Check: host is online, port 8006 is open, firewall allows access",
            ) from e
        except requests.exceptions.RequestException as e:
            raise ConnectivityError(
                f"API request to {url} failed: {e}",
                remedy="Check platform.api_endpoint (e.g. https://pve1:8006)",
            ) from e
        if resp.status_code != 200:
            logger.debug(f"API {path} returned {resp.status_code}")
            return None
        try:
            data = resp.json().get('data')
        except ValueError:
            return None
        return json.dumps(data)


def make_platform_query(config, connection) -> PlatformQuery:
    """Build the platform query for the configured transport."""
    if config.transport == 'api':
        return ApiPlatformQuery(config.api_endpoint, config.api_token, timeout=config.command_timeout)
    return SshPlatformQuery(
        connection.host,
        user=connection.user,
        identity_file=connection.expanded_credential(),
        connect_timeout=config.connect_timeout,
        command_timeout=config.command_timeout,
    )
