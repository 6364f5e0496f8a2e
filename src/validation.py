"""Pre-flight validation checks for deployments.

Checks run after merging and before the pipeline starts, catching
configuration issues early with actionable messages. Failures are reported
and the run continues unless strict mode is requested.
"""

import logging
import socket
from typing import Optional

import requests
import urllib3

from desired_state import DesiredStateDocument
from errors import ConnectivityError
from platform_query import LOCAL_HOSTS

# Suppress SSL warnings for self-signed certs
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

logger = logging.getLogger(__name__)

MACHINE_CATEGORIES = ('vms', 'lxcs')

CHECK_CATEGORIES = {
    'connection': 'Connectivity',
    'nodes': 'Nodes',
    'vmids': 'VMID availability',
    'storage': 'Storage',
}


# -----------------------------------------------------------------------------
# API Token Validation
# -----------------------------------------------------------------------------

def validate_api_token(api_endpoint: str, api_token: str, timeout: float = 10) -> list[str]:
    """Validate Proxmox API token is present and valid.

    Args:
        api_endpoint: PVE API URL (e.g., https://198.51.100.61:8006)
        api_token: Full token string (e.g., root@pam!thinkdeploy=uuid)

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []

    if not api_endpoint:
        errors.append(
            "API endpoint not configured\n"
            "  Set platform.api_endpoint in thinkdeploy.yaml or THINKDEPLOY_API_ENDPOINT"
        )
        return errors

    if not api_token:
        errors.append(
            "API token not configured\n"
            "  Set platform.api_token in thinkdeploy.yaml or THINKDEPLOY_API_TOKEN"
        )
        return errors

    # Check token format (PVE format: user@realm!tokenname=tokenvalue)
    if '!' not in api_token or '=' not in api_token:
        errors.append(
            "API token has invalid format\n"
            "  Expected: user@realm!tokenname=tokenvalue\n"
            f"  Got: {api_token[:20]}..."
        )
        return errors

    try:
        resp = requests.get(
            f"{api_endpoint}/api2/json/version",
            headers={"Authorization": f"PVEAPIToken={api_token}"},
            verify=False,  # Self-signed cert
            timeout=timeout
        )

        if resp.status_code == 401:
            errors.append(
                f"API token rejected by {api_endpoint}\n"
                "  Regenerate: pveum user token add root@pam thinkdeploy --privsep 0"
            )
        elif resp.status_code != 200:
            errors.append(
                f"Unexpected API response from {api_endpoint}: {resp.status_code}\n"
                f"  Response: {resp.text[:100]}"
            )
        else:
            data = resp.json().get("data", {})
            version = data.get("version", "unknown")
            logger.info(f"API token valid (PVE {version})")

    except requests.exceptions.ConnectionError:
        errors.append(
            f"Cannot connect to {api_endpoint}\n"
            "  Check: host is online, port 8006 is open, firewall allows access"
        )
    except requests.exceptions.Timeout:
        errors.append(f"Timeout connecting to {api_endpoint}")

    return errors


# -----------------------------------------------------------------------------
# Host Availability Validation
# -----------------------------------------------------------------------------

def validate_host_reachable(host: str, port: int = 22, timeout: float = 5.0) -> tuple[bool, str]:
    """Check if host is reachable on specified port.

    Returns:
        (success, message) tuple
    """
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
        sock.close()
        return True, f"Port {port} reachable"
    except socket.timeout:
        return False, f"Timeout connecting to {host}:{port}"
    except OSError as e:
        return False, f"Cannot connect to {host}:{port}: {e}"


def validate_connection(host: str, timeout: float = 5.0) -> list[str]:
    """Validate the SSH target used by the engine and platform queries."""
    if host in LOCAL_HOSTS:
        return []
    success, message = validate_host_reachable(host, port=22, timeout=timeout)
    if success:
        return []
    return [
        f"SSH not available on {host}\n"
        f"  {message}\n"
        "  Check: TF_VAR_pm_ssh_host, host is online, firewall allows port 22"
    ]


# -----------------------------------------------------------------------------
# Platform Checks
# -----------------------------------------------------------------------------

def referenced_nodes(doc: DesiredStateDocument) -> list[str]:
    """Every node name an enabled record refers to."""
    nodes = set()
    for category in (*MACHINE_CATEGORIES, 'snapshots'):
        for record in doc.records(category).values():
            if record.enabled and record.attributes.get('node'):
                nodes.add(str(record.attributes['node']))
    cluster = doc.records('cluster')
    if create := cluster.get('cluster_create'):
        nodes.add(create.attributes['primary_node'])
    return sorted(nodes)


def validate_nodes(query, doc: DesiredStateDocument) -> tuple[list[str], list[str]]:
    """Check referenced nodes exist. Returns (passed, failed)."""
    wanted = referenced_nodes(doc)
    if not wanted:
        return [], []
    available = query.query_node_list()
    if available is None:
        return [], ["Could not list nodes (pvesh get /nodes failed)"]
    passed, failed = [], []
    for node in wanted:
        if node in available:
            passed.append(f"Node '{node}' exists")
        else:
            failed.append(
                f"Node '{node}' not found\n"
                f"  Available: {', '.join(available) or 'none'}"
            )
    return passed, failed


def validate_vmids(query, doc: DesiredStateDocument, applied) -> tuple[list[str], list[str]]:
    """Check that VMIDs of resources not yet applied are free."""
    passed, failed = [], []
    for category in MACHINE_CATEGORIES:
        applied_keys = set(applied.keys(category))
        for key, record in sorted(doc.records(category).items()):
            if key in applied_keys or not record.enabled:
                continue
            vmid = record.attributes['vmid']
            node = record.attributes['node']
            if query.query_resource_exists(category, vmid, node):
                failed.append(
                    f"VMID {vmid} for {category}/{key} is already in use on {node}\n"
                    "  Choose a free vmid or remove the existing guest"
                )
            else:
                passed.append(f"VMID {vmid} free on {node} ({category}/{key})")
    return passed, failed


def validate_storages(query, doc: DesiredStateDocument) -> tuple[list[str], list[str]]:
    """Check storages referenced by VMs and containers exist on their node."""
    wanted = set()
    for category in MACHINE_CATEGORIES:
        for record in doc.records(category).values():
            if record.enabled and record.attributes.get('storage'):
                wanted.add((str(record.attributes['node']), str(record.attributes['storage'])))
    passed, failed = [], []
    for node, storage in sorted(wanted):
        if query.query_storage_status(node, storage) is None:
            failed.append(
                f"Storage '{storage}' not available on node '{node}'\n"
                f"  Check: pvesh get /nodes/{node}/storage"
            )
        else:
            passed.append(f"Storage '{storage}' available on {node}")
    return passed, failed


def run_preflight_checks(query, doc: DesiredStateDocument, applied, config,
                         host: Optional[str] = None) -> tuple[bool, dict]:
    """Run all preflight checks.

    Returns:
        (all_passed, results) where results maps a check category to
        {'passed': [...], 'failed': [...]}
    """
    results = {key: {'passed': [], 'failed': []} for key in CHECK_CATEGORIES}

    if config.transport == 'api':
        errors = validate_api_token(config.api_endpoint, config.api_token, timeout=config.command_timeout)
        results['connection']['failed'].extend(errors)
        if not errors:
            results['connection']['passed'].append(f"API token valid for {config.api_endpoint}")
    elif host:
        errors = validate_connection(host, timeout=config.connect_timeout)
        results['connection']['failed'].extend(errors)
        if not errors:
            results['connection']['passed'].append(f"SSH reachable on {host}")

    if results['connection']['failed']:
        return False, results

    checks = (
        ('nodes', lambda: validate_nodes(query, doc)),
        ('vmids', lambda: validate_vmids(query, doc, applied)),
        ('storage', lambda: validate_storages(query, doc)),
    )
    for key, check in checks:
        try:
            passed, failed = check()
        except ConnectivityError as e:
            results['connection']['failed'].append(str(e))
            break
        results[key]['passed'].extend(passed)
        results[key]['failed'].extend(failed)

    all_passed = not any(cat['failed'] for cat in results.values())
    return all_passed, results


def format_preflight_results(target: str, results: dict, strict: bool = False) -> str:
    """Format preflight check results for display."""
    lines = [f"\nPreflight checks for '{target}':\n"]

    for key, name in CHECK_CATEGORIES.items():
        category = results.get(key, {'passed': [], 'failed': []})
        if category['passed'] or category['failed']:
            lines.append(f"{name}:")
            for item in category['passed']:
                lines.append(f"✓ {item}")
            for item in category['failed']:
                # Handle multi-line errors
                first_line = item.split('\n')[0]
                lines.append(f"✗ {first_line}")
                for line in item.split('\n')[1:]:
                    lines.append(f"  {line}")
            lines.append("")

    all_passed = all(
        len(cat['failed']) == 0
        for cat in results.values()
    )

    if all_passed:
        lines.append("All checks passed.")
    elif strict:
        lines.append("Some checks failed. Fix issues or drop --strict-preflight.")
    else:
        lines.append("Some checks failed; continuing anyway (use --strict-preflight to stop).")

    return '\n'.join(lines)
