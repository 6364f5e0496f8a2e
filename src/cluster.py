"""Cluster fact detection and cluster-config resolution.

Whether a Proxmox cluster exists is read from the platform, never inferred
from configuration. Detection runs once per run; the resulting ClusterFact
is frozen and passed by value to the resolution step.

Structured output of `pvesh get /cluster/status` is tried against an
ordered list of parsers, first match wins:
1. typed array: [{"type": "cluster", ...}, {"type": "node", ...}, ...]
2. flat object: {"name": ..., "quorate": ..., "nodes": ...}
3. untyped array whose first entry carries the cluster facts

When nothing matches, `pvecm status` text is searched for key phrases.
"""

import dataclasses
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from desired_state import DesiredStateDocument, build_record
from errors import DriverError

logger = logging.getLogger(__name__)

_PVECM_MARKERS = ('Cluster information', 'Cluster name')
_PVECM_NAME = re.compile(r'Cluster name\s*:\s*(\S+)', re.IGNORECASE)

UNKNOWN_NAME = 'unknown'


@dataclass(frozen=True)
class ClusterFact:
    """Observed cluster membership of the target platform."""
    exists: bool
    name: str = ''
    quorate: Optional[bool] = None
    node_count: Optional[int] = None
    source: str = 'none'  # 'structured', 'fallback', 'none'

    def describe(self) -> str:
        if not self.exists:
            return "no cluster"
        quorum = {True: 'quorate', False: 'NOT quorate', None: 'quorum unknown'}[self.quorate]
        nodes = f"{self.node_count} nodes" if self.node_count is not None else "node count unknown"
        return f"cluster '{self.name}' ({quorum}, {nodes}, via {self.source})"


NO_CLUSTER = ClusterFact(exists=False)


def normalize_quorum(value: Any) -> Optional[bool]:
    """Map 1/0/true/false (any form) to a bool, anything else to None."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return {1: True, 0: False}.get(value)
    if isinstance(value, str):
        return {'1': True, '0': False, 'true': True, 'false': False}.get(value.strip().lower())
    return None


def _node_count(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return None


def parse_typed_array(data: Any) -> Optional[ClusterFact]:
    if not isinstance(data, list):
        return None
    entries = [e for e in data if isinstance(e, dict)]
    cluster = next((e for e in entries if e.get('type') == 'cluster'), None)
    if cluster is None:
        return None
    return ClusterFact(
        exists=True,
        name=str(cluster.get('name') or ''),
        quorate=normalize_quorum(cluster.get('quorate')),
        node_count=sum(1 for e in entries if e.get('type') == 'node'),
        source='structured',
    )


def parse_flat_object(data: Any) -> Optional[ClusterFact]:
    if not isinstance(data, dict):
        return None
    if data.get('name') is None and data.get('quorate') is None:
        return None
    return ClusterFact(
        exists=True,
        name=str(data.get('name') or ''),
        quorate=normalize_quorum(data.get('quorate')),
        node_count=_node_count(data.get('nodes')),
        source='structured',
    )


def parse_untyped_array(data: Any) -> Optional[ClusterFact]:
    # Typed entries are handled by parse_typed_array; a typed array without
    # a cluster entry is a standalone node, not a cluster.
    if not isinstance(data, list) or not data:
        return None
    first = data[0]
    if not isinstance(first, dict) or 'type' in first or first.get('name') is None:
        return None
    return ClusterFact(
        exists=True,
        name=str(first['name']),
        quorate=normalize_quorum(first.get('quorate')),
        node_count=_node_count(first.get('nodes')),
        source='structured',
    )


STRUCTURED_PARSERS = (parse_typed_array, parse_flat_object, parse_untyped_array)


def parse_cluster_status(raw: Optional[str]) -> Optional[ClusterFact]:
    """Run the structured parsers over raw JSON text, first match wins."""
    if not raw or not raw.strip():
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug(f"Cluster status is not JSON: {raw[:80]}")
        return None
    for parser in STRUCTURED_PARSERS:
        fact = parser(data)
        if fact is not None:
            return fact
    return None


def parse_pvecm_status(text: Optional[str]) -> Optional[ClusterFact]:
    """Recognize a cluster in `pvecm status` output."""
    if not text or not any(marker in text for marker in _PVECM_MARKERS):
        return None
    match = _PVECM_NAME.search(text)
    return ClusterFact(
        exists=True,
        name=match.group(1) if match else UNKNOWN_NAME,
        quorate=None,
        node_count=None,
        source='fallback',
    )


def detect_cluster_fact(query) -> ClusterFact:
    """Determine whether a cluster exists. Never raises.

    Args:
        query: PlatformQuery providing query_cluster_status() and
               query_cluster_status_text()
    """
    fact = None
    try:
        fact = parse_cluster_status(query.query_cluster_status())
    except DriverError as e:
        logger.warning(f"Structured cluster query failed: {e}")

    if fact is None:
        try:
            fact = parse_pvecm_status(query.query_cluster_status_text())
        except DriverError as e:
            logger.warning(f"Fallback cluster query failed: {e}")

    if fact is None:
        fact = NO_CLUSTER
    logger.info(f"Cluster detection: {fact.describe()}")
    if fact.exists and fact.quorate is False:
        logger.warning(f"Cluster '{fact.name}' is not quorate; cluster operations may fail")
    return fact


def apply_cluster_fact(doc: DesiredStateDocument, fact: ClusterFact) -> DesiredStateDocument:
    """Resolve cluster intent against what exists on the platform.

    An existing cluster is never requested for creation: a cluster_create
    record is turned off and takes the detected name. With no cluster_create
    record, the existing cluster is carried as external_cluster.
    """
    records = dict(doc.records('cluster'))
    create = records.get('cluster_create')
    external = ''

    if fact.exists:
        detected = fact.name or UNKNOWN_NAME
        if create is not None:
            configured = create.attributes['name']
            name = configured if detected == UNKNOWN_NAME else detected
            if name != configured:
                logger.warning(
                    f"Configured cluster name '{configured}' differs from existing cluster "
                    f"'{detected}'; using '{detected}'"
                )
            logger.info(f"Cluster '{name}' already exists; cluster creation disabled")
            records['cluster_create'] = build_record('cluster', 'cluster_create', {
                **create.attributes, 'name': name, 'create_cluster': False,
            })
        else:
            external = detected
            logger.info(f"Cluster '{detected}' exists but is not managed by this tool")
    elif create is not None and not create.attributes['create_cluster']:
        records['cluster_create'] = build_record('cluster', 'cluster_create', {
            **create.attributes, 'create_cluster': True,
        })

    return dataclasses.replace(doc.with_records('cluster', records), external_cluster=external)
