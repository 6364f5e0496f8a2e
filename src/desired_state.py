"""Desired state model, category schemas, and tfvars codec.

A DesiredStateDocument holds every resource the operator wants to exist,
grouped by category and keyed by a per-category unique key. It is loaded
from the collector document (YAML or JSON), merged with the applied state,
and serialized once into the tfvars JSON artifact consumed by the apply
engine. decode_tfvars() is the inverse of encode_tfvars().
"""

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldSpec:
    """Typed attribute of a category."""
    name: str
    kind: str = 'str'  # 'str', 'int', 'bool', 'list'
    default: Any = None
    required: bool = False


@dataclass(frozen=True)
class CategorySpec:
    """How a resource category is keyed, typed, and rendered."""
    name: str
    tfvars_key: str
    module: Optional[str] = None  # state address: module.<module>["key"]
    preserved: bool = False       # reconstructed from applied state
    identity: Optional[str] = None
    fields: tuple = ()
    strict_fields: bool = False   # drop attributes not in fields

    def field_names(self) -> list[str]:
        return [f.name for f in self.fields]

    def has_enabled(self) -> bool:
        return 'enabled' in self.field_names()


VM_FIELDS = (
    FieldSpec('node', required=True),
    FieldSpec('vmid', 'int', required=True),
    FieldSpec('cores', 'int', 2),
    FieldSpec('memory', 'int', 2048),
    FieldSpec('disk', 'str', '20G'),
    FieldSpec('storage', 'str', 'local-lvm'),
    FieldSpec('network', 'str', 'model=virtio,bridge=vmbr0'),
    FieldSpec('enabled', 'bool', True),
)

LXC_FIELDS = (
    FieldSpec('node', required=True),
    FieldSpec('vmid', 'int', required=True),
    FieldSpec('cores', 'int', 2),
    FieldSpec('memory', 'int', 512),
    FieldSpec('rootfs', 'str', 'local-lvm:8'),
    FieldSpec('storage', 'str', 'local-lvm'),
    FieldSpec('ostemplate', 'str', ''),
    FieldSpec('enabled', 'bool', True),
)

SNAPSHOT_FIELDS = (
    FieldSpec('node', required=True),
    FieldSpec('vmid', 'int', required=True),
    FieldSpec('snapname', required=True),
    FieldSpec('description', 'str', ''),
    FieldSpec('vm_type', 'str', 'qemu'),
    FieldSpec('enabled', 'bool', True),
)

AUTOSCALING_FIELDS = (
    FieldSpec('min', 'int', 2),
    FieldSpec('max', 'int', 10),
    FieldSpec('scale_up', 'int', 80),
    FieldSpec('scale_down', 'int', 30),
)

SECURITY_FIELDS = (
    FieldSpec('kind', required=True),
)

# Records allowed under the cluster category, with their typed attributes
CLUSTER_RECORDS = {
    'cluster_create': (
        FieldSpec('name', required=True),
        FieldSpec('primary_node', required=True),
        FieldSpec('create_cluster', 'bool', True),
    ),
    'cluster_join': (
        FieldSpec('node', required=True),
        FieldSpec('cluster_ip', 'str', ''),
    ),
    'ha_config': (
        FieldSpec('group', required=True),
        FieldSpec('nodes', 'list', ()),
    ),
}

CATEGORIES = {
    spec.name: spec for spec in (
        CategorySpec('vms', 'vms', module='vm', preserved=True, identity='vmid', fields=VM_FIELDS),
        CategorySpec('lxcs', 'lxcs', module='lxc', preserved=True, identity='vmid', fields=LXC_FIELDS),
        CategorySpec('storages', 'storages', module='storage'),
        CategorySpec('networking', 'networking_config'),
        CategorySpec('security', 'security_config', fields=SECURITY_FIELDS),
        CategorySpec('backup_jobs', 'backup_jobs', module='backup_job'),
        CategorySpec('snapshots', 'snapshots', module='snapshot', fields=SNAPSHOT_FIELDS, strict_fields=True),
        CategorySpec('cluster', 'cluster_config', strict_fields=True),
        CategorySpec('autoscaling', 'autoscaling_config', fields=AUTOSCALING_FIELDS, strict_fields=True),
    )
}

PRESERVED_CATEGORIES = tuple(name for name, spec in CATEGORIES.items() if spec.preserved)

SECURITY_KINDS = {
    # kind: (tfvars group, identifying attribute)
    'api_token': ('api_tokens', 'tokenid'),
    'rbac': ('rbac', 'userid'),
}

CLOUD_INIT_FIELDS = ('template', 'cloud_init', 'user', 'ssh_key')


@dataclass(frozen=True)
class ResourceRecord:
    """One desired resource."""
    category: str
    key: str
    attributes: dict = field(default_factory=dict)
    enabled: bool = True

    def identity(self) -> Any:
        """Identity attribute value, or None for categories without one."""
        spec = CATEGORIES[self.category]
        if spec.identity is None:
            return None
        return self.attributes.get(spec.identity)


@dataclass
class ConnectionConfig:
    """SSH connection the apply engine uses to reach the platform."""
    host: str = 'localhost'
    user: str = 'root'
    credential_path: str = '~/.ssh/id_rsa'

    def expanded_credential(self) -> Path:
        return Path(os.path.expandvars(os.path.expanduser(self.credential_path)))

    def validate(self) -> 'ConnectionConfig':
        """Return a copy with an absolute, existing credential path.

        Raises:
            ConfigurationError: credential missing or not a file
        """
        if not self.host:
            raise ConfigurationError(
                "Connection host is empty",
                remedy="Set connection.host or TF_VAR_pm_ssh_host",
            )
        path = self.expanded_credential()
        if not path.is_absolute():
            path = path.resolve()
        if not path.is_file():
            raise ConfigurationError(
                f"SSH private key not found: {path}",
                remedy="Set connection.credential_path or TF_VAR_pm_ssh_private_key_path "
                       "to an existing key file",
            )
        return dataclasses.replace(self, credential_path=str(path))


@dataclass
class DesiredStateDocument:
    """Complete desired state for one run."""
    categories: dict = field(default_factory=dict)
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    reapply_token: str = ''
    external_cluster: str = ''  # detected cluster not managed by this tool

    def __post_init__(self):
        unknown = set(self.categories) - set(CATEGORIES)
        if unknown:
            raise ConfigurationError(f"Unknown categories: {', '.join(sorted(unknown))}")
        for name in CATEGORIES:
            self.categories.setdefault(name, {})

    def records(self, category: str) -> dict:
        return self.categories[category]

    def has_content(self, category: str) -> bool:
        return bool(self.categories.get(category))

    def content_categories(self) -> list[str]:
        return [name for name in CATEGORIES if self.categories.get(name)]

    def with_records(self, category: str, records: dict) -> 'DesiredStateDocument':
        """Copy of this document with one category replaced."""
        categories = dict(self.categories)
        categories[category] = dict(records)
        return dataclasses.replace(self, categories=categories)


# -----------------------------------------------------------------------------
# Coercion
# -----------------------------------------------------------------------------

def coerce_value(kind: str, value: Any, default: Any = None) -> Any:
    """Coerce a raw value to a field kind.

    Integers are parsed strictly. Booleans accept true/false in any form and
    fall back to the default for anything else.

    Raises:
        ValueError: value cannot be read as an integer
    """
    if kind == 'int':
        if isinstance(value, bool):
            raise ValueError(f"expected integer, got {value!r}")
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            return int(value.strip())
        raise ValueError(f"expected integer, got {value!r}")
    if kind == 'bool':
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ('true', '1', 'yes'):
            return True
        if text in ('false', '0', 'no'):
            return False
        return default
    if kind == 'list':
        if isinstance(value, str):
            return [item.strip() for item in value.split(',') if item.strip()]
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        raise ValueError(f"expected list, got {value!r}")
    return str(value)


def coerce_attributes(fields: tuple, raw: dict, keep_extra: bool = True) -> dict:
    """Apply typed fields to a raw attribute mapping.

    Raises:
        ValueError: required field missing or a value fails coercion
    """
    result = {}
    known = set()
    for spec in fields:
        known.add(spec.name)
        value = raw.get(spec.name)
        if value is None or value == '':
            if spec.required:
                raise ValueError(f"missing required field '{spec.name}'")
            value = spec.default
            if isinstance(value, tuple):
                value = list(value)
            result[spec.name] = value
            continue
        try:
            result[spec.name] = coerce_value(spec.kind, value, spec.default)
        except ValueError as e:
            raise ValueError(f"field '{spec.name}': {e}") from e
    if keep_extra:
        for name, value in raw.items():
            if name not in known:
                result[name] = value
    return result


def build_record(category: str, key: str, raw: dict, keep_extra: Optional[bool] = None) -> ResourceRecord:
    """Build a typed ResourceRecord from raw attributes.

    Raises:
        ValueError: raw attributes do not satisfy the category's fields
    """
    spec = CATEGORIES[category]
    if not key:
        raise ValueError("empty key")
    if not isinstance(raw, dict):
        raise ValueError(f"attributes must be a mapping, got {type(raw).__name__}")
    fields = spec.fields
    if category == 'cluster':
        if key not in CLUSTER_RECORDS:
            raise ValueError(f"unknown cluster record '{key}' (expected one of {', '.join(CLUSTER_RECORDS)})")
        fields = CLUSTER_RECORDS[key]
    if keep_extra is None:
        keep_extra = not spec.strict_fields
    attributes = coerce_attributes(fields, raw, keep_extra=keep_extra)
    if category == 'security' and attributes['kind'] not in SECURITY_KINDS:
        raise ValueError(f"unknown security kind '{attributes['kind']}'")
    enabled = True
    if spec.has_enabled():
        enabled = bool(attributes.pop('enabled'))
    return ResourceRecord(category=category, key=key, attributes=attributes, enabled=enabled)


# -----------------------------------------------------------------------------
# Collector input
# -----------------------------------------------------------------------------

def _entries(category: str, value: Any) -> dict:
    """Return a category's raw entries keyed by record key."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    if isinstance(value, list):
        keyed = {}
        for entry in value:
            if not isinstance(entry, dict):
                raise ConfigurationError(f"{category}: list entries must be mappings, got {entry!r}")
            key = _list_entry_key(category, entry)
            if key in keyed:
                raise ConfigurationError(f"{category}: duplicate key '{key}'")
            keyed[key] = entry
        return keyed
    raise ConfigurationError(f"{category} must be a mapping or list, got {type(value).__name__}")


def _list_entry_key(category: str, entry: dict) -> str:
    if category == 'snapshots':
        snapname = entry.get('snapname') or entry.get('name')
        if entry.get('vmid') in (None, '') or not snapname:
            raise ConfigurationError(f"snapshots: entry needs vmid and snapname: {entry!r}")
        return f"snap-{entry['vmid']}-{snapname}"
    if category == 'autoscaling' and entry.get('group'):
        return str(entry['group'])
    if entry.get('name'):
        return str(entry['name'])
    raise ConfigurationError(f"{category}: list entry has no name: {entry!r}")


def _normalize_machines(raw_vms: dict, raw_lxcs: dict) -> tuple[dict, dict]:
    """Move containers out of vms and fill cloud-init VM defaults."""
    vms, lxcs = {}, dict(raw_lxcs)
    for key, entry in raw_vms.items():
        if not isinstance(entry, dict):
            raise ConfigurationError(f"vms.{key} must be a mapping")
        if 'rootfs' in entry and 'disk' not in entry:
            logger.warning(f"Found LXC container '{key}' in vms (has rootfs), moving to lxcs")
            lxcs[key] = entry
            continue
        if any(name in entry for name in ('template', 'cloud_init')):
            entry = {name: value for name, value in entry.items() if name not in CLOUD_INIT_FIELDS}
            entry.setdefault('node', 'local')
            entry.setdefault('vmid', 100)
            logger.warning(
                f"Cloud-init VM '{key}': fields {', '.join(CLOUD_INIT_FIELDS)} are not supported "
                f"by the VM module and will be ignored"
            )
        vms[key] = entry
    return vms, lxcs


def _normalize_security(value: Any) -> dict:
    """Key rbac and api_token entries by userid / tokenid."""
    if not value:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"security must be a mapping, got {type(value).__name__}")
    grouped = {group for group, _ in SECURITY_KINDS.values()}
    if not set(value) & grouped:
        return value
    entries = {}
    for kind, (group, id_field) in SECURITY_KINDS.items():
        items = value.get(group) or []
        if isinstance(items, dict):
            items = [{id_field: key, **(attrs or {})} for key, attrs in items.items()]
        for item in items:
            if not isinstance(item, dict) or not item.get(id_field):
                logger.warning(f"Skipping {kind} entry without {id_field}: {item!r}")
                continue
            entries[str(item[id_field])] = {**item, 'kind': kind}
    return entries


def _normalize_autoscaling(value: Any) -> Any:
    """Accept a single {group: ..., min: ...} object as one group."""
    if isinstance(value, dict) and 'group' in value and not isinstance(value.get('group'), dict):
        group = value['group']
        if not group:
            logger.warning("Autoscaling group name is empty, skipping")
            return {}
        return {str(group): {k: v for k, v in value.items() if k != 'group'}}
    return value


def _strip_snapshot_alias(entries: dict) -> dict:
    result = {}
    for key, entry in entries.items():
        if isinstance(entry, dict) and 'snapname' not in entry and 'name' in entry:
            entry = {('snapname' if k == 'name' else k): v for k, v in entry.items()}
        result[key] = entry
    return result


def parse_collected(data: dict, default_connection: Optional[ConnectionConfig] = None) -> DesiredStateDocument:
    """Build a DesiredStateDocument from a parsed collector document.

    Raises:
        ConfigurationError: structurally invalid input
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Collector document must be a mapping at top level")

    allowed = set(CATEGORIES) | {'connection', 'reapply_token'}
    unknown = set(data) - allowed
    if unknown:
        raise ConfigurationError(
            f"Unknown keys in collector document: {', '.join(sorted(unknown))}",
            remedy=f"Allowed keys: {', '.join(sorted(allowed))}",
        )

    raw = {name: _entries(name, data.get(name)) for name in CATEGORIES
           if name not in ('security', 'autoscaling')}
    raw['security'] = _normalize_security(data.get('security'))
    raw['autoscaling'] = _entries('autoscaling', _normalize_autoscaling(data.get('autoscaling')))
    raw['vms'], raw['lxcs'] = _normalize_machines(raw['vms'], raw['lxcs'])
    raw['snapshots'] = _strip_snapshot_alias(raw['snapshots'])

    categories = {}
    for name, entries in raw.items():
        records = {}
        for key, attrs in entries.items():
            try:
                records[str(key)] = build_record(name, str(key), attrs or {})
            except ValueError as e:
                raise ConfigurationError(f"{name}.{key}: {e}") from e
        categories[name] = records

    connection = _parse_connection(data.get('connection'), default_connection or ConnectionConfig())
    token = data.get('reapply_token') or ''
    return DesiredStateDocument(categories=categories, connection=connection, reapply_token=str(token))


def _parse_connection(value: Any, default: ConnectionConfig) -> ConnectionConfig:
    if value is None:
        return default
    if not isinstance(value, dict):
        raise ConfigurationError("connection must be a mapping")
    return ConnectionConfig(
        host=str(value.get('host') or default.host),
        user=str(value.get('user') or default.user),
        credential_path=str(value.get('credential_path') or default.credential_path),
    )


def load_collected(path: Path, default_connection: Optional[ConnectionConfig] = None) -> DesiredStateDocument:
    """Load the collector document from a YAML or JSON file."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Desired state file not found: {path}")
    try:
        with open(path, encoding='utf-8') as f:
            if path.suffix == '.json':
                data = json.load(f)
            else:
                data = yaml.safe_load(f) or {}
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot parse {path}: {e}") from e
    doc = parse_collected(data, default_connection)
    counts = ', '.join(f"{name}={len(doc.records(name))}" for name in doc.content_categories())
    logger.info(f"Loaded desired state from {path} ({counts or 'empty'})")
    return doc


# -----------------------------------------------------------------------------
# tfvars codec
# -----------------------------------------------------------------------------

def _encode_keyed(spec: CategorySpec, records: dict) -> dict:
    result = {}
    for key in sorted(records):
        record = records[key]
        attrs = dict(record.attributes)
        if spec.has_enabled():
            attrs['enabled'] = record.enabled
        result[key] = attrs
    return result


def _encode_security(records: dict) -> dict:
    if not records:
        return {}
    result = {group: {} for group, _ in SECURITY_KINDS.values()}
    for key in sorted(records):
        attrs = dict(records[key].attributes)
        kind = attrs.pop('kind')
        result[SECURITY_KINDS[kind][0]][key] = attrs
    return result


def _encode_cluster(records: dict, external_cluster: str) -> dict:
    if not records and not external_cluster:
        return {}
    create = records.get('cluster_create')
    join = records.get('cluster_join')
    ha = records.get('ha_config')
    return {
        'create_cluster': bool(create and create.attributes['create_cluster']),
        'cluster_name': create.attributes['name'] if create else external_cluster,
        'primary_node': create.attributes['primary_node'] if create else '',
        'join_node': join.attributes['node'] if join else '',
        'join_cluster_ip': join.attributes['cluster_ip'] if join else '',
        'ha_enabled': ha is not None,
        'ha_group_name': ha.attributes['group'] if ha else '',
        'ha_nodes': list(ha.attributes['nodes']) if ha else [],
    }


def encode_tfvars(doc: DesiredStateDocument) -> dict:
    """Render a document as the tfvars structure consumed by the engine."""
    data: dict[str, Any] = {}
    for name, spec in CATEGORIES.items():
        records = doc.records(name)
        if name == 'security':
            data[spec.tfvars_key] = _encode_security(records)
        elif name == 'cluster':
            data[spec.tfvars_key] = _encode_cluster(records, doc.external_cluster)
        else:
            data[spec.tfvars_key] = _encode_keyed(spec, records)
    data['pm_ssh_host'] = doc.connection.host
    data['pm_ssh_user'] = doc.connection.user
    data['pm_ssh_private_key_path'] = doc.connection.credential_path
    data['vm_force_run'] = doc.reapply_token
    return data


def _decode_cluster(value: dict) -> tuple[dict, str]:
    if not value:
        return {}, ''
    records = {}
    external = ''
    if value.get('primary_node'):
        records['cluster_create'] = build_record('cluster', 'cluster_create', {
            'name': value.get('cluster_name'),
            'primary_node': value['primary_node'],
            'create_cluster': value.get('create_cluster', False),
        })
    elif value.get('cluster_name'):
        external = str(value['cluster_name'])
    if value.get('join_node'):
        records['cluster_join'] = build_record('cluster', 'cluster_join', {
            'node': value['join_node'],
            'cluster_ip': value.get('join_cluster_ip', ''),
        })
    if value.get('ha_enabled'):
        records['ha_config'] = build_record('cluster', 'ha_config', {
            'group': value.get('ha_group_name'),
            'nodes': value.get('ha_nodes') or [],
        })
    return records, external


def _decode_security(value: dict) -> dict:
    records = {}
    for kind, (group, _) in SECURITY_KINDS.items():
        for key, attrs in (value.get(group) or {}).items():
            records[key] = build_record('security', key, {**attrs, 'kind': kind})
    return records


def decode_tfvars(data: dict) -> DesiredStateDocument:
    """Rebuild a document from its tfvars structure.

    Raises:
        ConfigurationError: data is not a valid tfvars structure
    """
    if not isinstance(data, dict):
        raise ConfigurationError("tfvars must be a mapping at top level")
    categories = {}
    external = ''
    try:
        for name, spec in CATEGORIES.items():
            value = data.get(spec.tfvars_key) or {}
            if not isinstance(value, dict):
                raise ValueError(f"{spec.tfvars_key} must be a mapping")
            if name == 'security':
                categories[name] = _decode_security(value)
            elif name == 'cluster':
                categories[name], external = _decode_cluster(value)
            else:
                categories[name] = {key: build_record(name, key, attrs) for key, attrs in value.items()}
    except ValueError as e:
        raise ConfigurationError(f"Invalid tfvars: {e}") from e

    connection = ConnectionConfig(
        host=str(data.get('pm_ssh_host', 'localhost')),
        user=str(data.get('pm_ssh_user', 'root')),
        credential_path=str(data.get('pm_ssh_private_key_path', '~/.ssh/id_rsa')),
    )
    return DesiredStateDocument(
        categories=categories,
        connection=connection,
        reapply_token=str(data.get('vm_force_run', '')),
        external_cluster=external,
    )
