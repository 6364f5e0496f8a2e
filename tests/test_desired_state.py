#!/usr/bin/env python3
"""Tests for desired_state.py - model, collector input, tfvars codec."""

import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest

from desired_state import (
    CATEGORIES,
    ConnectionConfig,
    DesiredStateDocument,
    build_record,
    coerce_value,
    decode_tfvars,
    encode_tfvars,
    load_collected,
    parse_collected,
)
from errors import ConfigurationError


class TestCoerceValue:
    """Test explicit field coercion."""

    def test_int_from_string(self):
        assert coerce_value('int', ' 100 ') == 100

    def test_int_rejects_garbage(self):
        with pytest.raises(ValueError):
            coerce_value('int', 'abc')

    def test_int_rejects_bool(self):
        with pytest.raises(ValueError):
            coerce_value('int', True)

    def test_bool_from_strings(self):
        assert coerce_value('bool', 'true') is True
        assert coerce_value('bool', 'False') is False

    def test_bool_unknown_falls_back_to_default(self):
        assert coerce_value('bool', 'maybe', True) is True

    def test_list_from_comma_string(self):
        assert coerce_value('list', 'pve1, pve2,') == ['pve1', 'pve2']


class TestBuildRecord:
    """Test typed record construction."""

    def test_vm_defaults_applied(self):
        record = build_record('vms', 'web1', {'node': 'pve1', 'vmid': '100'})
        assert record.attributes['vmid'] == 100
        assert record.attributes['cores'] == 2
        assert record.attributes['memory'] == 2048
        assert record.attributes['disk'] == '20G'
        assert record.enabled is True
        assert 'enabled' not in record.attributes

    def test_lxc_defaults_applied(self):
        record = build_record('lxcs', 'ct1', {'node': 'pve1', 'vmid': 300})
        assert record.attributes['memory'] == 512
        assert record.attributes['rootfs'] == 'local-lvm:8'
        assert record.attributes['ostemplate'] == ''

    def test_missing_required_field(self):
        with pytest.raises(ValueError, match='vmid'):
            build_record('vms', 'web1', {'node': 'pve1'})

    def test_disabled_record(self):
        record = build_record('vms', 'web1', {'node': 'pve1', 'vmid': 100, 'enabled': 'false'})
        assert record.enabled is False

    def test_free_form_category_keeps_attributes(self):
        record = build_record('storages', 'nfs1', {'type': 'nfs', 'server': '10.0.0.5'})
        assert record.attributes == {'type': 'nfs', 'server': '10.0.0.5'}

    def test_unknown_cluster_record(self):
        with pytest.raises(ValueError, match='unknown cluster record'):
            build_record('cluster', 'cluster_destroy', {})

    def test_unknown_security_kind(self):
        with pytest.raises(ValueError, match='security kind'):
            build_record('security', 'x', {'kind': 'firewall'})

    def test_identity(self):
        assert build_record('vms', 'web1', {'node': 'pve1', 'vmid': 100}).identity() == 100
        assert build_record('storages', 'nfs1', {}).identity() is None


class TestConnectionConfig:
    """Test credential path validation."""

    def test_validate_expands_home(self, tmp_path, monkeypatch):
        monkeypatch.setenv('HOME', str(tmp_path))
        (tmp_path / '.ssh').mkdir()
        (tmp_path / '.ssh' / 'id_rsa').write_text('key')
        conn = ConnectionConfig(host='pve1', credential_path='~/.ssh/id_rsa').validate()
        assert conn.credential_path == str(tmp_path / '.ssh' / 'id_rsa')

    def test_validate_missing_key(self, tmp_path):
        conn = ConnectionConfig(host='pve1', credential_path=str(tmp_path / 'nope'))
        with pytest.raises(ConfigurationError, match='not found'):
            conn.validate()

    def test_validate_empty_host(self, ssh_key):
        with pytest.raises(ConfigurationError, match='host'):
            ConnectionConfig(host='', credential_path=str(ssh_key)).validate()


class TestParseCollected:
    """Test collector document normalization."""

    def test_all_categories_present(self):
        doc = parse_collected({'vms': {'web1': {'node': 'pve1', 'vmid': 100}}})
        assert set(doc.categories) == set(CATEGORIES)
        assert doc.content_categories() == ['vms']

    def test_unknown_top_level_key(self):
        with pytest.raises(ConfigurationError, match='Unknown keys'):
            parse_collected({'virtual_machines': {}})

    def test_non_mapping_category(self):
        with pytest.raises(ConfigurationError):
            parse_collected({'vms': 'web1'})

    def test_bad_vmid_is_configuration_error(self):
        with pytest.raises(ConfigurationError, match='vms.web1'):
            parse_collected({'vms': {'web1': {'node': 'pve1', 'vmid': 'abc'}}})

    def test_container_in_vms_moves_to_lxcs(self):
        doc = parse_collected({'vms': {'ct1': {'node': 'pve1', 'vmid': 300, 'rootfs': 'local-lvm:8'}}})
        assert 'ct1' not in doc.records('vms')
        assert doc.records('lxcs')['ct1'].attributes['vmid'] == 300

    def test_cloud_init_vm_gets_defaults_and_drops_fields(self):
        doc = parse_collected({'vms': {'ci1': {'template': 'ubuntu-22.04-cloud', 'cloud_init': True,
                                               'user': 'ops', 'ssh_key': 'ssh-ed25519 AAA'}}})
        attrs = doc.records('vms')['ci1'].attributes
        assert attrs['node'] == 'local'
        assert attrs['vmid'] == 100
        assert attrs['disk'] == '20G'
        assert 'template' not in attrs
        assert 'ssh_key' not in attrs

    def test_snapshot_list_keyed(self):
        doc = parse_collected({'snapshots': [{'node': 'pve1', 'vmid': 100, 'name': 'pre-upgrade'}]})
        record = doc.records('snapshots')['snap-100-pre-upgrade']
        assert record.attributes['snapname'] == 'pre-upgrade'
        assert record.attributes['vm_type'] == 'qemu'

    def test_security_grouped_input(self):
        doc = parse_collected({'security': {
            'rbac': [{'userid': 'ops@pve', 'role': 'PVEAdmin'}, {'role': 'orphan'}],
            'api_tokens': [{'tokenid': 'ops@pve!ci', 'privsep': 0}],
        }})
        records = doc.records('security')
        assert records['ops@pve'].attributes['kind'] == 'rbac'
        assert records['ops@pve!ci'].attributes['kind'] == 'api_token'
        assert len(records) == 2

    def test_autoscaling_single_object(self):
        doc = parse_collected({'autoscaling': {'group': 'web', 'max': 6}})
        attrs = doc.records('autoscaling')['web'].attributes
        assert attrs == {'min': 2, 'max': 6, 'scale_up': 80, 'scale_down': 30}

    def test_ha_nodes_comma_string(self):
        doc = parse_collected({'cluster': {'ha_config': {'group': 'ha1', 'nodes': 'pve1,pve2'}}})
        assert doc.records('cluster')['ha_config'].attributes['nodes'] == ['pve1', 'pve2']

    def test_connection_falls_back_to_default(self):
        default = ConnectionConfig(host='10.0.0.1', user='admin', credential_path='/k')
        doc = parse_collected({'connection': {'host': 'pve9'}}, default)
        assert doc.connection == ConnectionConfig(host='pve9', user='admin', credential_path='/k')

    def test_load_yaml_file(self, tmp_path):
        path = tmp_path / 'desired.yaml'
        path.write_text("vms:\n  web1:\n    node: pve1\n    vmid: 100\n")
        doc = load_collected(path)
        assert doc.records('vms')['web1'].attributes['vmid'] == 100

    def test_load_invalid_yaml(self, tmp_path):
        path = tmp_path / 'desired.yaml'
        path.write_text("vms: [unclosed\n")
        with pytest.raises(ConfigurationError, match='Cannot parse'):
            load_collected(path)

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match='not found'):
            load_collected(tmp_path / 'missing.yaml')


class TestTfvarsCodec:
    """Test tfvars rendering and its inverse."""

    def test_encode_shape(self, make_doc):
        doc = make_doc(
            vms={'web1': {'node': 'pve1', 'vmid': 100}},
            security={'ops@pve': {'kind': 'rbac', 'userid': 'ops@pve'}},
            reapply_token='42',
        )
        data = encode_tfvars(doc)
        assert data['vms']['web1']['enabled'] is True
        assert data['security_config'] == {'api_tokens': {}, 'rbac': {'ops@pve': {'userid': 'ops@pve'}}}
        assert data['cluster_config'] == {}
        assert data['networking_config'] == {}
        assert data['vm_force_run'] == '42'
        assert data['pm_ssh_host'] == 'pve1'

    def test_cluster_config_shape(self, make_doc):
        doc = make_doc(cluster={
            'cluster_create': {'name': 'prod', 'primary_node': 'pve1'},
            'cluster_join': {'node': 'pve2', 'cluster_ip': '10.0.0.1'},
            'ha_config': {'group': 'ha1', 'nodes': ['pve1', 'pve2']},
        })
        assert encode_tfvars(doc)['cluster_config'] == {
            'create_cluster': True,
            'cluster_name': 'prod',
            'primary_node': 'pve1',
            'join_node': 'pve2',
            'join_cluster_ip': '10.0.0.1',
            'ha_enabled': True,
            'ha_group_name': 'ha1',
            'ha_nodes': ['pve1', 'pve2'],
        }

    def test_external_cluster_stub(self, make_doc):
        config = encode_tfvars(make_doc(external_cluster='prod'))['cluster_config']
        assert config['create_cluster'] is False
        assert config['cluster_name'] == 'prod'
        assert config['primary_node'] == ''

    def test_round_trip_all_categories(self, make_doc):
        doc = make_doc(
            vms={'web1': {'node': 'pve1', 'vmid': 100, 'enabled': False}},
            lxcs={'ct1': {'node': 'pve1', 'vmid': 300}},
            storages={'nfs1': {'type': 'nfs', 'export': '/srv', 'content': ['images', 'iso']}},
            networking={'vmbr1': {'iface': 'eno2', 'mtu': 1500}},
            security={'ops@pve!ci': {'kind': 'api_token', 'tokenid': 'ops@pve!ci'}},
            backup_jobs={'nightly': {'schedule': '02:00', 'storage': 'nfs1'}},
            snapshots={'snap-100-a': {'node': 'pve1', 'vmid': 100, 'snapname': 'a'}},
            cluster={'ha_config': {'group': 'ha1', 'nodes': ['pve1']}},
            autoscaling={'web': {'min': 1}},
            reapply_token='1700000000',
            external_cluster='prod',
        )
        data = json.loads(json.dumps(encode_tfvars(doc)))
        assert decode_tfvars(data) == doc

    def test_decode_empty(self):
        doc = decode_tfvars({})
        assert isinstance(doc, DesiredStateDocument)
        assert doc.content_categories() == []

    def test_decode_rejects_bad_category(self):
        with pytest.raises(ConfigurationError):
            decode_tfvars({'vms': ['web1']})
