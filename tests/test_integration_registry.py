"""
Tests for the integration registry and credential encryption.
"""
import pytest

from printcloud.errors import InvalidConfig, NotFound
from printcloud.models import Printer, use_connection
from printcloud.services.connectors import AuthType, IntegrationType
from printcloud.services.crypto import mask_credential


def snmp_config(**overrides):
    config = {
        'printer_id': 'printer-1',
        'type': 'SNMP',
        'endpoint': '192.168.1.50',
        'auth_type': 'NONE',
        'credentials': {'community': 'private'},
        'poll_interval': 60,
    }
    config.update(overrides)
    return config


class TestCreate:

    def test_create_and_get(self, registry, printer):
        created = registry.create(snmp_config())

        fetched = registry.get('printer-1')
        assert fetched.id == created.id
        assert fetched.type == IntegrationType.SNMP
        assert fetched.auth_type == AuthType.NONE
        assert fetched.credentials == {'community': 'private'}
        assert fetched.poll_interval == 60
        assert fetched.is_active is True

    def test_credentials_encrypted_at_rest(self, registry, printer):
        created = registry.create(snmp_config())
        with use_connection() as conn:
            stored = conn.execute("SELECT credentials_encrypted FROM printer_integrations "
                                  "WHERE id = ?", (created.id,)).fetchone()[0]
        assert 'private' not in stored
        assert registry.encryption.decrypt_credentials(stored) == {'community': 'private'}

    @pytest.mark.parametrize('missing', ['printer_id', 'type', 'endpoint', 'auth_type'])
    def test_missing_required_field(self, registry, printer, missing):
        config = snmp_config()
        del config[missing]
        with pytest.raises(InvalidConfig) as exc_info:
            registry.create(config)
        assert missing in exc_info.value.details['missing']

    @pytest.mark.parametrize('field, value', [
        ('type', 'BLUETOOTH'),
        ('auth_type', 'KERBEROS'),
    ])
    def test_unknown_enum_value(self, registry, printer, field, value):
        with pytest.raises(InvalidConfig) as exc_info:
            registry.create(snmp_config(**{field: value}))
        assert exc_info.value.details['field'] == field

    @pytest.mark.parametrize('interval', [0, -5, 'often', 2.5, True])
    def test_poll_interval_must_be_positive_int(self, registry, printer, interval):
        with pytest.raises(InvalidConfig):
            registry.create(snmp_config(poll_interval=interval))

    def test_basic_auth_requires_username_and_password(self, registry, printer):
        config = snmp_config(type='HTTP', endpoint='http://printer.local/api',
                             auth_type='BASIC', credentials={'username': 'admin'})
        with pytest.raises(InvalidConfig) as exc_info:
            registry.create(config)
        assert exc_info.value.details['missing'] == ['password']

    def test_endpoint_validated_by_protocol(self, registry, printer):
        with pytest.raises(InvalidConfig):
            registry.create(snmp_config(type='HTTP', endpoint='printer.local'))

    def test_unknown_printer(self, registry, db):
        with pytest.raises(NotFound):
            registry.create(snmp_config(printer_id='ghost'))

    def test_duplicate_type_for_printer_rejected(self, registry, printer):
        registry.create(snmp_config())
        with pytest.raises(InvalidConfig):
            registry.create(snmp_config(endpoint='192.168.1.99'))


class TestLookup:

    def test_get_unknown_printer(self, registry, db):
        with pytest.raises(NotFound):
            registry.get('ghost')

    def test_get_by_type(self, registry, printer):
        registry.create(snmp_config())
        http = registry.create(snmp_config(type='HTTP', endpoint='http://printer.local/api'))

        assert registry.get('printer-1', 'http').id == http.id
        with pytest.raises(NotFound):
            registry.get('printer-1', 'IPP')

    def test_oldest_active_wins(self, registry, printer):
        first = registry.create(snmp_config())
        second = registry.create(snmp_config(type='HTTP', endpoint='http://printer.local/api'))
        assert registry.get('printer-1').id == first.id

        registry.update(first.id, {'is_active': False})
        assert registry.get('printer-1').id == second.id

    def test_list_active(self, registry, printer):
        Printer.create('printer-2', 'Floor 2')
        active = registry.create(snmp_config())
        inactive = registry.create(snmp_config(printer_id='printer-2', is_active=False))

        ids = [i.id for i in registry.list_active()]
        assert active.id in ids
        assert inactive.id not in ids
        assert len(registry.list()) == 2


class TestUpdateDelete:

    def test_update_fields(self, registry, printer):
        created = registry.create(snmp_config())
        updated = registry.update(created.id, {'endpoint': '10.0.0.9:1161', 'poll_interval': 120})

        assert updated.endpoint == '10.0.0.9:1161'
        assert registry.get_by_id(created.id).poll_interval == 120

    def test_update_rejects_immutable_fields(self, registry, printer):
        created = registry.create(snmp_config())
        with pytest.raises(InvalidConfig):
            registry.update(created.id, {'type': 'HTTP'})

    def test_update_validates(self, registry, printer):
        created = registry.create(snmp_config())
        with pytest.raises(InvalidConfig):
            registry.update(created.id, {'poll_interval': 0})
        assert registry.get_by_id(created.id).poll_interval == 60

    def test_delete(self, registry, printer):
        created = registry.create(snmp_config())
        deleted = registry.delete(created.id)
        assert deleted.id == created.id
        with pytest.raises(NotFound):
            registry.get_by_id(created.id)

    def test_mark_synced(self, registry, printer):
        created = registry.create(snmp_config())
        registry.mark_synced(created.id)
        assert registry.get_by_id(created.id).last_sync is not None


class TestSerialization:

    def test_to_dict_masks_secrets(self, registry, printer):
        created = registry.create(snmp_config(
            type='HTTP', endpoint='http://printer.local/api', auth_type='API_KEY',
            credentials={'api_key': 'abcdef123456', 'webhook_secret': 'shh-very-secret'},
        ))
        data = created.to_dict()
        assert data['credentials']['api_key'] == mask_credential('abcdef123456')
        assert data['credentials']['api_key'].endswith('3456')
        assert 'shh-very-secret' not in str(data)
        assert created.webhook_secret == 'shh-very-secret'
        assert data['type'] == 'HTTP'
