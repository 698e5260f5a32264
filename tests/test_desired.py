"""Tests for desired state parsing and validation"""
from dataclasses import FrozenInstanceError

import pytest

from promtail_provision.desired import (
    InstallMethod,
    PackageEnsure,
    ServiceEnsure,
    desired_state_from_dict,
    load_desired_state,
)
from promtail_provision.errors import ConfigError


def test_parse_archive_desired_state(desired_data, archive_sha, tmp_path):
    """Strings are converted to enums and paths derived from bin_dir"""
    desired = desired_state_from_dict(desired_data)

    assert desired.install_method is InstallMethod.ARCHIVE
    assert desired.service_ensure is ServiceEnsure.RUNNING
    assert desired.package_ensure is PackageEnsure.INSTALLED
    assert desired.checksum == archive_sha
    assert desired.binary_path == str(tmp_path / 'bin' / 'promtail')
    assert desired.versioned_binary_path == str(tmp_path / 'bin' / 'promtail-v2.9.4')
    assert desired.config_file == str(tmp_path / 'etc' / 'promtail' / 'promtail.yaml')


def test_desired_state_is_frozen(desired_data):
    desired = desired_state_from_dict(desired_data)

    with pytest.raises(FrozenInstanceError):
        desired.version = 'v3.0.0'


def test_load_desired_state_from_yaml(tmp_path):
    """Test parsing a minimal package-mode file"""
    path = tmp_path / 'desired.yml'
    path.write_text("""
install_method: package
binaryversion: 2.9.4
package_ensure: latest
clients_config:
  clients:
    - url: http://loki:3100/loki/api/v1/push
positions_config:
  positions:
    filename: /tmp/positions.yaml
scrape_configs:
  scrape_configs: []
""")

    desired = load_desired_state(str(path))

    assert desired.install_method is InstallMethod.PACKAGE
    assert desired.version == '2.9.4'
    assert desired.package_ensure is PackageEnsure.LATEST
    assert desired.checksum is None
    assert desired.server_config is None
    assert desired.resolved_unit_file_path == '/etc/systemd/system/promtail.service'


def test_load_missing_file(tmp_path):
    with pytest.raises(ConfigError) as exc_info:
        load_desired_state(str(tmp_path / 'nope.yml'))

    assert 'not found' in str(exc_info.value)


def test_load_invalid_yaml(tmp_path):
    path = tmp_path / 'desired.yml'
    path.write_text('install_method: [archive\n')

    with pytest.raises(ConfigError) as exc_info:
        load_desired_state(str(path))

    assert 'Invalid YAML' in str(exc_info.value)


def test_missing_required_field(desired_data):
    del desired_data['scrape_configs']

    with pytest.raises(ConfigError) as exc_info:
        desired_state_from_dict(desired_data)

    assert 'scrape_configs' in str(exc_info.value)


def test_unknown_field_rejected(desired_data):
    desired_data['servce_ensure'] = 'running'

    with pytest.raises(ConfigError) as exc_info:
        desired_state_from_dict(desired_data)

    assert 'servce_ensure' in str(exc_info.value)


def test_invalid_enum_value(desired_data):
    desired_data['service_ensure'] = 'paused'

    with pytest.raises(ConfigError) as exc_info:
        desired_state_from_dict(desired_data)

    assert 'Invalid service_ensure' in str(exc_info.value)


def test_archive_requires_checksum(desired_data):
    del desired_data['checksum']

    with pytest.raises(ConfigError) as exc_info:
        desired_state_from_dict(desired_data)

    assert 'checksum is required' in str(exc_info.value)


def test_checksum_prefix_and_case_normalized(desired_data, archive_sha):
    desired_data['checksum'] = 'sha256:' + archive_sha.upper()

    desired = desired_state_from_dict(desired_data)

    assert desired.checksum == archive_sha


def test_malformed_checksum(desired_data):
    desired_data['checksum'] = 'abc123'

    with pytest.raises(ConfigError):
        desired_state_from_dict(desired_data)


def test_fragment_must_be_mapping(desired_data):
    desired_data['clients_config'] = [{'url': 'http://loki'}]

    with pytest.raises(ConfigError) as exc_info:
        desired_state_from_dict(desired_data)

    assert 'clients_config must be a mapping' in str(exc_info.value)


def test_password_path_without_content(desired_data):
    del desired_data['password_file_content']

    with pytest.raises(ConfigError) as exc_info:
        desired_state_from_dict(desired_data)

    assert 'must be given together' in str(exc_info.value)


def test_password_content_expands_environment(desired_data, monkeypatch):
    monkeypatch.setenv('PROMTAIL_PASSWORD', 'from-env')
    desired_data['password_file_content'] = '${PROMTAIL_PASSWORD}'

    desired = desired_state_from_dict(desired_data)

    assert desired.password_file.content == 'from-env'


def test_secret_hidden_from_repr(desired_data):
    desired = desired_state_from_dict(desired_data)

    assert 's3cr3t-hunter2' not in repr(desired)
    assert desired.password_file.path in repr(desired)


def test_relative_path_rejected(desired_data):
    desired_data['bin_dir'] = 'usr/local/bin'

    with pytest.raises(ConfigError) as exc_info:
        desired_state_from_dict(desired_data)

    assert 'absolute path' in str(exc_info.value)


def test_absent_package_cannot_run(desired_data):
    desired_data.update(install_method='package', package_ensure='absent')

    with pytest.raises(ConfigError):
        desired_state_from_dict(desired_data)

    desired_data['service_ensure'] = 'stopped'
    desired = desired_state_from_dict(desired_data)
    assert desired.package_ensure is PackageEnsure.ABSENT


def test_invalid_package_provider(desired_data):
    desired_data.update(install_method='package', package_provider='pacman')

    with pytest.raises(ConfigError):
        desired_state_from_dict(desired_data)


def test_unquoted_numeric_checksum_rejected(desired_data):
    """YAML reads an all-digit digest as an int"""
    desired_data['checksum'] = 1234

    with pytest.raises(ConfigError) as exc_info:
        desired_state_from_dict(desired_data)

    assert 'Must be a quoted string' in str(exc_info.value)


def test_unquoted_numeric_version_rejected(desired_data):
    desired_data['version'] = 2.10

    with pytest.raises(ConfigError) as exc_info:
        desired_state_from_dict(desired_data)

    assert 'Invalid version' in str(exc_info.value)


def test_version_cannot_leave_bin_dir(desired_data):
    desired_data['version'] = '../../etc/x'

    with pytest.raises(ConfigError):
        desired_state_from_dict(desired_data)


def test_version_and_alias_both_given(desired_data):
    desired_data['binaryversion'] = 'v2.9.3'

    with pytest.raises(ConfigError) as exc_info:
        desired_state_from_dict(desired_data)

    assert 'Duplicate field: version' in str(exc_info.value)


def test_duplicate_yaml_key_rejected(tmp_path):
    path = tmp_path / 'desired.yml'
    path.write_text('install_method: package\nversion: "2.9.4"\nversion: "3.0.0"\n')

    with pytest.raises(ConfigError) as exc_info:
        load_desired_state(str(path))

    assert 'duplicate key' in str(exc_info.value)


def test_unit_file_managed_only_in_archive_mode(desired_data):
    assert desired_state_from_dict(desired_data).manage_unit_file is True

    desired_data['install_method'] = 'package'
    desired = desired_state_from_dict(desired_data)
    assert desired.manage_unit_file is False
    assert desired.service_binary_path == '/usr/bin/promtail'

    desired_data['manage_unit_file'] = True
    assert desired_state_from_dict(desired_data).manage_unit_file is True
