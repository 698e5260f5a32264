"""
Desired state: the declared target for one host.

Input arrives as YAML (or a plain dict when used as a library). Strings are
validated and converted to enums here, so the rest of the package only ever
sees a frozen DesiredState.
"""

import os
from collections.abc import Hashable
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import yaml

from promtail_provision.errors import ConfigError

DEFAULT_SOURCE_URL = 'https://github.com/grafana/loki/releases/download'
DEFAULT_BIN_DIR = '/usr/local/bin'
DEFAULT_CONFIG_DIR = '/etc/promtail'
DEFAULT_PACKAGE_BINARY = '/usr/bin/promtail'


class InstallMethod(Enum):
    PACKAGE = 'package'
    ARCHIVE = 'archive'


class PackageEnsure(Enum):
    INSTALLED = 'installed'
    LATEST = 'latest'
    ABSENT = 'absent'


class ServiceEnsure(Enum):
    RUNNING = 'running'
    STOPPED = 'stopped'


@dataclass(frozen=True)
class Secret:
    """Content destined for a restricted-permission file.

    The repr never shows the content.
    """
    path: str
    content: str = field(repr=False)


@dataclass(frozen=True)
class DesiredState:
    """Immutable snapshot of everything declared for a reconciliation pass"""
    install_method: InstallMethod
    version: str
    clients_config: Mapping[str, Any]
    positions_config: Mapping[str, Any]
    scrape_configs: Mapping[str, Any]
    source_url: str = DEFAULT_SOURCE_URL
    checksum: Optional[str] = None
    bin_dir: str = DEFAULT_BIN_DIR
    package_name: str = 'promtail'
    package_ensure: PackageEnsure = PackageEnsure.INSTALLED
    package_provider: Optional[str] = None
    config_dir: str = DEFAULT_CONFIG_DIR
    config_file: str = os.path.join(DEFAULT_CONFIG_DIR, 'promtail.yaml')
    server_config: Optional[Mapping[str, Any]] = None
    target_config: Optional[Mapping[str, Any]] = None
    password_file: Optional[Secret] = None
    password_app_file: Optional[Secret] = None
    service_name: str = 'promtail'
    service_ensure: ServiceEnsure = ServiceEnsure.RUNNING
    service_enable: bool = True
    manage_unit_file: bool = True
    package_binary_path: str = DEFAULT_PACKAGE_BINARY
    unit_file_path: Optional[str] = None
    download_timeout: int = 60

    @property
    def binary_path(self) -> str:
        """Stable symlink name, repointed on every archive upgrade"""
        return os.path.join(self.bin_dir, 'promtail')

    @property
    def service_binary_path(self) -> str:
        """Executable the managed unit runs"""
        if self.install_method is InstallMethod.PACKAGE:
            return self.package_binary_path
        return self.binary_path

    @property
    def versioned_binary_path(self) -> str:
        return os.path.join(self.bin_dir, f'promtail-{self.version}')

    @property
    def resolved_unit_file_path(self) -> str:
        if self.unit_file_path:
            return self.unit_file_path
        return f'/etc/systemd/system/{self.service_name}.service'

    @property
    def secrets(self):
        return [s for s in (self.password_file, self.password_app_file) if s is not None]


# Input keys that map onto a field of a different name
_ALIASES = {
    'binaryversion': 'version',
}

_SECRET_KEYS = {
    'password_file': ('password_file_path', 'password_file_content'),
    'password_app_file': ('password_app_file_path', 'password_app_file_content'),
}

_FRAGMENT_KEYS = (
    'clients_config',
    'positions_config',
    'scrape_configs',
    'server_config',
    'target_config',
)

_PACKAGE_PROVIDERS = ('apt', 'dnf', 'yum')


def _to_enum(enum_cls, value, key):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        valid = [e.value for e in enum_cls]
        raise ConfigError(f'Invalid {key}: {value}. Must be one of {valid}')


def _to_bool(value, key):
    if isinstance(value, bool):
        return value
    raise ConfigError(f'Invalid {key}: {value!r}. Must be true or false')


def _absolute_path(value, key):
    if not isinstance(value, str) or not os.path.isabs(value):
        raise ConfigError(f'Invalid {key}: {value!r}. Must be an absolute path')
    return value


def desired_state_from_dict(data: Mapping[str, Any]) -> DesiredState:
    """
    Validate raw input and build a DesiredState

    Args:
        data: Mapping as read from the desired state file

    Returns:
        DesiredState: Frozen, validated desired state

    Raises:
        ConfigError: If a value is missing, unknown or of the wrong type
    """
    if not isinstance(data, Mapping):
        raise ConfigError(f'Desired state must be a mapping, got {type(data).__name__}')

    raw: Dict[str, Any] = {}
    for key, value in data.items():
        name = _ALIASES.get(key, key)
        if name in raw:
            raise ConfigError(f'Duplicate field: {name} (given as {key})')
        raw[name] = value

    secrets = {}
    for name, (path_key, content_key) in _SECRET_KEYS.items():
        path = raw.pop(path_key, None)
        content = raw.pop(content_key, None)
        if path is None and content is None:
            continue
        if path is None or content is None:
            raise ConfigError(f'{path_key} and {content_key} must be given together')
        _absolute_path(path, path_key)
        if not isinstance(content, str):
            raise ConfigError(f'{content_key} must be a string')
        secrets[name] = Secret(path=path, content=os.path.expandvars(content))

    known = {f.name for f in fields(DesiredState)} - set(_SECRET_KEYS)
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f'Unknown field(s): {", ".join(unknown)}')

    for required in ('install_method', 'version', 'clients_config',
                     'positions_config', 'scrape_configs'):
        if raw.get(required) is None:
            raise ConfigError(f'Missing required field: {required}')

    raw['install_method'] = _to_enum(InstallMethod, raw['install_method'], 'install_method')
    version = raw['version']
    if not isinstance(version, str):
        raise ConfigError(f'Invalid version: {version!r}. Must be a quoted string')
    if not version.strip() or '/' in version or '\0' in version:
        raise ConfigError(f'Invalid version: {version!r}')
    if 'package_ensure' in raw:
        raw['package_ensure'] = _to_enum(PackageEnsure, raw['package_ensure'], 'package_ensure')
    if 'service_ensure' in raw:
        raw['service_ensure'] = _to_enum(ServiceEnsure, raw['service_ensure'], 'service_ensure')
    for flag in ('service_enable', 'manage_unit_file'):
        if flag in raw:
            raw[flag] = _to_bool(raw[flag], flag)
    if 'manage_unit_file' not in raw:
        # Distro packages ship their own unit
        raw['manage_unit_file'] = raw['install_method'] is InstallMethod.ARCHIVE

    if (raw['install_method'] is InstallMethod.PACKAGE
            and raw.get('package_ensure') is PackageEnsure.ABSENT
            and raw.get('service_ensure', ServiceEnsure.RUNNING) is ServiceEnsure.RUNNING):
        raise ConfigError('service_ensure must be stopped when package_ensure is absent')

    for key in ('bin_dir', 'config_dir', 'config_file', 'unit_file_path', 'package_binary_path'):
        if raw.get(key) is not None:
            _absolute_path(raw[key], key)
    if 'config_dir' in raw and 'config_file' not in raw:
        raw['config_file'] = os.path.join(raw['config_dir'], 'promtail.yaml')

    provider = raw.get('package_provider')
    if provider is not None and provider not in _PACKAGE_PROVIDERS:
        raise ConfigError(f'Invalid package_provider: {provider}. Must be one of {list(_PACKAGE_PROVIDERS)}')

    timeout = raw.get('download_timeout', 60)
    if not isinstance(timeout, int) or isinstance(timeout, bool) or timeout <= 0:
        raise ConfigError(f'Invalid download_timeout: {timeout!r}. Must be a positive integer')

    for key in _FRAGMENT_KEYS:
        if raw.get(key) is not None and not isinstance(raw[key], Mapping):
            raise ConfigError(f'{key} must be a mapping, got {type(raw[key]).__name__}')

    if raw['install_method'] is InstallMethod.ARCHIVE:
        checksum = raw.get('checksum')
        if not checksum:
            raise ConfigError('checksum is required when install_method is archive')
        if not isinstance(checksum, str):
            raise ConfigError(f'Invalid checksum: {checksum!r}. Must be a quoted string')
        checksum = checksum.lower()
        if checksum.startswith('sha256:'):
            checksum = checksum[len('sha256:'):]
        if len(checksum) != 64 or any(c not in '0123456789abcdef' for c in checksum):
            raise ConfigError(f'Invalid checksum: {raw["checksum"]}. Must be a sha256 hex digest')
        raw['checksum'] = checksum

    return DesiredState(**raw, **secrets)


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that refuses a mapping key given twice"""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            if key_node.tag == 'tag:yaml.org,2002:merge':
                continue
            key = self.construct_object(key_node, deep=deep)
            if not isinstance(key, Hashable):
                continue
            if key in seen:
                raise yaml.constructor.ConstructorError(
                    'while constructing a mapping', node.start_mark,
                    f'found duplicate key {key!r}', key_node.start_mark,
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def load_desired_state(path: str) -> DesiredState:
    """
    Parse and validate a desired state YAML file

    Args:
        path: Path to the desired state file

    Returns:
        DesiredState: Validated desired state

    Raises:
        ConfigError: If the file is missing, not valid YAML or invalid
    """
    try:
        with open(path, 'r') as f:
            data = yaml.load(f, Loader=_UniqueKeyLoader)
    except FileNotFoundError:
        raise ConfigError(f'Desired state file not found: {path}')
    except OSError as e:
        raise ConfigError(f'Cannot read desired state file {path}: {e}') from e
    except yaml.YAMLError as e:
        raise ConfigError(f'Invalid YAML: {e}')

    if data is None:
        raise ConfigError(f'Desired state file is empty: {path}')

    return desired_state_from_dict(data)
