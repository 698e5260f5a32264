"""
Configurer: render promtail.yaml from declared fragments and write secret files.

Each fragment is a mapping carrying its own section key, e.g.
``clients_config: {clients: [{url: ...}]}``. Its value is copied verbatim
under that key. Callers pre-merge multiple sources for one section.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional
from urllib.parse import unquote, urlsplit

import yaml

from promtail_provision.desired import DesiredState, Secret
from promtail_provision.errors import ConfigError
from promtail_provision.fsutil import atomic_write, read_bytes

logger = logging.getLogger(__name__)

CONFIG_HEADER = '# This file is managed by promtail-provision. Local changes will be overwritten.\n'

CONFIG_MODE = 0o644
SECRET_MODE = 0o600

# (desired state attribute, top-level key, required)
SECTIONS = (
    ('clients_config', 'clients', True),
    ('positions_config', 'positions', True),
    ('scrape_configs', 'scrape_configs', True),
    ('server_config', 'server', False),
    ('target_config', 'target_config', False),
)


@dataclass(frozen=True)
class ConfigPlan:
    rendered: str
    checksum: str
    write_config: bool
    secrets_to_write: List[Secret]

    @property
    def changed(self) -> bool:
        return self.write_config or bool(self.secrets_to_write)


def _section_value(attr: str, key: str, fragment: Any) -> Any:
    if not isinstance(fragment, Mapping):
        raise ConfigError(f'{attr} must be a mapping, got {type(fragment).__name__}')
    foreign = sorted(str(k) for k in fragment if k != key)
    if foreign:
        raise ConfigError(f'{attr} may only define {key!r}, found: {", ".join(foreign)}')
    if key not in fragment:
        raise ConfigError(f'{attr} does not define {key!r}')
    return fragment[key]


def build_config_document(desired: DesiredState) -> Dict[str, Any]:
    """
    Assemble the configuration document from the section fragments

    Absent optional sections are left out so promtail applies its own
    defaults.

    Raises:
        ConfigError: If a fragment is malformed or a required section is missing
    """
    document: Dict[str, Any] = {}
    for attr, key, required in SECTIONS:
        fragment = getattr(desired, attr)
        if fragment is None:
            if required:
                raise ConfigError(f'Missing required section: {key}')
            continue
        document[key] = _section_value(attr, key, fragment)
    return document


def render_config(document: Mapping[str, Any]) -> str:
    """Serialize with sorted keys so identical input gives identical bytes"""
    try:
        body = yaml.safe_dump(
            dict(document),
            sort_keys=True,
            default_flow_style=False,
            allow_unicode=True,
        )
    except yaml.YAMLError as e:
        raise ConfigError(f'Configuration cannot be serialized: {e}') from e
    return CONFIG_HEADER + body


def _scalars(value: Any) -> Iterator[Any]:
    if isinstance(value, Mapping):
        for k, v in value.items():
            yield k
            yield from _scalars(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from _scalars(v)
    else:
        yield value


def _exposes(scalar: Any, secret: str) -> bool:
    if isinstance(scalar, bool) or not isinstance(scalar, (str, int, float)):
        return False
    text = str(scalar)
    if text == secret:
        return True
    # Credentials embedded in a push URL
    if '://' in text:
        try:
            password = urlsplit(text).password
        except ValueError:
            return False
        return password is not None and unquote(password) == secret
    return False


def check_secret_isolation(document: Mapping[str, Any], secrets: List[Secret]) -> None:
    """
    Refuse a configuration document that inlines a secret value

    Every scalar is compared whole, so a secret that merely occurs inside a
    path or label is not a match. The document may reference password
    files by path only.
    """
    values = list(_scalars(document))
    for secret in secrets:
        if secret.content and any(_exposes(v, secret.content) for v in values):
            raise ConfigError(
                f'Rendered configuration contains the secret destined for {secret.path}; '
                'reference the file with password_file instead'
            )


def config_checksum(rendered: str, secrets: List[Secret]) -> str:
    """Checksum the service compares to decide whether a restart is due"""
    h = hashlib.sha256(rendered.encode('utf-8'))
    for secret in sorted(secrets, key=lambda s: s.path):
        h.update(b'\0' + secret.path.encode('utf-8') + b'\0')
        h.update(hashlib.sha256(secret.content.encode('utf-8')).digest())
    return h.hexdigest()


def plan_config(
    desired: DesiredState,
    current_config: Optional[bytes],
    current_secrets: Mapping[str, Optional[bytes]]
) -> ConfigPlan:
    """
    Decide which files must be written

    Args:
        desired: Desired state
        current_config: Bytes of the config file on disk, None if missing
        current_secrets: Secret path to bytes on disk (None if missing)

    Returns:
        ConfigPlan: Rendered document, its checksum and pending writes
    """
    document = build_config_document(desired)
    check_secret_isolation(document, desired.secrets)
    rendered = render_config(document)

    to_write = [
        s for s in desired.secrets
        if current_secrets.get(s.path) != s.content.encode('utf-8')
    ]

    return ConfigPlan(
        rendered=rendered,
        checksum=config_checksum(rendered, desired.secrets),
        write_config=current_config != rendered.encode('utf-8'),
        secrets_to_write=to_write,
    )


class Configurer:
    """Reads current files and applies a ConfigPlan"""

    def __init__(self, desired: DesiredState):
        self.desired = desired

    def plan(self) -> ConfigPlan:
        current_secrets = {s.path: read_bytes(s.path) for s in self.desired.secrets}
        return plan_config(self.desired, read_bytes(self.desired.config_file), current_secrets)

    def apply(self, plan: ConfigPlan) -> None:
        """
        Write secret files, then the configuration file

        Raises:
            ConfigError: If a file cannot be written
        """
        for secret in plan.secrets_to_write:
            try:
                atomic_write(secret.path, secret.content.encode('utf-8'), mode=SECRET_MODE)
            except OSError as e:
                raise ConfigError(f'Cannot write secret file {secret.path}: {e}') from e
            logger.info('Wrote secret file %s', secret.path)

        if plan.write_config:
            try:
                atomic_write(self.desired.config_file, plan.rendered.encode('utf-8'), mode=CONFIG_MODE)
            except OSError as e:
                raise ConfigError(f'Cannot write {self.desired.config_file}: {e}') from e
            logger.info('Wrote %s (sha256 %s)', self.desired.config_file, plan.checksum[:12])
