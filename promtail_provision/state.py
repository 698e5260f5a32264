"""
Persisted observed state.

Read at the start of a pass, written at the end. Only facts that cannot be
re-derived cheaply from the host live here: which archive checksum produced
the installed binary, and which artifact, configuration and unit the
service last picked up.
"""

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from promtail_provision.errors import ConfigError, FilesystemError
from promtail_provision.fsutil import atomic_write

logger = logging.getLogger(__name__)

DEFAULT_STATE_PATH = '/var/lib/promtail-provision/state.json'


@dataclass(frozen=True)
class InstalledArtifact:
    """What the installer last placed on disk"""
    method: str
    version: Optional[str]
    checksum: Optional[str] = None
    path: Optional[str] = None


@dataclass
class ObservedState:
    artifact: Optional[InstalledArtifact] = None
    config_checksum: Optional[str] = None
    unit_checksum: Optional[str] = None
    applied_artifact: Optional[InstalledArtifact] = None
    last_change: Optional[str] = None


def _artifact(record):
    return InstalledArtifact(**record) if record else None


def load_state(path: str) -> ObservedState:
    """
    Load persisted state, treating a missing file as a fresh host

    Raises:
        ConfigError: If the file exists but is not a JSON object
        FilesystemError: If the file cannot be read
    """
    try:
        data = json.loads(Path(path).read_text(encoding='utf-8'))
    except (FileNotFoundError, NotADirectoryError):
        logger.info('No state file at %s, starting fresh', path)
        return ObservedState()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ConfigError(f'State file {path} is not valid JSON: {e}') from e
    except OSError as e:
        raise FilesystemError(f'Cannot read state file {path}: {e}') from e

    if not isinstance(data, dict):
        raise ConfigError(f'State file must contain an object, got {type(data).__name__}')

    try:
        artifact = _artifact(data.get('artifact'))
        applied = _artifact(data.get('applied_artifact'))
    except TypeError as e:
        raise ConfigError(f'State file {path} has a malformed artifact record: {e}') from e

    return ObservedState(
        artifact=artifact,
        applied_artifact=applied,
        config_checksum=data.get('config_checksum'),
        unit_checksum=data.get('unit_checksum'),
        last_change=data.get('last_change'),
    )


def save_state(path: str, state: ObservedState) -> None:
    """Write state atomically, stamping the time of the change"""
    state.last_change = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')
    payload = json.dumps(asdict(state), indent=2, sort_keys=True) + '\n'
    try:
        atomic_write(path, payload.encode('utf-8'), mode=0o600)
    except OSError as e:
        raise FilesystemError(f'Cannot write state file {path}: {e}') from e
