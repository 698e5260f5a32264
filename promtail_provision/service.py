"""
Service manager: keep the promtail unit in the declared run/enable state.

``plan_service`` is a pure function of desired and observed ServiceState plus
whether configuration changed. ``SystemdController`` talks to systemctl.
"""

import hashlib
import logging
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from promtail_provision.desired import DesiredState, ServiceEnsure
from promtail_provision.errors import ServiceError
from promtail_provision.fsutil import atomic_write, read_bytes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceState:
    ensure: ServiceEnsure = ServiceEnsure.STOPPED
    enabled: bool = False

    @property
    def running(self) -> bool:
        return self.ensure is ServiceEnsure.RUNNING


class ServiceAction(Enum):
    DAEMON_RELOAD = 'daemon-reload'
    ENABLE = 'enable'
    DISABLE = 'disable'
    START = 'start'
    STOP = 'stop'
    RESTART = 'restart'


def desired_service_state(desired: DesiredState) -> ServiceState:
    return ServiceState(ensure=desired.service_ensure, enabled=desired.service_enable)


def plan_service(
    desired: ServiceState,
    observed: ServiceState,
    config_changed: bool,
    unit_changed: bool = False
) -> List[ServiceAction]:
    """
    Compute service actions in execution order

    Args:
        desired: Declared run/enable state
        observed: State reported by the host
        config_changed: Rendered configuration differs from the last applied one
        unit_changed: The unit differs from the one last applied

    Returns:
        list: Actions, empty when nothing needs to happen
    """
    actions = []

    if unit_changed:
        actions.append(ServiceAction.DAEMON_RELOAD)

    if desired.enabled and not observed.enabled:
        actions.append(ServiceAction.ENABLE)
    elif not desired.enabled and observed.enabled:
        actions.append(ServiceAction.DISABLE)

    if desired.running:
        if not observed.running:
            # A fresh start reads the current configuration
            actions.append(ServiceAction.START)
        elif config_changed or unit_changed:
            actions.append(ServiceAction.RESTART)
    elif observed.running:
        actions.append(ServiceAction.STOP)

    return actions


def render_unit_file(desired: DesiredState) -> str:
    """systemd unit running promtail against the rendered config"""
    return f"""# This file is managed by promtail-provision. Local changes will be overwritten.
[Unit]
Description=Promtail log shipping agent
Wants=network-online.target
After=network-online.target

[Service]
Type=simple
User=root
ExecStart={desired.service_binary_path} -config.file={desired.config_file}
Restart=always
RestartSec=10

[Install]
WantedBy=multi-user.target
"""


def unit_checksum(desired: DesiredState) -> Optional[str]:
    """Checksum of the managed unit file, None when the unit is not managed"""
    if not desired.manage_unit_file:
        return None
    return hashlib.sha256(render_unit_file(desired).encode('utf-8')).hexdigest()


def unit_file_pending(desired: DesiredState) -> bool:
    """True when the managed unit file is missing or differs"""
    if not desired.manage_unit_file:
        return False
    content = render_unit_file(desired).encode('utf-8')
    return read_bytes(desired.resolved_unit_file_path) != content


def sync_unit_file(desired: DesiredState) -> bool:
    """
    Write the unit file when its content differs

    Returns:
        bool: True if the file was written
    """
    if not unit_file_pending(desired):
        return False

    content = render_unit_file(desired).encode('utf-8')
    path = desired.resolved_unit_file_path
    try:
        atomic_write(path, content, mode=0o644)
    except OSError as e:
        raise ServiceError(f'Cannot write unit file {path}: {e}') from e
    logger.info('Wrote unit file %s', path)
    return True


class SystemdController:
    """Start/stop/enable/disable a unit through systemctl"""

    def __init__(self, systemctl: str = 'systemctl'):
        self.systemctl = systemctl

    def _run(self, *args) -> subprocess.CompletedProcess:
        argv = [self.systemctl, *args]
        logger.debug('Running %s', ' '.join(argv))
        try:
            return subprocess.run(argv, capture_output=True, text=True)
        except OSError as e:
            raise ServiceError(f'Cannot run {self.systemctl}: {e}') from e

    def observe(self, name: str) -> ServiceState:
        """Unknown or absent units count as stopped and disabled"""
        active = self._run('is-active', name)
        enabled = self._run('is-enabled', name)
        return ServiceState(
            ensure=ServiceEnsure.RUNNING if active.returncode == 0 else ServiceEnsure.STOPPED,
            enabled=enabled.returncode == 0 and enabled.stdout.strip() == 'enabled',
        )

    def apply(self, name: str, actions: List[ServiceAction]) -> None:
        """
        Run actions in order, stopping at the first failure

        Raises:
            ServiceError: If systemctl reports a failure
        """
        for action in actions:
            if action is ServiceAction.DAEMON_RELOAD:
                result = self._run(action.value)
            else:
                result = self._run(action.value, name)

            if result.returncode != 0:
                raise ServiceError(
                    f'systemctl {action.value} {name} failed ({result.returncode}): {result.stderr.strip()}'
                )
            logger.info('systemctl %s %s', action.value, name)
