"""
One reconciliation pass: Installer -> Configurer -> Service Manager.

Any error aborts the rest of the pass. Persisted state is saved with
whatever was committed before the error, so the next pass resumes from there.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from logcore import redact_secrets
from promtail_provision.configurer import ConfigPlan, Configurer
from promtail_provision.desired import DesiredState
from promtail_provision.errors import ProvisionError
from promtail_provision.installer import InstallAction, Installer, plan_install
from promtail_provision.service import (
    ServiceAction,
    ServiceState,
    SystemdController,
    desired_service_state,
    plan_service,
    sync_unit_file,
    unit_checksum,
    unit_file_pending,
)
from promtail_provision.state import DEFAULT_STATE_PATH, ObservedState, load_state, save_state

logger = logging.getLogger(__name__)


@dataclass
class ReconcilePlan:
    """What a pass would do, computed without touching the host"""
    install_actions: List[InstallAction]
    config: ConfigPlan
    config_changed: bool
    unit_changed: bool
    observed_service: ServiceState
    service_actions: List[ServiceAction]

    @property
    def changed(self) -> bool:
        return bool(
            self.install_actions or self.config.changed
            or self.unit_changed or self.service_actions
        )


@dataclass
class ReconcileResult:
    install_actions: List[InstallAction] = field(default_factory=list)
    config_written: bool = False
    service_actions: List[ServiceAction] = field(default_factory=list)
    state: Optional[ObservedState] = None

    @property
    def changed(self) -> bool:
        return bool(self.install_actions or self.config_written or self.service_actions)


class Reconciler:
    """Converges one host towards a DesiredState"""

    def __init__(
        self,
        desired: DesiredState,
        state_path: str = DEFAULT_STATE_PATH,
        installer: Optional[Installer] = None,
        configurer: Optional[Configurer] = None,
        controller: Optional[SystemdController] = None
    ):
        self.desired = desired
        self.state_path = state_path
        self.installer = installer or Installer(desired)
        self.configurer = configurer or Configurer(desired)
        self.controller = controller or SystemdController()

    def _secret_values(self):
        return [s.content for s in self.desired.secrets]

    def plan(self) -> ReconcilePlan:
        """Dry run: observe and plan every component, write nothing"""
        with redact_secrets(self._secret_values()):
            state = load_state(self.state_path)
            observation = self.installer.observe(state.artifact)
            install_actions = plan_install(self.desired, observation)

            config = self.configurer.plan()
            config_changed = config.checksum != state.config_checksum
            artifact_changed = bool(install_actions) or state.artifact != state.applied_artifact
            unit_sum = unit_checksum(self.desired)
            unit_changed = unit_file_pending(self.desired) or (
                unit_sum is not None and unit_sum != state.unit_checksum
            )

            observed_service = self.controller.observe(self.desired.service_name)
            service_actions = plan_service(
                desired_service_state(self.desired), observed_service,
                config_changed or artifact_changed, unit_changed,
            )

        return ReconcilePlan(
            install_actions=install_actions,
            config=config,
            config_changed=config_changed,
            unit_changed=unit_changed,
            observed_service=observed_service,
            service_actions=service_actions,
        )

    def run(self) -> ReconcileResult:
        """
        Execute a full pass

        Returns:
            ReconcileResult: Actions taken and the resulting persisted state

        Raises:
            ProvisionError: Any component failure; later components do not run
        """
        with redact_secrets(self._secret_values()):
            state = load_state(self.state_path)
            before = copy.deepcopy(state)
            result = ReconcileResult(state=state)
            try:
                self._run(state, result)
            except Exception:
                if state != before:
                    self._save_after_failure(state)
                raise
            if state != before:
                save_state(self.state_path, state)

        logger.info(
            'Pass finished (%s)', 'changed' if result.changed else 'no changes',
            extra={'context': {
                'install_actions': [a.value for a in result.install_actions],
                'config_written': result.config_written,
                'service_actions': [a.value for a in result.service_actions],
            }}
        )
        return result

    def _save_after_failure(self, state: ObservedState) -> None:
        # The pass error is what gets reported
        try:
            save_state(self.state_path, state)
        except ProvisionError as e:
            logger.error('Could not save state after a failed pass: %s', e)

    def _run(self, state: ObservedState, result: ReconcileResult) -> None:
        desired = self.desired

        # Render and validate before anything is written
        config = self.configurer.plan()

        observation = self.installer.observe(state.artifact)
        result.install_actions = plan_install(desired, observation)
        state.artifact = self.installer.apply(result.install_actions, observation)

        self.configurer.apply(config)
        result.config_written = config.changed
        config_changed = config.checksum != state.config_checksum

        # Config and unit are on disk before any start/restart
        unit_sum = unit_checksum(desired)
        wrote_unit = sync_unit_file(desired)
        unit_changed = wrote_unit or (unit_sum is not None and unit_sum != state.unit_checksum)
        # A new binary also needs the running process replaced
        artifact_changed = state.artifact != state.applied_artifact

        observed_service = self.controller.observe(desired.service_name)
        result.service_actions = plan_service(
            desired_service_state(desired), observed_service,
            config_changed or artifact_changed, unit_changed,
        )
        self.controller.apply(desired.service_name, result.service_actions)

        # Only now has the service (if running) picked up this configuration
        state.config_checksum = config.checksum
        state.unit_checksum = unit_sum
        state.applied_artifact = state.artifact
