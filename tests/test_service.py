"""Tests for service planning, the unit file and the systemd controller"""
from unittest.mock import Mock, patch

import pytest

from promtail_provision.desired import ServiceEnsure
from promtail_provision.errors import ServiceError
from promtail_provision.service import (
    ServiceAction,
    ServiceState,
    SystemdController,
    plan_service,
    render_unit_file,
    sync_unit_file,
)

RUNNING_ENABLED = ServiceState(ServiceEnsure.RUNNING, True)
RUNNING_DISABLED = ServiceState(ServiceEnsure.RUNNING, False)
STOPPED_ENABLED = ServiceState(ServiceEnsure.STOPPED, True)
STOPPED_DISABLED = ServiceState(ServiceEnsure.STOPPED, False)


class TestPlanService:

    def test_converged(self):
        assert plan_service(RUNNING_ENABLED, RUNNING_ENABLED, config_changed=False) == []

    def test_fresh_host(self):
        """Unknown service is stopped and disabled"""
        actions = plan_service(RUNNING_ENABLED, ServiceState(), config_changed=True)

        assert actions == [ServiceAction.ENABLE, ServiceAction.START]

    def test_config_change_restarts_running_service(self):
        actions = plan_service(RUNNING_ENABLED, RUNNING_ENABLED, config_changed=True)

        assert actions == [ServiceAction.RESTART]

    def test_start_not_restart_when_stopped(self):
        actions = plan_service(RUNNING_ENABLED, STOPPED_ENABLED, config_changed=True)

        assert actions == [ServiceAction.START]

    def test_no_restart_when_desired_stopped(self):
        assert plan_service(STOPPED_DISABLED, STOPPED_DISABLED, config_changed=True) == []

    def test_stop_running_service(self):
        actions = plan_service(STOPPED_DISABLED, RUNNING_ENABLED, config_changed=True)

        assert actions == [ServiceAction.DISABLE, ServiceAction.STOP]

    def test_enable_flag_independent_of_run_state(self):
        assert plan_service(STOPPED_ENABLED, STOPPED_DISABLED, config_changed=False) == [ServiceAction.ENABLE]
        assert plan_service(RUNNING_DISABLED, RUNNING_ENABLED, config_changed=False) == [ServiceAction.DISABLE]

    def test_unit_change_reloads_then_restarts(self):
        actions = plan_service(RUNNING_ENABLED, RUNNING_ENABLED, config_changed=False, unit_changed=True)

        assert actions == [ServiceAction.DAEMON_RELOAD, ServiceAction.RESTART]


class TestUnitFile:

    def test_unit_points_at_stable_binary(self, make_desired):
        desired = make_desired()

        unit = render_unit_file(desired)

        assert f'ExecStart={desired.binary_path} -config.file={desired.config_file}' in unit
        assert 'promtail-v2.9.4' not in unit

    def test_package_mode_unit_runs_packaged_binary(self, make_desired):
        desired = make_desired(install_method='package', manage_unit_file=True)

        unit = render_unit_file(desired)

        assert f'ExecStart=/usr/bin/promtail -config.file={desired.config_file}' in unit
        assert desired.binary_path not in unit

    def test_sync_writes_once(self, make_desired):
        desired = make_desired()

        assert sync_unit_file(desired) is True
        assert sync_unit_file(desired) is False

        with open(desired.resolved_unit_file_path) as f:
            assert f.read() == render_unit_file(desired)

    def test_unmanaged_unit_untouched(self, make_desired, tmp_path):
        desired = make_desired(manage_unit_file=False)

        assert sync_unit_file(desired) is False
        assert not (tmp_path / 'systemd').exists()


class TestSystemdController:

    def test_observe_running_enabled(self):
        with patch('promtail_provision.service.subprocess.run') as mock_run:
            mock_run.side_effect = [
                Mock(returncode=0, stdout='active\n', stderr=''),
                Mock(returncode=0, stdout='enabled\n', stderr=''),
            ]

            state = SystemdController().observe('promtail')

        assert state == RUNNING_ENABLED

    def test_observe_missing_unit(self):
        with patch('promtail_provision.service.subprocess.run') as mock_run:
            mock_run.side_effect = [
                Mock(returncode=4, stdout='inactive\n', stderr=''),
                Mock(returncode=1, stdout='', stderr='Failed to get unit file state'),
            ]

            state = SystemdController().observe('promtail')

        assert state == STOPPED_DISABLED

    def test_observe_static_unit_is_not_enabled(self):
        with patch('promtail_provision.service.subprocess.run') as mock_run:
            mock_run.side_effect = [
                Mock(returncode=3, stdout='inactive\n', stderr=''),
                Mock(returncode=0, stdout='static\n', stderr=''),
            ]

            assert SystemdController().observe('promtail').enabled is False

    def test_apply_runs_systemctl_in_order(self):
        with patch('promtail_provision.service.subprocess.run') as mock_run:
            mock_run.return_value = Mock(returncode=0, stdout='', stderr='')

            SystemdController().apply('promtail', [
                ServiceAction.DAEMON_RELOAD, ServiceAction.ENABLE, ServiceAction.START,
            ])

        argvs = [c[0][0] for c in mock_run.call_args_list]
        assert argvs == [
            ['systemctl', 'daemon-reload'],
            ['systemctl', 'enable', 'promtail'],
            ['systemctl', 'start', 'promtail'],
        ]

    def test_start_failure_raises(self):
        with patch('promtail_provision.service.subprocess.run') as mock_run:
            mock_run.return_value = Mock(returncode=1, stdout='', stderr='Job for promtail.service failed')

            with pytest.raises(ServiceError) as exc_info:
                SystemdController().apply('promtail', [ServiceAction.START, ServiceAction.ENABLE])

        assert 'Job for promtail.service failed' in str(exc_info.value)
        assert mock_run.call_count == 1
