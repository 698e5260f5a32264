"""Shared fixtures: a fake release archive, a fake HTTP session and a fake systemd"""
import hashlib
import io
import zipfile

import pytest
import requests

from promtail_provision.desired import ServiceEnsure, desired_state_from_dict
from promtail_provision.errors import ServiceError
from promtail_provision.service import ServiceAction, ServiceState

ARCHIVE_NAME = 'promtail-linux-amd64.zip'
BINARY_CONTENT = b'#!/bin/sh\necho promtail\n'


def make_archive(member='promtail-linux-amd64', content=BINARY_CONTENT):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, 'w') as zf:
        zf.writestr(member, content)
    return buf.getvalue()


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code
        self.closed = False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f'{self.status_code} Error')

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.payload), chunk_size):
            yield self.payload[i:i + chunk_size]

    def close(self):
        self.closed = True


class FakeSession:
    """Stands in for requests.Session, serving one payload for every URL"""

    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code
        self.urls = []

    def get(self, url, stream=False, timeout=None):
        self.urls.append(url)
        return FakeResponse(self.payload, self.status_code)


class FakeController:
    """In-memory systemd: records actions and tracks run/enable state"""

    def __init__(self, running=False, enabled=False, fail_on=()):
        self.state = ServiceState(
            ensure=ServiceEnsure.RUNNING if running else ServiceEnsure.STOPPED,
            enabled=enabled,
        )
        self.calls = []
        self.fail_on = set(fail_on)

    def observe(self, name):
        return self.state

    def apply(self, name, actions):
        for action in actions:
            if action in self.fail_on:
                raise ServiceError(f'systemctl {action.value} {name} failed (1): boom')
            self.calls.append(action)
            if action in (ServiceAction.START, ServiceAction.RESTART):
                self.state = ServiceState(ServiceEnsure.RUNNING, self.state.enabled)
            elif action is ServiceAction.STOP:
                self.state = ServiceState(ServiceEnsure.STOPPED, self.state.enabled)
            elif action is ServiceAction.ENABLE:
                self.state = ServiceState(self.state.ensure, True)
            elif action is ServiceAction.DISABLE:
                self.state = ServiceState(self.state.ensure, False)


@pytest.fixture
def archive_bytes():
    return make_archive()


@pytest.fixture
def archive_sha(archive_bytes):
    return hashlib.sha256(archive_bytes).hexdigest()


@pytest.fixture
def desired_data(tmp_path, archive_sha):
    """Raw desired state for archive mode, every path under tmp_path"""
    return {
        'install_method': 'archive',
        'version': 'v2.9.4',
        'checksum': archive_sha,
        'bin_dir': str(tmp_path / 'bin'),
        'config_dir': str(tmp_path / 'etc' / 'promtail'),
        'unit_file_path': str(tmp_path / 'systemd' / 'promtail.service'),
        'clients_config': {
            'clients': [{
                'url': 'http://loki:3100/loki/api/v1/push',
                'basic_auth': {
                    'username': 'promtail',
                    'password_file': str(tmp_path / 'etc' / 'promtail' / '.gc_pw'),
                },
            }],
        },
        'positions_config': {'positions': {'filename': '/var/lib/promtail/positions.yaml'}},
        'scrape_configs': {
            'scrape_configs': [{
                'job_name': 'system',
                'static_configs': [{
                    'targets': ['localhost'],
                    'labels': {'job': 'varlogs', '__path__': '/var/log/*.log'},
                }],
            }],
        },
        'password_file_path': str(tmp_path / 'etc' / 'promtail' / '.gc_pw'),
        'password_file_content': 's3cr3t-hunter2',
        'service_ensure': 'running',
        'service_enable': True,
    }


@pytest.fixture
def make_desired(desired_data):
    def _make(**overrides):
        data = dict(desired_data)
        data.update(overrides)
        return desired_state_from_dict(data)
    return _make


@pytest.fixture
def session(archive_bytes):
    return FakeSession(archive_bytes)
