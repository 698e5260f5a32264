"""
Thin drivers for the host package manager.

Only the four questions the installer needs are answered here: is the
package installed (and at which version), is an update available, install
or upgrade it, remove it.
"""

import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from typing import List, Optional

from promtail_provision.errors import ConfigError, TransportError

logger = logging.getLogger(__name__)


class PackageManager(ABC):
    """Base package manager driver"""

    name = ''

    def _run(self, argv: List[str], check: bool = True) -> subprocess.CompletedProcess:
        logger.debug('Running %s', ' '.join(argv))
        try:
            result = subprocess.run(argv, capture_output=True, text=True)
        except OSError as e:
            raise TransportError(f'{self.name}: could not run {argv[0]}: {e}') from e

        if check and result.returncode != 0:
            raise TransportError(
                f'{self.name}: {" ".join(argv)} failed ({result.returncode}): {result.stderr.strip()}'
            )
        return result

    @abstractmethod
    def installed_version(self, package: str) -> Optional[str]:
        """Installed version, or None when the package is not installed"""
        pass

    @abstractmethod
    def update_available(self, package: str) -> bool:
        pass

    @abstractmethod
    def install(self, package: str) -> None:
        """Install the package, or upgrade it if already installed"""
        pass

    @abstractmethod
    def remove(self, package: str) -> None:
        pass


class AptPackageManager(PackageManager):
    """Debian/Ubuntu via dpkg-query and apt-get"""

    name = 'apt'

    def installed_version(self, package):
        result = self._run(
            ['dpkg-query', '-W', '-f=${Status} ${Version}', package],
            check=False
        )
        if result.returncode != 0:
            return None
        # "install ok installed 2.9.4"
        parts = result.stdout.split()
        if len(parts) < 4 or parts[2] != 'installed':
            return None
        return parts[3]

    def update_available(self, package):
        result = self._run(['apt-cache', 'policy', package])
        installed = candidate = None
        for line in result.stdout.splitlines():
            line = line.strip()
            if line.startswith('Installed:'):
                installed = line.split(':', 1)[1].strip()
            elif line.startswith('Candidate:'):
                candidate = line.split(':', 1)[1].strip()
        if not candidate or candidate == '(none)':
            return False
        return installed != candidate

    def install(self, package):
        self._run(['apt-get', 'install', '-y', '-q', package])

    def remove(self, package):
        self._run(['apt-get', 'remove', '-y', '-q', package])


class DnfPackageManager(PackageManager):
    """Fedora/RHEL via rpm and dnf"""

    name = 'dnf'

    def installed_version(self, package):
        result = self._run(['rpm', '-q', '--qf', '%{VERSION}', package], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def update_available(self, package):
        # check-update exits 100 when updates are available
        result = self._run([self.name, '-q', 'check-update', package], check=False)
        if result.returncode not in (0, 100):
            raise TransportError(f'{self.name} check-update failed: {result.stderr.strip()}')
        return result.returncode == 100

    def install(self, package):
        verb = 'upgrade' if self.installed_version(package) else 'install'
        self._run([self.name, verb, '-y', '-q', package])

    def remove(self, package):
        self._run([self.name, 'remove', '-y', '-q', package])


class YumPackageManager(DnfPackageManager):
    """Older RHEL/CentOS via rpm and yum"""

    name = 'yum'


_PROVIDERS = {
    'apt': AptPackageManager,
    'dnf': DnfPackageManager,
    'yum': YumPackageManager,
}

# Detection order, first tool on PATH wins
_DETECT = (
    ('apt-get', 'apt'),
    ('dnf', 'dnf'),
    ('yum', 'yum'),
)


def get_package_manager(provider: Optional[str] = None) -> PackageManager:
    """
    Factory function to get a package manager driver

    Args:
        provider: 'apt', 'dnf' or 'yum'; detected from PATH when None

    Returns:
        PackageManager: Driver instance

    Raises:
        ConfigError: If the provider is unknown or none can be detected
    """
    if provider is None:
        for tool, name in _DETECT:
            if shutil.which(tool):
                provider = name
                break
        else:
            raise ConfigError('No supported package manager found (apt-get, dnf, yum)')

    if provider not in _PROVIDERS:
        raise ConfigError(f'Unsupported package provider: {provider}')

    return _PROVIDERS[provider]()
