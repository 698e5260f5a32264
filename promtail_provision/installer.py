"""
Installer: make the promtail binary (or package) present at the declared version.

Planning is pure: ``plan_install`` looks only at the desired state and an
ArtifactObservation. ``Installer`` gathers the observation and applies the
plan.
"""

import hashlib
import logging
import os
import platform
import shutil
import tarfile
import tempfile
import zipfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional

import requests

from promtail_provision.desired import DesiredState, InstallMethod, PackageEnsure
from promtail_provision.errors import FilesystemError, TransportError, VerificationError
from promtail_provision.fsutil import CHUNK_SIZE, atomic_symlink, symlink_target
from promtail_provision.packages import PackageManager, get_package_manager
from promtail_provision.state import InstalledArtifact

logger = logging.getLogger(__name__)

_ARCH_MAP = {
    'x86_64': 'amd64',
    'amd64': 'amd64',
    'aarch64': 'arm64',
    'arm64': 'arm64',
    'armv7l': 'arm',
    'armv6l': 'arm',
    'i386': '386',
    'i686': '386',
}


class InstallAction(Enum):
    FETCH = 'fetch'  # download, verify, extract, place versioned binary
    LINK = 'link'    # repoint the stable symlink
    PACKAGE_INSTALL = 'package-install'
    PACKAGE_UPGRADE = 'package-upgrade'
    PACKAGE_REMOVE = 'package-remove'


@dataclass(frozen=True)
class ArtifactObservation:
    """On-host facts the installer plans against"""
    recorded: Optional[InstalledArtifact] = None
    binary_present: bool = False
    link_target: Optional[str] = None
    package_version: Optional[str] = None
    update_available: bool = False


def platform_archive_name(system: Optional[str] = None, machine: Optional[str] = None) -> str:
    """Release asset name for this host, e.g. promtail-linux-amd64.zip"""
    system = (system or platform.system()).lower()
    machine = (machine or platform.machine()).lower()
    arch = _ARCH_MAP.get(machine, machine)
    return f'promtail-{system}-{arch}.zip'


def archive_url(desired: DesiredState, archive_name: Optional[str] = None) -> str:
    """<source_url>/<version>/<archive name>"""
    return '/'.join([
        desired.source_url.rstrip('/'),
        desired.version,
        archive_name or platform_archive_name(),
    ])


def plan_install(desired: DesiredState, observed: ArtifactObservation) -> List[InstallAction]:
    """
    Compute the installer actions needed to converge

    Args:
        desired: Desired state
        observed: Current artifact facts

    Returns:
        list: Actions in execution order, empty when already converged
    """
    if desired.install_method is InstallMethod.PACKAGE:
        return _plan_package(desired, observed)

    actions = []
    recorded = observed.recorded
    verified = (
        recorded is not None
        and recorded.method == InstallMethod.ARCHIVE.value
        and recorded.version == desired.version
        and recorded.checksum == desired.checksum
        and observed.binary_present
    )
    if not verified:
        actions.append(InstallAction.FETCH)
    if not verified or observed.link_target != desired.versioned_binary_path:
        actions.append(InstallAction.LINK)
    return actions


def _plan_package(desired, observed):
    installed = observed.package_version is not None
    ensure = desired.package_ensure

    if ensure is PackageEnsure.ABSENT:
        return [InstallAction.PACKAGE_REMOVE] if installed else []
    if not installed:
        return [InstallAction.PACKAGE_INSTALL]
    if ensure is PackageEnsure.LATEST and observed.update_available:
        return [InstallAction.PACKAGE_UPGRADE]
    return []


class Installer:
    """Observes and applies installer actions for one desired state"""

    def __init__(
        self,
        desired: DesiredState,
        session: Optional[requests.Session] = None,
        package_manager: Optional[PackageManager] = None,
        archive_name: Optional[str] = None
    ):
        self.desired = desired
        self.session = session or requests.Session()
        self._package_manager = package_manager
        self.archive_name = archive_name or platform_archive_name()

    @property
    def package_manager(self) -> PackageManager:
        if self._package_manager is None:
            self._package_manager = get_package_manager(self.desired.package_provider)
        return self._package_manager

    def observe(self, recorded: Optional[InstalledArtifact]) -> ArtifactObservation:
        """Gather the facts plan_install needs (read-only)"""
        if self.desired.install_method is InstallMethod.PACKAGE:
            name = self.desired.package_name
            version = self.package_manager.installed_version(name)
            update = False
            if version is not None and self.desired.package_ensure is PackageEnsure.LATEST:
                update = self.package_manager.update_available(name)
            return ArtifactObservation(recorded=recorded, package_version=version, update_available=update)

        return ArtifactObservation(
            recorded=recorded,
            binary_present=os.path.isfile(self.desired.versioned_binary_path),
            link_target=symlink_target(self.desired.binary_path),
        )

    def apply(self, actions: List[InstallAction], observed: ArtifactObservation) -> Optional[InstalledArtifact]:
        """
        Execute planned actions

        Returns:
            InstalledArtifact: Record of what is now installed, None if the
            package was removed

        Raises:
            VerificationError: Checksum mismatch or malformed archive
            TransportError: Download or package manager failure
            FilesystemError: bin_dir cannot be written
        """
        if self.desired.install_method is InstallMethod.PACKAGE:
            return self._apply_package(actions, observed)

        checksum = observed.recorded.checksum if observed.recorded else None
        for action in actions:
            if action is InstallAction.FETCH:
                checksum = self.fetch()
            elif action is InstallAction.LINK:
                try:
                    atomic_symlink(self.desired.versioned_binary_path, self.desired.binary_path)
                except OSError as e:
                    raise FilesystemError(f'Cannot link {self.desired.binary_path}: {e}') from e
                logger.info('Linked %s -> %s', self.desired.binary_path, self.desired.versioned_binary_path)

        return InstalledArtifact(
            method=InstallMethod.ARCHIVE.value,
            version=self.desired.version,
            checksum=checksum,
            path=self.desired.versioned_binary_path,
        )

    def _apply_package(self, actions, observed):
        name = self.desired.package_name
        pm = self.package_manager

        for action in actions:
            if action is InstallAction.PACKAGE_REMOVE:
                logger.info('Removing package %s', name)
                pm.remove(name)
                return None
            logger.info('%s package %s via %s',
                        'Upgrading' if action is InstallAction.PACKAGE_UPGRADE else 'Installing',
                        name, pm.name)
            pm.install(name)

        if self.desired.package_ensure is PackageEnsure.ABSENT:
            return None

        version = pm.installed_version(name) if actions else observed.package_version
        if version is not None and version != self.desired.version:
            # Package mode does not pin versions; package_ensure decides.
            logger.warning('Package %s is at %s, declared version is %s',
                           name, version, self.desired.version)
        return InstalledArtifact(method=InstallMethod.PACKAGE.value, version=version)

    def fetch(self) -> str:
        """
        Download, verify and place the versioned binary

        The archive is downloaded into a temporary directory inside bin_dir
        and only the verified binary is renamed into place. The stable
        symlink is not touched here.

        Returns:
            str: sha256 of the verified archive
        """
        url = archive_url(self.desired, self.archive_name)
        try:
            return self._fetch(url)
        except OSError as e:
            raise FilesystemError(f'Cannot place promtail in {self.desired.bin_dir}: {e}') from e

    def _fetch(self, url: str) -> str:
        bin_dir = Path(self.desired.bin_dir)
        bin_dir.mkdir(parents=True, exist_ok=True)

        tmp_dir = Path(tempfile.mkdtemp(prefix='.promtail-download-', dir=str(bin_dir)))
        try:
            archive_path = tmp_dir / self.archive_name
            digest = self._download(url, archive_path)

            if digest != self.desired.checksum:
                raise VerificationError(
                    f'Checksum mismatch for {url}: expected {self.desired.checksum}, got {digest}'
                )
            logger.info('Verified %s (sha256 %s)', self.archive_name, digest)

            binary = extract_binary(archive_path, tmp_dir / 'promtail.new')
            binary.chmod(0o755)
            os.replace(binary, self.desired.versioned_binary_path)
            logger.info('Placed %s', self.desired.versioned_binary_path)
            return digest
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)

    def _download(self, url: str, dest: Path) -> str:
        logger.info('Downloading %s', url)
        h = hashlib.sha256()
        try:
            response = self.session.get(url, stream=True, timeout=self.desired.download_timeout)
            try:
                response.raise_for_status()
                with open(dest, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            h.update(chunk)
                            f.write(chunk)
            finally:
                response.close()
        except requests.exceptions.RequestException as e:
            raise TransportError(f'Download failed: {url}: {e}') from e
        return h.hexdigest()


def _pick_member(names):
    """Choose the promtail executable among archive member names"""
    candidates = [
        n for n in names
        if os.path.basename(n) == 'promtail' or os.path.basename(n).startswith('promtail-')
    ]
    candidates = [n for n in candidates if not n.endswith(('/', '.zip', '.gz', '.sha256'))]
    if not candidates:
        return None
    # Prefer the shortest path (top-level entry)
    return sorted(candidates, key=lambda n: (n.count('/'), len(n)))[0]


def extract_binary(archive_path: Path, dest: Path) -> Path:
    """
    Copy the promtail executable out of a zip or tar.gz archive

    Members are read as streams, never extracted by path.

    Raises:
        VerificationError: If the archive is unreadable or holds no binary
    """
    name = archive_path.name
    try:
        if name.endswith('.zip'):
            with zipfile.ZipFile(archive_path) as zf:
                member = _pick_member(zf.namelist())
                if member is None:
                    raise VerificationError(f'No promtail binary in {name}')
                with zf.open(member) as src, open(dest, 'wb') as out:
                    shutil.copyfileobj(src, out)
        elif name.endswith(('.tar.gz', '.tgz')):
            with tarfile.open(archive_path, 'r:gz') as tf:
                files = {m.name: m for m in tf.getmembers() if m.isfile()}
                member = _pick_member(list(files))
                if member is None:
                    raise VerificationError(f'No promtail binary in {name}')
                src = tf.extractfile(files[member])
                with src, open(dest, 'wb') as out:
                    shutil.copyfileobj(src, out)
        else:
            raise VerificationError(f'Unsupported archive format: {name}')
    except (zipfile.BadZipFile, tarfile.TarError, EOFError) as e:
        raise VerificationError(f'Malformed archive {name}: {e}') from e

    return dest
