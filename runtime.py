import logging
import pathlib
import platform
from dataclasses import dataclass, field, replace
from typing import Dict, Mapping, Optional, Tuple

log = logging.getLogger(__name__)

DEFAULT_LAUNCHER_NAME = 'launcher-engine'
DEFAULT_LAUNCHER_VERSION = '1.0'


def get_os_name() -> str:
    """Gets the current OS name ('windows', 'osx', 'linux')."""
    system = platform.system()
    if system == 'Windows': return 'windows'
    elif system == 'Darwin': return 'osx'
    elif system == 'Linux': return 'linux'
    else: raise OSError(f"Unsupported platform: {system}")


def get_arch_name() -> str:
    """Gets the current architecture name ('x86_64', 'x86', 'arm64', 'arm32')."""
    machine = platform.machine().lower()
    if machine in ['amd64', 'x86_64']: return 'x86_64'
    elif machine in ['i386', 'i686', 'x86']: return 'x86'
    elif machine in ['arm64', 'aarch64']: return 'arm64'
    elif machine.startswith('arm') and '64' not in machine: return 'arm32'
    else:
        log.warning(f"Unsupported architecture: {platform.machine()}. Falling back to 'x86_64'.")
        return 'x86_64'


@dataclass(frozen=True)
class Account:
    """Identity handed to the game. Only a bearer token is consumed, never issued."""
    player_name: str = 'Player'
    uuid: str = '00000000-0000-0000-0000-000000000000'
    access_token: str = '00000000000000000000000000000000'
    xuid: str = '0'
    user_type: str = 'msa'
    client_id: str = ''


@dataclass(frozen=True)
class RuntimeContext:
    """
    Platform and feature flags a resolution run is evaluated against.

    One context is created per run by the caller and passed explicitly to every
    component; nothing reads the running platform behind its back.
    """
    os_name: str
    arch: str
    install_root: pathlib.Path
    os_version: str = ''
    features: Mapping[str, bool] = field(default_factory=dict)
    java_path: Optional[pathlib.Path] = None
    account: Account = field(default_factory=Account)
    max_memory_mb: Optional[int] = None
    min_memory_mb: Optional[int] = None
    resolution: Optional[Tuple[int, int]] = None
    launcher_name: str = DEFAULT_LAUNCHER_NAME
    launcher_version: str = DEFAULT_LAUNCHER_VERSION
    extra_placeholders: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def current(cls, install_root, **kwargs) -> 'RuntimeContext':
        """Builds a context for the machine this process runs on."""
        kwargs.setdefault('os_version', platform.version())
        return cls(os_name=get_os_name(), arch=get_arch_name(),
                   install_root=pathlib.Path(install_root), **kwargs)

    def with_features(self, **flags: bool) -> 'RuntimeContext':
        features: Dict[str, bool] = dict(self.features)
        features.update(flags)
        return replace(self, features=features)

    @property
    def pointer_width(self) -> str:
        """'32' or '64', the value legacy manifests expect for ${arch}."""
        return '32' if self.arch in ('x86', 'arm32') else '64'
