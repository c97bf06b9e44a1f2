"""Discovery of the configuration files that depend on the backend."""

import os
import sys
from typing import Callable, List, Optional

from pdcsetup.constants import (
    APPLICATION_CONFIG,
    MANAGER_CONFIG,
    WEB_MANAGER_CONFIG,
    WEB_MANAGER_REGISTRY_KEYS,
    WEB_MANAGER_REGISTRY_VALUE,
)
from pdcsetup.models import ConfigFileTarget, ConfigurationKind

if sys.platform == "win32":
    import winreg
else:
    winreg = None


def read_companion_install_path() -> Optional[str]:
    """Installation folder of the web manager services, from the registry."""
    if winreg is None:
        return None

    for subkey in WEB_MANAGER_REGISTRY_KEYS:
        try:
            with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, subkey) as key:
                value, _ = winreg.QueryValueEx(key, WEB_MANAGER_REGISTRY_VALUE)
        except OSError:
            continue
        if value:
            return str(value)
    return None


class ConfigTargetLocator:
    """Lists targets in install-manifest order so rollback values are deterministic."""

    def __init__(
        self,
        install_dir: str,
        logger,
        companion_install_path: Optional[str] = None,
        registry_reader: Callable[[], Optional[str]] = read_companion_install_path,
    ):
        self.install_dir = install_dir
        self.logger = logger
        self.companion_install_path = companion_install_path
        self.registry_reader = registry_reader

    def candidates(self, configuration_kind: ConfigurationKind) -> List[ConfigFileTarget]:
        application = ConfigFileTarget(
            path=os.path.join(self.install_dir, APPLICATION_CONFIG),
            label=APPLICATION_CONFIG,
        )
        if configuration_kind is not ConfigurationKind.DATABASE:
            return [application]

        targets = [
            application,
            ConfigFileTarget(
                path=os.path.join(self.install_dir, MANAGER_CONFIG),
                label=MANAGER_CONFIG,
            ),
        ]

        companion = self.companion_install_path or self.registry_reader()
        if companion:
            targets.append(
                ConfigFileTarget(
                    path=os.path.join(companion, WEB_MANAGER_CONFIG),
                    label=WEB_MANAGER_CONFIG,
                )
            )
        return targets

    def discover(self, configuration_kind: ConfigurationKind) -> List[ConfigFileTarget]:
        existing = []
        for target in self.candidates(configuration_kind):
            if os.path.isfile(target.path):
                existing.append(target)
            else:
                self.logger.debug("Skipping missing configuration file: %s", target.path)
        return existing
