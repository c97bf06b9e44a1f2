"""Configuration loader for pdcsetup."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from pdcsetup.errors import SetupError


class ConfigLoader:
    """Loads YAML configuration files for CLI defaults."""

    SUPPORTED_KEYS = {
        "configuration_type",
        "database_type",
        "access_file",
        "host",
        "database",
        "username",
        "password",
        "integrated_security",
        "existing",
        "migrate",
        "initial_data",
        "sample_data",
        "create_user",
        "new_user_name",
        "new_user_password",
        "encrypt",
        "data_provider_string",
        "xml_file_path",
        "web_service_url",
        "scripts_dir",
        "install_dir",
        "companion_install_path",
        "rollback_file",
        "probe_url",
        "force_on_partial_failure",
        "verbose",
        "log_file",
    }

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise SetupError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise SetupError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise SetupError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise SetupError(f"Unknown configuration keys: {unknown_list}")

        return parsed
