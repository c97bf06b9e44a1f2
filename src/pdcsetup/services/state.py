"""Persistence of the rollback record written after each setup run."""

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pdcsetup.errors import SetupError
from pdcsetup.errors_catalog import actionable_error
from pdcsetup.models import ProvisioningState


class RollbackStore:
    """Saves and loads the previous connection settings captured by the patcher."""

    SCHEMA_VERSION = 1
    REQUIRED_KEYS = ("old_connection_string",)
    SECRET_KEYS = (
        "old_connection_string",
        "old_oledb_connection_string",
        "new_connection_string",
        "new_oledb_connection_string",
    )

    def __init__(self, rollback_file: str, logger, cipher=None):
        self.rollback_file = rollback_file
        self.logger = logger
        self.cipher = cipher

    def load(self) -> Optional[Dict[str, Any]]:
        if not os.path.exists(self.rollback_file):
            return None

        try:
            with open(self.rollback_file, "r", encoding="utf-8") as file_obj:
                data = json.load(file_obj)
        except (OSError, json.JSONDecodeError) as exc:
            raise SetupError(f"Could not read rollback file '{self.rollback_file}': {exc}") from exc

        if not isinstance(data, dict):
            raise SetupError(f"Rollback file '{self.rollback_file}' has invalid format.")

        return data

    def load_for_rollback(self) -> Dict[str, Any]:
        record = self.load()
        if record is None:
            raise SetupError(f"Rollback file not found: {self.rollback_file}")
        if any(record.get(key) is None for key in self.REQUIRED_KEYS):
            raise SetupError(actionable_error("no_rollback_values", path=self.rollback_file))

        if record.get("secrets_encrypted"):
            if self.cipher is None:
                raise SetupError("Rollback record is encrypted but no cipher is configured.")
            for key in self.SECRET_KEYS:
                if record.get(key):
                    record[key] = self.cipher.decrypt(record[key])
            record["secrets_encrypted"] = False
        return record

    def save(self, record: Dict[str, Any]):
        record["schema_version"] = self.SCHEMA_VERSION
        record["updated_at"] = self._now()

        temp_path = None
        try:
            directory = os.path.dirname(os.path.abspath(self.rollback_file))
            os.makedirs(directory, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(prefix="setup-rollback-", suffix=".json", dir=directory)
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump(record, file_obj, indent=2, sort_keys=True)
                file_obj.write("\n")
            os.replace(temp_path, self.rollback_file)
        except OSError as exc:
            raise SetupError(f"Could not write rollback file '{self.rollback_file}': {exc}") from exc
        finally:
            if temp_path and os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass

    def save_state(self, state: ProvisioningState, configuration_kind: str):
        record = self.build_record(state, configuration_kind)
        if self.cipher is not None:
            for key in self.SECRET_KEYS:
                if record.get(key):
                    record[key] = self.cipher.encrypt(record[key])
            record["secrets_encrypted"] = True
        self.save(record)
        self.logger.debug("Rollback record written to %s", self.rollback_file)

    def mark_status(self, status: str):
        record = self.load()
        if record is None:
            raise SetupError(f"Rollback file not found: {self.rollback_file}")
        record["status"] = status
        self.save(record)

    @staticmethod
    def build_record(state: ProvisioningState, configuration_kind: str) -> Dict[str, Any]:
        return {
            "configuration_kind": configuration_kind,
            "status": state.status.value,
            "old_connection_string": state.old_connection_string,
            "old_data_provider": state.old_data_provider,
            "old_connection_string_encrypted": state.old_connection_string_encrypted,
            "old_oledb_connection_string": state.old_oledb_connection_string,
            "new_connection_string": state.new_connection_string,
            "new_data_provider": state.new_data_provider,
            "new_oledb_connection_string": state.new_oledb_connection_string,
            "restart_required": state.restart_required,
            "patched_targets": list(state.patched_targets),
            "secrets_encrypted": False,
        }

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
