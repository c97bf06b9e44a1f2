"""Run manifest: the step timeline of a setup run, written as JSON."""

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def _elapsed(started_at: str, finished_at: str) -> float:
    return (datetime.fromisoformat(finished_at) - datetime.fromisoformat(started_at)).total_seconds()


class ManifestService:
    """Records steps, scripts and patched targets in ``setup-manifest.json``.

    The manifest is informational. A write failure is logged and never
    interrupts the run.
    """

    def __init__(self, manifest_file: str, logger):
        self.manifest_file = manifest_file
        self.logger = logger
        self.manifest: Dict[str, Any] = {
            "run_id": None,
            "status": "running",
            "started_at": None,
            "finished_at": None,
            "request": {},
            "steps": [],
            "scripts": [],
            "patched_targets": [],
            "rollback_file": None,
            "error": None,
        }

    def start_run(self, run_id: str, request: Dict[str, Any]):
        self.manifest.update(run_id=run_id, status="running", started_at=self._now(), request=request)
        self.write()

    def step_started(self, step_name: str):
        self.manifest["steps"].append({"name": step_name, "status": "running", "started_at": self._now()})
        self.write()

    def step_finished(self, step_name: str, status: str, error: Optional[str] = None):
        open_steps = [step for step in self.manifest["steps"] if step["status"] == "running"]
        for step in reversed(open_steps):
            if step["name"] != step_name:
                continue
            step["status"] = status
            step["finished_at"] = self._now()
            step["duration_seconds"] = _elapsed(step["started_at"], step["finished_at"])
            if error:
                step["error"] = error
            break
        self.write()

    def set_results(self, scripts: List[Dict[str, Any]], patched_targets: List[str]):
        self.manifest["scripts"] = scripts
        self.manifest["patched_targets"] = list(patched_targets)
        self.write()

    def set_rollback_file(self, path: str):
        self.manifest["rollback_file"] = path
        self.write()

    def finalize(self, status: str, error: Optional[str] = None):
        finished_at = self._now()
        self.manifest.update(status=status, finished_at=finished_at, error=error)
        if self.manifest["started_at"]:
            self.manifest["duration_seconds"] = _elapsed(self.manifest["started_at"], finished_at)
        self.write()

    def write(self):
        temp_path = None
        try:
            directory = os.path.dirname(os.path.abspath(self.manifest_file))
            os.makedirs(directory, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(prefix="setup-manifest-", suffix=".json", dir=directory)
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump(self.manifest, file_obj, indent=2, sort_keys=True)
                file_obj.write("\n")
            os.replace(temp_path, self.manifest_file)
        except OSError as exc:
            self.logger.warning("Could not write manifest file '%s': %s", self.manifest_file, exc)
            if temp_path and os.path.exists(temp_path):
                os.remove(temp_path)

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
