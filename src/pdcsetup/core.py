import logging
import os
import threading
import uuid
from typing import Any, Callable, Dict, Optional

from rich.console import Console

from .constants import DATABASE_SCRIPTS_DIR, MANIFEST_FILE, ROLLBACK_FILE
from .errors import ConfigPatchFailure, SetupError
from .errors_catalog import actionable_error
from .models import (
    ConfigurationKind,
    DatabaseKind,
    PartialFailure,
    ProvisioningRequest,
    ProvisioningState,
    RunStatus,
)
from .services.cipher import CredentialCipher
from .services.command_runner import CommandRunner
from .services.config_patcher import ConfigPatcher
from .services.filesystem import FileSystemService
from .services.manifest import ManifestService
from .services.preemption import PreemptionService, default_service_controller
from .services.provisioners import (
    EmbeddedFileProvisioner,
    MySqlProvisioner,
    ReferenceProvisioner,
    SqlServerProvisioner,
    to_oledb_connection_string,
)
from .services.reporting import MessageChannel, RecordingSink, StatusReporter
from .services.state import RollbackStore
from .services.targets import ConfigTargetLocator, read_companion_install_path
from .services.validation import ValidationService

console = Console()
logger = logging.getLogger("pdcsetup")


class SetupOrchestrator:
    """Quiesces the application, provisions one backend and repoints its configuration.

    A run happens on a single background worker. Status lines, progress and
    navigation changes travel to the owning thread through ``channel``; the
    owner reads ``state`` only after the completion message arrives.
    """

    def __init__(
        self,
        install_dir: Optional[str] = None,
        scripts_dir: Optional[str] = None,
        companion_install_path: Optional[str] = None,
        rollback_file: Optional[str] = None,
        manifest_file: Optional[str] = None,
        probe_web_service: bool = False,
        service_controller=None,
        command_runner: Optional[CommandRunner] = None,
        cipher: Optional[CredentialCipher] = None,
        channel: Optional[MessageChannel] = None,
        registry_reader: Callable[[], Optional[str]] = read_companion_install_path,
    ):
        self.install_dir = install_dir or os.getcwd()
        self.scripts_dir = scripts_dir or os.path.join(self.install_dir, DATABASE_SCRIPTS_DIR)
        self.rollback_file = rollback_file or os.path.join(self.install_dir, ROLLBACK_FILE)
        self.manifest_file = manifest_file or os.path.join(self.install_dir, MANIFEST_FILE)
        self.probe_web_service = probe_web_service

        self.state = ProvisioningState()
        self.request: Optional[ProvisioningRequest] = None
        self.run_id = uuid.uuid4().hex[:10]
        self.can_go_forward = False
        self.can_go_back = True
        self.can_cancel = True
        self._worker: Optional[threading.Thread] = None

        self.channel = channel or MessageChannel()
        self.reporter = StatusReporter(self.channel, logger, self.state)
        self.cipher = cipher or CredentialCipher()
        self.command_runner = command_runner or CommandRunner(logger=logger)
        self.filesystem_service = FileSystemService(logger=logger)
        self.validation_service = ValidationService(logger=logger)
        self.target_locator = ConfigTargetLocator(
            install_dir=self.install_dir,
            logger=logger,
            companion_install_path=companion_install_path,
            registry_reader=registry_reader,
        )
        self.config_patcher = ConfigPatcher(cipher=self.cipher, reporter=self.reporter, logger=logger)
        self.preemption_service = PreemptionService(
            reporter=self.reporter,
            logger=logger,
            service_controller=service_controller
            or default_service_controller(self.command_runner.run),
        )
        self.rollback_store = RollbackStore(self.rollback_file, logger=logger, cipher=self.cipher)
        self.manifest_service = ManifestService(manifest_file=self.manifest_file, logger=logger)

    # Provisioner dispatch.

    def build_provisioner(self, request: ProvisioningRequest):
        kind = request.configuration_kind
        if kind is ConfigurationKind.DATABASE:
            factories = {
                DatabaseKind.EMBEDDED_FILE: lambda: EmbeddedFileProvisioner(
                    self.filesystem_service, self.reporter, logger, self.scripts_dir
                ),
                DatabaseKind.MYSQL: lambda: MySqlProvisioner(
                    self.command_runner, self.reporter, logger, self.scripts_dir
                ),
                DatabaseKind.SQL_SERVER: lambda: SqlServerProvisioner(
                    self.command_runner, self.reporter, logger, self.scripts_dir
                ),
            }
            if request.database_kind not in factories:
                raise SetupError(f"Unsupported database type: {request.database_kind}")
            return factories[request.database_kind]()

        if kind in (ConfigurationKind.XML, ConfigurationKind.WEB_SERVICE):
            return ReferenceProvisioner(
                self.reporter,
                logger,
                validation_service=self.validation_service,
                probe_url=self.probe_web_service,
            )

        raise SetupError(f"Unsupported configuration type: {kind}")

    # Lifecycle.

    def start(self, request: ProvisioningRequest):
        if self.state.status is not RunStatus.IDLE:
            raise SetupError("A setup run was already started. Create a new orchestrator to run again.")

        self.validation_service.validate_request(request)
        self.request = request
        self._launch(self._provision, request)

    def start_rollback(self):
        if self.state.status is not RunStatus.IDLE:
            raise SetupError("A setup run was already started. Create a new orchestrator to run again.")

        record = self.rollback_store.load_for_rollback()
        self._launch(self._rollback, record)

    def _launch(self, target: Callable, *args):
        self.state.status = RunStatus.RUNNING
        self._set_navigation(forward=False, back=False, cancel=False)
        self._worker = threading.Thread(
            target=target,
            args=args,
            name=f"pdcsetup-{self.run_id}",
            daemon=True,
        )
        self._worker.start()

    def wait(self, timeout: Optional[float] = None) -> ProvisioningState:
        if self._worker is not None:
            self._worker.join(timeout)
        return self.state

    def run(self, request: ProvisioningRequest, sink=None) -> ProvisioningState:
        """Start a run and consume its messages on the calling thread."""
        sink = sink if sink is not None else RecordingSink()
        self.start(request)
        self.channel.drain(sink)
        return self.wait()

    def run_rollback(self, sink=None) -> ProvisioningState:
        sink = sink if sink is not None else RecordingSink()
        self.start_rollback()
        self.channel.drain(sink)
        return self.wait()

    def force_complete(self) -> ProvisioningState:
        """Shell override: accept a run whose config patch stopped part way."""
        if self.state.status is not RunStatus.FAILED or self.state.partial_failure is None:
            raise SetupError(
                "Only a run that failed after partially updating configuration can be forced."
            )

        logger.warning(
            "Completing setup despite failure on %s.",
            self.state.partial_failure.failed_target,
        )
        self.state.status = RunStatus.SUCCEEDED
        self.state.forced_completion = True
        self.state.progress = 100
        self.can_go_forward = True
        if self.request is not None:
            self._persist_rollback(self.request.configuration_kind)
        self.manifest_service.finalize("forced", error=self.state.partial_failure.error)
        return self.state

    # Worker side.

    def _run_step(self, name: str, callback, *args, **kwargs):
        self.manifest_service.step_started(name)
        try:
            result = callback(*args, **kwargs)
        except Exception as exc:
            self.manifest_service.step_finished(name, "failed", error=str(exc))
            raise
        self.manifest_service.step_finished(name, "success")
        return result

    def _provision(self, request: ProvisioningRequest):
        kind = request.configuration_kind
        try:
            logger.info("Starting configuration setup (%s).", self._describe_kind(request))
            self.manifest_service.start_run(self.run_id, self._describe_request(request))

            self.state.restart_required = bool(
                self._run_step("quiesce", self.preemption_service.quiesce)
            )

            provisioner = self.build_provisioner(request)
            result = self._run_step("provision", provisioner.provision, request, self.state)
            self.state.new_connection_string = result.connection_string
            self.state.new_data_provider = result.data_provider
            self.state.new_oledb_connection_string = result.oledb_connection_string

            encrypt = kind is ConfigurationKind.DATABASE and request.encrypt_stored_connection_string
            targets = self.target_locator.discover(kind)
            self.reporter.status("Attempting to modify configuration files...")
            self._run_step(
                "patch_configuration",
                self.config_patcher.patch,
                targets,
                result.connection_string,
                result.data_provider,
                encrypt,
                self.state,
            )
            self.reporter.status("Modification of configuration files was successful.")

            if kind is ConfigurationKind.DATABASE and self.state.old_data_provider:
                self.state.old_oledb_connection_string = to_oledb_connection_string(
                    self.state.old_connection_string or "",
                    self.state.old_data_provider,
                )

            self._succeed(kind)
        except ConfigPatchFailure as exc:
            if exc.completed_targets:
                self.state.partial_failure = PartialFailure(
                    completed_targets=list(exc.completed_targets),
                    failed_target=exc.target,
                    error=str(exc),
                )
            self._fail(kind, str(exc))
        except SetupError as exc:
            self._fail(kind, str(exc))
        except Exception as exc:
            logger.exception("Unexpected error")
            self._fail(kind, f"Unexpected error: {exc}")

    def _rollback(self, record: Dict[str, Any]):
        kind = ConfigurationKind(record.get("configuration_kind", ConfigurationKind.DATABASE.value))
        try:
            logger.info("Restoring previous configuration settings.")
            self.manifest_service.start_run(
                self.run_id, {"operation": "rollback", "configuration_kind": kind.value}
            )

            self.state.restart_required = bool(
                self._run_step("quiesce", self.preemption_service.quiesce)
            )
            targets = self.target_locator.discover(kind)
            self.reporter.status("Attempting to restore configuration files...")
            self._run_step(
                "restore_configuration",
                self.config_patcher.patch,
                targets,
                record["old_connection_string"],
                record.get("old_data_provider") or "",
                bool(record.get("old_connection_string_encrypted")),
                self.state,
            )
            self.reporter.status("Previous configuration restored.")
            try:
                self.rollback_store.mark_status("rolled_back")
            except SetupError as exc:
                logger.warning("Rollback record not updated: %s", exc)
                self.reporter.status(f"Warning: {exc}")
            self._finish_success()
        except ConfigPatchFailure as exc:
            if exc.completed_targets:
                self.state.partial_failure = PartialFailure(
                    completed_targets=list(exc.completed_targets),
                    failed_target=exc.target,
                    error=str(exc),
                )
            self._finish_failure(str(exc))
        except SetupError as exc:
            self._finish_failure(str(exc))
        except Exception as exc:
            logger.exception("Unexpected error")
            self._finish_failure(f"Unexpected error: {exc}")

    def _succeed(self, kind: ConfigurationKind):
        self.state.status = RunStatus.SUCCEEDED
        self._persist_rollback(kind)
        self._finish_success()

    def _fail(self, kind: ConfigurationKind, message: str):
        self.state.status = RunStatus.FAILED
        if self.state.old_values_captured:
            self._persist_rollback(kind)
        self._finish_failure(message)

    def _finish_success(self):
        self.state.status = RunStatus.SUCCEEDED
        try:
            self.reporter.progress(100)
            self.manifest_service.set_results(self._script_summary(), self.state.patched_targets)
            self.manifest_service.finalize("success")
        finally:
            self._set_navigation(forward=True, back=False, cancel=False)
            self.reporter.complete(RunStatus.SUCCEEDED)

    def _finish_failure(self, message: str):
        self.state.status = RunStatus.FAILED
        self.state.message = message
        try:
            self.reporter.status(message)
            partial = self.state.partial_failure
            if partial is not None:
                self.reporter.status(
                    actionable_error(
                        "partial_patch",
                        target=partial.failed_target,
                        count=str(len(partial.completed_targets)),
                    )
                )
            logger.error(message)
            self.reporter.progress(0)
            self.manifest_service.set_results(self._script_summary(), self.state.patched_targets)
            self.manifest_service.finalize("failed", error=message)
        finally:
            self._set_navigation(forward=False, back=True, cancel=True)
            self.reporter.complete(RunStatus.FAILED, message)

    def _persist_rollback(self, kind: ConfigurationKind):
        try:
            self.rollback_store.save_state(self.state, kind.value)
        except (SetupError, OSError) as exc:
            logger.warning("Rollback record not saved: %s", exc)
            self.reporter.status(f"Warning: {exc}")
            return
        self.manifest_service.set_rollback_file(self.rollback_file)

    def _set_navigation(self, forward: bool, back: bool, cancel: bool):
        self.can_go_forward = forward
        self.can_go_back = back
        self.can_cancel = cancel
        self.reporter.navigation(forward, back, cancel)

    def _script_summary(self):
        return [
            {"script": result.script_name, "succeeded": result.succeeded}
            for result in self.state.scripts_run
        ]

    @staticmethod
    def _describe_kind(request: ProvisioningRequest) -> str:
        if request.configuration_kind is ConfigurationKind.DATABASE and request.database_kind:
            return f"{request.configuration_kind.value}/{request.database_kind.value}"
        return request.configuration_kind.value

    @staticmethod
    def _describe_request(request: ProvisioningRequest) -> Dict[str, Any]:
        return {
            "configuration_kind": request.configuration_kind.value,
            "database_kind": request.database_kind.value if request.database_kind else None,
            "host": request.server.host if request.server else None,
            "database": request.server.database if request.server else None,
            "embedded_file_path": request.embedded_file_path,
            "target_is_preexisting": request.target_is_preexisting,
            "migrate_existing_schema": request.migrate_existing_schema,
            "run_initial_data_script": request.run_initial_data_script,
            "run_sample_data_script": request.run_sample_data_script,
            "create_new_database_user": request.create_new_database_user,
            "encrypt_stored_connection_string": request.encrypt_stored_connection_string,
        }
