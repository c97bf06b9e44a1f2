import json
import subprocess
import xml.etree.ElementTree as ET

import pytest

from pdcsetup.constants import ACCESS_DATA_PROVIDER, MYSQL_DATA_PROVIDER
from pdcsetup.core import SetupError, SetupOrchestrator
from pdcsetup.models import (
    ConfigurationKind,
    DatabaseKind,
    ProvisioningRequest,
    RunStatus,
    ServerCredentials,
)
from pdcsetup.services.cipher import CredentialCipher
from pdcsetup.services.provisioners import (
    EmbeddedFileProvisioner,
    MySqlProvisioner,
    ReferenceProvisioner,
    SqlServerProvisioner,
)
from pdcsetup.services.reporting import NavigationMessage, RecordingSink

CONFIG_TEMPLATE = """<?xml version="1.0" encoding="utf-8"?>
<configuration>
  <categorizedSettings>
    <systemSettings>
      <add name="ConnectionString" value="{cs}" encrypted="false" />
      <add name="DataProviderString" value="{dp}" encrypted="false" />
    </systemSettings>
    <statMetadataAdoMetadataProvider>
      <add name="ConnectionString" value="{cs}" encrypted="false" />
      <add name="DataProviderString" value="{dp}" encrypted="false" />
    </statMetadataAdoMetadataProvider>
  </categorizedSettings>
</configuration>
"""

OLD_CONNECTION_STRING = "Data Source=legacy; Initial Catalog=openPDC; Integrated Security=SSPI"
OLD_DATA_PROVIDER = (
    "AssemblyName={System.Data, Version=4.0.0.0}; ConnectionType=System.Data.SqlClient.SqlConnection"
)


class FakeServiceController:
    def __init__(self, error=None):
        self.error = error

    def status(self, name):
        if self.error is not None:
            raise self.error
        return None

    def stop(self, name):
        raise AssertionError("service should not be stopped")


class FakePsutil:
    class Error(Exception):
        pass

    class NoSuchProcess(Error):
        pass

    def process_iter(self, attrs=None):
        return iter([])


class FakeCommandRunner:
    def __init__(self, failures=None):
        self.failures = failures or {}
        self.calls = []

    def stream(self, cmd, on_stdout=None, on_stderr=None, display_cmd=None, timeout=None, stdin_path=None, env=None):
        self.calls.append(cmd)
        joined = " ".join(cmd) + " " + (stdin_path or "")
        for needle, error in self.failures.items():
            if needle in joined:
                if on_stderr:
                    on_stderr(error)
                return subprocess.CompletedProcess(cmd, 1, stdout="", stderr=error)
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

    def run(self, cmd, **_kwargs):
        raise AssertionError("no blocking commands expected")


@pytest.fixture
def install_dir(tmp_path):
    root = tmp_path / "openPDC"
    root.mkdir()
    for name in ("openPDC.exe.config", "openPDCManager.exe.config"):
        (root / name).write_text(
            CONFIG_TEMPLATE.format(cs=OLD_CONNECTION_STRING, dp=OLD_DATA_PROVIDER),
            encoding="utf-8",
        )

    scripts = root / "Database scripts"
    for subdir, names in (
        ("Access", ("openPDC.mdb", "openPDC-InitialDataSet.mdb", "openPDC-SampleDataSet.mdb")),
        ("MySQL", ("openPDC.sql", "InitialDataSet.sql", "SampleDataSet.sql")),
        ("SQL Server", ("openPDC.sql", "InitialDataSet.sql", "SampleDataSet.sql")),
    ):
        (scripts / subdir).mkdir(parents=True)
        for name in names:
            (scripts / subdir / name).write_text(name, encoding="utf-8")
    return root


def build_orchestrator(install_dir, command_runner=None, service_controller=None, **kwargs):
    orchestrator = SetupOrchestrator(
        install_dir=str(install_dir),
        service_controller=service_controller or FakeServiceController(),
        command_runner=command_runner or FakeCommandRunner(),
        registry_reader=lambda: None,
        **kwargs,
    )
    orchestrator.preemption_service.psutil = FakePsutil()
    return orchestrator


def setting(path, name, section="systemSettings"):
    root = ET.parse(str(path)).getroot()
    return root.find(f"categorizedSettings/{section}/add[@name='{name}']")


def access_request(install_dir, **kwargs):
    values = {
        "configuration_kind": ConfigurationKind.DATABASE,
        "database_kind": DatabaseKind.EMBEDDED_FILE,
        "embedded_file_path": str(install_dir / "openPDC.mdb"),
    }
    values.update(kwargs)
    return ProvisioningRequest(**values)


def mysql_request(**kwargs):
    values = {
        "configuration_kind": ConfigurationKind.DATABASE,
        "database_kind": DatabaseKind.MYSQL,
        "server": ServerCredentials(host="db01", database="openPDC", user_name="root", password="adminpw"),
        "run_initial_data_script": True,
    }
    values.update(kwargs)
    return ProvisioningRequest(**values)


def assert_monotonic(values):
    assert values == sorted(values)


def test_build_provisioner_dispatches_every_kind(install_dir):
    orchestrator = build_orchestrator(install_dir)

    assert isinstance(orchestrator.build_provisioner(access_request(install_dir)), EmbeddedFileProvisioner)
    assert isinstance(orchestrator.build_provisioner(mysql_request()), MySqlProvisioner)
    assert isinstance(
        orchestrator.build_provisioner(mysql_request(database_kind=DatabaseKind.SQL_SERVER)),
        SqlServerProvisioner,
    )
    for kind in (ConfigurationKind.XML, ConfigurationKind.WEB_SERVICE):
        assert isinstance(
            orchestrator.build_provisioner(ProvisioningRequest(configuration_kind=kind)),
            ReferenceProvisioner,
        )


def test_build_provisioner_rejects_missing_database_kind(install_dir):
    orchestrator = build_orchestrator(install_dir)

    with pytest.raises(SetupError, match="Unsupported database type"):
        orchestrator.build_provisioner(ProvisioningRequest(configuration_kind=ConfigurationKind.DATABASE))


def test_new_access_file_run_succeeds(install_dir):
    orchestrator = build_orchestrator(install_dir)
    sink = RecordingSink()

    state = orchestrator.run(access_request(install_dir), sink)

    assert state.status is RunStatus.SUCCEEDED
    assert state.progress == 100
    assert sink.progress_values == [2, 95, 100]
    assert_monotonic(sink.progress_values)
    assert sink.completion.status is RunStatus.SUCCEEDED
    assert sink.navigation == NavigationMessage(True, False, False)
    assert orchestrator.can_go_forward is True
    assert (install_dir / "openPDC.mdb").read_text(encoding="utf-8") == "openPDC.mdb"

    expected = f"Provider=Microsoft.Jet.OLEDB.4.0; Data Source={install_dir / 'openPDC.mdb'}"
    for name in ("openPDC.exe.config", "openPDCManager.exe.config"):
        assert setting(install_dir / name, "ConnectionString").get("value") == expected
        assert setting(install_dir / name, "DataProviderString").get("value") == ACCESS_DATA_PROVIDER
        assert setting(install_dir / name, "ConnectionString", "statMetadataAdoMetadataProvider").get(
            "value"
        ) == expected

    assert state.old_connection_string == OLD_CONNECTION_STRING
    assert state.old_data_provider == OLD_DATA_PROVIDER
    assert state.old_oledb_connection_string == "Provider=SQLOLEDB; " + OLD_CONNECTION_STRING
    assert state.new_oledb_connection_string == expected
    assert "Modification of configuration files was successful." in sink.lines

    rollback = json.loads((install_dir / "setup-rollback.json").read_text(encoding="utf-8"))
    assert rollback["status"] == "succeeded"
    assert rollback["secrets_encrypted"] is True
    manifest = json.loads((install_dir / "setup-manifest.json").read_text(encoding="utf-8"))
    assert manifest["status"] == "success"
    assert [step["name"] for step in manifest["steps"]] == ["quiesce", "provision", "patch_configuration"]


def test_existing_access_file_is_only_repointed(install_dir):
    existing = install_dir / "existing.mdb"
    existing.write_text("live data", encoding="utf-8")
    orchestrator = build_orchestrator(install_dir)
    sink = RecordingSink()

    state = orchestrator.run(
        access_request(install_dir, embedded_file_path=str(existing), target_is_preexisting=True),
        sink,
    )

    assert state.status is RunStatus.SUCCEEDED
    assert existing.read_text(encoding="utf-8") == "live data"
    assert sink.progress_values == [100]


def test_mysql_run_with_new_user_and_encryption(install_dir):
    runner = FakeCommandRunner()
    orchestrator = build_orchestrator(install_dir, command_runner=runner)
    sink = RecordingSink()

    state = orchestrator.run(
        mysql_request(
            run_sample_data_script=True,
            create_new_database_user=True,
            new_user_name="pdcuser",
            new_user_password="userpw",
            encrypt_stored_connection_string=True,
        ),
        sink,
    )

    assert state.status is RunStatus.SUCCEEDED
    assert sink.progress_values == [30, 60, 90, 95, 100]
    assert [result.script_name for result in state.scripts_run] == [
        "openPDC.sql",
        "InitialDataSet.sql",
        "SampleDataSet.sql",
    ]
    assert state.new_connection_string == "Server=db01; Database=openPDC; Uid=pdcuser; Pwd=userpw"
    assert state.new_data_provider == MYSQL_DATA_PROVIDER

    stored = setting(install_dir / "openPDC.exe.config", "ConnectionString")
    assert stored.get("encrypted") == "True"
    assert "userpw" not in stored.get("value")
    assert CredentialCipher().decrypt(stored.get("value")) == state.new_connection_string


def test_script_failure_leaves_configuration_untouched(install_dir):
    runner = FakeCommandRunner(failures={"InitialDataSet.sql": "ERROR 1050: Table 'Runtime' already exists"})
    orchestrator = build_orchestrator(install_dir, command_runner=runner)
    sink = RecordingSink()

    state = orchestrator.run(mysql_request(), sink)

    assert state.status is RunStatus.FAILED
    assert state.progress == 0
    assert sink.progress_values == [45, 0]
    assert state.message.startswith("Script InitialDataSet.sql failed.")
    assert state.message in sink.lines
    assert sink.navigation == NavigationMessage(False, True, True)
    assert sink.completion.status is RunStatus.FAILED
    assert state.partial_failure is None
    assert setting(install_dir / "openPDC.exe.config", "ConnectionString").get("value") == OLD_CONNECTION_STRING
    assert not (install_dir / "setup-rollback.json").exists()


def test_grant_failure_reports_one_success_and_one_failure_line(install_dir):
    runner = FakeCommandRunner(failures={"GRANT": "ERROR 1044 (42000): Access denied for user 'root'"})
    orchestrator = build_orchestrator(install_dir, command_runner=runner)
    sink = RecordingSink()

    state = orchestrator.run(
        mysql_request(
            run_initial_data_script=False,
            create_new_database_user=True,
            new_user_name="pdcuser",
            new_user_password="userpw",
        ),
        sink,
    )

    assert state.status is RunStatus.FAILED
    assert state.new_connection_string is None
    assert [line for line in sink.lines if line == "Created new database user pdcuser."] == [
        "Created new database user pdcuser."
    ]
    assert len([line for line in sink.lines if line.startswith("Failed to grant privileges")]) == 1
    assert "New user created successfully." not in sink.lines
    assert sink.progress_values == [90, 0]


def test_xml_reference_patches_application_config_only(install_dir):
    orchestrator = build_orchestrator(install_dir)

    state = orchestrator.run(
        ProvisioningRequest(configuration_kind=ConfigurationKind.XML, xml_file_path="C:\\pdc\\SystemConfiguration.xml"),
        RecordingSink(),
    )

    assert state.status is RunStatus.SUCCEEDED
    app = install_dir / "openPDC.exe.config"
    assert setting(app, "ConnectionString").get("value") == "C:\\pdc\\SystemConfiguration.xml"
    assert setting(app, "DataProviderString").get("value") == ""
    assert setting(app, "ConnectionString").get("encrypted") == "False"
    assert (
        setting(install_dir / "openPDCManager.exe.config", "ConnectionString").get("value")
        == OLD_CONNECTION_STRING
    )
    assert state.patched_targets == [str(app)]
    assert state.old_oledb_connection_string is None


def test_web_service_reference_ignores_encryption_flag(install_dir):
    orchestrator = build_orchestrator(install_dir)

    state = orchestrator.run(
        ProvisioningRequest(
            configuration_kind=ConfigurationKind.WEB_SERVICE,
            web_service_url="https://pdc.example.com/metadata",
            encrypt_stored_connection_string=True,
        ),
        RecordingSink(),
    )

    assert state.status is RunStatus.SUCCEEDED
    stored = setting(install_dir / "openPDC.exe.config", "ConnectionString")
    assert stored.get("value") == "https://pdc.example.com/metadata"
    assert stored.get("encrypted") == "False"


def test_partial_patch_failure_can_be_forced(install_dir):
    (install_dir / "openPDCManager.exe.config").write_text("<configuration>", encoding="utf-8")
    orchestrator = build_orchestrator(install_dir)
    sink = RecordingSink()

    state = orchestrator.run(access_request(install_dir), sink)

    assert state.status is RunStatus.FAILED
    assert state.partial_failure is not None
    assert state.partial_failure.completed_targets == [str(install_dir / "openPDC.exe.config")]
    assert state.partial_failure.failed_target == str(install_dir / "openPDCManager.exe.config")
    assert any("pdcsetup rollback" in line for line in sink.lines)
    assert (install_dir / "setup-rollback.json").exists()

    forced = orchestrator.force_complete()

    assert forced.status is RunStatus.SUCCEEDED
    assert forced.forced_completion is True
    assert forced.progress == 100
    assert orchestrator.can_go_forward is True


def test_force_complete_requires_partial_failure(install_dir):
    orchestrator = build_orchestrator(install_dir)
    orchestrator.run(access_request(install_dir), RecordingSink())

    with pytest.raises(SetupError, match="Only a run that failed"):
        orchestrator.force_complete()


def test_run_starts_only_once(install_dir):
    orchestrator = build_orchestrator(install_dir)
    orchestrator.run(access_request(install_dir), RecordingSink())

    with pytest.raises(SetupError, match="already started"):
        orchestrator.start(access_request(install_dir))


def test_invalid_request_is_rejected_before_running(install_dir):
    orchestrator = build_orchestrator(install_dir)

    with pytest.raises(SetupError, match="embedded_file_path"):
        orchestrator.start(
            ProvisioningRequest(
                configuration_kind=ConfigurationKind.DATABASE,
                database_kind=DatabaseKind.EMBEDDED_FILE,
            )
        )

    assert orchestrator.state.status is RunStatus.IDLE


def test_quiesce_failure_does_not_stop_the_run(install_dir):
    orchestrator = build_orchestrator(
        install_dir,
        service_controller=FakeServiceController(error=RuntimeError("access denied")),
    )
    sink = RecordingSink()

    state = orchestrator.run(access_request(install_dir), sink)

    assert state.status is RunStatus.SUCCEEDED
    assert state.restart_required is False
    assert any(line.endswith("Modifications continuing anyway...") for line in sink.lines)


def test_rollback_restores_previous_settings(install_dir):
    build_orchestrator(install_dir).run(access_request(install_dir), RecordingSink())

    orchestrator = build_orchestrator(install_dir)
    state = orchestrator.run_rollback(RecordingSink())

    assert state.status is RunStatus.SUCCEEDED
    for name in ("openPDC.exe.config", "openPDCManager.exe.config"):
        assert setting(install_dir / name, "ConnectionString").get("value") == OLD_CONNECTION_STRING
        assert setting(install_dir / name, "DataProviderString").get("value") == OLD_DATA_PROVIDER
    rollback = json.loads((install_dir / "setup-rollback.json").read_text(encoding="utf-8"))
    assert rollback["status"] == "rolled_back"


def test_rollback_without_record_fails_fast(install_dir):
    orchestrator = build_orchestrator(install_dir)

    with pytest.raises(SetupError, match="Rollback file not found"):
        orchestrator.run_rollback(RecordingSink())


def test_unwritable_rollback_file_still_completes_the_run(install_dir, tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    orchestrator = build_orchestrator(install_dir, rollback_file=str(blocker / "setup-rollback.json"))
    sink = RecordingSink()

    orchestrator.start(access_request(install_dir))
    completion = orchestrator.channel.drain(sink, timeout=5)

    assert completion is not None
    assert completion.status is RunStatus.SUCCEEDED
    assert orchestrator.wait(5).status is RunStatus.SUCCEEDED
    assert any(line.startswith("Warning: Could not write rollback file") for line in sink.lines)


def test_unwritable_manifest_file_still_completes_the_run(install_dir, tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    orchestrator = build_orchestrator(install_dir, manifest_file=str(blocker / "setup-manifest.json"))
    sink = RecordingSink()

    orchestrator.start(access_request(install_dir))
    completion = orchestrator.channel.drain(sink, timeout=5)

    assert completion is not None
    assert completion.status is RunStatus.SUCCEEDED
    assert setting(install_dir / "openPDC.exe.config", "DataProviderString").get("value") == ACCESS_DATA_PROVIDER
