"""Shared domain models for pdcsetup."""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from .constants import (
    CONNECTION_STRING_ENTRY,
    DATA_PROVIDER_ENTRY,
    INITIAL_DATA_SCRIPT,
    METADATA_PROVIDER_SUFFIX,
    SAMPLE_DATA_SCRIPT,
    SCHEMA_SCRIPT,
    SYSTEM_SETTINGS_PATH,
)


class ConfigurationKind(str, Enum):
    DATABASE = "database"
    XML = "xml"
    WEB_SERVICE = "webservice"


class DatabaseKind(str, Enum):
    EMBEDDED_FILE = "access"
    MYSQL = "mysql"
    SQL_SERVER = "sqlserver"


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class ServerCredentials:
    """Connection details for a scripted database server."""

    host: str
    database: str
    user_name: str = ""
    password: str = ""
    integrated_security: bool = False

    def with_user(self, user_name: str, password: str) -> "ServerCredentials":
        return ServerCredentials(
            host=self.host,
            database=self.database,
            user_name=user_name,
            password=password,
            integrated_security=False,
        )


@dataclass(frozen=True)
class ProvisioningRequest:
    """User selection captured once by the shell before a run starts."""

    configuration_kind: ConfigurationKind
    database_kind: Optional[DatabaseKind] = None
    embedded_file_path: Optional[str] = None
    server: Optional[ServerCredentials] = None
    xml_file_path: Optional[str] = None
    web_service_url: Optional[str] = None
    target_is_preexisting: bool = False
    migrate_existing_schema: bool = False
    run_initial_data_script: bool = False
    run_sample_data_script: bool = False
    create_new_database_user: bool = False
    new_user_name: Optional[str] = None
    new_user_password: Optional[str] = None
    encrypt_stored_connection_string: bool = False
    data_provider_override: Optional[str] = None

    @property
    def migrate(self) -> bool:
        return self.target_is_preexisting and self.migrate_existing_schema

    @property
    def needs_schema_work(self) -> bool:
        return not self.target_is_preexisting or self.migrate

    @property
    def include_initial_data(self) -> bool:
        return not self.migrate and self.run_initial_data_script

    @property
    def include_sample_data(self) -> bool:
        return self.include_initial_data and self.run_sample_data_script


@dataclass(frozen=True)
class ConfigFileTarget:
    """A configuration document and the settings to rewrite inside it."""

    path: str
    label: str
    system_settings_path: str = SYSTEM_SETTINGS_PATH
    provider_section_suffix: str = METADATA_PROVIDER_SUFFIX
    connection_string_entry: str = CONNECTION_STRING_ENTRY
    data_provider_entry: str = DATA_PROVIDER_ENTRY


@dataclass(frozen=True)
class ScriptJob:
    scripts: List[str]

    @classmethod
    def from_request(cls, request: ProvisioningRequest) -> "ScriptJob":
        scripts = [SCHEMA_SCRIPT]
        if request.include_initial_data:
            scripts.append(INITIAL_DATA_SCRIPT)
            if request.include_sample_data:
                scripts.append(SAMPLE_DATA_SCRIPT)
        return cls(scripts=scripts)

    def __len__(self) -> int:
        return len(self.scripts)


@dataclass
class ScriptResult:
    script_name: str
    succeeded: bool
    output: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class ProvisionResult:
    connection_string: str
    data_provider: str
    scripts_run: List[ScriptResult] = field(default_factory=list)
    oledb_connection_string: Optional[str] = None


@dataclass
class PartialFailure:
    """Config patch stopped after some targets had already been rewritten."""

    completed_targets: List[str]
    failed_target: str
    error: str


@dataclass
class ProvisioningState:
    """Mutable state of a single orchestration run. One writer: the worker."""

    status: RunStatus = RunStatus.IDLE
    progress: int = 0
    message: Optional[str] = None
    new_connection_string: Optional[str] = None
    new_data_provider: Optional[str] = None
    new_oledb_connection_string: Optional[str] = None
    old_connection_string: Optional[str] = None
    old_data_provider: Optional[str] = None
    old_connection_string_encrypted: bool = False
    old_oledb_connection_string: Optional[str] = None
    restart_required: bool = False
    scripts_run: List[ScriptResult] = field(default_factory=list)
    patched_targets: List[str] = field(default_factory=list)
    partial_failure: Optional[PartialFailure] = None
    forced_completion: bool = False

    @property
    def old_values_captured(self) -> bool:
        return self.old_connection_string is not None or self.old_data_provider is not None

    def capture_old_connection_string(self, connection_string: str, encrypted: bool) -> bool:
        if self.old_connection_string is not None:
            return False
        self.old_connection_string = connection_string
        self.old_connection_string_encrypted = encrypted
        return True

    def capture_old_data_provider(self, data_provider: str) -> bool:
        if self.old_data_provider is not None:
            return False
        self.old_data_provider = data_provider
        return True
