"""Backend provisioners: one variant per storage technology."""

import os
from typing import Dict, List, Optional, Tuple

from pdcsetup.constants import (
    ACCESS_DATA_PROVIDER,
    ACCESS_OLEDB_PROVIDER,
    ACCESS_SCRIPTS_DIR,
    INITIAL_DATA_IMAGE,
    MYSQL_DATA_PROVIDER,
    MYSQL_OLEDB_PROVIDER,
    MYSQL_SCRIPTS_DIR,
    SAMPLE_DATA_IMAGE,
    SCHEMA_IMAGE,
    SQL_SERVER_DATA_PROVIDER,
    SQL_SERVER_MANAGER_ROLE,
    SQL_SERVER_OLEDB_PROVIDER,
    SQL_SERVER_SCRIPTS_DIR,
)
from pdcsetup.errors import ScriptFailure, SetupError, UserCreationFailure
from pdcsetup.errors_catalog import actionable_error
from pdcsetup.models import (
    ConfigurationKind,
    ProvisioningRequest,
    ProvisioningState,
    ProvisionResult,
    ScriptJob,
    ScriptResult,
    ServerCredentials,
)

# (statement, database override); None runs against the active database.
Statement = Tuple[str, Optional[str]]


def to_oledb_connection_string(connection_string: str, data_provider: str) -> str:
    """OLE DB rendition of a stored connection string, chosen by its provider."""
    if "MySqlConnection" in data_provider:
        return f"Provider={MYSQL_OLEDB_PROVIDER}; {connection_string}"
    if "OleDbConnection" in data_provider:
        return connection_string
    return f"Provider={SQL_SERVER_OLEDB_PROVIDER}; {connection_string}"


def _sql_literal(value: str) -> str:
    return value.replace("'", "''")


class EmbeddedFileProvisioner:
    """Copies a pre-built Access database image to the chosen location."""

    def __init__(self, filesystem_service, reporter, logger, scripts_dir: str):
        self.filesystem_service = filesystem_service
        self.reporter = reporter
        self.logger = logger
        self.images_dir = os.path.join(scripts_dir, ACCESS_SCRIPTS_DIR)

    def select_image(self, request: ProvisioningRequest) -> str:
        if request.include_sample_data:
            name = SAMPLE_DATA_IMAGE
        elif request.include_initial_data:
            name = INITIAL_DATA_IMAGE
        else:
            name = SCHEMA_IMAGE
        return os.path.join(self.images_dir, name)

    def provision(self, request: ProvisioningRequest, state: ProvisioningState) -> ProvisionResult:
        destination = request.embedded_file_path
        if not destination:
            raise SetupError(actionable_error("missing_field", field="embedded_file_path", kind="Access"))

        connection_string = f"Provider={ACCESS_OLEDB_PROVIDER}; Data Source={destination}"

        if request.needs_schema_work:
            image = self.select_image(request)
            self.reporter.progress(2)
            self.reporter.status(f"Attempting to copy file {image} to {destination}...")
            self.filesystem_service.copy_file(image, destination)
            self.reporter.progress(95)
            self.reporter.status("File copy successful.")
            self.reporter.status()
        else:
            self.logger.info("Using existing database file %s as-is.", destination)

        return ProvisionResult(
            connection_string=connection_string,
            data_provider=ACCESS_DATA_PROVIDER,
            oledb_connection_string=connection_string,
        )


class ScriptProvisioner:
    """Runs the ordered script job against a server through its command-line client."""

    SCRIPTS_SUBDIR = ""
    CLIENT = ""
    DEFAULT_DATA_PROVIDER = ""
    OLEDB_PROVIDER = ""
    LABEL = ""

    def __init__(self, command_runner, reporter, logger, scripts_dir: str):
        self.command_runner = command_runner
        self.reporter = reporter
        self.logger = logger
        self.scripts_dir = os.path.join(scripts_dir, self.SCRIPTS_SUBDIR)
        self.credentials: Optional[ServerCredentials] = None

    # Backend specific pieces.

    def script_command(self, script_path: str) -> List[str]:
        raise NotImplementedError

    def statement_command(self, statement: str, database: Optional[str]) -> List[str]:
        raise NotImplementedError

    def client_env(self) -> Dict[str, str]:
        """Environment that carries the password, so it never shows in the process list."""
        return {}

    def connection_string(self, credentials: ServerCredentials) -> str:
        raise NotImplementedError

    def create_user_statements(self, user: str, password: str) -> List[Statement]:
        raise NotImplementedError

    def grant_statements(self, user: str) -> List[Statement]:
        raise NotImplementedError

    # Shared flow.

    def provision(self, request: ProvisioningRequest, state: ProvisioningState) -> ProvisionResult:
        if request.server is None:
            raise SetupError(actionable_error("missing_field", field="server", kind=self.LABEL))
        self.credentials = request.server
        scripts_run: List[ScriptResult] = []

        if request.needs_schema_work:
            job = ScriptJob.from_request(request)
            for index, script_name in enumerate(job.scripts, start=1):
                self.reporter.status(f"Attempting to run {script_name} script...")
                result = self.run_script(script_name)
                scripts_run.append(result)
                state.scripts_run.append(result)
                if not result.succeeded:
                    raise ScriptFailure(script_name, result.errors)

                self.reporter.progress(90 * index // len(job))
                self.reporter.status(f"{script_name} ran successfully.")
                self.reporter.status()

            if request.create_new_database_user:
                self.create_user(request.new_user_name, request.new_user_password)
        else:
            self.logger.info("Using existing %s database without running scripts.", self.LABEL)

        connection_string = self.connection_string(self.credentials)
        return ProvisionResult(
            connection_string=connection_string,
            data_provider=request.data_provider_override or self.DEFAULT_DATA_PROVIDER,
            scripts_run=scripts_run,
            oledb_connection_string=f"Provider={self.OLEDB_PROVIDER}; {connection_string}",
        )

    def run_script(self, script_name: str) -> ScriptResult:
        script_path = os.path.join(self.scripts_dir, script_name)
        if not os.path.isfile(script_path):
            return ScriptResult(
                script_name=script_name,
                succeeded=False,
                errors=[actionable_error("script_not_found", path=script_path)],
            )

        cmd = self.script_command(script_path)
        completed = self.command_runner.stream(
            cmd,
            on_stdout=self.reporter.status,
            on_stderr=self.reporter.status,
            display_cmd=self._display(cmd),
            stdin_path=self.script_stdin(script_path),
            env=self.client_env(),
        )
        return ScriptResult(
            script_name=script_name,
            succeeded=completed.returncode == 0,
            output=completed.stdout.splitlines() if completed.stdout else [],
            errors=completed.stderr.splitlines() if completed.stderr else [],
        )

    def script_stdin(self, script_path: str) -> Optional[str]:
        return None

    def execute_statement(
        self,
        statement: str,
        database: Optional[str] = None,
        secret: Optional[str] = None,
    ) -> Tuple[bool, List[str]]:
        cmd = self.statement_command(statement, database)
        completed = self.command_runner.stream(
            cmd,
            on_stdout=self.reporter.status,
            on_stderr=self.reporter.status,
            display_cmd=self._display(cmd, secret),
            env=self.client_env(),
        )
        errors = completed.stderr.splitlines() if completed.stderr else []
        return completed.returncode == 0, errors

    def create_user(self, user: Optional[str], password: Optional[str]):
        if not user:
            raise SetupError(actionable_error("missing_field", field="new_user_name", kind=self.LABEL))
        password = password or ""

        self.reporter.status(f"Attempting to create new user {user}...")
        for statement, database in self.create_user_statements(user, password):
            succeeded, errors = self.execute_statement(statement, database, secret=password)
            if not succeeded:
                raise UserCreationFailure(self._failure(f"Failed to create new user {user}.", errors))
        self.reporter.status(f"Created new database user {user}.")

        for statement, database in self.grant_statements(user):
            succeeded, errors = self.execute_statement(statement, database)
            if not succeeded:
                raise UserCreationFailure(
                    self._failure(f"Failed to grant privileges to new user {user}.", errors)
                )

        self.credentials = self.credentials.with_user(user, password)
        self.reporter.progress(95)
        self.reporter.status("New user created successfully.")
        self.reporter.status()

    @staticmethod
    def _failure(message: str, errors: List[str]) -> str:
        if errors:
            return f"{message}\n" + "\n".join(errors)
        return message

    def _display(self, cmd: List[str], secret: Optional[str] = None) -> str:
        rendered = " ".join(cmd)
        for value in (self.credentials.password if self.credentials else "", secret):
            if value:
                rendered = rendered.replace(value, "****")
        return rendered


class MySqlProvisioner(ScriptProvisioner):
    SCRIPTS_SUBDIR = MYSQL_SCRIPTS_DIR
    CLIENT = "mysql"
    DEFAULT_DATA_PROVIDER = MYSQL_DATA_PROVIDER
    OLEDB_PROVIDER = MYSQL_OLEDB_PROVIDER
    LABEL = "MySQL"

    def _base_command(self) -> List[str]:
        creds = self.credentials
        cmd = [self.CLIENT, f"--host={creds.host}"]
        if creds.user_name:
            cmd.append(f"--user={creds.user_name}")
        return cmd

    def client_env(self) -> Dict[str, str]:
        if self.credentials.password:
            return {"MYSQL_PWD": self.credentials.password}
        return {}

    def script_command(self, script_path: str) -> List[str]:
        return self._base_command()

    def script_stdin(self, script_path: str) -> Optional[str]:
        return script_path

    def statement_command(self, statement: str, database: Optional[str]) -> List[str]:
        return self._base_command() + [
            f"--database={database or self.credentials.database}",
            f"--execute={statement}",
        ]

    def connection_string(self, credentials: ServerCredentials) -> str:
        return (
            f"Server={credentials.host}; Database={credentials.database}; "
            f"Uid={credentials.user_name}; Pwd={credentials.password}"
        )

    def create_user_statements(self, user: str, password: str) -> List[Statement]:
        return [(f"CREATE USER {user} IDENTIFIED BY '{_sql_literal(password)}'", None)]

    def grant_statements(self, user: str) -> List[Statement]:
        return [(f"GRANT SELECT, UPDATE, INSERT ON {self.credentials.database}.* TO {user}", None)]


class SqlServerProvisioner(ScriptProvisioner):
    SCRIPTS_SUBDIR = SQL_SERVER_SCRIPTS_DIR
    CLIENT = "sqlcmd"
    DEFAULT_DATA_PROVIDER = SQL_SERVER_DATA_PROVIDER
    OLEDB_PROVIDER = SQL_SERVER_OLEDB_PROVIDER
    LABEL = "SQL Server"

    def _base_command(self, database: Optional[str] = None) -> List[str]:
        creds = self.credentials
        cmd = [self.CLIENT, "-S", creds.host, "-b"]
        if database:
            cmd += ["-d", database]
        if creds.integrated_security:
            cmd.append("-E")
        else:
            cmd += ["-U", creds.user_name]
        return cmd

    def client_env(self) -> Dict[str, str]:
        if self.credentials.integrated_security or not self.credentials.password:
            return {}
        return {"SQLCMDPASSWORD": self.credentials.password}

    def script_command(self, script_path: str) -> List[str]:
        return self._base_command() + ["-i", script_path]

    def statement_command(self, statement: str, database: Optional[str]) -> List[str]:
        return self._base_command(database or self.credentials.database) + ["-Q", statement]

    def connection_string(self, credentials: ServerCredentials) -> str:
        base = f"Data Source={credentials.host}; Initial Catalog={credentials.database}"
        if credentials.integrated_security:
            return f"{base}; Integrated Security=SSPI"
        return f"{base}; User ID={credentials.user_name}; Password={credentials.password}"

    def create_user_statements(self, user: str, password: str) -> List[Statement]:
        return [
            (
                f"IF NOT EXISTS (SELECT * FROM sys.server_principals WHERE name = N'{user}') "
                f"CREATE LOGIN [{user}] WITH PASSWORD=N'{_sql_literal(password)}', "
                "DEFAULT_DATABASE=[master], CHECK_EXPIRATION=OFF, CHECK_POLICY=OFF",
                "master",
            ),
            (f"CREATE USER [{user}] FOR LOGIN [{user}]", None),
        ]

    def grant_statements(self, user: str) -> List[Statement]:
        return [(f"EXEC sp_addrolemember N'{SQL_SERVER_MANAGER_ROLE}', N'{user}'", None)]


class ReferenceProvisioner:
    """XML file or web-service metadata source: records the location, no schema work."""

    def __init__(self, reporter, logger, validation_service=None, probe_url: bool = False):
        self.reporter = reporter
        self.logger = logger
        self.validation_service = validation_service
        self.probe_url = probe_url

    def provision(self, request: ProvisioningRequest, state: ProvisioningState) -> ProvisionResult:
        if request.configuration_kind is ConfigurationKind.XML:
            location = request.xml_file_path
            if not location:
                raise SetupError(actionable_error("missing_field", field="xml_file_path", kind="XML"))
        else:
            location = request.web_service_url
            if not location:
                raise SetupError(
                    actionable_error("missing_field", field="web_service_url", kind="web service")
                )
            if self.probe_url and self.validation_service is not None:
                self.validation_service.probe_web_service(location, self.reporter)

        self.logger.debug("Using external metadata source %s", location)
        return ProvisionResult(connection_string=location, data_provider="")
