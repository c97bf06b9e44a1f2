import logging
import os
import sys

import click
from rich.logging import RichHandler

from .constants import DEFAULT_CONFIG_FILE
from .core import SetupError, SetupOrchestrator, console
from .models import (
    ConfigurationKind,
    DatabaseKind,
    ProvisioningRequest,
    RunStatus,
    ServerCredentials,
)
from .services.config_loader import ConfigLoader
from .services.reporting import ConsoleSink


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


def _console_log_handler():
    # Shares the console that drives the progress bar.
    return RichHandler(console=console, rich_tracebacks=True, show_level=False, show_path=False)


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[_console_log_handler()],
)


def _load_config(config):
    try:
        config_loader = ConfigLoader()
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_FILE)
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        return config_loader.load(resolved_config)
    except SetupError as exc:
        raise click.ClickException(str(exc)) from exc


def _configure_logging(verbose, log_file):
    logger = logging.getLogger("pdcsetup")
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)
    return logger


def _shared_options(command):
    options = [
        click.option(
            "--config",
            required=False,
            type=click.Path(),
            help=f"Path to a YAML configuration file. Defaults to {DEFAULT_CONFIG_FILE} if present.",
        ),
        click.option(
            "--install-dir",
            required=False,
            type=click.Path(),
            help="openPDC installation folder holding the configuration files (default: cwd).",
        ),
        click.option(
            "--companion-install-path",
            required=False,
            type=click.Path(),
            help="Web manager installation folder. Looked up in the registry when omitted.",
        ),
        click.option(
            "--rollback-file",
            required=False,
            type=click.Path(),
            help="Path of the rollback record (default: <install-dir>/setup-rollback.json).",
        ),
        click.option(
            "--force-on-partial-failure",
            is_flag=True,
            default=None,
            help="Accept a run that updated only some configuration files without asking.",
        ),
        click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging"),
        click.option("--log-file", type=click.Path(), help="Path to log file"),
    ]
    for option in reversed(options):
        command = option(command)
    return command


def _finish(orchestrator, state, force_on_partial_failure):
    if state.status is RunStatus.FAILED and state.partial_failure is not None:
        partial = state.partial_failure
        console.print(
            f"[yellow]Updated {len(partial.completed_targets)} configuration file(s) "
            f"before {partial.failed_target} failed.[/yellow]"
        )
        accept = force_on_partial_failure
        if not accept and sys.stdin.isatty():
            accept = click.confirm(
                "Some configuration files were updated. Complete setup anyway?",
                default=False,
            )
        if accept:
            state = orchestrator.force_complete()
            console.print("[yellow]Setup marked complete despite the failure.[/yellow]")

    if state.restart_required:
        console.print("[cyan]The openPDC service was stopped and must be restarted.[/cyan]")

    return 0 if state.status is RunStatus.SUCCEEDED else 1


@click.group()
def main():
    """Provision an openPDC configuration backend and repoint its configuration files."""


@main.command()
@click.option(
    "--configuration-type",
    required=False,
    type=click.Choice([kind.value for kind in ConfigurationKind]),
    help="Where openPDC reads its configuration from.",
)
@click.option(
    "--database-type",
    required=False,
    type=click.Choice([kind.value for kind in DatabaseKind]),
    help="Database backend (database configuration only).",
)
@click.option("--access-file", required=False, type=click.Path(), help="Target Access .mdb file.")
@click.option("--host", required=False, help="Database server host name.")
@click.option("--database", required=False, help="Database name.")
@click.option("--username", required=False, help="Administrative database user.")
@click.option("--password", required=False, help="Password of the administrative user.")
@click.option(
    "--integrated-security",
    is_flag=True,
    default=None,
    help="Use Windows authentication (SQL Server only).",
)
@click.option("--existing", is_flag=True, default=None, help="The target database already exists.")
@click.option(
    "--migrate",
    is_flag=True,
    default=None,
    help="Upgrade the schema of an existing database.",
)
@click.option(
    "--initial-data/--no-initial-data",
    default=None,
    help="Load the initial data set (default: on).",
)
@click.option(
    "--sample-data",
    is_flag=True,
    default=None,
    help="Load the sample data set (requires initial data).",
)
@click.option(
    "--create-user",
    is_flag=True,
    default=None,
    help="Create a dedicated database user for openPDC.",
)
@click.option("--new-user-name", required=False, help="Name of the dedicated database user.")
@click.option("--new-user-password", required=False, help="Password of the dedicated user.")
@click.option(
    "--encrypt",
    is_flag=True,
    default=None,
    help="Store the connection string encrypted in the configuration files.",
)
@click.option(
    "--data-provider-string",
    required=False,
    help="Custom data provider descriptor for MySQL or SQL Server.",
)
@click.option("--xml-file-path", required=False, help="Location of the XML configuration file.")
@click.option("--web-service-url", required=False, help="URL of the configuration web service.")
@click.option(
    "--scripts-dir",
    required=False,
    type=click.Path(),
    help="Folder holding the database scripts (default: <install-dir>/Database scripts).",
)
@click.option(
    "--probe-url",
    is_flag=True,
    default=None,
    help="Check that the web service answers before pointing openPDC at it.",
)
@_shared_options
def provision(
    configuration_type,
    database_type,
    access_file,
    host,
    database,
    username,
    password,
    integrated_security,
    existing,
    migrate,
    initial_data,
    sample_data,
    create_user,
    new_user_name,
    new_user_password,
    encrypt,
    data_provider_string,
    xml_file_path,
    web_service_url,
    scripts_dir,
    probe_url,
    config,
    install_dir,
    companion_install_path,
    rollback_file,
    force_on_partial_failure,
    verbose,
    log_file,
):
    """Provision the chosen backend and update every openPDC configuration file."""
    config_values = _load_config(config)

    configuration_type = _resolve_option(configuration_type, config_values, "configuration_type")
    database_type = _resolve_option(database_type, config_values, "database_type")
    access_file = _resolve_option(access_file, config_values, "access_file")
    host = _resolve_option(host, config_values, "host")
    database = _resolve_option(database, config_values, "database")
    username = _resolve_option(username, config_values, "username", default="")
    password = _resolve_option(password, config_values, "password", default="")
    integrated_security = bool(
        _resolve_option(integrated_security, config_values, "integrated_security", default=False)
    )
    existing = bool(_resolve_option(existing, config_values, "existing", default=False))
    migrate = bool(_resolve_option(migrate, config_values, "migrate", default=False))
    initial_data = bool(_resolve_option(initial_data, config_values, "initial_data", default=True))
    sample_data = bool(_resolve_option(sample_data, config_values, "sample_data", default=False))
    create_user = bool(_resolve_option(create_user, config_values, "create_user", default=False))
    new_user_name = _resolve_option(new_user_name, config_values, "new_user_name")
    new_user_password = _resolve_option(new_user_password, config_values, "new_user_password")
    encrypt = bool(_resolve_option(encrypt, config_values, "encrypt", default=False))
    data_provider_string = _resolve_option(
        data_provider_string, config_values, "data_provider_string"
    )
    xml_file_path = _resolve_option(xml_file_path, config_values, "xml_file_path")
    web_service_url = _resolve_option(web_service_url, config_values, "web_service_url")
    scripts_dir = _resolve_option(scripts_dir, config_values, "scripts_dir")
    probe_url = bool(_resolve_option(probe_url, config_values, "probe_url", default=False))
    install_dir = _resolve_option(install_dir, config_values, "install_dir")
    companion_install_path = _resolve_option(
        companion_install_path, config_values, "companion_install_path"
    )
    rollback_file = _resolve_option(rollback_file, config_values, "rollback_file")
    force_on_partial_failure = bool(
        _resolve_option(
            force_on_partial_failure,
            config_values,
            "force_on_partial_failure",
            default=False,
        )
    )
    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file")

    if not configuration_type:
        raise click.ClickException(
            "Missing required option '--configuration-type' (or provide it in config)."
        )

    _configure_logging(verbose, log_file)

    try:
        configuration_kind = ConfigurationKind(configuration_type)
        database_kind = DatabaseKind(database_type) if database_type else None
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    server = None
    if database_kind in (DatabaseKind.MYSQL, DatabaseKind.SQL_SERVER):
        server = ServerCredentials(
            host=host or "",
            database=database or "",
            user_name=str(username),
            password=str(password),
            integrated_security=integrated_security,
        )

    request = ProvisioningRequest(
        configuration_kind=configuration_kind,
        database_kind=database_kind,
        embedded_file_path=access_file,
        server=server,
        xml_file_path=xml_file_path,
        web_service_url=web_service_url,
        target_is_preexisting=existing,
        migrate_existing_schema=migrate,
        run_initial_data_script=initial_data,
        run_sample_data_script=sample_data,
        create_new_database_user=create_user,
        new_user_name=new_user_name,
        new_user_password=new_user_password,
        encrypt_stored_connection_string=encrypt,
        data_provider_override=data_provider_string,
    )

    try:
        orchestrator = SetupOrchestrator(
            install_dir=install_dir,
            scripts_dir=scripts_dir,
            companion_install_path=companion_install_path,
            rollback_file=rollback_file,
            probe_web_service=probe_url,
        )
        with ConsoleSink(console) as sink:
            state = orchestrator.run(request, sink)
        exit_code = _finish(orchestrator, state, force_on_partial_failure)
    except SetupError as exc:
        raise click.ClickException(str(exc)) from exc

    raise SystemExit(exit_code)


@main.command()
@_shared_options
def rollback(
    config,
    install_dir,
    companion_install_path,
    rollback_file,
    force_on_partial_failure,
    verbose,
    log_file,
):
    """Restore the connection settings that were in place before the last setup run."""
    config_values = _load_config(config)

    install_dir = _resolve_option(install_dir, config_values, "install_dir")
    companion_install_path = _resolve_option(
        companion_install_path, config_values, "companion_install_path"
    )
    rollback_file = _resolve_option(rollback_file, config_values, "rollback_file")
    force_on_partial_failure = bool(
        _resolve_option(
            force_on_partial_failure,
            config_values,
            "force_on_partial_failure",
            default=False,
        )
    )
    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file")

    _configure_logging(verbose, log_file)

    try:
        orchestrator = SetupOrchestrator(
            install_dir=install_dir,
            companion_install_path=companion_install_path,
            rollback_file=rollback_file,
        )
        with ConsoleSink(console) as sink:
            state = orchestrator.run_rollback(sink)
        exit_code = _finish(orchestrator, state, force_on_partial_failure)
    except SetupError as exc:
        raise click.ClickException(str(exc)) from exc

    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
