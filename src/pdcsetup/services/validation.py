"""Request and URL validation helpers for pdcsetup."""

import re
from typing import Optional
from urllib.parse import urlparse

import requests

from pdcsetup.errors import SetupError
from pdcsetup.errors_catalog import actionable_error
from pdcsetup.models import ConfigurationKind, DatabaseKind, ProvisioningRequest

USER_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,63}$")


class ValidationService:
    """Checks a request before a run starts, and optionally probes web services."""

    def __init__(self, logger, requests_module=requests, probe_timeout: float = 15.0):
        self.logger = logger
        self.requests = requests_module
        self.probe_timeout = probe_timeout

    def is_url(self, location: str) -> bool:
        scheme = urlparse(location).scheme.lower()
        return scheme in {"http", "https"}

    def validate_request(self, request: ProvisioningRequest):
        kind = request.configuration_kind

        if kind is ConfigurationKind.XML:
            self._require(request.xml_file_path, "xml_file_path", "XML")
            return

        if kind is ConfigurationKind.WEB_SERVICE:
            self._require(request.web_service_url, "web_service_url", "web service")
            if not self.is_url(request.web_service_url):
                raise SetupError(
                    f"Web service location must be an http(s) URL: {request.web_service_url}"
                )
            return

        if request.database_kind is None:
            raise SetupError("A database configuration requires a database type.")

        if request.database_kind is DatabaseKind.EMBEDDED_FILE:
            self._require(request.embedded_file_path, "embedded_file_path", "Access")
            return

        label = "MySQL" if request.database_kind is DatabaseKind.MYSQL else "SQL Server"
        server = request.server
        if server is None:
            raise SetupError(actionable_error("missing_field", field="host", kind=label))
        self._require(server.host, "host", label)
        self._require(server.database, "database", label)
        if not server.integrated_security:
            self._require(server.user_name, "username", label)

        if request.create_new_database_user:
            self._require(request.new_user_name, "new_user_name", label)
            if not USER_NAME_PATTERN.match(request.new_user_name):
                raise SetupError(
                    f"Invalid database user name '{request.new_user_name}'. "
                    "Use letters, digits and underscores only."
                )

    @staticmethod
    def _require(value: Optional[str], field: str, kind: str):
        if not value or not str(value).strip():
            raise SetupError(actionable_error("missing_field", field=field, kind=kind))

    def probe_web_service(self, location: str, reporter) -> bool:
        """Reachability check for a metadata web service. Never fatal."""
        if urlparse(location).scheme.lower() == "http":
            reporter.status(f"Warning: {actionable_error('insecure_http', label='Web service URL')}")

        last_error: Optional[Exception] = None
        for method in ("HEAD", "GET"):
            try:
                response = self.requests.request(
                    method,
                    location,
                    allow_redirects=True,
                    timeout=self.probe_timeout,
                    stream=(method == "GET"),
                )
                response.raise_for_status()
                response.close()
                self.logger.debug("Web service %s answered %s", location, method)
                return True
            except self.requests.RequestException as exc:
                last_error = exc

        self.logger.warning("Web service %s is not reachable: %s", location, last_error)
        reporter.status(
            f"Warning: web service {location} is not reachable ({last_error}). "
            "The configuration will point to it anyway."
        )
        return False
