import pytest

from pdcsetup.errors import SetupError
from pdcsetup.models import ConfigurationKind, DatabaseKind, ProvisioningRequest, ServerCredentials
from pdcsetup.services.validation import ValidationService


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


class DummyReporter:
    def __init__(self):
        self.lines = []

    def status(self, text=""):
        self.lines.append(text)


class FakeResponse:
    def __init__(self, error=None):
        self.error = error
        self.closed = False

    def raise_for_status(self):
        if self.error is not None:
            raise self.error

    def close(self):
        self.closed = True


class FakeRequestsModule:
    class RequestException(Exception):
        pass

    def __init__(self, outcomes):
        self.outcomes = dict(outcomes)
        self.methods = []

    def request(self, method, url, **_kwargs):
        self.methods.append(method)
        outcome = self.outcomes[method]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def server_request(kind=DatabaseKind.MYSQL, **kwargs):
    values = {
        "configuration_kind": ConfigurationKind.DATABASE,
        "database_kind": kind,
        "server": ServerCredentials(host="db01", database="openPDC", user_name="root", password="pw"),
    }
    values.update(kwargs)
    return ProvisioningRequest(**values)


def test_validation_accepts_complete_server_request():
    ValidationService(DummyLogger()).validate_request(server_request())


def test_validation_requires_host():
    request = server_request(server=ServerCredentials(host="", database="openPDC", user_name="root"))

    with pytest.raises(SetupError, match="Missing required setting `host` for MySQL"):
        ValidationService(DummyLogger()).validate_request(request)


def test_validation_allows_integrated_security_without_user():
    request = server_request(
        kind=DatabaseKind.SQL_SERVER,
        server=ServerCredentials(host="sql01", database="openPDC", integrated_security=True),
    )

    ValidationService(DummyLogger()).validate_request(request)


def test_validation_rejects_unsafe_new_user_name():
    request = server_request(create_new_database_user=True, new_user_name="pdc; DROP DATABASE openPDC")

    with pytest.raises(SetupError, match="Invalid database user name"):
        ValidationService(DummyLogger()).validate_request(request)


def test_validation_requires_access_file():
    request = ProvisioningRequest(
        configuration_kind=ConfigurationKind.DATABASE,
        database_kind=DatabaseKind.EMBEDDED_FILE,
    )

    with pytest.raises(SetupError, match="embedded_file_path"):
        ValidationService(DummyLogger()).validate_request(request)


def test_validation_requires_database_type():
    with pytest.raises(SetupError, match="requires a database type"):
        ValidationService(DummyLogger()).validate_request(
            ProvisioningRequest(configuration_kind=ConfigurationKind.DATABASE)
        )


def test_validation_requires_http_web_service_url():
    request = ProvisioningRequest(
        configuration_kind=ConfigurationKind.WEB_SERVICE,
        web_service_url="ftp://pdc.example.com/metadata",
    )

    with pytest.raises(SetupError, match="must be an http"):
        ValidationService(DummyLogger()).validate_request(request)


def test_probe_falls_back_to_get():
    fake_requests = FakeRequestsModule(
        {"HEAD": FakeRequestsModule.RequestException("405 Method Not Allowed"), "GET": FakeResponse()}
    )
    service = ValidationService(DummyLogger(), requests_module=fake_requests)
    reporter = DummyReporter()

    assert service.probe_web_service("https://pdc.example.com/metadata", reporter) is True
    assert fake_requests.methods == ["HEAD", "GET"]
    assert reporter.lines == []


def test_probe_failure_is_a_warning_only():
    error = FakeRequestsModule.RequestException("connection refused")
    fake_requests = FakeRequestsModule({"HEAD": error, "GET": error})
    service = ValidationService(DummyLogger(), requests_module=fake_requests)
    reporter = DummyReporter()

    assert service.probe_web_service("http://pdc.example.com/metadata", reporter) is False
    assert reporter.lines[0].startswith("Warning: Web service URL uses insecure HTTP.")
    assert "not reachable" in reporter.lines[-1]
