import threading

from pdcsetup.models import ProvisioningState, RunStatus
from pdcsetup.services.reporting import (
    CompletionMessage,
    MessageChannel,
    NavigationMessage,
    RecordingSink,
    StatusReporter,
)


class DummyLogger:
    def __init__(self):
        self.messages = []

    def info(self, message, *args, **_kwargs):
        self.messages.append(message % args if args else message)


def test_reporter_clamps_progress_and_mirrors_state():
    channel = MessageChannel()
    state = ProvisioningState()
    reporter = StatusReporter(channel, DummyLogger(), state)

    reporter.progress(150)
    reporter.progress(-5)

    sink = RecordingSink()
    channel.drain_pending(sink)
    assert sink.progress_values == [100, 0]
    assert state.progress == 0


def test_reporter_logs_non_empty_status_lines():
    channel = MessageChannel()
    logger = DummyLogger()
    reporter = StatusReporter(channel, logger)

    reporter.status("Attempting to run openPDC.sql script...")
    reporter.status()

    sink = RecordingSink()
    channel.drain_pending(sink)
    assert sink.lines == ["Attempting to run openPDC.sql script...", ""]
    assert logger.messages == ["Attempting to run openPDC.sql script..."]


def test_drain_applies_messages_in_order_until_completion():
    channel = MessageChannel()
    reporter = StatusReporter(channel, DummyLogger())

    def worker():
        reporter.navigation(False, False, False)
        for value in (10, 20, 30):
            reporter.progress(value)
        reporter.complete(RunStatus.SUCCEEDED)
        reporter.status("after completion")

    thread = threading.Thread(target=worker)
    thread.start()
    sink = RecordingSink()
    completion = channel.drain(sink, timeout=5)
    thread.join()

    assert completion == CompletionMessage(RunStatus.SUCCEEDED)
    assert sink.progress_values == [10, 20, 30]
    assert sink.navigation == NavigationMessage(False, False, False)
    assert sink.lines == []


def test_drain_returns_none_on_timeout():
    assert MessageChannel().drain(RecordingSink(), timeout=0.01) is None
