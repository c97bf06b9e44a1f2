"""Worker-to-shell message channel for status and progress updates."""

import queue
from dataclasses import dataclass
from typing import List, Optional, Union

from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

from pdcsetup.models import ProvisioningState, RunStatus


@dataclass(frozen=True)
class StatusMessage:
    text: str


@dataclass(frozen=True)
class ProgressMessage:
    value: int


@dataclass(frozen=True)
class NavigationMessage:
    can_go_forward: bool
    can_go_back: bool
    can_cancel: bool


@dataclass(frozen=True)
class CompletionMessage:
    status: RunStatus
    message: Optional[str] = None


Message = Union[StatusMessage, ProgressMessage, NavigationMessage, CompletionMessage]


class MessageChannel:
    """Bounded FIFO between the single worker and the single consumer."""

    def __init__(self, maxsize: int = 1024):
        self._queue: "queue.Queue[Message]" = queue.Queue(maxsize=maxsize)

    def post(self, message: Message):
        self._queue.put(message)

    def drain(self, sink, timeout: Optional[float] = None) -> Optional[CompletionMessage]:
        """Apply messages to ``sink`` in arrival order until the run completes.

        Returns the completion message, or None when ``timeout`` elapses
        between two messages.
        """
        while True:
            try:
                message = self._queue.get(timeout=timeout)
            except queue.Empty:
                return None
            sink.apply(message)
            if isinstance(message, CompletionMessage):
                return message

    def drain_pending(self, sink) -> List[Message]:
        applied: List[Message] = []
        while True:
            try:
                message = self._queue.get_nowait()
            except queue.Empty:
                return applied
            sink.apply(message)
            applied.append(message)


class StatusReporter:
    """Worker-side facade: posts messages and mirrors progress into the state."""

    def __init__(self, channel: MessageChannel, logger, state: Optional[ProvisioningState] = None):
        self.channel = channel
        self.logger = logger
        self.state = state

    def status(self, text: str = ""):
        if text:
            self.logger.info(text)
        self.channel.post(StatusMessage(text))

    def progress(self, value: int):
        value = max(0, min(100, int(value)))
        if self.state is not None:
            self.state.progress = value
        self.channel.post(ProgressMessage(value))

    def navigation(self, can_go_forward: bool, can_go_back: bool, can_cancel: bool):
        self.channel.post(NavigationMessage(can_go_forward, can_go_back, can_cancel))

    def complete(self, status: RunStatus, message: Optional[str] = None):
        self.channel.post(CompletionMessage(status, message))


class RecordingSink:
    """Collects everything the worker reported. Used by library callers and tests."""

    def __init__(self):
        self.lines: List[str] = []
        self.progress_values: List[int] = []
        self.navigation: Optional[NavigationMessage] = None
        self.completion: Optional[CompletionMessage] = None

    @property
    def progress(self) -> int:
        return self.progress_values[-1] if self.progress_values else 0

    def apply(self, message: Message):
        if isinstance(message, StatusMessage):
            self.lines.append(message.text)
        elif isinstance(message, ProgressMessage):
            self.progress_values.append(message.value)
        elif isinstance(message, NavigationMessage):
            self.navigation = message
        elif isinstance(message, CompletionMessage):
            self.completion = message


class ConsoleSink(RecordingSink):
    """Renders progress with a rich bar. Status lines reach the user through logging."""

    def __init__(self, console: Console):
        super().__init__()
        self.console = console
        self._progress: Optional[Progress] = None
        self._task = None

    def __enter__(self):
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=self.console,
            transient=True,
        )
        self._progress.__enter__()
        self._task = self._progress.add_task("[cyan]Setting up configuration...", total=100)
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._progress is not None:
            self._progress.__exit__(exc_type, exc, tb)
            self._progress = None
        return False

    def apply(self, message: Message):
        super().apply(message)
        if isinstance(message, ProgressMessage):
            if self._progress is not None:
                self._progress.update(self._task, completed=message.value)
        elif isinstance(message, CompletionMessage):
            if message.status == RunStatus.SUCCEEDED:
                self.console.print("[bold green]Configuration setup completed.[/bold green]")
            else:
                self.console.print("[bold red]Configuration setup failed.[/bold red]")
