"""Subprocess execution service for pdcsetup."""

import os
import subprocess
import threading
from typing import Callable, Dict, List, Optional

from pdcsetup.errors import SetupError
from pdcsetup.errors_catalog import actionable_error

LineCallback = Callable[[str], None]


class CommandRunner:
    """Runs external commands with consistent error handling."""

    def __init__(self, logger, default_timeout: Optional[float] = None, subprocess_module=subprocess):
        self.logger = logger
        self.default_timeout = default_timeout
        self.subprocess = subprocess_module

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        timeout: Optional[float] = None,
    ) -> subprocess.CompletedProcess:
        cmd_str = " ".join(cmd)
        self.logger.debug("Executing: %s", cmd_str)
        effective_timeout = timeout if timeout is not None else self.default_timeout

        try:
            result = self.subprocess.run(
                cmd,
                text=True,
                capture_output=capture_output,
                timeout=effective_timeout,
            )
        except FileNotFoundError as exc:
            raise SetupError(
                actionable_error("command_not_found", command=cmd[0])
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise SetupError(f"Command timed out after {effective_timeout}s: {cmd_str}") from exc
        except Exception as exc:
            raise SetupError(f"Failed to execute command: {cmd_str}. {exc}") from exc

        if capture_output and result.stdout:
            self.logger.debug("Command output: %s", result.stdout.strip())

        if result.returncode == 0:
            return result

        stderr = (result.stderr or "").strip() if capture_output else ""
        message = f"Command failed ({result.returncode}): {cmd_str}"
        if stderr:
            message = f"{message}\n{stderr}"

        if check:
            raise SetupError(message)

        self.logger.warning(message)
        return result

    def stream(
        self,
        cmd: List[str],
        on_stdout: Optional[LineCallback] = None,
        on_stderr: Optional[LineCallback] = None,
        display_cmd: Optional[str] = None,
        timeout: Optional[float] = None,
        stdin_path: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> subprocess.CompletedProcess:
        """Run a command and hand each output line to a callback as it arrives.

        Never raises on a non-zero exit; callers inspect ``returncode``. The
        returned ``stdout``/``stderr`` hold the collected lines joined by
        newlines. ``display_cmd`` replaces the logged command line so that
        passwords on the argument list stay out of the logs. ``stdin_path``
        is fed to the command as standard input. ``env`` entries are added to
        the inherited environment.
        """
        cmd_str = display_cmd or " ".join(cmd)
        self.logger.debug("Executing: %s", cmd_str)
        effective_timeout = timeout if timeout is not None else self.default_timeout

        if stdin_path and not os.path.isfile(stdin_path):
            raise SetupError(f"Input file not found: {stdin_path}")

        stdin_file = None
        try:
            if stdin_path:
                stdin_file = open(stdin_path, "rb")
            process = self.subprocess.Popen(
                cmd,
                stdin=stdin_file,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
                env={**os.environ, **env} if env else None,
            )
        except FileNotFoundError as exc:
            if stdin_file:
                stdin_file.close()
            raise SetupError(
                actionable_error("command_not_found", command=cmd[0])
            ) from exc
        except Exception as exc:
            if stdin_file:
                stdin_file.close()
            raise SetupError(f"Failed to execute command: {cmd_str}. {exc}") from exc

        stdout_lines: List[str] = []
        stderr_lines: List[str] = []
        readers = [
            threading.Thread(
                target=self._pump,
                args=(process.stdout, stdout_lines, on_stdout),
                daemon=True,
            ),
            threading.Thread(
                target=self._pump,
                args=(process.stderr, stderr_lines, on_stderr),
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        try:
            returncode = process.wait(timeout=effective_timeout)
        except subprocess.TimeoutExpired as exc:
            process.kill()
            process.wait()
            raise SetupError(f"Command timed out after {effective_timeout}s: {cmd_str}") from exc
        finally:
            for reader in readers:
                reader.join()
            if stdin_file:
                stdin_file.close()

        return subprocess.CompletedProcess(
            cmd,
            returncode,
            stdout="\n".join(stdout_lines),
            stderr="\n".join(stderr_lines),
        )

    @staticmethod
    def _pump(pipe, sink: List[str], callback: Optional[LineCallback]):
        if pipe is None:
            return
        with pipe:
            for line in pipe:
                cleaned = line.rstrip("\r\n")
                if not cleaned:
                    continue
                sink.append(cleaned)
                if callback:
                    callback(cleaned)
