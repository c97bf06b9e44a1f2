"""Domain errors for pdcsetup."""

from typing import List, Optional


class SetupError(RuntimeError):
    """Raised when the setup cannot continue safely."""


class CipherError(SetupError):
    """Raised when a stored connection string cannot be decrypted."""


class PreemptionFailure(SetupError):
    """A quiesce sub-step failed. Never fatal to the run."""


class ProvisioningError(SetupError):
    """Fatal failure while provisioning a backend or patching configuration."""


class CopyFailure(ProvisioningError):
    """The embedded database image could not be copied."""


class ScriptFailure(ProvisioningError):
    def __init__(self, script_name: str, error_output: Optional[List[str]] = None):
        self.script_name = script_name
        self.error_output = list(error_output or [])
        message = f"Script {script_name} failed."
        if self.error_output:
            message = f"{message}\n" + "\n".join(self.error_output)
        super().__init__(message)


class UserCreationFailure(ProvisioningError):
    """A create-user or grant statement failed."""


class ConfigPatchFailure(ProvisioningError):
    """Base for failures while rewriting a configuration file."""

    def __init__(self, message: str, target: str = "", completed_targets: Optional[List[str]] = None):
        super().__init__(message)
        self.target = target
        self.completed_targets = list(completed_targets or [])


class ConfigParseFailure(ConfigPatchFailure):
    """A configuration document could not be parsed or lacks required sections."""


class ConfigIOFailure(ConfigPatchFailure):
    """A configuration document could not be read or written."""
