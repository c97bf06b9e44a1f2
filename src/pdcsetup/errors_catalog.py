"""Actionable error catalog for pdcsetup."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "image_not_found": {
        "what": "Database image not found: {path}",
        "next": "Run pdcsetup from the installation folder that contains `Database scripts`.",
    },
    "script_not_found": {
        "what": "Database script not found: {path}",
        "next": "Check `--scripts-dir` or reinstall the database scripts.",
    },
    "command_not_found": {
        "what": "Required command not found: {command}.",
        "next": "Install it or add it to PATH, then retry.",
    },
    "missing_field": {
        "what": "Missing required setting `{field}` for {kind}.",
        "next": "Provide it on the command line or in the YAML configuration file.",
    },
    "insecure_http": {
        "what": "{label} uses insecure HTTP.",
        "next": "Prefer HTTPS for metadata web services whenever possible.",
    },
    "no_rollback_values": {
        "what": "Rollback record '{path}' holds no previous connection settings.",
        "next": "Only runs that patched at least one configuration file can be rolled back.",
    },
    "partial_patch": {
        "what": "Configuration update stopped at {target} after {count} file(s) were already rewritten.",
        "next": "Fix the file and rerun setup, or run `pdcsetup rollback` to restore previous settings.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
