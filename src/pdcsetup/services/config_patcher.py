"""Rewrites connection settings inside XML configuration files."""

import os
import xml.etree.ElementTree as ET
from typing import Iterable, List, Optional, Tuple

from pdcsetup.constants import CATEGORIZED_SETTINGS_PATH
from pdcsetup.errors import CipherError, ConfigIOFailure, ConfigParseFailure
from pdcsetup.models import ConfigFileTarget, ProvisioningState


def _is_true(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == "true"


class ConfigPatcher:
    """Applies a new connection string and data provider to every target.

    Targets are saved one by one. A failure stops the patch but leaves the
    files already written as they are; the raised error lists them.
    """

    def __init__(self, cipher, reporter, logger):
        self.cipher = cipher
        self.reporter = reporter
        self.logger = logger

    def patch(
        self,
        targets: Iterable[ConfigFileTarget],
        connection_string: str,
        data_provider: str,
        encrypt: bool,
        state: ProvisioningState,
    ) -> Tuple[Optional[str], Optional[str]]:
        stored_connection_string = (
            self.cipher.encrypt(connection_string) if encrypt else connection_string
        )
        completed: List[str] = []

        for target in targets:
            if not os.path.isfile(target.path):
                self.logger.debug("Skipping missing configuration file: %s", target.path)
                continue

            self.reporter.status(f"Attempting to modify {target.label}...")
            try:
                self.patch_file(target, stored_connection_string, data_provider, encrypt, state)
            except (ConfigParseFailure, ConfigIOFailure) as exc:
                exc.target = target.path
                exc.completed_targets = list(completed)
                raise
            completed.append(target.path)
            state.patched_targets.append(target.path)

        return state.old_connection_string, state.old_data_provider

    def patch_file(
        self,
        target: ConfigFileTarget,
        stored_connection_string: str,
        data_provider: str,
        encrypt: bool,
        state: ProvisioningState,
    ):
        tree = self._load(target)
        root = tree.getroot()

        system_settings = root.find(target.system_settings_path)
        categorized_settings = root.find(CATEGORIZED_SETTINGS_PATH)
        if system_settings is None or categorized_settings is None:
            raise ConfigParseFailure(
                f"{target.path} has no <{target.system_settings_path}> section."
            )

        connection_entry = self._find_entry(system_settings, target.connection_string_entry)
        provider_entry = self._find_entry(system_settings, target.data_provider_entry)
        self._capture_old_values(target, connection_entry, provider_entry, state)

        self._write_entries(
            system_settings,
            target,
            stored_connection_string,
            data_provider,
            encrypt,
        )

        for section in categorized_settings:
            if not isinstance(section.tag, str):
                continue
            if section.tag.endswith(target.provider_section_suffix):
                self.logger.debug("Updating metadata provider section %s", section.tag)
                self._write_entries(
                    section,
                    target,
                    stored_connection_string,
                    data_provider,
                    encrypt,
                )

        self._save(tree, target)

    def _capture_old_values(self, target, connection_entry, provider_entry, state):
        if provider_entry is not None and state.capture_old_data_provider(provider_entry.get("value") or ""):
            self.logger.debug("Captured previous data provider from %s", target.path)

        if connection_entry is None or state.old_connection_string is not None:
            return

        old_connection_string = connection_entry.get("value") or ""
        was_encrypted = _is_true(connection_entry.get("encrypted"))
        if was_encrypted and old_connection_string:
            try:
                old_connection_string = self.cipher.decrypt(old_connection_string)
            except CipherError as exc:
                raise ConfigParseFailure(
                    f"Could not decrypt the current connection string in {target.path}: {exc}"
                ) from exc

        state.capture_old_connection_string(old_connection_string, was_encrypted)
        self.logger.debug("Captured previous connection string from %s", target.path)

    @staticmethod
    def _find_entry(section: ET.Element, name: str) -> Optional[ET.Element]:
        for child in section:
            if child.get("name") == name:
                return child
        return None

    def _write_entries(self, section, target, stored_connection_string, data_provider, encrypt):
        for child in section:
            name = child.get("name")
            if name == target.data_provider_entry:
                child.set("value", data_provider)
            elif name == target.connection_string_entry:
                child.set("value", stored_connection_string)
                child.set("encrypted", str(encrypt))

    @staticmethod
    def _load(target: ConfigFileTarget) -> ET.ElementTree:
        parser = ET.XMLParser(target=ET.TreeBuilder(insert_comments=True))
        try:
            return ET.parse(target.path, parser=parser)
        except ET.ParseError as exc:
            raise ConfigParseFailure(f"Could not parse {target.path}: {exc}") from exc
        except OSError as exc:
            raise ConfigIOFailure(f"Could not read {target.path}: {exc}") from exc

    @staticmethod
    def _save(tree: ET.ElementTree, target: ConfigFileTarget):
        try:
            tree.write(target.path, encoding="utf-8", xml_declaration=True)
        except OSError as exc:
            raise ConfigIOFailure(f"Could not write {target.path}: {exc}") from exc
