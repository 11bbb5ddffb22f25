"""Configuration loading and validation for the proxy's expected topology."""

from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from bleak.uuids import normalize_uuid_str
from jsonschema import Draft202012Validator
from jsonschema.exceptions import best_match

from bleproxy.core.errors import ConfigLoadError, ConfigValidationError
from bleproxy.core.model import ProxyConfig, ServiceConfig

CONFIG_FILENAME = "proxy.yaml"
SCHEMA_FILENAME = "proxy.schema.json"
_SHORT_UUID_LENGTHS = (4, 8)
LOGGER = logging.getLogger(__name__)


class ProxyConfigLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate keys and keeps yes/no/on/off as strings."""

    def construct_unique_mapping(self, node: yaml.MappingNode, deep: bool = False) -> dict[Any, Any]:
        self.flatten_mapping(node)
        result: dict[Any, Any] = {}
        for key_node, value_node in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in result:
                line = key_node.start_mark.line + 1
                raise ConfigValidationError(f"Duplicate key '{key}' on line {line}")
            result[key] = self.construct_object(value_node, deep=deep)
        return result


ProxyConfigLoader.yaml_implicit_resolvers = {
    first: [(tag, pattern) for tag, pattern in resolvers if tag != "tag:yaml.org,2002:bool"]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
ProxyConfigLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    ProxyConfigLoader.construct_unique_mapping,
)


@lru_cache(maxsize=1)
def _schema_validator() -> Draft202012Validator:
    text = resources.files("bleproxy.schemas").joinpath(SCHEMA_FILENAME).read_text(encoding="utf-8")
    schema = json.loads(text)
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def default_config_path() -> Path:
    config_home = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(config_home) / "bleproxy" / CONFIG_FILENAME


def _read_document(path: Path) -> dict[str, Any]:
    try:
        with path.open(encoding="utf-8") as handle:
            document = yaml.load(handle, Loader=ProxyConfigLoader)
    except OSError as exc:
        raise ConfigLoadError(f"Could not read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(document, dict):
        raise ConfigValidationError(f"Config file {path} must contain a mapping at root")
    return document


def normalize_uuid(value: str, *, context: str) -> str:
    """Expand a 16/32-bit SIG UUID and lowercase any UUID to its 128-bit form."""
    candidate = value.strip().lower()
    if len(candidate) not in _SHORT_UUID_LENGTHS and len(candidate) != 36:
        raise ConfigValidationError(f"{context}: '{value}' is not a 16-bit, 32-bit or 128-bit UUID")
    try:
        return normalize_uuid_str(candidate)
    except ValueError as exc:
        raise ConfigValidationError(f"{context}: '{value}' is not a valid UUID") from exc


def _check_schema(doc: dict[str, Any], source: Path | str) -> None:
    error = best_match(_schema_validator().iter_errors(doc))
    if error is None:
        return
    location = "/".join(str(part) for part in error.absolute_path)
    suffix = f" at {location}" if location else ""
    raise ConfigValidationError(f"Schema validation failed for {source}{suffix}: {error.message}")


def build_config(doc: dict[str, Any], source: Path | str = "<config>") -> ProxyConfig:
    _check_schema(doc, source)

    services: list[ServiceConfig] = []
    owner: dict[str, str] = {}
    for index, entry in enumerate(doc["services"]):
        service_id = normalize_uuid(entry["uuid"], context=f"services.{index}.uuid")
        if any(service.uuid == service_id for service in services):
            raise ConfigValidationError(f"Service {service_id} is configured more than once in {source}")

        characteristic_ids: list[str] = []
        for position, raw in enumerate(entry["characteristics"]):
            characteristic_id = normalize_uuid(raw, context=f"services.{index}.characteristics.{position}")
            if characteristic_id in owner:
                raise ConfigValidationError(
                    f"Characteristic {characteristic_id} appears in both service {owner[characteristic_id]} "
                    f"and service {service_id}; characteristic ids must be unique in {source}"
                )
            owner[characteristic_id] = service_id
            characteristic_ids.append(characteristic_id)
        services.append(ServiceConfig(uuid=service_id, characteristics=tuple(characteristic_ids)))

    scan_timeout = doc.get("scan_timeout_s")
    return ProxyConfig(
        target_name=doc["target_name"].strip(),
        advertise_name=doc.get("advertise_name"),
        scan_timeout_s=None if scan_timeout is None else float(scan_timeout),
        connect_timeout_s=float(doc.get("connect_timeout_s", 10.0)),
        services=tuple(services),
    )


def load_config(path: Path | None = None, *, target_name: str | None = None) -> ProxyConfig:
    """Load ``proxy.yaml`` from ``path`` or the XDG config directory.

    ``target_name`` replaces the configured target before validation.
    """
    source = path or default_config_path()
    if path is None and not source.exists():
        raise ConfigLoadError(f"No configuration found at {source}. Pass --config or create it.")
    doc = _read_document(source)
    if target_name:
        LOGGER.info("Overriding configured target name with '%s'", target_name)
        doc["target_name"] = target_name
    config = build_config(doc, source)
    LOGGER.debug("Loaded configuration for '%s' from %s", config.target_name, source)
    return config
