"""Configuration document model.

A configuration document is the YAML file committed to the source
repository::

    configVersion: v1
    metadata:
      author: jane
      name: app
      namespace: ns1
    configuration:
      - name: DB_HOST
        value: db.ns1
        encrypted: false
      - name: DB_PASS
        value: <base64 ciphertext>
        encrypted: true
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from heimdall.errors import DocumentMalformed
from heimdall.models.workload import materialized_name


@dataclass(frozen=True)
class Metadata:
    author: str
    name: str
    namespace: str


@dataclass(frozen=True)
class ConfigurationEntity:
    """A single named value.  ``encrypted`` values hold base64 ciphertext."""

    name: str
    value: str
    encrypted: bool = False


@dataclass(frozen=True)
class Configuration:
    """Versioned configuration document.  Read-only to the controller."""

    config_version: str
    metadata: Metadata
    entities: tuple[ConfigurationEntity, ...] = field(default_factory=tuple)

    @property
    def resource_name(self) -> str:
        """Name of the ConfigMap materialized from this document."""
        return materialized_name(self.metadata.name, self.config_version)

    def entity(self, name: str) -> ConfigurationEntity | None:
        for entity in self.entities:
            if entity.name == name:
                return entity
        return None

    def with_entity_value(self, name: str, value: str) -> Configuration:
        """Return a copy with *name*'s value replaced, preserving order."""
        entities = tuple(replace(e, value=value) if e.name == name else e for e in self.entities)
        return replace(self, entities=entities)

    @classmethod
    def from_dict(cls, raw: Any) -> Configuration:
        """Validate a parsed YAML mapping.

        Raises:
            DocumentMalformed: on a missing field, a wrong type or a
                duplicate entity name.
        """
        if not isinstance(raw, dict):
            raise DocumentMalformed("configuration document must be a mapping")

        version = _require_str(raw, "configVersion")
        meta_raw = raw.get("metadata")
        if not isinstance(meta_raw, dict):
            raise DocumentMalformed("'metadata' must be a mapping")
        metadata = Metadata(
            author=_optional_str(meta_raw, "author"),
            name=_require_str(meta_raw, "name", prefix="metadata."),
            namespace=_require_str(meta_raw, "namespace", prefix="metadata."),
        )

        entities_raw = raw.get("configuration") or []
        if not isinstance(entities_raw, list):
            raise DocumentMalformed("'configuration' must be a list")

        entities: list[ConfigurationEntity] = []
        seen: set[str] = set()
        for index, item in enumerate(entities_raw):
            if not isinstance(item, dict):
                raise DocumentMalformed(f"configuration[{index}] must be a mapping")
            prefix = f"configuration[{index}]."
            name = _require_str(item, "name", prefix=prefix)
            if name in seen:
                raise DocumentMalformed(f"duplicate entity name '{name}'")
            seen.add(name)
            encrypted = item.get("encrypted", False)
            if not isinstance(encrypted, bool):
                raise DocumentMalformed(f"{prefix}encrypted must be a boolean")
            value = item.get("value", "")
            if value is None:
                value = ""
            if isinstance(value, bool | dict | list):
                raise DocumentMalformed(f"{prefix}value must be a scalar")
            entities.append(ConfigurationEntity(name=name, value=str(value), encrypted=encrypted))

        return cls(config_version=version, metadata=metadata, entities=tuple(entities))

    def to_dict(self) -> dict[str, Any]:
        return {
            "configVersion": self.config_version,
            "metadata": {
                "author": self.metadata.author,
                "name": self.metadata.name,
                "namespace": self.metadata.namespace,
            },
            "configuration": [
                {"name": e.name, "value": e.value, "encrypted": e.encrypted} for e in self.entities
            ],
        }


def _require_str(raw: dict[str, Any], key: str, prefix: str = "") -> str:
    value = raw.get(key)
    if value is None or value == "":
        raise DocumentMalformed(f"missing required field '{prefix}{key}'")
    if isinstance(value, bool | dict | list):
        raise DocumentMalformed(f"field '{prefix}{key}' must be a string")
    return str(value)


def _optional_str(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    return "" if value is None else str(value)
