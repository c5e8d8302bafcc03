"""Tests for the configuration document model and YAML parsing."""

from __future__ import annotations

import pytest

from heimdall.errors import DocumentMalformed
from heimdall.models.configuration import Configuration
from heimdall.source.resolver import parse_configuration

_DOC = """\
configVersion: v1
metadata:
  author: jane
  name: app
  namespace: ns1
configuration:
  - name: DB_HOST
    value: db.ns1
  - name: DB_PASS
    value: Y2lwaGVy
    encrypted: true
"""


class TestParse:
    def test_parses_full_document(self) -> None:
        config = parse_configuration(_DOC)
        assert config.config_version == "v1"
        assert config.metadata.name == "app"
        assert config.metadata.namespace == "ns1"
        assert config.metadata.author == "jane"
        assert [e.name for e in config.entities] == ["DB_HOST", "DB_PASS"]
        assert config.entities[0].encrypted is False
        assert config.entities[1].encrypted is True

    def test_resource_name(self) -> None:
        assert parse_configuration(_DOC).resource_name == "heimdall-app-v1"

    def test_numeric_version_and_values_become_strings(self) -> None:
        config = parse_configuration(
            "configVersion: 2\nmetadata: {name: app, namespace: ns1}\nconfiguration:\n  - {name: PORT, value: 8080}\n"
        )
        assert config.config_version == "2"
        assert config.entity("PORT").value == "8080"

    def test_missing_configuration_list_means_no_entities(self) -> None:
        config = parse_configuration("configVersion: v1\nmetadata: {name: app, namespace: ns1}\n")
        assert config.entities == ()

    def test_invalid_yaml(self) -> None:
        with pytest.raises(DocumentMalformed, match="not valid YAML"):
            parse_configuration("configVersion: [unclosed")

    def test_not_a_mapping(self) -> None:
        with pytest.raises(DocumentMalformed):
            parse_configuration("- just\n- a list\n")

    @pytest.mark.parametrize(
        "doc",
        [
            "metadata: {name: app, namespace: ns1}\n",
            "configVersion: v1\nmetadata: {namespace: ns1}\n",
            "configVersion: v1\nmetadata: {name: app}\n",
            "configVersion: v1\n",
        ],
    )
    def test_missing_required_fields(self, doc: str) -> None:
        with pytest.raises(DocumentMalformed, match="missing required field|must be a mapping"):
            parse_configuration(doc)

    def test_duplicate_entity_name(self) -> None:
        doc = (
            "configVersion: v1\nmetadata: {name: app, namespace: ns1}\n"
            "configuration:\n  - {name: A, value: x}\n  - {name: A, value: y}\n"
        )
        with pytest.raises(DocumentMalformed, match="duplicate entity name 'A'"):
            parse_configuration(doc)

    def test_non_boolean_encrypted_flag(self) -> None:
        doc = (
            "configVersion: v1\nmetadata: {name: app, namespace: ns1}\n"
            "configuration:\n  - {name: A, value: x, encrypted: maybe}\n"
        )
        with pytest.raises(DocumentMalformed, match="encrypted must be a boolean"):
            parse_configuration(doc)

    def test_malformed_is_not_retryable(self) -> None:
        assert DocumentMalformed.retryable is False


class TestConfigurationHelpers:
    def test_entity_lookup(self) -> None:
        config = parse_configuration(_DOC)
        assert config.entity("DB_HOST").value == "db.ns1"
        assert config.entity("MISSING") is None

    def test_with_entity_value_preserves_order_and_original(self) -> None:
        config = parse_configuration(_DOC)
        updated = config.with_entity_value("DB_HOST", "other")
        assert [e.name for e in updated.entities] == ["DB_HOST", "DB_PASS"]
        assert updated.entity("DB_HOST").value == "other"
        assert config.entity("DB_HOST").value == "db.ns1"

    def test_to_dict_reparses_to_equal_configuration(self) -> None:
        config = parse_configuration(_DOC)
        assert Configuration.from_dict(config.to_dict()) == config
