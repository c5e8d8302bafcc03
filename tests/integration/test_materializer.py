"""Integration tests for ConfigMap materialization."""

from __future__ import annotations

import aiohttp
import pytest
from kubernetes_asyncio.client.exceptions import ApiException

from heimdall import codec
from heimdall.errors import ClusterUnavailable, DecryptFailure, KeyNotFound, StateConflictError
from heimdall.keys import KeysClient
from heimdall.materializer import CONFIG_NAME_LABEL, MANAGED_BY_LABEL, Materializer
from heimdall.source.resolver import parse_configuration

from .conftest import FakeCoreV1, make_document


@pytest.fixture
def materializer(core_v1: FakeCoreV1, keys_client: KeysClient) -> Materializer:
    return Materializer(core_v1, keys_client)


class TestMaterialize:
    async def test_creates_configmap_with_decrypted_values(
        self, materializer: Materializer, core_v1: FakeCoreV1, keys_client: KeysClient
    ) -> None:
        public_key = await keys_client.get_public_key("ns1")
        doc = make_document(
            entities=[
                ("DB_HOST", "db.ns1", False),
                ("DB_PASS", codec.encrypt(public_key, "s3cret"), True),
            ]
        )
        ref = await materializer.materialize(parse_configuration(doc))

        assert ref is not None
        assert (ref.namespace, ref.name) == ("ns1", "heimdall-app-v1")
        config_map = core_v1.config_maps[("ns1", "heimdall-app-v1")]
        assert config_map.data == {"DB_HOST": "db.ns1", "DB_PASS": "s3cret"}
        assert config_map.metadata.labels[MANAGED_BY_LABEL] == "heimdall"
        assert config_map.metadata.labels[CONFIG_NAME_LABEL] == "app"

    async def test_new_version_creates_new_configmap(self, materializer: Materializer, core_v1: FakeCoreV1) -> None:
        await materializer.materialize(parse_configuration(make_document(version="v1", entities=[("A", "1", False)])))
        await materializer.materialize(parse_configuration(make_document(version="v2", entities=[("A", "2", False)])))
        assert core_v1.config_maps[("ns1", "heimdall-app-v1")].data == {"A": "1"}
        assert core_v1.config_maps[("ns1", "heimdall-app-v2")].data == {"A": "2"}

    async def test_same_version_replaces_data_wholesale(self, materializer: Materializer, core_v1: FakeCoreV1) -> None:
        await materializer.materialize(
            parse_configuration(make_document(entities=[("A", "1", False), ("B", "2", False)]))
        )
        await materializer.materialize(parse_configuration(make_document(entities=[("A", "changed", False)])))
        assert core_v1.config_maps[("ns1", "heimdall-app-v1")].data == {"A": "changed"}
        assert len(core_v1.config_maps) == 1

    async def test_no_entities_writes_nothing(self, materializer: Materializer, core_v1: FakeCoreV1) -> None:
        assert await materializer.materialize(parse_configuration(make_document())) is None
        assert core_v1.config_maps == {}

    async def test_create_race_falls_back_to_update(self, materializer: Materializer, core_v1: FakeCoreV1) -> None:
        await materializer.materialize(parse_configuration(make_document(entities=[("A", "1", False)])))
        # Our read misses, then the create collides with the existing object.
        core_v1.failures["read_namespaced_config_map"] = [ApiException(status=404, reason="Not Found")]
        await materializer.materialize(parse_configuration(make_document(entities=[("A", "2", False)])))
        assert core_v1.config_maps[("ns1", "heimdall-app-v1")].data == {"A": "2"}

    async def test_update_conflict_is_state_conflict(self, materializer: Materializer, core_v1: FakeCoreV1) -> None:
        await materializer.materialize(parse_configuration(make_document(entities=[("A", "1", False)])))
        core_v1.failures["replace_namespaced_config_map"] = [ApiException(status=409, reason="Conflict")]
        with pytest.raises(StateConflictError):
            await materializer.materialize(parse_configuration(make_document(entities=[("A", "2", False)])))


class TestAtomicity:
    async def test_bad_ciphertext_writes_nothing(
        self, materializer: Materializer, core_v1: FakeCoreV1, keys_client: KeysClient
    ) -> None:
        await keys_client.get_public_key("ns1")
        doc = make_document(entities=[("PLAIN", "ok", False), ("BROKEN", "bm90IGNpcGhlcnRleHQ=", True)])
        with pytest.raises(DecryptFailure, match="'BROKEN'"):
            await materializer.materialize(parse_configuration(doc))
        assert core_v1.config_maps == {}

    async def test_bad_ciphertext_leaves_existing_configmap_untouched(
        self, materializer: Materializer, core_v1: FakeCoreV1, keys_client: KeysClient
    ) -> None:
        await keys_client.get_public_key("ns1")
        await materializer.materialize(parse_configuration(make_document(entities=[("A", "1", False)])))
        doc = make_document(entities=[("A", "2", False), ("B", "garbage", True)])
        with pytest.raises(DecryptFailure):
            await materializer.materialize(parse_configuration(doc))
        assert core_v1.config_maps[("ns1", "heimdall-app-v1")].data == {"A": "1"}

    async def test_missing_key_pair(self, materializer: Materializer, core_v1: FakeCoreV1) -> None:
        doc = make_document(entities=[("SECRET", "Y2lwaGVy", True)])
        with pytest.raises(KeyNotFound):
            await materializer.materialize(parse_configuration(doc))
        assert core_v1.config_maps == {}


class TestDelete:
    async def test_delete_existing(self, materializer: Materializer, core_v1: FakeCoreV1) -> None:
        await materializer.materialize(parse_configuration(make_document(entities=[("A", "1", False)])))
        assert await materializer.delete("ns1", "heimdall-app-v1") is True
        assert core_v1.config_maps == {}

    async def test_delete_missing(self, materializer: Materializer) -> None:
        assert await materializer.delete("ns1", "heimdall-app-v1") is False

    async def test_transport_error_is_unavailable(self, materializer: Materializer, core_v1: FakeCoreV1) -> None:
        core_v1.failures["delete_namespaced_config_map"] = [aiohttp.ClientConnectionError("api server down")]
        with pytest.raises(ClusterUnavailable):
            await materializer.delete("ns1", "heimdall-app-v1")

    async def test_read_os_error_is_unavailable(self, materializer: Materializer, core_v1: FakeCoreV1) -> None:
        core_v1.failures["read_namespaced_config_map"] = [ConnectionResetError("reset by peer")]
        with pytest.raises(ClusterUnavailable):
            await materializer.materialize(parse_configuration(make_document(entities=[("A", "1", False)])))
        assert core_v1.config_maps == {}
