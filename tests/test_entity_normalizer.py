"""
Tests for the checkpointed entity normalization sweep.
"""

import json
import os
import sys
from dataclasses import replace

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from intelgraph.agents.entity_normalizer import CHECKPOINT_KEY, EntityNormalizer
from intelgraph.schemas.llm import NormalizationResponse
from intelgraph.schemas.records import REG_ENTITIES
from intelgraph.util.checkpoint import CheckpointStore
from tests.conftest import make_llm


def _entity(entity_id, name, entity_type="Company", status="pending_review", aliases=None):
    return {"entity_id": entity_id, "entity_type": entity_type, "primary_name": name,
            "aliases": aliases or [], "monitoring_status": status}


def grouping_responder(groups_by_name=None, fail=False):
    groups_by_name = groups_by_name or {}

    def respond(schema, messages):
        assert schema is NormalizationResponse
        if fail:
            return RuntimeError("model unavailable")
        out, used = [], set()
        for name in json.loads(messages[1][1])["names"]:
            if name in used:
                continue
            primary, aliases = groups_by_name.get(name, (name, []))
            used.update([name, *aliases])
            out.append({"primary_name": primary, "aliases": aliases})
        return NormalizationResponse.model_validate({"normalized_groups": out})
    return respond


@pytest.fixture
def checkpoints(config):
    return CheckpointStore(config.checkpoint_dir)


def _get(store, entity_id):
    return store.get(REG_ENTITIES, entity_id, key_field="entity_id")


class TestEntityNormalizer:

    @pytest.mark.asyncio
    async def test_variants_merge_into_one_canonical(self, store, config, checkpoints):
        store.upsert(REG_ENTITIES, [
            _entity("comp_acme", "Acme"),
            _entity("comp_acme_inc", "Acme Inc"),
            _entity("comp_globex", "Globex"),
        ], key_field="entity_id")
        llm = make_llm(grouping_responder({"Acme": ("Acme Inc", ["Acme"])}))

        summary = await EntityNormalizer(store, checkpoints, llm=llm, config=config).run()

        canonical = _get(store, "comp_acme_inc")
        assert canonical["primary_name"] == "Acme Inc"
        assert canonical["aliases"] == ["Acme"]
        assert canonical["monitoring_status"] == "normalized"

        absorbed = _get(store, "comp_acme")
        assert absorbed["monitoring_status"] == "merged_into"
        assert absorbed["merged_into_id"] == "comp_acme_inc"

        assert _get(store, "comp_globex")["monitoring_status"] == "normalized"
        assert summary.batch_start == 0
        assert summary.batch_size == 3
        assert summary.merged == 1
        assert summary.normalized == 2
        assert checkpoints.get(CHECKPOINT_KEY) == {"index": 2, "last_key": "comp_globex"}

    @pytest.mark.asyncio
    async def test_merges_into_live_entity_outside_batch(self, store, config, checkpoints):
        store.upsert(REG_ENTITIES, [
            _entity("comp_openai", "OpenAI", status="active", aliases=["OpenAI Inc"]),
            _entity("comp_open_ai", "Open AI"),
            _entity("comp_open_ai_lp", "Open AI LP"),
        ], key_field="entity_id")
        llm = make_llm(grouping_responder({"Open AI": ("OpenAI", ["Open AI", "Open AI LP"])}))

        summary = await EntityNormalizer(store, checkpoints, llm=llm, config=config).run()

        canonical = _get(store, "comp_openai")
        assert canonical["monitoring_status"] == "active"
        assert set(canonical["aliases"]) == {"OpenAI Inc", "Open AI", "Open AI LP"}
        assert _get(store, "comp_open_ai")["merged_into_id"] == "comp_openai"
        assert _get(store, "comp_open_ai_lp")["merged_into_id"] == "comp_openai"
        assert summary.merged == 2
        assert summary.normalized == 0

    @pytest.mark.asyncio
    async def test_types_are_clustered_separately(self, store, config, checkpoints):
        store.upsert(REG_ENTITIES, [
            _entity("comp_apple", "Apple"),
            _entity("comp_apple_inc", "Apple Inc"),
            _entity("prod_apple", "Apple", entity_type="Product"),
        ], key_field="entity_id")
        llm = make_llm(grouping_responder({"Apple": ("Apple Inc", ["Apple"])}))

        await EntityNormalizer(store, checkpoints, llm=llm, config=config).run()

        # one clustering call for the two companies; a lone product needs none
        assert len(llm.calls) == 1
        assert _get(store, "prod_apple")["monitoring_status"] == "normalized"
        assert _get(store, "comp_apple")["merged_into_id"] == "comp_apple_inc"

    @pytest.mark.asyncio
    async def test_sweep_resumes_and_then_restarts(self, store, config, checkpoints):
        store.upsert(REG_ENTITIES, [
            _entity(f"pers_{c}", f"Person {c.upper()}", entity_type="Person") for c in "abcde"
        ], key_field="entity_id")
        small = replace(config, normalization_batch_size=2)
        llm = make_llm(grouping_responder())

        first = await EntityNormalizer(store, checkpoints, llm=llm, config=small).run()
        assert first.batch_size == 2
        assert _get(store, "pers_a")["monitoring_status"] == "normalized"
        assert _get(store, "pers_c")["monitoring_status"] == "pending_review"

        second = await EntityNormalizer(store, checkpoints, llm=llm, config=small).run()
        assert second.batch_size == 2
        assert _get(store, "pers_c")["monitoring_status"] == "normalized"
        assert _get(store, "pers_d")["monitoring_status"] == "normalized"

        third = await EntityNormalizer(store, checkpoints, llm=llm, config=small).run()
        assert third.batch_size == 1

        done = await EntityNormalizer(store, checkpoints, llm=llm, config=small).run()
        assert done.exhausted
        assert checkpoints.get(CHECKPOINT_KEY) is None

    @pytest.mark.asyncio
    async def test_clustering_failure_leaves_entities_pending(self, store, config, checkpoints):
        store.upsert(REG_ENTITIES, [
            _entity("comp_a", "Alpha Corp"),
            _entity("comp_b", "Beta Corp"),
        ], key_field="entity_id")
        llm = make_llm(grouping_responder(fail=True))

        summary = await EntityNormalizer(store, checkpoints, llm=llm, config=config).run()

        assert summary.normalized == 0
        assert _get(store, "comp_a")["monitoring_status"] == "pending_review"
        assert checkpoints.get(CHECKPOINT_KEY)["last_key"] == "comp_b"

    @pytest.mark.asyncio
    async def test_empty_backlog(self, store, config, checkpoints):
        summary = await EntityNormalizer(store, checkpoints, llm=make_llm(grouping_responder()), config=config).run()
        assert summary.exhausted
        assert summary.batch_size == 0
