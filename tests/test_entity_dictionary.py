"""
Tests for the run-scoped entity dictionary.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from intelgraph.agents.entity_dictionary import EntityDictionary
from intelgraph.schemas.records import REG_ENTITIES
from intelgraph.util.errors import DatastoreUnavailableError
from tests.conftest import InMemoryDocumentStore


@pytest.fixture
def registry():
    store = InMemoryDocumentStore()
    store.upsert(REG_ENTITIES, [
        {"entity_id": "comp_acme_inc", "entity_type": "Company", "primary_name": "Acme Inc",
         "aliases": ["ACME", "Acme Corporation"], "monitoring_status": "active"},
        {"entity_id": "comp_acme", "entity_type": "Company", "primary_name": "Acme",
         "monitoring_status": "merged_into", "merged_into_id": "comp_acme_inc"},
        {"entity_id": "tech_llm", "entity_type": "Technology", "primary_name": "Large Language Models",
         "aliases": ["LLM"], "monitoring_status": "pending_review"},
        {"entity_id": "weird_1", "entity_type": "Spaceship", "primary_name": "Enterprise"},
    ], key_field="entity_id")
    return store


class TestBuild:

    def test_loads_live_entities_only(self, registry):
        dictionary = EntityDictionary.build(registry)
        assert len(dictionary) == 3
        assert "comp_acme_inc" in dictionary
        assert "comp_acme" not in dictionary

    def test_lookup_by_name_and_alias_case_insensitive(self, registry):
        dictionary = EntityDictionary.build(registry)
        assert dictionary.lookup("Company", "acme inc") == "comp_acme_inc"
        assert dictionary.lookup("Company", "  ACME ") == "comp_acme_inc"
        assert dictionary.lookup("Technology", "llm") == "tech_llm"

    def test_lookup_is_type_scoped(self, registry):
        dictionary = EntityDictionary.build(registry)
        assert dictionary.lookup("Technology", "Acme Inc") is None

    def test_unknown_types_map_to_other(self, registry):
        dictionary = EntityDictionary.build(registry)
        assert dictionary.lookup("Other", "Enterprise") == "weird_1"

    def test_merged_entities_redirect(self, registry):
        dictionary = EntityDictionary.build(registry)
        assert dictionary.canonical_id("comp_acme") == "comp_acme_inc"
        assert dictionary.canonical_id("tech_llm") == "tech_llm"

    def test_unreachable_store_is_fatal(self, registry):
        registry.fail_collections.add(REG_ENTITIES)
        with pytest.raises(DatastoreUnavailableError):
            EntityDictionary.build(registry)


class TestMutation:

    def test_register_makes_names_visible(self):
        dictionary = EntityDictionary()
        dictionary.register("comp_globex", "Company", "Globex", ["Globex Corp"])
        assert dictionary.lookup_any("Company", ["Initech", "globex corp"]) == "comp_globex"
        assert dictionary.name_of("comp_globex") == "Globex"

    def test_first_writer_wins(self):
        dictionary = EntityDictionary()
        dictionary.register("comp_a", "Company", "Alpha", ["AB"])
        dictionary.register("comp_b", "Company", "Beta", ["AB"])
        assert dictionary.lookup("Company", "AB") == "comp_a"

    def test_unregister_and_repoint(self):
        dictionary = EntityDictionary()
        dictionary.register("comp_a", "Company", "Alpha", ["AB"])
        dictionary.register("comp_b", "Company", "Beta")
        dictionary.unregister("comp_a", merged_into="comp_b")
        assert dictionary.lookup("Company", "Alpha") is None
        dictionary.repoint("Company", ["Alpha", "AB"], "comp_b")
        assert dictionary.lookup("Company", "ab") == "comp_b"
        assert dictionary.canonical_id("comp_a") == "comp_b"
        assert "comp_a" not in dictionary

    def test_redirect_cycles_terminate(self):
        dictionary = EntityDictionary()
        dictionary.unregister("a", merged_into="b")
        dictionary.unregister("b", merged_into="a")
        assert dictionary.canonical_id("a") in {"a", "b"}

    def test_lock_per_type(self):
        dictionary = EntityDictionary()
        assert dictionary.lock_for("Company") is dictionary.lock_for("Company")
        assert dictionary.lock_for("Company") is not dictionary.lock_for("Person")
        assert dictionary.lock_for("Spaceship") is dictionary.lock_for("Other")
