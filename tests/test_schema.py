"""Tests for casegraph.graph.schema — type registration and auto-typing."""

import pytest

from casegraph.errors import DuplicateType, NotFound, TypeInUse
from casegraph.graph.models import EntityType, LinkType, get_prop, set_prop
from casegraph.graph.schema import SchemaRegistry, palette_for, slugify
from casegraph.graph.store import GraphStore


@pytest.fixture
def schema() -> SchemaRegistry:
    return SchemaRegistry()


class TestSlugify:
    @pytest.mark.parametrize("name, expected", [
        ("Work Item", "work-item"),
        ("  Bank  Account ", "bank-account"),
        ("R&D / Lab", "r-d-lab"),
        ("Epic", "epic"),
    ])
    def test_slug_rule(self, name, expected):
        assert slugify(name) == expected

    def test_palette_is_deterministic(self):
        assert palette_for("Vehicle") == palette_for("vehicle")


class TestEntityTypes:
    def test_builtins_registered(self, schema):
        for type_id in ("default", "person", "organization", "location", "document", "event"):
            assert schema.has_entity_type(type_id)
        assert schema.has_link_type("hierarchical")
        assert schema.get_link_type("hierarchical").directed is True

    def test_empty_registry(self):
        assert SchemaRegistry(with_defaults=False).entity_types() == []

    def test_register_is_idempotent_for_same_definition(self, schema):
        vehicle = EntityType("vehicle", "Vehicle", "bi-car", "#111111")
        schema.register_entity_type(vehicle)
        schema.register_entity_type(EntityType("vehicle", "Vehicle", "bi-car", "#111111"))
        assert [t.id for t in schema.entity_types()].count("vehicle") == 1

    def test_conflicting_definition_rejected(self, schema):
        schema.register_entity_type(EntityType("vehicle", "Vehicle", "bi-car", "#111111"))
        with pytest.raises(DuplicateType):
            schema.register_entity_type(EntityType("vehicle", "Car", "bi-car", "#111111"))

    def test_ensure_creates_once(self, schema):
        first = schema.ensure_entity_type("Bank Account")
        second = schema.ensure_entity_type("bank account")
        assert first is second
        assert first.id == "bank-account"
        assert first.display_name == "Bank Account"
        assert (first.color, first.icon) == palette_for("Bank Account")

    def test_ensure_reuses_builtin(self, schema):
        assert schema.ensure_entity_type("Person").display_name == "Person"

    def test_default_properties_are_frozen(self, schema):
        case = schema.register_entity_type(EntityType("case", "Case", default_properties={"s": 1}))
        with pytest.raises(TypeError):
            case.default_properties["s"] = 2

    def test_update_display_keeps_defaults(self, schema):
        schema.register_entity_type(EntityType("case", "Case", default_properties={"s": 1}))
        updated = schema.update_entity_type_display("case", display_name="Matter")
        assert updated.display_name == "Matter"
        assert dict(updated.default_properties) == {"s": 1}

    def test_remove_type(self, schema):
        schema.ensure_entity_type("Vehicle")
        schema.remove_entity_type("vehicle")
        assert not schema.has_entity_type("vehicle")
        with pytest.raises(NotFound):
            schema.get_entity_type("vehicle")
        with pytest.raises(NotFound):
            schema.remove_entity_type("vehicle")

    def test_remove_type_in_use_by_store(self, schema):
        store = GraphStore(schema)
        store.add_entity("person", label="Alice", id="a")
        with pytest.raises(TypeInUse) as excinfo:
            schema.remove_entity_type("person")
        assert excinfo.value.kind == "TypeInUse"
        assert schema.has_entity_type("person")
        assert store.verify_integrity() == []

    def test_remove_type_after_last_entity_goes(self, schema):
        store = GraphStore(schema)
        store.add_entity("person", label="Alice", id="a")
        store.remove_entity("a")
        schema.remove_entity_type("person")
        assert not schema.has_entity_type("person")

    def test_usage_check_can_be_unregistered(self, schema):
        unregister = schema.add_usage_check(lambda type_id: type_id == "event")
        assert schema.entity_type_in_use("event")
        unregister()
        assert not schema.entity_type_in_use("event")


class TestLinkTypes:
    def test_ensure_link_type_slugs(self, schema):
        assert schema.ensure_link_type("Works For").id == "works-for"

    def test_ensure_link_type_id_keeps_id(self, schema):
        link_type = schema.ensure_link_type_id("works_at", directed=True)
        assert link_type.id == "works_at"
        assert link_type.display_name == "Works At"
        assert link_type.directed is True

    def test_conflicting_link_type_rejected(self, schema):
        schema.register_link_type(LinkType("owns", "Owns"))
        with pytest.raises(DuplicateType):
            schema.register_link_type(LinkType("owns", "Owns", directed=True))


class TestPropertyHelpers:
    def test_get_prop_case_insensitive(self):
        props = {"Email": "a@example.org"}
        assert get_prop(props, "email") == get_prop(props, "EMAIL") == "a@example.org"
        assert get_prop(props, "phone", "n/a") == "n/a"

    def test_set_prop_preserves_casing(self):
        props = {"Email": "old"}
        assert set_prop(props, "EMAIL", "new") == "Email"
        assert props == {"Email": "new"}
