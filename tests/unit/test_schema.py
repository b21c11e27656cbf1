"""
Unit tests for the class schema.

Tests cover:
- Field type parsing
- Name validation and query key extraction
- Loading from _SCHEMA documents
- Type lookup and key checks
- Object validation
- Class-level permission checks through the schema
"""

import pytest

from dbaas.classdb_server.errors import IncorrectType, InvalidKeyName, PermissionDenied
from dbaas.classdb_server.schema import (
    FieldKind,
    FieldType,
    Schema,
    class_name_is_valid,
    field_name_is_valid,
    keys_for_query,
    value_type,
)
from dbaas.classdb_server.storage import InMemoryStorageAdapter

SCHEMA_DOCS = [
    {
        "_id": "Post",
        "title": "string",
        "views": "number",
        "author": "*_User",
        "likes": "relation<_User>",
        "_metadata": {"class_permissions": {"find": {"role:reader": True}}},
    },
    {"_id": "Place", "location": "geopoint", "bogus": "not-a-type"},
]


class TestFieldType:
    """Tests for FieldType parsing."""

    def test_parse_primitives(self):
        """Primitive type strings map to kinds."""
        assert FieldType.parse("string").kind == FieldKind.STRING
        assert FieldType.parse("geopoint").kind == FieldKind.GEOPOINT

    def test_parse_pointer_forms(self):
        """Pointers parse from '*X' and 'pointer<X>'."""
        assert FieldType.parse("*_User") == FieldType.pointer("_User")
        assert FieldType.parse("pointer<_User>") == FieldType.pointer("_User")
        assert FieldType.parse("pointer<_User>").to_str() == "*_User"

    def test_parse_relation(self):
        """Relations parse from 'relation<X>'."""
        parsed = FieldType.parse("relation<_Role>")
        assert parsed.is_relation
        assert parsed.target_class == "_Role"
        assert str(parsed) == "relation<_Role>"

    def test_parse_unknown(self):
        """Unknown type strings raise ValueError."""
        with pytest.raises(ValueError):
            FieldType.parse("decimal")

    def test_pointer_requires_target(self):
        """Pointer types need a target class."""
        with pytest.raises(ValueError):
            FieldType(FieldKind.POINTER)


class TestNamesAndKeys:
    """Tests for identifier rules and query keys."""

    def test_class_names(self):
        """System, join and plain class names are valid."""
        assert class_name_is_valid("_User")
        assert class_name_is_valid("_Join:likes:Post")
        assert class_name_is_valid("GameScore")
        assert not class_name_is_valid("_Secret")
        assert not class_name_is_valid("1abc")
        assert not class_name_is_valid("Bad-Name")

    def test_field_names(self):
        """Field names are identifiers starting with a letter."""
        assert field_name_is_valid("score")
        assert not field_name_is_valid("_private")
        assert not field_name_is_valid("a-b")

    def test_keys_for_query_walks_logical_branches(self):
        """Keys come from top level and $and/$or branches."""
        query = {
            "title": "x",
            "$or": [{"views": 1}, {"$and": [{"author": None}]}],
            "$relatedTo": {"key": "likes"},
        }
        assert keys_for_query(query) == {"title", "views", "author"}


class TestValueType:
    """Tests for value_type inference."""

    def test_scalars(self):
        """Plain values map to primitive types."""
        assert value_type("x").kind == FieldKind.STRING
        assert value_type(1.5).kind == FieldKind.NUMBER
        assert value_type(True).kind == FieldKind.BOOLEAN
        assert value_type([1]).kind == FieldKind.ARRAY
        assert value_type({"a": 1}).kind == FieldKind.OBJECT
        assert value_type(None) is None

    def test_typed_objects(self):
        """__type objects map to their types."""
        assert value_type({"__type": "Pointer", "className": "_User", "objectId": "u1"}) == (
            FieldType.pointer("_User")
        )
        assert value_type({"__type": "Date", "iso": "2024-01-01T00:00:00.000Z"}).kind == (
            FieldKind.DATE
        )

    def test_operators(self):
        """__op objects map to the type they produce."""
        assert value_type({"__op": "Increment", "amount": 1}).kind == FieldKind.NUMBER
        assert value_type({"__op": "Delete"}) is None
        relation = {
            "__op": "AddRelation",
            "objects": [{"__type": "Pointer", "className": "_User", "objectId": "u1"}],
        }
        assert value_type(relation) == FieldType.relation("_User")

    def test_bad_operator(self):
        """Unknown operators raise IncorrectType."""
        with pytest.raises(IncorrectType):
            value_type({"__op": "Explode"})


class TestSchema:
    """Tests for Schema lookups."""

    @pytest.fixture
    def schema(self):
        return Schema.from_documents(SCHEMA_DOCS)

    def test_from_documents(self, schema):
        """Fields load and invalid types are skipped."""
        assert schema.class_names() == ["Place", "Post"]
        assert schema.get_expected_type("Post", "author") == FieldType.pointer("_User")
        assert schema.get_expected_type("Place", "bogus") is None

    def test_default_and_builtin_fields(self, schema):
        """Every class knows the default fields; system classes their built-ins."""
        assert schema.get_expected_type("Post", "createdAt").kind == FieldKind.DATE
        assert schema.get_expected_type("_Session", "user") == FieldType.pointer("_User")
        assert schema.fields("Unknown") is None

    def test_relation_target(self, schema):
        """get_relation_target only answers for relation fields."""
        assert schema.get_relation_target("Post", "likes") == "_User"
        assert schema.get_relation_target("Post", "author") is None

    def test_has_keys(self, schema):
        """has_keys checks the first segment of dotted keys."""
        assert schema.has_keys("Post", {"title", "objectId", "author.name"})
        assert not schema.has_keys("Post", {"subtitle"})
        assert schema.has_keys("Unknown", set())
        assert not schema.has_keys("Unknown", {"a"})

    def test_validate_permission(self, schema):
        """Class permissions from metadata are enforced."""
        schema.validate_permission("Post", ["role:reader"], "find")
        with pytest.raises(PermissionDenied):
            schema.validate_permission("Post", ["u1"], "find")
        schema.validate_permission("Place", [], "find")

    @pytest.mark.asyncio
    async def test_load_reads_collection_once(self):
        """Schema.load issues one find against the collection."""
        adapter = InMemoryStorageAdapter()
        await adapter.connect()
        await adapter.collection("_SCHEMA").insert([dict(doc) for doc in SCHEMA_DOCS])
        adapter.reset_calls()

        schema = await Schema.load(adapter.collection("_SCHEMA"))
        assert schema.has_class("Post")
        assert adapter.calls_to("_SCHEMA") == ["find"]


class TestValidateObject:
    """Tests for Schema.validate_object."""

    @pytest.fixture
    def schema(self):
        return Schema.from_documents(SCHEMA_DOCS)

    def test_adds_provisional_fields(self, schema):
        """New fields are added to a copy, not the receiver."""
        updated = schema.validate_object("Post", {"subtitle": "s"})
        assert updated.get_expected_type("Post", "subtitle").kind == FieldKind.STRING
        assert schema.get_expected_type("Post", "subtitle") is None

    def test_type_mismatch(self, schema):
        """A value disagreeing with the declared type is rejected."""
        with pytest.raises(IncorrectType, match="schema mismatch for Post.views"):
            schema.validate_object("Post", {"views": "many"})

    def test_increment_matches_number(self, schema):
        """Increment operators validate as numbers."""
        schema.validate_object("Post", {"views": {"__op": "Increment", "amount": 1}}, {})

    def test_invalid_key(self, schema):
        """Keys must be valid field names."""
        with pytest.raises(InvalidKeyName):
            schema.validate_object("Post", {"bad-key": 1})

    def test_internal_fields_are_skipped(self, schema):
        """Internal store keys bypass validation."""
        schema.validate_object("_User", {"_hashed_password": "x", "username": "u"})

    def test_one_geopoint(self, schema):
        """At most one geopoint per payload."""
        point = {"__type": "GeoPoint", "latitude": 1, "longitude": 2}
        with pytest.raises(IncorrectType):
            schema.validate_object("Place", {"location": point, "other": point})

    def test_dotted_key_needs_object_field(self, schema):
        """Dotted keys validate their prefix as an object."""
        schema.validate_object("Post", {"meta.count": 1}, {})
        with pytest.raises(IncorrectType):
            schema.validate_object("Post", {"title.sub": 1}, {})

    def test_required_columns_on_create_only(self, schema):
        """_Role needs name and ACL when created."""
        with pytest.raises(IncorrectType, match="name is required"):
            schema.validate_object("_Role", {"ACL": {}})
        schema.validate_object("_Role", {"users": {"__op": "Delete"}}, {"objectId": "r1"})

    def test_to_dict_renders_type_strings(self, schema):
        """to_dict renders stored type strings and permissions."""
        rendered = schema.to_dict()
        assert rendered["Post"]["likes"] == "relation<_User>"
        assert rendered["Post"]["_metadata"] == {
            "class_permissions": {"find": {"role:reader": True}}
        }
