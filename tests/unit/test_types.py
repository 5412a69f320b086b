"""
Unit tests for field annotations and entity declarations.

Tests cover:
- Annotation validation
- Primary key conflicts at declaration time
- Serialization of declarations
"""

import pytest

from docrepo.errors import DeclarationError
from docrepo.schema.types import (
    EntityDef,
    FieldAnnotation,
    KeyKind,
    check_declaration,
    compound_id,
    id_field,
    incremental_id,
    indexed,
    unique,
)


class Person:
    pass


class TestFieldAnnotation:
    """Tests for FieldAnnotation."""

    def test_helpers_set_kind(self):
        """Helper functions create annotations of their kind."""
        assert id_field("name").kind == KeyKind.ID
        assert incremental_id("id").kind == KeyKind.INCREMENTAL_ID
        assert compound_id("firstName").kind == KeyKind.COMPOUND_ID_MEMBER
        assert unique("address").kind == KeyKind.UNIQUE
        assert indexed("author").kind == KeyKind.INDEXED

    def test_default_since_version(self):
        """Annotations default to version 1."""
        assert unique("address").since_version == 1
        assert unique("address", since_version=3).since_version == 3

    def test_since_version_must_be_positive(self):
        """Versions start at 1."""
        with pytest.raises(ValueError, match="since_version must be >= 1"):
            unique("address", since_version=0)

    def test_since_version_must_be_int(self):
        with pytest.raises(ValueError, match="must be an integer"):
            FieldAnnotation("address", KeyKind.UNIQUE, since_version="2")

    def test_empty_field_rejected(self):
        with pytest.raises(ValueError):
            indexed("")

    def test_visible_at(self):
        """An annotation is visible from its version on."""
        annotation = unique("address", since_version=3)

        assert not annotation.visible_at(2)
        assert annotation.visible_at(3)
        assert annotation.visible_at(10)

    def test_dict_round_trip(self):
        annotation = compound_id("lastName", since_version=2)

        data = annotation.to_dict()

        assert data == {"field": "lastName", "kind": "compound_id", "since_version": 2}
        assert FieldAnnotation.from_dict(data) == annotation

    def test_is_primary_key(self):
        assert KeyKind.ID.is_primary_key
        assert KeyKind.COMPOUND_ID_MEMBER.is_primary_key
        assert not KeyKind.UNIQUE.is_primary_key

    def test_invalid_kind_string(self):
        with pytest.raises(ValueError, match="Invalid key kind"):
            KeyKind.from_str("primary")


class TestDeclarationChecks:
    """Tests for primary key conflicts."""

    def test_second_id_rejected(self):
        """Only one id field per entity."""
        with pytest.raises(DeclarationError) as exc_info:
            check_declaration("Person", [id_field("name")], id_field("email"))

        assert exc_info.value.code == "DECLARATION_ERROR"
        assert exc_info.value.field_name == "email"

    def test_second_incremental_id_rejected(self):
        with pytest.raises(DeclarationError):
            check_declaration("Book", [incremental_id("id")], incremental_id("number"))

    def test_mixed_key_kinds_rejected(self):
        """Id, incremental id and compound members exclude each other."""
        with pytest.raises(DeclarationError, match="Only one kind of primary key"):
            check_declaration("Person", [incremental_id("id")], id_field("name"))
        with pytest.raises(DeclarationError):
            check_declaration("Person", [compound_id("firstName")], incremental_id("id"))
        with pytest.raises(DeclarationError):
            check_declaration("Person", [id_field("name")], compound_id("lastName"))

    def test_compound_members_accumulate(self):
        """Several compound members form one key."""
        check_declaration("Person", [compound_id("firstName")], compound_id("lastName"))

    def test_duplicate_annotation_rejected(self):
        with pytest.raises(DeclarationError, match="already declared"):
            check_declaration("Person", [indexed("age")], indexed("age"))

    def test_field_may_carry_several_kinds(self):
        """A compound member can also be indexed."""
        check_declaration("Person", [compound_id("firstName")], indexed("firstName"))
        check_declaration("Person", [indexed("address")], unique("address", since_version=2))


class TestEntityDef:
    """Tests for EntityDef."""

    def test_valid_declaration(self):
        entity = EntityDef(Person, (id_field("name"), unique("address", since_version=3)))

        assert entity.name == "Person"
        assert [a.field for a in entity.of_kind(KeyKind.UNIQUE)] == ["address"]

    def test_conflict_in_constructor(self):
        """Conflicts are found when the declaration is built."""
        with pytest.raises(DeclarationError) as exc_info:
            EntityDef(Person, (id_field("name"), indexed("age"), incremental_id("id")))

        assert exc_info.value.entity_type == "Person"
        assert exc_info.value.field_name == "id"

    def test_with_annotation_is_immutable(self):
        entity = EntityDef(Person, (id_field("name"),))

        extended = entity.with_annotation(indexed("age"))

        assert len(entity.annotations) == 1
        assert len(extended.annotations) == 2

    def test_with_annotation_checks_conflicts(self):
        entity = EntityDef(Person, (id_field("name"),))

        with pytest.raises(DeclarationError):
            entity.with_annotation(id_field("email"))

    def test_to_dict(self):
        entity = EntityDef(Person, (incremental_id("id"),))

        assert entity.to_dict() == {
            "model": "Person",
            "annotations": [{"field": "id", "kind": "incremental_id", "since_version": 1}],
        }
