"""Tests for StructuralValidator."""

from __future__ import annotations

import pytest

from irsync.errors import IRValidationError
from irsync.ir.models import IRDocument, IRNode, NodeMetadata
from irsync.ir.validator import StructuralValidator

from conftest import make_ir


@pytest.fixture
def validator():
    return StructuralValidator()


class TestValidate:
    """Tests for StructuralValidator.validate()."""

    def test_valid_document(self, validator):
        result = validator.validate(make_ir("Column", "Text"))
        assert result.valid
        assert result.errors == []

    def test_valid_raw_mapping(self, validator):
        result = validator.validate(
            {"schema_version": "1", "nodes": [{"id": "a", "type": "Text"}]}
        )
        assert result.valid

    def test_missing_type_reports_path(self, validator):
        result = validator.validate({"nodes": [{"id": "a"}]})
        assert not result.valid
        assert result.errors[0].path == "nodes[0].type"

    def test_children_must_be_list(self, validator):
        result = validator.validate(
            {"nodes": [{"id": "a", "type": "Row", "children": "oops"}]}
        )
        assert not result.valid
        assert result.errors[0].path.startswith("nodes[0].children")

    def test_empty_id_and_type(self, validator):
        doc = IRDocument(nodes=[IRNode(id=" ", type="")])
        result = validator.validate(doc)
        paths = {e.path for e in result.errors}
        assert paths == {"nodes[0].id", "nodes[0].type"}

    def test_duplicate_ids_across_levels(self, validator):
        doc = IRDocument(
            nodes=[
                IRNode(
                    id="dup",
                    type="Column",
                    children=[IRNode(id="dup", type="Text")],
                )
            ]
        )
        result = validator.validate(doc)
        assert not result.valid
        assert result.errors[0].path == "nodes[0].children[0].id"
        assert "duplicate id 'dup'" in result.errors[0].message

    def test_negative_line_number(self, validator):
        doc = IRDocument(
            nodes=[
                IRNode(id="a", type="T", metadata=NodeMetadata(line_number=-1))
            ]
        )
        result = validator.validate(doc)
        assert result.errors[0].path == "nodes[0].metadata.line_number"

    def test_empty_schema_version(self, validator):
        result = validator.validate(IRDocument(schema_version=""))
        assert [e.path for e in result.errors] == ["schema_version"]


class TestValidateOrThrow:
    """Tests for StructuralValidator.validate_or_throw()."""

    def test_returns_document_instance(self, validator):
        doc = make_ir("Text")
        assert validator.validate_or_throw(doc) is doc

    def test_parses_mapping(self, validator):
        doc = validator.validate_or_throw({"nodes": [{"id": "a", "type": "T"}]})
        assert isinstance(doc, IRDocument)
        assert doc.nodes[0].id == "a"

    def test_raises_with_issues(self, validator):
        doc = IRDocument(
            nodes=[IRNode(id="x", type="T"), IRNode(id="x", type="T")]
        )
        with pytest.raises(IRValidationError) as exc_info:
            validator.validate_or_throw(doc)
        assert exc_info.value.kind == "validation"
        assert len(exc_info.value.issues) == 1
        assert "nodes[1].id" in str(exc_info.value)

    def test_summary_truncates_long_issue_lists(self, validator):
        doc = IRDocument(nodes=[IRNode(id="", type="") for _ in range(4)])
        with pytest.raises(IRValidationError) as exc_info:
            validator.validate_or_throw(doc)
        assert "(8 issues)" in str(exc_info.value)
