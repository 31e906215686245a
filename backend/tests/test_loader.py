"""Tests for batch workflow source loading."""

import json

import pytest

from core.exceptions import NotFoundError, WorkflowValidationError
from workflow.loader import (
    apply_start_node_overrides,
    load_from_files,
    load_from_folder,
    load_from_payloads,
    validate_definition,
)


@pytest.fixture
def flows_dir(tmp_path, build_workflow):
    (tmp_path / "a_login.json").write_text(json.dumps(build_workflow(("a", "echo"))))
    (tmp_path / "b_search.JSON").write_text(json.dumps(build_workflow(("b", "echo"))))
    (tmp_path / "c_broken.json").write_text("{not json")
    (tmp_path / "d_no_start.json").write_text(json.dumps({"nodes": [{"id": "x", "type": "echo"}], "edges": []}))
    (tmp_path / "notes.txt").write_text("ignore me")
    nested = tmp_path / "nested"
    nested.mkdir()
    (nested / "e_nested.json").write_text(json.dumps(build_workflow(("e", "echo"))))
    return tmp_path


@pytest.mark.unit
class TestValidateDefinition:
    def test_valid(self, build_workflow):
        assert validate_definition(build_workflow(("a", "echo"))) == []

    def test_not_an_object(self):
        assert validate_definition([1, 2]) == ["Workflow definition must be a JSON object"]

    def test_missing_nodes(self):
        assert validate_definition({"edges": []}) == ['Workflow must have a "nodes" property (array)']


@pytest.mark.unit
class TestStartNodeOverrides:
    def test_merges_into_start_node_copy(self, build_workflow):
        original = build_workflow(("a", "echo"), start_data={"slowMo": 100, "headless": True})
        result = apply_start_node_overrides(original, {"headless": False})

        assert result["nodes"][0]["data"] == {"slowMo": 100, "headless": False}
        assert original["nodes"][0]["data"]["headless"] is True


@pytest.mark.unit
class TestLoadFromFolder:
    def test_top_level_only(self, flows_dir):
        sources = load_from_folder(str(flows_dir))
        names = [s.file_name for s in sources]
        assert names == ["a_login.json", "b_search.JSON", "c_broken.json", "d_no_start.json"]

        by_name = {s.file_name: s for s in sources}
        assert by_name["a_login.json"].is_valid
        assert by_name["b_search.JSON"].is_valid
        assert by_name["c_broken.json"].errors[0].startswith("Invalid JSON")
        assert "Workflow must contain a Start node" in by_name["d_no_start.json"].errors

    def test_recursive(self, flows_dir):
        sources = load_from_folder(str(flows_dir), recursive=True)
        nested = [s for s in sources if s.file_name == "e_nested.json"][0]
        assert nested.file_path == "nested/e_nested.json"
        assert nested.is_valid

    def test_pattern(self, flows_dir):
        sources = load_from_folder(str(flows_dir), pattern="a_*.json")
        assert [s.file_name for s in sources] == ["a_login.json"]

    def test_overrides_applied_to_valid_workflows(self, flows_dir):
        sources = load_from_folder(str(flows_dir), overrides={"slowMo": 50})
        assert sources[0].workflow["nodes"][0]["data"]["slowMo"] == 50

    def test_missing_folder(self, tmp_path):
        with pytest.raises(NotFoundError):
            load_from_folder(str(tmp_path / "nope"))

    def test_path_is_a_file(self, flows_dir):
        with pytest.raises(WorkflowValidationError):
            load_from_folder(str(flows_dir / "a_login.json"))


@pytest.mark.unit
class TestLoadFromFilesAndPayloads:
    def test_files(self, flows_dir):
        sources = load_from_files([str(flows_dir / "a_login.json"), str(flows_dir / "notes.txt"),
                                   str(flows_dir / "missing.json")])
        assert sources[0].is_valid
        assert sources[1].errors == ["File must have .json extension"]
        assert sources[2].errors[0].startswith("Error reading file")

    def test_payloads_are_named_in_order(self, build_workflow):
        sources = load_from_payloads([build_workflow(("a", "echo")), "not a workflow"])
        assert [s.file_name for s in sources] == ["workflow-1.json", "workflow-2.json"]
        assert sources[0].is_valid
        assert not sources[1].is_valid
        assert sources[1].workflow is None
