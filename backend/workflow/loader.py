"""Workflow source loading for batch runs.

Turns a folder, a list of files, or a list of inline definitions into
WorkflowSource entries. Loading never raises per file: unreadable,
malformed, or invalid workflows come back with ``errors`` populated so
the batch can count them as failed members.
"""

import copy
import fnmatch
import json
import os
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import structlog

from core.constants import START_NODE_TYPE
from core.exceptions import NotFoundError, WorkflowValidationError
from workflow.models import Workflow
from workflow.parser import WorkflowParser

logger = structlog.get_logger(__name__)

MAX_WORKFLOW_FILE_SIZE = 10 * 1024 * 1024


@dataclass
class WorkflowSource:
    """One candidate batch member."""
    file_name: str
    file_path: Optional[str] = None
    workflow: Optional[dict[str, Any]] = None
    errors: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.workflow is not None and not self.errors

    def to_dict(self) -> dict:
        return {
            "file_name": self.file_name,
            "file_path": self.file_path,
            "is_valid": self.is_valid,
            "errors": list(self.errors),
        }


def validate_definition(definition: Any) -> list[str]:
    """Structural and graph validation of a raw workflow definition."""
    if not isinstance(definition, dict):
        return ["Workflow definition must be a JSON object"]

    errors = []
    if not isinstance(definition.get("nodes"), list):
        errors.append('Workflow must have a "nodes" property (array)')
    if not isinstance(definition.get("edges", []), list):
        errors.append('Workflow must have an "edges" property (array)')
    if errors:
        return errors

    try:
        workflow = Workflow.from_dict(definition)
    except (TypeError, ValueError, AttributeError) as e:
        return [f"Malformed workflow: {e}"]
    return WorkflowParser(workflow).validate()


def apply_start_node_overrides(definition: dict, overrides: Optional[dict]) -> dict:
    """Return a copy of ``definition`` with ``overrides`` merged into the start node data."""
    result = copy.deepcopy(definition)
    if not overrides:
        return result
    for node in result.get("nodes", []):
        if isinstance(node, dict) and node.get("type") == START_NODE_TYPE:
            node["data"] = {**(node.get("data") or {}), **overrides}
            break
    return result


def _build_source(
    file_name: str,
    file_path: Optional[str],
    definition: Any,
    overrides: Optional[dict],
) -> WorkflowSource:
    errors = validate_definition(definition)
    if errors:
        return WorkflowSource(
            file_name=file_name,
            file_path=file_path,
            workflow=definition if isinstance(definition, dict) else None,
            errors=errors,
        )
    return WorkflowSource(
        file_name=file_name,
        file_path=file_path,
        workflow=apply_start_node_overrides(definition, overrides),
    )


def load_from_file(path: str, base_path: Optional[str] = None, overrides: Optional[dict] = None) -> WorkflowSource:
    """Read and validate one workflow JSON file."""
    file_name = os.path.basename(path)
    file_path = os.path.relpath(path, base_path) if base_path else path

    if not file_name.lower().endswith(".json"):
        return WorkflowSource(file_name, file_path, errors=["File must have .json extension"])

    try:
        if os.path.getsize(path) > MAX_WORKFLOW_FILE_SIZE:
            return WorkflowSource(
                file_name, file_path, errors=["File size exceeds maximum allowed size (10MB)"]
            )
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
    except OSError as e:
        return WorkflowSource(file_name, file_path, errors=[f"Error reading file: {e}"])

    try:
        definition = json.loads(content)
    except json.JSONDecodeError as e:
        return WorkflowSource(file_name, file_path, errors=[f"Invalid JSON: {e}"])

    return _build_source(file_name, file_path, definition, overrides)


def load_from_folder(
    folder_path: str,
    recursive: bool = False,
    pattern: str = "*.json",
    overrides: Optional[dict] = None,
) -> list[WorkflowSource]:
    """Load every file matching ``pattern`` (case-insensitive) under ``folder_path``.

    Raises:
        NotFoundError: The folder does not exist.
        WorkflowValidationError: The path is not a directory.
    """
    resolved = os.path.abspath(folder_path)
    if not os.path.exists(resolved):
        raise NotFoundError(f"Folder not found: {resolved}")
    if not os.path.isdir(resolved):
        raise WorkflowValidationError([f"Path is not a directory: {resolved}"])

    paths = []
    for root, dirs, files in os.walk(resolved):
        dirs.sort()
        for name in sorted(files):
            if fnmatch.fnmatch(name.lower(), pattern.lower()):
                paths.append(os.path.join(root, name))
        if not recursive:
            break

    sources = [load_from_file(path, resolved, overrides) for path in paths]
    logger.info(
        "Workflow folder scanned",
        folder=resolved,
        files=len(sources),
        invalid=sum(1 for s in sources if not s.is_valid),
    )
    return sources


def load_from_files(paths: Iterable[str], overrides: Optional[dict] = None) -> list[WorkflowSource]:
    return [load_from_file(path, overrides=overrides) for path in paths]


def load_from_payloads(workflows: Iterable[Any], overrides: Optional[dict] = None) -> list[WorkflowSource]:
    """Inline definitions are named ``workflow-1.json``, ``workflow-2.json``, ..."""
    sources = []
    for i, definition in enumerate(workflows, start=1):
        file_name = f"workflow-{i}.json"
        sources.append(_build_source(file_name, file_name, definition, overrides))
    return sources
