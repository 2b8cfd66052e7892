"""Shared vocabularies for stored records.

The enumerated columns (project type/status, model source/status, execution
status, file type) are plain text in the database. The Literal aliases are
used by the insert/update shapes to validate input; the enums give
application code named constants for the same values.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal


# =============================================================================
# Literal aliases (validation)
# =============================================================================

ProjectType = Literal["local", "github", "template"]
ProjectStatus = Literal["active", "archived", "error"]
ModelSource = Literal["ollama", "huggingface", "custom"]
ModelStatus = Literal["downloading", "ready", "running", "error"]
ExecutionStatus = Literal["running", "completed", "failed"]
FileType = Literal["file", "directory"]

# Free-form key/value document stored as JSON(B)
JsonDocument = dict[str, Any]


# =============================================================================
# Enums (constants)
# =============================================================================

class ProjectState(str, Enum):
    """Lifecycle state of a project."""
    ACTIVE = "active"
    ARCHIVED = "archived"
    ERROR = "error"


class ModelState(str, Enum):
    """Download/serving state of an AI model."""
    DOWNLOADING = "downloading"
    READY = "ready"
    RUNNING = "running"
    ERROR = "error"


class ExecutionState(str, Enum):
    """State of a command execution."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
