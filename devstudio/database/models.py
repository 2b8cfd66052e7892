"""SQLModel database tables and their insert/update shapes.

Tables:
- User: workspace account
- Project: local, GitHub or template project owned by a user
- Model: AI model pulled from Ollama, Hugging Face or a custom source
- Execution: command run against a project
- File: file or directory entry of a project

Each entity follows the same layout: ``XBase`` holds the caller-suppliable
fields, ``X`` is the table (adds the generated id, timestamps and
relationships), ``XCreate`` validates insert payloads and ``XUpdate`` holds
the optional fields of a partial update.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import ConfigDict
from sqlalchemy import JSON, Column, DateTime, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, Relationship, SQLModel

from devstudio.schemas import (
    ExecutionState,
    ExecutionStatus,
    FileType,
    JsonDocument,
    ModelSource,
    ModelState,
    ModelStatus,
    ProjectState,
    ProjectStatus,
    ProjectType,
)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching ``timestamp without time zone`` columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


# JSONB on PostgreSQL, plain JSON everywhere else
JSON_DOCUMENT = JSON().with_variant(JSONB(), "postgresql")


def document_column(name: str) -> Column:
    """Non-null free-form document column defaulting to ``{}``."""
    return Column(name, JSON_DOCUMENT, nullable=False, server_default=text("'{}'"))


def _created_at() -> Any:
    return Field(
        default_factory=utcnow,
        nullable=False,
        sa_type=DateTime,
        sa_column_kwargs={"server_default": func.now()},
    )


# =============================================================================
# User Model
# =============================================================================

class UserBase(SQLModel):
    username: str = Field(unique=True, sa_type=Text)
    password: str = Field(sa_type=Text, description="Stored as given; hashing is the caller's job")


class User(UserBase, table=True):
    """Workspace account."""

    __tablename__ = "users"

    id: str = Field(default_factory=new_id, primary_key=True)
    created_at: datetime = _created_at()

    # Relationships
    projects: list["Project"] = Relationship(back_populates="user")


class UserCreate(UserBase):
    """Insert payload for a user."""


# =============================================================================
# Project Model
# =============================================================================

class ProjectBase(SQLModel):
    name: str = Field(sa_type=Text)
    description: str | None = Field(default=None, sa_type=Text)
    user_id: str = Field(foreign_key="users.id")
    type: str = Field(sa_type=Text)  # ProjectType values
    path: str = Field(sa_type=Text)
    github_url: str | None = Field(default=None, sa_type=Text)
    status: str = Field(
        default=ProjectState.ACTIVE.value,
        sa_type=Text,
        sa_column_kwargs={"server_default": ProjectState.ACTIVE.value},
    )  # ProjectStatus values
    # The column is called "metadata"; the attribute name is taken by SQLModel
    project_metadata: JsonDocument = Field(
        default_factory=dict,
        sa_column=document_column("metadata"),
    )


class Project(ProjectBase, table=True):
    """A project in the workspace."""

    __tablename__ = "projects"

    id: str = Field(default_factory=new_id, primary_key=True)
    created_at: datetime = _created_at()
    updated_at: datetime = _created_at()

    # Relationships
    user: User | None = Relationship(back_populates="projects")
    executions: list["Execution"] = Relationship(back_populates="project")
    files: list["File"] = Relationship(back_populates="project")


class ProjectCreate(ProjectBase):
    """Insert payload for a project."""

    model_config = ConfigDict(populate_by_name=True)

    type: ProjectType
    status: ProjectStatus = ProjectState.ACTIVE.value
    project_metadata: JsonDocument = Field(default_factory=dict, alias="metadata")


class ProjectUpdate(SQLModel):
    """Partial update for a project.

    Fields backed by NOT NULL columns default to None but reject an explicit
    null; defaults are not validated.
    """

    model_config = ConfigDict(populate_by_name=True)

    name: str = None
    description: str | None = None
    user_id: str = None
    type: ProjectType = None
    path: str = None
    github_url: str | None = None
    status: ProjectStatus = None
    project_metadata: JsonDocument = Field(default=None, alias="metadata")


# =============================================================================
# AI Model
# =============================================================================

class ModelBase(SQLModel):
    name: str = Field(sa_type=Text)
    source: str = Field(sa_type=Text)  # ModelSource values
    model_id: str = Field(sa_type=Text, description="e.g. 'llama3.1:8b', 'microsoft/DialoGPT-medium'")
    status: str = Field(
        default=ModelState.DOWNLOADING.value,
        sa_type=Text,
        sa_column_kwargs={"server_default": ModelState.DOWNLOADING.value},
    )  # ModelStatus values
    size: int | None = Field(default=None, description="Size in bytes")
    parameters: str | None = Field(default=None, sa_type=Text, description="e.g. '8B', '175B'")
    context_length: int | None = Field(default=None)
    download_progress: int | None = Field(default=0, sa_column_kwargs={"server_default": "0"})
    config: JsonDocument = Field(default_factory=dict, sa_column=document_column("config"))
    performance: JsonDocument = Field(default_factory=dict, sa_column=document_column("performance"))


class Model(ModelBase, table=True):
    """An AI model registered in the workspace."""

    __tablename__ = "models"

    id: str = Field(default_factory=new_id, primary_key=True)
    created_at: datetime = _created_at()
    updated_at: datetime = _created_at()


class ModelCreate(ModelBase):
    """Insert payload for an AI model."""

    source: ModelSource
    status: ModelStatus = ModelState.DOWNLOADING.value


class ModelUpdate(SQLModel):
    """Partial update for an AI model."""

    name: str = None
    source: ModelSource = None
    model_id: str = None
    status: ModelStatus = None
    size: int | None = None
    parameters: str | None = None
    context_length: int | None = None
    download_progress: int | None = None
    config: JsonDocument = None
    performance: JsonDocument = None


# =============================================================================
# Execution Model
# =============================================================================

class ExecutionBase(SQLModel):
    project_id: str = Field(foreign_key="projects.id")
    command: str = Field(sa_type=Text)
    output: str | None = Field(default=None, sa_type=Text)
    error: str | None = Field(default=None, sa_type=Text)
    exit_code: int | None = Field(default=None)
    status: str = Field(
        default=ExecutionState.RUNNING.value,
        sa_type=Text,
        sa_column_kwargs={"server_default": ExecutionState.RUNNING.value},
    )  # ExecutionStatus values


class Execution(ExecutionBase, table=True):
    """A command run against a project."""

    __tablename__ = "executions"

    id: str = Field(default_factory=new_id, primary_key=True)
    start_time: datetime = _created_at()
    end_time: datetime | None = Field(default=None, sa_type=DateTime)

    # Relationships
    project: Project | None = Relationship(back_populates="executions")


class ExecutionCreate(ExecutionBase):
    """Insert payload for an execution."""

    status: ExecutionStatus = ExecutionState.RUNNING.value


class ExecutionUpdate(SQLModel):
    """Partial update for an execution; ``end_time`` is set on completion."""

    project_id: str = None
    command: str = None
    output: str | None = None
    error: str | None = None
    exit_code: int | None = None
    status: ExecutionStatus = None
    end_time: datetime | None = None


# =============================================================================
# File Model
# =============================================================================

class FileBase(SQLModel):
    project_id: str = Field(foreign_key="projects.id")
    path: str = Field(sa_type=Text)
    content: str | None = Field(default=None, sa_type=Text)  # None for directories
    type: str = Field(sa_type=Text)  # FileType values
    size: int | None = Field(default=None)


class File(FileBase, table=True):
    """A file or directory entry belonging to a project."""

    __tablename__ = "files"

    id: str = Field(default_factory=new_id, primary_key=True)
    modified_at: datetime = _created_at()

    # Relationships
    project: Project | None = Relationship(back_populates="files")


class FileCreate(FileBase):
    """Insert payload for a file tree entry."""

    type: FileType


class FileUpdate(SQLModel):
    """Partial update for a file tree entry."""

    project_id: str = None
    path: str = None
    content: str | None = None
    type: FileType = None
    size: int | None = None
