"""Storage backends for workspace records.

Two implementations share the ``Storage`` interface:
- DatabaseStorage: SQLModel tables through an async SQLAlchemy engine
- MemStorage: process-local dictionaries, used when no DATABASE_URL is set

Both apply the same defaults and report constraint violations as
``IntegrityViolationError``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from contextlib import asynccontextmanager
from copy import deepcopy
from typing import Any, AsyncGenerator, TypeVar, Union

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlmodel import SQLModel, select

from devstudio.config import Settings, get_settings
from devstudio.database.models import (
    Execution,
    ExecutionCreate,
    ExecutionUpdate,
    File,
    FileCreate,
    FileUpdate,
    Model,
    ModelCreate,
    ModelUpdate,
    Project,
    ProjectCreate,
    ProjectUpdate,
    User,
    UserCreate,
    utcnow,
)
from devstudio.database.session import build_engine, build_session_maker, get_engine, get_session
from devstudio.exceptions import IntegrityViolationError


logger = logging.getLogger(__name__)

ShapeT = TypeVar("ShapeT", bound=SQLModel)
Payload = Union[SQLModel, Mapping[str, Any]]


def coerce(payload: Payload, shape: type[ShapeT]) -> ShapeT:
    """Validate a mapping into ``shape``; instances pass through.

    Raises:
        pydantic.ValidationError: if required fields are missing or mistyped
    """
    if isinstance(payload, shape):
        return payload
    if isinstance(payload, SQLModel):
        payload = payload.model_dump(exclude_unset=True)
    return shape.model_validate(payload)


def _changes(payload: Payload, shape: type[SQLModel]) -> dict[str, Any]:
    return coerce(payload, shape).model_dump(exclude_unset=True)


# =============================================================================
# Interface
# =============================================================================

class Storage(ABC):
    """Read/write access to users, projects, models, executions and files.

    Lookups return ``None`` for unknown ids, updates return ``None`` when the
    row does not exist and deletes return whether a row was removed.
    """

    # Users
    @abstractmethod
    async def get_user(self, user_id: str) -> User | None:
        ...

    @abstractmethod
    async def get_user_by_username(self, username: str) -> User | None:
        ...

    @abstractmethod
    async def create_user(self, user: UserCreate | Mapping[str, Any]) -> User:
        """Insert a user.

        Raises:
            IntegrityViolationError: if the username is taken
        """
        ...

    # Projects
    @abstractmethod
    async def get_project(self, project_id: str) -> Project | None:
        ...

    @abstractmethod
    async def get_projects_by_user(self, user_id: str) -> list[Project]:
        """Projects owned by ``user_id``, most recently updated first."""
        ...

    @abstractmethod
    async def create_project(self, project: ProjectCreate | Mapping[str, Any]) -> Project:
        """Insert a project.

        Raises:
            IntegrityViolationError: if ``user_id`` does not reference a user
        """
        ...

    @abstractmethod
    async def update_project(
        self, project_id: str, changes: ProjectUpdate | Mapping[str, Any]
    ) -> Project | None:
        """Apply ``changes`` and refresh ``updated_at``."""
        ...

    @abstractmethod
    async def delete_project(self, project_id: str) -> bool:
        """Delete a project.

        Raises:
            IntegrityViolationError: while executions or files still reference it
        """
        ...

    # Models
    @abstractmethod
    async def get_model(self, model_pk: str) -> Model | None:
        ...

    @abstractmethod
    async def get_models(self) -> list[Model]:
        """All models, most recently updated first."""
        ...

    @abstractmethod
    async def get_model_by_model_id(self, model_id: str) -> Model | None:
        """Look a model up by its external identifier (e.g. ``llama3.1:8b``)."""
        ...

    @abstractmethod
    async def create_model(self, model: ModelCreate | Mapping[str, Any]) -> Model:
        ...

    @abstractmethod
    async def update_model(
        self, model_pk: str, changes: ModelUpdate | Mapping[str, Any]
    ) -> Model | None:
        """Apply ``changes`` and refresh ``updated_at``."""
        ...

    @abstractmethod
    async def delete_model(self, model_pk: str) -> bool:
        ...

    # Executions
    @abstractmethod
    async def get_execution(self, execution_id: str) -> Execution | None:
        ...

    @abstractmethod
    async def get_executions_by_project(self, project_id: str) -> list[Execution]:
        """Executions of a project, most recently started first."""
        ...

    @abstractmethod
    async def create_execution(
        self, execution: ExecutionCreate | Mapping[str, Any]
    ) -> Execution:
        ...

    @abstractmethod
    async def update_execution(
        self, execution_id: str, changes: ExecutionUpdate | Mapping[str, Any]
    ) -> Execution | None:
        """Apply ``changes``; no timestamp is touched unless ``end_time`` is given."""
        ...

    # Files
    @abstractmethod
    async def get_file(self, file_id: str) -> File | None:
        ...

    @abstractmethod
    async def get_files_by_project(self, project_id: str) -> list[File]:
        """File tree entries of a project ordered by path."""
        ...

    @abstractmethod
    async def get_file_by_path(self, project_id: str, path: str) -> File | None:
        ...

    @abstractmethod
    async def create_file(self, file: FileCreate | Mapping[str, Any]) -> File:
        ...

    @abstractmethod
    async def update_file(
        self, file_id: str, changes: FileUpdate | Mapping[str, Any]
    ) -> File | None:
        """Apply ``changes`` and refresh ``modified_at``."""
        ...

    @abstractmethod
    async def delete_file(self, file_id: str) -> bool:
        ...

    async def close(self) -> None:
        """Release backend resources."""


# =============================================================================
# Database backend
# =============================================================================

class DatabaseStorage(Storage):
    """Storage backed by the SQLModel tables."""

    def __init__(self, engine: AsyncEngine):
        self._engine = engine
        self._session_maker = build_session_maker(engine)

    @asynccontextmanager
    async def _write(self, table: str) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with get_session(self._session_maker) as session:
                yield session
        except IntegrityError as e:
            logger.warning(f"Integrity violation on {table}: {e.orig}")
            raise IntegrityViolationError(str(e.orig), table=table) from e

    async def _insert(self, row: ShapeT) -> ShapeT:
        async with self._write(row.__tablename__) as session:
            session.add(row)
            await session.flush()
            await session.refresh(row)
        logger.debug(f"Inserted {row.__tablename__} row {row.id}")
        return row

    async def _get(self, table_cls: type[ShapeT], row_id: str) -> ShapeT | None:
        async with self._session_maker() as session:
            return await session.get(table_cls, row_id)

    async def _first(self, statement: Any) -> Any:
        async with self._session_maker() as session:
            result = await session.execute(statement)
            return result.scalars().first()

    async def _all(self, statement: Any) -> list[Any]:
        async with self._session_maker() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def _update(
        self,
        table_cls: type[ShapeT],
        row_id: str,
        values: dict[str, Any],
        touch: str | None = None,
    ) -> ShapeT | None:
        async with self._write(table_cls.__tablename__) as session:
            row = await session.get(table_cls, row_id)
            if row is None:
                return None
            for key, value in values.items():
                setattr(row, key, value)
            if touch:
                setattr(row, touch, utcnow())
            session.add(row)
            await session.flush()
            await session.refresh(row)
        logger.debug(f"Updated {table_cls.__tablename__} row {row_id}: {sorted(values)}")
        return row

    async def _delete(self, table_cls: type[SQLModel], row_id: str) -> bool:
        async with self._write(table_cls.__tablename__) as session:
            result = await session.execute(delete(table_cls).where(table_cls.id == row_id))
        deleted = (result.rowcount or 0) > 0
        if deleted:
            logger.debug(f"Deleted {table_cls.__tablename__} row {row_id}")
        return deleted

    # Users
    async def get_user(self, user_id: str) -> User | None:
        return await self._get(User, user_id)

    async def get_user_by_username(self, username: str) -> User | None:
        return await self._first(select(User).where(User.username == username))

    async def create_user(self, user: UserCreate | Mapping[str, Any]) -> User:
        data = coerce(user, UserCreate)
        return await self._insert(User.model_validate(data.model_dump()))

    # Projects
    async def get_project(self, project_id: str) -> Project | None:
        return await self._get(Project, project_id)

    async def get_projects_by_user(self, user_id: str) -> list[Project]:
        return await self._all(
            select(Project)
            .where(Project.user_id == user_id)
            .order_by(Project.updated_at.desc())
        )

    async def create_project(self, project: ProjectCreate | Mapping[str, Any]) -> Project:
        data = coerce(project, ProjectCreate)
        return await self._insert(Project.model_validate(data.model_dump()))

    async def update_project(
        self, project_id: str, changes: ProjectUpdate | Mapping[str, Any]
    ) -> Project | None:
        return await self._update(
            Project, project_id, _changes(changes, ProjectUpdate), touch="updated_at"
        )

    async def delete_project(self, project_id: str) -> bool:
        return await self._delete(Project, project_id)

    # Models
    async def get_model(self, model_pk: str) -> Model | None:
        return await self._get(Model, model_pk)

    async def get_models(self) -> list[Model]:
        return await self._all(select(Model).order_by(Model.updated_at.desc()))

    async def get_model_by_model_id(self, model_id: str) -> Model | None:
        return await self._first(select(Model).where(Model.model_id == model_id))

    async def create_model(self, model: ModelCreate | Mapping[str, Any]) -> Model:
        data = coerce(model, ModelCreate)
        return await self._insert(Model.model_validate(data.model_dump()))

    async def update_model(
        self, model_pk: str, changes: ModelUpdate | Mapping[str, Any]
    ) -> Model | None:
        return await self._update(
            Model, model_pk, _changes(changes, ModelUpdate), touch="updated_at"
        )

    async def delete_model(self, model_pk: str) -> bool:
        return await self._delete(Model, model_pk)

    # Executions
    async def get_execution(self, execution_id: str) -> Execution | None:
        return await self._get(Execution, execution_id)

    async def get_executions_by_project(self, project_id: str) -> list[Execution]:
        return await self._all(
            select(Execution)
            .where(Execution.project_id == project_id)
            .order_by(Execution.start_time.desc())
        )

    async def create_execution(
        self, execution: ExecutionCreate | Mapping[str, Any]
    ) -> Execution:
        data = coerce(execution, ExecutionCreate)
        return await self._insert(Execution.model_validate(data.model_dump()))

    async def update_execution(
        self, execution_id: str, changes: ExecutionUpdate | Mapping[str, Any]
    ) -> Execution | None:
        return await self._update(Execution, execution_id, _changes(changes, ExecutionUpdate))

    # Files
    async def get_file(self, file_id: str) -> File | None:
        return await self._get(File, file_id)

    async def get_files_by_project(self, project_id: str) -> list[File]:
        return await self._all(
            select(File).where(File.project_id == project_id).order_by(File.path)
        )

    async def get_file_by_path(self, project_id: str, path: str) -> File | None:
        return await self._first(
            select(File).where(File.project_id == project_id, File.path == path)
        )

    async def create_file(self, file: FileCreate | Mapping[str, Any]) -> File:
        data = coerce(file, FileCreate)
        return await self._insert(File.model_validate(data.model_dump()))

    async def update_file(
        self, file_id: str, changes: FileUpdate | Mapping[str, Any]
    ) -> File | None:
        return await self._update(
            File, file_id, _changes(changes, FileUpdate), touch="modified_at"
        )

    async def delete_file(self, file_id: str) -> bool:
        return await self._delete(File, file_id)

    async def close(self) -> None:
        await self._engine.dispose()


# =============================================================================
# In-memory backend
# =============================================================================

class MemStorage(Storage):
    """Dictionary-backed storage for development and tests.

    Rows are the same table classes the database backend returns, built
    through ``Model.model_validate`` so column defaults apply identically.
    Callers always get detached copies, never the stored rows.
    Foreign keys and the unique username are checked by hand.
    """

    def __init__(self) -> None:
        self._users: dict[str, User] = {}
        self._projects: dict[str, Project] = {}
        self._models: dict[str, Model] = {}
        self._executions: dict[str, Execution] = {}
        self._files: dict[str, File] = {}

    def _require_user(self, user_id: str | None) -> None:
        if user_id not in self._users:
            raise IntegrityViolationError(f"user {user_id!r} does not exist", table="projects")

    def _require_project(self, project_id: str | None, table: str) -> None:
        if project_id not in self._projects:
            raise IntegrityViolationError(f"project {project_id!r} does not exist", table=table)

    def _require_unique_username(self, username: str) -> None:
        if any(u.username == username for u in self._users.values()):
            raise IntegrityViolationError(f"username {username!r} is taken", table="users")

    @staticmethod
    def _copy(row: ShapeT | None) -> ShapeT | None:
        if row is None:
            return None
        return type(row).model_validate(deepcopy(row.model_dump()))

    @staticmethod
    def _apply(row: SQLModel, values: dict[str, Any], touch: str | None = None) -> None:
        for key, value in values.items():
            setattr(row, key, value)
        if touch:
            setattr(row, touch, utcnow())

    # Users
    async def get_user(self, user_id: str) -> User | None:
        return self._copy(self._users.get(user_id))

    async def get_user_by_username(self, username: str) -> User | None:
        return self._copy(next((u for u in self._users.values() if u.username == username), None))

    async def create_user(self, user: UserCreate | Mapping[str, Any]) -> User:
        data = coerce(user, UserCreate)
        self._require_unique_username(data.username)
        row = User.model_validate(data.model_dump())
        self._users[row.id] = row
        logger.debug(f"Inserted users row {row.id}")
        return self._copy(row)

    # Projects
    async def get_project(self, project_id: str) -> Project | None:
        return self._copy(self._projects.get(project_id))

    async def get_projects_by_user(self, user_id: str) -> list[Project]:
        projects = [p for p in self._projects.values() if p.user_id == user_id]
        return [self._copy(p) for p in sorted(projects, key=lambda p: p.updated_at, reverse=True)]

    async def create_project(self, project: ProjectCreate | Mapping[str, Any]) -> Project:
        data = coerce(project, ProjectCreate)
        self._require_user(data.user_id)
        row = Project.model_validate(data.model_dump())
        self._projects[row.id] = row
        logger.debug(f"Inserted projects row {row.id}")
        return self._copy(row)

    async def update_project(
        self, project_id: str, changes: ProjectUpdate | Mapping[str, Any]
    ) -> Project | None:
        row = self._projects.get(project_id)
        if row is None:
            return None
        values = _changes(changes, ProjectUpdate)
        if "user_id" in values:
            self._require_user(values["user_id"])
        self._apply(row, values, touch="updated_at")
        return self._copy(row)

    async def delete_project(self, project_id: str) -> bool:
        if project_id not in self._projects:
            return False
        referenced = any(e.project_id == project_id for e in self._executions.values()) or any(
            f.project_id == project_id for f in self._files.values()
        )
        if referenced:
            raise IntegrityViolationError(
                f"project {project_id!r} is still referenced", table="projects"
            )
        del self._projects[project_id]
        return True

    # Models
    async def get_model(self, model_pk: str) -> Model | None:
        return self._copy(self._models.get(model_pk))

    async def get_models(self) -> list[Model]:
        models = sorted(self._models.values(), key=lambda m: m.updated_at, reverse=True)
        return [self._copy(m) for m in models]

    async def get_model_by_model_id(self, model_id: str) -> Model | None:
        return self._copy(next((m for m in self._models.values() if m.model_id == model_id), None))

    async def create_model(self, model: ModelCreate | Mapping[str, Any]) -> Model:
        data = coerce(model, ModelCreate)
        row = Model.model_validate(data.model_dump())
        self._models[row.id] = row
        logger.debug(f"Inserted models row {row.id}")
        return self._copy(row)

    async def update_model(
        self, model_pk: str, changes: ModelUpdate | Mapping[str, Any]
    ) -> Model | None:
        row = self._models.get(model_pk)
        if row is None:
            return None
        self._apply(row, _changes(changes, ModelUpdate), touch="updated_at")
        return self._copy(row)

    async def delete_model(self, model_pk: str) -> bool:
        return self._models.pop(model_pk, None) is not None

    # Executions
    async def get_execution(self, execution_id: str) -> Execution | None:
        return self._copy(self._executions.get(execution_id))

    async def get_executions_by_project(self, project_id: str) -> list[Execution]:
        executions = [e for e in self._executions.values() if e.project_id == project_id]
        return [self._copy(e) for e in sorted(executions, key=lambda e: e.start_time, reverse=True)]

    async def create_execution(
        self, execution: ExecutionCreate | Mapping[str, Any]
    ) -> Execution:
        data = coerce(execution, ExecutionCreate)
        self._require_project(data.project_id, "executions")
        row = Execution.model_validate(data.model_dump())
        self._executions[row.id] = row
        logger.debug(f"Inserted executions row {row.id}")
        return self._copy(row)

    async def update_execution(
        self, execution_id: str, changes: ExecutionUpdate | Mapping[str, Any]
    ) -> Execution | None:
        row = self._executions.get(execution_id)
        if row is None:
            return None
        values = _changes(changes, ExecutionUpdate)
        if "project_id" in values:
            self._require_project(values["project_id"], "executions")
        self._apply(row, values)
        return self._copy(row)

    # Files
    async def get_file(self, file_id: str) -> File | None:
        return self._copy(self._files.get(file_id))

    async def get_files_by_project(self, project_id: str) -> list[File]:
        files = [f for f in self._files.values() if f.project_id == project_id]
        return [self._copy(f) for f in sorted(files, key=lambda f: f.path)]

    async def get_file_by_path(self, project_id: str, path: str) -> File | None:
        return self._copy(
            next(
                (f for f in self._files.values() if f.project_id == project_id and f.path == path),
                None,
            )
        )

    async def create_file(self, file: FileCreate | Mapping[str, Any]) -> File:
        data = coerce(file, FileCreate)
        self._require_project(data.project_id, "files")
        row = File.model_validate(data.model_dump())
        self._files[row.id] = row
        logger.debug(f"Inserted files row {row.id}")
        return self._copy(row)

    async def update_file(
        self, file_id: str, changes: FileUpdate | Mapping[str, Any]
    ) -> File | None:
        row = self._files.get(file_id)
        if row is None:
            return None
        values = _changes(changes, FileUpdate)
        if "project_id" in values:
            self._require_project(values["project_id"], "files")
        self._apply(row, values, touch="modified_at")
        return self._copy(row)

    async def delete_file(self, file_id: str) -> bool:
        return self._files.pop(file_id, None) is not None


# =============================================================================
# Factory
# =============================================================================

def create_storage(settings: Settings | None = None) -> Storage:
    """Pick the backend: in-memory without DATABASE_URL, database otherwise."""
    if settings is None:
        settings = get_settings()
        engine_factory = get_engine
    else:
        def engine_factory() -> AsyncEngine:
            return build_engine(
                settings.database_url,
                echo=settings.debug,
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
            )

    if not settings.uses_database:
        logger.info("Using in-memory storage (DATABASE_URL not provided)")
        return MemStorage()

    logger.info("Using database storage")
    return DatabaseStorage(engine_factory())
