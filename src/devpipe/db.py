from __future__ import annotations

from contextlib import contextmanager
import json
import time
from typing import Any, Callable, Iterable, Iterator, TypeVar
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from devpipe.domain.models import (
    Actor,
    ArchitectureDecision,
    AuditEntry,
    Context,
    ContextType,
    EntityType,
    Feature,
    FeatureStatus,
    Priority,
    Role,
    Task,
    TaskStatus,
    TechnicalDiscovery,
    Transition,
    UserStory,
)
from devpipe.repository import (
    FEATURE_UPDATE_FIELDS,
    TASK_UPDATE_FIELDS,
    check_update_fields,
    from_epoch_ms,
    normalize_statuses,
    to_epoch_ms,
    utc_now,
)

T = TypeVar('T')


def _now_ms() -> int:
    return to_epoch_ms(utc_now()) or 0


def _dump(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=True, default=str)


def _load(text: str | None) -> Any:
    if text is None:
        return None
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return text


class Base(DeclarativeBase):
    pass


class FeatureEntity(Base):
    __tablename__ = 'features'

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    description: Mapped[str] = mapped_column(Text(), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    priority: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger(), nullable=False, index=True)
    updated_at: Mapped[int] = mapped_column(BigInteger(), nullable=False)
    completed_at: Mapped[int | None] = mapped_column(BigInteger(), nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text(), nullable=True)


class TaskEntity(Base):
    __tablename__ = 'tasks'

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    feature_id: Mapped[str] = mapped_column(String(36), ForeignKey('features.id'), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    description: Mapped[str] = mapped_column(Text(), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer(), nullable=False, default=0)
    created_at: Mapped[int] = mapped_column(BigInteger(), nullable=False, index=True)
    started_at: Mapped[int | None] = mapped_column(BigInteger(), nullable=True)
    completed_at: Mapped[int | None] = mapped_column(BigInteger(), nullable=True)
    output_json: Mapped[str | None] = mapped_column(Text(), nullable=True)
    error: Mapped[str | None] = mapped_column(Text(), nullable=True)


class ContextEntity(Base):
    __tablename__ = 'contexts'

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    feature_id: Mapped[str] = mapped_column(String(36), ForeignKey('features.id'), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    content: Mapped[str] = mapped_column(Text(), nullable=False)
    author: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger(), nullable=False)


class TransitionEntity(Base):
    __tablename__ = 'transitions'

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    from_state: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_state: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text(), nullable=True)
    actor: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger(), nullable=False)
    metadata_json: Mapped[str | None] = mapped_column(Text(), nullable=True)


class AuditEntity(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    actor: Mapped[str | None] = mapped_column(String(64), nullable=True)
    details_json: Mapped[str | None] = mapped_column(Text(), nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger(), nullable=False)


class DiscoveryEntity(Base):
    __tablename__ = 'technical_discoveries'

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    feature_id: Mapped[str] = mapped_column(String(36), ForeignKey('features.id'), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str] = mapped_column(Text(), nullable=False)
    impact: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger(), nullable=False)


class DecisionEntity(Base):
    __tablename__ = 'architecture_decisions'

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    feature_id: Mapped[str] = mapped_column(String(36), ForeignKey('features.id'), nullable=False, index=True)
    decision: Mapped[str] = mapped_column(Text(), nullable=False)
    rationale: Mapped[str] = mapped_column(Text(), nullable=False)
    alternatives_json: Mapped[str | None] = mapped_column(Text(), nullable=True)
    consequences: Mapped[str | None] = mapped_column(Text(), nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger(), nullable=False)


class UserStoryEntity(Base):
    __tablename__ = 'user_stories'

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    feature_id: Mapped[str] = mapped_column(String(36), ForeignKey('features.id'), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text(), nullable=False)
    acceptance_criteria_json: Mapped[str | None] = mapped_column(Text(), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger(), nullable=False)


class TaskUserStoryEntity(Base):
    __tablename__ = 'task_user_stories'
    __table_args__ = (
        UniqueConstraint('task_id', 'user_story_id', name='uq_task_user_stories'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    task_id: Mapped[int] = mapped_column(Integer(), ForeignKey('tasks.id'), nullable=False, index=True)
    user_story_id: Mapped[int] = mapped_column(Integer(), ForeignKey('user_stories.id'), nullable=False)


class Database:
    def __init__(self, url: str):
        engine_kwargs: dict[str, object] = {}
        if str(url or '').strip().lower().startswith('sqlite'):
            # Completion callbacks write from worker threads.
            engine_kwargs['connect_args'] = {'check_same_thread': False, 'timeout': 30}
        self.engine = create_engine(url, **engine_kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, class_=Session)
        if self.engine.dialect.name == 'sqlite':
            self._configure_sqlite_pragmas()

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _configure_sqlite_pragmas(self) -> None:
        with self.engine.connect() as conn:
            conn.exec_driver_sql('PRAGMA journal_mode=WAL')
            conn.exec_driver_sql('PRAGMA synchronous=NORMAL')
            conn.exec_driver_sql('PRAGMA foreign_keys=ON')
            conn.exec_driver_sql('PRAGMA busy_timeout=30000')


class SqlPipelineStore:
    def __init__(self, db: Database):
        self.db = db

    def _sqlite_lock_retry_attempts(self) -> int:
        return 8 if self.db.engine.dialect.name == 'sqlite' else 1

    @staticmethod
    def _is_sqlite_lock_error(exc: Exception) -> bool:
        text = str(exc or '').lower()
        return 'database is locked' in text or 'database table is locked' in text

    @staticmethod
    def _sqlite_lock_backoff_seconds(attempt: int) -> float:
        return min(0.2, 0.02 * (2 ** max(0, int(attempt) - 1)))

    def _write(self, fn: Callable[[Session], T]) -> T:
        attempts = self._sqlite_lock_retry_attempts()
        for attempt in range(1, attempts + 1):
            try:
                with self.db.session() as session:
                    return fn(session)
            except OperationalError as exc:
                if attempt >= attempts or not self._is_sqlite_lock_error(exc):
                    raise
                time.sleep(self._sqlite_lock_backoff_seconds(attempt))
        raise RuntimeError('unreachable')

    # Features

    def create_feature(
        self,
        *,
        description: str,
        priority: Priority | str = Priority.NORMAL,
        status: FeatureStatus | str = FeatureStatus.PENDING,
        metadata: dict[str, Any] | None = None,
    ) -> Feature:
        now = _now_ms()
        status = FeatureStatus(status)
        row = FeatureEntity(
            id=str(uuid4()),
            description=description,
            status=status.value,
            priority=Priority(priority).value,
            created_at=now,
            updated_at=now,
            completed_at=now if status == FeatureStatus.COMPLETE else None,
            metadata_json=_dump(dict(metadata or {})),
        )

        def op(session: Session) -> Feature:
            session.add(row)
            session.flush()
            return self._feature(row)

        return self._write(op)

    def get_feature(self, feature_id: str) -> Feature | None:
        with self.db.session() as session:
            row = session.get(FeatureEntity, feature_id)
            return self._feature(row) if row else None

    def list_features(
        self,
        *,
        status: FeatureStatus | str | None = None,
        priority: Priority | str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Feature]:
        stmt = select(FeatureEntity)
        if status is not None:
            stmt = stmt.where(FeatureEntity.status == FeatureStatus(status).value)
        if priority is not None:
            stmt = stmt.where(FeatureEntity.priority == Priority(priority).value)
        stmt = stmt.order_by(FeatureEntity.created_at.desc())
        if offset:
            stmt = stmt.offset(int(offset))
        if limit is not None:
            stmt = stmt.limit(int(limit))
        with self.db.session() as session:
            return [self._feature(r) for r in session.execute(stmt).scalars().all()]

    def update_feature(self, feature_id: str, **changes: Any) -> Feature:
        check_update_fields(changes, FEATURE_UPDATE_FIELDS)

        def op(session: Session) -> Feature:
            row = session.get(FeatureEntity, feature_id)
            if row is None:
                raise KeyError(f'Feature not found: {feature_id}')
            now = _now_ms()
            if 'status' in changes:
                row.status = FeatureStatus(changes['status']).value
                if row.status == FeatureStatus.COMPLETE.value and 'completed_at' not in changes:
                    row.completed_at = now
            if 'priority' in changes:
                row.priority = Priority(changes['priority']).value
            if 'description' in changes:
                row.description = str(changes['description'])
            if 'metadata' in changes:
                row.metadata_json = _dump(dict(changes['metadata'] or {}))
            if 'completed_at' in changes:
                row.completed_at = to_epoch_ms(changes['completed_at'])
            row.updated_at = now
            session.flush()
            return self._feature(row)

        return self._write(op)

    # Tasks

    def create_task(
        self,
        *,
        feature_id: str,
        role: Role | str,
        description: str,
        status: TaskStatus | str = TaskStatus.PENDING,
    ) -> Task:
        row = TaskEntity(
            feature_id=feature_id,
            role=Role(role).value,
            description=description,
            status=TaskStatus(status).value,
            attempts=0,
            created_at=_now_ms(),
        )

        def op(session: Session) -> Task:
            session.add(row)
            session.flush()
            return self._task(row)

        return self._write(op)

    def get_task(self, task_id: int) -> Task | None:
        with self.db.session() as session:
            row = session.get(TaskEntity, int(task_id))
            return self._task(row) if row else None

    def list_tasks(
        self,
        *,
        feature_id: str | None = None,
        role: Role | str | None = None,
        status: TaskStatus | str | Iterable[TaskStatus | str] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Task]:
        stmt = select(TaskEntity)
        if feature_id is not None:
            stmt = stmt.where(TaskEntity.feature_id == feature_id)
        if role is not None:
            stmt = stmt.where(TaskEntity.role == Role(role).value)
        statuses = normalize_statuses(status)
        if statuses is not None:
            stmt = stmt.where(TaskEntity.status.in_(sorted(s.value for s in statuses)))
        stmt = stmt.order_by(TaskEntity.created_at.asc(), TaskEntity.id.asc())
        if offset:
            stmt = stmt.offset(int(offset))
        if limit is not None:
            stmt = stmt.limit(int(limit))
        with self.db.session() as session:
            return [self._task(r) for r in session.execute(stmt).scalars().all()]

    def list_pending_tasks(self, limit: int = 100) -> list[Task]:
        return self.list_tasks(status=TaskStatus.PENDING, limit=limit)

    def update_task(self, task_id: int, **changes: Any) -> Task:
        check_update_fields(changes, TASK_UPDATE_FIELDS)

        def op(session: Session) -> Task:
            row = session.get(TaskEntity, int(task_id))
            if row is None:
                raise KeyError(f'Task not found: {task_id}')
            if 'status' in changes:
                row.status = TaskStatus(changes['status']).value
            if 'description' in changes:
                row.description = str(changes['description'])
            if 'started_at' in changes:
                row.started_at = to_epoch_ms(changes['started_at'])
            if 'completed_at' in changes:
                row.completed_at = to_epoch_ms(changes['completed_at'])
            if 'output' in changes:
                row.output_json = _dump(changes['output'])
            if 'error' in changes:
                row.error = changes['error']
            session.flush()
            return self._task(row)

        return self._write(op)

    def increment_attempts(self, task_id: int) -> Task:
        def op(session: Session) -> Task:
            row = session.get(TaskEntity, int(task_id))
            if row is None:
                raise KeyError(f'Task not found: {task_id}')
            row.attempts = int(row.attempts or 0) + 1
            session.flush()
            return self._task(row)

        return self._write(op)

    # Context, transitions, audit

    def add_context(
        self,
        *,
        feature_id: str,
        type: ContextType | str,
        content: str,
        author: str | None = None,
    ) -> Context:
        row = ContextEntity(
            feature_id=feature_id,
            type=ContextType(type).value,
            content=content,
            author=author,
            created_at=_now_ms(),
        )
        return self._write(lambda session: self._add(session, row, self._context))

    def list_contexts(self, feature_id: str) -> list[Context]:
        stmt = select(ContextEntity).where(ContextEntity.feature_id == feature_id).order_by(ContextEntity.id.asc())
        with self.db.session() as session:
            return [self._context(r) for r in session.execute(stmt).scalars().all()]

    def record_transition(
        self,
        *,
        entity_type: EntityType | str,
        entity_id: str | int,
        from_state: str | None,
        to_state: str,
        reason: str | None = None,
        actor: Actor | str = Actor.SYSTEM,
        metadata: dict[str, Any] | None = None,
    ) -> Transition:
        row = TransitionEntity(
            entity_type=EntityType(entity_type).value,
            entity_id=str(entity_id),
            from_state=from_state,
            to_state=to_state,
            reason=reason,
            actor=Actor(actor).value,
            created_at=_now_ms(),
            metadata_json=_dump(metadata) if metadata else None,
        )
        return self._write(lambda session: self._add(session, row, self._transition))

    def list_transitions(self, entity_type: EntityType | str, entity_id: str | int) -> list[Transition]:
        stmt = (
            select(TransitionEntity)
            .where(TransitionEntity.entity_type == EntityType(entity_type).value)
            .where(TransitionEntity.entity_id == str(entity_id))
            .order_by(TransitionEntity.id.asc())
        )
        with self.db.session() as session:
            return [self._transition(r) for r in session.execute(stmt).scalars().all()]

    def add_audit(
        self,
        *,
        action: str,
        entity_type: str | None = None,
        entity_id: str | int | None = None,
        actor: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditEntry:
        row = AuditEntity(
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            actor=actor,
            details_json=_dump(details) if details else None,
            created_at=_now_ms(),
        )
        return self._write(lambda session: self._add(session, row, self._audit))

    def list_audit(self, *, limit: int = 100) -> list[AuditEntry]:
        stmt = select(AuditEntity).order_by(AuditEntity.id.desc()).limit(int(limit))
        with self.db.session() as session:
            return [self._audit(r) for r in session.execute(stmt).scalars().all()]

    # Architect artifacts

    def add_discovery(self, *, feature_id: str, type: str, description: str, impact: str) -> TechnicalDiscovery:
        row = DiscoveryEntity(
            feature_id=feature_id,
            type=type,
            description=description,
            impact=impact,
            created_at=_now_ms(),
        )
        return self._write(lambda session: self._add(session, row, self._discovery))

    def list_discoveries(self, feature_id: str) -> list[TechnicalDiscovery]:
        stmt = select(DiscoveryEntity).where(DiscoveryEntity.feature_id == feature_id).order_by(DiscoveryEntity.id.asc())
        with self.db.session() as session:
            return [self._discovery(r) for r in session.execute(stmt).scalars().all()]

    def add_decision(
        self,
        *,
        feature_id: str,
        decision: str,
        rationale: str,
        alternatives: list[str] | None = None,
        consequences: str | None = None,
    ) -> ArchitectureDecision:
        row = DecisionEntity(
            feature_id=feature_id,
            decision=decision,
            rationale=rationale,
            alternatives_json=_dump(list(alternatives or [])),
            consequences=consequences,
            created_at=_now_ms(),
        )
        return self._write(lambda session: self._add(session, row, self._decision))

    def list_decisions(self, feature_id: str) -> list[ArchitectureDecision]:
        stmt = select(DecisionEntity).where(DecisionEntity.feature_id == feature_id).order_by(DecisionEntity.id.asc())
        with self.db.session() as session:
            return [self._decision(r) for r in session.execute(stmt).scalars().all()]

    def add_user_story(
        self,
        *,
        feature_id: str,
        title: str,
        description: str,
        acceptance_criteria: list[str] | None = None,
        status: str = 'ready',
    ) -> UserStory:
        row = UserStoryEntity(
            feature_id=feature_id,
            title=title,
            description=description,
            acceptance_criteria_json=_dump(list(acceptance_criteria or [])),
            status=status,
            created_at=_now_ms(),
        )
        return self._write(lambda session: self._add(session, row, self._story))

    def list_user_stories(self, feature_id: str) -> list[UserStory]:
        stmt = select(UserStoryEntity).where(UserStoryEntity.feature_id == feature_id).order_by(UserStoryEntity.id.asc())
        with self.db.session() as session:
            return [self._story(r) for r in session.execute(stmt).scalars().all()]

    def link_task_user_story(self, task_id: int, story_id: int) -> None:
        def op(session: Session) -> None:
            if session.get(TaskEntity, int(task_id)) is None:
                raise KeyError(f'Task not found: {task_id}')
            if session.get(UserStoryEntity, int(story_id)) is None:
                raise KeyError(f'User story not found: {story_id}')
            existing = session.execute(
                select(TaskUserStoryEntity)
                .where(TaskUserStoryEntity.task_id == int(task_id))
                .where(TaskUserStoryEntity.user_story_id == int(story_id))
            ).scalar_one_or_none()
            if existing is None:
                session.add(TaskUserStoryEntity(task_id=int(task_id), user_story_id=int(story_id)))

        self._write(op)

    def list_user_stories_for_task(self, task_id: int) -> list[UserStory]:
        stmt = (
            select(UserStoryEntity)
            .join(TaskUserStoryEntity, TaskUserStoryEntity.user_story_id == UserStoryEntity.id)
            .where(TaskUserStoryEntity.task_id == int(task_id))
            .order_by(UserStoryEntity.id.asc())
        )
        with self.db.session() as session:
            return [self._story(r) for r in session.execute(stmt).scalars().all()]

    # Row mapping

    @staticmethod
    def _add(session: Session, row: Base, mapper: Callable[[Any], T]) -> T:
        session.add(row)
        session.flush()
        return mapper(row)

    @staticmethod
    def _feature(row: FeatureEntity) -> Feature:
        return Feature(
            id=row.id,
            description=row.description,
            status=FeatureStatus(row.status),
            priority=Priority(row.priority),
            created_at=from_epoch_ms(row.created_at),
            updated_at=from_epoch_ms(row.updated_at),
            completed_at=from_epoch_ms(row.completed_at),
            metadata=dict(_load(row.metadata_json) or {}),
        )

    @staticmethod
    def _task(row: TaskEntity) -> Task:
        return Task(
            id=int(row.id),
            feature_id=row.feature_id,
            role=Role(row.role),
            description=row.description,
            status=TaskStatus(row.status),
            attempts=int(row.attempts or 0),
            created_at=from_epoch_ms(row.created_at),
            started_at=from_epoch_ms(row.started_at),
            completed_at=from_epoch_ms(row.completed_at),
            output=_load(row.output_json),
            error=row.error,
        )

    @staticmethod
    def _context(row: ContextEntity) -> Context:
        return Context(
            id=int(row.id),
            feature_id=row.feature_id,
            type=ContextType(row.type),
            content=row.content,
            author=row.author,
            created_at=from_epoch_ms(row.created_at),
        )

    @staticmethod
    def _transition(row: TransitionEntity) -> Transition:
        return Transition(
            id=int(row.id),
            entity_type=EntityType(row.entity_type),
            entity_id=row.entity_id,
            from_state=row.from_state,
            to_state=row.to_state,
            reason=row.reason,
            actor=Actor(row.actor),
            created_at=from_epoch_ms(row.created_at),
            metadata=_load(row.metadata_json),
        )

    @staticmethod
    def _audit(row: AuditEntity) -> AuditEntry:
        return AuditEntry(
            id=int(row.id),
            action=row.action,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            actor=row.actor,
            details=_load(row.details_json),
            created_at=from_epoch_ms(row.created_at),
        )

    @staticmethod
    def _discovery(row: DiscoveryEntity) -> TechnicalDiscovery:
        return TechnicalDiscovery(
            id=int(row.id),
            feature_id=row.feature_id,
            type=row.type,
            description=row.description,
            impact=row.impact,
            created_at=from_epoch_ms(row.created_at),
        )

    @staticmethod
    def _decision(row: DecisionEntity) -> ArchitectureDecision:
        return ArchitectureDecision(
            id=int(row.id),
            feature_id=row.feature_id,
            decision=row.decision,
            rationale=row.rationale,
            alternatives=list(_load(row.alternatives_json) or []),
            consequences=row.consequences,
            created_at=from_epoch_ms(row.created_at),
        )

    @staticmethod
    def _story(row: UserStoryEntity) -> UserStory:
        return UserStory(
            id=int(row.id),
            feature_id=row.feature_id,
            title=row.title,
            description=row.description,
            acceptance_criteria=list(_load(row.acceptance_criteria_json) or []),
            status=row.status,
            created_at=from_epoch_ms(row.created_at),
        )
