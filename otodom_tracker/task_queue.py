"""Durable, crash-recoverable queue of district scrape tasks.

Tasks live in the ``scrape_tasks`` table of the tracker database, next to
the stored aggregates. Waiting tasks (PENDING or RETRY) keep their queue
order in ``position``; the single IN_PROGRESS task is guarded by a partial
unique index; COMPLETED and FAILED tasks form the history.

Every mutating call commits one transaction before returning, so a crash
between calls always leaves a recoverable state, and several processes
(CLI, API, runner) can share the queue without overwriting each other.
"""

import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Union

from loguru import logger
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from otodom_tracker.config_loader import get_queue_config
from otodom_tracker.errors import ErrorType, classify_error, retry_delay_seconds
from otodom_tracker.models import ScrapeTaskRecord, get_engine, get_session_factory, init_db


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RETRY = "retry"
    COMPLETED = "completed"
    FAILED = "failed"


class RoomType(str, Enum):
    ONE_ROOM = "oneRoom"
    TWO_ROOM = "twoRoom"
    THREE_ROOM = "threeRoom"
    FOUR_PLUS_ROOM = "fourPlusRoom"

    @property
    def rooms_number(self) -> str:
        return _ROOMS_NUMBER[self]

    @property
    def sort_key(self) -> int:
        return list(RoomType).index(self)

    @classmethod
    def parse(cls, value: Union[str, "RoomType"]) -> "RoomType":
        """Accept enum values, member names and short aliases like ``two`` or ``2``."""
        if isinstance(value, RoomType):
            return value
        text = str(value).strip()
        for member in cls:
            if text == member.value or text.upper() == member.name:
                return member
        alias = _ROOM_ALIASES.get(text.lower())
        if alias is None:
            raise ValueError(f"Unknown room type: {value}")
        return alias


_ROOMS_NUMBER = {
    RoomType.ONE_ROOM: "ONE",
    RoomType.TWO_ROOM: "TWO",
    RoomType.THREE_ROOM: "THREE",
    RoomType.FOUR_PLUS_ROOM: "FOUR",
}

_ROOM_ALIASES = {
    "1": RoomType.ONE_ROOM,
    "one": RoomType.ONE_ROOM,
    "2": RoomType.TWO_ROOM,
    "two": RoomType.TWO_ROOM,
    "3": RoomType.THREE_ROOM,
    "three": RoomType.THREE_ROOM,
    "4": RoomType.FOUR_PLUS_ROOM,
    "4+": RoomType.FOUR_PLUS_ROOM,
    "four": RoomType.FOUR_PLUS_ROOM,
    "fourplus": RoomType.FOUR_PLUS_ROOM,
}


WAITING_STATUSES = (TaskStatus.PENDING.value, TaskStatus.RETRY.value)
FINISHED_STATUSES = (TaskStatus.COMPLETED.value, TaskStatus.FAILED.value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC for DB compatibility."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


@dataclass(frozen=True)
class TargetDescriptor:
    """What to scrape: one city district for one room-type category."""

    city: str
    district: str
    search_slug: str
    room_type: RoomType
    fetch_date: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "city": self.city,
            "district": self.district,
            "search_slug": self.search_slug,
            "room_type": self.room_type.value,
            "fetch_date": self.fetch_date,
        }

    @property
    def label(self) -> str:
        return f"{self.city}/{self.district}/{self.room_type.value}"


@dataclass
class ScrapeTask:
    id: str
    target: TargetDescriptor
    priority: int
    status: TaskStatus = TaskStatus.PENDING
    retry_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    not_before: Optional[datetime] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "target": self.target.to_dict(),
            "priority": self.priority,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "not_before": _iso(self.not_before),
            "error": self.error,
            "error_type": self.error_type,
            "result": self.result,
        }

    @classmethod
    def from_record(cls, record: ScrapeTaskRecord) -> "ScrapeTask":
        return cls(
            id=record.id,
            target=TargetDescriptor(
                city=record.city,
                district=record.district,
                search_slug=record.search_slug,
                room_type=RoomType(record.room_type),
                fetch_date=record.fetch_date,
            ),
            priority=int(record.priority or 0),
            status=TaskStatus(record.status),
            retry_count=int(record.retry_count or 0),
            created_at=_from_db(record.created_at),
            updated_at=_from_db(record.updated_at),
            started_at=_from_db(record.started_at),
            completed_at=_from_db(record.completed_at),
            not_before=_from_db(record.not_before),
            error=record.error,
            error_type=record.error_type,
            result=record.result,
        )


class TaskQueue:
    """Single-flight priority queue of scrape tasks persisted in the tracker database."""

    def __init__(
        self,
        session_factory: sessionmaker,
        max_retries: int = 3,
        retry_insert_offset: int = 5,
        backoff_base_seconds: float = 3.0,
        backoff_multiplier: float = 3.0,
        backoff_max_seconds: float = 90.0,
        clock: Optional[Callable[[], datetime]] = None,
        recover: bool = True,
    ):
        self._session_factory = session_factory
        self.max_retries = int(max_retries)
        self.retry_insert_offset = int(retry_insert_offset)
        self.backoff_base_seconds = float(backoff_base_seconds)
        self.backoff_multiplier = float(backoff_multiplier)
        self.backoff_max_seconds = float(backoff_max_seconds)
        self._clock = clock or _utcnow
        self._lock = threading.RLock()
        self._last_task_id: Optional[str] = None

        if recover:
            self.recover()

    @classmethod
    def from_config(
        cls,
        config: Dict[str, Any],
        session_factory: Optional[sessionmaker] = None,
        **kwargs,
    ) -> "TaskQueue":
        """Build a queue on the configured database; tables are created when missing."""
        queue_cfg = get_queue_config(config)
        if session_factory is None:
            engine = get_engine(config)
            init_db(engine)
            session_factory = get_session_factory(engine)
        return cls(
            session_factory,
            max_retries=queue_cfg.get("max_retries", 3),
            retry_insert_offset=queue_cfg.get("retry_insert_offset", 5),
            backoff_base_seconds=queue_cfg.get("backoff_base_seconds", 3),
            backoff_multiplier=queue_cfg.get("backoff_multiplier", 3),
            backoff_max_seconds=queue_cfg.get("backoff_max_seconds", 90),
            **kwargs,
        )

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _waiting(session: Session) -> List[ScrapeTaskRecord]:
        return (
            session.query(ScrapeTaskRecord)
            .filter(ScrapeTaskRecord.status.in_(WAITING_STATUSES))
            .order_by(ScrapeTaskRecord.position, ScrapeTaskRecord.created_at, ScrapeTaskRecord.id)
            .all()
        )

    @staticmethod
    def _renumber(records: List[ScrapeTaskRecord]) -> None:
        for index, record in enumerate(records):
            record.position = index

    @staticmethod
    def _in_progress(session: Session) -> Optional[ScrapeTaskRecord]:
        return session.query(ScrapeTaskRecord).filter(ScrapeTaskRecord.status == TaskStatus.IN_PROGRESS.value).first()

    def _finish(self, session: Session, record: ScrapeTaskRecord, status: TaskStatus, now: datetime) -> None:
        last = (
            session.query(func.max(ScrapeTaskRecord.position))
            .filter(ScrapeTaskRecord.status.in_(FINISHED_STATUSES))
            .scalar()
        )
        record.status = status.value
        record.position = 0 if last is None else last + 1
        record.not_before = None
        record.completed_at = _to_db(now)
        record.updated_at = _to_db(now)

    # ------------------------------------------------------------------
    # recovery
    # ------------------------------------------------------------------

    def recover(self) -> Optional[ScrapeTask]:
        """Requeue a task orphaned IN_PROGRESS by a previous process.

        The task is converted to RETRY with its retry count incremented and
        put back at the front of the queue, or moved to FAILED when the
        count reached the maximum. Returns the recovered task, if any.
        """
        with self._lock, self._transaction() as session:
            orphan = self._in_progress(session)
            if orphan is None:
                return None

            now = self._clock()
            waiting = self._waiting(session)
            orphan.retry_count = int(orphan.retry_count or 0) + 1
            orphan.error = "interrupted"
            orphan.error_type = None
            orphan.started_at = None
            orphan.updated_at = _to_db(now)

            if orphan.retry_count >= self.max_retries:
                self._finish(session, orphan, TaskStatus.FAILED, now)
                logger.warning(
                    f"Recovered task {orphan.id} ({orphan.city}/{orphan.district}/{orphan.room_type}) "
                    f"exhausted retries, marked failed"
                )
            else:
                orphan.status = TaskStatus.RETRY.value
                orphan.not_before = _to_db(now)
                waiting.insert(0, orphan)
                self._renumber(waiting)
                logger.warning(
                    f"Recovered interrupted task {orphan.id} ({orphan.city}/{orphan.district}/{orphan.room_type}), "
                    f"retry {orphan.retry_count}/{self.max_retries}"
                )
            return ScrapeTask.from_record(orphan)

    # ------------------------------------------------------------------
    # mutations
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_by_priority(waiting: List[ScrapeTaskRecord], record: ScrapeTaskRecord) -> None:
        index = len(waiting)
        for i, queued in enumerate(waiting):
            if queued.priority > record.priority:
                index = i
                break
        waiting.insert(index, record)

    def _new_record(self, target: TargetDescriptor, priority: int) -> ScrapeTaskRecord:
        now = _to_db(self._clock())
        return ScrapeTaskRecord(
            id=uuid.uuid4().hex,
            city=target.city,
            district=target.district,
            search_slug=target.search_slug,
            room_type=target.room_type.value,
            fetch_date=target.fetch_date,
            status=TaskStatus.PENDING.value,
            priority=int(priority),
            retry_count=0,
            created_at=now,
            updated_at=now,
        )

    def enqueue(self, target: TargetDescriptor, priority: Optional[int] = None) -> ScrapeTask:
        """Create and persist a PENDING task.

        Not idempotent: enqueueing the same target twice yields two tasks.
        """
        with self._lock, self._transaction() as session:
            waiting = self._waiting(session)
            if priority is None:
                priority = max(r.priority for r in waiting) + 1 if waiting else 0
            record = self._new_record(target, priority)
            self._insert_by_priority(waiting, record)
            self._renumber(waiting)
            session.add(record)
            task = ScrapeTask.from_record(record)
        logger.info(f"Enqueued task {task.id} ({target.label}) priority={task.priority}")
        return task

    def enqueue_batch(
        self,
        city: str,
        districts: Union[Dict[str, str], Iterable[str]],
        room_types: Iterable[Union[str, RoomType]],
        fetch_date: Optional[str] = None,
    ) -> List[ScrapeTask]:
        """Enqueue the district x room-type product for one city.

        ``districts`` is either a name -> search slug mapping or a list of
        names used as their own slugs. Priorities increase strictly in
        iteration order, starting at 0.
        """
        if not isinstance(districts, dict):
            districts = {name: name for name in districts}
        fetch_date = fetch_date or datetime.now().date().isoformat()
        parsed_rooms = [RoomType.parse(r) for r in room_types]

        with self._lock, self._transaction() as session:
            waiting = self._waiting(session)
            records = []
            priority = 0
            for district, slug in districts.items():
                for room_type in parsed_rooms:
                    target = TargetDescriptor(
                        city=city,
                        district=district,
                        search_slug=slug,
                        room_type=room_type,
                        fetch_date=fetch_date,
                    )
                    record = self._new_record(target, priority)
                    self._insert_by_priority(waiting, record)
                    records.append(record)
                    priority += 1
            self._renumber(waiting)
            session.add_all(records)
            tasks = [ScrapeTask.from_record(r) for r in records]
        logger.info(f"Enqueued {len(tasks)} tasks for {city} (fetch_date={fetch_date})")
        return tasks

    def dequeue_next(self) -> Optional[ScrapeTask]:
        """Claim the first eligible waiting task and mark it IN_PROGRESS.

        Returns None when the queue has nothing eligible or another task
        already holds the in-progress slot, in this or any other process.
        """
        with self._lock:
            try:
                with self._transaction() as session:
                    task = self._claim_next(session)
            except IntegrityError:
                logger.info("In-progress slot taken by another process")
                return None
            if task is not None:
                self._last_task_id = task.id
                logger.info(f"Dequeued task {task.id} ({task.target.label}) retry={task.retry_count}")
            return task

    def _claim_next(self, session: Session) -> Optional[ScrapeTask]:
        if self._in_progress(session) is not None:
            return None
        now = self._clock()
        for record in self._waiting(session):
            if record.status == TaskStatus.RETRY.value:
                not_before = _from_db(record.not_before)
                if not_before and not_before > now:
                    continue
            record.status = TaskStatus.IN_PROGRESS.value
            record.position = None
            record.not_before = None
            record.started_at = _to_db(now)
            record.updated_at = _to_db(now)
            return ScrapeTask.from_record(record)
        return None

    @staticmethod
    def _claim_current(session: Session, task_id: str) -> ScrapeTaskRecord:
        record = session.get(ScrapeTaskRecord, task_id)
        if record is None or record.status != TaskStatus.IN_PROGRESS.value:
            raise ValueError(f"Task {task_id} is not in progress")
        return record

    def complete(self, task_id: str, result: Optional[Dict[str, Any]] = None) -> ScrapeTask:
        with self._lock, self._transaction() as session:
            record = self._claim_current(session, task_id)
            record.result = result
            record.error = None
            record.error_type = None
            self._finish(session, record, TaskStatus.COMPLETED, self._clock())
            task = ScrapeTask.from_record(record)
        count = (result or {}).get("count")
        logger.info(f"Completed task {task.id} ({task.target.label}) listings={count}")
        return task

    def fail(
        self,
        task_id: str,
        error: Union[str, BaseException],
        error_type: Optional[ErrorType] = None,
        result: Optional[Dict[str, Any]] = None,
    ) -> ScrapeTask:
        with self._lock, self._transaction() as session:
            record = self._claim_current(session, task_id)
            record.error = str(error)
            record.error_type = _error_type_value(error, error_type)
            record.result = result
            self._finish(session, record, TaskStatus.FAILED, self._clock())
            task = ScrapeTask.from_record(record)
        logger.error(f"Failed task {task.id} ({task.target.label}) [{task.error_type}]: {task.error}")
        return task

    def retry(
        self,
        task_id: str,
        error: Union[str, BaseException],
        error_type: Optional[ErrorType] = None,
        result: Optional[Dict[str, Any]] = None,
    ) -> ScrapeTask:
        """Send the in-progress task back to the queue after a backoff.

        The retry count increments on entering RETRY; a task whose count
        reaches ``max_retries`` is failed instead of requeued, keeping
        ``result`` as its final outcome.
        """
        kind = _error_type_value(error, error_type)
        with self._lock, self._transaction() as session:
            record = self._claim_current(session, task_id)
            now = self._clock()
            record.error = str(error)
            record.error_type = kind

            if int(record.retry_count or 0) >= self.max_retries:
                record.result = result
                self._finish(session, record, TaskStatus.FAILED, now)
                logger.error(f"Task {record.id} already at max retries, failed")
                return ScrapeTask.from_record(record)

            record.retry_count = int(record.retry_count or 0) + 1
            record.started_at = None
            record.updated_at = _to_db(now)

            if record.retry_count >= self.max_retries:
                record.result = result
                self._finish(session, record, TaskStatus.FAILED, now)
                logger.error(
                    f"Task {record.id} reached max retries ({self.max_retries}) [{kind}]: {record.error}"
                )
                return ScrapeTask.from_record(record)

            delay = retry_delay_seconds(
                record.retry_count - 1,
                ErrorType(kind),
                base_seconds=self.backoff_base_seconds,
                multiplier=self.backoff_multiplier,
                max_seconds=self.backoff_max_seconds,
            )
            waiting = self._waiting(session)
            record.status = TaskStatus.RETRY.value
            record.not_before = _to_db(now + timedelta(seconds=delay))
            waiting.insert(min(len(waiting), self.retry_insert_offset), record)
            self._renumber(waiting)
            task = ScrapeTask.from_record(record)

        logger.warning(
            f"Retrying task {task.id} ({task.target.label}) in {delay:.0f}s "
            f"(attempt {task.retry_count}/{self.max_retries}) [{kind}]: {task.error}"
        )
        return task

    def clear(self, include_history: bool = False) -> int:
        """Drop all waiting tasks; the in-progress slot is left alone."""
        with self._lock, self._transaction() as session:
            dropped = (
                session.query(ScrapeTaskRecord)
                .filter(ScrapeTaskRecord.status.in_(WAITING_STATUSES))
                .delete(synchronize_session=False)
            )
            if include_history:
                session.query(ScrapeTaskRecord).filter(
                    ScrapeTaskRecord.status.in_(FINISHED_STATUSES)
                ).delete(synchronize_session=False)
        logger.info(f"Cleared {dropped} queued tasks")
        return dropped

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    @property
    def current_task(self) -> Optional[ScrapeTask]:
        with self._lock, self._transaction() as session:
            record = self._in_progress(session)
            return ScrapeTask.from_record(record) if record else None

    def pending_tasks(self) -> List[ScrapeTask]:
        with self._lock, self._transaction() as session:
            return [ScrapeTask.from_record(r) for r in self._waiting(session)]

    def completed_tasks(self, limit: Optional[int] = None) -> List[ScrapeTask]:
        """History, newest first."""
        with self._lock, self._transaction() as session:
            query = (
                session.query(ScrapeTaskRecord)
                .filter(ScrapeTaskRecord.status.in_(FINISHED_STATUSES))
                .order_by(ScrapeTaskRecord.position.desc())
            )
            if limit:
                query = query.limit(limit)
            return [ScrapeTask.from_record(r) for r in query.all()]

    def get_task(self, task_id: str) -> Optional[ScrapeTask]:
        with self._lock, self._transaction() as session:
            record = session.get(ScrapeTaskRecord, task_id)
            return ScrapeTask.from_record(record) if record else None

    def has_work(self) -> bool:
        with self._lock, self._transaction() as session:
            active = WAITING_STATUSES + (TaskStatus.IN_PROGRESS.value,)
            return session.query(ScrapeTaskRecord.id).filter(ScrapeTaskRecord.status.in_(active)).first() is not None

    def seconds_until_eligible(self) -> Optional[float]:
        """Seconds until some waiting task can be dequeued; None when the queue is empty."""
        with self._lock, self._transaction() as session:
            waiting = self._waiting(session)
            if not waiting:
                return None
            now = self._clock()
            waits = []
            for record in waiting:
                not_before = _from_db(record.not_before)
                if record.status == TaskStatus.PENDING.value or not not_before:
                    return 0.0
                waits.append(max((not_before - now).total_seconds(), 0.0))
            return min(waits)

    def status(self) -> Dict[str, Any]:
        """Cheap summary for polling consumers."""
        with self._lock, self._transaction() as session:
            counts = dict(
                session.query(ScrapeTaskRecord.status, func.count(ScrapeTaskRecord.id))
                .group_by(ScrapeTaskRecord.status)
                .all()
            )
            current = self._in_progress(session)
            current_id = current.id if current else None
        retrying = counts.get(TaskStatus.RETRY.value, 0)
        pending = counts.get(TaskStatus.PENDING.value, 0) + retrying
        in_progress = counts.get(TaskStatus.IN_PROGRESS.value, 0)
        return {
            "isProcessing": current_id is not None,
            "pending": pending,
            "retrying": retrying,
            "inProgress": in_progress,
            "completed": counts.get(TaskStatus.COMPLETED.value, 0),
            "failed": counts.get(TaskStatus.FAILED.value, 0),
            "totalCount": sum(counts.values()),
            "currentTaskId": current_id,
            "lastTaskId": self._last_task_id,
            "updatedAt": _iso(self._clock()),
        }

    def statistics(self) -> Dict[str, Any]:
        """Failure breakdown and success rate over the history."""
        with self._lock, self._transaction() as session:
            rows = (
                session.query(ScrapeTaskRecord.status, ScrapeTaskRecord.error_type)
                .filter(ScrapeTaskRecord.status.in_(FINISHED_STATUSES))
                .all()
            )
        errors_by_type: Dict[str, int] = {}
        completed = 0
        for status, error_type in rows:
            if status == TaskStatus.COMPLETED.value:
                completed += 1
            elif error_type:
                errors_by_type[error_type] = errors_by_type.get(error_type, 0) + 1
        finished = len(rows)
        return {
            "finished": finished,
            "completed": completed,
            "failed": finished - completed,
            "success_rate": round(completed / finished, 4) if finished else None,
            "errors_by_type": errors_by_type,
        }


def _error_type_value(error: Union[str, BaseException], error_type: Optional[ErrorType]) -> str:
    if error_type is not None:
        return ErrorType(error_type).value
    if isinstance(error, BaseException):
        return classify_error(error).value
    return ErrorType.UNKNOWN_ERROR.value
