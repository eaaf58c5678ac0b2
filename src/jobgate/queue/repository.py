"""Durable job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
import random
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import exists, func
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from jobgate.queue.catalog import retry_policy_for
from jobgate.queue.errors import (
    DuplicateIdempotencyKey,
    JobNotFoundError,
    JobStateError,
    PayloadTooLarge,
)
from jobgate.queue.models import (
    EnqueueResult,
    FailureClass,
    JobCreate,
    JobDetails,
    JobEventView,
    JobQueue,
    JobState,
    JobView,
    QueueDepthView,
    QueueStateView,
)
from jobgate.queue.policy import RetryPolicy, compute_backoff_seconds
from jobgate.storage.alembic_runner import upgrade_head
from jobgate.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from jobgate.storage.sqlmodel_models import Job, JobEvent, QueueState

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAYLOAD_BYTES = 256 * 1024
_MAX_ERROR_CHARS = 4000


class JobStore:
    """Queue persistence facade; the single source of truth for job state."""

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
        policy_resolver: Callable[[str], RetryPolicy] = retry_policy_for,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self.db_path = db_path
        self.max_payload_bytes = max_payload_bytes
        self.policy_resolver = policy_resolver
        self._clock = clock
        self._random = rng or random.Random()  # noqa: S311
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def now(self) -> datetime:
        return to_utc_aware(self._clock())

    # -- producers -------------------------------------------------------------

    def enqueue(  # noqa: PLR0913
        self,
        queue: JobQueue | str,
        handler_type: str,
        payload: bytes | str,
        idempotency_key: str,
        *,
        run_at: datetime | None = None,
        max_attempts: int | None = None,
        priority: int = 100,
    ) -> EnqueueResult:
        """Create a pending job, or return the live job that owns the idempotency key."""

        return self.enqueue_job(
            JobCreate(
                queue=JobQueue.parse(queue) if isinstance(queue, str) else queue,
                handler_type=handler_type,
                payload=payload.encode("utf-8") if isinstance(payload, str) else payload,
                idempotency_key=idempotency_key,
                run_at=run_at,
                max_attempts=max_attempts,
                priority=priority,
            ),
        )

    def enqueue_job(self, request: JobCreate) -> EnqueueResult:
        if not request.handler_type.strip():
            raise ValueError("handler_type must not be empty.")
        if not request.idempotency_key.strip():
            raise ValueError("idempotency_key must not be empty.")
        if len(request.payload) > self.max_payload_bytes:
            raise PayloadTooLarge(len(request.payload), self.max_payload_bytes)
        if request.max_attempts is not None and request.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")

        existing = self._find_live_job(request.idempotency_key)
        if existing is not None:
            return EnqueueResult(job=existing, created=False)

        try:
            return EnqueueResult(job=self._insert_job(request), created=True)
        except DuplicateIdempotencyKey:
            existing = self._find_live_job(request.idempotency_key)
            if existing is None:
                raise JobStateError(
                    "Idempotency key conflict could not be resolved; "
                    f"please retry (idempotency_key={request.idempotency_key}).",
                ) from None
            return EnqueueResult(job=existing, created=False)

    def _insert_job(self, request: JobCreate) -> JobView:
        policy = self.policy_resolver(request.handler_type)
        now = self.now()
        job_id = request.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = Job(
                job_id=job_id,
                queue=request.queue.value,
                handler_type=request.handler_type,
                payload=request.payload,
                idempotency_key=request.idempotency_key,
                priority=request.priority,
                state=JobState.PENDING.value,
                run_at=to_db_datetime(request.run_at or now),
                attempts=0,
                max_attempts=request.max_attempts or policy.max_attempts,
                backoff_base_seconds=policy.backoff_base_seconds,
                timeout_seconds=policy.timeout_seconds,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError as error:
                session.rollback()
                raise DuplicateIdempotencyKey(request.idempotency_key) from error
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued",
                state_from=None,
                state_to=JobState.PENDING,
                details={
                    "queue": request.queue.value,
                    "handler_type": request.handler_type,
                    "priority": request.priority,
                    "max_attempts": row.max_attempts,
                    "payload_bytes": len(request.payload),
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def _find_live_job(self, idempotency_key: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Job).where(
                    Job.idempotency_key == idempotency_key,
                    Job.state != JobState.DEAD.value,
                ),
            ).one_or_none()
            return _to_job_view(row) if row is not None else None

    # -- workers ---------------------------------------------------------------

    def claim_next(
        self,
        queue: JobQueue,
        worker_id: str,
        lease_seconds: float,
    ) -> JobView | None:
        """Atomically lease the most urgent eligible job of one queue."""

        while True:
            now = self.now()
            lease_expires_at = now + timedelta(seconds=lease_seconds)
            not_paused = ~exists().where(
                col(QueueState.queue) == queue.value,
                col(QueueState.paused).is_(True),
            )
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(Job)
                    .where(
                        Job.queue == queue.value,
                        Job.state == JobState.PENDING.value,
                        Job.run_at <= to_db_datetime(now),
                        not_paused,
                    )
                    .order_by(
                        col(Job.priority).asc(),
                        col(Job.run_at).asc(),
                        col(Job.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == candidate.job_id,
                        col(Job.state) == JobState.PENDING.value,
                        col(Job.run_at) <= to_db_datetime(now),
                        not_paused,
                    )
                    .values(
                        state=JobState.LEASED.value,
                        lease_owner=worker_id,
                        lease_expires_at=to_db_datetime(lease_expires_at),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(Job).where(Job.job_id == candidate.job_id),
                ).one()
                self._add_event(
                    session=session,
                    job_id=claimed.job_id,
                    event_type="claimed",
                    state_from=JobState.PENDING,
                    state_to=JobState.LEASED,
                    details={
                        "worker_id": worker_id,
                        "attempt": claimed.attempts + 1,
                        "lease_expires_at": lease_expires_at.isoformat(),
                    },
                )
                session.commit()
                return _to_job_view(claimed)

    def heartbeat(self, job_id: str, worker_id: str, lease_seconds: float) -> bool:
        """Renew a lease still held by `worker_id`."""

        now = self.now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.state) == JobState.LEASED.value,
                    col(Job.lease_owner) == worker_id,
                )
                .values(
                    lease_expires_at=to_db_datetime(now + timedelta(seconds=lease_seconds)),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def complete(self, job_id: str, worker_id: str | None = None) -> bool:
        """Mark a leased job DONE.

        Completing an already DONE job is a no-op success. Returns False when
        the job is no longer leased (by `worker_id`, when given).
        """

        now = self.now()
        with Session(self.engine) as session:
            conditions = [
                col(Job.job_id) == job_id,
                col(Job.state) == JobState.LEASED.value,
            ]
            if worker_id is not None:
                conditions.append(col(Job.lease_owner) == worker_id)
            result = session.exec(
                sa_update(Job)
                .where(*conditions)
                .values(
                    state=JobState.DONE.value,
                    lease_owner=None,
                    lease_expires_at=None,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount == 1:
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="completed",
                    state_from=JobState.LEASED,
                    state_to=JobState.DONE,
                    details={"worker_id": worker_id} if worker_id is not None else {},
                )
                session.commit()
                return True

            session.rollback()
            row = self._get_job_row(session=session, job_id=job_id)
            return row.state == JobState.DONE.value

    def fail(  # noqa: PLR0913
        self,
        job_id: str,
        error: str,
        *,
        worker_id: str | None = None,
        failure_class: FailureClass = FailureClass.HANDLER_TRANSIENT,
        terminal: bool = False,
        classification: Mapping[str, object] | None = None,
    ) -> JobView | None:
        """Record a failed attempt and either schedule a retry or dead-letter the job.

        Returns the updated job, or None when the job is no longer leased
        (by `worker_id`, when given). `classification` from the outcome
        classifier is merged into the event details.
        """

        now = self.now()
        summary = error[:_MAX_ERROR_CHARS]
        with Session(self.engine) as session:
            row = self._get_job_row(session=session, job_id=job_id)
            if row.state != JobState.LEASED.value:
                return None
            if worker_id is not None and row.lease_owner != worker_id:
                return None

            previous_attempts, max_attempts = row.attempts, row.max_attempts
            attempts = previous_attempts + 1
            dead = terminal or attempts >= max_attempts
            guard = (
                col(Job.job_id) == job_id,
                col(Job.state) == JobState.LEASED.value,
                col(Job.lease_owner) == row.lease_owner,
                col(Job.attempts) == previous_attempts,
            )
            if dead:
                values: dict[str, object] = {
                    "state": JobState.DEAD.value,
                    "failed_at": to_db_datetime(now),
                }
                details: dict[str, object] = {"terminal": terminal}
                event_type = "dead_lettered"
            else:
                delay_seconds = compute_backoff_seconds(
                    attempts=attempts,
                    base_seconds=row.backoff_base_seconds,
                    rng=self._random,
                )
                run_at = now + timedelta(seconds=delay_seconds)
                values = {
                    "state": JobState.PENDING.value,
                    "run_at": to_db_datetime(run_at),
                }
                details = {
                    "run_at": run_at.isoformat(),
                    "delay_seconds": round(delay_seconds, 3),
                }
                event_type = "retry_scheduled"

            result = session.exec(
                sa_update(Job)
                .where(*guard)
                .values(
                    attempts=attempts,
                    last_error=summary,
                    failure_class=failure_class.value,
                    lease_owner=None,
                    lease_expires_at=None,
                    updated_at=to_db_datetime(now),
                    **values,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            state_to = JobState.DEAD if dead else JobState.PENDING
            details = {**(classification or {}), **details}
            details.update(
                {
                    "attempt": attempts,
                    "max_attempts": max_attempts,
                    "failure_class": failure_class.value,
                    "error": summary,
                },
            )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                state_from=JobState.LEASED,
                state_to=state_to,
                details=details,
            )
            session.commit()
            updated = self._get_job_row(session=session, job_id=job_id)
            view = _to_job_view(updated)

        if dead:
            logger.warning(
                "Job %s (%s) dead-lettered after %d attempt(s): %s",
                job_id,
                view.handler_type,
                attempts,
                summary,
            )
        else:
            logger.info(
                "Job %s (%s) retry %d/%d scheduled at %s",
                job_id,
                view.handler_type,
                attempts,
                view.max_attempts,
                view.run_at.isoformat(),
            )
        return view

    def defer(
        self,
        job_id: str,
        run_at: datetime,
        reason: str,
        *,
        worker_id: str | None = None,
    ) -> bool:
        """Return a leased job to PENDING at `run_at` without consuming an attempt."""

        now = self.now()
        with Session(self.engine) as session:
            conditions = [
                col(Job.job_id) == job_id,
                col(Job.state) == JobState.LEASED.value,
            ]
            if worker_id is not None:
                conditions.append(col(Job.lease_owner) == worker_id)
            result = session.exec(
                sa_update(Job)
                .where(*conditions)
                .values(
                    state=JobState.PENDING.value,
                    run_at=to_db_datetime(run_at),
                    failure_class=FailureClass.BUDGET_DEFERRED.value,
                    lease_owner=None,
                    lease_expires_at=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="deferred",
                state_from=JobState.LEASED,
                state_to=JobState.PENDING,
                details={"run_at": to_utc_aware(run_at).isoformat(), "reason": reason},
            )
            session.commit()
            return True

    def reclaim_expired_leases(self) -> int:
        """Return LEASED jobs whose lease lapsed to PENDING; count of reclaimed jobs."""

        now = self.now()
        reclaimed = 0
        with Session(self.engine) as session:
            expired = session.exec(
                select(Job).where(
                    Job.state == JobState.LEASED.value,
                    col(Job.lease_expires_at) < to_db_datetime(now),
                ),
            ).all()
            for row in expired:
                job_id, previous_owner, previous_expiry = (
                    row.job_id,
                    row.lease_owner,
                    row.lease_expires_at,
                )
                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == job_id,
                        col(Job.state) == JobState.LEASED.value,
                        col(Job.lease_owner) == previous_owner,
                        col(Job.lease_expires_at) == previous_expiry,
                    )
                    .values(
                        state=JobState.PENDING.value,
                        run_at=to_db_datetime(now),
                        failure_class=FailureClass.LEASE_LOST.value,
                        lease_owner=None,
                        lease_expires_at=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                reclaimed += 1
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="lease_reclaimed",
                    state_from=JobState.LEASED,
                    state_to=JobState.PENDING,
                    details={
                        "previous_owner": previous_owner,
                        "lease_expires_at": to_utc_aware(previous_expiry).isoformat()
                        if previous_expiry is not None
                        else None,
                    },
                )
            session.commit()
        if reclaimed:
            logger.warning("Reclaimed %d job(s) with expired leases", reclaimed)
        return reclaimed

    # -- read side -------------------------------------------------------------

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return a job with its event stream."""

        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()
            job = _to_job_view(row)

        events: list[JobEventView] = []
        for event in event_rows:
            details = {}
            if event.details_json:
                parsed = json.loads(event.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                JobEventView(
                    event_id=event.id or 0,
                    job_id=event.job_id,
                    event_type=event.event_type,
                    state_from=JobState(event.state_from) if event.state_from else None,
                    state_to=JobState(event.state_to) if event.state_to else None,
                    created_at=to_utc_aware(event.created_at),
                    details=details,
                ),
            )
        return JobDetails(job=job, events=events)

    def list_jobs(
        self,
        *,
        queue: JobQueue | None = None,
        state: JobState | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by queue and state."""

        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.created_at).desc()).limit(limit)
            if queue is not None:
                statement = statement.where(Job.queue == queue.value)
            if state is not None:
                statement = statement.where(Job.state == state.value)
            rows = session.exec(statement).all()
            return [_to_job_view(row) for row in rows]

    def list_dead_letter(
        self,
        queue: JobQueue | None = None,
        *,
        limit: int = 100,
    ) -> list[JobView]:
        with Session(self.engine) as session:
            statement = (
                select(Job)
                .where(Job.state == JobState.DEAD.value)
                .order_by(col(Job.failed_at).desc())
                .limit(limit)
            )
            if queue is not None:
                statement = statement.where(Job.queue == queue.value)
            rows = session.exec(statement).all()
            return [_to_job_view(row) for row in rows]

    def queue_depth(self) -> list[QueueDepthView]:
        """Per-queue job counts by state, ready count and pause flag."""

        now = to_db_datetime(self.now())
        depth = {queue: QueueDepthView(queue=queue) for queue in JobQueue}
        with Session(self.engine) as session:
            counts = session.exec(
                select(Job.queue, Job.state, func.count()).group_by(Job.queue, Job.state),
            ).all()
            ready_counts = session.exec(
                select(Job.queue, func.count())
                .where(
                    Job.state == JobState.PENDING.value,
                    Job.run_at <= now,
                )
                .group_by(Job.queue),
            ).all()
            paused = session.exec(
                select(QueueState.queue).where(col(QueueState.paused).is_(True)),
            ).all()

        for queue_name, state_name, count in counts:
            view = depth[JobQueue(queue_name)]
            setattr(view, JobState(state_name).value, int(count))
        for queue_name, count in ready_counts:
            depth[JobQueue(queue_name)].ready = int(count)
        for queue_name in paused:
            depth[JobQueue(queue_name)].paused = True
        return list(depth.values())

    # -- queue gate ------------------------------------------------------------

    def set_queue_paused(
        self,
        queue: JobQueue,
        *,
        paused: bool,
        reason: str | None = None,
    ) -> QueueStateView:
        now = to_db_datetime(self.now())
        statement = sqlite_insert(QueueState).values(
            queue=queue.value,
            paused=paused,
            reason=reason,
            updated_at=now,
        )
        statement = statement.on_conflict_do_update(
            index_elements=["queue"],
            set_={"paused": paused, "reason": reason, "updated_at": now},
        )
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()
        return QueueStateView(
            queue=queue,
            paused=paused,
            reason=reason,
            updated_at=to_utc_aware(now),
        )

    def is_queue_paused(self, queue: JobQueue) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(QueueState).where(QueueState.queue == queue.value),
            ).one_or_none()
            return bool(row is not None and row.paused)

    def list_queue_states(self) -> list[QueueStateView]:
        with Session(self.engine) as session:
            rows = {row.queue: row for row in session.exec(select(QueueState)).all()}
            views: list[QueueStateView] = []
            for queue in JobQueue:
                row = rows.get(queue.value)
                views.append(
                    QueueStateView(
                        queue=queue,
                        paused=bool(row is not None and row.paused),
                        reason=row.reason if row is not None else None,
                        updated_at=to_utc_aware(row.updated_at) if row is not None else None,
                    ),
                )
            return views

    # -- operator primitives ---------------------------------------------------

    def requeue(self, job_id: str) -> JobView:
        """Reset a DEAD job to PENDING with attempts=0."""

        now = self.now()
        with Session(self.engine) as session:
            row = self._get_job_row(session=session, job_id=job_id)
            if row.state != JobState.DEAD.value:
                raise JobStateError(f"Only dead jobs can be requeued, got state={row.state}.")
            previous_attempts, idempotency_key = row.attempts, row.idempotency_key
            try:
                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == job_id,
                        col(Job.state) == JobState.DEAD.value,
                    )
                    .values(
                        state=JobState.PENDING.value,
                        attempts=0,
                        run_at=to_db_datetime(now),
                        last_error=None,
                        failure_class=None,
                        failed_at=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
            except IntegrityError as error:
                session.rollback()
                raise JobStateError(
                    "Cannot requeue: a live job already owns idempotency key "
                    f"{idempotency_key!r}.",
                ) from error
            if result.rowcount != 1:
                session.rollback()
                raise JobStateError(
                    "Job state changed concurrently while requeueing; "
                    f"please retry command (job_id={job_id}).",
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="manual_requeue",
                state_from=JobState.DEAD,
                state_to=JobState.PENDING,
                details={"previous_attempts": previous_attempts},
            )
            session.commit()
            return _to_job_view(self._get_job_row(session=session, job_id=job_id))

    def delete_job(self, job_id: str) -> None:
        """Remove a PENDING or DEAD job; leased jobs must resolve their lease first."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(Job).where(
                    col(Job.job_id) == job_id,
                    col(Job.state).in_([JobState.PENDING.value, JobState.DEAD.value]),
                ),
            )
            if result.rowcount == 1:
                session.commit()
                return
            session.rollback()
            row = self._get_job_row(session=session, job_id=job_id)
            raise JobStateError(
                f"Only pending or dead jobs can be deleted, got state={row.state}.",
            )

    def _get_job_row(self, *, session: Session, job_id: str) -> Job:
        row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
        if row is None:
            raise JobNotFoundError(job_id)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        state_from: JobState | None,
        state_to: JobState | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                state_from=state_from.value if state_from is not None else None,
                state_to=state_to.value if state_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(self.now()),
            ),
        )


def _to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        queue=JobQueue(row.queue),
        handler_type=row.handler_type,
        payload=bytes(row.payload),
        idempotency_key=row.idempotency_key,
        priority=row.priority,
        state=JobState(row.state),
        run_at=to_utc_aware(row.run_at),
        lease_owner=row.lease_owner,
        lease_expires_at=optional_utc(row.lease_expires_at),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        backoff_base_seconds=row.backoff_base_seconds,
        timeout_seconds=row.timeout_seconds,
        last_error=row.last_error,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        completed_at=optional_utc(row.completed_at),
        failed_at=optional_utc(row.failed_at),
    )
