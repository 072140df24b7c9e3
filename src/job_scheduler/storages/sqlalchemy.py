from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Collection, Dict, List, Optional

from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Integer, String, func, update
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.future import select
from sqlalchemy.orm import declarative_base, sessionmaker

from job_scheduler.domain.job import Job, JobStatus, JobType, utc_now
from job_scheduler.domain.job_log import JobLog, LogLevel
from job_scheduler.domain.stats import DailyJobMetrics, JobStats, RecentActivity
from job_scheduler.storages.protocol import Storage

Base = declarative_base()

_JOB_FIELDS = frozenset(Job.model_fields)


class JobModel(Base):
    __tablename__ = 'jobs'

    id = Column(String, primary_key=True)
    name = Column(String(100), nullable=False)
    description = Column(String(500))
    type = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    owner = Column(String, nullable=False, index=True)
    priority = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=5)
    current_retries = Column(Integer, nullable=False, default=0)
    queue_id = Column(String)
    parent_id = Column(String, index=True)
    scheduled_at = Column(DateTime(timezone=True))
    cron_expression = Column(String)
    delay = Column(Float)  # seconds
    next_run_at = Column(DateTime(timezone=True))
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    failed_at = Column(DateTime(timezone=True))
    result = Column(JSON)
    error = Column(String)
    execution_time = Column(Float)  # milliseconds
    tags = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class JobLogModel(Base):
    __tablename__ = 'job_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, ForeignKey('jobs.id'), nullable=False, index=True)
    level = Column(String, nullable=False)
    message = Column(String, nullable=False)
    data = Column(JSON)
    execution_step = Column(String)
    duration = Column(Float)
    created_at = Column(DateTime(timezone=True), nullable=False)


def _to_column_value(key: str, value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if key == "delay" and isinstance(value, timedelta):
        return value.total_seconds()
    return value


class SqlAlchemyStorage(Storage):
    def __init__(self, db_url: str, **engine_options: Any):
        self.engine = create_async_engine(db_url, **engine_options)
        self.async_session = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        await self.engine.dispose()

    async def ping(self):
        async with self.async_session() as session:
            await session.execute(select(JobModel.id).limit(1))

    async def create_job(self, job: Job) -> str:
        async with self.async_session() as session:
            db_job = JobModel(**self._job_to_columns(job))
            session.add(db_job)
            await session.commit()
            return job.id

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self.async_session() as session:
            result = await session.execute(select(JobModel).filter_by(id=job_id))
            db_job = result.scalar_one_or_none()
            if db_job:
                return self._db_to_job(db_job)
            return None

    async def find_job(self, job_id: str, owner: str) -> Optional[Job]:
        async with self.async_session() as session:
            result = await session.execute(select(JobModel).filter_by(id=job_id, owner=owner))
            db_job = result.scalar_one_or_none()
            if db_job:
                return self._db_to_job(db_job)
            return None

    async def update_job(
        self,
        job_id: str,
        values: Dict[str, Any],
        expected_statuses: Optional[Collection[JobStatus]] = None,
    ) -> Optional[Job]:
        if "id" in values or not set(values) <= _JOB_FIELDS:
            raise ValueError(f"Cannot update job fields: {sorted(values)}")

        columns = {key: _to_column_value(key, value) for key, value in values.items()}
        columns["updated_at"] = utc_now()

        # A single conditional UPDATE, so two writers can never both match.
        stmt = update(JobModel).where(JobModel.id == job_id)
        if expected_statuses is not None:
            stmt = stmt.where(JobModel.status.in_([JobStatus(s).value for s in expected_statuses]))
        stmt = stmt.values(**columns).execution_options(synchronize_session=False)

        async with self.async_session() as session:
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount == 0:
                return None
        return await self.get_job(job_id)

    async def list_jobs(
        self,
        owner: Optional[str] = None,
        status: Optional[JobStatus] = None,
        type: Optional[JobType] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Job]:
        query = select(JobModel)
        if owner is not None:
            query = query.filter_by(owner=owner)
        if status is not None:
            query = query.filter_by(status=JobStatus(status).value)
        if type is not None:
            query = query.filter_by(type=JobType(type).value)
        query = query.order_by(JobModel.created_at.desc()).offset(offset).limit(limit)
        async with self.async_session() as session:
            result = await session.execute(query)
            return [self._db_to_job(db_job) for db_job in result.scalars()]

    async def list_recurring_active_jobs(self) -> List[Job]:
        query = select(JobModel).where(
            JobModel.type == JobType.RECURRING.value,
            JobModel.status.in_([JobStatus.PENDING.value, JobStatus.ACTIVE.value]),
        )
        async with self.async_session() as session:
            result = await session.execute(query)
            return [self._db_to_job(db_job) for db_job in result.scalars()]

    async def append_job_log(self, entry: JobLog) -> JobLog:
        async with self.async_session() as session:
            db_log = JobLogModel(
                job_id=entry.job_id,
                level=entry.level.value,
                message=entry.message,
                data=entry.data,
                execution_step=entry.execution_step,
                duration=entry.duration,
                created_at=entry.created_at,
            )
            session.add(db_log)
            await session.commit()
            return entry.model_copy(update={"id": db_log.id})

    async def list_job_logs(
        self,
        job_id: str,
        level: Optional[LogLevel] = None,
        limit: int = 50,
        offset: int = 0,
        newest_first: bool = False,
    ) -> List[JobLog]:
        query = select(JobLogModel).filter_by(job_id=job_id)
        if level is not None:
            query = query.filter_by(level=LogLevel(level).value)
        order = JobLogModel.id.desc() if newest_first else JobLogModel.id.asc()
        query = query.order_by(order).offset(offset).limit(limit)
        async with self.async_session() as session:
            result = await session.execute(query)
            return [self._db_to_log(db_log) for db_log in result.scalars()]

    async def job_stats(self, owner: Optional[str] = None, since: Optional[datetime] = None) -> JobStats:
        counts = select(JobModel.status, func.count()).group_by(JobModel.status)
        timings = self._timings().where(JobModel.execution_time.is_not(None))
        if owner is not None:
            counts = counts.where(JobModel.owner == owner)
            timings = timings.where(JobModel.owner == owner)

        stats = JobStats()
        async with self.async_session() as session:
            for status, count in (await session.execute(counts)).all():
                stats.by_status[JobStatus(status)] = count
            avg_time, min_time, max_time = (await session.execute(timings)).one()
            if since is not None:
                stats.recent = await self._recent_activity(session, owner, since)
        stats.avg_execution_time = float(avg_time or 0.0)
        stats.min_execution_time = float(min_time or 0.0)
        stats.max_execution_time = float(max_time or 0.0)
        return stats

    async def job_metrics(self, since: datetime, owner: Optional[str] = None) -> List[DailyJobMetrics]:
        query = select(JobModel.created_at, JobModel.status).where(JobModel.created_at >= since)
        if owner is not None:
            query = query.where(JobModel.owner == owner)

        days: Dict[date, DailyJobMetrics] = {}
        async with self.async_session() as session:
            for created_at, status in (await session.execute(query)).all():
                if created_at.tzinfo is not None:
                    created_at = created_at.astimezone(timezone.utc)
                day = days.setdefault(created_at.date(), DailyJobMetrics(day=created_at.date()))
                status = JobStatus(status)
                day.by_status[status] = day.by_status.get(status, 0) + 1
        return [days[key] for key in sorted(days)]

    async def _recent_activity(self, session: AsyncSession, owner: Optional[str], since: datetime) -> RecentActivity:
        def count_since(column):
            query = select(func.count()).select_from(JobModel).where(column >= since)
            if owner is not None:
                query = query.where(JobModel.owner == owner)
            return query

        timings = self._timings().where(
            JobModel.execution_time.is_not(None), JobModel.completed_at >= since
        )
        if owner is not None:
            timings = timings.where(JobModel.owner == owner)

        recent = RecentActivity(since=since)
        recent.created = (await session.execute(count_since(JobModel.created_at))).scalar_one()
        recent.completed = (await session.execute(count_since(JobModel.completed_at))).scalar_one()
        recent.failed = (await session.execute(count_since(JobModel.failed_at))).scalar_one()
        avg_time, min_time, max_time = (await session.execute(timings)).one()
        recent.avg_execution_time = float(avg_time or 0.0)
        recent.min_execution_time = float(min_time or 0.0)
        recent.max_execution_time = float(max_time or 0.0)
        return recent

    def _timings(self):
        return select(
            func.avg(JobModel.execution_time),
            func.min(JobModel.execution_time),
            func.max(JobModel.execution_time),
        )

    def _job_to_columns(self, job: Job) -> Dict[str, Any]:
        return {key: _to_column_value(key, value) for key, value in job.model_dump().items()}

    def _db_to_job(self, db_job: JobModel) -> Job:
        return Job(
            id=db_job.id,
            name=db_job.name,
            description=db_job.description,
            type=JobType(db_job.type),
            status=JobStatus(db_job.status),
            payload=db_job.payload or {},
            owner=db_job.owner,
            priority=db_job.priority,
            max_retries=db_job.max_retries,
            current_retries=db_job.current_retries,
            queue_id=db_job.queue_id,
            parent_id=db_job.parent_id,
            scheduled_at=db_job.scheduled_at,
            cron_expression=db_job.cron_expression,
            delay=timedelta(seconds=db_job.delay) if db_job.delay is not None else None,
            next_run_at=db_job.next_run_at,
            started_at=db_job.started_at,
            completed_at=db_job.completed_at,
            failed_at=db_job.failed_at,
            result=db_job.result,
            error=db_job.error,
            execution_time=db_job.execution_time,
            tags=db_job.tags or [],
            created_at=db_job.created_at,
            updated_at=db_job.updated_at,
        )

    def _db_to_log(self, db_log: JobLogModel) -> JobLog:
        return JobLog(
            id=db_log.id,
            job_id=db_log.job_id,
            level=LogLevel(db_log.level),
            message=db_log.message,
            data=db_log.data or {},
            execution_step=db_log.execution_step,
            duration=db_log.duration,
            created_at=db_log.created_at,
        )


class InMemoryStorage(SqlAlchemyStorage):
    def __init__(self):
        # Every session shares the one in-memory connection, so statements
        # commit as they run instead of holding a transaction open on it.
        super().__init__("sqlite+aiosqlite:///:memory:", isolation_level="AUTOCOMMIT")
