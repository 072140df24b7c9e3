import asyncio
from datetime import timedelta

from job_scheduler import JobScheduler, JobSpec, JobType, Settings
from job_scheduler.storages.sqlalchemy import InMemoryStorage

OWNER = "demo_user"

settings = Settings(poll_interval=0.1, handler_latency_scale=0.2)
scheduler = JobScheduler(settings, storage=InMemoryStorage())


async def main() -> None:
    await scheduler.start()

    email = await scheduler.create_job(JobSpec(
        name="Welcome mail",
        type=JobType.IMMEDIATE,
        payload={"kind": "email", "recipient": "someone@example.com", "subject": "Hello"},
        owner=OWNER,
    ))
    report = await scheduler.create_job(JobSpec(
        name="Crunch numbers",
        type=JobType.DELAYED,
        delay=timedelta(seconds=2),
        payload={"kind": "data_processing", "record_count": 500, "complexity": "high"},
        owner=OWNER,
        priority=5,
    ))
    heartbeat = await scheduler.create_job(JobSpec(
        name="Heartbeat",
        type=JobType.RECURRING,
        cron_expression="*/2 * * * * *",
        payload={"kind": "cleanup", "item_count": 3},
        owner=OWNER,
        tags=["ops"],
    ))

    await asyncio.sleep(5)
    await scheduler.cancel_job(heartbeat.id, OWNER)

    for job_id in (email.id, report.id):
        job = await scheduler.get_job(job_id, OWNER)
        print(f"{job.name}: {job.status.value} in {job.execution_time or 0:.0f}ms -> {job.result}")
        for log in await scheduler.get_job_logs(job_id, OWNER):
            print(f"  [{log.level.value}] {log.message}")

    instances = await scheduler.list_jobs(OWNER, type=JobType.IMMEDIATE)
    print(f"Heartbeat fired {sum(j.parent_id == heartbeat.id for j in instances)} time(s)")
    print(await scheduler.get_stats(OWNER))

    await scheduler.stop()


if __name__ == "__main__":
    asyncio.run(main())
