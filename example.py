import asyncio
import logging

import asyncpg

from pg_jobqueue import EventBroadcaster, JobScheduler, PostgresJobStore

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def create_pool():
    return await asyncpg.create_pool(
        user='scheduler',
        password='scheduler123',
        database='scheduler_db',
        host='db',
        port=5432
    )


class LogChannel:
    """Observer that writes every event to the log"""

    def write(self, message: str):
        logger.info(message.strip().replace("\n", " | "))


async def resize_images(job, report_progress):
    files = job.payload.get("files", [])
    for done, name in enumerate(files, start=1):
        logger.info(f"Resizing {name}")
        await asyncio.sleep(1)
        await report_progress(done * 100 / len(files), done)
    return {"processed": len(files)}


async def monthly_report(job, report_progress):
    await asyncio.sleep(2)
    if not job.payload.get("month"):
        raise ValueError("payload.month is required")
    return {"month": job.payload["month"], "rows": 42}


async def main():
    pool = await create_pool()
    broadcaster = EventBroadcaster()
    scheduler = None

    try:
        store = PostgresJobStore(pool)
        await store.initialize_db()

        broadcaster.add_observer(LogChannel())
        broadcaster.start_heartbeat(10)

        scheduler = JobScheduler(store, broadcaster)
        scheduler.register_handler("image-batch", resize_images)
        scheduler.register_handler("monthly-report", monthly_report)

        await scheduler.recover_interrupted_jobs()

        logger.info("Starting scheduler...")
        scheduler.start(interval=1)

        await store.create("image-batch", {"files": ["a.jpg", "b.jpg", "c.jpg"]}, total_items=3)
        await store.create("monthly-report", {"month": "2024-04"})
        # Fails: no month in the payload
        await store.create("monthly-report")
        # Fails: nothing handles this type
        await store.create("video-transcode", {"file": "intro.mp4"})

        while True:
            await asyncio.sleep(1)

    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Shutting down scheduler...")
    finally:
        broadcaster.stop_heartbeat()
        if scheduler:
            await scheduler.shutdown()
        await pool.close()

if __name__ == "__main__":
    asyncio.run(main())
