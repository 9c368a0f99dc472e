import asyncio
import logging

import uvicorn

from pg_jobqueue import HandlerRegistry, Settings, create_app

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

registry = HandlerRegistry()


@registry.handler("image-batch")
async def process_images(job, report_progress):
    files = job.payload.get("files", [])
    for done, name in enumerate(files, start=1):
        if await report_progress.is_cancelled():
            logger.info(f"Job {job.id} cancelled after {done - 1} file(s)")
            return {"processed": done - 1, "cancelled": True}
        await asyncio.sleep(1.0)
        await report_progress(done * 100 / len(files), done)
    return {"processed": len(files)}


@registry.handler("echo")
async def echo(job, report_progress):
    await asyncio.sleep(0.5)
    return {"echo": job.payload}


# POST /api/jobs {"type": "image-batch", "payload": {"files": ["a.jpg", "b.jpg"]}}
# then watch GET /api/events
settings = Settings.from_env()
app = create_app(settings, registry=registry)

if __name__ == "__main__":
    uvicorn.run(app, host=settings.host, port=settings.port)
