import asyncio
import logging
import multiprocessing
import uvicorn
from dotenv import load_dotenv

from config import load_config
from executor.engine_builder import EngineBuilder
from scheduler.scheduler_loop import SchedulerLoop

# Load environment variables
load_dotenv()
config = load_config()

# Configure logging
logging.basicConfig(
    level=config.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(config.log_file),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger("automation_engine")


def run_api_service():
    """Runs the FastAPI ingestion service in a separate process"""
    logger.info("Starting Automation API on port 8050...")
    uvicorn.run("app:app", host="0.0.0.0", port=8050, log_level="warning")


def poll_loop():
    """Main loop that claims due jobs and resumes their runs"""
    engine = EngineBuilder.build(config)
    loop = SchedulerLoop(engine.workers, interval_seconds=config.poll_interval)
    logger.info(f"Polling every {config.poll_interval}s with {config.worker_count} workers")
    asyncio.run(loop.start())


if __name__ == "__main__":
    # Only a durable store can be shared between the API process and the worker
    service_process = None
    if config.store_backend == "orchestrator":
        service_process = multiprocessing.Process(target=run_api_service)
        service_process.start()

    try:
        poll_loop()
    except KeyboardInterrupt:
        logger.info("Stopping...")
        if service_process is not None:
            service_process.terminate()
            service_process.join(timeout=3)
            if service_process.is_alive():
                logger.warning("API service didn't stop. Forcing kill...")
                service_process.kill()
        logger.info("Stopped.")
