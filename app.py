from fastapi import FastAPI, HTTPException, Depends
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional
import logging
import traceback
from dotenv import load_dotenv

from config import load_config
from executor.engine_builder import AutomationEngine, EngineBuilder
from executor.errors import RunNotFoundError, StoreUnavailableError
from models.event import EventSource

# Load environment variables from .env file
load_dotenv()
config = load_config()

# Configure logging to file and console
logging.basicConfig(
    level=config.log_level.upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s',
    handlers=[
        logging.FileHandler(config.log_file),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger("automation_engine")

app = FastAPI(title="Automation Workflow Engine")

_engine: Optional[AutomationEngine] = None


def get_engine() -> AutomationEngine:
    global _engine
    if _engine is None:
        _engine = EngineBuilder.build(config)
    return _engine


class EventPayload(BaseModel):
    business_id: str
    intent: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    dedupe_key: Optional[str] = None
    contact_id: Optional[str] = None
    source: EventSource = EventSource.API


class CancelPayload(BaseModel):
    reason: str = "cancelled"


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.post("/api/v1/events")
async def submit_event(body: EventPayload, engine: AutomationEngine = Depends(get_engine)):
    try:
        result = await engine.submit_event(
            body.business_id,
            body.intent,
            body.payload,
            body.dedupe_key,
            contact_id=body.contact_id,
            source=body.source,
        )
    except StoreUnavailableError as e:
        logger.error(f"Event ingestion failed: {e}")
        raise HTTPException(status_code=503, detail=str(e))
    return result.model_dump()


@app.post("/api/v1/runs/{run_id}/cancel")
def cancel_run(run_id: str, body: Optional[CancelPayload] = None, engine: AutomationEngine = Depends(get_engine)):
    reason = body.reason if body else "cancelled"
    try:
        cancelled = engine.cancel_run(run_id, reason)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return {"run_id": run_id, "cancelled": cancelled}


@app.get("/api/v1/runs/{run_id}")
def get_run(run_id: str, engine: AutomationEngine = Depends(get_engine)):
    try:
        details = engine.get_run_details(run_id)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return {
        "run": details["run"].model_dump(mode="json"),
        "jobs": [j.model_dump(mode="json") for j in details["jobs"]],
        "logs": [l.model_dump(mode="json") for l in details["logs"]],
    }


@app.post("/api/v1/jobs/poll")
async def poll_jobs(engine: AutomationEngine = Depends(get_engine)):
    """Called by an external cron: runs one claim-and-advance cycle."""
    try:
        stats = await engine.poll()
    except Exception as e:
        logger.error(f"Poll cycle failed: {e}")
        logger.error(traceback.format_exc())
        raise HTTPException(status_code=500, detail=str(e))
    return {"status": "ok", **stats}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8050)
