"""
FastAPI endpoint for report generation.

Run with: python -m opportunity_engine.api

Endpoints:
- POST /reports - Start a report run (or wait for it with ?wait=true)
- GET /runs/{run_id} - Phase and progress of a run, plus its result when done
- GET /health - Health check
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from opportunity_engine import __version__
from opportunity_engine.agents.models import Idea, new_id
from opportunity_engine.config.settings import settings
from opportunity_engine.errors import ConfigurationError, PlanningCycleError
from opportunity_engine.report_pipeline import PipelineResult, ReportPipeline

logger = logging.getLogger(__name__)

pipeline: Optional[ReportPipeline] = None
results: Dict[str, PipelineResult] = {}
_tasks: Dict[str, asyncio.Task] = {}


def store_result(current: ReportPipeline, result: PipelineResult):
    """Keep a finished result while its run is still tracked by the pipeline."""
    results[result.run_id] = result
    for run_id in [rid for rid in results if rid not in current.runs]:
        del results[run_id]


def get_pipeline() -> ReportPipeline:
    """Lazy load the pipeline (requires API keys for real runs)"""
    global pipeline
    if pipeline is None:
        pipeline = ReportPipeline.from_settings(verbose=False)
    return pipeline


@asynccontextmanager
async def lifespan(app: FastAPI):
    await get_pipeline().start()
    yield
    for task in _tasks.values():
        task.cancel()
    await get_pipeline().close()


app = FastAPI(
    title="Opportunity Report API",
    description="Generates quality-gated business opportunity reports",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class IdeaRequest(BaseModel):
    title: str = Field(..., min_length=1)
    target_market: str
    problem_statement: str
    proposed_solution: str
    business_model: str
    constraints: Dict[str, Any] = Field(default_factory=dict)

    def to_idea(self) -> Idea:
        return Idea(
            title=self.title,
            target_market=self.target_market,
            problem_statement=self.problem_statement,
            proposed_solution=self.proposed_solution,
            business_model=self.business_model,
        )


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "llm_available": bool(settings.DEEPSEEK_API_KEY or settings.GEMINI_API_KEY),
        "paid_search_available": bool(settings.SERPER_API_KEY),
        "budget": get_pipeline().ledger.status(),
    }


@app.post("/reports", status_code=202)
async def create_report(
    request: IdeaRequest,
    wait: bool = Query(False, description="Block until the report is finished"),
):
    """
    Start a report run for one idea.
    Returns the run id immediately unless wait=true.
    """
    current = get_pipeline()
    try:
        current.run_config(request.constraints)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    run_id = new_id("run")
    idea = request.to_idea()

    if wait:
        try:
            result = await current.run_pipeline(idea, request.constraints, run_id=run_id)
        except PlanningCycleError as e:
            raise HTTPException(status_code=409, detail=str(e))
        store_result(current, result)
        return result.to_dict()

    async def _background():
        try:
            result = await current.run_pipeline(idea, request.constraints, run_id=run_id)
            store_result(current, result)
        except Exception as e:
            # Already logged and recorded on the run status by the pipeline
            logger.debug(f"Background run {run_id} ended with {type(e).__name__}")
        finally:
            _tasks.pop(run_id, None)

    _tasks[run_id] = asyncio.create_task(_background())
    return {"run_id": run_id, "status_url": f"/runs/{run_id}"}


@app.get("/runs/{run_id}")
async def run_status(run_id: str):
    """Phase and progress of a run; includes the result once finished."""
    status = get_pipeline().get_run_status(run_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Unknown run: {run_id}")
    result = results.get(run_id)
    if result is not None:
        status["result"] = result.to_dict()
    return status


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
