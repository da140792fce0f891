"""
Consensus endpoints.

POST /consensus/generate
GET  /consensus/status/{job_id}
GET  /consensus/estimate
POST /consensus/estimate
GET  /consensus/result/{job_id}
POST /consensus/cancel/{job_id}
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query

from consensus_ai.core.errors import JobNotFound
from consensus_ai.core.logging import get_logger
from consensus_ai.dependencies import Services, get_account, get_services
from consensus_ai.models.api import EstimateRequest, GenerateRequest
from consensus_ai.models.domain import Account, Depth, Job

logger = get_logger(__name__)
router = APIRouter()


async def _owned_job(services: Services, job_id: str, account: Account) -> Job:
    job = await services.registry.get_job(job_id)
    if job.account_id != account.id:
        raise JobNotFound(job_id)
    return job


@router.post("/generate", status_code=202)
async def generate(
    request: GenerateRequest,
    account: Account = Depends(get_account),
    services: Services = Depends(get_services),
):
    """
    Start a consensus job.

    Returns 202 with the job id; poll /consensus/status/{job_id} for progress.
    Quota is checked before any provider is called (402 when insufficient).
    """
    if not len(services.providers):
        raise HTTPException(status_code=503, detail="No LLM providers configured")

    job = await services.registry.submit(account.id, request.to_input(), request.options)
    return {
        "jobId": job.id,
        "status": job.status.value,
        "estimatedTokens": job.estimated_tokens,
    }


@router.get("/status/{job_id}")
async def status(
    job_id: str,
    account: Account = Depends(get_account),
    services: Services = Depends(get_services),
):
    await _owned_job(services, job_id, account)
    return await services.registry.get_status(job_id)


@router.get("/estimate")
async def estimate(
    topic: str = Query(...),
    sources: List[str] = Query(default=[]),
    depth: Depth = Query(default=Depth.STANDARD),
    account: Account = Depends(get_account),
    services: Services = Depends(get_services),
):
    """Estimate the token cost of a request without starting it. Sources may repeat."""
    return await services.registry.estimate(
        account.id,
        {"topic": topic, "sources": sources},
        {"depth": depth},
    )


@router.post("/estimate")
async def estimate_body(
    request: EstimateRequest,
    account: Account = Depends(get_account),
    services: Services = Depends(get_services),
):
    return await services.registry.estimate(account.id, request.to_input(), request.options)


@router.get("/result/{job_id}")
async def result(
    job_id: str,
    include_traces: bool = Query(default=True, alias="includeTraces"),
    account: Account = Depends(get_account),
    services: Services = Depends(get_services),
):
    """The consensus report of a completed job (409 while running or after failure)."""
    await _owned_job(services, job_id, account)
    artifact = await services.registry.get_result(job_id)
    return artifact.to_report(include_traces=include_traces)


@router.post("/cancel/{job_id}")
async def cancel(
    job_id: str,
    account: Account = Depends(get_account),
    services: Services = Depends(get_services),
):
    await _owned_job(services, job_id, account)
    job = await services.registry.cancel(job_id)
    return {"jobId": job.id, "status": job.status.value, "phase": job.phase.value}
