"""
Usage endpoints.

GET  /usage        current period usage for the calling account
POST /usage/check  whether an estimate would be admitted
"""
from fastapi import APIRouter, Depends

from consensus_ai.dependencies import Services, get_account, get_services
from consensus_ai.models.api import UsageCheckRequest
from consensus_ai.models.domain import Account

router = APIRouter()


@router.get("")
async def usage(
    account: Account = Depends(get_account),
    services: Services = Depends(get_services),
):
    return await services.ledger.usage_stats(account.id)


@router.post("/check")
async def check(
    request: UsageCheckRequest,
    account: Account = Depends(get_account),
    services: Services = Depends(get_services),
):
    availability = await services.ledger.check_availability(account.id, request.estimated_tokens)
    return {
        **availability.as_dict(),
        "decision": services.admission.decide(availability),
    }
