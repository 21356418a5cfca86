from fastapi import APIRouter, Response

from twofactor.core.exceptions import RateLimitExceededError
from twofactor.schemas.rate_limit import RateLimitRequest, RateLimitResponse
from twofactor.services.rate_limit import check_rate_limit

router = APIRouter(prefix="/rate-limit", tags=["rate-limit"])


@router.post("", response_model=RateLimitResponse)
async def check_attempt(request: RateLimitRequest, response: Response):
    """Count an attempt for (action, identifier) and report whether it may proceed."""
    result = await check_rate_limit(request.action, request.identifier)
    if not result.allowed:
        raise RateLimitExceededError(request.action, result.retry_after)

    response.headers["X-RateLimit-Remaining"] = str(result.remaining)
    response.headers["X-RateLimit-Reset"] = str(result.reset_at)
    return RateLimitResponse(allowed=True, remaining=result.remaining, reset_at=result.reset_at)
