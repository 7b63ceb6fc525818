"""
GET  /rate-limiter/stats       — current counters and configuration
POST /rate-limiter/reset-stats — zero the counters
"""

from dataclasses import asdict

from fastapi import APIRouter, Depends

from ..deps import get_rate_limiter
from ..schemas import RateLimiterStatsResponse, ResetResponse
from ...ingestion.rate_limiter import RateLimiter

router = APIRouter(prefix="/rate-limiter")


@router.get("/stats", response_model=RateLimiterStatsResponse)
async def rate_limiter_stats(limiter: RateLimiter = Depends(get_rate_limiter)):
    """
    Rate limiter statistics:
      - enabled / min_interval_seconds: configuration
      - total_received: readings seen by the gate
      - total_saved: readings admitted (stored and broadcast)
      - total_dropped: readings discarded for arriving too soon
      - drop_rate_percent: dropped / received
    """
    return RateLimiterStatsResponse(**asdict(limiter.get_stats()))


@router.post("/reset-stats", response_model=ResetResponse)
async def reset_rate_limiter_stats(limiter: RateLimiter = Depends(get_rate_limiter)):
    limiter.reset_stats()
    return ResetResponse(message="Rate limiter statistics reset")
