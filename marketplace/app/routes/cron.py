"""Scheduler-facing endpoints guarded by a shared secret."""
from __future__ import annotations

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from ...app_context import get_bearer_token
from ...sweeps import run_sweep_job
from ..schemas.features import SweepResponse
from ..services.billing import BillingEngine, get_engine

router = APIRouter(prefix="/api/cron", tags=["cron"])


def _authorize(engine: BillingEngine, token: Optional[str]) -> None:
    expected = engine.config.cron_secret_token
    if not expected:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Cron secret is not configured")
    if token is None or not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.api_route("/expire-featured", methods=["GET", "POST"], response_model=SweepResponse)
def expire_featured_listings(
    *,
    engine: BillingEngine = Depends(get_engine),
    token: Optional[str] = Depends(get_bearer_token),
) -> SweepResponse:
    _authorize(engine, token)
    try:
        summary = run_sweep_job(engine.sweeper)
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to expire featured listings",
        ) from exc
    return SweepResponse.from_summary(summary)
