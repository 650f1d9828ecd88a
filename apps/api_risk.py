"""
Risk threshold management endpoints (admin only).

GET  /api/risk/thresholds  -> effective (warning, auto_close) pair and its source
PUT  /api/risk/thresholds  -> write both values to the settings store

Values may be ratios (0, 1] or percentages (1, 100]. Invalid input is a 400
and the stored configuration is left as it was.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from apps.auth import token_matches
from core.errors import ThresholdValidationError

logger = logging.getLogger(__name__)

router = APIRouter()


# ==================== Pydantic Models ====================

class RiskThresholdsResponse(BaseModel):
    warning_threshold: float
    auto_close_threshold: float
    source: str


class RiskThresholdsUpdate(BaseModel):
    warning_threshold: float = Field(..., description="Ratio in (0, 1] or percent in (1, 100]")
    auto_close_threshold: float = Field(..., description="Ratio in (0, 1] or percent in (1, 100]")


# ==================== Auth ====================

def require_admin(request: Request) -> None:
    expected = request.app.state.context.admin_token
    if not expected:
        raise HTTPException(status_code=403, detail="Admin API token is not configured")
    if not token_matches(request, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


# ==================== API Endpoints ====================

@router.get("/thresholds", response_model=RiskThresholdsResponse, dependencies=[Depends(require_admin)])
def get_thresholds(request: Request, fresh: bool = False):
    resolver = request.app.state.context.thresholds
    value = resolver.get_risk_thresholds(max_age_ms=0 if fresh else None)
    return RiskThresholdsResponse(**value.to_dict())


@router.put("/thresholds", response_model=RiskThresholdsResponse, dependencies=[Depends(require_admin)])
def update_thresholds(update: RiskThresholdsUpdate, request: Request):
    resolver = request.app.state.context.thresholds
    try:
        value = resolver.upsert_risk_thresholds(update.warning_threshold, update.auto_close_threshold)
    except ThresholdValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.to_dict())
    except Exception as exc:
        logger.error("Failed to update risk thresholds: %s", exc)
        raise HTTPException(status_code=500, detail=f"Failed to update risk thresholds: {exc}")
    return RiskThresholdsResponse(**value.to_dict())
