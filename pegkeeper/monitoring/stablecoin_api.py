"""Pegkeeper – Stablecoin monitoring and control API.

Read-side endpoints expose the engine's metrics snapshot, supply state
and adjustment history. Write-side endpoints (rebalance, configuration,
manual price, market shock, reserve and supply operations) are
administrative: when an admin token is configured they require a
matching ``X-Admin-Token`` header.

The :class:`~pegkeeper.stablecoin.service.StabilizationService` is not
created here; the application factory stores the host's instance on
``app.state.service``.
"""

from __future__ import annotations

import hmac
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from pegkeeper.core.logging import get_logger
from pegkeeper.stablecoin.service import StabilizationService
from pegkeeper.stablecoin.types import (
    AdjustmentAction,
    InvalidInputError,
    InvariantViolationError,
    PriceObservation,
    SupplyAdjustment,
)


status_router = APIRouter(prefix="/api/stablecoin", tags=["stablecoin"])
control_router = APIRouter(prefix="/api/control/stablecoin", tags=["control"])
logger = get_logger(__name__)


# ============================================================================
# Request/Response Models
# ============================================================================


class ConfigPatchRequest(BaseModel):
    """Partial stability contract configuration; omitted fields are kept."""

    target_price: Optional[float] = Field(default=None, gt=0)
    tolerance_band: Optional[float] = Field(default=None, ge=0, lt=1)
    max_supply_change: Optional[float] = Field(default=None, gt=0, le=1)
    reserve_ratio: Optional[float] = Field(default=None, ge=0, le=1)
    rebalance_interval: Optional[int] = Field(default=None, ge=0)
    price_window: Optional[int] = Field(default=None, gt=0)
    response_factor: Optional[float] = Field(default=None, gt=0, le=1)
    metrics_window: Optional[int] = Field(default=None, gt=0)


class OracleConfigPatchRequest(BaseModel):
    """Partial oracle configuration; omitted fields are kept."""

    update_interval: Optional[int] = Field(default=None, gt=0)
    min_confidence: Optional[float] = Field(default=None, ge=0, le=1)
    aggregation_window: Optional[int] = Field(default=None, gt=0)


class PriceRequest(BaseModel):
    """Manual price injection."""

    price: float = Field(gt=0)
    confidence: float = Field(default=1.0, ge=0, le=1)
    volume: float = Field(default=0.0, ge=0)


class ObservationRequest(PriceRequest):
    """External feed observation routed through the oracle."""

    source: str = "external"


class ShockRequest(BaseModel):
    """Synthetic market shock."""

    severity: float = Field(ge=0, le=1)


class AmountRequest(BaseModel):
    """Reserve or supply amount."""

    amount: float = Field(gt=0)


class RebalanceResponse(BaseModel):
    """Outcome of a forced rebalance."""

    executed: bool
    rate_limited: bool
    adjustment: Optional[Dict[str, Any]] = None


class OperationResponse(BaseModel):
    """Outcome of a reserve or supply operation."""

    success: bool
    supply: Dict[str, Any]


# ============================================================================
# Dependencies
# ============================================================================


def get_service(request: Request) -> StabilizationService:
    """Return the service instance attached to the application."""

    service = getattr(request.app.state, "service", None)
    if service is None:  # pragma: no cover - misconfigured app
        raise HTTPException(status_code=503, detail="Stabilization service not configured")
    return service


def require_admin(
    request: Request,
    x_admin_token: Optional[str] = Header(default=None),
) -> None:
    """Reject control requests without the configured admin token."""

    expected = getattr(request.app.state, "admin_token", "") or ""
    if not expected:
        return
    if x_admin_token is None or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=403, detail="Administrative token required")


def _adjustment_dict(adjustment: SupplyAdjustment) -> Dict[str, Any]:
    data = asdict(adjustment)
    data["action"] = adjustment.action.value
    return data


def _patch(model: BaseModel) -> Dict[str, Any]:
    changes = model.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=422, detail="No configuration fields supplied")
    return changes


# ============================================================================
# Read Endpoints
# ============================================================================


@status_router.get("/metrics")
async def get_metrics(service: StabilizationService = Depends(get_service)) -> Dict[str, Any]:
    """Return the current engine metrics snapshot."""

    return asdict(service.get_metrics())


@status_router.get("/status")
async def get_status(service: StabilizationService = Depends(get_service)) -> Dict[str, Any]:
    """Return scheduler lifecycle status."""

    return asdict(service.get_status())


@status_router.get("/supply")
async def get_supply(service: StabilizationService = Depends(get_service)) -> Dict[str, Any]:
    """Return the supply/reserve snapshot."""

    return asdict(service.get_supply_info())


@status_router.get("/history")
async def get_history(
    limit: int = Query(10, ge=0, le=500),
    service: StabilizationService = Depends(get_service),
) -> List[Dict[str, Any]]:
    """Return executed supply adjustments, most recent first."""

    return [_adjustment_dict(a) for a in service.get_supply_history(limit)]


@status_router.get("/preview")
async def preview(service: StabilizationService = Depends(get_service)) -> Dict[str, Any]:
    """Return the adjustment a rebalance would make now, without applying it."""

    return _adjustment_dict(service.preview_adjustment())


@status_router.get("/config")
async def get_config(service: StabilizationService = Depends(get_service)) -> Dict[str, Any]:
    """Return contract and oracle configuration."""

    return {
        "stablecoin": asdict(service.get_config()),
        "oracle": asdict(service.get_oracle_config()),
    }


# ============================================================================
# Control Endpoints
# ============================================================================


@control_router.post("/rebalance", response_model=RebalanceResponse, dependencies=[Depends(require_admin)])
async def rebalance(service: StabilizationService = Depends(get_service)) -> RebalanceResponse:
    """Force a rebalance attempt (still subject to rate limiting)."""

    adjustment = service.perform_rebalance()
    if adjustment is None:
        return RebalanceResponse(executed=False, rate_limited=True)
    return RebalanceResponse(
        executed=adjustment.action is not AdjustmentAction.NONE,
        rate_limited=False,
        adjustment=_adjustment_dict(adjustment),
    )


@control_router.post("/config", dependencies=[Depends(require_admin)])
async def update_config(
    request: ConfigPatchRequest = Body(...),
    service: StabilizationService = Depends(get_service),
) -> Dict[str, Any]:
    """Merge a partial contract configuration."""

    changes = _patch(request)
    try:
        updated = service.update_config(changes)
    except InvalidInputError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    logger.info("control: stablecoin config updated %s", changes)
    return asdict(updated)


@control_router.post("/oracle_config", dependencies=[Depends(require_admin)])
async def update_oracle_config(
    request: OracleConfigPatchRequest = Body(...),
    service: StabilizationService = Depends(get_service),
) -> Dict[str, Any]:
    """Merge a partial oracle configuration."""

    try:
        updated = service.update_oracle_config(_patch(request))
    except InvalidInputError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return asdict(updated)


@control_router.post("/price", dependencies=[Depends(require_admin)])
async def set_price(
    request: PriceRequest = Body(...),
    service: StabilizationService = Depends(get_service),
) -> Dict[str, Any]:
    """Inject a price directly into the contract."""

    try:
        obs = service.set_price(request.price, confidence=request.confidence, volume=request.volume)
    except InvalidInputError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return asdict(obs)


@control_router.post("/observation", dependencies=[Depends(require_admin)])
async def add_observation(
    request: ObservationRequest = Body(...),
    service: StabilizationService = Depends(get_service),
) -> Dict[str, Any]:
    """Feed an observation through the oracle (subject to its confidence floor)."""

    try:
        obs = PriceObservation(
            price=request.price,
            timestamp=service.now(),
            volume=request.volume,
            confidence=request.confidence,
            source=request.source,
        )
        accepted = service.add_observation(obs)
    except InvalidInputError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return {"accepted": accepted, "observation": asdict(obs)}


@control_router.post("/shock", dependencies=[Depends(require_admin)])
async def simulate_shock(
    request: ShockRequest = Body(...),
    service: StabilizationService = Depends(get_service),
) -> Dict[str, Any]:
    """Inject a synthetic market shock."""

    obs = service.simulate_market_shock(request.severity)
    return asdict(obs)


def _operation(service: StabilizationService, success: bool, what: str) -> OperationResponse:
    if not success:
        raise InvariantViolationError(f"{what} rejected by supply/reserve invariants")
    return OperationResponse(success=True, supply=asdict(service.get_supply_info()))


async def invariant_violation_handler(request: Request, exc: InvariantViolationError) -> JSONResponse:
    """Report business-rule failures as 409 Conflict."""

    logger.warning("control: %s", exc)
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@control_router.post("/reserves/add", response_model=OperationResponse, dependencies=[Depends(require_admin)])
async def add_reserves(
    request: AmountRequest = Body(...),
    service: StabilizationService = Depends(get_service),
) -> OperationResponse:
    return _operation(service, service.add_reserves(request.amount), "Reserve deposit")


@control_router.post("/reserves/remove", response_model=OperationResponse, dependencies=[Depends(require_admin)])
async def remove_reserves(
    request: AmountRequest = Body(...),
    service: StabilizationService = Depends(get_service),
) -> OperationResponse:
    return _operation(service, service.remove_reserves(request.amount), "Reserve withdrawal")


@control_router.post("/mint", response_model=OperationResponse, dependencies=[Depends(require_admin)])
async def mint(
    request: AmountRequest = Body(...),
    service: StabilizationService = Depends(get_service),
) -> OperationResponse:
    return _operation(service, service.mint(request.amount), "Mint")


@control_router.post("/burn", response_model=OperationResponse, dependencies=[Depends(require_admin)])
async def burn(
    request: AmountRequest = Body(...),
    service: StabilizationService = Depends(get_service),
) -> OperationResponse:
    return _operation(service, service.burn(request.amount), "Burn")
