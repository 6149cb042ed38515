"""A/B Testing API — create, run, evaluate, and promote flow split tests."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.database import get_db
from leadflow.schemas import ABTestCreate, ABTestOut, ABTestVariantOut, FlowAssignment, OperationResult
from leadflow.services.ab_testing import ABTestService

router = APIRouter(prefix="/ab-tests", tags=["ab-testing"])

NOT_FOUND_ERRORS = {"Test not found", "Base flow not found", "Variant not found", "Winner variant not found"}


# ── Schemas ──────────────────────────────────────────────
class ABTestCreateRequest(ABTestCreate):
    base_flow_id: str


class AssignRequest(BaseModel):
    base_flow_id: str
    visitor_id: str = Field(min_length=1)


class InteractionRequest(BaseModel):
    variant_id: str
    visitor_id: str
    event: str  # view|conversion
    metadata: Optional[dict] = None


class PromoteRequest(BaseModel):
    winner_variant_id: str


# ── Helpers ──────────────────────────────────────────────
def _check(result: OperationResult) -> OperationResult:
    if not result.success:
        errors = result.errors or ["Operation failed"]
        status = 404 if errors[0] in NOT_FOUND_ERRORS else 400
        raise HTTPException(status, errors[0] if len(errors) == 1 else errors)
    return result


async def _test_out(service: ABTestService, test_id: str) -> ABTestOut:
    test = await service.get_test(test_id)
    if not test:
        raise HTTPException(404, "Test not found")
    out = ABTestOut.model_validate(test)
    out.variants = [ABTestVariantOut.model_validate(v) for v in await service.get_variants(test_id)]
    return out


# ── Endpoints ────────────────────────────────────────────
@router.post("/", response_model=ABTestOut, status_code=201)
async def create_ab_test(data: ABTestCreateRequest, db: AsyncSession = Depends(get_db)):
    """Create a draft test on a flow; the variant starts as a copy of the base flow."""
    service = ABTestService(db)
    result = _check(await service.create_test(data.base_flow_id, data))
    return await _test_out(service, result.test_id)


@router.get("/", response_model=list[ABTestOut])
async def list_ab_tests(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    service = ABTestService(db)
    return [await _test_out(service, t.id) for t in await service.list_tests(limit, offset)]


@router.post("/assign", response_model=FlowAssignment)
async def assign_visitor(data: AssignRequest, db: AsyncSession = Depends(get_db)):
    """Which flow this visitor should see for the base flow."""
    return await ABTestService(db).get_test_flow(data.base_flow_id, data.visitor_id)


@router.get("/{test_id}", response_model=ABTestOut)
async def get_ab_test(test_id: str, db: AsyncSession = Depends(get_db)):
    return await _test_out(ABTestService(db), test_id)


@router.post("/{test_id}/start", response_model=ABTestOut)
async def start_ab_test(test_id: str, db: AsyncSession = Depends(get_db)):
    service = ABTestService(db)
    _check(await service.start_test(test_id))
    return await _test_out(service, test_id)


@router.post("/{test_id}/pause", response_model=ABTestOut)
async def pause_ab_test(test_id: str, db: AsyncSession = Depends(get_db)):
    service = ABTestService(db)
    _check(await service.pause_test(test_id))
    return await _test_out(service, test_id)


@router.post("/{test_id}/stop", response_model=ABTestOut)
async def stop_ab_test(test_id: str, db: AsyncSession = Depends(get_db)):
    service = ABTestService(db)
    _check(await service.stop_test(test_id))
    return await _test_out(service, test_id)


@router.post("/{test_id}/interactions", response_model=OperationResult, status_code=201)
async def record_interaction(test_id: str, data: InteractionRequest, db: AsyncSession = Depends(get_db)):
    result = await ABTestService(db).record_interaction(
        test_id, data.variant_id, data.visitor_id, data.event, data.metadata
    )
    return _check(result)


@router.get("/{test_id}/results")
async def get_results(
    test_id: str,
    cached: bool = Query(False, description="Return the last stored snapshot instead of recomputing"),
    db: AsyncSession = Depends(get_db),
):
    service = ABTestService(db)
    if cached:
        snapshot = await service.get_cached_results(test_id)
    else:
        results = await service.calculate_results(test_id)
        snapshot = results.to_dict() if results else None
    if snapshot is None:
        raise HTTPException(404, "No results available")
    return snapshot


@router.post("/{test_id}/promote", response_model=OperationResult)
async def promote_winner(test_id: str, data: PromoteRequest, db: AsyncSession = Depends(get_db)):
    """Publish the winning variant's flow as the base flow's next version."""
    return _check(await ABTestService(db).promote_winner(test_id, data.winner_variant_id))
