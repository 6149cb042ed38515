"""Flows API — minimal flow storage used by the logic engine and A/B tests."""

import json

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.database import get_db
from leadflow.models import Flow, FlowVersion, load_json
from leadflow.schemas import FlowCreate, FlowOut, FlowVersionOut

router = APIRouter(prefix="/flows", tags=["flows"])


async def _flow_out(db: AsyncSession, flow: Flow) -> FlowOut:
    result = await db.execute(
        select(FlowVersion).where(FlowVersion.flow_id == flow.id).order_by(FlowVersion.version.asc())
    )
    out = FlowOut.model_validate(flow)
    out.versions = [FlowVersionOut.model_validate(v) for v in result.scalars().all()]
    return out


@router.get("/", response_model=list[FlowOut])
async def list_flows(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(Flow).order_by(Flow.created_at.desc()).offset(offset).limit(limit))
    return [FlowOut.model_validate(f) for f in result.scalars().all()]


@router.post("/", response_model=FlowOut, status_code=201)
async def create_flow(data: FlowCreate, db: AsyncSession = Depends(get_db)):
    """Create a flow and publish its payload as version 1."""
    existing = await db.execute(select(Flow).where(Flow.slug == data.slug))
    if existing.scalar_one_or_none():
        raise HTTPException(409, "Slug already in use")

    flow = Flow(
        name=data.name,
        slug=data.slug,
        description=data.description,
        status="published",
        settings=json.dumps(data.settings),
    )
    db.add(flow)
    db.add(FlowVersion(
        flow_id=flow.id,
        slug=data.slug,
        version=1,
        status="published",
        payload=json.dumps(data.payload),
    ))
    await db.commit()
    return await _flow_out(db, flow)


@router.get("/{flow_id}", response_model=FlowOut)
async def get_flow(flow_id: str, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(Flow).where(Flow.id == flow_id))
    flow = result.scalar_one_or_none()
    if not flow:
        raise HTTPException(404, "Flow not found")
    return await _flow_out(db, flow)


@router.get("/{flow_id}/published")
async def get_published_payload(flow_id: str, db: AsyncSession = Depends(get_db)):
    """Payload of the current published version."""
    result = await db.execute(
        select(FlowVersion)
        .where(FlowVersion.flow_id == flow_id, FlowVersion.status == "published")
        .order_by(FlowVersion.version.desc())
        .limit(1)
    )
    version = result.scalar_one_or_none()
    if not version:
        raise HTTPException(404, "No published version")
    return {"flow_id": flow_id, "version": version.version, "payload": load_json(version.payload, {})}
