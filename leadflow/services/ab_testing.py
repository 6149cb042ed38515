"""A/B testing service — test lifecycle, visitor allocation, results, and winner promotion."""

import json
import logging
import time
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.config import get_settings
from leadflow.models import Flow, FlowAudit, FlowVersion, load_json, utcnow
from leadflow.models.ab_test import ABTest, ABTestInteraction, ABTestResult, ABTestVariant
from leadflow.schemas import ABTestCreate, FlowAssignment, OperationResult
from leadflow.services import statistics

logger = logging.getLogger(__name__)

INTERACTION_EVENTS = {"view", "conversion"}


class ABTestService:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ── Lookups ─────────────────────────────────────────
    async def get_test(self, test_id: str) -> Optional[ABTest]:
        result = await self.db.execute(select(ABTest).where(ABTest.id == test_id))
        return result.scalar_one_or_none()

    async def get_variants(self, test_id: str) -> list[ABTestVariant]:
        result = await self.db.execute(
            select(ABTestVariant)
            .where(ABTestVariant.test_id == test_id)
            .order_by(ABTestVariant.position.asc(), ABTestVariant.created_at.asc())
        )
        return list(result.scalars().all())

    async def _published_version(self, flow_id: str) -> Optional[FlowVersion]:
        result = await self.db.execute(
            select(FlowVersion)
            .where(FlowVersion.flow_id == flow_id, FlowVersion.status == "published")
            .order_by(FlowVersion.version.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _variant_slug(self, base_slug: str) -> str:
        stamp = int(time.time() * 1000)
        while True:
            slug = f"{base_slug}-variant-{stamp}"
            taken = await self.db.execute(select(Flow.id).where(Flow.slug == slug))
            if taken.scalar_one_or_none() is None:
                return slug
            stamp += 1

    async def list_tests(self, limit: int = 50, offset: int = 0) -> list[ABTest]:
        result = await self.db.execute(
            select(ABTest).order_by(ABTest.created_at.desc()).offset(offset).limit(limit)
        )
        return list(result.scalars().all())

    # ── Lifecycle ───────────────────────────────────────
    async def create_test(self, base_flow_id: str, data: ABTestCreate) -> OperationResult:
        """Create a draft test with a control and one variant backed by a copy of the base flow."""
        base_flow = (await self.db.execute(select(Flow).where(Flow.id == base_flow_id))).scalar_one_or_none()
        if not base_flow:
            return OperationResult.fail("Base flow not found")
        base_version = await self._published_version(base_flow_id)
        if not base_version:
            return OperationResult.fail("Base flow has no published version")

        settings = get_settings()
        payload = data.variant_flow_payload
        if payload is None:
            payload = load_json(base_version.payload, {})
        variant_slug = await self._variant_slug(base_flow.slug)

        try:
            variant_flow = Flow(
                name=f"{data.name} - Variant",
                slug=variant_slug,
                description="A/B test variant",
                status="draft",
                settings=json.dumps(payload.get("settings", {}) if isinstance(payload, dict) else {}),
            )
            self.db.add(variant_flow)
            self.db.add(FlowVersion(
                flow_id=variant_flow.id,
                slug=variant_slug,
                version=1,
                status="published",
                payload=json.dumps(payload),
            ))

            test = ABTest(
                base_flow_id=base_flow_id,
                name=data.name,
                description=data.description,
                hypothesis=data.hypothesis,
                status="draft",
                traffic_split=data.traffic_split,
                min_sample_size=data.min_sample_size or settings.default_min_sample_size,
                confidence_level=data.confidence_level or settings.default_confidence_level,
                success_metric=data.success_metric,
            )
            self.db.add(test)
            self.db.add(ABTestVariant(
                test_id=test.id,
                name="Control",
                flow_id=base_flow_id,
                traffic_allocation=100 - data.traffic_split,
                is_control=True,
                position=0,
            ))
            self.db.add(ABTestVariant(
                test_id=test.id,
                name="Variant A",
                flow_id=variant_flow.id,
                traffic_allocation=data.traffic_split,
                is_control=False,
                position=1,
            ))
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to create A/B test for flow {base_flow_id}: {e}")
            return OperationResult.fail(str(e))

        logger.info(f"Created A/B test {test.id} on flow {base_flow_id} (variant flow {variant_flow.id})")
        return OperationResult(success=True, test_id=test.id, flow_id=variant_flow.id)

    async def _transition(self, test_id: str, allowed: tuple[str, ...], target: str) -> OperationResult:
        test = await self.get_test(test_id)
        if not test:
            return OperationResult.fail("Test not found")
        if test.status not in allowed:
            return OperationResult.fail(f"Cannot move test from '{test.status}' to '{target}'")

        if target == "running":
            variants = await self.get_variants(test_id)
            if len(variants) < 2:
                return OperationResult.fail("Test needs at least 2 variants")
            if test.start_date is None or test.status == "draft":
                test.start_date = utcnow()
        elif target == "completed":
            test.end_date = utcnow()
        test.status = target
        await self.db.commit()
        logger.info(f"A/B test {test_id} is now {target}")
        return OperationResult(success=True, test_id=test_id)

    async def start_test(self, test_id: str) -> OperationResult:
        return await self._transition(test_id, ("draft", "paused"), "running")

    async def pause_test(self, test_id: str) -> OperationResult:
        return await self._transition(test_id, ("running",), "paused")

    async def stop_test(self, test_id: str) -> OperationResult:
        return await self._transition(test_id, ("running", "paused"), "completed")

    # ── Allocation ──────────────────────────────────────
    async def get_test_flow(self, base_flow_id: str, visitor_id: str) -> FlowAssignment:
        """Pick the flow a visitor sees. The same visitor always lands in the same variant."""
        try:
            result = await self.db.execute(
                select(ABTest)
                .where(ABTest.base_flow_id == base_flow_id, ABTest.status == "running")
                .order_by(ABTest.created_at.asc())
                .limit(1)
            )
            test = result.scalar_one_or_none()
            if not test:
                return FlowAssignment(flow_id=base_flow_id)

            variants = await self.get_variants(test.id)
            percentage = statistics.allocation_bucket(visitor_id, test.id)
            index = statistics.select_variant_index([v.traffic_allocation for v in variants], percentage)
            if index is not None:
                selected = variants[index]
            else:
                selected = next((v for v in variants if v.is_control), None)
            if not selected:
                return FlowAssignment(flow_id=base_flow_id, test_id=test.id)

            return FlowAssignment(
                flow_id=selected.flow_id,
                is_variant=not selected.is_control,
                test_id=test.id,
                variant_id=selected.id,
            )
        except Exception as e:
            logger.error(f"Failed to allocate visitor {visitor_id} on flow {base_flow_id}: {e}")
            return FlowAssignment(flow_id=base_flow_id)

    async def record_interaction(
        self, test_id: str, variant_id: str, visitor_id: str, event: str, metadata: Optional[dict] = None
    ) -> OperationResult:
        if event not in INTERACTION_EVENTS:
            return OperationResult.fail(f"Unknown event '{event}'")
        variant = (await self.db.execute(
            select(ABTestVariant).where(ABTestVariant.id == variant_id, ABTestVariant.test_id == test_id)
        )).scalar_one_or_none()
        if not variant:
            return OperationResult.fail("Variant not found")

        try:
            self.db.add(ABTestInteraction(
                test_id=test_id,
                variant_id=variant_id,
                visitor_id=visitor_id,
                event=event,
                metadata_=json.dumps(metadata or {}),
            ))
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to record {event} for test {test_id}: {e}")
            return OperationResult.fail(str(e))
        return OperationResult(success=True, test_id=test_id)

    # ── Results ─────────────────────────────────────────
    async def calculate_results(self, test_id: str) -> Optional[statistics.ABTestResults]:
        """Recompute the results snapshot from the interaction log and refresh the cache."""
        try:
            test = await self.get_test(test_id)
            if not test:
                return None

            counts = await self.db.execute(
                select(ABTestInteraction.variant_id, ABTestInteraction.event, func.count(ABTestInteraction.id))
                .where(ABTestInteraction.test_id == test_id)
                .group_by(ABTestInteraction.variant_id, ABTestInteraction.event)
            )
            tally: dict[tuple[str, str], int] = {(vid, ev): n for vid, ev, n in counts.all()}
            if not tally:
                return None

            variants = [
                statistics.build_variant_result(
                    variant_id=v.id,
                    name=v.name,
                    is_control=bool(v.is_control),
                    views=tally.get((v.id, "view"), 0),
                    conversions=tally.get((v.id, "conversion"), 0),
                    confidence_level=test.confidence_level,
                )
                for v in await self.get_variants(test_id)
            ]

            settings = get_settings()
            significance = statistics.calculate_statistical_significance(
                variants, min_views=settings.significance_min_views, alpha=settings.significance_alpha
            )
            winner = statistics.determine_winner(variants, significance, test.min_sample_size)
            if winner:
                for v in variants:
                    v.is_winner = v.variant_id == winner.variant_id
            recommendation = statistics.generate_recommendation(
                variants, significance, test.min_sample_size, extend_threshold=settings.extend_test_confidence
            )

            now = utcnow()
            results = statistics.ABTestResults(
                test_id=test_id,
                variants=variants,
                winner=winner,
                statistical_significance=significance,
                recommendation=recommendation,
                last_calculated=now.isoformat(),
            )
        except Exception as e:
            logger.error(f"Failed to calculate results for test {test_id}: {e}")
            return None

        await self._cache_results(results, now)
        return results

    async def _cache_results(self, results: statistics.ABTestResults, calculated_at) -> None:
        try:
            cached = (await self.db.execute(
                select(ABTestResult).where(ABTestResult.test_id == results.test_id)
            )).scalar_one_or_none()
            if cached:
                cached.results = json.dumps(results.to_dict())
                cached.last_calculated = calculated_at
            else:
                self.db.add(ABTestResult(
                    test_id=results.test_id,
                    results=json.dumps(results.to_dict()),
                    last_calculated=calculated_at,
                ))
            await self.db.commit()
        except Exception as e:
            logger.warning(f"Failed to cache results for test {results.test_id}: {e}")
            await self.db.rollback()

    async def get_cached_results(self, test_id: str) -> Optional[dict]:
        cached = (await self.db.execute(
            select(ABTestResult).where(ABTestResult.test_id == test_id)
        )).scalar_one_or_none()
        if not cached:
            return None
        return load_json(cached.results, None)

    # ── Promotion ───────────────────────────────────────
    async def promote_winner(self, test_id: str, winner_variant_id: str) -> OperationResult:
        """Publish the winning variant's payload as the base flow's next version and close the test."""
        test = await self.get_test(test_id)
        if not test:
            return OperationResult.fail("Test not found")
        if test.status == "completed":
            return OperationResult.fail("Test already completed")

        winner = (await self.db.execute(
            select(ABTestVariant).where(ABTestVariant.id == winner_variant_id, ABTestVariant.test_id == test_id)
        )).scalar_one_or_none()
        if not winner:
            return OperationResult.fail("Winner variant not found")

        winner_version = await self._published_version(winner.flow_id)
        if not winner_version:
            return OperationResult.fail("Winner flow not found")

        base_flow = (await self.db.execute(
            select(Flow).where(Flow.id == test.base_flow_id)
        )).scalar_one_or_none()
        if not base_flow:
            return OperationResult.fail("Base flow not found")

        max_version = (await self.db.execute(
            select(func.max(FlowVersion.version)).where(FlowVersion.flow_id == base_flow.id)
        )).scalar()
        next_version = (max_version or 0) + 1

        try:
            self.db.add(FlowVersion(
                flow_id=base_flow.id,
                slug=base_flow.slug,
                version=next_version,
                status="published",
                payload=winner_version.payload,
            ))
            await self.db.execute(
                update(FlowVersion)
                .where(
                    FlowVersion.flow_id == base_flow.id,
                    FlowVersion.status == "published",
                    FlowVersion.version != next_version,
                )
                .values(status="archived")
            )
            winner.is_winner = True
            test.status = "completed"
            test.end_date = utcnow()
            self.db.add(FlowAudit(
                flow_id=base_flow.id,
                action="ab_test_promotion",
                meta=json.dumps({
                    "test_id": test_id,
                    "winner_variant_id": winner_variant_id,
                    "version": next_version,
                }),
            ))
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Failed to promote winner {winner_variant_id} of test {test_id}: {e}")
            return OperationResult.fail(str(e))

        logger.info(f"Promoted variant {winner_variant_id} of test {test_id} as version {next_version} of flow {base_flow.id}")
        return OperationResult(success=True, test_id=test_id, flow_id=base_flow.id, version=next_version)
