from __future__ import annotations

import asyncio

import pytest

from panelreview.exceptions import AnalysisFailedError, NoImagesError, NotFoundError
from panelreview.models.storyboard import GeneratedImage
from panelreview.schemas.review import BatchReviewOptions, PanelContext
from panelreview.services.analysis import AnalysisGateway
from panelreview.services.review_service import ReviewService
from panelreview.services.vision import VisionProviderError
from tests.factories import create_image, create_panel, create_storyboard
from tests.review_fixtures import FakeRegenerator, PathRoutedVisionProvider, analysis_json, issue


async def _reload(session_maker, image_id: int) -> GeneratedImage:
    async with session_maker() as session:
        return await session.get(GeneratedImage, image_id)


class TestReviewImage:
    @pytest.mark.asyncio
    async def test_first_review(self, review_service, vision, test_session, session_maker):
        image = await create_image(test_session)
        vision.queue(analysis_json(0.95))

        result = await review_service.review_image(image.id)

        assert result.image_id == image.id
        assert result.panel_id == image.panel_id
        assert result.score == 0.95
        assert result.status == "approved"
        assert result.recommendation == "approve"
        assert result.iteration == 1
        assert result.reviewed_by == "ai"
        assert (await _reload(session_maker, image.id)).review_status == "approved"

    @pytest.mark.asyncio
    async def test_image_not_found(self, review_service, vision):
        with pytest.raises(NotFoundError):
            await review_service.review_image(99999)
        assert vision.calls == []

    @pytest.mark.asyncio
    async def test_analysis_failure_writes_nothing(self, review_service, vision, test_session, session_maker):
        image = await create_image(test_session)
        vision.queue(VisionProviderError("timeout"))

        with pytest.raises(AnalysisFailedError):
            await review_service.review_image(image.id)

        assert await review_service.get_image_history(image.id) == []
        assert await review_service.get_latest_review(image.id) is None
        assert (await _reload(session_maker, image.id)).review_status == "pending"

    @pytest.mark.asyncio
    async def test_unparseable_analysis_writes_nothing(self, review_service, vision, test_session):
        image = await create_image(test_session)
        vision.queue("Looks fine to me.")

        with pytest.raises(AnalysisFailedError):
            await review_service.review_image(image.id)
        assert await review_service.get_image_history(image.id) == []

    @pytest.mark.asyncio
    async def test_iteration_cap_scenario(self, review_service, vision, test_session):
        review_service.config.set({"max_iterations": 2})
        image = await create_image(test_session)
        vision.queue_scores(0.6, 0.6, issues=[issue("quality", "minor", "grainy sky")])

        first = await review_service.review_image(image.id)
        second = await review_service.review_image(image.id)

        assert (first.iteration, first.status, first.recommendation) == (1, "needs_work", "inpaint")
        assert (second.iteration, second.status, second.recommendation) == (2, "needs_work", "human_review")

    @pytest.mark.asyncio
    async def test_low_score_pauses_in_hitl(self, review_service, vision, test_session):
        image = await create_image(test_session)
        vision.queue(analysis_json(0.4, [issue("missing_element", "major", "lighthouse")]))

        result = await review_service.review_image(image.id)
        assert result.status == "human_review"
        assert result.recommendation == "regenerate"

    @pytest.mark.asyncio
    async def test_low_score_rejected_in_auto(self, review_service, vision, test_session):
        review_service.config.set({"mode": "auto"})
        image = await create_image(test_session)
        vision.queue(analysis_json(0.2))

        result = await review_service.review_image(image.id)
        assert result.status == "rejected"

    @pytest.mark.asyncio
    async def test_concurrent_reviews_get_contiguous_iterations(self, review_service, vision, test_session):
        review_service.config.set({"max_iterations": 10})
        image = await create_image(test_session)

        results = await asyncio.gather(*(review_service.review_image(image.id) for _ in range(5)))

        assert sorted(r.iteration for r in results) == [1, 2, 3, 4, 5]
        history = await review_service.get_image_history(image.id)
        assert [r.iteration for r in history] == [5, 4, 3, 2, 1]
        # 每条记录指向上一条
        by_iteration = {r.iteration: r for r in history}
        assert by_iteration[1].previous_review_id is None
        for n in range(2, 6):
            assert by_iteration[n].previous_review_id == by_iteration[n - 1].id
        assert len(review_service.locks) == 0

    @pytest.mark.asyncio
    async def test_prompt_override_and_panel_context(self, review_service, vision, test_session):
        panel = await create_panel(test_session, description="Opening shot", character_names=["Otto"])
        image = await create_image(test_session, panel_id=panel.id, prompt="stored prompt")

        await review_service.review_image(image.id)
        assert "stored prompt" in vision.calls[0]["prompt"]
        assert "Opening shot" in vision.calls[0]["prompt"]
        assert "Otto" in vision.calls[0]["prompt"]

        await review_service.review_image(image.id, "override prompt", PanelContext(mood="stormy"))
        assert "override prompt" in vision.calls[1]["prompt"]
        assert "stormy" in vision.calls[1]["prompt"]
        assert "Opening shot" not in vision.calls[1]["prompt"]

    @pytest.mark.asyncio
    async def test_config_change_does_not_touch_history(self, review_service, vision, test_session):
        image = await create_image(test_session)
        vision.queue(analysis_json(0.75))
        first = await review_service.review_image(image.id)
        assert first.status == "approved"

        review_service.config.set({"min_acceptance_score": 0.8})
        latest = await review_service.get_latest_review(image.id)
        assert latest.status == "approved"


class TestReviewPanel:
    @pytest.mark.asyncio
    async def test_prefers_selected_image(self, review_service, test_session):
        panel = await create_panel(test_session)
        selected = await create_image(test_session, panel_id=panel.id, is_selected=True)
        await create_image(test_session, panel_id=panel.id)

        result = await review_service.review_panel(panel.id)
        assert result.image_id == selected.id

    @pytest.mark.asyncio
    async def test_falls_back_to_newest_image(self, review_service, test_session):
        panel = await create_panel(test_session)
        await create_image(test_session, panel_id=panel.id)
        newest = await create_image(test_session, panel_id=panel.id)

        result = await review_service.review_panel(panel.id)
        assert result.image_id == newest.id

    @pytest.mark.asyncio
    async def test_panel_without_images(self, review_service, test_session):
        panel = await create_panel(test_session)
        with pytest.raises(NoImagesError):
            await review_service.review_panel(panel.id)

    @pytest.mark.asyncio
    async def test_panel_not_found(self, review_service):
        with pytest.raises(NotFoundError):
            await review_service.review_panel(99999)


class TestReviewStoryboard:
    @pytest.mark.asyncio
    async def test_partial_failure(self, session_maker, review_config, test_session):
        storyboard = await create_storyboard(test_session)
        panels = [await create_panel(test_session, storyboard_id=storyboard.id, position=i) for i in range(1, 5)]
        await create_image(test_session, panel_id=panels[0].id, local_path="/img/1.png")
        await create_image(test_session, panel_id=panels[1].id, local_path="/img/2.png")
        await create_image(test_session, panel_id=panels[2].id, local_path="/img/3.png")
        # panels[3] 没有图片

        provider = PathRoutedVisionProvider(
            {
                "/img/1.png": analysis_json(0.95),
                "/img/2.png": analysis_json(0.4),
                "/img/3.png": VisionProviderError("timeout"),
            }
        )
        service = ReviewService(session_maker, AnalysisGateway(provider), review_config)

        result = await service.review_storyboard(storyboard.id)

        assert result.total == 4
        assert set(result.results) == {panels[0].id, panels[1].id}
        assert result.approved == 1
        assert result.pending_human == 1
        assert result.needs_work == 0
        assert result.rejected == 0
        errors = {e.panel_id: e.code for e in result.errors}
        assert errors == {panels[2].id: "ANALYSIS_FAILED", panels[3].id: "NO_IMAGES"}

    @pytest.mark.asyncio
    async def test_empty_or_missing_storyboard(self, review_service, test_session):
        storyboard = await create_storyboard(test_session)
        empty = await review_service.review_storyboard(storyboard.id)
        assert empty.total == 0
        assert empty.results == {}
        assert empty.errors == []

        missing = await review_service.review_storyboard(99999)
        assert missing.total == 0

    @pytest.mark.asyncio
    async def test_only_pending_and_limit(self, review_service, vision, test_session):
        storyboard = await create_storyboard(test_session)
        panels = [await create_panel(test_session, storyboard_id=storyboard.id, position=i) for i in range(1, 4)]
        await create_image(test_session, panel_id=panels[0].id, review_status="approved")
        await create_image(test_session, panel_id=panels[1].id)
        await create_image(test_session, panel_id=panels[2].id)

        result = await review_service.review_storyboard(
            storyboard.id, BatchReviewOptions(only_pending=True, limit=1, concurrency=1)
        )

        assert result.total == 1
        assert list(result.results) == [panels[1].id]
        assert len(vision.calls) == 1


class TestReviewUntilAccepted:
    @pytest.mark.asyncio
    async def test_regenerates_until_approved(self, review_service, vision, regenerator, test_session, session_maker):
        panel = await create_panel(test_session)
        original = await create_image(test_session, panel_id=panel.id)
        vision.queue(
            analysis_json(0.6, [issue("missing_element", "major", "lighthouse", "add a lighthouse on the cliff")]),
            analysis_json(0.95),
        )

        result = await review_service.review_until_accepted(panel.id, regenerator)

        assert result.accepted is True
        assert result.total_iterations == 2
        assert result.iterations[0].image_id == original.id
        assert result.final_image_id != original.id
        assert regenerator.calls == [
            (panel.id, original.id, ["add a lighthouse on the cliff", "Add: lighthouse"]),
        ]
        final_image = await _reload(session_maker, result.final_image_id)
        assert final_image.is_selected is True
        assert final_image.review_status == "approved"

    @pytest.mark.asyncio
    async def test_stops_at_max_iterations(self, review_service, vision, regenerator, test_session):
        review_service.config.set({"max_iterations": 2})
        panel = await create_panel(test_session)
        await create_image(test_session, panel_id=panel.id)
        vision.queue_scores(0.6, 0.6)

        result = await review_service.review_until_accepted(panel.id, regenerator)

        assert result.accepted is False
        assert result.total_iterations == 2
        assert len(regenerator.calls) == 1
        assert "Max iterations (2)" in result.reason

    @pytest.mark.asyncio
    async def test_stops_for_human_review(self, review_service, vision, regenerator, test_session):
        panel = await create_panel(test_session)
        await create_image(test_session, panel_id=panel.id)
        vision.queue_scores(0.4)

        result = await review_service.review_until_accepted(panel.id, regenerator)

        assert result.accepted is False
        assert result.total_iterations == 1
        assert regenerator.calls == []
        assert "human review" in result.reason

    @pytest.mark.asyncio
    async def test_regenerator_failure(self, review_service, vision, session_maker, test_session):
        panel = await create_panel(test_session)
        await create_image(test_session, panel_id=panel.id)
        vision.queue_scores(0.6)
        regenerator = FakeRegenerator(session_maker, fail=RuntimeError("GPU out of memory"))

        result = await review_service.review_until_accepted(panel.id, regenerator)

        assert result.accepted is False
        assert result.total_iterations == 1
        assert result.reason == "Regeneration failed: GPU out of memory"
