"""Tests for the debounce coordinator session flow."""

import asyncio
import os

import numpy as np
import pytest

from conftest import FakeInpaintProvider, FakeSegmentationProvider


def make_session(config, image, segmentation=None, inpaint=None):
    from removalmask.session.coordinator import DebounceCoordinator
    from removalmask.session.image_provider import ImageProvider

    return DebounceCoordinator(
        ImageProvider(image),
        inpaint or FakeInpaintProvider(),
        segmentation_provider=segmentation,
        config=config,
    )


def stroke_at(x, y, radius=3):
    from removalmask.models import Stroke
    return Stroke(points=[(x, 0.3), (x, y)], brush_radius=radius)


class BlockingInpaintProvider(FakeInpaintProvider):
    """Waits on an event before inpainting."""

    def __init__(self):
        super().__init__()
        self.release = None
        self.entered = None

    async def inpaint(self, image, mask):
        self.entered.set()
        await self.release.wait()
        return await super().inpaint(image, mask)


class TestDebounce:
    """Tests for debounce and auto-apply."""

    def test_quick_strokes_refine_once(self, fast_config, sample_image, horizontal_stroke, vertical_stroke):
        from removalmask.models import Phase
        from removalmask.raster.stroke_raster import rasterize

        segmentation = FakeSegmentationProvider()
        inpaint = FakeInpaintProvider()
        third = stroke_at(0.4, 0.9)

        async def run():
            session = make_session(fast_config, sample_image, segmentation, inpaint)
            session.start()
            session.add_stroke(horizontal_stroke)
            session.add_stroke(vertical_stroke)
            session.add_stroke(third)
            await session.settle()
            return session

        session = asyncio.run(run())

        assert len(segmentation.calls) == 1
        assert len(inpaint.masks) == 1
        expected = rasterize([horizontal_stroke, vertical_stroke, third], 100, 80)
        assert np.array_equal(inpaint.masks[0], expected)

        assert session.phase == Phase.IDLE
        assert session.strokes == ()
        assert session.overlay.empty
        assert len(session.image_provider.history) == 2

    def test_committed_image_is_inpainted(self, fast_config, sample_image, horizontal_stroke):
        async def run():
            session = make_session(fast_config, sample_image, FakeSegmentationProvider())
            session.start()
            session.add_stroke(horizontal_stroke)
            await session.settle()
            return session

        session = asyncio.run(run())

        committed = session.image_provider.image
        assert committed.shape == sample_image.shape
        assert np.all(committed[40, 30] == 0)
        assert np.all(committed[5, 5] == 128)

    def test_phase_sequence(self, fast_config, sample_image, horizontal_stroke):
        from removalmask.models import Phase

        phases = []

        async def run():
            session = make_session(fast_config, sample_image, FakeSegmentationProvider())
            session.subscribe(lambda view: phases.append(view.phase))
            session.start()
            session.add_stroke(horizontal_stroke)
            await session.settle()

        asyncio.run(run())

        distinct = [p for i, p in enumerate(phases) if i == 0 or phases[i - 1] != p]
        assert distinct == [
            Phase.IDLE,
            Phase.ACCUMULATING,
            Phase.REFINING,
            Phase.READY_TO_APPLY,
            Phase.APPLYING,
            Phase.IDLE,
        ]

    def test_overlay_regenerated_on_each_stroke(self, fast_config, sample_image, horizontal_stroke, vertical_stroke):
        from removalmask.preview.overlay import overlay
        from removalmask.raster.stroke_raster import rasterize

        fast_config.session.debounce_ms = 10000
        views = []

        async def run():
            session = make_session(fast_config, sample_image, FakeSegmentationProvider())
            session.subscribe(views.append)
            session.start()
            session.add_stroke(horizontal_stroke)
            session.add_stroke(vertical_stroke)
            session.cancel()

        asyncio.run(run())

        with_two = [v for v in views if v.stroke_count == 2][0]
        expected = overlay(rasterize([horizontal_stroke, vertical_stroke], 100, 80))
        assert np.array_equal(with_two.overlay, expected)
        assert views[-1].overlay is None

    def test_last_stroke_wins(self, fast_config, sample_image, horizontal_stroke, vertical_stroke):
        """A stroke added during refinement supersedes the in-flight result."""
        from removalmask.models import Phase
        from removalmask.raster.stroke_raster import rasterize

        segmentation = FakeSegmentationProvider()
        inpaint = FakeInpaintProvider()

        async def run():
            segmentation.block_first_call()
            session = make_session(fast_config, sample_image, segmentation, inpaint)
            session.start()

            session.add_stroke(horizontal_stroke)
            await segmentation.entered.wait()
            assert session.phase == Phase.REFINING

            session.add_stroke(vertical_stroke)
            assert session.phase == Phase.ACCUMULATING
            segmentation.gate.set()

            await session.settle()
            return session

        session = asyncio.run(run())

        assert len(segmentation.calls) == 2
        assert len(inpaint.masks) == 1
        expected = rasterize([horizontal_stroke, vertical_stroke], 100, 80)
        assert np.array_equal(inpaint.masks[0], expected)
        assert session.phase == Phase.IDLE

    def test_morphology_without_segmentation_provider(self, fast_config, sample_image, horizontal_stroke):
        from removalmask.raster.stroke_raster import rasterize
        from removalmask.refine.morphology import refine
        from removalmask.refine.strategy import RefinementStrategy

        inpaint = FakeInpaintProvider()

        async def run():
            session = make_session(fast_config, sample_image, None, inpaint)
            assert session.refiner.strategy == RefinementStrategy.MORPHOLOGY
            session.start()
            session.add_stroke(horizontal_stroke)
            await session.settle()

        asyncio.run(run())

        expected = refine(rasterize([horizontal_stroke], 100, 80), fast_config.refine)
        assert np.array_equal(inpaint.masks[0], expected)

    def test_auto_apply_delay_holds_refined_mask(self, fast_config, sample_image, horizontal_stroke):
        from removalmask.models import Phase

        fast_config.session.auto_apply_delay_ms = 10000
        inpaint = FakeInpaintProvider()

        async def run():
            session = make_session(fast_config, sample_image, FakeSegmentationProvider(), inpaint)
            session.start()
            session.add_stroke(horizontal_stroke)
            for _ in range(200):
                if session.phase == Phase.READY_TO_APPLY:
                    break
                await asyncio.sleep(0.01)
            phase = session.phase
            session.cancel()
            return phase

        assert asyncio.run(run()) == Phase.READY_TO_APPLY
        assert inpaint.masks == []


class TestCommands:
    """Tests for explicit session commands."""

    def test_commands_require_start(self, fast_config, sample_image, horizontal_stroke):
        session = make_session(fast_config, sample_image)

        with pytest.raises(RuntimeError):
            session.add_stroke(horizontal_stroke)

    def test_manual_refine_skips_debounce(self, fast_config, sample_image, horizontal_stroke):
        from removalmask.models import Phase

        fast_config.session.debounce_ms = 10000
        inpaint = FakeInpaintProvider()

        async def run():
            session = make_session(fast_config, sample_image, FakeSegmentationProvider(), inpaint)
            session.start()
            assert not session.manual_refine()

            session.add_stroke(horizontal_stroke)
            assert session.manual_refine()
            assert session.phase == Phase.REFINING
            await session.settle()
            return session

        session = asyncio.run(run())

        assert len(inpaint.masks) == 1
        assert session.phase == Phase.IDLE

    def test_accept_refined_mask(self, fast_config, sample_image, horizontal_stroke):
        from removalmask.models import Phase

        fast_config.session.auto_apply = False
        inpaint = FakeInpaintProvider()

        async def run():
            session = make_session(fast_config, sample_image, FakeSegmentationProvider(), inpaint)
            session.start()
            session.add_stroke(horizontal_stroke)
            await session.settle()

            view = session.view()
            assert view.phase == Phase.READY_TO_APPLY
            assert view.can_accept and view.can_reject
            assert inpaint.masks == []

            assert session.accept_refined_mask()
            await session.settle()
            return session

        session = asyncio.run(run())

        assert len(inpaint.masks) == 1
        assert session.phase == Phase.IDLE
        assert len(session.image_provider.history) == 2

    def test_reject_restores_rough_overlay(self, fast_config, sample_image, horizontal_stroke):
        from removalmask.models import Phase
        from removalmask.preview.overlay import overlay
        from removalmask.raster.stroke_raster import rasterize

        fast_config.session.auto_apply = False
        fast_config.session.strategy = "morphology"

        async def run():
            session = make_session(fast_config, sample_image)
            session.start()
            session.add_stroke(horizontal_stroke)
            await session.settle()

            assert session.reject_refined_mask()
            return session

        session = asyncio.run(run())

        assert session.phase == Phase.ACCUMULATING
        assert session.refined_mask.empty
        assert not session.pending
        expected = overlay(rasterize([horizontal_stroke], 100, 80))
        assert np.array_equal(session.overlay.value, expected)
        assert not session.reject_refined_mask()

    def test_reset_clears_session(self, fast_config, sample_image, horizontal_stroke):
        from removalmask.models import Phase

        fast_config.session.debounce_ms = 10000

        async def run():
            session = make_session(fast_config, sample_image, FakeSegmentationProvider())
            session.start()
            session.add_stroke(horizontal_stroke)
            session.reset()
            await session.settle()
            return session

        session = asyncio.run(run())
        view = session.view()

        assert view.phase == Phase.IDLE
        assert view.stroke_count == 0
        assert view.overlay is None
        assert not view.can_undo
        assert session.rough_mask.empty

    def test_cancel_during_apply_discards_result(self, fast_config, sample_image, horizontal_stroke):
        from removalmask.models import Phase

        inpaint = BlockingInpaintProvider()

        async def run():
            inpaint.entered = asyncio.Event()
            inpaint.release = asyncio.Event()
            session = make_session(fast_config, sample_image, FakeSegmentationProvider(), inpaint)
            session.start()
            session.add_stroke(horizontal_stroke)

            await inpaint.entered.wait()
            assert session.phase == Phase.APPLYING
            session.cancel()
            inpaint.release.set()
            await asyncio.sleep(0.05)
            return session

        session = asyncio.run(run())

        assert session.phase == Phase.IDLE
        assert len(session.image_provider.history) == 1
        assert session.strokes == ()

    def test_stop_stops_providers(self, fast_config, sample_image):
        segmentation = FakeSegmentationProvider()
        inpaint = FakeInpaintProvider()
        session = make_session(fast_config, sample_image, segmentation, inpaint)

        session.start()
        assert segmentation.started and inpaint.started

        session.stop()
        assert not segmentation.started and not inpaint.started
        assert not session.started


class TestHistory:
    """Tests for stroke undo/redo."""

    def test_undo_redo(self, fast_config, sample_image, horizontal_stroke, vertical_stroke):
        from removalmask.models import Phase

        fast_config.session.debounce_ms = 10000

        async def run():
            session = make_session(fast_config, sample_image, FakeSegmentationProvider())
            session.start()
            session.add_stroke(horizontal_stroke)
            session.add_stroke(vertical_stroke)

            assert session.undo_stroke()
            assert session.strokes == (horizontal_stroke,)
            assert session.view().can_redo

            assert session.redo_stroke()
            assert session.strokes == (horizontal_stroke, vertical_stroke)
            assert not session.redo_stroke()

            session.undo_stroke()
            session.undo_stroke()
            assert session.strokes == ()
            assert session.phase == Phase.IDLE
            assert session.overlay.empty
            assert not session.undo_stroke()

            session.cancel()

        asyncio.run(run())

    def test_new_stroke_drops_redo(self, fast_config, sample_image, horizontal_stroke, vertical_stroke):
        fast_config.session.debounce_ms = 10000

        async def run():
            session = make_session(fast_config, sample_image, FakeSegmentationProvider())
            session.start()
            session.add_stroke(horizontal_stroke)
            session.undo_stroke()
            session.add_stroke(vertical_stroke)
            can_redo = session.view().can_redo
            strokes = session.strokes
            session.cancel()
            return can_redo, strokes

        can_redo, strokes = asyncio.run(run())

        assert not can_redo
        assert strokes == (vertical_stroke,)

    def test_history_limit(self, fast_config, sample_image):
        fast_config.session.debounce_ms = 10000
        fast_config.session.history_limit = 3
        strokes = [stroke_at(0.1 * (i + 1), 0.6) for i in range(5)]

        async def run():
            session = make_session(fast_config, sample_image, FakeSegmentationProvider())
            session.start()
            for stroke in strokes:
                session.add_stroke(stroke)

            undos = 0
            while session.undo_stroke():
                undos += 1
            remaining = session.strokes
            session.cancel()
            return undos, remaining

        undos, remaining = asyncio.run(run())

        assert undos == 2
        assert remaining == tuple(strokes[:3])


class TestFailures:
    """Tests for refinement and apply failures."""

    def test_apply_failure_keeps_strokes(self, fast_config, sample_image, horizontal_stroke):
        from removalmask.errors import ApplyFailure
        from removalmask.models import Phase

        inpaint = FakeInpaintProvider(error=RuntimeError("boom"))

        async def run():
            session = make_session(fast_config, sample_image, FakeSegmentationProvider(), inpaint)
            session.start()
            session.add_stroke(horizontal_stroke)
            await session.settle()
            return session

        session = asyncio.run(run())
        view = session.view()

        assert view.phase == Phase.ACCUMULATING
        assert "boom" in view.error
        assert view.stroke_count == 1
        assert view.can_accept
        assert isinstance(session.last_error, ApplyFailure)
        assert not session.pending
        assert len(session.image_provider.history) == 1

        session.dismiss_error()
        assert session.view().error is None

    def test_retry_after_apply_failure(self, fast_config, sample_image, horizontal_stroke):
        from removalmask.models import Phase

        inpaint = FakeInpaintProvider(error=RuntimeError("boom"))

        async def run():
            session = make_session(fast_config, sample_image, FakeSegmentationProvider(), inpaint)
            session.start()
            session.add_stroke(horizontal_stroke)
            await session.settle()

            inpaint.error = None
            assert session.accept_refined_mask()
            await session.settle()
            return session

        session = asyncio.run(run())

        assert session.phase == Phase.IDLE
        assert session.error is None
        assert len(session.image_provider.history) == 2

    def test_wrong_size_result_is_apply_failure(self, fast_config, sample_image, horizontal_stroke):
        from removalmask.models import Phase

        class Shrinking(FakeInpaintProvider):
            async def inpaint(self, image, mask):
                return image[:10, :10].copy()

        async def run():
            session = make_session(fast_config, sample_image, FakeSegmentationProvider(), Shrinking())
            session.start()
            session.add_stroke(horizontal_stroke)
            await session.settle()
            return session

        session = asyncio.run(run())

        assert session.phase == Phase.ACCUMULATING
        assert session.error is not None
        assert len(session.image_provider.history) == 1

    def test_segmentation_failure_warns_and_falls_back(self, fast_config, sample_image, horizontal_stroke):
        from removalmask.models import Phase
        from removalmask.raster.stroke_raster import rasterize
        from removalmask.refine.morphology import refine

        fast_config.session.auto_apply = False
        segmentation = FakeSegmentationProvider(error=RuntimeError("no model"))

        async def run():
            session = make_session(fast_config, sample_image, segmentation)
            session.start()
            session.add_stroke(horizontal_stroke)
            await session.settle()
            return session

        session = asyncio.run(run())
        view = session.view()

        assert view.phase == Phase.READY_TO_APPLY
        assert "Segmentation unavailable" in view.warning
        expected = refine(rasterize([horizontal_stroke], 100, 80), fast_config.refine)
        assert np.array_equal(session.refined_mask.value, expected)

    def test_fallback_without_morphology_keeps_rough_mask(self, fast_config, sample_image, horizontal_stroke):
        from removalmask.raster.stroke_raster import rasterize

        fast_config.session.auto_apply = False
        fast_config.session.fallback_to_morphology = False
        segmentation = FakeSegmentationProvider(error=RuntimeError("no model"))

        async def run():
            session = make_session(fast_config, sample_image, segmentation)
            session.start()
            session.add_stroke(horizontal_stroke)
            await session.settle()
            return session

        session = asyncio.run(run())

        expected = rasterize([horizontal_stroke], 100, 80)
        assert np.array_equal(session.refined_mask.value, expected)
        assert session.warning is not None

    def test_refiner_crash_returns_control(self, fast_config, sample_image, horizontal_stroke):
        from removalmask.models import Phase

        fast_config.session.strategy = "morphology"
        crash = OSError("disk full")

        async def run():
            session = make_session(fast_config, sample_image)
            session.start()
            working = session.refiner.refine

            async def broken(image, mask):
                raise crash

            session.refiner.refine = broken
            session.add_stroke(horizontal_stroke)
            await session.settle()

            view = session.view()
            assert view.phase == Phase.ACCUMULATING
            assert "disk full" in view.error
            assert session.last_error is crash
            assert view.can_manual_refine
            assert not session.pending

            session.refiner.refine = working
            assert session.manual_refine()
            await session.settle()
            return session

        session = asyncio.run(run())

        assert session.phase == Phase.IDLE
        assert len(session.image_provider.history) == 2

    def test_empty_refined_mask_is_not_applied(self, fast_config, sample_image):
        from removalmask.models import Phase, Stroke

        fast_config.session.strategy = "morphology"
        inpaint = FakeInpaintProvider()
        eraser = Stroke(points=[(0.2, 0.5), (0.6, 0.5)], brush_radius=3, is_eraser=True)

        async def run():
            session = make_session(fast_config, sample_image, inpaint=inpaint)
            session.start()
            session.add_stroke(eraser)
            await session.settle()
            return session

        session = asyncio.run(run())
        view = session.view()

        assert view.phase == Phase.READY_TO_APPLY
        assert "empty" in view.warning
        assert not view.can_accept
        assert not session.accept_refined_mask()
        assert inpaint.masks == []
        assert len(session.image_provider.history) == 1
        assert view.can_reject

    def test_reject_ignored_while_applying(self, fast_config, sample_image, horizontal_stroke):
        from removalmask.models import Phase

        inpaint = BlockingInpaintProvider()

        async def run():
            inpaint.entered = asyncio.Event()
            inpaint.release = asyncio.Event()
            session = make_session(fast_config, sample_image, FakeSegmentationProvider(), inpaint)
            session.start()
            session.add_stroke(horizontal_stroke)

            await inpaint.entered.wait()
            view = session.view()
            assert not view.can_reject and not view.can_accept
            assert not session.reject_refined_mask()
            assert not session.accept_refined_mask()
            assert session.phase == Phase.APPLYING
            assert session.pending

            inpaint.release.set()
            await session.settle()
            return session

        session = asyncio.run(run())

        assert session.phase == Phase.IDLE
        assert len(inpaint.masks) == 1
        assert len(session.image_provider.history) == 2


class TestDebugArtifacts:
    """Tests for session debug output."""

    def test_refined_preview_saved(self, fast_config, sample_image, horizontal_stroke, temp_dir):
        fast_config.debug.enabled = True
        fast_config.debug.out_dir = temp_dir
        fast_config.session.auto_apply = False

        async def run():
            session = make_session(fast_config, sample_image, FakeSegmentationProvider())
            session.start()
            session.add_stroke(horizontal_stroke)
            await session.settle()

        asyncio.run(run())

        preview_dir = os.path.join(temp_dir, "debug", "session", "session")
        files = os.listdir(preview_dir)
        assert len(files) == 1
        assert files[0].startswith("refined_") and files[0].endswith(".png")
