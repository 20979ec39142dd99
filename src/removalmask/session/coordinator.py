"""
Debounced refine/apply coordination for an object-removal session.

The coordinator is the only writer of session state. Strokes are
rasterized immediately for live feedback; refinement waits until the user
pauses for the debounce delay, and (with auto-apply) the refined mask goes
straight to the inpainting provider. Any new input cancels whatever is
pending, so the last stroke set always decides the applied mask.

Phases: IDLE -> ACCUMULATING -> REFINING -> READY_TO_APPLY -> APPLYING -> IDLE
"""

import asyncio
from dataclasses import asdict

import numpy as np

from removalmask.config import RemovalConfig
from removalmask.errors import ApplyFailure, CancelledOperation
from removalmask.io.save_artifacts import DebugArtifactWriter
from removalmask.models import Phase, SessionView
from removalmask.preview.overlay import overlay_from_config
from removalmask.raster.stroke_raster import rasterize
from removalmask.refine.strategy import MaskRefiner, RefinementStrategy
from removalmask.segmentation.snap import SegmentationSnapAdapter
from removalmask.session.buffers import MaskSlot
from removalmask.session.cancellation import CancellationToken, Operation
from removalmask.tracer import configure_tracer, get_tracer
from removalmask.validate.rules import run_mask_validation


class DebounceCoordinator:
    """
    Session state machine for the object-removal tool.

    Commands (add_stroke, manual_refine, accept_refined_mask, ...) are plain
    methods meant to be called from the event loop thread; they schedule
    asynchronous work and return immediately. Listeners registered with
    subscribe() receive a SessionView after every state change.
    """

    def __init__(self, image_provider, inpaint_provider, segmentation_provider=None,
                 config=None, session_id="session"):
        self.config = config or RemovalConfig()
        self.image_provider = image_provider
        self.inpaint_provider = inpaint_provider
        self.segmentation_provider = segmentation_provider
        self.session_id = session_id

        self.debug_writer = DebugArtifactWriter.from_config(self.config.debug, session_id)
        self.refiner = self._build_refiner()

        self.phase = Phase.IDLE
        self.warning = None
        self.error = None
        self.last_error = None

        self.rough_mask = MaskSlot("rough")
        self.refined_mask = MaskSlot("refined")
        self.overlay = MaskSlot("overlay")

        self._strokes = ()
        self._history = [()]
        self._history_index = 0
        self._operation = None
        self._listeners = []
        self._started = False

    def _build_refiner(self):
        session_cfg = self.config.session
        strategy = RefinementStrategy(session_cfg.strategy)
        snap_adapter = None

        if self.segmentation_provider is not None:
            snap_adapter = SegmentationSnapAdapter(self.segmentation_provider, self.config.snap)
        elif strategy != RefinementStrategy.MORPHOLOGY:
            get_tracer().event(
                f"No segmentation provider, strategy {strategy.value} -> morphology",
                level="WARN",
            )
            strategy = RefinementStrategy.MORPHOLOGY

        return MaskRefiner(
            strategy,
            self.config.refine,
            snap_adapter=snap_adapter,
            fallback_to_morphology=session_cfg.fallback_to_morphology,
            debug_writer=self.debug_writer,
        )

    # lifecycle

    def start(self):
        """Start the providers and open a fresh session."""
        if self._started:
            return
        if self.config.tracing.enabled:
            configure_tracer(**asdict(self.config.tracing))
        if self.segmentation_provider is not None:
            self.segmentation_provider.start()
        self.inpaint_provider.start()
        self._started = True
        get_tracer().event(f"Session {self.session_id} started strategy={self.refiner.strategy.value}")
        self._notify()

    def stop(self):
        """Discard the session and stop the providers."""
        if not self._started:
            return
        self.cancel()
        self._started = False
        if self.segmentation_provider is not None:
            self.segmentation_provider.stop()
        self.inpaint_provider.stop()
        get_tracer().event(f"Session {self.session_id} stopped")

    @property
    def started(self):
        return self._started

    def subscribe(self, listener):
        """Register a callable receiving a SessionView on every change."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def settle(self):
        """Wait until no timer, refinement or apply is pending."""
        while self._operation is not None and not self._operation.done:
            await asyncio.gather(self._operation.task, return_exceptions=True)

    # state

    @property
    def strokes(self):
        return self._strokes

    @property
    def pending(self):
        return self._operation is not None and not self._operation.done

    def view(self):
        """Build the SessionView for the current state."""
        open_phase = self.phase in (Phase.READY_TO_APPLY, Phase.ACCUMULATING)

        return SessionView(
            phase=self.phase,
            overlay=self.overlay.value,
            can_manual_refine=bool(self._strokes) and open_phase,
            can_accept=self._resolvable(),
            can_reject=open_phase and not self.refined_mask.empty,
            can_undo=self._history_index > 0,
            can_redo=self._history_index < len(self._history) - 1,
            stroke_count=len(self._strokes),
            warning=self.warning,
            error=self.error,
        )

    def _resolvable(self):
        """A refined mask with foreground exists and no apply is running."""
        mask = self.refined_mask.value
        if mask is None or not np.any(mask):
            return False
        return self.phase in (Phase.READY_TO_APPLY, Phase.ACCUMULATING)

    def _notify(self):
        view = self.view()
        for listener in list(self._listeners):
            listener(view)

    def _transition(self, phase):
        if phase != self.phase:
            get_tracer().event(f"Phase {self.phase.value} -> {phase.value}")
        self.phase = phase
        self._notify()

    def _require_started(self):
        if not self._started:
            raise RuntimeError("DebounceCoordinator.start() must be called before issuing commands")

    # commands

    def add_stroke(self, stroke):
        """Record a stroke, refresh the rough preview and re-arm the debounce timer."""
        self._require_started()
        self._supersede()

        strokes = self._strokes + (stroke,)
        self._record_history(strokes)
        self._set_strokes(strokes)
        self.warning = None

        self._transition(Phase.ACCUMULATING)
        self._launch("debounce", self._debounced_refine)

    def manual_refine(self):
        """Refine immediately, skipping the debounce delay."""
        self._require_started()
        if not self._strokes:
            return False

        self._supersede()
        self._transition(Phase.REFINING)
        self._launch("refine", self._refine)
        return True

    def accept_refined_mask(self):
        """Apply the current refined mask now."""
        self._require_started()
        if not self._resolvable():
            return False

        self._supersede()
        mask = self.refined_mask.value
        self._transition(Phase.APPLYING)
        self._launch("apply", self._apply, mask)
        return True

    def reject_refined_mask(self):
        """Drop the refined mask and go back to the stroke preview."""
        self._require_started()
        if self.refined_mask.empty or self.phase not in (Phase.READY_TO_APPLY, Phase.ACCUMULATING):
            return False

        self._supersede()
        self.refined_mask.release()
        self._show(self.rough_mask.value)
        self._transition(Phase.ACCUMULATING if self._strokes else Phase.IDLE)
        return True

    def undo_stroke(self):
        """Step back one entry in the stroke history."""
        self._require_started()
        if self._history_index <= 0:
            return False
        self._history_index -= 1
        self._restore_history()
        return True

    def redo_stroke(self):
        """Step forward one entry in the stroke history."""
        self._require_started()
        if self._history_index >= len(self._history) - 1:
            return False
        self._history_index += 1
        self._restore_history()
        return True

    def reset(self):
        """Clear strokes and masks and start over within the session."""
        self._require_started()
        self._supersede()
        self._clear_session()
        self._transition(Phase.IDLE)

    def cancel(self):
        """Discard all pending work and session buffers without committing."""
        self._supersede()
        self._clear_session()
        self.error = None
        self.last_error = None
        self._transition(Phase.IDLE)

    def dismiss_error(self):
        self.error = None
        self._notify()

    # helpers

    def _supersede(self):
        if self._operation is not None:
            if not self._operation.done:
                get_tracer().event(f"Superseding {self._operation.token!r}", level="DEBUG")
            self._operation.cancel()
            self._operation = None

    def _launch(self, name, func, *args):
        token = CancellationToken(name)
        task = asyncio.get_running_loop().create_task(self._guard(func(token, *args), token))
        self._operation = Operation(token, task)

    async def _guard(self, coro, token):
        try:
            await coro
        except CancelledOperation:
            get_tracer().event(f"Discarded result of {token!r}", level="DEBUG")
        except asyncio.CancelledError:
            get_tracer().event(f"Cancelled {token!r}", level="DEBUG")
            raise
        except Exception as e:
            if token.cancelled:
                return
            self._fail_operation(token, e)

    def _record_history(self, strokes):
        del self._history[self._history_index + 1:]
        self._history.append(strokes)
        self._history_index = len(self._history) - 1

        limit = max(1, self.config.session.history_limit)
        while len(self._history) > limit:
            self._history.pop(0)
            self._history_index -= 1

    def _restore_history(self):
        self._supersede()
        self._set_strokes(self._history[self._history_index])
        self.warning = None

        if self._strokes:
            self._transition(Phase.ACCUMULATING)
            self._launch("debounce", self._debounced_refine)
        else:
            self._transition(Phase.IDLE)

    def _set_strokes(self, strokes):
        """Install a new stroke set and rebuild the rough mask and overlay."""
        self._strokes = strokes
        self.refined_mask.release()

        if not strokes:
            self.rough_mask.release()
            self.overlay.release()
            return

        rough = rasterize(strokes, self.image_provider.width, self.image_provider.height)
        self.rough_mask.replace(rough)
        self._show(rough)

    def _show(self, mask):
        if mask is None:
            self.overlay.release()
        else:
            self.overlay.replace(overlay_from_config(mask, self.config.preview))

    def _clear_session(self):
        self._strokes = ()
        self._history = [()]
        self._history_index = 0
        self.rough_mask.release()
        self.refined_mask.release()
        self.overlay.release()
        self.warning = None

    # operations

    async def _debounced_refine(self, token):
        await asyncio.sleep(self.config.session.debounce_ms / 1000.0)
        token.raise_if_cancelled()
        await self._refine(token)

    async def _refine(self, token):
        tracer = get_tracer()
        rough = self.rough_mask.value
        if rough is None:
            return
        image = self.image_provider.image

        if self.phase != Phase.REFINING:
            self._transition(Phase.REFINING)

        with tracer.span("refine_session_mask", module="coordinator", strokes=len(self._strokes)):
            outcome = await self.refiner.refine(image, rough)
        token.raise_if_cancelled()

        refined = outcome.mask
        warning = outcome.warning

        report = run_mask_validation(
            refined,
            self.image_provider.width,
            self.image_provider.height,
            rough_mask=rough,
            margin=self.config.snap.bbox_margin,
        )
        if report.has_errors:
            failed = ", ".join(c.rule_id for c in report.checks if not c.passed)
            warning = f"Refined mask rejected ({failed}), using stroke mask"
            tracer.event(warning, level="WARN")
            refined = rough

        if not np.any(refined):
            warning = "Refined mask is empty, nothing to remove"
            tracer.event(warning, level="WARN")

        self.refined_mask.replace(refined)
        self._show(refined)
        self.warning = warning

        if self.debug_writer:
            self.debug_writer.save_preview(
                image, refined, "session", f"refined_{token.generation:04d}.png",
                color=self.config.preview.color, alpha=self.config.preview.alpha,
            )

        self._transition(Phase.READY_TO_APPLY)

        if not self.config.session.auto_apply or not np.any(refined):
            return

        delay = self.config.session.auto_apply_delay_ms
        if delay > 0:
            await asyncio.sleep(delay / 1000.0)
            token.raise_if_cancelled()

        self._transition(Phase.APPLYING)
        await self._apply(token, refined)

    async def _apply(self, token, mask):
        tracer = get_tracer()
        image = self.image_provider.image

        if self.phase != Phase.APPLYING:
            self._transition(Phase.APPLYING)

        try:
            with tracer.span("apply", module="coordinator"):
                result = await self.inpaint_provider.inpaint(image, mask)
            token.raise_if_cancelled()
            self.image_provider.commit(result)
        except (CancelledOperation, asyncio.CancelledError):
            raise
        except Exception as e:
            token.raise_if_cancelled()
            self._fail_apply(e)
            return

        self._clear_session()
        self.error = None
        self.last_error = None
        self._transition(Phase.IDLE)

    def _fail_apply(self, exc):
        failure = exc if isinstance(exc, ApplyFailure) else ApplyFailure(str(exc) or type(exc).__name__)
        if failure is not exc:
            failure.__cause__ = exc

        self.last_error = failure
        self.error = f"Failed to remove object: {failure}"
        get_tracer().event(self.error, level="WARN")
        self._transition(Phase.ACCUMULATING)

    def _fail_operation(self, token, exc):
        """Surface an unexpected failure and hand control back to the user."""
        self.last_error = exc
        if token.name == "apply":
            self.error = f"Failed to remove object: {exc}"
        else:
            self.error = f"Failed to refine mask: {exc}"
        get_tracer().event(f"{token!r} failed: {exc!r}", level="ERROR")
        self._transition(Phase.ACCUMULATING if self._strokes else Phase.IDLE)
