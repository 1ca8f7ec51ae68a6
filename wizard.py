"""
wizard.py — the capture → review → confirm → repeat → finalize flow.

Phases (step i is 0-based, N = number of required photos):

  Idle(i) ──capture ok──▶ Reviewing(i, draft)
  Idle(i) ──capture fails─▶ Idle(i)            (AcquisitionError re-raised)
  Reviewing(i, d) ──retake──▶ Idle(i)          (draft discarded)
  Reviewing(i, d) ──confirm─▶ Idle(i+1)        if i+1 < N
                             ▶ Finalizing       if i+1 == N
  Finalizing ──finalize ok───▶ Done(result)     (photos dropped, persisted session cleared)
  Finalizing ──finalize fails▶ Error(message)   (persisted session kept)
  Error ──retry_finalization─▶ Finalizing       (all N photos still held)
  any but Finalizing ──reset─▶ Idle(0)          (session cleared, API key untouched)

On confirm the new image sequence is written to the store *before* the
in-memory step index moves, so the persisted sequence is always the source of
truth for how far the user got.

One wizard per user. Every transition runs under the wizard's asyncio.Lock,
so a double-tapped Confirm button appends exactly once: the second call sees
the phase has already moved on and is a no-op.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import config
import imaging
import session_store
from errors import ConfigurationError, ExtractionError, MissingCredentialError, WizardStateError
from imaging import ImagePayload

logger = logging.getLogger(__name__)

Finalizer = Callable[[list[ImagePayload]], Awaitable[Any]]
Normalizer = Callable[[bytes], Awaitable[ImagePayload]]


class Phase(str, Enum):
    IDLE = "idle"
    REVIEWING = "reviewing"
    FINALIZING = "finalizing"
    DONE = "done"
    ERROR = "error"


@dataclass
class WizardState:
    step_index: int = 0
    confirmed_images: list[ImagePayload] = field(default_factory=list)
    pending_draft: Optional[ImagePayload] = None
    phase: Phase = Phase.IDLE
    result: Any = None                  # set in Done
    error: Optional[str] = None         # set in Error
    needs_credential: bool = False      # Error caused by a missing API key
    misconfigured: bool = False         # Error caused by a bad deployment setting


class CaptureWizard:

    def __init__(
        self,
        owner: int,
        finalizer: Finalizer,
        steps: Optional[int] = None,
        store=None,
        resume: Optional[bool] = None,
        normalizer: Optional[Normalizer] = None,
    ) -> None:
        self.owner = owner
        self.steps = config.SCAN_STEPS if steps is None else steps
        if self.steps < 1:
            raise ValueError("A scan needs at least one step")
        self._finalizer = finalizer
        self._store = store if store is not None else session_store
        self._resume = config.RESUME_SESSIONS if resume is None else resume
        self._normalize = normalizer or imaging.normalize_async
        self._lock = asyncio.Lock()
        self._state = WizardState()
        self._started = False
        # True when start_scan() picked up photos from a previous run
        self.resumed = False

    @property
    def state(self) -> WizardState:
        return self._state

    @property
    def phase(self) -> Phase:
        return self._state.phase

    # ── Public operations ─────────────────────────────────────────────────────

    async def start_scan(self) -> WizardState:
        """
        Cold start on first call (restore or discard a persisted session per
        RESUME_SESSIONS). On a finished wizard it starts a new scan; otherwise
        it just returns the current state.
        """
        async with self._lock:
            if self._state.phase in (Phase.DONE, Phase.ERROR):
                await self._reset_locked()
            elif not self._started:
                await self._cold_start_locked()
            return self._state

    async def capture(self, source: bytes) -> WizardState:
        """Normalise a photo for the current step and hold it for review."""
        async with self._lock:
            if not self._started:
                await self._cold_start_locked()
            st = self._state
            if st.phase is not Phase.IDLE:
                raise WizardStateError(f"Cannot take a photo while {st.phase.value}")

            # AcquisitionError propagates with the state untouched (still Idle(i))
            draft = await self._normalize(source)

            st.pending_draft = draft
            st.phase = Phase.REVIEWING
            logger.info(
                "[wizard %s] step %d/%d drafted (%.0f KB)",
                self.owner, st.step_index + 1, self.steps, draft.size_kb,
            )
            return st

    async def retake_current(self) -> WizardState:
        async with self._lock:
            st = self._state
            if st.phase is not Phase.REVIEWING:
                logger.debug("[wizard %s] retake ignored in %s", self.owner, st.phase.value)
                return st
            st.pending_draft = None
            st.phase = Phase.IDLE
            return st

    async def confirm_current(self) -> WizardState:
        """
        Append the draft, persist, then advance. A persist failure re-raises
        and leaves the wizard in Reviewing with the draft intact.
        """
        async with self._lock:
            st = self._state
            if st.phase is not Phase.REVIEWING or st.pending_draft is None:
                logger.debug("[wizard %s] confirm ignored in %s", self.owner, st.phase.value)
                return st

            images = [*st.confirmed_images, st.pending_draft]
            await self._store.save(self.owner, images)

            st.confirmed_images = images
            st.pending_draft = None
            st.step_index = len(images)
            st.phase = Phase.IDLE if st.step_index < self.steps else Phase.FINALIZING
            logger.info(
                "[wizard %s] step %d/%d confirmed → %s",
                self.owner, st.step_index, self.steps, st.phase.value,
            )
            return st

    async def finalize(self) -> WizardState:
        """Run the finalizer on all confirmed photos. Only valid in Finalizing."""
        async with self._lock:
            st = self._state
            if st.phase is not Phase.FINALIZING:
                raise WizardStateError(f"Nothing to finalize while {st.phase.value}")

            try:
                result = await self._finalizer(list(st.confirmed_images))
            except MissingCredentialError as exc:
                logger.info("[wizard %s] finalization blocked: %s", self.owner, exc)
                self._fail(str(exc), needs_credential=True)
                return st
            except ConfigurationError as exc:
                logger.error("[wizard %s] misconfigured: %s", self.owner, exc)
                self._fail(str(exc), misconfigured=True)
                return st
            except ExtractionError as exc:
                logger.warning("[wizard %s] extraction failed: %s", self.owner, exc)
                self._fail(str(exc))
                return st
            except Exception as exc:
                logger.exception("[wizard %s] finalization crashed: %s", self.owner, exc)
                self._fail("Unexpected error while analysing the photos.")
                return st

            st.result = result
            st.confirmed_images = []
            st.step_index = 0
            st.phase = Phase.DONE
            await self._clear_persisted()
            return st

    async def retry_finalization(self) -> WizardState:
        """Error → Finalizing, reusing the photos already confirmed."""
        async with self._lock:
            st = self._state
            if st.phase is not Phase.ERROR or len(st.confirmed_images) < self.steps:
                raise WizardStateError("No completed scan to retry")
            st.error = None
            st.needs_credential = False
            st.misconfigured = False
            st.phase = Phase.FINALIZING
            return st

    async def reset_session(self) -> WizardState:
        async with self._lock:
            if self._state.phase is Phase.FINALIZING:
                raise WizardStateError("Analysis in progress")
            await self._reset_locked()
            return self._state

    # ── Internals (caller holds the lock) ─────────────────────────────────────

    async def _cold_start_locked(self) -> None:
        self._started = True
        self.resumed = False
        try:
            persisted = await self._store.load(self.owner)
        except Exception as exc:
            logger.warning("[wizard %s] could not load saved session: %s", self.owner, exc)
            persisted = None

        if (
            persisted is not None
            and self._resume
            and 0 <= persisted.step_index < self.steps
        ):
            self._state = WizardState(
                step_index=persisted.step_index,
                confirmed_images=list(persisted.confirmed_images),
            )
            self.resumed = persisted.step_index > 0
            if self.resumed:
                logger.info(
                    "[wizard %s] resumed at step %d/%d",
                    self.owner, persisted.step_index + 1, self.steps,
                )
            return

        self._state = WizardState()
        if persisted is not None:
            await self._clear_persisted()

    async def _reset_locked(self) -> None:
        self._started = True
        self.resumed = False
        self._state = WizardState()
        await self._clear_persisted()

    def _fail(self, message: str, needs_credential: bool = False, misconfigured: bool = False) -> None:
        st = self._state
        st.phase = Phase.ERROR
        st.error = message
        st.needs_credential = needs_credential
        st.misconfigured = misconfigured

    async def _clear_persisted(self) -> None:
        try:
            await self._store.clear(self.owner)
        except Exception as exc:
            logger.warning("[wizard %s] could not clear saved session: %s", self.owner, exc)
