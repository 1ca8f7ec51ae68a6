"""
Tests for wizard.py.

Covers:
  - Finalizing is reached exactly once, after exactly N confirms
  - retake never changes the confirmed count; confirm adds exactly one
  - persist-before-advance: a failing save leaves Reviewing(i, d)
  - concurrent confirms on one draft append once
  - capture errors keep Idle(i); capture outside Idle is rejected
  - finalize: Done clears the session and drops the photos, errors keep them for retry
  - a bad provider setting is not reported as a missing key
  - cold start: resume policy
  - reset: back to Idle(0), credential untouched
"""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

import database as db
import session_store
from errors import (
    AcquisitionError,
    ConfigurationError,
    ExtractionError,
    MissingCredentialError,
    WizardStateError,
)
from imaging import ImagePayload
from session_store import PersistedSession
from wizard import CaptureWizard, Phase


class MemoryStore:
    """In-memory stand-in for session_store with the same async interface."""

    def __init__(self, initial: list[ImagePayload] | None = None, fail_save: bool = False):
        self.images = list(initial) if initial is not None else None
        self.fail_save = fail_save
        self.saves = 0
        self.clears = 0

    async def save(self, owner, images):
        if self.fail_save:
            raise OSError("disk full")
        self.saves += 1
        self.images = list(images)

    async def load(self, owner):
        if self.images is None:
            return None
        return PersistedSession(step_index=len(self.images), confirmed_images=list(self.images))

    async def clear(self, owner):
        self.clears += 1
        self.images = None


async def fake_normalize(raw: bytes) -> ImagePayload:
    if raw == b"bad":
        raise AcquisitionError("undecodable")
    return ImagePayload(mime_type="image/jpeg", data=raw)


def make_wizard(steps=2, store=None, finalizer=None, resume=True) -> CaptureWizard:
    return CaptureWizard(
        owner=1,
        finalizer=finalizer or AsyncMock(return_value="result"),
        steps=steps,
        store=store if store is not None else MemoryStore(),
        resume=resume,
        normalizer=fake_normalize,
    )


async def confirm_photo(wizard: CaptureWizard, raw: bytes):
    await wizard.capture(raw)
    return await wizard.confirm_current()


# ── Step progression ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestProgression:
    async def test_starts_idle_at_zero(self):
        wizard = make_wizard()
        st = await wizard.start_scan()
        assert st.phase is Phase.IDLE
        assert st.step_index == 0
        assert st.confirmed_images == []

    async def test_capture_moves_to_reviewing(self):
        wizard = make_wizard()
        st = await wizard.capture(b"front")
        assert st.phase is Phase.REVIEWING
        assert st.pending_draft.data == b"front"
        assert st.step_index == 0

    async def test_confirm_advances(self):
        wizard = make_wizard(steps=3)
        st = await confirm_photo(wizard, b"one")
        assert st.phase is Phase.IDLE
        assert st.step_index == 1
        assert st.pending_draft is None

    @pytest.mark.parametrize("steps", [1, 2, 3])
    async def test_finalizing_after_exactly_n_confirms(self, steps):
        wizard = make_wizard(steps=steps)
        phases = []
        for i in range(steps):
            st = await confirm_photo(wizard, f"img{i}".encode())
            phases.append(st.phase)
        assert phases.count(Phase.FINALIZING) == 1
        assert phases[-1] is Phase.FINALIZING
        assert len(wizard.state.confirmed_images) == steps

    async def test_images_kept_in_capture_order(self):
        wizard = make_wizard()
        await confirm_photo(wizard, b"front")
        await confirm_photo(wizard, b"back")
        assert [i.data for i in wizard.state.confirmed_images] == [b"front", b"back"]

    async def test_retake_keeps_confirmed_count(self):
        wizard = make_wizard(steps=3)
        await confirm_photo(wizard, b"one")
        await wizard.capture(b"blurry")
        st = await wizard.retake_current()
        assert st.phase is Phase.IDLE
        assert st.step_index == 1
        assert len(st.confirmed_images) == 1
        assert st.pending_draft is None

    async def test_retake_then_confirm_uses_new_photo(self):
        wizard = make_wizard()
        await wizard.capture(b"blurry")
        await wizard.retake_current()
        st = await confirm_photo(wizard, b"sharp")
        assert [i.data for i in st.confirmed_images] == [b"sharp"]

    async def test_confirm_outside_reviewing_is_noop(self):
        store = MemoryStore()
        wizard = make_wizard(store=store)
        st = await wizard.confirm_current()
        assert st.step_index == 0
        assert store.saves == 0

    async def test_retake_outside_reviewing_is_noop(self):
        wizard = make_wizard()
        await confirm_photo(wizard, b"one")
        st = await wizard.retake_current()
        assert st.step_index == 1
        assert st.phase is Phase.IDLE

    async def test_zero_steps_rejected(self):
        with pytest.raises(ValueError):
            make_wizard(steps=0)


# ── Capture errors ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestCapture:
    async def test_acquisition_error_keeps_idle(self):
        wizard = make_wizard()
        await confirm_photo(wizard, b"one")
        with pytest.raises(AcquisitionError):
            await wizard.capture(b"bad")
        st = wizard.state
        assert st.phase is Phase.IDLE
        assert st.step_index == 1
        assert st.pending_draft is None

    async def test_capture_while_reviewing_rejected(self):
        wizard = make_wizard()
        await wizard.capture(b"one")
        with pytest.raises(WizardStateError):
            await wizard.capture(b"two")
        assert wizard.state.pending_draft.data == b"one"

    async def test_capture_while_finalizing_rejected(self):
        wizard = make_wizard(steps=1)
        await confirm_photo(wizard, b"one")
        with pytest.raises(WizardStateError):
            await wizard.capture(b"two")


# ── Persistence ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestPersistence:
    async def test_each_confirm_persists_sequence(self):
        store = MemoryStore()
        wizard = make_wizard(steps=3, store=store)
        await confirm_photo(wizard, b"one")
        assert [i.data for i in store.images] == [b"one"]
        await confirm_photo(wizard, b"two")
        assert [i.data for i in store.images] == [b"one", b"two"]

    async def test_save_failure_keeps_reviewing(self):
        store = MemoryStore(fail_save=True)
        wizard = make_wizard(store=store)
        await wizard.capture(b"one")
        with pytest.raises(OSError):
            await wizard.confirm_current()
        st = wizard.state
        assert st.phase is Phase.REVIEWING
        assert st.step_index == 0
        assert st.confirmed_images == []
        assert st.pending_draft.data == b"one"

    async def test_save_happens_before_advance(self):
        observed = []

        class SpyStore(MemoryStore):
            async def save(self, owner, images):
                observed.append((len(images), wizard.state.step_index))
                await super().save(owner, images)

        wizard = make_wizard(store=SpyStore())
        await confirm_photo(wizard, b"one")
        # store saw one image while the in-memory index was still 0
        assert observed == [(1, 0)]

    async def test_concurrent_confirms_append_once(self):
        store = MemoryStore()
        wizard = make_wizard(steps=3, store=store)
        await wizard.capture(b"one")
        results = await asyncio.gather(*(wizard.confirm_current() for _ in range(5)))
        assert wizard.state.step_index == 1
        assert len(wizard.state.confirmed_images) == 1
        assert store.saves == 1
        assert all(r.step_index == 1 for r in results)


# ── Finalization ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestFinalize:
    async def test_success_moves_to_done_and_clears(self):
        store = MemoryStore()
        finalizer = AsyncMock(return_value={"name": "Panadol"})
        wizard = make_wizard(store=store, finalizer=finalizer)
        await confirm_photo(wizard, b"front")
        await confirm_photo(wizard, b"back")
        st = await wizard.finalize()
        assert st.phase is Phase.DONE
        assert st.result == {"name": "Panadol"}
        assert store.images is None
        assert st.confirmed_images == []
        images = finalizer.await_args.args[0]
        assert [i.data for i in images] == [b"front", b"back"]

    async def test_finalize_only_from_finalizing(self):
        wizard = make_wizard()
        with pytest.raises(WizardStateError):
            await wizard.finalize()

    async def test_extraction_error_keeps_session(self):
        store = MemoryStore()
        wizard = make_wizard(steps=1, store=store, finalizer=AsyncMock(side_effect=ExtractionError("boom")))
        await confirm_photo(wizard, b"one")
        st = await wizard.finalize()
        assert st.phase is Phase.ERROR
        assert st.error == "boom"
        assert not st.needs_credential
        assert store.images is not None

    async def test_missing_credential_flagged(self):
        wizard = make_wizard(steps=1, finalizer=AsyncMock(side_effect=MissingCredentialError("no key")))
        await confirm_photo(wizard, b"one")
        st = await wizard.finalize()
        assert st.phase is Phase.ERROR
        assert st.needs_credential
        assert not st.misconfigured

    async def test_bad_provider_setting_not_blamed_on_key(self):
        wizard = make_wizard(
            steps=1,
            finalizer=AsyncMock(side_effect=ConfigurationError("Unknown EXTRACTION_PROVIDER 'watson'")),
        )
        await confirm_photo(wizard, b"one")
        st = await wizard.finalize()
        assert st.phase is Phase.ERROR
        assert st.misconfigured
        assert not st.needs_credential
        assert "watson" in st.error

    async def test_unexpected_error_becomes_error_state(self):
        wizard = make_wizard(steps=1, finalizer=AsyncMock(side_effect=KeyError("x")))
        await confirm_photo(wizard, b"one")
        st = await wizard.finalize()
        assert st.phase is Phase.ERROR
        assert st.error

    async def test_retry_after_error(self):
        finalizer = AsyncMock(side_effect=[MissingCredentialError("no key"), "result"])
        wizard = make_wizard(steps=1, finalizer=finalizer)
        await confirm_photo(wizard, b"one")
        await wizard.finalize()
        st = await wizard.retry_finalization()
        assert st.phase is Phase.FINALIZING
        assert st.error is None
        st = await wizard.finalize()
        assert st.phase is Phase.DONE
        assert finalizer.await_count == 2

    async def test_retry_outside_error_rejected(self):
        wizard = make_wizard()
        with pytest.raises(WizardStateError):
            await wizard.retry_finalization()

    async def test_start_after_done_begins_new_scan(self):
        wizard = make_wizard(steps=1)
        await confirm_photo(wizard, b"one")
        await wizard.finalize()
        st = await wizard.start_scan()
        assert st.phase is Phase.IDLE
        assert st.step_index == 0
        assert st.result is None


# ── Cold start ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestColdStart:
    async def test_resumes_persisted_progress(self):
        front = ImagePayload("image/jpeg", b"front")
        wizard = make_wizard(steps=2, store=MemoryStore([front]))
        st = await wizard.start_scan()
        assert wizard.resumed
        assert st.step_index == 1
        assert st.confirmed_images == [front]

    async def test_resume_disabled_starts_fresh(self):
        store = MemoryStore([ImagePayload("image/jpeg", b"front")])
        wizard = make_wizard(steps=2, store=store, resume=False)
        st = await wizard.start_scan()
        assert st.step_index == 0
        assert not wizard.resumed
        assert store.images is None

    async def test_complete_stale_session_discarded(self):
        images = [ImagePayload("image/jpeg", b"a"), ImagePayload("image/jpeg", b"b")]
        store = MemoryStore(images)
        wizard = make_wizard(steps=2, store=store)
        st = await wizard.start_scan()
        assert st.step_index == 0
        assert store.images is None

    async def test_load_failure_starts_fresh(self):
        store = MemoryStore()
        store.load = AsyncMock(side_effect=OSError("locked"))
        wizard = make_wizard(store=store)
        st = await wizard.start_scan()
        assert st.phase is Phase.IDLE
        assert st.step_index == 0

    async def test_capture_triggers_cold_start(self):
        front = ImagePayload("image/jpeg", b"front")
        wizard = make_wizard(steps=2, store=MemoryStore([front]))
        st = await wizard.capture(b"back")
        assert st.step_index == 1
        assert st.phase is Phase.REVIEWING

    async def test_start_twice_keeps_progress(self):
        wizard = make_wizard(steps=3)
        await wizard.start_scan()
        await confirm_photo(wizard, b"one")
        st = await wizard.start_scan()
        assert st.step_index == 1


# ── Reset ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestReset:
    async def test_reset_returns_to_step_zero(self):
        store = MemoryStore()
        wizard = make_wizard(steps=3, store=store)
        await confirm_photo(wizard, b"one")
        await wizard.capture(b"two")
        st = await wizard.reset_session()
        assert st.phase is Phase.IDLE
        assert st.step_index == 0
        assert st.confirmed_images == []
        assert st.pending_draft is None
        assert store.images is None

    async def test_reset_while_finalizing_rejected(self):
        wizard = make_wizard(steps=1)
        await confirm_photo(wizard, b"one")
        with pytest.raises(WizardStateError):
            await wizard.reset_session()


# ── Against the real store ─────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def real_db(tmp_data_dir):
    await db.init_db()


@pytest.mark.asyncio
class TestWithSessionStore:
    async def test_restart_resumes_from_database(self, real_db):
        first = CaptureWizard(5, AsyncMock(), steps=2, resume=True, normalizer=fake_normalize)
        await confirm_photo(first, b"front")

        # new process, same user
        second = CaptureWizard(5, AsyncMock(), steps=2, resume=True, normalizer=fake_normalize)
        st = await second.start_scan()
        assert st.step_index == 1
        assert st.confirmed_images[0].data == b"front"

    async def test_reset_keeps_credential(self, real_db):
        await db.kv_put("5", "extraction_api_key", "AIza-keep")
        wizard = CaptureWizard(5, AsyncMock(), steps=2, resume=True, normalizer=fake_normalize)
        await confirm_photo(wizard, b"front")
        await wizard.reset_session()
        assert await session_store.load(5) is None
        assert await db.kv_get("5", "extraction_api_key") == "AIza-keep"
