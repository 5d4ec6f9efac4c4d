"""Tests for SessionStore and the SessionController turn pipeline (mocked LLM)."""
import asyncio

import pytest

from storyteller.engine.session import Session, SessionController, SessionStore
from storyteller.nlg.prompt_composer import PromptRequest
from storyteller.utils.errors import GenerationFailed, InternalStateError

from conftest import IMAGE_URL, content_policy_error

LIGHTHOUSE = PromptRequest(prompt="a lonely lighthouse", tone="dark", genre="mystery")


def _stream(controller, session, request=LIGHTHOUSE):
    async def collect():
        return [r async for r in controller.stream_turn(session, request)]

    return asyncio.run(collect())


def _atomic(controller, session, request=LIGHTHOUSE):
    return asyncio.run(controller.run_turn(session, request))


# ── SessionStore ────────────────────────────────────────────────────

class TestSessionStore:
    def test_create_on_first_request(self):
        store = SessionStore(ttl_seconds=60)
        session = store.get_or_create(None)
        assert session.session_id in store
        assert len(session.log) == 1

    def test_known_id_reused_unknown_id_replaced(self):
        store = SessionStore(ttl_seconds=60)
        first = store.get_or_create(None)
        assert store.get_or_create(first.session_id) is first
        other = store.get_or_create("made-up")
        assert other is not first and other.session_id != "made-up"

    def test_expire_after_inactivity(self):
        now = [1000.0]
        store = SessionStore(ttl_seconds=60, clock=lambda: now[0])
        old = store.get_or_create(None)
        now[0] += 30
        fresh = store.get_or_create(None)
        now[0] += 45
        assert store.purge_expired() == 1
        assert old.session_id not in store
        assert fresh.session_id in store

    def test_access_refreshes_session(self):
        now = [0.0]
        store = SessionStore(ttl_seconds=60, clock=lambda: now[0])
        session = store.get_or_create(None)
        now[0] = 50
        store.get_or_create(session.session_id)
        now[0] = 100
        assert store.get_or_create(session.session_id) is session

    def test_controller_keeps_the_given_store(self):
        store = SessionStore(ttl_seconds=0)
        assert len(store) == 0
        assert SessionController(store=store).store is store

    def test_sessions_are_isolated(self, controller):
        a = controller.store.get_or_create(None)
        b = controller.store.get_or_create(None)
        _atomic(controller, a)
        assert len(a.log) == 3
        assert len(b.log) == 1


# ── Turn pipeline ───────────────────────────────────────────────────

class TestTurns:
    @pytest.mark.parametrize("n", [1, 2, 4])
    def test_log_grows_two_per_turn(self, controller, n):
        session = Session("s")
        for _ in range(n):
            _stream(controller, session)
        assert len(session.log) == 1 + 2 * n

    def test_stream_records_order(self, controller):
        records = _stream(controller, Session("s"))
        assert [r.story for r in records[:-1]] == ["Chapter 1", " continues."]
        assert records[-1].image == IMAGE_URL

    def test_atomic_result(self, controller):
        result = _atomic(controller, Session("s"))
        assert result.story == "Chapter 1 continues."
        assert result.as_records() == [{"story": "Chapter 1 continues."}, {"image": IMAGE_URL}]

    def test_user_turn_sent_with_the_completion(self, controller, fake_llm):
        session = Session("s")
        _stream(controller, session)
        _stream(controller, session, PromptRequest(prompt="the keeper returns"))
        first, second = fake_llm.messages
        assert first[-1]["role"] == "user"
        assert first[-1]["content"].startswith("Give the beginning of a dark mystery story")
        assert second[-1]["content"].startswith('Continue the story about "the keeper returns"')
        assert [m["role"] for m in second] == ["system", "user", "assistant", "user"]

    def test_assistant_turn_committed_before_illustration(self, controller, fake_llm):
        session = Session("s")
        seen = []
        fake_llm.on_image = lambda: seen.append(len(session.log))
        _stream(controller, session)
        assert seen == [3]
        assert fake_llm.image_prompts == ["Draw: Chapter 1 continues."]

    def test_undo_then_continue_offsets_one_exchange(self, controller):
        session = Session("s")
        _stream(controller, session)
        controller.undo(session)
        _stream(controller, session)
        assert len(session.log) == 3

    def test_undo_on_fresh_session(self, controller):
        session = Session("s")
        assert controller.undo(session) is False
        assert len(session.log) == 1

    def test_reset(self, controller):
        session = Session("s")
        for _ in range(3):
            _atomic(controller, session)
        controller.reset(session)
        assert len(session.log) == 1
        assert session.log.turns[0].role.value == "system"


# ── Failures ────────────────────────────────────────────────────────

class TestFailures:
    def test_text_failure_leaves_log_untouched(self, controller, fake_llm):
        session = Session("s")
        _atomic(controller, session)
        fake_llm.text_error = GenerationFailed("down")
        with pytest.raises(GenerationFailed):
            _atomic(controller, session)
        assert len(session.log) == 3

    def test_stream_failure_midway_discards_exchange(self, controller, fake_llm):
        session = Session("s")
        fake_llm.text_error = GenerationFailed("cut off")
        fake_llm.fail_after = 1
        with pytest.raises(GenerationFailed):
            _stream(controller, session)
        assert len(session.log) == 1
        assert session.log.pending_exchange is None

    def test_abandoned_stream_discards_exchange(self, controller):
        session = Session("s")

        async def first_record_only():
            records = controller.stream_turn(session, LIGHTHOUSE)
            first = await records.__anext__()
            await records.aclose()
            return first

        assert asyncio.run(first_record_only()).story == "Chapter 1"
        assert len(session.log) == 1
        assert not session.lock.locked()

    def test_disconnect_during_illustration_keeps_text(self, controller, fake_llm):
        session = Session("s")

        async def scenario():
            illustrating = asyncio.Event()

            async def slow_image(prompt, size=None):
                illustrating.set()
                await asyncio.sleep(3600)

            fake_llm.generate_image = slow_image

            async def consume():
                async for _ in controller.stream_turn(session, LIGHTHOUSE):
                    pass

            task = asyncio.create_task(consume())
            await illustrating.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())
        assert len(session.log) == 3
        assert session.log.turns[-1].content == "Chapter 1 continues."
        assert session.log.pending_exchange is None
        assert not session.lock.locked()

    def test_image_failure_keeps_text(self, controller, fake_llm):
        session = Session("s")
        fake_llm.image_error = content_policy_error()
        with pytest.raises(GenerationFailed) as info:
            _atomic(controller, session)
        assert info.value.story == "Chapter 1 continues."
        assert info.value.content_policy
        assert len(session.log) == 3
        assert session.log.turns[-1].content == "Chapter 1 continues."

    def test_streamed_image_failure_keeps_text(self, controller, fake_llm):
        session = Session("s")
        fake_llm.image_error = GenerationFailed("no image")
        records = []

        async def collect():
            async for r in controller.stream_turn(session, LIGHTHOUSE):
                records.append(r)

        with pytest.raises(GenerationFailed):
            asyncio.run(collect())
        assert [r.story for r in records] == ["Chapter 1", " continues."]
        assert len(session.log) == 3

    def test_pending_exchange_blocks_new_turn(self, controller):
        session = Session("s")
        session.log.append_user("stuck")
        with pytest.raises(InternalStateError):
            _atomic(controller, session)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
