"""Tests for Turn, Exchange and TurnLog."""
import pytest

from storyteller.engine.turn_log import Role, TurnLog
from storyteller.nlg.prompt_templates import SYSTEM_PROMPT
from storyteller.utils.errors import InternalStateError, InvalidInput


def _play(log, n):
    for i in range(n):
        ex = log.append_user(f"prompt {i}")
        log.append_assistant(f"story {i}", ex)


class TestTurnLog:
    @pytest.fixture
    def log(self):
        return TurnLog()

    def test_starts_with_single_system_turn(self, log):
        assert len(log) == 1
        assert log.turns[0].role is Role.SYSTEM
        assert log.turns[0].content == SYSTEM_PROMPT
        assert log.is_first_turn

    @pytest.mark.parametrize("n", [1, 2, 5])
    def test_length_after_n_exchanges(self, log, n):
        _play(log, n)
        assert len(log) == 1 + 2 * n
        assert not log.is_first_turn

    def test_messages_alternate_after_system(self, log):
        _play(log, 2)
        roles = [m["role"] for m in log.messages()]
        assert roles == ["system", "user", "assistant", "user", "assistant"]
        assert log.messages()[2] == {"role": "assistant", "content": "story 0"}

    def test_empty_user_turn_rejected(self, log):
        with pytest.raises(InvalidInput):
            log.append_user("   ")
        assert len(log) == 1

    def test_pending_user_turn_counts(self, log):
        log.append_user("hello")
        assert len(log) == 2
        assert log.pending_exchange is not None

    def test_second_user_turn_while_pending_rejected(self, log):
        log.append_user("one")
        with pytest.raises(InternalStateError):
            log.append_user("two")

    def test_assistant_without_user_rejected(self, log):
        with pytest.raises(InternalStateError):
            log.append_assistant("orphan")

    def test_assistant_for_wrong_exchange_rejected(self, log):
        log.append_user("one")
        with pytest.raises(InternalStateError):
            log.append_assistant("text", "not-the-id")

    def test_discard_pending(self, log):
        _play(log, 1)
        ex = log.append_user("again")
        assert log.discard(ex)
        assert len(log) == 3

    def test_discard_ignores_completed_exchange(self, log):
        ex = log.append_user("one")
        log.append_assistant("story", ex)
        assert not log.discard(ex)
        assert len(log) == 3


class TestUndo:
    @pytest.fixture
    def log(self):
        return TurnLog()

    def test_undo_restores_pre_turn_length(self, log):
        _play(log, 2)
        removed = log.undo_last_turn()
        assert removed is not None and removed.assistant.content == "story 1"
        assert len(log) == 3

    def test_undo_on_fresh_log_is_noop(self, log):
        assert log.undo_last_turn() is None
        assert len(log) == 1
        assert log.turns[0].role is Role.SYSTEM

    def test_undo_removes_lone_user_turn(self, log):
        _play(log, 1)
        log.append_user("half")
        log.undo_last_turn()
        assert len(log) == 3
        assert log.pending_exchange is None

    def test_undo_twice_removes_two_exchanges(self, log):
        _play(log, 3)
        log.undo_last_turn()
        log.undo_last_turn()
        assert len(log) == 3

    def test_system_turn_survives_repeated_undo(self, log):
        _play(log, 1)
        for _ in range(4):
            log.undo_last_turn()
        assert [t.role for t in log.turns] == [Role.SYSTEM]


class TestReset:
    def test_reset_from_any_length(self):
        log = TurnLog()
        _play(log, 4)
        log.append_user("pending")
        log.reset()
        assert len(log) == 1
        assert log.turns[0].role is Role.SYSTEM
        assert log.is_first_turn


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
