"""Unit tests for reroll lineage handling."""

import random
from datetime import UTC, datetime, timedelta

import pytest

from conftest import CLAN_ROLE, TARGET_ROLE
from lotterybot.errors import EmptyPoolError, HistoryIndexError
from lotterybot.models import DrawResult, Participant
from lotterybot.reroll import RerollEngine, next_reroll_number, reroll_id

DRAW_DATE = datetime(2024, 6, 10, 17, 0, tzinfo=UTC)


def _participants(count):
    return tuple(Participant(id=i, username=f"user{i}", display_name=f"User {i}") for i in range(1, count + 1))


def _result(lottery_id="20240610_daily_alpha_ab12", date=DRAW_DATE, participants=5, winners=(1, 2)):
    people = _participants(participants)
    return DrawResult(
        lottery_id=lottery_id,
        lottery_name="Lottery daily - Alpha Clan",
        date=date,
        participants=people,
        winners=tuple(p for p in people if p.id in winners),
        target_role_id=TARGET_ROLE,
        clan_role_id=CLAN_ROLE,
        clan_name="Alpha",
    )


def test_reroll_draws_only_from_non_winners():
    engine = RerollEngine(random.Random(5))
    record = engine.reroll([_result()], 0, 3, now=DRAW_DATE + timedelta(hours=1))
    assert {w.id for w in record.new_winners} == {3, 4, 5}
    assert record.reroll_participant_count == 3
    assert record.original_participant_count == 5
    assert record.lottery_id == "20240610_daily_alpha_ab12_reroll"
    assert record.lottery_name == "Lottery daily - Alpha Clan (Reroll 1)"
    assert {w.id for w in record.prior_winners} == {1, 2}


def test_reroll_excludes_winners_of_previous_rerolls():
    engine = RerollEngine(random.Random(9))
    history = [_result()]
    first = engine.reroll(history, 0, 1, now=DRAW_DATE + timedelta(hours=1))
    history.append(first)
    second = engine.reroll(history, 0, 2, now=DRAW_DATE + timedelta(hours=2))

    excluded = {1, 2} | {w.id for w in first.new_winners}
    assert not excluded & {w.id for w in second.new_winners}
    assert len(second.new_winners) == 2
    assert second.lottery_id == "20240610_daily_alpha_ab12_reroll2"
    assert {w.id for w in second.prior_winners} == excluded


def test_reroll_of_a_reroll_shares_the_lineage():
    engine = RerollEngine(random.Random(2))
    history = [_result()]
    first = engine.reroll(history, 0, 1, now=DRAW_DATE + timedelta(hours=1))
    history.append(first)
    second = engine.reroll(history, 1, 1, now=DRAW_DATE + timedelta(hours=2))
    assert second.base_id == first.base_id
    assert second.lottery_id.endswith("_reroll2")
    assert second.new_winners[0].id not in {1, 2, first.new_winners[0].id}
    assert second.lottery_name.endswith("(Reroll 2)")


def test_recurring_draws_keep_separate_lineages():
    engine = RerollEngine(random.Random(4))
    last_week = _result(date=DRAW_DATE - timedelta(days=7), winners=(3, 4))
    this_week = _result()
    history = [last_week, this_week]
    history.append(engine.reroll(history, 0, 1, now=DRAW_DATE))
    record = engine.reroll(history, 1, 3, now=DRAW_DATE)
    # last week's reroll winner is still eligible this week
    assert {w.id for w in record.new_winners} == {3, 4, 5}


def test_additional_winners_are_clamped_to_remaining_pool():
    record = RerollEngine().reroll([_result(participants=3)], 0, 10, now=DRAW_DATE)
    assert [w.id for w in record.new_winners] == [3]


def test_exhausted_lineage_raises_empty_pool():
    history = [_result(participants=2)]
    with pytest.raises(EmptyPoolError):
        RerollEngine().reroll(history, 0, 1, now=DRAW_DATE)


@pytest.mark.parametrize("index", [-1, 1, 5])
def test_out_of_range_index_raises(index):
    with pytest.raises(HistoryIndexError):
        RerollEngine().reroll([_result()], index, 1, now=DRAW_DATE)


def test_history_index_error_is_an_index_error():
    with pytest.raises(IndexError):
        RerollEngine().reroll([], 0, 1, now=DRAW_DATE)


def test_reroll_numbering_uses_next_unused_suffix():
    base = "20240610_daily_alpha_ab12"
    assert next_reroll_number(base, []) == 1
    assert next_reroll_number(base, [f"{base}_reroll"]) == 2
    assert next_reroll_number(base, [f"{base}_reroll", f"{base}_reroll3", "other_reroll7"]) == 4
    assert reroll_id(base, 1) == f"{base}_reroll"
    assert reroll_id(base, 3) == f"{base}_reroll3"


def test_draw_id_containing_reroll_marker_keeps_its_lineage():
    engine = RerollEngine(random.Random(6))
    history = [_result(lottery_id="20240610_reroll_alpha_ab12")]
    first = engine.reroll(history, 0, 1, now=DRAW_DATE + timedelta(hours=1))
    history.append(first)
    second = engine.reroll(history, 1, 1, now=DRAW_DATE + timedelta(hours=2))

    assert first.base_id == "20240610_reroll_alpha_ab12"
    assert first.lineage_key == history[0].lineage_key
    assert first.lottery_id == "20240610_reroll_alpha_ab12_reroll"
    assert second.lottery_id == "20240610_reroll_alpha_ab12_reroll2"
