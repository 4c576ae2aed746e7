import datetime as dt

from betapp.config import GameConstants
from betapp.entities import (
    LedgerTransaction,
    MatchType,
    OperationResult,
    Round,
    RoundError,
    RoundKind,
    RoundStatistics,
    RoundStatus,
    TransactionType,
    Wager,
    WagerOutcome,
)
from betapp.ledger import LeaderboardEntry
from betapp.round_view import RoundView


NOW = dt.datetime(2024, 5, 1, 12, 0, tzinfo=dt.timezone.utc)


def _view(tmp_path) -> RoundView:
    path = tmp_path / "game_constants.yaml"
    path.write_text("ui:\n  currency_name: Coins\nbetting:\n  top_bettors_shown: 2\n", encoding="utf-8")
    return RoundView(GameConstants(str(path)), timezone_name="UTC")


def _round(**overrides) -> Round:
    fields = dict(
        id=3,
        kind=RoundKind.MATCH,
        side_a="Red",
        side_b="Blue",
        status=RoundStatus.PENDING,
        created_at=NOW,
        updated_at=NOW,
        match_type=MatchType.TEAM,
    )
    fields.update(overrides)
    return Round(**fields)


def _wager(wager_id: int, side: str, amount: int, name: str) -> Wager:
    return Wager(
        id=wager_id,
        round_id=3,
        user_id=f"u{wager_id}",
        side=side,
        amount=amount,
        outcome=WagerOutcome.PENDING,
        created_at=NOW,
        user_name=name,
    )


def test_render_round_shows_status_and_countdown(tmp_path):
    view = _view(tmp_path)

    text = view.render_round(_round(), remaining_seconds=125)

    assert "Match #3: Red vs Blue" in text
    assert "Open for bets" in text
    assert "Betting closes in 2m 5s" in text
    assert "Created 2024-05-01 12:00" in text


def test_render_status_names_the_winner(tmp_path):
    view = _view(tmp_path)

    assert "winner: Blue" in view.render_status(_round(status=RoundStatus.DONE, winner="Blue"))
    assert "Canceled" in view.render_status(_round(status=RoundStatus.CANCELED))


def test_statistics_show_ratio_and_top_bettors(tmp_path):
    view = _view(tmp_path)
    round_ = _round()
    wagers = [
        _wager(1, "Red", 300, "Ann"),
        _wager(2, "Red", 200, "Bob"),
        _wager(3, "Red", 100, "Cid"),
        _wager(4, "Blue", 400, "Dee"),
    ]

    text = view.render_statistics(RoundStatistics.from_wagers(round_, wagers))

    assert "Red: 3 bets, 600 Coins" in text
    assert "Ratio: 60.0% : 40.0%" in text
    assert "Ann: 300 Coins" in text
    assert "Cid" not in text
    assert "...and 1 more bettor" in text


def test_empty_statistics(tmp_path):
    view = _view(tmp_path)

    text = view.render_statistics(RoundStatistics.from_wagers(_round(), []))

    assert "Ratio: No bets" in text
    assert "  None" in text


def test_close_announcement_includes_pool(tmp_path):
    view = _view(tmp_path)
    round_ = _round(status=RoundStatus.STARTED)
    statistics = RoundStatistics.from_wagers(round_, [_wager(1, "Red", 50, "Ann")])

    text = view.render_close_announcement(round_, statistics)

    assert text.startswith("🔒 Match #3 has started! Betting is now closed.")
    assert "Total pool: 50 Coins from 1 bets" in text


def test_render_result_flags_failed_wagers(tmp_path):
    view = _view(tmp_path)
    result = OperationResult(
        success=False, message="Match #3 canceled, but 1 of 2 refunds failed.", data={"failed_wager_ids": [7]}
    )

    text = view.render_result(result)

    assert text.splitlines()[0] == result.message
    assert "#7" in text
    assert view.render_result(OperationResult.fail(RoundError.NOT_FOUND, "Match #9 not found.")) == (
        "Match #9 not found."
    )


def test_render_history_and_user_wagers(tmp_path):
    view = _view(tmp_path)
    done = _round(status=RoundStatus.DONE, winner="Red")
    wager = _wager(1, "Red", 100, "Ann")
    wager.outcome = WagerOutcome.WIN

    history = view.render_history([done, _round(id=4)])
    mine = view.render_user_wagers([wager], {3: done})

    assert history.count("Red vs Blue") == 2
    assert view.render_history([]) == "No rounds found."
    assert "✅ Red vs Blue: 100 Coins on Red (win)" in mine
    assert view.render_user_wagers([], {}) == "You have not placed any bets yet."


def test_render_leaderboard_and_transactions(tmp_path):
    view = _view(tmp_path)
    board = [
        LeaderboardEntry("u1", "Ann", 1500),
        LeaderboardEntry("u2", "Bob", 900),
        LeaderboardEntry("u3", "Cid", 800),
        LeaderboardEntry("u4", "Dee", 10),
    ]
    transactions = [
        LedgerTransaction(1, "u1", -100, TransactionType.BET, 5, NOW),
        LedgerTransaction(2, "u1", 200, TransactionType.PAYOUT, 5, NOW),
    ]

    text = view.render_leaderboard(board)
    history = view.render_transactions(transactions)

    assert "🥇 Ann: 1500 Coins" in text
    assert "4. Dee: 10 Coins" in text
    assert "bet: -100 Coins" in history
    assert "payout: +200 Coins" in history
    assert view.render_leaderboard([]) == "The leaderboard is empty."


def test_render_result_separates_unrecorded_outcomes(tmp_path):
    view = _view(tmp_path)
    result = OperationResult(
        success=False,
        message="Match #3 canceled and all bets refunded, but 1 wager outcomes were not saved.",
        data={"failed_wager_ids": [], "unrecorded_wager_ids": [8]},
    )

    lines = view.render_result(result).splitlines()

    assert len(lines) == 2
    assert "Outcome not recorded for wagers #8" in lines[1]
    assert "balance already updated" in lines[1]
