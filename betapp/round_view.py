"""Plain-text rendering of rounds and engine results for a chat front end."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence

from betapp.config import GameConstants, get_game_constants
from betapp.entities import (
    LedgerTransaction,
    OperationResult,
    Round,
    RoundStatistics,
    RoundStatus,
    SideTally,
    Wager,
    WagerOutcome,
)
from betapp.ledger import LeaderboardEntry
from betapp.utils.time_utils import DEFAULT_TIMEZONE_NAME, format_local, format_remaining


_STATUS_BADGES: Dict[RoundStatus, str] = {
    RoundStatus.PENDING: "🟢 Open for bets",
    RoundStatus.STARTED: "⏳ Betting closed",
    RoundStatus.DONE: "🏆 Finished",
    RoundStatus.CANCELED: "❌ Canceled",
}

_OUTCOME_BADGES: Dict[WagerOutcome, str] = {
    WagerOutcome.PENDING: "⏳",
    WagerOutcome.WIN: "✅",
    WagerOutcome.LOSS: "❌",
    WagerOutcome.REFUND: "↩️",
}


def _join_ids(wager_ids: Sequence[int]) -> str:
    return ", ".join(f"#{wager_id}" for wager_id in wager_ids)


class RoundView:
    """Formats engine output; owns no state beyond display settings."""

    def __init__(
        self,
        constants: Optional[GameConstants] = None,
        *,
        timezone_name: str = DEFAULT_TIMEZONE_NAME,
    ) -> None:
        constants = constants or get_game_constants()
        ui = constants.ui
        betting = constants.betting
        self._currency = str(ui.get("currency_name", "PunaCoins"))
        self._top_bettors = int(betting.get("top_bettors_shown", 3))
        self._timezone_name = timezone_name

    @property
    def currency(self) -> str:
        return self._currency

    def money(self, amount: int) -> str:
        return f"{amount} {self._currency}"

    def render_result(self, result: OperationResult) -> str:
        """Message for the user, with failed batch items called out.

        ``failed_wager_ids`` never received their credit; ``unrecorded_wager_ids``
        were credited but still show a ``pending`` outcome.
        """

        lines = [result.message]
        data = result.data or {}
        failed_ids: Sequence[int] = data.get("failed_wager_ids") or ()
        unrecorded_ids: Sequence[int] = data.get("unrecorded_wager_ids") or ()
        if failed_ids:
            lines.append(f"⚠️ Credit not applied for wagers {_join_ids(failed_ids)}")
        if unrecorded_ids:
            lines.append(
                f"⚠️ Outcome not recorded for wagers {_join_ids(unrecorded_ids)} "
                "(balance already updated)"
            )
        return "\n".join(lines)

    def render_status(self, round_: Round) -> str:
        badge = _STATUS_BADGES[round_.status]
        if round_.status == RoundStatus.DONE and round_.winner is not None:
            return f"{badge}, winner: {round_.label_for(round_.winner)}"
        return badge

    def render_round(self, round_: Round, remaining_seconds: int = 0) -> str:
        kind = round_.kind.value.capitalize()
        lines = [f"{kind} #{round_.id}: {round_.heading}", self.render_status(round_)]
        if round_.description and round_.description != round_.heading:
            lines.append(round_.description)
        if round_.status == RoundStatus.PENDING and remaining_seconds > 0:
            lines.append(f"Betting closes in {format_remaining(remaining_seconds)}")
        lines.append(
            "Created "
            + format_local(round_.created_at, "%Y-%m-%d %H:%M", self._timezone_name)
        )
        return "\n".join(lines)

    def _ratio(self, statistics: RoundStatistics) -> str:
        if statistics.total_amount <= 0:
            return "No bets"
        return f"{statistics.share(0):.1f}% : {statistics.share(1):.1f}%"

    def _bettors(self, tally: SideTally, limit: int) -> List[str]:
        shown = tally.top(limit)
        if not shown:
            return ["  None"]
        lines = [
            f"  {wager.user_name or wager.user_id}: {self.money(wager.amount)}"
            for wager in shown
        ]
        extra = tally.count - len(shown)
        if extra > 0:
            noun = "bettor" if extra == 1 else "bettors"
            lines.append(f"  ...and {extra} more {noun}")
        return lines

    def render_statistics(
        self, statistics: RoundStatistics, *, limit: Optional[int] = None
    ) -> str:
        limit = self._top_bettors if limit is None else limit
        lines = ["Betting overview:"]
        for tally in statistics.sides:
            lines.append(f"{tally.label}: {tally.count} bets, {self.money(tally.amount)}")
        lines.append(f"Ratio: {self._ratio(statistics)}")
        for tally in statistics.sides:
            lines.append(f"Top bettors for {tally.label}:")
            lines.extend(self._bettors(tally, limit))
        return "\n".join(lines)

    def render_close_announcement(self, round_: Round, statistics: RoundStatistics) -> str:
        kind = round_.kind.value.capitalize()
        header = f"🔒 {kind} #{round_.id} has started! Betting is now closed."
        pool = (
            f"Total pool: {self.money(statistics.total_amount)} "
            f"from {statistics.total_count} bets"
        )
        return "\n".join([header, round_.heading, pool, self.render_statistics(statistics)])

    def render_summary(self, result: OperationResult) -> str:
        if not result.success or not result.data:
            return result.message
        round_: Round = result.data["round"]
        statistics: RoundStatistics = result.data["statistics"]
        remaining = int(result.data.get("remaining_seconds") or 0)
        return "\n".join(
            [self.render_round(round_, remaining), self.render_statistics(statistics)]
        )

    def render_history(
        self,
        rounds: Iterable[Round],
        statistics: Optional[Dict[int, RoundStatistics]] = None,
        *,
        limit: Optional[int] = None,
    ) -> str:
        blocks = []
        for round_ in rounds:
            block = self.render_round(round_)
            if statistics and round_.id in statistics:
                block += "\n" + self.render_statistics(statistics[round_.id], limit=limit)
            blocks.append(block)
        if not blocks:
            return "No rounds found."
        return "\n───────────────\n".join(blocks)

    def render_user_wagers(self, wagers: Sequence[Wager], rounds: Dict[int, Round]) -> str:
        if not wagers:
            return "You have not placed any bets yet."
        lines = ["Your bets:"]
        for wager in wagers:
            round_ = rounds.get(wager.round_id)
            side = round_.label_for(wager.side) if round_ else wager.side
            title = round_.heading if round_ else f"#{wager.round_id}"
            lines.append(
                f"{_OUTCOME_BADGES[wager.outcome]} {title}: "
                f"{self.money(wager.amount)} on {side} ({wager.outcome.value})"
            )
        return "\n".join(lines)

    def render_leaderboard(self, entries: Sequence[LeaderboardEntry]) -> str:
        if not entries:
            return "The leaderboard is empty."
        medals = ("🥇", "🥈", "🥉")
        lines = ["Leaderboard:"]
        for index, entry in enumerate(entries):
            rank = medals[index] if index < len(medals) else f"{index + 1}."
            lines.append(f"{rank} {entry.display_name}: {self.money(entry.balance)}")
        return "\n".join(lines)

    def render_transactions(self, transactions: Sequence[LedgerTransaction]) -> str:
        if not transactions:
            return "No transactions yet."
        lines = ["Recent transactions:"]
        for transaction in transactions:
            when = format_local(transaction.created_at, "%Y-%m-%d %H:%M", self._timezone_name)
            sign = "+" if transaction.amount >= 0 else ""
            lines.append(
                f"{when} {transaction.type.value}: {sign}{transaction.amount} {self._currency}"
            )
        return "\n".join(lines)


__all__ = ["RoundView"]
