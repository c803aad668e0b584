"""Investment-state names and the release eligibility check."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence, Union

STATE_NAMES = (
    "BuyingPhase",
    "BeforeFirstRelease",
    "SixMonthsDone",
    "TenMonthsDone",
    "OneYearTwoMonthsDone",
    "OneYearSixMonthsDone",
    "OneYearTenMonthsDone",
    "TwoYearsTwoMonthsDone",
    "TwoYearsSixMonthsDone",
    "TwoYearsTenMonthsDone",
    "ThreeYearsTwoMonthsDone",
    "ThreeYearsSixMonthsDone",
    "Ended",
)
BUYING_PHASE = 0
ENDED = len(STATE_NAMES) - 1
UNKNOWN_STATE = "Unknown"

CHRONOMETER_NOT_STARTED = "chronometer-not-started"
INVESTMENT_ENDED = "investment-ended"
INVESTMENT_NOT_STARTED = "investment-not-started"
INTERVAL_NOT_ELAPSED = "interval-not-elapsed"
NO_REMAINING_STAGE = "no-remaining-stage"
NO_INVESTORS = "no-investors"

REASON_MESSAGES = {
    CHRONOMETER_NOT_STARTED: "Chronometer not started",
    INVESTMENT_ENDED: "Investment has ended",
    INVESTMENT_NOT_STARTED: "Investment not started",
    INTERVAL_NOT_ELAPSED: "Required time interval has not elapsed",
    NO_REMAINING_STAGE: "No distribution stage remaining",
    NO_INVESTORS: "No investors to distribute to",
}

Lazy = Union[Any, Callable[[], Any]]


def state_name(ordinal: Any) -> str:
    """Map an investment-state ordinal to its name, ``Unknown`` when out of range."""

    if isinstance(ordinal, bool) or not isinstance(ordinal, int):
        return UNKNOWN_STATE
    if 0 <= ordinal < len(STATE_NAMES):
        return STATE_NAMES[ordinal]
    return UNKNOWN_STATE


class ReleaseRejected(Exception):
    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        self.reason = reason
        self.message = message or REASON_MESSAGES.get(reason, reason)
        super().__init__(self.message)


@dataclass(frozen=True)
class ReleaseDecision:
    allowed: bool
    reason: Optional[str] = None
    stage_index: Optional[int] = None
    elapsed: Optional[int] = None
    required: Optional[int] = None

    @property
    def message(self) -> str:
        if self.allowed:
            return "Release permitted"
        return REASON_MESSAGES.get(self.reason or "", self.reason or "")

    def raise_for_rejection(self) -> None:
        if not self.allowed:
            raise ReleaseRejected(self.reason or "", self.message)

    def as_dict(self) -> dict:
        payload = {"allowed": self.allowed, "reason": self.reason, "message": self.message}
        if self.stage_index is not None:
            payload["stageIndex"] = self.stage_index
        if self.elapsed is not None:
            payload["elapsed"] = self.elapsed
        if self.required is not None:
            payload["required"] = self.required
        return payload


def _resolve(value: Lazy) -> Any:
    return value() if callable(value) else value


def evaluate_release(
    chronometer_started: Lazy,
    current_state: Lazy,
    begin_date: Lazy,
    distribution_intervals: Lazy,
    investor_count: Lazy,
    *,
    now: Optional[int] = None,
) -> ReleaseDecision:
    """Decide whether ``release_distribution`` may be invoked right now.

    Every input may be a plain value or a zero-argument callable. Callables
    are only invoked once the checks before them have passed, so the begin
    date and the interval table are never read for a chronometer that has
    not started or a state that cannot release.

    The checks run in a fixed order and stop at the first failure:

    1. the chronometer must be started;
    2. the investment must not be ``Ended``;
    3. the investment must have left ``BuyingPhase``;
    4. ``now - begin_date`` must reach ``distribution_intervals[state - 1]``
       (equality passes). A state with no interval entry is rejected;
    5. at least one investor must be registered.
    """

    if not _resolve(chronometer_started):
        return ReleaseDecision(False, CHRONOMETER_NOT_STARTED)

    state = int(_resolve(current_state))
    if state == ENDED:
        return ReleaseDecision(False, INVESTMENT_ENDED)
    if state == BUYING_PHASE:
        return ReleaseDecision(False, INVESTMENT_NOT_STARTED)

    current_time = int(time.time()) if now is None else int(now)
    started_at = int(_resolve(begin_date))
    intervals: Sequence[int] = list(_resolve(distribution_intervals))
    stage_index = state - 1
    elapsed = current_time - started_at
    if stage_index < 0 or stage_index >= len(intervals):
        return ReleaseDecision(False, NO_REMAINING_STAGE, stage_index=stage_index, elapsed=elapsed)
    required = int(intervals[stage_index])
    if elapsed < required:
        return ReleaseDecision(
            False,
            INTERVAL_NOT_ELAPSED,
            stage_index=stage_index,
            elapsed=elapsed,
            required=required,
        )

    if int(_resolve(investor_count)) == 0:
        return ReleaseDecision(False, NO_INVESTORS, stage_index=stage_index, elapsed=elapsed, required=required)

    return ReleaseDecision(True, stage_index=stage_index, elapsed=elapsed, required=required)


__all__ = [
    "BUYING_PHASE",
    "ENDED",
    "REASON_MESSAGES",
    "ReleaseDecision",
    "ReleaseRejected",
    "STATE_NAMES",
    "UNKNOWN_STATE",
    "evaluate_release",
    "state_name",
]
