"""
Fixture state-transition rules for the live poller.

The live feed only reports matches that are currently in play: a match that
ends simply disappears from it. That absence is modelled as its own rule,
LIVE_AND_ABSENT, which sends the fixture to a targeted lookup instead of being
an incidental branch of the diff.

Status never moves backwards (live -> scheduled is ignored). A finished
fixture only accepts a corrected final score. A voided fixture accepts nothing.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from matchday.models import Fixture, FixtureStatus
from matchday.providers.base import FixtureSnapshot

_STATUS_RANK = {
    FixtureStatus.SCHEDULED: 0,
    FixtureStatus.LIVE: 1,
    FixtureStatus.FINISHED: 2,
}


class TransitionKind(str, Enum):
    NONE = "none"
    UPDATE = "update"                      # clock/score change while live
    KICKOFF = "kickoff"                    # scheduled -> live
    FINISH = "finish"                      # * -> finished (settle)
    SCORE_CORRECTION = "score_correction"  # finished, final score changed (re-score)
    VOID = "void"                          # cancelled/abandoned


class LookupReason(str, Enum):
    LIVE_AND_ABSENT = "live_and_absent"
    OVERDUE_AND_ABSENT = "overdue_and_absent"


@dataclass(frozen=True)
class Transition:
    kind: TransitionKind
    changes: dict = field(default_factory=dict)


NO_TRANSITION = Transition(TransitionKind.NONE)


def diff_fixture(fixture: Fixture, snapshot: FixtureSnapshot) -> Transition:
    """Compare stored state with a provider snapshot and classify the change."""
    if fixture.status == FixtureStatus.VOIDED:
        return NO_TRANSITION

    if snapshot.status == FixtureStatus.VOIDED:
        return Transition(TransitionKind.VOID, {"status_code": snapshot.status_code})

    if fixture.status == FixtureStatus.FINISHED:
        if (
            snapshot.status == FixtureStatus.FINISHED
            and snapshot.home_score is not None
            and snapshot.away_score is not None
            and (snapshot.home_score, snapshot.away_score) != (fixture.home_score, fixture.away_score)
        ):
            return Transition(
                TransitionKind.SCORE_CORRECTION,
                {"home_score": snapshot.home_score, "away_score": snapshot.away_score},
            )
        return NO_TRANSITION

    new_status = snapshot.status
    if _STATUS_RANK[new_status] < _STATUS_RANK[fixture.status]:
        new_status = fixture.status

    if new_status == FixtureStatus.FINISHED and (snapshot.home_score is None or snapshot.away_score is None):
        # Finished without a final score cannot be settled; wait for the next poll
        new_status = fixture.status

    changes = {}
    if new_status != fixture.status:
        changes["status"] = new_status
    if snapshot.status_code != fixture.status_code:
        changes["status_code"] = snapshot.status_code
    if snapshot.clock != fixture.clock:
        changes["clock"] = snapshot.clock
    if snapshot.home_score is not None and snapshot.home_score != fixture.home_score:
        changes["home_score"] = snapshot.home_score
    if snapshot.away_score is not None and snapshot.away_score != fixture.away_score:
        changes["away_score"] = snapshot.away_score

    if new_status == FixtureStatus.FINISHED:
        return Transition(TransitionKind.FINISH, changes)
    if fixture.status == FixtureStatus.SCHEDULED and new_status == FixtureStatus.LIVE:
        return Transition(TransitionKind.KICKOFF, changes)
    if changes:
        return Transition(TransitionKind.UPDATE, changes)
    return NO_TRANSITION


def lookup_reason(
    fixture: Fixture,
    live_external_ids: set[int],
    now: datetime,
    overdue_grace: timedelta,
) -> Optional[LookupReason]:
    """Why a fixture absent from the live feed needs a targeted lookup (None if it doesn't)."""
    if fixture.external_id in live_external_ids:
        return None
    if fixture.status == FixtureStatus.LIVE:
        return LookupReason.LIVE_AND_ABSENT
    if fixture.status == FixtureStatus.SCHEDULED and fixture.kickoff_at < now - overdue_grace:
        return LookupReason.OVERDUE_AND_ABSENT
    return None
