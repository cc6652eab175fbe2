from matchday.live.poller import LivePoller
from matchday.live.transitions import LookupReason, Transition, TransitionKind, diff_fixture

__all__ = ["LivePoller", "LookupReason", "Transition", "TransitionKind", "diff_fixture"]
