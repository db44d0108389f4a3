"""Story turn pipeline.

One SessionEngine drives one interactive session:
  1. Opening - validate the setup, generate the first segment through the
     text fallback chain, render avatars/scene concurrently, checkpoint.
  2. Turn - the same for a chosen option, optionally branching from an
     earlier segment (history truncated first).
  3. Regeneration - full/text/choices re-rendering of the last segment,
     appended to its version history.
  4. Chapter bookkeeping - every committed segment is counted against the
     active chapter of the plot blueprint.

All context transitions are pure functions in turns.py; the engine commits
their result after the last await. abort() cancels the operation in flight
through a CancelToken shared by every task it launched.
"""

from .artifacts import Artifacts, apply_artifacts, generate_artifacts  # noqa: F401
from .cancel import AbortedError, CancelToken  # noqa: F401
from .session import EngineState, SessionBusyError, SessionEngine, SetupError  # noqa: F401
from .turns import (  # noqa: F401
    OPENING_CHOICE_TEXT,
    apply_advance,
    apply_choices,
    apply_opening,
    apply_regeneration,
)
