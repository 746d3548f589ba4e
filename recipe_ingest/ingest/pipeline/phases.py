from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from recipe_ingest.errors import IllegalPhaseTransition
from recipe_ingest.models.task import IngestMode


class Phase(str, Enum):
    DISCOVER = "Discover"
    FETCH = "Fetch"
    SANITIZE = "Sanitize"
    EXTRACT = "Extract"
    VALIDATE = "Validate"
    REVIEW_READY = "ReviewReady"
    NORMALIZE = "Normalize"


# None is the start state
ALLOWED_TRANSITIONS: dict[Phase | None, frozenset[Phase]] = {
    None: frozenset({Phase.DISCOVER, Phase.FETCH, Phase.NORMALIZE}),
    Phase.DISCOVER: frozenset({Phase.FETCH}),
    Phase.FETCH: frozenset({Phase.SANITIZE}),
    Phase.SANITIZE: frozenset({Phase.EXTRACT}),
    Phase.EXTRACT: frozenset({Phase.VALIDATE}),
    Phase.VALIDATE: frozenset({Phase.REVIEW_READY}),
    Phase.REVIEW_READY: frozenset(),
    Phase.NORMALIZE: frozenset(),
}

PHASE_WEIGHTS: dict[IngestMode, dict[Phase, int]] = {
    IngestMode.URL: {
        Phase.FETCH: 20,
        Phase.SANITIZE: 10,
        Phase.EXTRACT: 35,
        Phase.VALIDATE: 25,
        Phase.REVIEW_READY: 10,
    },
    IngestMode.QUERY: {
        Phase.DISCOVER: 10,
        Phase.FETCH: 15,
        Phase.SANITIZE: 10,
        Phase.EXTRACT: 30,
        Phase.VALIDATE: 25,
        Phase.REVIEW_READY: 10,
    },
    IngestMode.NORMALIZE: {
        Phase.NORMALIZE: 100,
    },
}


@dataclass(frozen=True)
class PhasePlan:
    mode: IngestMode
    phases: tuple[Phase, ...]

    def weight(self, phase: Phase) -> int:
        return PHASE_WEIGHTS[self.mode][phase]

    def progress_after(self, phase: Phase) -> int:
        """Cumulative progress once ``phase`` has completed."""
        total = 0
        for current in self.phases:
            total += self.weight(current)
            if current is phase:
                return min(total, 100)
        raise ValueError(f"{phase.value} is not part of the {self.mode.value} plan")

    def check_transition(self, previous: Phase | None, following: Phase) -> None:
        if following not in self.phases or following not in ALLOWED_TRANSITIONS.get(previous, frozenset()):
            raise IllegalPhaseTransition(
                previous.value if previous is not None else None,
                following.value,
            )
        if previous is None and self.phases[0] is not following:
            raise IllegalPhaseTransition(None, following.value)


def plan_for(mode: IngestMode) -> PhasePlan:
    return PhasePlan(mode=mode, phases=tuple(PHASE_WEIGHTS[mode]))
