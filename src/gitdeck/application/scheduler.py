"""
Scheduler adapter around the FSRS memory model.

Wraps the `fsrs` library so the rest of gitdeck only deals with
`SchedulingState`. The adapter is deterministic: fuzzing is disabled and the
caller always passes `now`.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from fsrs import Card as FsrsCard
from fsrs import Rating as FsrsRating
from fsrs import Scheduler, State

from gitdeck.application.serialization import truncate_to_millis
from gitdeck.domain.constants import DESIRED_RETENTION, LEARNING_STEPS, RELEARNING_STEPS
from gitdeck.domain.models import Phase, Rating, SchedulingState

logger = logging.getLogger(__name__)

_PHASE_TO_FSRS = {
    Phase.LEARNING: State.Learning,
    Phase.REVIEW: State.Review,
    Phase.RELEARNING: State.Relearning,
}
_FSRS_TO_PHASE = {v: k for k, v in _PHASE_TO_FSRS.items()}


@dataclass(frozen=True)
class ReviewSnapshot:
    """What a review log entry needs to roll the review back."""

    rating: Rating
    prior_phase: Phase
    prior_state: SchedulingState | None
    reviewed_at: datetime


class SchedulerAdapter:
    """
    Computes the next SchedulingState from a prior state, a rating and a time.

    Uses a single learning step and a single relearning step, so a direction in
    Learning/Relearning is always at step 0 and the step never has to be stored.
    """

    def __init__(self, desired_retention: float = DESIRED_RETENTION):
        self._scheduler = Scheduler(
            desired_retention=desired_retention,
            learning_steps=LEARNING_STEPS,
            relearning_steps=RELEARNING_STEPS,
            enable_fuzzing=False,
        )

    def compute_new_state(
        self,
        prior: SchedulingState | None,
        rating: Rating,
        now: datetime,
    ) -> tuple[SchedulingState, ReviewSnapshot]:
        """
        Apply one rating.

        Args:
            prior: Current state of the direction, or None for a new direction.
            rating: Button pressed.
            now: Review time; must be timezone-aware.

        Returns:
            The next state and the snapshot to store in the review log.
        """
        if now.tzinfo is None:
            raise ValueError("now must be timezone-aware")
        now = truncate_to_millis(now.astimezone(timezone.utc))
        rating = Rating(rating)

        prior_phase = self._effective_phase(prior)
        fsrs_card = self._to_fsrs(prior if prior_phase != Phase.NEW else None, now)
        updated, _ = self._scheduler.review_card(fsrs_card, FsrsRating(int(rating)), now)

        reps = (prior.reps if prior else 0) + 1
        lapses = prior.lapses if prior else 0
        if rating == Rating.AGAIN and prior_phase != Phase.NEW:
            lapses += 1

        elapsed_days = 0
        if prior is not None and prior.last_review is not None:
            elapsed_days = max(0, (now - prior.last_review).days)

        due = truncate_to_millis(updated.due.astimezone(timezone.utc))
        next_state = SchedulingState(
            due=due,
            stability=float(updated.stability or 0.0),
            difficulty=float(updated.difficulty or 0.0),
            elapsed_days=elapsed_days,
            scheduled_days=max(0, (due - now).days),
            reps=reps,
            lapses=lapses,
            phase=_FSRS_TO_PHASE[updated.state],
            last_review=now,
        )
        logger.debug(
            f"[fsrs] {prior_phase.name} --{rating.name}--> {next_state.phase.name} "
            f"due={due.isoformat()} stability={next_state.stability:.2f}"
        )

        snapshot = ReviewSnapshot(
            rating=rating,
            prior_phase=prior_phase,
            prior_state=prior,
            reviewed_at=now,
        )
        return next_state, snapshot

    def preview(
        self, prior: SchedulingState | None, now: datetime
    ) -> dict[Rating, SchedulingState]:
        """Next state for every rating, e.g. to label the answer buttons."""
        return {r: self.compute_new_state(prior, r, now)[0] for r in Rating}

    @staticmethod
    def _effective_phase(prior: SchedulingState | None) -> Phase:
        if prior is None or prior.phase == Phase.NEW or prior.stability <= 0:
            return Phase.NEW
        return prior.phase

    @staticmethod
    def _to_fsrs(prior: SchedulingState | None, now: datetime) -> FsrsCard:
        if prior is None:
            return FsrsCard(card_id=0, due=now)

        fsrs_state = _PHASE_TO_FSRS[prior.phase]
        return FsrsCard(
            card_id=0,
            state=fsrs_state,
            step=None if fsrs_state == State.Review else 0,
            stability=prior.stability,
            difficulty=prior.difficulty,
            due=prior.due.astimezone(timezone.utc),
            last_review=prior.last_review.astimezone(timezone.utc) if prior.last_review else None,
        )
