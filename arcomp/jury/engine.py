"""Jury scoring: validated upserts and per-member progress."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..errors import AuthorizationError, NotFoundError, ValidationError
from ..models import (
    JuryMember,
    JuryScore,
    JuryScoringProgress,
    Submission,
    SubmissionStatus,
)
from .rubric import SCORE_FIELDS, total_score, validate_scores

logger = logging.getLogger(__name__)


@dataclass
class JuryProgress:
    """Scoring progress of one jury member.

    Attributes
    ----------
    total_assigned : int
        Published submissions in the member's scope.
    total_submitted : int
        Of those, how many the member has scored.
    completion_percentage : float
        ``total_submitted / total_assigned * 100`` (0 when nothing is assigned).
    average_score : Optional[float]
        Mean total of the member's scores in scope.
    last_scored_at : Optional[datetime]
        Most recent submission time of the member's scores.
    """

    total_assigned: int
    total_submitted: int
    completion_percentage: float
    average_score: Optional[float]
    last_scored_at: Optional[datetime]


@dataclass
class ScoreSummary:
    registration_number: str
    jury_vote_count: int
    jury_score_total: float
    jury_score_average: Optional[float]


class JuryScoringEngine:
    """Engine that validates, persists and aggregates jury scores."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get_member(self, user_id: int) -> JuryMember:
        member = JuryMember.get_by_user(self._session, user_id)
        if member is None or not member.is_active:
            logger.warning(f"User {user_id} is not an active jury member")
            raise AuthorizationError("Jury access required")
        return member

    def _published_in_scope(self, member: JuryMember):
        stmt = select(Submission.registration_number).where(
            Submission.status == SubmissionStatus.PUBLISHED,
            Submission.is_published.is_(True),
        )
        if member.competition_id is not None:
            stmt = stmt.where(Submission.competition_id == member.competition_id)
        return stmt

    def submit_score(
        self,
        jury_member: JuryMember,
        registration_number: str,
        scores: Mapping[str, Any],
        comments: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> JuryScore:
        """Validate ``scores`` and upsert the member's row for the registration.

        Parameters
        ----------
        jury_member : JuryMember
            Active member scoring the work.
        registration_number : str
            Registration whose published submission is scored.
        scores : Mapping[str, Any]
            The nine rubric scores; any ``total_score`` key is ignored.
        comments : str, optional
            Free-text feedback.

        Returns
        -------
        JuryScore
            The created or overwritten row with a server-computed total.

        Raises
        ------
        AuthorizationError
            If the member is inactive or scoped to another competition.
        NotFoundError
            If no submission exists for ``registration_number``.
        ValidationError
            If the submission is not published or a score is invalid.
        """

        now = now or datetime.now(timezone.utc)
        if not jury_member.is_active:
            raise AuthorizationError("Jury member is not active")

        submission = Submission.get_by_registration_number(
            self._session, registration_number
        )
        if submission is None:
            raise NotFoundError(f"Submission {registration_number} not found")
        if (
            jury_member.competition_id is not None
            and submission.competition_id != jury_member.competition_id
        ):
            raise AuthorizationError("Submission is outside this jury member's competition")
        if submission.status != SubmissionStatus.PUBLISHED:
            raise ValidationError("Only published submissions can be scored")

        cleaned = validate_scores(scores)
        total = total_score(cleaned)

        # Upsert on (jury member, registration number)
        row = self._session.scalar(
            select(JuryScore).where(
                JuryScore.jury_member_id == jury_member.id,
                JuryScore.registration_number == registration_number,
            )
        )
        if row is None:
            row = JuryScore(
                jury_member_id=jury_member.id,
                registration_number=registration_number,
                created_at=now,
            )
            self._session.add(row)
        for field in SCORE_FIELDS:
            setattr(row, field, cleaned[field])
        row.total_score = total
        row.comments = comments.strip() if comments else None
        row.submitted_at = now
        self._session.flush()

        self.refresh_progress(jury_member)
        logger.info(
            f"Jury member {jury_member.id} scored {registration_number}: {total:g}"
        )
        return row

    def compute_progress(self, jury_member: JuryMember) -> JuryProgress:
        in_scope = self._published_in_scope(jury_member)
        assigned = self._session.scalar(
            select(func.count()).select_from(in_scope.subquery())
        ) or 0
        submitted, average, last = self._session.execute(
            select(
                func.count(JuryScore.id),
                func.avg(JuryScore.total_score),
                func.max(JuryScore.submitted_at),
            ).where(
                JuryScore.jury_member_id == jury_member.id,
                JuryScore.registration_number.in_(in_scope),
            )
        ).one()
        completion = (submitted / assigned * 100.0) if assigned else 0.0
        return JuryProgress(
            total_assigned=int(assigned),
            total_submitted=int(submitted),
            completion_percentage=round(completion, 2),
            average_score=float(average) if average is not None else None,
            last_scored_at=last,
        )

    def refresh_progress(self, jury_member: JuryMember) -> JuryScoringProgress:
        """Recompute and store the member's progress row."""

        progress = self.compute_progress(jury_member)
        row = self._session.scalar(
            select(JuryScoringProgress).where(
                JuryScoringProgress.jury_member_id == jury_member.id
            )
        )
        if row is None:
            row = JuryScoringProgress(jury_member_id=jury_member.id)
            self._session.add(row)
        row.total_assigned = progress.total_assigned
        row.total_submitted = progress.total_submitted
        row.completion_percentage = progress.completion_percentage
        row.average_score = progress.average_score
        row.last_scored_at = progress.last_scored_at
        self._session.flush()
        return row

    def has_finished(self, jury_member: JuryMember) -> bool:
        """``True`` once every published submission in scope is scored.

        Always computed from live rows, never from the stored progress.
        """

        progress = self.compute_progress(jury_member)
        return progress.total_assigned > 0 and (
            progress.total_submitted >= progress.total_assigned
        )

    def summarize_scores(self, registration_number: str) -> ScoreSummary:
        count, total = self._session.execute(
            select(func.count(JuryScore.id), func.sum(JuryScore.total_score)).where(
                JuryScore.registration_number == registration_number
            )
        ).one()
        total = float(total or 0.0)
        return ScoreSummary(
            registration_number=registration_number,
            jury_vote_count=int(count),
            jury_score_total=total,
            jury_score_average=(total / count) if count else None,
        )
