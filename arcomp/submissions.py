"""Submission state machine.

::

    DRAFT -> SUBMITTED -> VALIDATED -> PUBLISHED
                 |            |   ^        |
                 |            |   +--------+  (unpublish)
                 +------------+--> REJECTED

``SUBMITTED -> PUBLISHED`` is allowed and validates on the way. REJECTED is
terminal.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from .auth import Actor
from .errors import AuthorizationError, InvalidTransitionError, NotFoundError, ValidationError
from .models import (
    AuditLog,
    Registration,
    RegistrationStatus,
    Submission,
    SubmissionCategory,
    SubmissionStatus,
)
from .notifications import Notifier, notify_safely

logger = logging.getLogger(__name__)

DRAFT_FIELDS = (
    "category",
    "title",
    "description",
    "key_photo_url",
    "additional_photo_urls",
    "document_url",
    "video_url",
)


class AccessDecision(Enum):
    ALLOW = "allow"
    LOGIN_REQUIRED = "login_required"
    DENIED = "denied"


def get_submission(session: Session, submission_id: int) -> Submission:
    submission = session.get(Submission, submission_id)
    if submission is None:
        raise NotFoundError(f"Submission {submission_id} not found")
    return submission


def _require_owner(actor: Actor, owner_id: int) -> int:
    user_id = actor.require_user()
    if user_id != owner_id:
        logger.warning(f"User {user_id} attempted to modify a submission owned by {owner_id}")
        raise AuthorizationError("You can only manage your own submissions")
    return user_id


def _require_admin(actor: Actor, action: str) -> int:
    if not actor.is_admin:
        logger.warning(f"Non-admin {actor.user_id} attempted to {action} a submission")
    return actor.require_admin()


def _audit(
    session: Session, submission: Submission, action: str, admin_id: int, now: datetime, **details
) -> None:
    AuditLog.record(
        session,
        action=f"submission.{action}",
        subject_table=Submission.__tablename__,
        subject_id=submission.id,
        actor_user_id=admin_id,
        details={"registration_number": submission.registration_number, **details},
        occurred_at=now,
    )


def _apply_fields(submission: Submission, fields: Mapping[str, Any]) -> None:
    unknown = sorted(set(fields) - set(DRAFT_FIELDS))
    if unknown:
        raise ValidationError(f"Unknown submission fields: {', '.join(unknown)}")

    for key in DRAFT_FIELDS:
        value = fields.get(key)
        if key != "additional_photo_urls" and value is not None and not isinstance(value, str):
            raise ValidationError(f"{key} must be a string")

    category = fields.get("category")
    if category is not None and category not in SubmissionCategory.ALL:
        raise ValidationError(f"Invalid category: {category}")
    title = fields.get("title")
    if title is not None and len(title.strip()) > 255:
        raise ValidationError("Title must be at most 255 characters")
    photos = fields.get("additional_photo_urls")
    if photos is not None and (
        not isinstance(photos, (list, tuple)) or not all(isinstance(p, str) for p in photos)
    ):
        raise ValidationError("additional_photo_urls must be a list of URLs")

    for key, value in fields.items():
        if isinstance(value, str):
            value = value.strip() or None
        if key == "additional_photo_urls":
            value = list(value or [])
        if key == "category" and value is None:
            continue
        setattr(submission, key, value)


def save_draft(
    session: Session,
    actor: Actor,
    registration: Registration,
    fields: Mapping[str, Any],
) -> Submission:
    """Create or update the DRAFT submission of ``registration``.

    Only the registrant may edit, only while the registration is CONFIRMED
    and the submission is still a DRAFT.
    """

    _require_owner(actor, registration.user_id)
    if registration.status != RegistrationStatus.CONFIRMED:
        raise ValidationError("Registration must be confirmed before submitting work")

    submission = registration.submission
    if submission is None:
        submission = Submission(
            registration_id=registration.id,
            user_id=registration.user_id,
            competition_id=registration.competition_id,
            registration_number=registration.registration_number,
            status=SubmissionStatus.DRAFT,
            additional_photo_urls=[],
        )
        registration.submission = submission
        session.add(submission)
    elif submission.status != SubmissionStatus.DRAFT:
        raise InvalidTransitionError(
            f"Only DRAFT submissions can be edited (submission is {submission.status})"
        )

    _apply_fields(submission, fields)
    session.flush()
    logger.debug(f"Saved draft for registration {registration.registration_number}")
    return submission


def submit(
    session: Session, actor: Actor, submission: Submission, now: Optional[datetime] = None
) -> Submission:
    """DRAFT -> SUBMITTED by the owner; the registration becomes SUBMITTED."""

    _require_owner(actor, submission.user_id)
    now = now or datetime.now(timezone.utc)
    if submission.status != SubmissionStatus.DRAFT:
        raise InvalidTransitionError(
            f"Only DRAFT submissions can be submitted (submission is {submission.status})"
        )
    registration = submission.registration
    if registration.status != RegistrationStatus.CONFIRMED:
        raise ValidationError("Registration must be confirmed before submitting work")

    missing = [
        label
        for label, value in (
            ("title", submission.title),
            ("description", submission.description),
            ("key photograph", submission.key_photo_url),
        )
        if not value
    ]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}", details={"missing": missing}
        )

    submission.status = SubmissionStatus.SUBMITTED
    submission.submitted_at = now
    registration.status = RegistrationStatus.SUBMITTED
    registration.submitted_at = now
    session.flush()
    logger.info(f"Submission {submission.registration_number} submitted")
    return submission


def validate(
    session: Session,
    actor: Actor,
    submission: Submission,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Submission:
    """SUBMITTED -> VALIDATED by an admin."""

    admin_id = _require_admin(actor, "validate")
    now = now or datetime.now(timezone.utc)
    if submission.status != SubmissionStatus.SUBMITTED:
        raise InvalidTransitionError(
            f"Only SUBMITTED submissions can be validated (submission is {submission.status})"
        )
    _mark_validated(submission, admin_id, now, notes)
    _audit(session, submission, "validate", admin_id, now)
    session.flush()
    return submission


def _mark_validated(
    submission: Submission, admin_id: int, now: datetime, notes: Optional[str] = None
) -> None:
    submission.status = SubmissionStatus.VALIDATED
    submission.is_validated = True
    submission.validated_by = admin_id
    submission.validated_at = now
    submission.validation_errors = None
    if notes:
        submission.validation_notes = notes


def reject(
    session: Session,
    actor: Actor,
    submission: Submission,
    reason: Optional[str],
    now: Optional[datetime] = None,
) -> Submission:
    """SUBMITTED or VALIDATED -> REJECTED by an admin, with a reason."""

    admin_id = _require_admin(actor, "reject")
    now = now or datetime.now(timezone.utc)
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A rejection reason is required")
    if submission.status not in (SubmissionStatus.SUBMITTED, SubmissionStatus.VALIDATED):
        raise InvalidTransitionError(
            "Only SUBMITTED or VALIDATED submissions can be rejected "
            f"(submission is {submission.status})"
        )

    submission.status = SubmissionStatus.REJECTED
    submission.is_validated = False
    submission.is_published = False
    submission.validation_errors = {"reason": reason}
    submission.validation_notes = reason
    submission.validated_by = admin_id
    submission.validated_at = now
    _audit(session, submission, "reject", admin_id, now, reason=reason)
    session.flush()
    logger.info(f"Admin {admin_id} rejected submission {submission.registration_number}")
    return submission


def publish(
    session: Session,
    actor: Actor,
    submission: Submission,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
) -> Submission:
    """VALIDATED (or SUBMITTED, validating it) -> PUBLISHED by an admin.

    The registrant is notified afterwards; a notifier failure is logged and
    does not undo the publication.
    """

    admin_id = _require_admin(actor, "publish")
    now = now or datetime.now(timezone.utc)
    if submission.status not in (SubmissionStatus.VALIDATED, SubmissionStatus.SUBMITTED):
        raise InvalidTransitionError(
            "Only VALIDATED or SUBMITTED submissions can be published"
        )

    auto_validated = submission.status == SubmissionStatus.SUBMITTED
    if auto_validated:
        _mark_validated(submission, admin_id, now)
    submission.status = SubmissionStatus.PUBLISHED
    submission.is_published = True
    submission.published_at = now
    _audit(session, submission, "publish", admin_id, now, auto_validated=auto_validated)
    session.flush()
    logger.info(f"Admin {admin_id} published submission {submission.registration_number}")

    if notifier is not None:
        notify_safely(notifier.submission_published, submission)
    return submission


def unpublish(
    session: Session,
    actor: Actor,
    submission: Submission,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Submission:
    """PUBLISHED -> VALIDATED by an admin. Validation state and votes are kept."""

    admin_id = _require_admin(actor, "unpublish")
    now = now or datetime.now(timezone.utc)
    if submission.status != SubmissionStatus.PUBLISHED or not submission.is_published:
        raise InvalidTransitionError(
            f"Cannot unpublish submission with status: {submission.status}. "
            "Only PUBLISHED submissions can be unpublished."
        )
    submission.status = SubmissionStatus.VALIDATED
    submission.is_published = False
    _audit(session, submission, "unpublish", admin_id, now, reason=reason)
    session.flush()
    return submission


def check_access(submission: Submission, actor: Actor) -> AccessDecision:
    """Decide whether ``actor`` may view ``submission``.

    Published work is public. Otherwise the owner and admins may view it,
    anonymous callers must sign in first and everyone else is denied.
    """

    if submission.status == SubmissionStatus.PUBLISHED:
        return AccessDecision.ALLOW
    if actor.is_anonymous:
        return AccessDecision.LOGIN_REQUIRED
    if actor.is_admin or actor.user_id == submission.user_id:
        return AccessDecision.ALLOW
    return AccessDecision.DENIED
