import unittest

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from arcomp.auth import ANONYMOUS, Actor
from arcomp.errors import AuthorizationError, InvalidTransitionError, ValidationError
from arcomp.models import (
    AuditLog,
    Registration,
    RegistrationStatus,
    Submission,
    SubmissionCategory,
    SubmissionStatus,
    UserRole,
)
from arcomp.submissions import (
    AccessDecision,
    check_access,
    publish,
    reject,
    save_draft,
    submit,
    unpublish,
    validate,
)

from tests.factories import NOW, DBTestCase, RecordingNotifier, minutes

DRAFT = {
    "category": SubmissionCategory.DIGITAL,
    "title": "  Floating Courtyard ",
    "description": "A courtyard house raised over seasonal floodwater.",
    "key_photo_url": "https://files.example.lk/key.jpg",
    "additional_photo_urls": ["https://files.example.lk/2.jpg"],
}


class SubmissionTestCase(DBTestCase):
    def setUp(self):
        super().setUp()
        with self.Session.begin() as session:
            owner = self.add_user(session, "entrant@example.com")
            admin = self.add_user(session, "admin@example.com", UserRole.ADMIN)
            stranger = self.add_user(session, "stranger@example.com")
            competition, individual, _ = self.seed_catalog(session)
            registration = self.add_registration(session, owner.id, competition, individual)
            pending = self.add_registration(
                session, owner.id, competition, individual, RegistrationStatus.PENDING
            )
            self.registration_id = registration.id
            self.pending_registration_id = pending.id
        self.owner = Actor(user_id=owner.id)
        self.admin = Actor(user_id=admin.id, role=UserRole.ADMIN)
        self.stranger = Actor(user_id=stranger.id)

    def registration(self, session, pending: bool = False):
        return session.get(
            Registration, self.pending_registration_id if pending else self.registration_id
        )

    def submitted(self, session) -> Submission:
        submission = save_draft(session, self.owner, self.registration(session), DRAFT)
        return submit(session, self.owner, submission, NOW)


class TestDraftAndSubmit(SubmissionTestCase):
    def test_save_draft_creates_then_updates(self):
        with self.Session.begin() as session:
            submission = save_draft(session, self.owner, self.registration(session), DRAFT)
            self.assertEqual(submission.status, SubmissionStatus.DRAFT)
            self.assertEqual(submission.title, "Floating Courtyard")
            again = save_draft(
                session, self.owner, self.registration(session), {"title": "Courtyard II"}
            )
            self.assertEqual(again.id, submission.id)
            self.assertEqual(again.title, "Courtyard II")
            self.assertEqual(again.additional_photo_urls, ["https://files.example.lk/2.jpg"])

    def test_draft_requires_owner_and_confirmed_registration(self):
        with self.Session.begin() as session:
            with self.assertRaises(AuthorizationError):
                save_draft(session, self.stranger, self.registration(session), DRAFT)
            with self.assertRaises(AuthorizationError):
                save_draft(session, ANONYMOUS, self.registration(session), DRAFT)
            with self.assertRaises(ValidationError):
                save_draft(session, self.owner, self.registration(session, pending=True), DRAFT)

    def test_draft_field_validation(self):
        with self.Session.begin() as session:
            registration = self.registration(session)
            with self.assertRaises(ValidationError):
                save_draft(session, self.owner, registration, {"category": "SCULPTURE"})
            with self.assertRaises(ValidationError):
                save_draft(session, self.owner, registration, {"status": "PUBLISHED"})
            with self.assertRaises(ValidationError):
                save_draft(session, self.owner, registration, {"additional_photo_urls": "x"})

    def test_non_string_fields_are_rejected(self):
        with self.Session.begin() as session:
            registration = self.registration(session)
            with self.assertRaises(ValidationError):
                save_draft(session, self.owner, registration, {"title": 42})
            with self.assertRaises(ValidationError):
                save_draft(session, self.owner, registration, {"video_url": ["a", "b"]})
            submission = save_draft(session, self.owner, registration, {"title": "  Pavilion "})
            self.assertEqual(submission.title, "Pavilion")

    def test_submit_requires_content(self):
        with self.Session.begin() as session:
            submission = save_draft(
                session, self.owner, self.registration(session), {"title": "Only a title"}
            )
            with self.assertRaises(ValidationError) as ctx:
                submit(session, self.owner, submission, NOW)
            self.assertEqual(ctx.exception.details["missing"], ["description", "key photograph"])
            self.assertEqual(submission.status, SubmissionStatus.DRAFT)

    def test_submit_moves_registration_along(self):
        with self.Session.begin() as session:
            submission = self.submitted(session)
            self.assertEqual(submission.status, SubmissionStatus.SUBMITTED)
            self.assertEqual(submission.submitted_at, NOW)
            self.assertEqual(submission.registration.status, RegistrationStatus.SUBMITTED)
            with self.assertRaises(ValidationError):
                save_draft(session, self.owner, submission.registration, {"title": "late edit"})
            with self.assertRaises(InvalidTransitionError):
                submit(session, self.owner, submission, NOW)


class TestReview(SubmissionTestCase):
    def test_validate_then_publish(self):
        notifier = RecordingNotifier()
        with self.Session.begin() as session:
            submission = self.submitted(session)
            validate(session, self.admin, submission, "Looks complete", NOW)
            self.assertTrue(submission.is_validated)
            self.assertEqual(submission.validation_notes, "Looks complete")
            publish(session, self.admin, submission, notifier, NOW + minutes(1))
            self.assertEqual(submission.status, SubmissionStatus.PUBLISHED)
            self.assertTrue(submission.is_published)
            actions = [e.action for e in session.scalars(select(AuditLog).order_by(AuditLog.id))]
            self.assertEqual(actions, ["submission.validate", "submission.publish"])
        self.assertEqual(len(notifier.published), 1)

    def test_publish_from_submitted_validates(self):
        with self.Session.begin() as session:
            submission = self.submitted(session)
            publish(session, self.admin, submission, now=NOW)
            self.assertTrue(submission.is_validated)
            self.assertEqual(submission.validated_by, self.admin.user_id)

    def test_publish_requires_reviewable_state(self):
        with self.Session.begin() as session:
            submission = save_draft(session, self.owner, self.registration(session), DRAFT)
            with self.assertRaises(InvalidTransitionError) as ctx:
                publish(session, self.admin, submission)
            self.assertEqual(
                ctx.exception.message,
                "Only VALIDATED or SUBMITTED submissions can be published",
            )

    def test_non_admin_cannot_review(self):
        with self.Session.begin() as session:
            submission = self.submitted(session)
            for action in (validate, publish, unpublish):
                with self.assertRaises(AuthorizationError):
                    action(session, self.owner, submission)
            with self.assertRaises(AuthorizationError):
                reject(session, self.owner, submission, "nope")
            self.assertEqual(submission.status, SubmissionStatus.SUBMITTED)

    def test_reject_requires_reason(self):
        with self.Session.begin() as session:
            submission = self.submitted(session)
            with self.assertRaises(ValidationError):
                reject(session, self.admin, submission, "   ")
            self.assertEqual(submission.status, SubmissionStatus.SUBMITTED)
            reject(session, self.admin, submission, "Photograph is unreadable", NOW)
            self.assertEqual(submission.status, SubmissionStatus.REJECTED)
            self.assertFalse(submission.is_validated)
            self.assertEqual(submission.validation_errors, {"reason": "Photograph is unreadable"})
            with self.assertRaises(InvalidTransitionError):
                publish(session, self.admin, submission)

    def test_unpublish_keeps_votes(self):
        with self.Session.begin() as session:
            submission = self.submitted(session)
            publish(session, self.admin, submission, now=NOW)
            submission.vote_count = 12
            unpublish(session, self.admin, submission, "Under investigation", NOW)
            self.assertEqual(submission.status, SubmissionStatus.VALIDATED)
            self.assertFalse(submission.is_published)
            self.assertTrue(submission.is_validated)
            self.assertEqual(submission.vote_count, 12)
            self.assertEqual(submission.published_at, NOW)
            with self.assertRaises(InvalidTransitionError):
                unpublish(session, self.admin, submission)

    def test_published_requires_validation_in_database(self):
        with self.Session() as session:
            submission = self.submitted(session)
            submission.status = SubmissionStatus.PUBLISHED
            submission.is_validated = False
            with self.assertRaises(IntegrityError):
                session.flush()
            session.rollback()


class TestAccess(SubmissionTestCase):
    def test_access_rules(self):
        with self.Session.begin() as session:
            submission = self.submitted(session)
            self.assertEqual(check_access(submission, ANONYMOUS), AccessDecision.LOGIN_REQUIRED)
            self.assertEqual(check_access(submission, self.stranger), AccessDecision.DENIED)
            self.assertEqual(check_access(submission, self.owner), AccessDecision.ALLOW)
            self.assertEqual(check_access(submission, self.admin), AccessDecision.ALLOW)
            publish(session, self.admin, submission, now=NOW)
            self.assertEqual(check_access(submission, ANONYMOUS), AccessDecision.ALLOW)
            self.assertEqual(check_access(submission, self.stranger), AccessDecision.ALLOW)


if __name__ == "__main__":
    unittest.main()
