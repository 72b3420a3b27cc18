"""Shared builders for the database-backed test cases."""

import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.pool import StaticPool

from arcomp.cart import CartSelection, add_item
from arcomp.config import PayHereConfig, Settings
from arcomp.db.engine import get_sessionmaker, make_engine
from arcomp.models import (
    Base,
    Competition,
    CompetitionStatus,
    ParticipantType,
    Registration,
    RegistrationStatus,
    RegistrationType,
    Submission,
    SubmissionCategory,
    SubmissionStatus,
    User,
    UserRole,
)
from arcomp.notifications import Notifier
from arcomp.payhere import (
    GatewayPayment,
    PayHereClient,
    PayHereNotification,
    map_gateway_status,
    notification_signature,
)
from arcomp.workflows import handle_payment_notification

NOW = datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc)
FAR_FUTURE = datetime(2099, 12, 31, tzinfo=timezone.utc)

MERCHANT_ID = "1211149"
MERCHANT_SECRET = "MzQ1NjcyMTk4NTExMjM0NTY3ODkwMTIzNA=="


def make_settings(**overrides) -> Settings:
    payhere = PayHereConfig(
        merchant_id=MERCHANT_ID,
        merchant_secret=MERCHANT_SECRET,
        mode="sandbox",
        currency="LKR",
        return_url="https://arc.example.lk/competitions/payment/return",
        cancel_url="https://arc.example.lk/competitions/cart",
        notify_url="https://arc.example.lk/competitions/payment/notify",
        app_id="app-id",
        app_secret="app-secret",
    )
    values = {"db_url": "sqlite+pysqlite:///:memory:", "payhere": payhere}
    values.update(overrides)
    return Settings(**values)


def individual_member(name: str = "Nimal Perera", email: str = "nimal@example.com") -> dict:
    return {"name": name, "email": email, "phone": "+94 77 123 4567", "role": "Lead"}


def student_member() -> dict:
    return {
        "name": "Kasun Silva",
        "student_email": "kasun@uni.example.lk",
        "phone": "+94771234567",
        "institution": "University of Moratuwa",
        "course_of_study": "Architecture",
        "date_of_birth": "2002-05-14",
        "id_card_url": "https://files.example.lk/id/kasun.png",
    }


def kids_member() -> dict:
    return {
        "name": "Sanduni",
        "parent_email": "parent@example.com",
        "parent_phone": "+94712345678",
        "parent_first_name": "Ruwan",
        "parent_last_name": "Fernando",
        "date_of_birth": "2016-02-01",
        "postal_address": "12 Lake Road, Kandy",
    }


def make_selection(
    competition_id: int,
    registration_type_id: int,
    members: Optional[list] = None,
    **overrides,
) -> CartSelection:
    values = dict(
        competition_id=competition_id,
        registration_type_id=registration_type_id,
        country="Sri Lanka",
        members=members if members is not None else [individual_member()],
        agreed_to_terms=True,
        agreed_to_website_terms=True,
        agreed_to_privacy_policy=True,
        agreed_to_refund_policy=True,
    )
    values.update(overrides)
    return CartSelection(**values)


def signed_form(
    order_id: str,
    amount: str,
    status_code: str,
    currency: str = "LKR",
    merchant_id: str = MERCHANT_ID,
    secret: str = MERCHANT_SECRET,
    **extra,
) -> dict:
    """Form fields of a PayHere notification, signed like the gateway does."""
    form = {
        "merchant_id": merchant_id,
        "order_id": order_id,
        "payment_id": "320025071278",
        "payhere_amount": amount,
        "payhere_currency": currency,
        "status_code": status_code,
        "method": "VISA",
        "status_message": "Successfully completed the payment.",
        "card_holder_name": "N PERERA",
        "card_no": "************1292",
    }
    form.update(extra)
    form["md5sig"] = notification_signature(
        merchant_id, order_id, amount, currency, status_code, secret
    )
    return form


class DBTestCase(unittest.TestCase):
    """In-memory SQLite with the application's engine setup (FKs, savepoints)."""

    def make_test_engine(self):
        return make_engine("sqlite+pysqlite:///:memory:", poolclass=StaticPool)

    def setUp(self):
        self.engine = self.make_test_engine()
        Base.metadata.create_all(self.engine)
        self.Session = get_sessionmaker(self.engine)
        self.settings = make_settings()

    def tearDown(self):
        self.engine.dispose()

    def add_user(self, session, email: str, role: str = UserRole.USER) -> User:
        user = User(email=email, name=email.split("@")[0], role=role)
        session.add(user)
        session.flush()
        return user

    def add_competition(
        self,
        session,
        slug: str = "innovative-design-challenge-2025",
        year: int = 2025,
        deadline: datetime = FAR_FUTURE,
    ) -> Competition:
        competition = Competition(
            slug=slug,
            title="Innovative Design Challenge",
            year=year,
            status=CompetitionStatus.REGISTRATION_OPEN,
            registration_deadline=deadline,
        )
        session.add(competition)
        session.flush()
        return competition

    def add_registration_type(
        self,
        session,
        competition: Competition,
        kind: str = ParticipantType.INDIVIDUAL,
        fee: float = 2000.0,
        max_members: int = 1,
        is_active: bool = True,
    ) -> RegistrationType:
        reg_type = RegistrationType(
            competition_id=competition.id,
            type=kind,
            name=kind.title(),
            fee=fee,
            max_members=max_members,
            is_active=is_active,
        )
        session.add(reg_type)
        session.flush()
        return reg_type

    def seed_catalog(self, session):
        """One competition with INDIVIDUAL (2000) and TEAM (3000, 4 members) tiers."""
        competition = self.add_competition(session)
        individual = self.add_registration_type(session, competition)
        team = self.add_registration_type(
            session, competition, ParticipantType.TEAM, fee=3000.0, max_members=4
        )
        return competition, individual, team

    def add_registration(
        self,
        session,
        user_id: int,
        competition: Competition,
        reg_type: RegistrationType,
        status: str = RegistrationStatus.CONFIRMED,
    ) -> Registration:
        registration = Registration(
            user_id=user_id,
            competition_id=competition.id,
            registration_type_id=reg_type.id,
            participant_type=reg_type.type,
            country="Sri Lanka",
            members=[individual_member()],
            amount_paid=reg_type.fee,
            status=RegistrationStatus.PENDING,
        )
        registration.competition = competition
        with session.no_autoflush:
            session.add(registration)
            registration.ensure_registration_number(session)
            if status == RegistrationStatus.CONFIRMED:
                registration.confirm(session, NOW)
            else:
                registration.status = status
        session.flush()
        return registration

    def add_published_submission(self, session, registration: Registration) -> Submission:
        submission = Submission(
            registration_id=registration.id,
            user_id=registration.user_id,
            competition_id=registration.competition_id,
            registration_number=registration.registration_number,
            category=SubmissionCategory.DIGITAL,
            title="Floating Courtyard",
            description="A courtyard house raised over seasonal floodwater.",
            key_photo_url="https://files.example.lk/key.jpg",
            additional_photo_urls=[],
            status=SubmissionStatus.PUBLISHED,
            is_validated=True,
            is_published=True,
            published_at=NOW,
        )
        session.add(submission)
        session.flush()
        return submission


def minutes(n: int) -> timedelta:
    return timedelta(minutes=n)


CUSTOMER = {
    "first_name": "Nimal",
    "last_name": "Perera",
    "email": "nimal@example.com",
    "phone": "+94771234567",
    "country": "Sri Lanka",
}


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.confirmed = []
        self.failed = []
        self.published = []

    def registration_confirmed(self, payment, registrations):
        self.confirmed.append((payment.order_id, [r.registration_number for r in registrations]))
        if self.fail:
            raise RuntimeError("smtp down")

    def payment_failed(self, payment, reason):
        self.failed.append((payment.order_id, reason))

    def submission_published(self, submission):
        self.published.append(submission.registration_number)


class FileDatabaseMixin:
    """Put the test database in a file so every session gets its own connection."""

    def make_test_engine(self):
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        return make_engine(f"sqlite+pysqlite:///{os.path.join(tmpdir.name, 'arcomp.db')}")


class CheckoutTestCase(DBTestCase):
    """A user, a two-tier catalog and helpers to fill a cart and post notifications."""

    def setUp(self):
        super().setUp()
        with self.Session.begin() as session:
            self.user_id = self.add_user(session, "entrant@example.com").id
            competition, individual, team = self.seed_catalog(session)
            self.competition_id = competition.id
            self.individual_id = individual.id
            self.team_id = team.id

    def fill_cart(self, session):
        first = add_item(
            session, self.user_id, make_selection(self.competition_id, self.individual_id),
            self.settings, NOW,
        )
        second = add_item(
            session,
            self.user_id,
            make_selection(
                self.competition_id,
                self.team_id,
                members=[individual_member(), individual_member("Amaya", "amaya@example.com")],
                team_name="Studio Lanka",
            ),
            self.settings,
            NOW,
        )
        return first.cart, [first, second]

    def notify(self, session, form, notifier=None):
        return handle_payment_notification(
            session,
            PayHereNotification.from_form(form),
            settings=self.settings,
            notifier=notifier or RecordingNotifier(),
            now=NOW + minutes(2),
        )


# 71 points out of 100
SAMPLE_SCORES = {
    "concept_score": 8,
    "relevance_score": 12.5,
    "composition_score": 7,
    "balance_score": 6,
    "colour_score": 9,
    "design_relativity_score": 5,
    "aesthetic_appeal_score": 16,
    "unconventional_materials_score": 4,
    "overall_material_score": 3.5,
}


def gateway_payment(order_id: str, status: str, amount: str = "5000.00") -> GatewayPayment:
    raw = {
        "payment_id": 320025071278,
        "order_id": order_id,
        "status": status,
        "amount": amount,
        "currency": "LKR",
        "payment_method": "VISA",
    }
    return GatewayPayment(
        order_id=order_id,
        payment_id="320025071278",
        status=status,
        outcome=map_gateway_status(status),
        amount=amount,
        currency="LKR",
        method="VISA",
        raw=raw,
    )


class FakeGateway(PayHereClient):
    """PayHereClient answering ``retrieve_payment`` without the network."""

    def __init__(self, status: Optional[str] = None, amount: str = "5000.00", error=None):
        super().__init__(make_settings().payhere)
        self.status = status
        self.amount = amount
        self.error = error
        self.calls = []

    def retrieve_payment(self, order_id):
        self.calls.append(order_id)
        if self.error is not None:
            raise self.error
        if self.status is None:
            return None
        return gateway_payment(order_id, self.status, self.amount)
