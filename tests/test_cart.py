import unittest
from datetime import timedelta
from unittest.mock import patch

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError

from arcomp.cart import (
    add_item,
    cart_expiry,
    expire_stale_carts,
    fix_duplicate_active_carts,
    get_current_cart,
    get_or_create_cart,
    is_valid_phone,
    remove_item,
    sanitize_member,
    summarize_cart,
    validate_member,
)
from arcomp.errors import NotFoundError, ValidationError
from arcomp.models import CartStatus, ParticipantType, RegistrationCart

from tests.factories import (
    NOW,
    DBTestCase,
    FileDatabaseMixin,
    individual_member,
    kids_member,
    make_selection,
    make_settings,
    minutes,
    student_member,
)


class TestMemberValidation(unittest.TestCase):
    def test_individual_member_ok(self):
        self.assertEqual(validate_member(individual_member(), ParticipantType.INDIVIDUAL), [])

    def test_individual_requires_email_and_international_phone(self):
        errors = validate_member(
            {"name": "Al", "email": "not-an-email", "phone": "0771234567"},
            ParticipantType.TEAM,
        )
        self.assertIn("Valid email is required", errors)
        self.assertIn("Invalid phone number format (use format: +94771234567)", errors)

    def test_short_name(self):
        errors = validate_member({**individual_member(), "name": " A "}, ParticipantType.INDIVIDUAL)
        self.assertEqual(errors, ["Name must be at least 2 characters"])

    def test_student_and_kids_rules(self):
        self.assertEqual(validate_member(student_member(), ParticipantType.STUDENT), [])
        self.assertEqual(validate_member(kids_member(), ParticipantType.KIDS), [])

        student = student_member()
        del student["id_card_url"]
        self.assertEqual(
            validate_member(student, ParticipantType.STUDENT),
            ["Student ID card upload is required for student registrations"],
        )
        kid = kids_member()
        kid["postal_address"] = "  "
        self.assertEqual(
            validate_member(kid, ParticipantType.KIDS),
            ["Postal address is required for kids registrations"],
        )

    def test_phone_formats(self):
        self.assertTrue(is_valid_phone("+94 (77) 123-4567"))
        self.assertFalse(is_valid_phone("+94 77 12"))
        self.assertFalse(is_valid_phone(None))

    def test_sanitize_member_strips_markup(self):
        cleaned = sanitize_member({"name": " <b>Nimal</b> ", "age": 30, "note": None})
        self.assertEqual(cleaned, {"name": "bNimal/b", "age": 30})


class TestCartStore(DBTestCase):
    def setUp(self):
        super().setUp()
        with self.Session.begin() as session:
            self.user_id = self.add_user(session, "entrant@example.com").id
            competition, individual, team = self.seed_catalog(session)
            self.competition_id = competition.id
            self.individual_id = individual.id
            self.team_id = team.id

    def test_add_item_creates_single_active_cart(self):
        with self.Session.begin() as session:
            first = add_item(
                session,
                self.user_id,
                make_selection(self.competition_id, self.individual_id),
                self.settings,
                NOW,
            )
            second = add_item(
                session,
                self.user_id,
                make_selection(
                    self.competition_id,
                    self.team_id,
                    members=[individual_member(), individual_member("Amaya", "a@example.com")],
                    team_name="Studio <Lanka>",
                ),
                self.settings,
                NOW + minutes(5),
            )
            self.assertEqual(first.cart_id, second.cart_id)
            self.assertEqual(second.team_name, "Studio Lanka")
            self.assertEqual(second.participant_type, ParticipantType.TEAM)
            self.assertEqual(second.subtotal, 3000.0)

        with self.Session() as session:
            carts = session.scalars(select(RegistrationCart)).all()
            self.assertEqual(len(carts), 1)
            summary = summarize_cart(carts[0])
            self.assertEqual(summary.item_count, 2)
            self.assertEqual(summary.total, 5000.0)
            self.assertEqual(summary.items[1]["member_count"], 2)

    def test_expiry_is_pushed_forward_on_add(self):
        with self.Session.begin() as session:
            add_item(
                session, self.user_id, make_selection(self.competition_id, self.individual_id),
                self.settings, NOW,
            )
            item = add_item(
                session, self.user_id, make_selection(self.competition_id, self.individual_id),
                self.settings, NOW + minutes(20),
            )
            self.assertEqual(item.cart.expires_at, NOW + minutes(50))

    def test_disabled_expiry(self):
        settings = make_settings(cart_expiry_disabled=True)
        self.assertGreater(cart_expiry(settings, NOW), NOW + timedelta(days=3000))

    def test_rejects_invalid_selections(self):
        cases = [
            (make_selection(self.competition_id, self.individual_id, country=" "), ValidationError),
            (make_selection(self.competition_id, self.individual_id, members=[]), ValidationError),
            (
                make_selection(
                    self.competition_id,
                    self.individual_id,
                    members=[individual_member(), individual_member("Amaya", "a@example.com")],
                ),
                ValidationError,
            ),
            (
                make_selection(self.competition_id, self.individual_id, agreed_to_refund_policy=False),
                ValidationError,
            ),
            (make_selection(self.competition_id, 9999), NotFoundError),
            (make_selection(9999, self.individual_id), NotFoundError),
        ]
        for selection, error in cases:
            with self.subTest(selection=selection):
                with self.Session.begin() as session:
                    with self.assertRaises(error):
                        add_item(session, self.user_id, selection, self.settings, NOW)
        with self.Session() as session:
            self.assertEqual(session.scalars(select(RegistrationCart)).all(), [])

    def test_member_error_names_the_member(self):
        members = [individual_member("Nimal"), {"name": "Amaya", "email": "bad", "phone": "+94771234567"}]
        with self.Session.begin() as session:
            with self.assertRaises(ValidationError) as ctx:
                add_item(
                    session,
                    self.user_id,
                    make_selection(self.competition_id, self.team_id, members=members),
                    self.settings,
                    NOW,
                )
        self.assertTrue(ctx.exception.message.startswith("Member 2:"))
        self.assertEqual(ctx.exception.details["member"], 2)

    def test_deadline_passed(self):
        with self.Session.begin() as session:
            closed = self.add_competition(session, slug="closed", deadline=NOW - minutes(1))
            reg_type = self.add_registration_type(session, closed)
            with self.assertRaises(ValidationError):
                add_item(
                    session, self.user_id, make_selection(closed.id, reg_type.id),
                    self.settings, NOW,
                )

    def test_inactive_registration_type(self):
        with self.Session.begin() as session:
            competition = self.add_competition(session, slug="other")
            inactive = self.add_registration_type(session, competition, is_active=False)
            with self.assertRaises(NotFoundError):
                add_item(
                    session, self.user_id, make_selection(competition.id, inactive.id),
                    self.settings, NOW,
                )

    def test_remove_item(self):
        with self.Session.begin() as session:
            item = add_item(
                session, self.user_id, make_selection(self.competition_id, self.individual_id),
                self.settings, NOW,
            )
            item_id = item.id
        with self.Session.begin() as session:
            remove_item(session, self.user_id, item_id, NOW)
            self.assertEqual(get_current_cart(session, self.user_id, NOW).items, [])
        with self.Session.begin() as session:
            with self.assertRaises(NotFoundError):
                remove_item(session, self.user_id, item_id, NOW)

    def test_cannot_remove_another_users_item(self):
        with self.Session.begin() as session:
            other = self.add_user(session, "other@example.com")
            item = add_item(
                session, other.id, make_selection(self.competition_id, self.individual_id),
                self.settings, NOW,
            )
            with self.assertRaises(NotFoundError):
                remove_item(session, self.user_id, item.id, NOW)

    def test_expired_cart_is_replaced(self):
        with self.Session.begin() as session:
            old = get_or_create_cart(session, self.user_id, self.settings, NOW)
            old_id = old.id
        later = NOW + minutes(31)
        with self.Session.begin() as session:
            self.assertIsNone(get_current_cart(session, self.user_id, later))
            fresh = get_or_create_cart(session, self.user_id, self.settings, later)
            self.assertNotEqual(fresh.id, old_id)
            self.assertEqual(session.get(RegistrationCart, old_id).status, CartStatus.EXPIRED)

    def test_database_rejects_second_active_cart(self):
        with self.Session.begin() as session:
            get_or_create_cart(session, self.user_id, self.settings, NOW)
        with self.Session() as session:
            session.add(
                RegistrationCart(
                    user_id=self.user_id,
                    status=CartStatus.ACTIVE,
                    expires_at=NOW + minutes(30),
                )
            )
            with self.assertRaises(IntegrityError):
                session.flush()
            session.rollback()

    def test_inactive_carts_do_not_count_against_the_index(self):
        with self.Session.begin() as session:
            for status in (CartStatus.COMPLETED, CartStatus.EXPIRED, CartStatus.ABANDONED):
                session.add(
                    RegistrationCart(user_id=self.user_id, status=status, expires_at=NOW)
                )
            session.flush()
            cart = get_or_create_cart(session, self.user_id, self.settings, NOW)
            self.assertEqual(cart.status, CartStatus.ACTIVE)

    def test_fix_duplicate_active_carts_keeps_newest(self):
        # Legacy data written before the partial unique index existed
        with self.engine.begin() as conn:
            conn.execute(text("DROP INDEX uq_registration_carts_user_active"))
        with self.Session.begin() as session:
            for offset in (0, 1, 2):
                session.add(
                    RegistrationCart(
                        user_id=self.user_id,
                        status=CartStatus.ACTIVE,
                        expires_at=NOW + minutes(60),
                        created_at=NOW + minutes(offset),
                    )
                )
        with self.Session.begin() as session:
            self.assertEqual(fix_duplicate_active_carts(session), 2)
            self.assertEqual(fix_duplicate_active_carts(session), 0)
            active = session.scalars(
                select(RegistrationCart).where(RegistrationCart.status == CartStatus.ACTIVE)
            ).all()
            self.assertEqual(len(active), 1)
            self.assertEqual(active[0].id, 3)

    def test_get_current_cart_resolves_duplicates(self):
        with self.engine.begin() as conn:
            conn.execute(text("DROP INDEX uq_registration_carts_user_active"))
        with self.Session.begin() as session:
            for offset in (0, 1):
                session.add(
                    RegistrationCart(
                        user_id=self.user_id,
                        status=CartStatus.ACTIVE,
                        expires_at=NOW + minutes(60),
                        created_at=NOW + minutes(offset),
                    )
                )
        with self.Session.begin() as session:
            cart = get_current_cart(session, self.user_id, NOW)
            self.assertEqual(cart.id, 2)
            self.assertEqual(session.get(RegistrationCart, 1).status, CartStatus.ABANDONED)

    def test_expire_stale_carts(self):
        with self.Session.begin() as session:
            get_or_create_cart(session, self.user_id, self.settings, NOW)
        with self.Session.begin() as session:
            self.assertEqual(expire_stale_carts(session, NOW + minutes(10)), 0)
            self.assertEqual(expire_stale_carts(session, NOW + minutes(30)), 1)
            self.assertEqual(expire_stale_carts(session, NOW + minutes(40)), 0)


class TestConcurrentCartCreation(FileDatabaseMixin, DBTestCase):
    def setUp(self):
        super().setUp()
        with self.Session.begin() as session:
            self.user_id = self.add_user(session, "entrant@example.com").id
            competition, individual, _ = self.seed_catalog(session)
            self.competition_id = competition.id
            self.individual_id = individual.id

    def test_losing_request_adds_to_the_winning_cart(self):
        with self.Session.begin() as winner:
            winning_id = get_or_create_cart(winner, self.user_id, self.settings, NOW).id

        lookups = []

        def looked_before_winner_committed(session, user_id, now=None):
            lookups.append(user_id)
            if len(lookups) == 1:
                return None
            return get_current_cart(session, user_id, now)

        with self.Session.begin() as loser:
            with patch(
                "arcomp.cart.get_current_cart", side_effect=looked_before_winner_committed
            ):
                item = add_item(
                    loser,
                    self.user_id,
                    make_selection(self.competition_id, self.individual_id),
                    self.settings,
                    NOW + minutes(1),
                )
            self.assertEqual(item.cart_id, winning_id)
            self.assertEqual(len(lookups), 2)

        with self.Session() as session:
            carts = session.scalars(select(RegistrationCart)).all()
            self.assertEqual([c.id for c in carts], [winning_id])
            self.assertEqual(len(carts[0].items), 1)


if __name__ == "__main__":
    unittest.main()
