from datetime import datetime, timezone

from sqlalchemy.orm import sessionmaker

from arcomp.config import Settings
from arcomp.db.engine import make_engine
from arcomp.models import (
    Base,
    Competition,
    CompetitionStatus,
    JuryMember,
    ParticipantType,
    RegistrationType,
    User,
    UserRole,
)

REGISTRATION_TYPES = (
    (ParticipantType.INDIVIDUAL, "Individual", "Perfect for solo architects and designers", 1),
    (ParticipantType.TEAM, "Team", "For collaborative design teams (2-4 members)", 4),
    (ParticipantType.COMPANY, "Company", "For established firms and companies", 6),
    (ParticipantType.STUDENT, "Student", "Special rate for students with valid ID", 1),
    (ParticipantType.KIDS, "Kids (below 12)", "For young creative minds under 12 years", 1),
)


def main() -> None:
    """Reset the development database and seed one open competition."""
    settings = Settings.from_env()
    engine = make_engine(settings.db_url)

    # SQLite cannot drop tables with live FK references; switch checks off
    # for the reset only.
    with engine.connect() as conn:
        conn.exec_driver_sql("PRAGMA foreign_keys=OFF")
        Base.metadata.drop_all(bind=conn)
        conn.exec_driver_sql("PRAGMA foreign_keys=ON")

    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine)

    with Session.begin() as session:
        admin = User(email="admin@example.com", name="Competition Admin", role=UserRole.SUPER_ADMIN)
        juror = User(email="juror@example.com", name="Jury Member", role=UserRole.USER)
        entrant = User(email="entrant@example.com", name="Nimal Perera", role=UserRole.USER)
        session.add_all([admin, juror, entrant])
        session.flush()

        competition = Competition(
            slug="innovative-design-challenge-2025",
            title="Innovative Design Challenge",
            description=(
                "Design a sustainable living space that integrates with its "
                "environment while maximizing energy efficiency."
            ),
            year=2025,
            status=CompetitionStatus.REGISTRATION_OPEN,
            currency=settings.payhere.currency,
            registration_deadline=datetime(2025, 12, 31, 23, 59, tzinfo=timezone.utc),
            submission_deadline=datetime(2026, 1, 31, 23, 59, tzinfo=timezone.utc),
        )
        for order, (kind, name, description, max_members) in enumerate(REGISTRATION_TYPES, start=1):
            competition.registration_types.append(
                RegistrationType(
                    type=kind,
                    name=name,
                    description=description,
                    fee=2000.0,
                    max_members=max_members,
                    is_active=True,
                    display_order=order,
                )
            )
        session.add(competition)
        session.flush()

        session.add(
            JuryMember(
                user_id=juror.id,
                title="Principal Architect",
                competition_id=competition.id,
                assigned_by=admin.id,
            )
        )

    print(f"Seeded {settings.db_url}: 3 users, 1 competition, {len(REGISTRATION_TYPES)} registration types")


if __name__ == "__main__":
    main()
