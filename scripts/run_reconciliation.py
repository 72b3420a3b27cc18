"""Run the payment and cart reconciliation passes once.

Meant for cron or a scheduler; every pass is idempotent.
"""

from __future__ import annotations

import json
import logging

from arcomp.config import Settings
from arcomp.db.engine import get_sessionmaker, make_engine
from arcomp.notifications import LoggingNotifier, NotificationOutbox
from arcomp.payhere import PayHereClient
from arcomp.reconcile import run_reconciliation

logger = logging.getLogger(__name__)


def main() -> int:
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    settings = Settings.from_env()

    client = None
    if settings.payhere.app_id and settings.payhere.app_secret:
        client = PayHereClient(settings.payhere)
    else:
        logger.warning(
            "PAYHERE_APP_ID/PAYHERE_APP_SECRET not set; stuck payments are only expired"
        )

    engine = make_engine(settings.db_url, statement_timeout_ms=settings.db_statement_timeout_ms)
    Session = get_sessionmaker(engine)
    outbox = NotificationOutbox(LoggingNotifier())
    try:
        with Session.begin() as session:
            summary = run_reconciliation(
                session, client=client, settings=settings, notifier=outbox
            )
        outbox.send()
    finally:
        engine.dispose()

    print(json.dumps(summary, indent=2, sort_keys=True))
    return 1 if summary["payments"]["errors"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
