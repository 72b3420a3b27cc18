"""FastAPI application exposing the registration, payment, submission and jury workflows.

The identity provider sits in front of this service and forwards the caller
as ``X-User-Id`` / ``X-User-Role`` headers.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session, sessionmaker

from ..auth import Actor
from ..cart import CartSelection, add_item, get_current_cart, remove_item, summarize_cart
from ..config import Settings
from ..db.engine import get_sessionmaker, make_engine
from ..errors import (
    AuthorizationError,
    ConsistencyError,
    DomainError,
    GatewayError,
    NotFoundError,
)
from ..jury import JuryScoringEngine
from ..models import PaymentMethod, Registration
from ..notifications import LoggingNotifier, NotificationOutbox, Notifier
from ..payhere import PayHereClient, PayHereNotification
from ..reconcile import run_reconciliation
from ..submissions import (
    AccessDecision,
    check_access,
    get_submission,
    publish,
    reject,
    save_draft,
    submit,
    unpublish,
    validate,
)
from ..models.submission import Submission
from ..workflows import (
    checkout,
    handle_payment_notification,
    payment_return_target,
    revert_payment,
    verify_payment,
)
from .schemas import (
    AddCartItemRequest,
    AdminNoteRequest,
    CheckoutRequest,
    JuryScoreRequest,
    RevertPaymentRequest,
    SaveDraftRequest,
    VerifyPaymentRequest,
    cart_out,
    payment_out,
    progress_out,
    registration_out,
    submission_out,
)

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (ConsistencyError, 409),
    (GatewayError, 502),
)


def get_actor(
    x_user_id: Optional[int] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Actor:
    if x_user_id is None:
        return Actor()
    return Actor(user_id=x_user_id, role=(x_user_role or "USER").upper())


@contextmanager
def unit_of_work(
    session_factory: sessionmaker, notifier: Notifier
) -> Iterator[tuple[Session, NotificationOutbox]]:
    """Open a transaction whose notifications go out only after it commits."""

    outbox = NotificationOutbox(notifier)
    try:
        with session_factory.begin() as session:
            yield session, outbox
    except BaseException:
        outbox.discard()
        raise
    outbox.send()


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    notifier: Optional[Notifier] = None,
    payhere_client: Optional[PayHereClient] = None,
) -> FastAPI:
    """Build the application.

    Parameters
    ----------
    settings : Settings, optional
        Defaults to :meth:`Settings.from_env`.
    session_factory : sessionmaker, optional
        Defaults to a session factory over ``settings.db_url``.
    notifier : Notifier, optional
        Defaults to :class:`LoggingNotifier`.
    payhere_client : PayHereClient, optional
        Used by ``POST /admin/reconcile``. Built from settings when the
        merchant API credentials are configured.
    """

    settings = settings or Settings.from_env()
    if session_factory is None:
        engine = make_engine(
            settings.db_url, statement_timeout_ms=settings.db_statement_timeout_ms
        )
        session_factory = get_sessionmaker(engine)
    notifier = notifier or LoggingNotifier()
    if payhere_client is None and settings.payhere.app_id and settings.payhere.app_secret:
        payhere_client = PayHereClient(settings.payhere)

    app = FastAPI(title="Architecture Competition Service API")

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError):
        status = 400
        for error_cls, code in ERROR_STATUS:
            if isinstance(exc, error_cls):
                status = code
                break
        if status == 403:
            logger.warning(f"Forbidden {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=status,
            content={
                "success": False,
                "error": exc.message,
                "code": exc.code.value,
                "details": exc.details,
            },
        )

    # -------- cart --------
    @app.get("/competitions/cart")
    def read_cart(actor: Actor = Depends(get_actor)):
        user_id = actor.require_user()
        with session_factory.begin() as session:
            cart = get_current_cart(session, user_id)
            return {"success": True, "data": cart_out(summarize_cart(cart))}

    @app.post("/competitions/cart/items")
    def add_cart_item(body: AddCartItemRequest, actor: Actor = Depends(get_actor)):
        user_id = actor.require_user()
        selection = CartSelection(
            competition_id=body.competition_id,
            registration_type_id=body.registration_type_id,
            country=body.country,
            members=body.members,
            participant_type=body.participant_type,
            referral_source=body.referral_source,
            team_name=body.team_name,
            company_name=body.company_name,
            **body.agreements.model_dump(),
        )
        with session_factory.begin() as session:
            item = add_item(session, user_id, selection, settings)
            return {
                "success": True,
                "message": "Registration added to cart successfully",
                "data": {"cart_item_id": item.id, "cart": cart_out(summarize_cart(item.cart))},
            }

    @app.delete("/competitions/cart/items/{item_id}")
    def delete_cart_item(item_id: int, actor: Actor = Depends(get_actor)):
        user_id = actor.require_user()
        with session_factory.begin() as session:
            remove_item(session, user_id, item_id)
            cart = get_current_cart(session, user_id)
            return {"success": True, "data": cart_out(summarize_cart(cart))}

    # -------- checkout & gateway --------
    @app.post("/competitions/checkout")
    def create_checkout(body: CheckoutRequest, actor: Actor = Depends(get_actor)):
        user_id = actor.require_user()
        method = (
            PaymentMethod.BANK_TRANSFER
            if body.payment_method.lower() in ("bank", "bank_transfer")
            else PaymentMethod.PAYHERE
        )
        with session_factory.begin() as session:
            result = checkout(
                session,
                user_id,
                body.customer_info.model_dump(),
                method=method,
                settings=settings,
                bank_slip_url=body.bank_slip_url,
            )
            return {
                "success": True,
                "message": result.message,
                "data": {
                    "order_id": result.order_id,
                    "amount": result.amount,
                    "payment_url": result.payment_url,
                    "payment_data": result.payment_data,
                    "registrations": [registration_out(r) for r in result.registrations],
                },
            }

    def _process_notification(form: dict) -> dict:
        notification = PayHereNotification.from_form(form)
        with unit_of_work(session_factory, notifier) as (session, outbox):
            result = handle_payment_notification(
                session, notification, settings=settings, notifier=outbox
            )
            return {
                "success": True,
                "outcome": result.outcome.value,
                "payment": payment_out(result.payment),
            }

    @app.post("/competitions/payment/notify")
    async def payment_notify(request: Request):
        form = await request.form()
        return await run_in_threadpool(_process_notification, dict(form))

    @app.get("/competitions/payment/return/{order_id}")
    def payment_return(order_id: str):
        with session_factory() as session:
            target = payment_return_target(session, order_id)
        return RedirectResponse(target, status_code=303)

    # -------- submissions --------
    @app.post("/submissions")
    def save_submission_draft(body: SaveDraftRequest, actor: Actor = Depends(get_actor)):
        fields = body.model_dump(exclude={"registration_number"}, exclude_unset=True)
        with session_factory.begin() as session:
            registration = Registration.get_by_number(session, body.registration_number)
            if registration is None:
                raise NotFoundError("Registration not found")
            submission = save_draft(session, actor, registration, fields)
            return {"success": True, "data": submission_out(submission)}

    @app.post("/submissions/{submission_id}/submit")
    def submit_submission(submission_id: int, actor: Actor = Depends(get_actor)):
        with session_factory.begin() as session:
            submission = submit(session, actor, get_submission(session, submission_id))
            return {"success": True, "data": submission_out(submission)}

    @app.get("/submissions/{registration_number}")
    def read_submission(registration_number: str, actor: Actor = Depends(get_actor)):
        with session_factory() as session:
            submission = Submission.get_by_registration_number(session, registration_number)
            if submission is None:
                raise NotFoundError("Submission not found")
            decision = check_access(submission, actor)
            if decision is AccessDecision.LOGIN_REQUIRED:
                callback = quote(f"/submissions/{registration_number}", safe="")
                return RedirectResponse(f"/auth/login?callbackUrl={callback}", status_code=303)
            if decision is AccessDecision.DENIED:
                raise AuthorizationError("You do not have access to this submission")
            return {"success": True, "data": submission_out(submission)}

    @app.post("/admin/submissions/{submission_id}/validate")
    def admin_validate(
        submission_id: int, body: Optional[AdminNoteRequest] = None, actor: Actor = Depends(get_actor)
    ):
        notes = body.notes if body else None
        with session_factory.begin() as session:
            submission = validate(session, actor, get_submission(session, submission_id), notes)
            return {"success": True, "data": submission_out(submission)}

    @app.post("/admin/submissions/{submission_id}/reject")
    def admin_reject(
        submission_id: int, body: Optional[AdminNoteRequest] = None, actor: Actor = Depends(get_actor)
    ):
        reason = body.reason if body else None
        with session_factory.begin() as session:
            submission = reject(session, actor, get_submission(session, submission_id), reason)
            return {"success": True, "data": submission_out(submission)}

    @app.post("/admin/submissions/{submission_id}/publish")
    def admin_publish(submission_id: int, actor: Actor = Depends(get_actor)):
        with unit_of_work(session_factory, notifier) as (session, outbox):
            submission = publish(
                session, actor, get_submission(session, submission_id), notifier=outbox
            )
            return {"success": True, "data": submission_out(submission)}

    @app.post("/admin/submissions/{submission_id}/unpublish")
    def admin_unpublish(
        submission_id: int, body: Optional[AdminNoteRequest] = None, actor: Actor = Depends(get_actor)
    ):
        reason = body.reason if body else None
        with session_factory.begin() as session:
            submission = unpublish(session, actor, get_submission(session, submission_id), reason)
            return {"success": True, "data": submission_out(submission)}

    # -------- admin payments --------
    @app.post("/admin/payments/{payment_id}/verify")
    def admin_verify_payment(
        payment_id: int, body: VerifyPaymentRequest, actor: Actor = Depends(get_actor)
    ):
        with unit_of_work(session_factory, notifier) as (session, outbox):
            payment = verify_payment(
                session,
                actor,
                payment_id,
                body.approve,
                body.reason,
                settings=settings,
                notifier=outbox,
            )
            message = (
                "Payment approved and user notified"
                if body.approve
                else "Payment rejected and user notified"
            )
            return {"success": True, "message": message, "data": payment_out(payment)}

    @app.post("/admin/payments/{payment_id}/revert")
    def admin_revert_payment(
        payment_id: int,
        body: Optional[RevertPaymentRequest] = None,
        actor: Actor = Depends(get_actor),
    ):
        reason = body.reason if body else None
        with session_factory.begin() as session:
            payment = revert_payment(session, actor, payment_id, reason)
            return {
                "success": True,
                "message": "Payment reverted to PENDING",
                "data": payment_out(payment),
            }

    @app.post("/admin/reconcile")
    def admin_reconcile(actor: Actor = Depends(get_actor)):
        actor.require_admin()
        with unit_of_work(session_factory, notifier) as (session, outbox):
            summary = run_reconciliation(
                session, client=payhere_client, settings=settings, notifier=outbox
            )
            return {"success": True, "data": summary}

    # -------- jury --------
    @app.put("/jury/scores/{registration_number}")
    def put_jury_score(
        registration_number: str, body: JuryScoreRequest, actor: Actor = Depends(get_actor)
    ):
        user_id = actor.require_user()
        with session_factory.begin() as session:
            engine = JuryScoringEngine(session)
            member = engine.get_member(user_id)
            score = engine.submit_score(
                member,
                registration_number,
                body.model_extra or {},
                comments=body.comments,
            )
            return {
                "success": True,
                "data": {
                    "registration_number": score.registration_number,
                    "total_score": score.total_score,
                    "has_finished": engine.has_finished(member),
                },
            }

    @app.get("/jury/progress")
    def get_jury_progress(actor: Actor = Depends(get_actor)):
        user_id = actor.require_user()
        with session_factory() as session:
            engine = JuryScoringEngine(session)
            member = engine.get_member(user_id)
            progress = engine.compute_progress(member)
            return {
                "success": True,
                "data": {**progress_out(progress), "has_finished": engine.has_finished(member)},
            }

    return app
