"""Request models and response shapes for the HTTP layer."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from ..cart import CartSummary
from ..db.utils import dt_iso
from ..jury import JuryProgress
from ..models import Payment, Registration, Submission


class Agreements(BaseModel):
    agreed_to_terms: bool = False
    agreed_to_website_terms: bool = False
    agreed_to_privacy_policy: bool = False
    agreed_to_refund_policy: bool = False


class AddCartItemRequest(BaseModel):
    competition_id: int
    registration_type_id: int
    country: str = ""
    participant_type: Optional[str] = Field(
        None, description="Defaults to the registration type"
    )
    referral_source: Optional[str] = None
    team_name: Optional[str] = None
    company_name: Optional[str] = None
    members: list[dict[str, Any]] = Field(default_factory=list)
    agreements: Agreements = Field(default_factory=Agreements)


class CustomerInfo(BaseModel):
    first_name: str = ""
    last_name: str = ""
    email: EmailStr
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    country: str = ""


class CheckoutRequest(BaseModel):
    payment_method: str = Field("card", description="card|bank")
    customer_info: CustomerInfo
    bank_slip_url: Optional[str] = None


class SaveDraftRequest(BaseModel):
    registration_number: str
    category: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    key_photo_url: Optional[str] = None
    additional_photo_urls: Optional[list[str]] = None
    document_url: Optional[str] = None
    video_url: Optional[str] = None


class AdminNoteRequest(BaseModel):
    notes: Optional[str] = None
    reason: Optional[str] = None


class VerifyPaymentRequest(BaseModel):
    approve: bool
    reason: Optional[str] = None


class RevertPaymentRequest(BaseModel):
    reason: Optional[str] = None


class JuryScoreRequest(BaseModel):
    """Rubric scores are validated by the scoring engine, not here."""

    model_config = ConfigDict(extra="allow")

    comments: Optional[str] = None


def cart_out(summary: CartSummary) -> dict[str, Any]:
    return {
        "cart_id": summary.cart_id,
        "status": summary.status,
        "expires_at": dt_iso(summary.expires_at),
        "item_count": summary.item_count,
        "total": summary.total,
        "items": summary.items,
    }


def registration_out(registration: Registration) -> dict[str, Any]:
    return {
        "id": registration.id,
        "registration_number": registration.registration_number,
        "display_code": registration.display_code,
        "competition_id": registration.competition_id,
        "status": registration.status,
        "participant_type": registration.participant_type,
        "amount_paid": registration.amount_paid,
        "currency": registration.currency,
        "confirmed_at": dt_iso(registration.confirmed_at),
    }


def payment_out(payment: Payment) -> dict[str, Any]:
    return {
        "id": payment.id,
        "order_id": payment.order_id,
        "status": payment.status,
        "method": payment.method,
        "amount": payment.amount,
        "currency": payment.currency,
        "completed_at": dt_iso(payment.completed_at),
        "error_message": payment.error_message,
    }


def submission_out(submission: Submission) -> dict[str, Any]:
    return {
        "id": submission.id,
        "registration_number": submission.registration_number,
        "category": submission.category,
        "title": submission.title,
        "description": submission.description,
        "key_photo_url": submission.key_photo_url,
        "additional_photo_urls": list(submission.additional_photo_urls or []),
        "document_url": submission.document_url,
        "video_url": submission.video_url,
        "status": submission.status,
        "is_validated": submission.is_validated,
        "is_published": submission.is_published,
        "validation_errors": submission.validation_errors,
        "submitted_at": dt_iso(submission.submitted_at),
        "published_at": dt_iso(submission.published_at),
        "vote_count": submission.vote_count,
    }


def progress_out(progress: JuryProgress) -> dict[str, Any]:
    return {
        "total_assigned": progress.total_assigned,
        "total_submitted": progress.total_submitted,
        "completion_percentage": progress.completion_percentage,
        "average_score": progress.average_score,
        "last_scored_at": dt_iso(progress.last_scored_at),
    }
