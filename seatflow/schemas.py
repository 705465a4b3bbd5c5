from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class ReservationResult(BaseModel):
    status: Literal["reserved", "capacity_exceeded", "session_not_found"]
    new_total: Optional[int] = None
    seats_remaining: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status == "reserved"


class EnrollmentResult(BaseModel):
    status: Literal[
        "enrolled",
        "already_enrolled",
        "already_processed",
        "cancelled",
        "not_enrolled",
        "capacity_exceeded",
        "session_not_found",
        "course_not_found",
        "code_not_found",
        "code_already_redeemed",
        "code_revoked",
    ]
    message: str = ""
    seats_remaining: Optional[int] = None
    seat_reserved: Optional[bool] = None
    needs_reconciliation: bool = False
    reservation: Optional[ReservationResult] = None


class LiveDecision(BaseModel):
    is_live: bool
    next_window_description: Optional[str] = None


class GeneratedCode(BaseModel):
    code: str
    status: str = "active"


class CodeBatchResult(BaseModel):
    status: Literal["generated", "company_not_found", "invalid_quantity"]
    codes: List[GeneratedCode] = Field(default_factory=list)


class RedemptionResult(BaseModel):
    status: Literal["redeemed", "code_not_found", "code_already_redeemed", "code_revoked"]
    company_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "redeemed"


class UserDetails(BaseModel):
    name: str = "Student"
    email: Optional[str] = None


class PaymentConfirmation(BaseModel):
    """Fields of a verified checkout-completed event the reconciler relies on."""

    payment_reference: str
    user_id: str
    course_id: str
    session_id: Optional[str] = None
    seat_count: int = 1
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None


class RegisterRequest(BaseModel):
    session_id: str
    seat_count: int = Field(1, ge=1)
    user_details: UserDetails = Field(default_factory=UserDetails)


class CheckoutRequest(BaseModel):
    course_id: str
    session_id: Optional[str] = None
    seat_count: int = Field(1, ge=1)
    user_email: Optional[str] = None
    user_name: Optional[str] = None


class CancelRequest(BaseModel):
    course_id: str


class GenerateCodesRequest(BaseModel):
    company_id: str
    quantity: int = 5


class RedeemRequest(BaseModel):
    code: str
    course_id: str
    user_details: UserDetails = Field(default_factory=UserDetails)


class SessionOut(BaseModel):
    id: str
    course_id: str
    start_at: datetime
    end_at: datetime
    capacity: int
    enrolled_count: int
    seats_remaining: int
    status: str
