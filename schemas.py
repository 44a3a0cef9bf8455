"""
Database Schemas for the Library Circulation backend

Each Pydantic model represents a MongoDB collection.
Collection name is the lowercase of the class name:
- Book -> "book"
- Member -> "member"
- Loan -> "loan"
- Payment -> "payment"
"""

from pydantic import BaseModel, Field
from typing import Literal, Optional, List
from datetime import datetime

PENDING = "pending"
BORROWED = "borrowed"
RETURNED = "returned"
REJECTED = "rejected"
OPEN_STATUSES = [PENDING, BORROWED]

PAYMENT_PENDING = "pending"
PAYMENT_PROCESSING = "processing"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
LIVE_PAYMENT_STATUSES = [PAYMENT_PENDING, PAYMENT_PROCESSING, PAYMENT_COMPLETED]

TELEBIRR = "telebirr"
CHAPA = "chapa"

LoanStatus = Literal["pending", "borrowed", "returned", "rejected"]
PaymentStatus = Literal["pending", "processing", "completed", "failed"]
PaymentMethod = Literal["telebirr", "chapa"]
Role = Literal["student", "teacher", "librarian", "admin"]


class Book(BaseModel):
    title: str = Field(..., description="Book title")
    author: str = Field(..., description="Author name")
    isbn: Optional[str] = Field(None, description="ISBN identifier")
    category: Optional[str] = Field(None, description="Genre or category")
    total_copies: int = Field(1, ge=0, description="Total number of copies owned")
    available_copies: int = Field(1, ge=0, description="Copies on the shelf; written only by the lending engine")
    tags: Optional[List[str]] = Field(default=None, description="Searchable tags")


class Member(BaseModel):
    name: str = Field(..., description="Full name")
    email: str = Field(..., description="Email address")
    phone: Optional[str] = Field(None, description="Phone number")
    role: Role = Field("student", description="Borrower role; drives the fine grace period")
    is_active: bool = Field(True, description="Active membership status")


class Loan(BaseModel):
    user_id: str = Field(..., description="Member ObjectId as string")
    username: str = Field(..., description="Borrower name at loan time")
    book_id: str = Field(..., description="Book ObjectId as string")
    book_title: str = Field(..., description="Book title at loan time")
    user_type: str = Field("student", description="Borrower role at loan time")
    status: LoanStatus = Field(PENDING, description="pending | borrowed | returned | rejected")
    requested_at: datetime = Field(..., description="When the loan was requested or created")
    approved_by: Optional[str] = Field(None, description="Librarian who decided the loan")
    approved_at: Optional[datetime] = Field(None, description="When the librarian decided")
    borrowed_at: Optional[datetime] = Field(None, description="When the loan became active")
    due_date: Optional[datetime] = Field(None, description="borrowed_at plus the loan period")
    returned_at: Optional[datetime] = Field(None, description="When the loan closed")
    fine: int = Field(0, ge=0, description="Fine frozen at return")
    rejection_reason: Optional[str] = Field(None, description="Set only when rejected")
    active_slot: Optional[str] = Field(None, description="user_id while pending or borrowed")
    claim: Optional[str] = Field(None, description="Token of an in-flight approval")


class Payment(BaseModel):
    user_id: str = Field(..., description="Member ObjectId as string")
    username: str = Field(..., description="Payer name")
    amount: int = Field(..., gt=0, description="Amount paid")
    loan_id: str = Field(..., description="Loan ObjectId as string")
    tx_ref: str = Field(..., description="Unique transaction reference")
    method: PaymentMethod = Field(..., description="telebirr | chapa")
    status: PaymentStatus = Field(PAYMENT_PENDING, description="pending | processing | completed | failed")
    loan_slot: Optional[str] = Field(None, description="loan_id while the payment is not failed")
    mobile: Optional[str] = Field(None, description="Mobile number for telebirr")
    checkout_url: Optional[str] = Field(None, description="Provider checkout page for chapa")
