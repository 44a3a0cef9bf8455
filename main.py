import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from datetime import datetime, date, timezone

from bson import ObjectId
from pymongo.database import Database

import config
import database
from database import canonical_id, create_document, ensure_schema, get_db, utc_now
from errors import LendingError
from fines import fine_policy
from inventory import InventoryLedger
from lending import LoanService
from reports import ReportService
from schemas import (
    OPEN_STATUSES,
    Book as BookSchema,
    Member as MemberSchema,
    Loan as LoanSchema,
    Payment as PaymentSchema,
    PaymentMethod,
    Role,
)
from settlement import PaymentService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if database.db is not None:
        ensure_schema(database.db)
    yield


app = FastAPI(title="Library Circulation API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ----------------------
# Utility helpers
# ----------------------

def to_object_id(id_str: str) -> ObjectId:
    if not ObjectId.is_valid(id_str):
        raise HTTPException(status_code=400, detail="Invalid ID format")
    return ObjectId(id_str)

def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # stored dates are naive UTC
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)

def serialize(value: Any) -> Any:
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if not isinstance(value, dict):
        if isinstance(value, ObjectId):
            return str(value)
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        return value
    d = {**value}
    if d.get("_id") is not None and not isinstance(d["_id"], dict):
        d["id"] = str(d.pop("_id"))
    # drop bookkeeping fields the client never needs
    d.pop("claim", None)
    d.pop("active_slot", None)
    d.pop("loan_slot", None)
    return {k: serialize(v) for k, v in d.items()}

def loan_service(db: Database = Depends(get_db)) -> LoanService:
    return LoanService(db)

def payment_service(db: Database = Depends(get_db)) -> PaymentService:
    return PaymentService(db)

def report_service(db: Database = Depends(get_db)) -> ReportService:
    return ReportService(db)


@app.exception_handler(LendingError)
async def lending_error_handler(_request: Request, exc: LendingError):
    return JSONResponse(status_code=exc.status_code, content=serialize(exc.to_dict()))

# ----------------------
# Health & Schema
# ----------------------

@app.get("/")
def read_root():
    return {"message": "Library Circulation Backend is running"}

@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if config.DATABASE_URL else "❌ Not Set",
        "database_name": "✅ Set" if config.DATABASE_NAME else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    db = database.db
    if db is None:
        response["database"] = "⚠️ Available but not initialized"
        return response
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except Exception as e:
        logger.warning("Database check failed: %s", e)
        response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
    return response

@app.get("/schema")
def get_schema():
    return {
        "book": BookSchema.model_json_schema(),
        "member": MemberSchema.model_json_schema(),
        "loan": LoanSchema.model_json_schema(),
        "payment": PaymentSchema.model_json_schema(),
    }

# ----------------------
# Pydantic request models
# ----------------------

class CreateBook(BaseModel):
    title: str
    author: str
    isbn: Optional[str] = None
    category: Optional[str] = None
    total_copies: int = Field(1, ge=0)
    tags: Optional[List[str]] = None

class UpdateBook(BaseModel):
    # available_copies follows total_copies through the ledger
    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    category: Optional[str] = None
    total_copies: Optional[int] = Field(None, ge=0)
    tags: Optional[List[str]] = None

class CreateMember(BaseModel):
    name: str
    email: str
    phone: Optional[str] = None
    role: Role = "student"

class LoanRequest(BaseModel):
    user_id: str
    book_id: str

class DirectBorrowRequest(BaseModel):
    user_id: str
    book_id: str
    librarian_id: str

class DecisionRequest(BaseModel):
    librarian_id: str
    reason: Optional[str] = None

class ConfirmRequest(BaseModel):
    user_id: str

class ReturnRequest(BaseModel):
    user_id: str
    book_id: str

class SettleRequest(BaseModel):
    loan_id: str
    amount: int
    method: PaymentMethod
    mobile: Optional[str] = None

class VerifyRequest(BaseModel):
    tx_ref: str
    status: str

# ----------------------
# Books Endpoints
# ----------------------

@app.post("/books")
def create_book(book: CreateBook, db: Database = Depends(get_db)):
    doc = BookSchema(**book.model_dump(), available_copies=book.total_copies)
    new_id = create_document("book", doc, database=db)
    created = db["book"].find_one({"_id": to_object_id(new_id)})
    return serialize(created)

@app.get("/books")
def list_books(q: Optional[str] = Query(None, description="Search query"), db: Database = Depends(get_db)):
    filter_dict = {}
    if q:
        # Basic case-insensitive search on title/author/category/tags
        filter_dict = {
            "$or": [
                {"title": {"$regex": q, "$options": "i"}},
                {"author": {"$regex": q, "$options": "i"}},
                {"category": {"$regex": q, "$options": "i"}},
                {"tags": {"$elemMatch": {"$regex": q, "$options": "i"}}},
            ]
        }
    docs = db["book"].find(filter_dict).sort("title", 1)
    return [serialize(d) for d in docs]

@app.get("/books/{book_id}")
def get_book(book_id: str, db: Database = Depends(get_db)):
    doc = db["book"].find_one({"_id": to_object_id(book_id)})
    if not doc:
        raise HTTPException(status_code=404, detail="Book not found")
    return serialize(doc)

@app.put("/books/{book_id}")
def update_book(book_id: str, payload: UpdateBook, db: Database = Depends(get_db)):
    update = payload.model_dump(exclude_none=True)
    total = update.pop("total_copies", None)
    if total is not None:
        to_object_id(book_id)
        InventoryLedger(db).adjust_total(book_id, total)
    if not update:
        return get_book(book_id, db)
    update["updated_at"] = utc_now()
    result = db["book"].update_one({"_id": to_object_id(book_id)}, {"$set": update})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Book not found")
    return get_book(book_id, db)

@app.delete("/books/{book_id}")
def delete_book(book_id: str, db: Database = Depends(get_db)):
    loan_exists = db["loan"].find_one({"book_id": canonical_id(book_id), "status": {"$in": OPEN_STATUSES}})
    if loan_exists:
        raise HTTPException(status_code=400, detail="Cannot delete book with open loans")
    result = db["book"].delete_one({"_id": to_object_id(book_id)})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Book not found")
    return {"status": "deleted", "id": book_id}

# ----------------------
# Members Endpoints
# ----------------------

@app.post("/members")
def create_member(member: CreateMember, db: Database = Depends(get_db)):
    existing = db["member"].find_one({"email": member.email})
    if existing:
        return serialize(existing)
    doc = MemberSchema(**member.model_dump())
    new_id = create_document("member", doc, database=db)
    created = db["member"].find_one({"_id": to_object_id(new_id)})
    return serialize(created)

@app.get("/members")
def list_members(db: Database = Depends(get_db)):
    docs = db["member"].find().sort("name", 1)
    return [serialize(d) for d in docs]

@app.get("/members/by-email")
def get_member_by_email(email: str, db: Database = Depends(get_db)):
    m = db["member"].find_one({"email": email})
    if not m:
        raise HTTPException(status_code=404, detail="Member not found")
    return serialize(m)

@app.get("/members/{user_id}/loans")
def member_history(user_id: str, limit: int = Query(10, ge=1, le=100), reports: ReportService = Depends(report_service)):
    return serialize(reports.user_history(user_id, limit))

@app.get("/members/{user_id}/requests")
def member_requests(user_id: str, reports: ReportService = Depends(report_service)):
    return serialize(reports.user_requests(user_id))

@app.get("/members/{user_id}/payments")
def member_payments(
    user_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    payments: PaymentService = Depends(payment_service),
):
    return serialize(payments.user_payments(user_id, page, limit))

# ----------------------
# Loans Endpoints
# ----------------------

@app.get("/loans")
def list_loans(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: str = "",
    status: Optional[str] = None,
    user_type: Optional[str] = None,
    reports: ReportService = Depends(report_service),
):
    return serialize(reports.list_loans(page, limit, search, status, user_type))

@app.get("/loans/stats")
def loan_stats(reports: ReportService = Depends(report_service)):
    return serialize(reports.loan_statistics())

@app.get("/loans/overdue")
def overdue_loans(reports: ReportService = Depends(report_service)):
    return serialize(reports.overdue_loans())

@app.get("/loans/top-borrowers")
def top_borrowers(limit: int = Query(10, ge=1, le=100), reports: ReportService = Depends(report_service)):
    return serialize(reports.top_borrowers(limit))

@app.get("/loans/by-date")
def loans_by_date(
    start: datetime,
    end: datetime,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    reports: ReportService = Depends(report_service),
):
    return serialize(reports.loans_by_date_range(as_utc(start), as_utc(end), page, limit))

@app.post("/loans/request")
def request_loan(payload: LoanRequest, loans: LoanService = Depends(loan_service)):
    return serialize(loans.request_loan(payload.user_id, payload.book_id))

@app.post("/loans/direct")
def direct_borrow(payload: DirectBorrowRequest, loans: LoanService = Depends(loan_service)):
    return serialize(loans.direct_borrow(payload.user_id, payload.book_id, payload.librarian_id))

@app.post("/loans/return")
def return_book(payload: ReturnRequest, loans: LoanService = Depends(loan_service)):
    return serialize(loans.return_loan(payload.user_id, payload.book_id))

@app.get("/loans/{loan_id}")
def get_loan(loan_id: str, loans: LoanService = Depends(loan_service)):
    return serialize(loans.get_loan(loan_id))

@app.get("/loans/{loan_id}/payments")
def loan_payments(loan_id: str, reports: ReportService = Depends(report_service)):
    return serialize(reports.payments_for_loan(loan_id))

@app.post("/loans/{loan_id}/approve")
def approve_loan(loan_id: str, payload: DecisionRequest, loans: LoanService = Depends(loan_service)):
    return serialize(loans.approve_loan(loan_id, payload.librarian_id))

@app.post("/loans/{loan_id}/reject")
def reject_loan(loan_id: str, payload: DecisionRequest, loans: LoanService = Depends(loan_service)):
    return serialize(loans.reject_loan(loan_id, payload.librarian_id, payload.reason))

@app.post("/loans/{loan_id}/confirm")
def confirm_borrow(loan_id: str, payload: ConfirmRequest, loans: LoanService = Depends(loan_service)):
    return serialize(loans.confirm_borrow(loan_id, payload.user_id))

@app.get("/fines/policy")
def get_fine_policy(user_type: Optional[str] = None):
    return fine_policy(user_type)

# ----------------------
# Payments Endpoints
# ----------------------

@app.get("/payments")
def list_payments(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    method: Optional[str] = None,
    search: str = "",
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    reports: ReportService = Depends(report_service),
):
    return serialize(reports.list_payments(page, limit, status, method, search, as_utc(start), as_utc(end)))

@app.get("/payments/stats")
def payment_stats(reports: ReportService = Depends(report_service)):
    return serialize(reports.payment_statistics())

@app.get("/payments/revenue")
def revenue(start: datetime, end: datetime, reports: ReportService = Depends(report_service)):
    return serialize(reports.revenue_by_period(as_utc(start), as_utc(end)))

@app.get("/payments/quote")
def quote_fine(user_id: str, payments: PaymentService = Depends(payment_service)):
    return serialize(payments.quote_fine(user_id))

@app.post("/payments/settle")
def settle_payment(payload: SettleRequest, payments: PaymentService = Depends(payment_service)):
    details: Dict[str, Any] = {"mobile": payload.mobile} if payload.mobile else {}
    return serialize(payments.settle_payment(payload.loan_id, payload.amount, payload.method, details))

@app.post("/payments/verify")
def verify_payment(payload: VerifyRequest, payments: PaymentService = Depends(payment_service)):
    return serialize(payments.verify_settlement(payload.tx_ref, payload.status))

@app.get("/payments/{tx_ref}")
def get_payment(tx_ref: str, payments: PaymentService = Depends(payment_service)):
    return serialize(payments.get_payment(tx_ref))

# ----------------------
# Reports
# ----------------------

@app.get("/reports/inventory")
def inventory_report(reports: ReportService = Depends(report_service)):
    return reports.inventory_report()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
