"""
Loan lifecycle.

    pending --approve--> borrowed --return / settled return--> returned
    pending --reject---> rejected
    (direct borrow) ---> borrowed

Every transition is a single conditional update on the loan document, keyed
on the status it expects to find. Only this service reserves or releases
copies.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
from database import canonical_id, create_document, object_id, utc_now
from errors import Conflict, Cooldown, FineOutstanding, Forbidden, NotFound
from fines import calculate_fine, days_late, grace_period_days
from inventory import InventoryLedger
from schemas import BORROWED, OPEN_STATUSES, PENDING, REJECTED, RETURNED, Loan

logger = logging.getLogger(__name__)


class LoanService:
    def __init__(self, db: Database, inventory: Optional[InventoryLedger] = None) -> None:
        self.db = db
        self.loans = db["loan"]
        self.members = db["member"]
        self.books = db["book"]
        self.inventory = inventory or InventoryLedger(db)

    # ----------------------
    # Lookups
    # ----------------------

    def get_loan(self, loan_id: str) -> dict:
        oid = object_id(loan_id)
        loan = self.loans.find_one({"_id": oid}) if oid else None
        if not loan:
            raise NotFound("Loan not found", loan_id=loan_id)
        return loan

    def open_loan(self, user_id: str) -> Optional[dict]:
        return self.loans.find_one({"user_id": canonical_id(user_id), "status": {"$in": OPEN_STATUSES}})

    def active_loan(self, user_id: str) -> Optional[dict]:
        return self.loans.find_one({"user_id": canonical_id(user_id), "status": BORROWED, "returned_at": None})

    def _member(self, user_id: str) -> dict:
        oid = object_id(user_id)
        member = self.members.find_one({"_id": oid}) if oid else None
        if not member:
            raise NotFound("Member not found", user_id=user_id)
        return member

    def _book(self, book_id: str) -> dict:
        oid = object_id(book_id)
        book = self.books.find_one({"_id": oid}) if oid else None
        if not book:
            raise NotFound("Book not found", book_id=book_id)
        return book

    def _librarian(self, librarian_id: str) -> dict:
        oid = object_id(librarian_id)
        member = self.members.find_one({"_id": oid}) if oid else None
        if not member or member.get("role") not in config.LIBRARIAN_ROLES:
            raise Forbidden("Only librarians can decide loans", librarian_id=librarian_id)
        return member

    def _ensure_no_open_loan(self, user_id: str) -> None:
        existing = self.open_loan(user_id)
        if existing:
            raise Conflict(
                f"User already has a {existing['status']} loan",
                loan_id=str(existing["_id"]),
                status=existing["status"],
            )

    def _new_loan(self, member: dict, book: dict, now: datetime, **fields) -> Loan:
        user_id = str(member["_id"])
        return Loan(
            user_id=user_id,
            username=member.get("name", ""),
            book_id=str(book["_id"]),
            book_title=book.get("title", ""),
            user_type=member.get("role") or "student",
            requested_at=now,
            active_slot=user_id,
            **fields,
        )

    # ----------------------
    # Borrower request flow
    # ----------------------

    def request_loan(self, user_id: str, book_id: str, now: Optional[datetime] = None) -> dict:
        now = now or utc_now()
        member = self._member(user_id)
        book = self._book(book_id)
        user_id, book_id = str(member["_id"]), str(book["_id"])
        self._ensure_no_open_loan(user_id)

        since = now - timedelta(hours=config.REJECTION_COOLDOWN_HOURS)
        rejected = self.loans.find_one(
            {"user_id": user_id, "book_id": book_id, "status": REJECTED, "approved_at": {"$gte": since}}
        )
        if rejected:
            retry_at = rejected["approved_at"] + timedelta(hours=config.REJECTION_COOLDOWN_HOURS)
            raise Cooldown(
                "Request was rejected recently; try again later",
                retry_at=retry_at.isoformat(),
            )

        try:
            loan_id = create_document("loan", self._new_loan(member, book, now), database=self.db)
        except DuplicateKeyError:
            raise Conflict("User already has an open loan")
        logger.info("Loan %s requested by %s for book %s", loan_id, user_id, book_id)
        return self.loans.find_one({"_id": object_id(loan_id)})

    def approve_loan(self, loan_id: str, librarian_id: str, now: Optional[datetime] = None) -> dict:
        now = now or utc_now()
        self._librarian(librarian_id)
        oid = object_id(loan_id)
        if oid is None:
            raise NotFound("Loan not found", loan_id=loan_id)

        token = uuid.uuid4().hex
        claimed = self.loans.find_one_and_update(
            {"_id": oid, "status": PENDING, "claim": None},
            {"$set": {"claim": token}},
            return_document=ReturnDocument.AFTER,
        )
        if claimed is None:
            current = self.get_loan(loan_id)
            if current["status"] == PENDING:
                raise Conflict("Loan approval in progress", status=current["status"])
            raise Conflict(f"Loan is {current['status']}, not pending", status=current["status"])

        try:
            self.inventory.reserve(claimed["book_id"])
        except Exception:
            # any failure leaves the loan pending and claimable again
            self.loans.update_one({"_id": oid, "claim": token}, {"$set": {"claim": None}})
            raise

        loan = self.loans.find_one_and_update(
            {"_id": oid, "claim": token},
            {
                "$set": {
                    "status": BORROWED,
                    "approved_by": librarian_id,
                    "approved_at": now,
                    "borrowed_at": now,
                    "due_date": now + timedelta(days=config.LOAN_PERIOD_DAYS),
                    "claim": None,
                    "updated_at": now,
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        if loan is None:
            # claim tokens are only cleared by their holder
            self.inventory.release(claimed["book_id"])
            raise Conflict("Loan changed during approval")
        logger.info("Loan %s approved by %s, due %s", loan_id, librarian_id, loan["due_date"])
        return loan

    def reject_loan(self, loan_id: str, librarian_id: str, reason: Optional[str] = None, now: Optional[datetime] = None) -> dict:
        now = now or utc_now()
        self._librarian(librarian_id)
        oid = object_id(loan_id)
        if oid is None:
            raise NotFound("Loan not found", loan_id=loan_id)

        loan = self.loans.find_one_and_update(
            {"_id": oid, "status": PENDING, "claim": None},
            {
                "$set": {
                    "status": REJECTED,
                    "approved_by": librarian_id,
                    "approved_at": now,
                    "rejection_reason": reason or "Request rejected",
                    "updated_at": now,
                },
                "$unset": {"active_slot": ""},
            },
            return_document=ReturnDocument.AFTER,
        )
        if loan is None:
            current = self.get_loan(loan_id)
            raise Conflict(f"Loan is {current['status']}, not pending", status=current["status"])
        logger.info("Loan %s rejected by %s: %s", loan_id, librarian_id, loan["rejection_reason"])
        return loan

    def confirm_borrow(self, loan_id: str, user_id: str) -> dict:
        """Borrower pick-up. Approval already activated the loan, so this re-reads it."""
        oid = object_id(loan_id)
        query = {"_id": oid, "user_id": canonical_id(user_id), "status": BORROWED}
        loan = self.loans.find_one(query) if oid else None
        if not loan:
            raise NotFound("No approved loan to confirm", loan_id=loan_id)
        return loan

    # ----------------------
    # Librarian direct flow
    # ----------------------

    def direct_borrow(self, user_id: str, book_id: str, librarian_id: str, now: Optional[datetime] = None) -> dict:
        now = now or utc_now()
        self._librarian(librarian_id)
        member = self._member(user_id)
        book = self._book(book_id)
        user_id, book_id = str(member["_id"]), str(book["_id"])
        self._ensure_no_open_loan(user_id)

        self.inventory.reserve(book_id)
        loan = self._new_loan(
            member,
            book,
            now,
            status=BORROWED,
            approved_by=librarian_id,
            approved_at=now,
            borrowed_at=now,
            due_date=now + timedelta(days=config.LOAN_PERIOD_DAYS),
        )
        try:
            new_id = create_document("loan", loan, database=self.db)
        except DuplicateKeyError:
            self.inventory.release(book_id)
            raise Conflict("User already has an open loan")
        logger.info("Direct loan %s of %s to %s by %s", new_id, book_id, user_id, librarian_id)
        return self.loans.find_one({"_id": object_id(new_id)})

    # ----------------------
    # Closing
    # ----------------------

    def return_loan(self, user_id: str, book_id: str, now: Optional[datetime] = None) -> dict:
        now = now or utc_now()
        user_id, book_id = canonical_id(user_id), canonical_id(book_id)
        loan = self.loans.find_one({"user_id": user_id, "book_id": book_id, "status": BORROWED, "returned_at": None})
        if not loan:
            raise NotFound("No borrowed loan for this user and book", user_id=user_id, book_id=book_id)

        fine = calculate_fine(loan["due_date"], loan.get("user_type"), now)
        if fine > 0:
            raise FineOutstanding(
                "Fine must be paid before returning",
                fine=fine,
                loan_id=str(loan["_id"]),
            )

        closed = self.loans.find_one_and_update(
            {"_id": loan["_id"], "status": BORROWED},
            {
                "$set": {"status": RETURNED, "returned_at": now, "fine": 0, "updated_at": now},
                "$unset": {"active_slot": ""},
            },
            return_document=ReturnDocument.AFTER,
        )
        if closed is None:
            raise NotFound("Loan was closed by another request", loan_id=str(loan["_id"]))
        self.inventory.release(book_id)
        logger.info("Loan %s returned by %s", closed["_id"], user_id)
        return {
            "fine": 0,
            "days_late": days_late(loan["due_date"], now),
            "grace_period": grace_period_days(loan.get("user_type")),
            "loan": closed,
        }

    def return_settled(
        self,
        loan_id: str,
        tx_ref: str,
        user_id: Optional[str] = None,
        record_payment: Optional[Callable[[dict], object]] = None,
        now: Optional[datetime] = None,
    ) -> Optional[dict]:
        """Close a loan whose fine was paid. Returns None if it is not borrowed.

        `record_payment` runs after the loan is closed and before the copy is
        released; a store failure inside it reopens the loan and propagates.
        """
        now = now or utc_now()
        oid = object_id(loan_id)
        if oid is None:
            return None
        guard = {"_id": oid, "status": BORROWED}
        if user_id is not None:
            guard["user_id"] = canonical_id(user_id)

        loan = self.loans.find_one_and_update(
            guard,
            {
                "$set": {
                    "status": RETURNED,
                    "returned_at": now,
                    "fine": 0,
                    "settlement_ref": tx_ref,
                    "updated_at": now,
                },
                "$unset": {"active_slot": ""},
            },
            return_document=ReturnDocument.AFTER,
        )
        if loan is None:
            return None

        if record_payment is not None:
            try:
                record_payment(loan)
            except PyMongoError:
                logger.exception("Recording payment %s failed, reopening loan %s", tx_ref, loan_id)
                self._reopen(loan, tx_ref)
                raise

        self.inventory.release(loan["book_id"])
        logger.info("Loan %s closed by settlement %s", loan_id, tx_ref)
        return loan

    def _reopen(self, loan: dict, tx_ref: str) -> None:
        self.loans.update_one(
            {"_id": loan["_id"], "status": RETURNED, "settlement_ref": tx_ref},
            {
                "$set": {
                    "status": BORROWED,
                    "returned_at": None,
                    "active_slot": loan["user_id"],
                    "updated_at": utc_now(),
                },
                "$unset": {"settlement_ref": ""},
            },
        )
