"""
Fine payment.

Two methods:

- telebirr: settles instantly. The loan is closed, a completed payment row
  is written and the copy goes back on the shelf, in that order.
- chapa: writes a pending payment and hands back a checkout URL. The
  provider's callback lands in `verify_settlement`, which moves the payment
  pending -> processing -> completed around the loan close, each step a
  compare-and-swap on its status so replayed callbacks are no-ops.

A loan has at most one payment that is not failed; `loan_slot` carries the
loan id until the payment fails and a unique sparse index holds the line.
"""

import logging
import math
import re
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import config
from database import canonical_id, create_document, object_id, utc_now
from errors import Conflict, Invalid, NoActiveLoan, NotFound, StaleQuote
from fines import calculate_fine, days_late, grace_period_days
from lending import LoanService
from schemas import (
    BORROWED,
    CHAPA,
    LIVE_PAYMENT_STATUSES,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_PROCESSING,
    TELEBIRR,
    Payment,
)

logger = logging.getLogger(__name__)

_mobile_re = re.compile(config.TELEBIRR_MOBILE_PATTERN)


def new_tx_ref(method: str) -> str:
    prefix = "telebirr" if method == TELEBIRR else "fine"
    return f"{prefix}-{uuid.uuid4()}"


class PaymentService:
    def __init__(self, db: Database, lending: Optional[LoanService] = None) -> None:
        self.db = db
        self.payments = db["payment"]
        self.lending = lending or LoanService(db)

    def quote_fine(self, user_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utc_now()
        loan = self.lending.active_loan(user_id)
        if not loan:
            raise NoActiveLoan("No active loan for this user", user_id=user_id)
        fine = calculate_fine(loan["due_date"], loan.get("user_type"), now)
        return {
            "fine": fine,
            "loan_id": str(loan["_id"]),
            "nothing_due": fine == 0,
            "days_late": days_late(loan["due_date"], now),
            "grace_period": grace_period_days(loan.get("user_type")),
            "currency": config.CURRENCY,
            "loan": loan,
        }

    def settle_payment(
        self,
        loan_id: str,
        amount: int,
        method: str,
        method_details: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or utc_now()
        details = method_details or {}
        if method not in (TELEBIRR, CHAPA):
            raise Invalid(f"Unsupported payment method {method!r}")
        if amount is None or amount <= 0:
            raise Invalid("Amount must be positive")

        loan = self.lending.get_loan(loan_id)
        if loan["status"] != BORROWED:
            raise NotFound("Loan is not borrowed", loan_id=loan_id, status=loan["status"])

        fine = calculate_fine(loan["due_date"], loan.get("user_type"), now)
        if fine == 0:
            raise Invalid("Nothing due; return the book instead", loan_id=loan_id)
        if amount != fine:
            raise StaleQuote("Fine changed since it was quoted", fine=fine, amount=amount)

        live = self.payments.find_one({"loan_id": str(loan["_id"]), "status": {"$in": LIVE_PAYMENT_STATUSES}})
        if live:
            raise Conflict(
                f"Loan already has a {live['status']} payment",
                loan_id=str(loan["_id"]),
                tx_ref=live["tx_ref"],
                status=live["status"],
            )

        if method == TELEBIRR:
            mobile = str(details.get("mobile") or "")
            if not _mobile_re.match(mobile):
                raise Invalid("Invalid mobile (09........)", mobile=mobile)
            return self._settle_instant(loan, amount, mobile, now)
        return self._settle_redirect(loan, amount, now)

    def _payment(self, loan: dict, amount: int, method: str, status: str, **fields) -> Payment:
        return Payment(
            user_id=loan["user_id"],
            username=loan.get("username", ""),
            amount=amount,
            loan_id=str(loan["_id"]),
            method=method,
            status=status,
            loan_slot=str(loan["_id"]),
            **fields,
        )

    def _settle_instant(self, loan: dict, amount: int, mobile: str, now: datetime) -> Dict[str, Any]:
        tx_ref = new_tx_ref(TELEBIRR)
        payment = self._payment(loan, amount, TELEBIRR, PAYMENT_COMPLETED, tx_ref=tx_ref, mobile=mobile)
        created = {}

        def record(_closed: dict) -> None:
            created["id"] = create_document("payment", payment, database=self.db)

        try:
            closed = self.lending.return_settled(
                str(loan["_id"]), tx_ref, user_id=loan["user_id"], record_payment=record, now=now
            )
        except DuplicateKeyError:
            # the loan was reopened before this surfaced
            raise Conflict("Loan already has a payment in flight", loan_id=str(loan["_id"]))
        if closed is None:
            raise NotFound("Loan was closed by another request", loan_id=str(loan["_id"]))
        logger.info("Telebirr payment %s of %s settled loan %s", tx_ref, amount, loan["_id"])
        return {
            "success": True,
            "tx_ref": tx_ref,
            "payment": self.payments.find_one({"_id": object_id(created["id"])}),
            "loan": closed,
        }

    def _settle_redirect(self, loan: dict, amount: int, now: datetime) -> Dict[str, Any]:
        tx_ref = new_tx_ref(CHAPA)
        checkout_url = config.CHAPA_CHECKOUT_URL.format(tx_ref=tx_ref)
        payment = self._payment(loan, amount, CHAPA, PAYMENT_PENDING, tx_ref=tx_ref, checkout_url=checkout_url)
        try:
            payment_id = create_document("payment", payment, database=self.db)
        except DuplicateKeyError:
            raise Conflict("Loan already has a payment in flight", loan_id=str(loan["_id"]))
        logger.info("Chapa payment %s of %s started for loan %s", tx_ref, amount, loan["_id"])
        return {
            "success": True,
            "tx_ref": tx_ref,
            "checkout_url": checkout_url,
            "payment": self.payments.find_one({"_id": object_id(payment_id)}),
        }

    def verify_settlement(self, tx_ref: str, provider_status: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utc_now()
        if not tx_ref:
            raise Invalid("tx_ref missing")
        success = provider_status == "success"

        payment = self.payments.find_one_and_update(
            {"tx_ref": tx_ref, "status": PAYMENT_PENDING},
            {"$set": {"status": PAYMENT_PROCESSING if success else PAYMENT_FAILED, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if payment is None:
            existing = self.payments.find_one({"tx_ref": tx_ref})
            if existing is None:
                raise NotFound("Payment not found", tx_ref=tx_ref)
            logger.info("Ignoring replayed callback for %s (already %s)", tx_ref, existing["status"])
            return {"applied": False, "payment": existing, "loan_closed": False}

        if not success:
            logger.info("Payment %s failed at provider (%s)", tx_ref, provider_status)
            return {"applied": True, "payment": self._fail(payment, now), "loan_closed": False}

        def complete(_closed: dict) -> None:
            self.payments.update_one(
                {"_id": payment["_id"], "status": PAYMENT_PROCESSING},
                {"$set": {"status": PAYMENT_COMPLETED, "updated_at": now}},
            )

        try:
            closed = self.lending.return_settled(
                payment["loan_id"], tx_ref, user_id=payment["user_id"], record_payment=complete, now=now
            )
        except PyMongoError:
            # hand the payment back so the provider's retry can apply it
            self.payments.update_one(
                {"_id": payment["_id"], "status": PAYMENT_PROCESSING},
                {"$set": {"status": PAYMENT_PENDING, "updated_at": utc_now()}},
            )
            raise

        if closed is None:
            logger.warning("Payment %s succeeded but loan %s was not borrowed", tx_ref, payment["loan_id"])
            return {"applied": True, "payment": self._fail(payment, now), "loan_closed": False}
        return {"applied": True, "payment": self.payments.find_one({"_id": payment["_id"]}), "loan_closed": True}

    def _fail(self, payment: dict, now: datetime) -> dict:
        return self.payments.find_one_and_update(
            {"_id": payment["_id"], "status": {"$in": [PAYMENT_PROCESSING, PAYMENT_FAILED]}},
            {"$set": {"status": PAYMENT_FAILED, "updated_at": now}, "$unset": {"loan_slot": ""}},
            return_document=ReturnDocument.AFTER,
        )

    # ----------------------
    # Reads
    # ----------------------

    def get_payment(self, tx_ref: str) -> dict:
        payment = self.payments.find_one({"tx_ref": tx_ref})
        if not payment:
            raise NotFound("Payment not found", tx_ref=tx_ref)
        return payment

    def user_payments(self, user_id: str, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        query = {"user_id": canonical_id(user_id)}
        docs = list(
            self.payments.find(query).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
        )
        total = self.payments.count_documents(query)
        return {"payments": docs, "total": total, "page": page, "limit": limit, "total_pages": math.ceil(total / limit)}
