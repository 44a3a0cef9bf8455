"""Read-only views over loans, payments and inventory. Nothing here writes."""

import math
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING
from pymongo.database import Database

from database import canonical_id, utc_now
from fines import calculate_fine, days_late
from schemas import BORROWED, PAYMENT_COMPLETED, PENDING, REJECTED, RETURNED


def _page(docs: List[dict], total: int, page: int, limit: int, key: str) -> Dict[str, Any]:
    return {
        key: docs,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit) if limit else 0,
    }


def _with_live_fine(loan: dict, now: datetime) -> dict:
    if loan.get("status") == BORROWED and loan.get("due_date"):
        return {**loan, "fine": calculate_fine(loan["due_date"], loan.get("user_type"), now)}
    return {**loan, "fine": loan.get("fine") or 0}


class ReportService:
    def __init__(self, db: Database) -> None:
        self.loans = db["loan"]
        self.payments = db["payment"]
        self.books = db["book"]

    # ----------------------
    # Loans
    # ----------------------

    def list_loans(
        self,
        page: int = 1,
        limit: int = 10,
        search: str = "",
        status: Optional[str] = None,
        user_type: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or utc_now()
        query: Dict[str, Any] = {}
        if search:
            pattern = re.escape(search)
            query["$or"] = [
                {field: {"$regex": pattern, "$options": "i"}}
                for field in ("user_id", "username", "book_id", "book_title")
            ]
        if status:
            query["status"] = status
        if user_type:
            query["user_type"] = user_type

        cursor = (
            self.loans.find(query)
            .sort([("requested_at", DESCENDING), ("borrowed_at", DESCENDING)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        docs = [_with_live_fine(loan, now) for loan in cursor]
        return _page(docs, self.loans.count_documents(query), page, limit, "loans")

    def overdue_loans(self, now: Optional[datetime] = None) -> List[dict]:
        now = now or utc_now()
        overdue = []
        for loan in self.loans.find({"status": BORROWED, "returned_at": None, "due_date": {"$lt": now}}):
            item = _with_live_fine(loan, now)
            item["days_overdue"] = days_late(loan["due_date"], now)
            overdue.append(item)
        return overdue

    def loans_by_date_range(
        self,
        start: datetime,
        end: datetime,
        page: int = 1,
        limit: int = 10,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Loans that became active between `start` and `end`, both inclusive."""
        now = now or utc_now()
        query = {"borrowed_at": {"$gte": start, "$lte": end}}
        cursor = self.loans.find(query).sort("borrowed_at", DESCENDING).skip((page - 1) * limit).limit(limit)
        docs = [_with_live_fine(loan, now) for loan in cursor]
        return _page(docs, self.loans.count_documents(query), page, limit, "loans")

    def user_history(self, user_id: str, limit: int = 10, now: Optional[datetime] = None) -> List[dict]:
        now = now or utc_now()
        cursor = self.loans.find({"user_id": canonical_id(user_id)}).sort("requested_at", DESCENDING).limit(limit)
        return [_with_live_fine(loan, now) for loan in cursor]

    def user_requests(self, user_id: str) -> List[dict]:
        cursor = self.loans.find({"user_id": canonical_id(user_id), "status": {"$in": [PENDING, REJECTED]}})
        return list(cursor.sort("requested_at", DESCENDING))

    def loan_statistics(self) -> Dict[str, Any]:
        total_fines = list(
            self.loans.aggregate(
                [
                    {"$match": {"fine": {"$gt": 0}}},
                    {"$group": {"_id": None, "total": {"$sum": "$fine"}}},
                ]
            )
        )
        by_user_type = list(
            self.loans.aggregate(
                [
                    {"$group": {"_id": "$user_type", "count": {"$sum": 1}}},
                    {"$sort": {"count": -1}},
                ]
            )
        )
        by_status = list(
            self.loans.aggregate(
                [
                    {"$group": {"_id": "$status", "count": {"$sum": 1}}},
                    {"$sort": {"count": -1}},
                ]
            )
        )
        return {
            "total_loans": self.loans.count_documents({}),
            "active_loans": self.loans.count_documents({"status": BORROWED}),
            "pending_requests": self.loans.count_documents({"status": PENDING}),
            "returned_books": self.loans.count_documents({"status": RETURNED}),
            "total_fines": total_fines[0]["total"] if total_fines else 0,
            "by_user_type": by_user_type,
            "by_status": by_status,
            "last_updated": utc_now(),
        }

    def top_borrowers(self, limit: int = 10) -> List[dict]:
        pipeline = [
            {"$match": {"status": {"$in": [BORROWED, RETURNED]}}},
            {
                "$group": {
                    "_id": {"user_id": "$user_id", "username": "$username"},
                    "total_borrows": {"$sum": 1},
                    "total_fines": {"$sum": "$fine"},
                }
            },
            {"$sort": {"total_borrows": -1}},
            {"$limit": limit},
        ]
        return list(self.loans.aggregate(pipeline))

    # ----------------------
    # Payments
    # ----------------------

    def list_payments(
        self,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None,
        method: Optional[str] = None,
        search: str = "",
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if search:
            pattern = re.escape(search)
            query["$or"] = [
                {field: {"$regex": pattern, "$options": "i"}}
                for field in ("user_id", "username", "tx_ref", "mobile")
            ]
        if status:
            query["status"] = status
        if method:
            query["method"] = method
        if start or end:
            query["created_at"] = {}
            if start:
                query["created_at"]["$gte"] = start
            if end:
                query["created_at"]["$lte"] = end
        cursor = self.payments.find(query).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
        return _page(list(cursor), self.payments.count_documents(query), page, limit, "payments")

    def payments_for_loan(self, loan_id: str) -> List[dict]:
        return list(self.payments.find({"loan_id": canonical_id(loan_id)}).sort("created_at", DESCENDING))

    def revenue_by_period(self, start: datetime, end: datetime) -> Dict[str, Any]:
        """Completed payments created between `start` and `end`, with their total."""
        query = {"status": PAYMENT_COMPLETED, "created_at": {"$gte": start, "$lte": end}}
        payments = list(self.payments.find(query).sort("created_at", DESCENDING))
        return {
            "period": {"start": start, "end": end},
            "total_amount": sum(payment["amount"] for payment in payments),
            "count": len(payments),
            "payments": payments,
        }

    def payment_statistics(self) -> Dict[str, Any]:
        def grouped(field: str) -> List[dict]:
            return list(
                self.payments.aggregate(
                    [
                        {"$group": {"_id": f"${field}", "count": {"$sum": 1}, "total_amount": {"$sum": "$amount"}}},
                        {"$sort": {"count": -1}},
                    ]
                )
            )

        collected = list(
            self.payments.aggregate(
                [
                    {"$match": {"status": PAYMENT_COMPLETED}},
                    {"$group": {"_id": None, "total": {"$sum": "$amount"}}},
                ]
            )
        )
        return {
            "total_payments": self.payments.count_documents({}),
            "total_collected": collected[0]["total"] if collected else 0,
            "by_status": grouped("status"),
            "by_method": grouped("method"),
            "last_updated": utc_now(),
        }

    # ----------------------
    # Inventory
    # ----------------------

    def inventory_report(self) -> List[dict]:
        borrowed = {
            row["_id"]: row["count"]
            for row in self.loans.aggregate(
                [
                    {"$match": {"status": BORROWED}},
                    {"$group": {"_id": "$book_id", "count": {"$sum": 1}}},
                ]
            )
        }
        report = []
        for book in self.books.find().sort("title", 1):
            book_id = str(book["_id"])
            total = int(book.get("total_copies", 0))
            available = int(book.get("available_copies", 0))
            out = borrowed.get(book_id, 0)
            report.append(
                {
                    "book_id": book_id,
                    "title": book.get("title"),
                    "total_copies": total,
                    "available_copies": available,
                    "borrowed": out,
                    "consistent": available == total - out,
                }
            )
        return report
