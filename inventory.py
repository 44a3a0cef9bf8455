import logging
from typing import Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from database import object_id, utc_now
from errors import Conflict, NotFound, OutOfStock

logger = logging.getLogger(__name__)


class InventoryLedger:
    """Available-copy counter on catalog books.

    Only the loan state machine calls reserve/release. The catalog sets
    `total_copies` on creation; later changes go through `adjust_total`.
    """

    def __init__(self, db: Database) -> None:
        self.books = db["book"]

    def reserve(self, book_id: str) -> dict:
        oid = object_id(book_id)
        if oid is None:
            raise NotFound("Book not found", book_id=book_id)
        # check-and-decrement in one conditional update
        book = self.books.find_one_and_update(
            {"_id": oid, "available_copies": {"$gt": 0}},
            {"$inc": {"available_copies": -1}, "$set": {"updated_at": utc_now()}},
            return_document=ReturnDocument.AFTER,
        )
        if book is None:
            if self.books.find_one({"_id": oid}, {"_id": 1}) is None:
                raise NotFound("Book not found", book_id=book_id)
            logger.info("No copies left for book %s", book_id)
            raise OutOfStock("No copies available", book_id=book_id)
        logger.debug("Reserved copy of %s, %s left", book_id, book["available_copies"])
        return book

    def release(self, book_id: str) -> bool:
        oid = object_id(book_id)
        if oid is None:
            logger.warning("Cannot release copy for malformed book id %r", book_id)
            return False
        result = self.books.update_one(
            {"_id": oid},
            {"$inc": {"available_copies": 1}, "$set": {"updated_at": utc_now()}},
        )
        if result.matched_count == 0:
            logger.warning("Released copy for missing book %s", book_id)
            return False
        return True

    def available(self, book_id: str) -> Optional[int]:
        oid = object_id(book_id)
        if oid is None:
            return None
        book = self.books.find_one({"_id": oid}, {"available_copies": 1})
        if not book:
            return None
        return int(book.get("available_copies", 0))

    def adjust_total(self, book_id: str, new_total: int) -> dict:
        """Change the owned-copy count, moving `available_copies` by the same delta.

        Refused when fewer copies would remain than are currently out on loan.
        """
        oid = object_id(book_id)
        book = self.books.find_one({"_id": oid}) if oid else None
        if not book:
            raise NotFound("Book not found", book_id=book_id)
        old_total = int(book.get("total_copies", 0))
        delta = new_total - old_total
        if delta == 0:
            return book

        updated = self.books.find_one_and_update(
            {"_id": oid, "total_copies": old_total, "available_copies": {"$gte": -delta}},
            {"$inc": {"total_copies": delta, "available_copies": delta}, "$set": {"updated_at": utc_now()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise Conflict(
                "Copies are out on loan or the count changed; cannot set total",
                book_id=book_id,
                total_copies=new_total,
            )
        logger.info("Book %s total copies %s -> %s", book_id, old_total, new_total)
        return updated
