from datetime import datetime

import mongomock
import pytest
from bson import ObjectId

from database import create_document, ensure_schema
from schemas import Book, Member

T0 = datetime(2025, 3, 1, 9, 0, 0)


@pytest.fixture
def db():
    database = mongomock.MongoClient()["library_test"]
    ensure_schema(database)
    return database


@pytest.fixture
def add_book(db):
    def _add(title: str = "Dune", copies: int = 1) -> str:
        book = Book(title=title, author="Frank Herbert", total_copies=copies, available_copies=copies)
        return create_document("book", book, database=db)

    return _add


@pytest.fixture
def add_member(db):
    def _add(name: str, role: str = "student") -> str:
        email = f"{name.lower().replace(' ', '.')}@example.com"
        return create_document("member", Member(name=name, email=email, role=role), database=db)

    return _add


@pytest.fixture
def librarian(add_member):
    return add_member("Lena Librarian", role="librarian")


def copies(db, book_id: str) -> int:
    return db["book"].find_one({"_id": ObjectId(book_id)})["available_copies"]


def assert_ledger_consistent(db) -> None:
    for book in db["book"].find():
        out = db["loan"].count_documents({"book_id": str(book["_id"]), "status": "borrowed"})
        assert book["available_copies"] == book["total_copies"] - out, book["title"]
