from datetime import timedelta

import pytest
from pymongo.errors import PyMongoError

import settlement
from errors import Conflict, Invalid, NoActiveLoan, NotFound, StaleQuote
from lending import LoanService
from settlement import PaymentService

from conftest import T0, assert_ledger_consistent, copies

LATE = T0 + timedelta(days=13)  # 6 days past due, 5 billable for a student


@pytest.fixture
def payments(db):
    return PaymentService(db)


@pytest.fixture
def overdue_loan(db, add_book, add_member, librarian):
    book_id = add_book(copies=1)
    user_id = add_member("Abebe Kebede")
    loan = LoanService(db).direct_borrow(user_id, book_id, librarian, now=T0)
    return {"user_id": user_id, "book_id": book_id, "loan_id": str(loan["_id"])}


class TestQuote:
    def test_quote_outstanding_fine(self, payments, overdue_loan):
        quote = payments.quote_fine(overdue_loan["user_id"], now=LATE)
        assert quote["fine"] == 50
        assert quote["loan_id"] == overdue_loan["loan_id"]
        assert quote["nothing_due"] is False
        assert quote["days_late"] == 6

    def test_quote_before_due(self, payments, overdue_loan):
        quote = payments.quote_fine(overdue_loan["user_id"], now=T0 + timedelta(days=1))
        assert quote["fine"] == 0
        assert quote["nothing_due"] is True

    def test_quote_without_loan(self, payments, add_member):
        with pytest.raises(NoActiveLoan):
            payments.quote_fine(add_member("Nobody"), now=LATE)


class TestInstantSettlement:
    def test_settle_closes_loan_and_releases_copy(self, db, payments, overdue_loan):
        receipt = payments.settle_payment(
            overdue_loan["loan_id"], 50, "telebirr", {"mobile": "0912345678"}, now=LATE
        )

        loan = db["loan"].find_one({"_id": receipt["loan"]["_id"]})
        assert loan["status"] == "returned"
        assert loan["fine"] == 0
        assert loan["returned_at"] == LATE
        assert loan["settlement_ref"] == receipt["tx_ref"]
        assert receipt["payment"]["status"] == "completed"
        assert receipt["payment"]["amount"] == 50
        assert receipt["payment"]["mobile"] == "0912345678"
        assert receipt["tx_ref"].startswith("telebirr-")
        assert copies(db, overdue_loan["book_id"]) == 1
        assert_ledger_consistent(db)

    def test_stale_amount_changes_nothing(self, db, payments, overdue_loan):
        with pytest.raises(StaleQuote) as exc:
            payments.settle_payment(overdue_loan["loan_id"], 40, "telebirr", {"mobile": "0912345678"}, now=LATE)

        assert exc.value.extra["fine"] == 50
        assert db["payment"].count_documents({}) == 0
        assert db["loan"].find_one({"status": "borrowed"}) is not None
        assert copies(db, overdue_loan["book_id"]) == 0

    @pytest.mark.parametrize("mobile", ["", "0812345678", "091234567", "+251912345678"])
    def test_invalid_mobile(self, db, payments, overdue_loan, mobile):
        with pytest.raises(Invalid):
            payments.settle_payment(overdue_loan["loan_id"], 50, "telebirr", {"mobile": mobile}, now=LATE)
        assert db["payment"].count_documents({}) == 0

    def test_nothing_due(self, payments, overdue_loan):
        with pytest.raises(Invalid):
            payments.settle_payment(
                overdue_loan["loan_id"], 10, "telebirr", {"mobile": "0912345678"}, now=T0 + timedelta(days=2)
            )

    def test_bad_method_and_amount(self, payments, overdue_loan):
        with pytest.raises(Invalid):
            payments.settle_payment(overdue_loan["loan_id"], 50, "cash", now=LATE)
        with pytest.raises(Invalid):
            payments.settle_payment(overdue_loan["loan_id"], 0, "telebirr", now=LATE)

    def test_unknown_or_closed_loan(self, payments, overdue_loan):
        with pytest.raises(NotFound):
            payments.settle_payment("65f000000000000000000000", 50, "telebirr", {"mobile": "0912345678"}, now=LATE)

        payments.settle_payment(overdue_loan["loan_id"], 50, "telebirr", {"mobile": "0912345678"}, now=LATE)
        with pytest.raises(NotFound):
            payments.settle_payment(overdue_loan["loan_id"], 50, "telebirr", {"mobile": "0912345678"}, now=LATE)

    def test_failed_payment_write_reopens_loan(self, db, payments, overdue_loan, monkeypatch):
        def broken(*args, **kwargs):
            raise PyMongoError("write failed")

        monkeypatch.setattr(settlement, "create_document", broken)

        with pytest.raises(PyMongoError):
            payments.settle_payment(overdue_loan["loan_id"], 50, "telebirr", {"mobile": "0912345678"}, now=LATE)

        loan = db["loan"].find_one()
        assert loan["status"] == "borrowed"
        assert loan["returned_at"] is None
        assert loan["active_slot"] == overdue_loan["user_id"]
        assert "settlement_ref" not in loan
        assert db["payment"].count_documents({}) == 0
        assert copies(db, overdue_loan["book_id"]) == 0


class TestRedirectSettlement:
    def test_settle_creates_pending_payment_only(self, db, payments, overdue_loan):
        started = payments.settle_payment(overdue_loan["loan_id"], 50, "chapa", now=LATE)

        assert started["payment"]["status"] == "pending"
        assert started["tx_ref"].startswith("fine-")
        assert started["tx_ref"] in started["checkout_url"]
        assert db["loan"].find_one()["status"] == "borrowed"
        assert copies(db, overdue_loan["book_id"]) == 0

    def test_verify_success_is_idempotent(self, db, payments, overdue_loan):
        tx_ref = payments.settle_payment(overdue_loan["loan_id"], 50, "chapa", now=LATE)["tx_ref"]

        first = payments.verify_settlement(tx_ref, "success", now=LATE + timedelta(minutes=5))
        second = payments.verify_settlement(tx_ref, "success", now=LATE + timedelta(minutes=6))

        assert first["applied"] is True
        assert first["loan_closed"] is True
        assert second["applied"] is False
        assert copies(db, overdue_loan["book_id"]) == 1
        loan = db["loan"].find_one()
        assert loan["status"] == "returned"
        assert loan["fine"] == 0
        assert payments.get_payment(tx_ref)["status"] == "completed"
        assert_ledger_consistent(db)

    def test_verify_failure_keeps_loan(self, db, payments, overdue_loan):
        tx_ref = payments.settle_payment(overdue_loan["loan_id"], 50, "chapa", now=LATE)["tx_ref"]

        result = payments.verify_settlement(tx_ref, "failed", now=LATE)
        late_success = payments.verify_settlement(tx_ref, "success", now=LATE)

        assert result["applied"] is True
        assert result["loan_closed"] is False
        assert late_success["applied"] is False
        assert payments.get_payment(tx_ref)["status"] == "failed"
        assert db["loan"].find_one()["status"] == "borrowed"
        assert copies(db, overdue_loan["book_id"]) == 0

    def test_verify_unknown_reference(self, payments):
        with pytest.raises(NotFound):
            payments.verify_settlement("fine-missing", "success")
        with pytest.raises(Invalid):
            payments.verify_settlement("", "success")

    def test_store_error_while_closing_loan_keeps_payment_retryable(self, db, payments, overdue_loan, monkeypatch):
        tx_ref = payments.settle_payment(overdue_loan["loan_id"], 50, "chapa", now=LATE)["tx_ref"]

        def unreachable(*args, **kwargs):
            raise PyMongoError("primary stepped down")

        with monkeypatch.context() as patch:
            patch.setattr(payments.lending.loans, "find_one_and_update", unreachable)
            with pytest.raises(PyMongoError):
                payments.verify_settlement(tx_ref, "success", now=LATE)

        assert payments.get_payment(tx_ref)["status"] == "pending"
        assert db["loan"].find_one()["status"] == "borrowed"
        assert copies(db, overdue_loan["book_id"]) == 0

        retry = payments.verify_settlement(tx_ref, "success", now=LATE + timedelta(minutes=1))
        assert retry["applied"] is True
        assert retry["loan_closed"] is True
        assert retry["payment"]["status"] == "completed"
        assert copies(db, overdue_loan["book_id"]) == 1
        assert_ledger_consistent(db)

    def test_store_error_while_completing_payment_reopens_loan(self, db, payments, overdue_loan, monkeypatch):
        tx_ref = payments.settle_payment(overdue_loan["loan_id"], 50, "chapa", now=LATE)["tx_ref"]
        update_one = payments.payments.update_one

        def fail_completion(query, update, *args, **kwargs):
            if update.get("$set", {}).get("status") == "completed":
                raise PyMongoError("write concern timeout")
            return update_one(query, update, *args, **kwargs)

        with monkeypatch.context() as patch:
            patch.setattr(payments.payments, "update_one", fail_completion)
            with pytest.raises(PyMongoError):
                payments.verify_settlement(tx_ref, "success", now=LATE)

        loan = db["loan"].find_one()
        assert loan["status"] == "borrowed"
        assert "settlement_ref" not in loan
        assert payments.get_payment(tx_ref)["status"] == "pending"
        assert copies(db, overdue_loan["book_id"]) == 0

        assert payments.verify_settlement(tx_ref, "success", now=LATE)["loan_closed"] is True
        assert copies(db, overdue_loan["book_id"]) == 1

    def test_callback_for_loan_no_longer_borrowed_fails_payment(self, db, payments, overdue_loan):
        tx_ref = payments.settle_payment(overdue_loan["loan_id"], 50, "chapa", now=LATE)["tx_ref"]
        db["loan"].update_one({}, {"$set": {"status": "returned"}, "$unset": {"active_slot": ""}})

        result = payments.verify_settlement(tx_ref, "success", now=LATE)

        assert result["applied"] is True
        assert result["loan_closed"] is False
        assert result["payment"]["status"] == "failed"
        assert "loan_slot" not in result["payment"]
        assert payments.verify_settlement(tx_ref, "success", now=LATE)["applied"] is False
        assert copies(db, overdue_loan["book_id"]) == 0

    def test_callback_during_processing_is_ignored(self, db, payments, overdue_loan):
        tx_ref = payments.settle_payment(overdue_loan["loan_id"], 50, "chapa", now=LATE)["tx_ref"]
        db["payment"].update_one({"tx_ref": tx_ref}, {"$set": {"status": "processing"}})

        assert payments.verify_settlement(tx_ref, "success", now=LATE)["applied"] is False
        assert db["loan"].find_one()["status"] == "borrowed"


class TestSinglePaymentPerLoan:
    def test_second_redirect_while_pending_conflicts(self, db, payments, overdue_loan):
        first = payments.settle_payment(overdue_loan["loan_id"], 50, "chapa", now=LATE)

        with pytest.raises(Conflict) as exc:
            payments.settle_payment(overdue_loan["loan_id"], 50, "chapa", now=LATE)

        assert exc.value.extra["tx_ref"] == first["tx_ref"]
        assert db["payment"].count_documents({}) == 1

    def test_instant_while_redirect_pending_conflicts(self, db, payments, overdue_loan):
        payments.settle_payment(overdue_loan["loan_id"], 50, "chapa", now=LATE)

        with pytest.raises(Conflict):
            payments.settle_payment(overdue_loan["loan_id"], 50, "telebirr", {"mobile": "0912345678"}, now=LATE)

        assert db["loan"].find_one()["status"] == "borrowed"
        assert db["payment"].count_documents({"status": "completed"}) == 0
        assert copies(db, overdue_loan["book_id"]) == 0

    def test_new_attempt_allowed_after_failed_callback(self, db, payments, overdue_loan):
        failed = payments.settle_payment(overdue_loan["loan_id"], 50, "chapa", now=LATE)["tx_ref"]
        payments.verify_settlement(failed, "failed", now=LATE)

        receipt = payments.settle_payment(
            overdue_loan["loan_id"], 50, "telebirr", {"mobile": "0912345678"}, now=LATE
        )

        assert receipt["payment"]["status"] == "completed"
        assert "loan_slot" not in payments.get_payment(failed)
        assert copies(db, overdue_loan["book_id"]) == 1

    def test_unique_index_backstops_racing_settlements(self, db, payments, overdue_loan, monkeypatch):
        payments.settle_payment(overdue_loan["loan_id"], 50, "chapa", now=LATE)
        find_one = payments.payments.find_one

        # both requests passed the read guard before either payment landed
        def guard_misses(query, *args, **kwargs):
            if "loan_id" in query:
                return None
            return find_one(query, *args, **kwargs)

        monkeypatch.setattr(payments.payments, "find_one", guard_misses)

        with pytest.raises(Conflict):
            payments.settle_payment(overdue_loan["loan_id"], 50, "chapa", now=LATE)
        with pytest.raises(Conflict):
            payments.settle_payment(overdue_loan["loan_id"], 50, "telebirr", {"mobile": "0912345678"}, now=LATE)

        loan = db["loan"].find_one()
        assert loan["status"] == "borrowed"
        assert loan["active_slot"] == overdue_loan["user_id"]
        assert db["payment"].count_documents({}) == 1
        assert copies(db, overdue_loan["book_id"]) == 0


def test_user_payments_paginates(db, payments, overdue_loan):
    first = payments.settle_payment(overdue_loan["loan_id"], 50, "chapa", now=LATE)
    payments.verify_settlement(first["tx_ref"], "failed", now=LATE)
    payments.settle_payment(overdue_loan["loan_id"], 50, "chapa", now=LATE)

    page = payments.user_payments(overdue_loan["user_id"], page=1, limit=1)
    assert page["total"] == 2
    assert page["total_pages"] == 2
    assert len(page["payments"]) == 1
