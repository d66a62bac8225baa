"""Tests for individual loans: create, read, update, transfer and delete."""

from datetime import datetime
from decimal import Decimal
from unittest.mock import patch

import pytest

from app.exceptions import (
    ForbiddenError, NotFoundError, UnauthorizedError, ValidationError
)
from app.extensions import db
from app.models import Loan, LoanStatus, Notification, Transaction
from app.parties import ExternalParty, RegisteredParty
from app.services.loan_service import (
    create_loan,
    delete_loan,
    get_loan_details,
    link_pending_loans,
    parse_amount,
    resolve_counterparty,
    transfer_loan,
    update_loan,
)
from app.services.transaction_service import get_user_loan_summary


def _notifications(type_):
    return Notification.query.filter_by(type=type_).order_by(Notification.id).all()


def _recipients(notification):
    return sorted(r.user_id for r in notification.recipients)


def _lend(lender, counterparty, amount=500000, **kwargs):
    return create_loan(
        amount=amount,
        description=kwargs.pop("description", "Rent"),
        due_date=kwargs.pop("due_date", None),
        direction=kwargs.pop("direction", "OUT"),
        acting_user_id=lender.id,
        counterparty=counterparty,
        **kwargs,
    )


class TestParseAmount:

    def test_quantizes_to_cents(self) -> None:
        assert parse_amount("12.346") == Decimal("12.35")
        assert parse_amount(10) == Decimal("10.00")

    @pytest.mark.parametrize("value", [0, -5, "abc", None, True, "NaN"])
    def test_rejects_non_positive_or_garbage(self, value) -> None:
        with pytest.raises(ValidationError):
            parse_amount(value)


class TestResolveCounterparty:

    def test_registered_email(self, bob) -> None:
        assert resolve_counterparty("BOB@example.com") == RegisteredParty(bob.id)

    def test_unknown_email_is_external(self, app) -> None:
        assert resolve_counterparty(" dave@x.com ") == ExternalParty("dave@x.com")

    def test_empty_email_rejected(self, app) -> None:
        with pytest.raises(ValidationError):
            resolve_counterparty("")


class TestCreateLoan:

    def test_registered_counterparty(self, alice, bob) -> None:
        loan = _lend(alice, RegisteredParty(bob.id))

        assert loan.lender_id == alice.id
        assert loan.borrower_id == bob.id
        assert loan.is_acknowledged is True
        assert loan.amount == Decimal("500000.00")
        assert loan.status == LoanStatus.ACTIVE.value

        legs = loan.live_transactions()
        assert [(leg.direction, leg.payer_id) for leg in legs] == [("OUT", alice.id), ("IN", bob.id)]
        assert all(leg.title == "Loan from Alice to Bob" for leg in legs)
        assert legs[0].description == "Loan given: Rent"
        assert legs[1].description == "Loan received: Rent"
        assert all(leg.amount == loan.amount for leg in legs)

    def test_notifies_both_parties_after_commit(self, alice, bob) -> None:
        loan = _lend(alice, RegisteredParty(bob.id))

        [notification] = _notifications("LOAN_CREATED")
        assert notification.message == "A new loan has been created between Alice and Bob"
        assert notification.loan_id == loan.id
        assert notification.payload["amount"] == "500000.00"
        assert _recipients(notification) == sorted([alice.id, bob.id])

    def test_external_counterparty(self, alice) -> None:
        loan = _lend(alice, ExternalParty("bob@x.com"))

        assert loan.borrower_id is None
        assert loan.borrower_email == "bob@x.com"
        assert loan.is_acknowledged is False

        [leg] = loan.live_transactions()
        assert leg.direction == "OUT"
        assert leg.payer_id == alice.id
        assert leg.title == "Loan from Alice to bob"

        [notification] = _notifications("LOAN_CREATED")
        assert _recipients(notification) == [alice.id]

    def test_direction_in_makes_actor_borrower(self, alice, bob) -> None:
        loan = _lend(alice, RegisteredParty(bob.id), direction="IN")

        assert loan.lender_id == bob.id
        assert loan.borrower_id == alice.id

    def test_email_string_counterparty(self, alice) -> None:
        loan = _lend(alice, "zed@x.com")
        assert loan.borrower_email == "zed@x.com"

    def test_group_loan_stamps_legs(self, alice, bob, group) -> None:
        loan = _lend(alice, RegisteredParty(bob.id), group_id=group.id)

        assert loan.group_id == group.id
        assert all(leg.group_id == group.id for leg in loan.live_transactions())

    def test_group_with_external_rejected(self, alice, group) -> None:
        with pytest.raises(ValidationError):
            _lend(alice, ExternalParty("x@y.com"), group_id=group.id)
        assert Loan.query.count() == 0

    def test_unknown_group(self, alice, bob) -> None:
        with pytest.raises(NotFoundError):
            _lend(alice, RegisteredParty(bob.id), group_id=999)

    def test_loan_with_yourself_rejected(self, alice) -> None:
        with pytest.raises(ValidationError):
            _lend(alice, RegisteredParty(alice.id))

    def test_unknown_counterparty(self, alice) -> None:
        with pytest.raises(NotFoundError):
            _lend(alice, RegisteredParty(999))

    def test_invalid_amount_creates_nothing(self, alice, bob) -> None:
        with pytest.raises(ValidationError):
            _lend(alice, RegisteredParty(bob.id), amount=0)
        assert Loan.query.count() == 0
        assert Transaction.query.count() == 0
        assert Notification.query.count() == 0

    def test_invalid_direction(self, alice, bob) -> None:
        with pytest.raises(ValidationError):
            _lend(alice, RegisteredParty(bob.id), direction="SIDEWAYS")


class TestGetLoanDetails:

    def test_single_view(self, alice, bob) -> None:
        loan = _lend(alice, RegisteredParty(bob.id))
        details = get_loan_details(loan.id)

        assert details["id"] == loan.id
        assert details["lender"]["firstName"] == "Alice"
        assert len(details["transactions"]) == 2
        assert "splits" not in details

    def test_missing_loan(self, app) -> None:
        with pytest.raises(NotFoundError, match="Loan with ID 42 not found"):
            get_loan_details(42)

    def test_unknown_view_type(self, alice, bob) -> None:
        loan = _lend(alice, RegisteredParty(bob.id))
        with pytest.raises(ValidationError):
            get_loan_details(loan.id, "tree")


class TestUpdateLoan:

    def test_amount_cascades_to_legs(self, alice, bob) -> None:
        loan = _lend(alice, RegisteredParty(bob.id), amount=100)

        update_loan(loan.id, {"amount": "250.50", "description": "Groceries"}, alice.id)

        loan = db.session.get(Loan, loan.id)
        assert loan.amount == Decimal("250.50")
        for leg in loan.live_transactions():
            assert leg.amount == Decimal("250.50")
            assert leg.description.endswith(": Groceries")

    def test_amount_change_notifies_balance_update(self, alice, bob) -> None:
        loan = _lend(alice, RegisteredParty(bob.id), amount=100)

        update_loan(loan.id, {"amount": 60}, bob.id)

        [notification] = _notifications("BALANCE_UPDATE")
        assert notification.payload["amountDifference"] == "40.00"
        assert _recipients(notification) == sorted([alice.id, bob.id])

    def test_same_amount_sends_nothing(self, alice, bob) -> None:
        loan = _lend(alice, RegisteredParty(bob.id), amount=100)
        update_loan(loan.id, {"amount": "100.00"}, alice.id)
        assert _notifications("BALANCE_UPDATE") == []

    def test_repaid_notifies_each_side(self, alice, bob) -> None:
        loan = _lend(alice, RegisteredParty(bob.id), amount=100)

        update_loan(loan.id, {"status": "REPAID"}, bob.id)

        repaid = _notifications("LOAN_REPAID")
        assert [_recipients(n) for n in repaid] == [[alice.id], [bob.id]]
        assert repaid[0].message == "Bob has repaid the loan of 100.00"
        assert repaid[1].message == "You have repaid the loan of 100.00 to Alice"

    def test_other_status_change(self, alice, bob) -> None:
        loan = _lend(alice, RegisteredParty(bob.id))
        update_loan(loan.id, {"status": "DEFAULTED"}, alice.id)

        [notification] = _notifications("LOAN_STATUS_UPDATE")
        assert notification.payload == {
            "loanId": loan.id, "oldStatus": "ACTIVE", "newStatus": "DEFAULTED"
        }

    def test_stranger_forbidden(self, alice, bob, carol) -> None:
        loan = _lend(alice, RegisteredParty(bob.id))
        with pytest.raises(ForbiddenError):
            update_loan(loan.id, {"description": "mine now"}, carol.id)

    def test_unknown_field(self, alice, bob) -> None:
        loan = _lend(alice, RegisteredParty(bob.id))
        with pytest.raises(ValidationError, match="lender_id"):
            update_loan(loan.id, {"lender_id": bob.id}, alice.id)

    def test_invalid_status(self, alice, bob) -> None:
        loan = _lend(alice, RegisteredParty(bob.id))
        with pytest.raises(ValidationError):
            update_loan(loan.id, {"status": "PAID"}, alice.id)

    def test_borrower_can_acknowledge(self, alice, bob) -> None:
        loan = _lend(alice, RegisteredParty(bob.id))
        update_loan(loan.id, {"is_acknowledged": False}, bob.id)
        assert db.session.get(Loan, loan.id).is_acknowledged is False

    def test_registered_side_acknowledges_external_loan(self, alice) -> None:
        loan = _lend(alice, ExternalParty("x@y.com"))
        update_loan(loan.id, {"is_acknowledged": True}, alice.id)
        assert db.session.get(Loan, loan.id).is_acknowledged is True

    def test_group_ignored_when_a_side_is_external(self, alice, group) -> None:
        loan = _lend(alice, ExternalParty("x@y.com"))
        update_loan(loan.id, {"group_id": group.id}, alice.id)
        assert db.session.get(Loan, loan.id).group_id is None

    def test_group_moves_legs(self, alice, bob, group) -> None:
        loan = _lend(alice, RegisteredParty(bob.id))
        update_loan(loan.id, {"group_id": group.id}, alice.id)

        loan = db.session.get(Loan, loan.id)
        assert loan.group_id == group.id
        assert all(leg.group_id == group.id for leg in loan.live_transactions())

    def test_due_date(self, alice, bob) -> None:
        loan = _lend(alice, RegisteredParty(bob.id))
        due = datetime(2030, 1, 15)
        update_loan(loan.id, {"due_date": due}, alice.id)
        assert db.session.get(Loan, loan.id).due_date == due


class TestTransferLoan:

    def test_both_targets_rejected(self, alice, bob, carol) -> None:
        loan = _lend(alice, RegisteredParty(bob.id))

        with pytest.raises(ValidationError):
            transfer_loan(loan.id, alice.id, new_borrower_id=carol.id, new_party_email="z@x.com")

        loan = db.session.get(Loan, loan.id)
        assert loan.borrower_id == bob.id
        assert len(loan.live_transactions()) == 2

    def test_no_target_rejected(self, alice, bob) -> None:
        loan = _lend(alice, RegisteredParty(bob.id))
        with pytest.raises(ValidationError):
            transfer_loan(loan.id, alice.id)

    def test_lender_moves_to_registered_borrower(self, alice, bob, carol) -> None:
        loan = _lend(alice, RegisteredParty(bob.id))
        old_leg_ids = {leg.id for leg in loan.live_transactions()}

        transfer_loan(loan.id, alice.id, new_borrower_id=carol.id)

        loan = db.session.get(Loan, loan.id)
        assert loan.borrower_id == carol.id
        assert loan.is_acknowledged is True

        legs = loan.live_transactions()
        assert {leg.id for leg in legs}.isdisjoint(old_leg_ids)
        assert [(leg.direction, leg.payer_id, leg.title) for leg in legs] == [
            ("OUT", alice.id, "Loan given to Carol"),
            ("IN", carol.id, "Loan received from Alice"),
        ]
        retired = Transaction.query.filter(Transaction.id.in_(old_leg_ids)).all()
        assert all(leg.is_deleted for leg in retired)

    def test_borrower_cannot_reassign(self, alice, bob, carol) -> None:
        loan = _lend(alice, RegisteredParty(bob.id))
        with pytest.raises(UnauthorizedError):
            transfer_loan(loan.id, bob.id, new_borrower_id=carol.id)

    def test_same_borrower_rejected(self, alice, bob) -> None:
        loan = _lend(alice, RegisteredParty(bob.id))
        with pytest.raises(ValidationError):
            transfer_loan(loan.id, alice.id, new_borrower_id=bob.id)

    def test_repaid_loan_forbidden(self, alice, bob, carol) -> None:
        loan = _lend(alice, RegisteredParty(bob.id))
        update_loan(loan.id, {"status": "REPAID"}, alice.id)
        with pytest.raises(ForbiddenError):
            transfer_loan(loan.id, alice.id, new_borrower_id=carol.id)

    def test_borrower_points_lender_at_email(self, alice, bob, group) -> None:
        loan = _lend(alice, RegisteredParty(bob.id), group_id=group.id)

        transfer_loan(loan.id, bob.id, new_party_email="zed@x.com")

        loan = db.session.get(Loan, loan.id)
        assert loan.lender_id is None
        assert loan.lender_email == "zed@x.com"
        assert loan.borrower_id == bob.id
        assert loan.group_id is None
        assert loan.is_acknowledged is False

        [leg] = loan.live_transactions()
        assert (leg.direction, leg.payer_id, leg.title) == ("IN", bob.id, "Loan received from zed")

    def test_lender_points_borrower_at_email(self, alice, bob) -> None:
        loan = _lend(alice, RegisteredParty(bob.id))

        transfer_loan(loan.id, alice.id, new_party_email="zed@x.com")

        loan = db.session.get(Loan, loan.id)
        assert loan.borrower_email == "zed@x.com"
        [leg] = loan.live_transactions()
        assert (leg.direction, leg.title) == ("OUT", "Loan given to zed")

    def test_stranger_cannot_transfer_to_email(self, alice, bob, carol) -> None:
        loan = _lend(alice, RegisteredParty(bob.id))
        with pytest.raises(UnauthorizedError):
            transfer_loan(loan.id, carol.id, new_party_email="zed@x.com")


class TestDeleteLoan:

    def test_lender_deletes(self, alice, bob) -> None:
        loan = _lend(alice, RegisteredParty(bob.id))

        delete_loan(loan.id, alice.id)

        loan = db.session.get(Loan, loan.id)
        assert loan.is_deleted is True
        assert loan.live_transactions() == []
        with pytest.raises(NotFoundError):
            get_loan_details(loan.id)

    def test_second_delete_not_found(self, alice, bob) -> None:
        loan = _lend(alice, RegisteredParty(bob.id))
        delete_loan(loan.id, alice.id)
        with pytest.raises(NotFoundError):
            delete_loan(loan.id, alice.id)

    def test_borrower_cannot_delete(self, alice, bob) -> None:
        loan = _lend(alice, RegisteredParty(bob.id))

        with pytest.raises(NotFoundError):
            delete_loan(loan.id, bob.id)

        assert db.session.get(Loan, loan.id).is_deleted is False


class TestUserLoanSummary:

    def test_totals_by_direction(self, alice, bob, carol) -> None:
        _lend(alice, RegisteredParty(bob.id), amount=100)
        _lend(alice, RegisteredParty(carol.id), amount=50)
        _lend(carol, RegisteredParty(alice.id), amount=30)

        summary = get_user_loan_summary(alice.id)
        assert summary == {
            "in": Decimal("30.00"),
            "out": Decimal("150.00"),
            "net": Decimal("120.00"),
            "count": 3,
        }

    def test_deleted_loans_excluded(self, alice, bob) -> None:
        loan = _lend(alice, RegisteredParty(bob.id), amount=100)
        delete_loan(loan.id, alice.id)
        assert get_user_loan_summary(alice.id)["count"] == 0

    def test_no_loans(self, alice) -> None:
        assert get_user_loan_summary(alice.id)["net"] == Decimal("0")


class TestNotificationFailure:
    """A failing notification sink never undoes a committed ledger change."""

    def test_create_loan_survives(self, alice, bob) -> None:
        with patch(
            "app.services.notification_service.create_notification",
            side_effect=RuntimeError("sink down"),
        ) as sink:
            loan = _lend(alice, RegisteredParty(bob.id), amount=100)

        assert sink.called
        db.session.expire_all()
        stored = db.session.get(Loan, loan.id)
        assert stored is not None and stored.is_deleted is False
        assert len(stored.live_transactions()) == 2
        assert Notification.query.count() == 0

    def test_update_loan_survives(self, alice, bob) -> None:
        loan = _lend(alice, RegisteredParty(bob.id), amount=100)
        before = Notification.query.count()

        with patch(
            "app.services.notification_service.create_notification",
            side_effect=RuntimeError("sink down"),
        ) as sink:
            update_loan(loan.id, {"amount": 250}, alice.id)

        assert sink.called
        db.session.expire_all()
        stored = db.session.get(Loan, loan.id)
        assert stored.amount == Decimal("250.00")
        assert {leg.amount for leg in stored.live_transactions()} == {Decimal("250.00")}
        assert Notification.query.count() == before


class TestLinkPendingLoans:

    def test_borrower_side(self, alice, make_user) -> None:
        loan = _lend(alice, "dave@example.com", amount=80)

        dave = make_user(first_name="Dave", email="Dave@Example.com", last_name="Dunn")
        [linked] = link_pending_loans(dave.id)

        assert linked.id == loan.id
        loan = db.session.get(Loan, loan.id)
        assert loan.borrower_id == dave.id
        assert loan.borrower_email is None
        assert loan.is_acknowledged is True

        legs = loan.live_transactions()
        assert [(leg.direction, leg.payer_id) for leg in legs] == [
            ("OUT", alice.id), ("IN", dave.id)
        ]
        assert legs[1].title == "Loan from Alice to Dave"
        assert legs[1].amount == Decimal("80.00")

        [joined] = Notification.query.filter_by(
            message="Dave Dunn has joined and is now linked to your loan."
        ).all()
        assert joined.type == "LOAN_CREATED"
        assert _recipients(joined) == [alice.id]
        assert joined.payload == {"loanId": loan.id, "amount": "80.00"}

    def test_lender_side(self, bob, make_user) -> None:
        loan = _lend(bob, "erin@example.com", amount=25, direction="IN")

        erin = make_user(first_name="Erin", email="erin@example.com")
        link_pending_loans(erin.id)

        loan = db.session.get(Loan, loan.id)
        assert loan.lender_id == erin.id
        assert loan.lender_email is None
        out_leg = next(leg for leg in loan.live_transactions() if leg.direction == "OUT")
        assert (out_leg.payer_id, out_leg.title) == (erin.id, "Loan from Erin to Bob")
        assert Notification.query.filter_by(
            message="Erin has joined and is now linked to your loan."
        ).count() == 1

    def test_deleted_and_foreign_loans_untouched(self, alice, make_user) -> None:
        deleted = _lend(alice, "dave@example.com")
        delete_loan(deleted.id, alice.id)
        other = _lend(alice, "someone@example.com")

        dave = make_user(first_name="Dave", email="dave@example.com")

        assert link_pending_loans(dave.id) == []
        assert db.session.get(Loan, deleted.id).borrower_id is None
        assert db.session.get(Loan, other.id).borrower_email == "someone@example.com"

    def test_second_call_links_nothing(self, alice, make_user) -> None:
        _lend(alice, "dave@example.com")
        dave = make_user(first_name="Dave", email="dave@example.com")

        assert len(link_pending_loans(dave.id)) == 1
        assert link_pending_loans(dave.id) == []

    def test_unknown_user(self, app) -> None:
        with pytest.raises(NotFoundError):
            link_pending_loans(404)
