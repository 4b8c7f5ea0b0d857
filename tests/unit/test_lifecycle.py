"""
Tests for the distribution state machine: approval, declaration, payment.
"""
import pytest
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select, func

from propledger import (
    Transaction,
    DistributionStatus, PaymentMethod, PayoutStatus, TransactionType,
    AlreadyDeclared, DuplicateReference, IllegalTransition, InvalidInput, ValidationFailed,
    TRANSITIONS, check_transition,
    approve_distribution, reject_distribution, declare_distribution,
    mark_payout_paid, mark_payouts_paid, mark_payout_failed, credit_wallet,
    create_draft_distribution, get_wallet_balance, record_transaction,
)

from tests.builders import make_statement


def ledger_row_count(session):
    return session.execute(select(func.count()).select_from(Transaction)).scalar_one()


@pytest.fixture
def draft(session, statement, funded_villa):
    return create_draft_distribution(session, funded_villa.id, statement.id).distribution


@pytest.fixture
def declared(session, draft, admin):
    approve_distribution(session, draft.id, approved_by=admin.id)
    return declare_distribution(session, draft.id)


# =============================================================================
# TRANSITION TABLE
# =============================================================================

class TestTransitions:

    def test_paid_is_terminal(self):
        assert TRANSITIONS[DistributionStatus.PAID] == frozenset()

    @pytest.mark.parametrize("current,target", [
        (DistributionStatus.DRAFT, DistributionStatus.APPROVED),
        (DistributionStatus.DRAFT, DistributionStatus.DECLARED),
        (DistributionStatus.APPROVED, DistributionStatus.DECLARED),
        (DistributionStatus.APPROVED, DistributionStatus.DRAFT),
        (DistributionStatus.DECLARED, DistributionStatus.PAID),
    ])
    def test_allowed(self, current, target):
        check_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (DistributionStatus.DRAFT, DistributionStatus.PAID),
        (DistributionStatus.DECLARED, DistributionStatus.DRAFT),
        (DistributionStatus.PAID, DistributionStatus.APPROVED),
    ])
    def test_illegal(self, current, target):
        with pytest.raises(IllegalTransition):
            check_transition(current, target)

    @pytest.mark.parametrize("current", [DistributionStatus.DECLARED, DistributionStatus.PAID])
    def test_redeclare(self, current):
        with pytest.raises(AlreadyDeclared):
            check_transition(current, DistributionStatus.DECLARED)


# =============================================================================
# APPROVAL
# =============================================================================

class TestApproval:

    def test_approve(self, session, draft, admin):
        approve_distribution(session, draft.id, approved_by=admin.id, notes="checked")
        assert draft.status == DistributionStatus.APPROVED
        assert draft.approved_by == admin.id
        assert isinstance(draft.approved_at, datetime)
        assert draft.notes == "checked"

    def test_reject_returns_to_draft(self, session, draft, admin):
        approve_distribution(session, draft.id, approved_by=admin.id)
        reject_distribution(session, draft.id, notes="wrong costs")
        assert draft.status == DistributionStatus.DRAFT
        assert draft.approved_at is None

    def test_reject_requires_approved(self, session, draft):
        with pytest.raises(IllegalTransition):
            reject_distribution(session, draft.id)

    def test_cannot_approve_declared(self, session, declared, admin):
        with pytest.raises(IllegalTransition):
            approve_distribution(session, declared.id, approved_by=admin.id)


# =============================================================================
# DECLARATION
# =============================================================================

class TestDeclaration:

    def test_declare_writes_payout_rows(self, session, declared, alice, bob):
        assert declared.status == DistributionStatus.DECLARED
        assert declared.declared_at is not None

        for payout in declared.payouts:
            tx = session.get(Transaction, payout.transaction_id)
            assert tx.type == TransactionType.PAYOUT
            assert tx.reference == f"PAY-{payout.id.upper()}"
            assert tx.amount == payout.amount
            assert tx.user_id == payout.user_id

        # 30 000 + 70 000 invested; 300 + 700 received
        assert get_wallet_balance(session, alice.id) == Decimal("-29700.00")
        assert get_wallet_balance(session, bob.id) == Decimal("-69300.00")

    def test_redeclare_raises_without_new_rows(self, session, declared):
        before = ledger_row_count(session)
        with pytest.raises(AlreadyDeclared):
            declare_distribution(session, declared.id)
        with pytest.raises(AlreadyDeclared):
            declare_distribution(session, declared.id, allow_draft=True)
        assert ledger_row_count(session) == before

    def test_draft_needs_fast_path_flag(self, session, draft):
        with pytest.raises(IllegalTransition):
            declare_distribution(session, draft.id)
        assert draft.status == DistributionStatus.DRAFT

        declare_distribution(session, draft.id, allow_draft=True)
        assert draft.status == DistributionStatus.DECLARED

    def test_collision_on_last_payout_rolls_back_everything(self, session, draft, alice):
        last = draft.payouts[-1]
        record_transaction(session, alice.id, TransactionType.PAYOUT, "1.00",
                           f"PAY-{last.id.upper()}")
        before = ledger_row_count(session)

        with pytest.raises(DuplicateReference):
            declare_distribution(session, draft.id, allow_draft=True)

        assert ledger_row_count(session) == before
        assert draft.status == DistributionStatus.DRAFT
        assert draft.declared_at is None
        assert all(p.transaction_id is None for p in draft.payouts)


# =============================================================================
# PAYMENT
# =============================================================================

class TestPayment:

    def test_wallet_payment_does_not_double_credit(self, session, declared, alice):
        payout = next(p for p in declared.payouts if p.user_id == alice.id)
        balance = get_wallet_balance(session, alice.id)
        rows = ledger_row_count(session)

        mark_payout_paid(session, payout.id, PaymentMethod.WALLET)

        assert payout.status == PayoutStatus.PAID
        assert payout.payment_method == PaymentMethod.WALLET
        assert payout.paid_at is not None
        assert get_wallet_balance(session, alice.id) == balance
        assert ledger_row_count(session) == rows

    def test_all_paid_moves_distribution_to_paid(self, session, declared):
        first, second = declared.payouts
        mark_payout_paid(session, first.id, PaymentMethod.BANK_TRANSFER)
        assert declared.status == DistributionStatus.DECLARED

        mark_payout_paid(session, second.id, "WALLET")
        assert declared.status == DistributionStatus.PAID

    def test_pay_twice_rejected(self, session, declared):
        payout = declared.payouts[0]
        mark_payout_paid(session, payout.id)
        with pytest.raises(ValidationFailed, match="already paid"):
            mark_payout_paid(session, payout.id)

    def test_pay_before_declaration_rejected(self, session, draft):
        with pytest.raises(ValidationFailed, match="declared before payment"):
            mark_payout_paid(session, draft.payouts[0].id)
        assert draft.payouts[0].status == PayoutStatus.PENDING

    def test_failed_then_paid(self, session, declared):
        payout = declared.payouts[0]
        mark_payout_failed(session, payout.id, reason="bank rejected account")
        assert payout.status == PayoutStatus.FAILED
        assert payout.notes == "bank rejected account"

        with pytest.raises(IllegalTransition):
            mark_payout_failed(session, payout.id)

        mark_payout_paid(session, payout.id, PaymentMethod.BANK_TRANSFER)
        assert payout.status == PayoutStatus.PAID

    def test_fail_requires_declared(self, session, draft):
        with pytest.raises(IllegalTransition):
            mark_payout_failed(session, draft.payouts[0].id)


class TestBulkPayment:

    def test_batch_settles_every_payout(self, session, declared):
        ids = [p.id for p in declared.payouts]
        paid = mark_payouts_paid(session, ids + ids[:1], PaymentMethod.BANK_TRANSFER)

        assert sorted(p.id for p in paid) == sorted(ids)
        assert all(p.status == PayoutStatus.PAID for p in declared.payouts)
        assert len({p.paid_at for p in declared.payouts}) == 1
        assert declared.status == DistributionStatus.PAID

    def test_one_refusal_rolls_back_the_batch(self, session, declared):
        first, second = declared.payouts
        mark_payout_paid(session, first.id)

        with pytest.raises(ValidationFailed, match="already paid"):
            mark_payouts_paid(session, [first.id, second.id])

        assert second.status == PayoutStatus.PENDING
        assert second.paid_at is None
        assert declared.status == DistributionStatus.DECLARED

    def test_empty_batch(self, session):
        with pytest.raises(InvalidInput):
            mark_payouts_paid(session, [])


class TestCreditWallet:

    def test_unlinked_payout_is_credited_once(self, session, draft, alice):
        payout = next(p for p in draft.payouts if p.user_id == alice.id)
        balance = get_wallet_balance(session, alice.id)

        tx = credit_wallet(session, payout)
        assert tx.reference == f"PAYOUT-{payout.id.upper()}"
        assert payout.transaction_id == tx.id

        again = credit_wallet(session, payout)
        assert again.id == tx.id
        assert get_wallet_balance(session, alice.id) == balance + payout.amount


class TestZeroPayouts:
    """A net too small to reach every holder leaves some payouts at zero."""

    @pytest.fixture
    def tiny(self, session, funded_villa, admin):
        stmt = make_statement(session, funded_villa.id, gross="0.01", costs="0", fee="0")
        distribution = create_draft_distribution(session, funded_villa.id, stmt.id).distribution
        approve_distribution(session, distribution.id, approved_by=admin.id)
        return declare_distribution(session, distribution.id)

    def test_zero_payout_gets_no_ledger_row(self, session, tiny, alice, bob):
        by_user = {p.user_id: p for p in tiny.payouts}
        assert by_user[alice.id].amount == Decimal("0.00")
        assert by_user[alice.id].transaction_id is None
        assert by_user[bob.id].amount == Decimal("0.01")
        assert by_user[bob.id].transaction_id is not None

    def test_paid_once_positive_payouts_settle(self, session, tiny, bob):
        bob_payout = next(p for p in tiny.payouts if p.user_id == bob.id)
        mark_payout_paid(session, bob_payout.id)
        assert tiny.status == DistributionStatus.PAID
