"""
Reporting Module

Sums engine snapshots across loans, batches and members for the summary
views: the loan portfolio totals, a batch's collection status and a single
member's dossier. Every figure comes from ``compute_loan_state``,
``compute_member_due`` or ``compute_batch_defaulters``; nothing here
recomputes balances on its own.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .committees import (
    BatchDefaulter, Committee, CommitteeManager, MemberSubscription, PaymentRecord,
    compute_batch_defaulters
)
from .config import get_config
from .currency import Currency, Money
from .dates import batch_month_index, batch_months_elapsed, ensure_utc, month_label
from .loans import Loan, LoanManager, LoanSnapshot, LoanStatus, compute_loan_state
from .logging_config import get_logger
from .members import Member, MemberManager


@dataclass(frozen=True)
class LoanPortfolioSummary:
    """Totals across every loan as of an instant"""
    as_of: datetime
    loan_count: int
    total_issued: Money
    total_recovered: Money
    total_outstanding: Money
    pending_borrowers: int


@dataclass(frozen=True)
class BatchSummary:
    """Collection status of one batch as of an instant"""
    year: int
    duration_months: int
    as_of: datetime
    is_running: bool
    current_month_index: int
    current_month_label: str
    members_enrolled: int
    total_collected: Money
    total_arrears: Money
    paid_this_month: int
    pending_this_month: int
    defaulters: Tuple[BatchDefaulter, ...]


@dataclass(frozen=True)
class BatchPosition:
    """One member's standing in one batch"""
    subscription: MemberSubscription
    duration_months: int
    total_paid: Money
    months_paid: int
    pending_month_indices: Tuple[int, ...]
    maturity_amount: Money
    history: Tuple[PaymentRecord, ...]

    @property
    def pending_month_labels(self) -> List[str]:
        return [month_label(index) for index in self.pending_month_indices]


@dataclass(frozen=True)
class LoanPosition:
    """One loan with its replayed balances"""
    loan: Loan
    snapshot: LoanSnapshot
    total_recovered: Money

    @property
    def is_closed(self) -> bool:
        return self.loan.status == LoanStatus.CLOSED or self.snapshot.is_closed


@dataclass(frozen=True)
class MemberDossier:
    """Everything a member has in the ledger as of an instant"""
    member: Member
    as_of: datetime
    batches: Tuple[BatchPosition, ...]
    loans: Tuple[LoanPosition, ...]

    @property
    def open_loans(self) -> List[LoanPosition]:
        return [position for position in self.loans if not position.is_closed]


class ReportingEngine:
    """
    Aggregates ledger snapshots for dashboards and member lookups
    """

    def __init__(
        self,
        loan_manager: LoanManager,
        committee_manager: CommitteeManager,
        member_manager: Optional[MemberManager] = None,
        currency: Optional[Currency] = None
    ):
        self.loan_manager = loan_manager
        self.committee_manager = committee_manager
        self.member_manager = member_manager
        self.config = get_config()
        self.currency = currency or self.config.ledger_currency
        self.logger = get_logger("committee_ledger.reporting")

    def loan_portfolio_summary(self, as_of: datetime) -> LoanPortfolioSummary:
        """
        Portfolio totals: amount issued, amount recovered, outstanding
        balance and the number of borrowers with a loan still open.
        """
        total_issued = Money.zero(self.currency)
        total_recovered = Money.zero(self.currency)
        total_outstanding = Money.zero(self.currency)
        pending_borrowers = set()

        loans = [
            loan for loan in self.loan_manager.list_loans()
            if loan.currency == self.currency and _issued_by(loan, as_of)
        ]
        for loan in loans:
            repayments = self.loan_manager.get_repayments(loan.id)
            snapshot = compute_loan_state(loan, repayments, as_of,
                                          tolerance=self.config.closure_tolerance_amount)

            total_issued = total_issued + loan.principal
            total_recovered = total_recovered + snapshot.total_paid
            total_outstanding = total_outstanding + snapshot.total_pending
            if not snapshot.is_closed:
                pending_borrowers.add(loan.borrower_id)

        return LoanPortfolioSummary(
            as_of=ensure_utc(as_of),
            loan_count=len(loans),
            total_issued=total_issued,
            total_recovered=total_recovered,
            total_outstanding=total_outstanding,
            pending_borrowers=len(pending_borrowers)
        )

    def batch_summary(self, year: int, as_of: datetime) -> BatchSummary:
        """Collection status of a batch: collected so far, defaulters, this month's paid/pending counts"""
        batch = self.committee_manager.get_batch(year)
        if not batch:
            raise ValueError(f"Batch {year} not found")

        subscriptions = self.committee_manager.get_subscriptions(year)
        payments = _received_by(self.committee_manager.get_payments(year), as_of)
        defaulters = compute_batch_defaulters(batch, subscriptions, payments, as_of,
                                              penalty_rate=self.config.penalty_rate)

        currency = subscriptions[0].monthly_amount.currency if subscriptions else self.currency
        total_collected = Money.zero(currency)
        for payment in payments:
            if payment.is_paid:
                total_collected = total_collected + payment.amount_paid

        total_arrears = Money.zero(currency)
        for defaulter in defaulters:
            total_arrears = total_arrears + defaulter.total_arrears

        month_index = batch_month_index(year, as_of)
        current_month = max(0, month_index)
        enrolled_ids = {subscription.member_id for subscription in subscriptions}
        paid_this_month = len({
            payment.member_id for payment in payments
            if payment.month_index == current_month and payment.is_paid
            and payment.member_id in enrolled_ids
        })

        return BatchSummary(
            year=year,
            duration_months=batch.duration_months,
            as_of=ensure_utc(as_of),
            is_running=0 <= month_index < batch.duration_months,
            current_month_index=current_month,
            current_month_label=month_label(current_month),
            members_enrolled=len(enrolled_ids),
            total_collected=total_collected,
            total_arrears=total_arrears,
            paid_this_month=paid_this_month,
            pending_this_month=len(enrolled_ids) - paid_this_month,
            defaulters=tuple(defaulters)
        )

    def member_dossier(self, member_id: str, as_of: datetime) -> MemberDossier:
        """
        A member's full position: every batch they are enrolled in and every
        loan they have taken, evaluated as of one instant.
        """
        member = self.member_manager.get_member(member_id) if self.member_manager else None
        if member is None:
            raise ValueError(f"Member {member_id} not found")

        batches = []
        for subscription in self.committee_manager.get_subscriptions(member_id=member_id):
            batch = self.committee_manager.get_batch(subscription.committee_year)
            if batch is None:
                self.logger.warning("Subscription for %s references missing batch %s",
                                    member_id, subscription.committee_year)
                continue
            batches.append(self._batch_position(
                batch, subscription,
                _received_by(self.committee_manager.get_payments(batch.year, member_id), as_of), as_of
            ))

        loans = []
        for loan in self.loan_manager.get_borrower_loans(member_id):
            if not _issued_by(loan, as_of):
                continue
            snapshot = compute_loan_state(loan, self.loan_manager.get_repayments(loan.id), as_of,
                                          tolerance=self.config.closure_tolerance_amount)
            loans.append(LoanPosition(loan=loan, snapshot=snapshot, total_recovered=snapshot.total_paid))

        return MemberDossier(
            member=member,
            as_of=ensure_utc(as_of),
            batches=tuple(batches),
            loans=tuple(loans)
        )

    def export_summary(self, summary: Any) -> Dict[str, Any]:
        """Flatten a summary dataclass into JSON-safe primitives"""
        return _to_primitive(summary)

    def _batch_position(self, batch: Committee, subscription: MemberSubscription,
                        payments: List[PaymentRecord], as_of: datetime) -> BatchPosition:
        paid = [payment for payment in payments if payment.is_paid]
        paid_months = {payment.month_index for payment in paid}

        total_paid = Money.zero(subscription.monthly_amount.currency)
        for payment in paid:
            total_paid = total_paid + payment.amount_paid

        elapsed = min(batch.duration_months, batch_months_elapsed(batch.year, as_of))
        pending = tuple(index for index in range(elapsed) if index not in paid_months)

        # A full batch of contributions matures at the configured payout ratio
        contributed = subscription.monthly_amount * Decimal(batch.duration_months)
        maturity = contributed * self.config.maturity_ratio

        return BatchPosition(
            subscription=subscription,
            duration_months=batch.duration_months,
            total_paid=total_paid,
            months_paid=len(paid),
            pending_month_indices=pending,
            maturity_amount=maturity,
            history=tuple(sorted(paid, key=lambda p: p.month_index, reverse=True))
        )


def _issued_by(loan: Loan, as_of: datetime) -> bool:
    return ensure_utc(loan.start_date) <= ensure_utc(as_of)


def _received_by(payments: List[PaymentRecord], as_of: datetime) -> List[PaymentRecord]:
    """Payments already received at as_of; records without a date are kept"""
    as_of = ensure_utc(as_of)
    return [payment for payment in payments
            if payment.paid_at is None or ensure_utc(payment.paid_at) <= as_of]


def _to_primitive(value: Any) -> Any:
    if isinstance(value, Money):
        return {'amount': str(value.amount), 'currency': value.currency.code}
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, '__dataclass_fields__'):
        return {name: _to_primitive(getattr(value, name)) for name in value.__dataclass_fields__}
    if isinstance(value, (list, tuple)):
        return [_to_primitive(item) for item in value]
    return value
