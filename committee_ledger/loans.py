"""
Loan Module

Member loans charge a flat monthly percentage on the principal still
outstanding. Repayments are stored without an interest/principal split; the
split, the outstanding balances and the closed flag are always derived by
replaying the repayment history month by month up to an explicit as-of
instant (see ``compute_loan_state``).
"""

from decimal import Decimal, ROUND_DOWN
from datetime import datetime
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional
from enum import Enum
import uuid

from .config import get_config
from .currency import Money, Currency
from .dates import add_months, ensure_utc, whole_months_between
from .logging_config import get_logger, log_action
from .members import next_loan_id
from .storage import StorageInterface

# A loan whose remaining balance is within one currency unit counts as closed
CLOSURE_TOLERANCE = Decimal('1')

logger = get_logger("committee_ledger.loans")


class LoanStatus(Enum):
    """Status recorded on the loan when it is issued or written off"""
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(frozen=True)
class Loan:
    """A loan issued to a member, with a monthly interest rate in percent"""
    id: str
    borrower_id: str
    principal: Money
    interest_rate: Decimal              # Monthly percent, e.g. Decimal('1.5') for 1.5%
    start_date: datetime
    status: LoanStatus = LoanStatus.ACTIVE
    notes: str = ""

    def __post_init__(self):
        if not isinstance(self.interest_rate, Decimal):
            object.__setattr__(self, 'interest_rate', Decimal(str(self.interest_rate)))
        if not self.principal.is_positive():
            raise ValueError(f"Loan principal must be positive, got {self.principal.to_string()}")
        if self.interest_rate < Decimal('0'):
            raise ValueError(f"Interest rate cannot be negative, got {self.interest_rate}")

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def monthly_rate(self) -> Decimal:
        """Interest rate as a fraction (1.5% -> 0.015)"""
        return self.interest_rate / Decimal('100')


@dataclass(frozen=True)
class LoanRepayment:
    """A single repayment received against a loan"""
    id: str
    loan_id: str
    amount: Money
    payment_date: datetime

    def __post_init__(self):
        if self.amount.is_negative():
            raise ValueError(f"Repayment amount cannot be negative, got {self.amount.to_string()}")


@dataclass(frozen=True)
class LoanSnapshot:
    """Loan balances as of an instant, derived by replaying its repayments"""
    loan_id: str
    as_of: datetime
    months_elapsed: int
    principal_pending: Money
    interest_pending: Money
    total_principal_paid: Money
    total_interest_paid: Money
    is_closed: bool

    @property
    def total_pending(self) -> Money:
        """Outstanding balance: principal plus unpaid interest"""
        return self.principal_pending + self.interest_pending

    @property
    def total_paid(self) -> Money:
        return self.total_principal_paid + self.total_interest_paid


def compute_loan_state(
    loan: Loan,
    repayments: Iterable[LoanRepayment],
    as_of: datetime,
    tolerance: Decimal = CLOSURE_TOLERANCE
) -> LoanSnapshot:
    """
    Replay a loan's repayments and return its balances as of ``as_of``.

    Months are anchored on the loan's start instant: month ``m`` is the
    window ``[start + m months, start + (m + 1) months)``. For each month,
    interest of ``rate%`` of the principal still outstanding accrues first
    (except in month 0, the month of disbursement), then that month's
    repayments are applied in chronological order, each paying accrued
    interest before principal. The interest share is truncated to the
    currency's minor unit; any sub-paisa remainder stays accrued.

    Repayments dated after ``as_of`` are ignored; repayments dated before the
    start are applied in month 0. Once principal has been overpaid no further
    interest accrues, and the excess is absorbed (balances clamp at zero).

    Args:
        loan: The loan to evaluate
        repayments: Repayments for this loan, in any order
        as_of: Evaluation instant; earlier than the start gives the issuance state
        tolerance: Remaining balance at or below which the loan counts as closed

    Returns:
        LoanSnapshot for the loan at ``as_of``

    Raises:
        ValueError: If a repayment belongs to another loan or another currency
    """
    start = ensure_utc(loan.start_date)
    as_of = ensure_utc(as_of)
    currency = loan.currency

    history = []
    for repayment in repayments:
        if repayment.loan_id != loan.id:
            raise ValueError(f"Repayment {repayment.id} belongs to loan {repayment.loan_id}, not {loan.id}")
        if repayment.amount.currency != currency:
            raise ValueError(f"Repayment {repayment.id} is in {repayment.amount.currency.code}, "
                             f"loan {loan.id} is in {currency.code}")
        if ensure_utc(repayment.payment_date) <= as_of:
            history.append(repayment)
    # Stable: same-instant repayments keep the caller's order
    history.sort(key=lambda r: ensure_utc(r.payment_date))

    months_elapsed = whole_months_between(start, as_of)
    rate = loan.monthly_rate

    # Each repayment splits in whole minor units so the two shares sum to it exactly
    quantum = Decimal('1').scaleb(-currency.precision)

    principal = loan.principal.amount
    accrued_interest = Decimal('0')
    interest_paid = Decimal('0')
    principal_paid = Decimal('0')

    position = 0
    for month in range(months_elapsed + 1):
        # Interest starts the month after disbursement
        if month > 0:
            accrued_interest += max(principal, Decimal('0')) * rate

        window_end = add_months(start, month + 1)
        while position < len(history) and ensure_utc(history[position].payment_date) < window_end:
            amount = history[position].amount.amount
            applied_to_interest = min(amount, accrued_interest).quantize(quantum, rounding=ROUND_DOWN)
            accrued_interest -= applied_to_interest
            interest_paid += applied_to_interest

            applied_to_principal = amount - applied_to_interest
            principal -= applied_to_principal
            principal_paid += applied_to_principal
            position += 1

    principal_pending = max(Decimal('0'), principal)
    interest_pending = max(Decimal('0'), accrued_interest)
    is_closed = principal_pending + interest_pending <= tolerance

    logger.debug(
        "Replayed loan %s: %d months, %d repayments, pending %s + %s",
        loan.id, months_elapsed, position, principal_pending, interest_pending
    )

    return LoanSnapshot(
        loan_id=loan.id,
        as_of=as_of,
        months_elapsed=months_elapsed,
        principal_pending=Money(principal_pending, currency),
        interest_pending=Money(interest_pending, currency),
        total_principal_paid=Money(principal_paid, currency),
        total_interest_paid=Money(interest_paid, currency),
        is_closed=is_closed
    )


class LoanManager:
    """
    Issues loans and records repayments through the storage backend.

    Loans and repayments are only ever appended; balances come from
    ``compute_loan_state``.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.config = get_config()
        self.logger = logger

        self.loans_table = "loans"
        self.repayments_table = "loan_repayments"

    def issue_loan(
        self,
        borrower_id: str,
        principal: Money,
        start_date: datetime,
        interest_rate: Optional[Decimal] = None,
        notes: str = "",
        loan_id: Optional[str] = None
    ) -> Loan:
        """
        Issue a new loan

        Args:
            borrower_id: Member (or external borrower) taking the loan
            principal: Amount disbursed
            start_date: Disbursement instant
            interest_rate: Monthly percent; configured default when omitted
            notes: Free-form notes
            loan_id: Explicit id; the next L- number when omitted

        Returns:
            Created Loan object
        """
        if interest_rate is None:
            interest_rate = self.config.loan_interest_rate

        with self.storage.atomic():
            if loan_id is None:
                loan_id = next_loan_id(data['id'] for data in self.storage.load_all(self.loans_table))
            elif self.storage.exists(self.loans_table, loan_id):
                raise ValueError(f"Loan {loan_id} already exists")

            loan = Loan(
                id=loan_id,
                borrower_id=borrower_id,
                principal=principal,
                interest_rate=interest_rate,
                start_date=start_date,
                status=LoanStatus.ACTIVE,
                notes=notes
            )
            self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

        log_action(
            self.logger, "info", f"Loan issued: {loan.id}",
            action="issue_loan", resource=f"loan:{loan.id}",
            extra={
                "borrower_id": borrower_id,
                "principal": principal.to_string(),
                "monthly_rate": str(loan.interest_rate),
                "start_date": loan.start_date.isoformat()
            }
        )
        return loan

    def record_repayment(
        self,
        loan_id: str,
        amount: Money,
        payment_date: datetime,
        repayment_id: Optional[str] = None
    ) -> LoanRepayment:
        """
        Append a repayment to a loan's history

        Args:
            loan_id: Loan being repaid
            amount: Amount received
            payment_date: Instant the money was received
            repayment_id: Explicit id; a UUID when omitted

        Returns:
            LoanRepayment record
        """
        loan = self.get_loan(loan_id)
        if not loan:
            raise ValueError(f"Loan {loan_id} not found")
        if amount.currency != loan.currency:
            raise ValueError(f"Repayment currency {amount.currency.code} does not match "
                             f"loan currency {loan.currency.code}")

        repayment = LoanRepayment(
            id=repayment_id or str(uuid.uuid4()),
            loan_id=loan_id,
            amount=amount,
            payment_date=payment_date
        )
        with self.storage.atomic():
            if self.storage.exists(self.repayments_table, repayment.id):
                raise ValueError(f"Repayment {repayment.id} already recorded")
            self.storage.save(self.repayments_table, repayment.id, self._repayment_to_dict(repayment))

        log_action(
            self.logger, "info", f"Repayment recorded for loan {loan_id}",
            action="record_repayment", resource=f"loan:{loan_id}",
            extra={
                "repayment_id": repayment.id,
                "amount": amount.to_string(),
                "payment_date": payment_date.isoformat()
            }
        )
        return repayment

    def loan_state(self, loan_id: str, as_of: datetime) -> LoanSnapshot:
        """Replay a stored loan's repayments as of an instant"""
        loan = self.get_loan(loan_id)
        if not loan:
            raise ValueError(f"Loan {loan_id} not found")
        return compute_loan_state(
            loan, self.get_repayments(loan_id), as_of,
            tolerance=self.config.closure_tolerance_amount
        )

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        loan_dict = self.storage.load(self.loans_table, loan_id)
        if loan_dict:
            return self._loan_from_dict(loan_dict)
        return None

    def list_loans(self) -> List[Loan]:
        """All loans in issuance order"""
        return [self._loan_from_dict(data) for data in self.storage.load_all(self.loans_table)]

    def get_borrower_loans(self, borrower_id: str) -> List[Loan]:
        """Get all loans for a borrower"""
        loans_data = self.storage.find(self.loans_table, {"borrower_id": borrower_id})
        return [self._loan_from_dict(data) for data in loans_data]

    def get_repayments(self, loan_id: str) -> List[LoanRepayment]:
        """Get repayment history for loan, oldest first"""
        repayments_data = self.storage.find(self.repayments_table, {"loan_id": loan_id})
        repayments = [self._repayment_from_dict(data) for data in repayments_data]
        repayments.sort(key=lambda r: ensure_utc(r.payment_date))
        return repayments

    def _loan_to_dict(self, loan: Loan) -> Dict:
        return {
            'id': loan.id,
            'borrower_id': loan.borrower_id,
            'principal_amount': str(loan.principal.amount),
            'principal_currency': loan.principal.currency.code,
            'interest_rate': str(loan.interest_rate),
            'start_date': loan.start_date.isoformat(),
            'status': loan.status.value,
            'notes': loan.notes
        }

    def _loan_from_dict(self, data: Dict) -> Loan:
        return Loan(
            id=data['id'],
            borrower_id=data['borrower_id'],
            principal=Money(Decimal(data['principal_amount']), Currency[data['principal_currency']]),
            interest_rate=Decimal(data['interest_rate']),
            start_date=datetime.fromisoformat(data['start_date']),
            status=LoanStatus(data['status']),
            notes=data.get('notes', '')
        )

    def _repayment_to_dict(self, repayment: LoanRepayment) -> Dict:
        return {
            'id': repayment.id,
            'loan_id': repayment.loan_id,
            'amount': str(repayment.amount.amount),
            'currency': repayment.amount.currency.code,
            'payment_date': repayment.payment_date.isoformat()
        }

    def _repayment_from_dict(self, data: Dict) -> LoanRepayment:
        return LoanRepayment(
            id=data['id'],
            loan_id=data['loan_id'],
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            payment_date=datetime.fromisoformat(data['payment_date'])
        )
