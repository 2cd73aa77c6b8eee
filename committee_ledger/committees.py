"""
Committee Module

Committee batches, member subscriptions and monthly payment records, plus the
two arrears calculations that read them:

* ``compute_member_due`` - what a member owes when paying a given month,
  used when a payment is entered.
* ``compute_batch_defaulters`` - missed months across a whole batch, used
  for the defaulter report.

The two apply the 1% penalty under different conditions and can disagree;
both are kept as-is because they feed different consumers.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple
from enum import Enum

from .config import get_config
from .currency import Money, Currency
from .dates import batch_months_elapsed, ensure_utc
from .logging_config import get_logger, log_action
from .storage import StorageInterface

# Penalty charged on a month's premium, as a fraction
PENALTY_RATE = Decimal('0.01')
DEFAULT_DURATION_MONTHS = 36

logger = get_logger("committee_ledger.committees")


class PaymentMethod(Enum):
    CASH = "cash"
    ONLINE = "online"
    BANK = "bank"


@dataclass(frozen=True)
class Committee:
    """A batch starting in January of ``year`` and running ``duration_months``"""
    year: int
    duration_months: int = DEFAULT_DURATION_MONTHS

    def __post_init__(self):
        if self.duration_months <= 0:
            raise ValueError(f"Batch duration must be positive, got {self.duration_months}")


@dataclass(frozen=True)
class MemberSubscription:
    """A member's enrollment in a batch at a fixed monthly premium"""
    member_id: str
    committee_year: int
    monthly_amount: Money

    def __post_init__(self):
        if not self.monthly_amount.is_positive():
            raise ValueError(f"Monthly amount must be positive, got {self.monthly_amount.to_string()}")

    @property
    def key(self) -> Tuple[str, int]:
        return (self.member_id, self.committee_year)


@dataclass(frozen=True)
class PaymentRecord:
    """The recorded outcome for one member, batch and month"""
    member_id: str
    committee_year: int
    month_index: int
    amount_paid: Money
    expected_amount: Money
    is_paid: bool
    interest_charged: Money
    paid_at: Optional[datetime] = None
    payment_method: Optional[PaymentMethod] = None
    pending_amount: Optional[Money] = None

    def __post_init__(self):
        if self.month_index < 0:
            raise ValueError(f"Month index cannot be negative, got {self.month_index}")
        if self.amount_paid.is_negative():
            raise ValueError(f"Amount paid cannot be negative, got {self.amount_paid.to_string()}")

    @property
    def key(self) -> Tuple[str, int, int]:
        return (self.member_id, self.committee_year, self.month_index)

    @property
    def status(self) -> str:
        """'partial' while part of the month's due is still pending, else 'paid'"""
        if self.pending_amount is not None and self.pending_amount.is_positive():
            return "partial"
        return "paid"


@dataclass(frozen=True)
class MemberDue:
    """Amount due from a member for one batch month"""
    member_id: str
    committee_year: int
    month_index: int
    premium: Money
    arrears: Money
    current_month_interest: Money
    total_due: Money


@dataclass(frozen=True)
class BatchDefaulter:
    """A member with unpaid months in a batch"""
    member_id: str
    total_arrears: Money
    months_missed: int
    missed_month_indices: Tuple[int, ...] = ()


def _records_by_month(subscription: MemberSubscription,
                      payments: Iterable[PaymentRecord]) -> Dict[int, PaymentRecord]:
    """Index a subscription's payment records by month; a later record for the same key wins"""
    by_month = {}
    for payment in payments:
        if (payment.member_id, payment.committee_year) == subscription.key:
            by_month[payment.month_index] = payment
    return by_month


def compute_member_due(
    subscription: MemberSubscription,
    payments: Iterable[PaymentRecord],
    up_to_month: int,
    penalty_rate: Decimal = PENALTY_RATE
) -> MemberDue:
    """
    Amount a member owes when paying month ``up_to_month`` of a batch.

    Every month before ``up_to_month`` expects one premium. Recorded payments
    for those months count what was paid and any penalty charged on them:

        arrears = max(0, expected + penalties charged - paid)

    A penalty of ``penalty_rate`` x premium is due on the current month only
    when arrears are outstanding.

    Args:
        subscription: The member's enrollment
        payments: Payment records; records for other members or batches are ignored
        up_to_month: Batch month index being paid (0 = January of the batch year)
        penalty_rate: Penalty as a fraction of the premium

    Returns:
        MemberDue with premium, arrears, penalty and total
    """
    currency = subscription.monthly_amount.currency
    monthly = subscription.monthly_amount.amount
    records = _records_by_month(subscription, payments)

    expected = Decimal('0')
    paid_total = Decimal('0')
    interest_accrued = Decimal('0')
    for month in range(max(0, up_to_month)):
        expected += monthly
        record = records.get(month)
        if record:
            paid_total += record.amount_paid.amount
            interest_accrued += record.interest_charged.amount

    arrears = max(Decimal('0'), (expected + interest_accrued) - paid_total)
    current_interest = monthly * penalty_rate if arrears > 0 else Decimal('0')

    return MemberDue(
        member_id=subscription.member_id,
        committee_year=subscription.committee_year,
        month_index=up_to_month,
        premium=Money(monthly, currency),
        arrears=Money(arrears, currency),
        current_month_interest=Money(current_interest, currency),
        total_due=Money(monthly + current_interest + arrears, currency)
    )


def compute_batch_defaulters(
    batch: Committee,
    subscriptions: Iterable[MemberSubscription],
    payments: Iterable[PaymentRecord],
    as_of: datetime,
    penalty_rate: Decimal = PENALTY_RATE
) -> List[BatchDefaulter]:
    """
    Members of a batch with unpaid months as of an instant.

    Months count from January of the batch year through the as-of calendar
    month, capped at the batch duration. Each month without a paid record adds
    the premium, plus a flat ``penalty_rate`` x premium for every month after
    the first; the penalty never compounds on carried arrears.

    Returns defaulters sorted by total arrears, highest first; members with
    equal arrears keep their enrollment order.
    """
    elapsed = min(batch.duration_months, batch_months_elapsed(batch.year, ensure_utc(as_of)))

    # One active subscription per member; re-enrollment replaces the earlier row
    enrolled: Dict[str, MemberSubscription] = {}
    for subscription in subscriptions:
        if subscription.committee_year == batch.year:
            enrolled[subscription.member_id] = subscription

    paid_months: Dict[str, set] = {}
    for payment in payments:
        if payment.committee_year == batch.year and payment.is_paid:
            paid_months.setdefault(payment.member_id, set()).add(payment.month_index)

    defaulters = []
    for member_id, subscription in enrolled.items():
        monthly = subscription.monthly_amount.amount
        member_paid = paid_months.get(member_id, set())

        arrears = Decimal('0')
        missed = []
        for month in range(elapsed):
            if month in member_paid:
                continue
            penalty = monthly * penalty_rate if month > 0 else Decimal('0')
            arrears += monthly + penalty
            missed.append(month)

        if arrears > 0:
            defaulters.append(BatchDefaulter(
                member_id=member_id,
                total_arrears=Money(arrears, subscription.monthly_amount.currency),
                months_missed=len(missed),
                missed_month_indices=tuple(missed)
            ))

    logger.debug("Batch %s: %d of %d members in arrears over %d months",
                 batch.year, len(defaulters), len(enrolled), elapsed)

    return sorted(defaulters, key=lambda d: d.total_arrears.amount, reverse=True)


def build_payment_record(
    subscription: MemberSubscription,
    payments: Iterable[PaymentRecord],
    month_index: int,
    amount_paid: Money,
    paid_at: datetime,
    method: PaymentMethod = PaymentMethod.CASH,
    penalty_rate: Decimal = PENALTY_RATE
) -> PaymentRecord:
    """
    Build the record stored when a member pays for a month.

    The month's penalty is charged as computed by ``compute_member_due``,
    and whatever of the total due the payment does not cover is kept as the
    pending amount.
    """
    if amount_paid.currency != subscription.monthly_amount.currency:
        raise ValueError(f"Payment currency {amount_paid.currency.code} does not match "
                         f"subscription currency {subscription.monthly_amount.currency.code}")

    due = compute_member_due(subscription, payments, month_index, penalty_rate=penalty_rate)
    pending = max(Decimal('0'), due.total_due.amount - amount_paid.amount)

    return PaymentRecord(
        member_id=subscription.member_id,
        committee_year=subscription.committee_year,
        month_index=month_index,
        amount_paid=amount_paid,
        expected_amount=subscription.monthly_amount,
        is_paid=True,
        interest_charged=due.current_month_interest,
        paid_at=paid_at,
        payment_method=method,
        pending_amount=Money(pending, amount_paid.currency)
    )


class CommitteeManager:
    """
    Manages batches, enrollments and monthly payments.

    Subscriptions are upserted per (member, batch) and payment records per
    (member, batch, month); arrears always come from the pure functions above.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.config = get_config()
        self.logger = logger

        self.committees_table = "committees"
        self.subscriptions_table = "subscriptions"
        self.payments_table = "payments"

    def create_batch(self, year: int, duration_months: Optional[int] = None) -> Committee:
        """Create (or redefine) the batch starting in January of ``year``"""
        if duration_months is None:
            duration_months = self.config.default_batch_duration_months
        batch = Committee(year=year, duration_months=duration_months)
        self.storage.save(self.committees_table, str(year), {
            'year': batch.year,
            'duration_months': batch.duration_months
        })
        log_action(
            self.logger, "info", f"Batch created: {year}",
            action="create_batch", resource=f"committee:{year}",
            extra={"duration_months": duration_months}
        )
        return batch

    def get_batch(self, year: int) -> Optional[Committee]:
        data = self.storage.load(self.committees_table, str(year))
        if data:
            return Committee(year=data['year'], duration_months=data['duration_months'])
        return None

    def list_batches(self) -> List[Committee]:
        """All batches, newest first"""
        batches = [
            Committee(year=data['year'], duration_months=data['duration_months'])
            for data in self.storage.load_all(self.committees_table)
        ]
        return sorted(batches, key=lambda b: b.year, reverse=True)

    def enroll(self, member_id: str, year: int, monthly_amount: Money) -> MemberSubscription:
        """Enroll a member in a batch, replacing any earlier enrollment in the same batch"""
        subscription = MemberSubscription(member_id=member_id, committee_year=year,
                                          monthly_amount=monthly_amount)
        with self.storage.atomic():
            if not self.get_batch(year):
                raise ValueError(f"Batch {year} not found")
            self.storage.save(self.subscriptions_table, self._subscription_id(member_id, year),
                              self._subscription_to_dict(subscription))
        log_action(
            self.logger, "info", f"Member {member_id} enrolled in batch {year}",
            action="enroll", resource=f"committee:{year}",
            extra={"member_id": member_id, "monthly_amount": monthly_amount.to_string()}
        )
        return subscription

    def get_subscription(self, member_id: str, year: int) -> Optional[MemberSubscription]:
        data = self.storage.load(self.subscriptions_table, self._subscription_id(member_id, year))
        if data:
            return self._subscription_from_dict(data)
        return None

    def get_subscriptions(self, year: Optional[int] = None, member_id: Optional[str] = None) -> List[MemberSubscription]:
        """Subscriptions in enrollment order, optionally narrowed to a batch and/or member"""
        filters = {}
        if year is not None:
            filters['committee_year'] = year
        if member_id is not None:
            filters['member_id'] = member_id
        return [self._subscription_from_dict(data)
                for data in self.storage.find(self.subscriptions_table, filters)]

    def record_payment(
        self,
        member_id: str,
        year: int,
        month_index: int,
        amount_paid: Money,
        paid_at: datetime,
        method: PaymentMethod = PaymentMethod.CASH
    ) -> PaymentRecord:
        """
        Record a member's payment for a batch month

        Args:
            member_id: Paying member
            year: Batch year
            month_index: Batch month being paid
            amount_paid: Amount received
            paid_at: Instant the money was received
            method: Cash, online or bank transfer

        Returns:
            The stored PaymentRecord, replacing any earlier record for the month
        """
        # The penalty depends on the stored history, so read and write as one unit
        with self.storage.atomic():
            batch = self.get_batch(year)
            if not batch:
                raise ValueError(f"Batch {year} not found")
            if month_index >= batch.duration_months:
                raise ValueError(f"Month {month_index} is outside batch {year} "
                                 f"({batch.duration_months} months)")
            subscription = self.get_subscription(member_id, year)
            if not subscription:
                raise ValueError(f"Member {member_id} is not enrolled in batch {year}")

            record = build_payment_record(
                subscription, self.get_payments(year, member_id), month_index,
                amount_paid, paid_at, method, penalty_rate=self.config.penalty_rate
            )
            self.storage.save(self.payments_table, self._payment_id(*record.key),
                              self._payment_to_dict(record))

        log_action(
            self.logger, "info", f"Payment recorded for {member_id}, batch {year}, month {month_index}",
            action="record_payment", resource=f"committee:{year}",
            extra={
                "member_id": member_id,
                "month_index": month_index,
                "amount_paid": amount_paid.to_string(),
                "interest_charged": record.interest_charged.to_string(),
                "pending_amount": record.pending_amount.to_string(),
                "method": method.value
            }
        )
        return record

    def get_payments(self, year: Optional[int] = None, member_id: Optional[str] = None) -> List[PaymentRecord]:
        filters = {}
        if year is not None:
            filters['committee_year'] = year
        if member_id is not None:
            filters['member_id'] = member_id
        return [self._payment_from_dict(data) for data in self.storage.find(self.payments_table, filters)]

    def get_payment(self, member_id: str, year: int, month_index: int) -> Optional[PaymentRecord]:
        data = self.storage.load(self.payments_table, self._payment_id(member_id, year, month_index))
        if data:
            return self._payment_from_dict(data)
        return None

    def member_due(self, member_id: str, year: int, month_index: int) -> MemberDue:
        """Amount due from a member for a batch month"""
        subscription = self.get_subscription(member_id, year)
        if not subscription:
            raise ValueError(f"Member {member_id} is not enrolled in batch {year}")
        return compute_member_due(subscription, self.get_payments(year, member_id), month_index,
                                  penalty_rate=self.config.penalty_rate)

    def batch_defaulters(self, year: int, as_of: datetime) -> List[BatchDefaulter]:
        """Defaulter report for a batch as of an instant"""
        batch = self.get_batch(year)
        if not batch:
            raise ValueError(f"Batch {year} not found")
        return compute_batch_defaulters(batch, self.get_subscriptions(year), self.get_payments(year),
                                        as_of, penalty_rate=self.config.penalty_rate)

    def _subscription_id(self, member_id: str, year: int) -> str:
        return f"{year}:{member_id}"

    def _payment_id(self, member_id: str, year: int, month_index: int) -> str:
        return f"{year}:{member_id}:{month_index}"

    def _subscription_to_dict(self, subscription: MemberSubscription) -> Dict:
        return {
            'member_id': subscription.member_id,
            'committee_year': subscription.committee_year,
            'monthly_amount': str(subscription.monthly_amount.amount),
            'currency': subscription.monthly_amount.currency.code
        }

    def _subscription_from_dict(self, data: Dict) -> MemberSubscription:
        return MemberSubscription(
            member_id=data['member_id'],
            committee_year=data['committee_year'],
            monthly_amount=Money(Decimal(data['monthly_amount']), Currency[data['currency']])
        )

    def _payment_to_dict(self, record: PaymentRecord) -> Dict:
        result = {
            'member_id': record.member_id,
            'committee_year': record.committee_year,
            'month_index': record.month_index,
            'currency': record.amount_paid.currency.code,
            'amount_paid': str(record.amount_paid.amount),
            'expected_amount': str(record.expected_amount.amount),
            'interest_charged': str(record.interest_charged.amount),
            'is_paid': record.is_paid,
            'paid_at': record.paid_at.isoformat() if record.paid_at else None,
            'payment_method': record.payment_method.value if record.payment_method else None,
            'pending_amount': None
        }
        if record.pending_amount is not None:
            result['pending_amount'] = str(record.pending_amount.amount)
        return result

    def _payment_from_dict(self, data: Dict) -> PaymentRecord:
        currency = Currency[data['currency']]

        def get_money(key: str) -> Optional[Money]:
            if data.get(key) is None:
                return None
            return Money(Decimal(data[key]), currency)

        return PaymentRecord(
            member_id=data['member_id'],
            committee_year=data['committee_year'],
            month_index=data['month_index'],
            amount_paid=get_money('amount_paid'),
            expected_amount=get_money('expected_amount'),
            is_paid=data['is_paid'],
            interest_charged=get_money('interest_charged'),
            paid_at=datetime.fromisoformat(data['paid_at']) if data.get('paid_at') else None,
            payment_method=PaymentMethod(data['payment_method']) if data.get('payment_method') else None,
            pending_amount=get_money('pending_amount')
        )
