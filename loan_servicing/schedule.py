"""
Repayment Schedule Module

Splits a loan amount into equal whole-unit installments and generates the
dated, pending repayment records for a new loan. Fractional remainders are
accumulated into the final installment so the schedule sums exactly to the
loan amount.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, getcontext, localcontext
from typing import List, Union
import uuid

from .exceptions import InvalidScheduleInput
from .models import Repayment, RepaymentStatus


DEFAULT_INTERVAL_DAYS = 7

AmountLike = Union[Decimal, int, str]


@dataclass(frozen=True)
class RepaymentSplit:
    """Per-period amounts for a loan"""
    floor_amount: Decimal   # Paid in every period except the last
    final_amount: Decimal   # Floor plus the accumulated remainder
    term: int

    @property
    def remainder(self) -> Decimal:
        """Total remainder folded into the final period"""
        with exact_context(self.final_amount, self.floor_amount):
            return self.final_amount - self.floor_amount

    def amounts(self) -> List[Decimal]:
        return [self.floor_amount] * (self.term - 1) + [self.final_amount]

    def total(self) -> Decimal:
        with exact_context(self.floor_amount, self.final_amount, Decimal(self.term)):
            return self.floor_amount * (self.term - 1) + self.final_amount


def _plain_digits(value: Decimal) -> int:
    """Upper bound on the digits needed to write value without an exponent"""
    _, digits, exponent = value.as_tuple()
    return len(digits) + abs(exponent)


def exact_context(*values: Decimal):
    """Decimal context wide enough that arithmetic on ``values`` never rounds"""
    context = getcontext().copy()
    context.prec = max(context.prec, sum(_plain_digits(v) for v in values) + 2)
    return localcontext(context)


def to_amount(value: AmountLike) -> Decimal:
    """
    Convert to Decimal via str so floats keep their printed value.

    Positive exponents are expanded, so ``1E+2`` becomes ``100``.
    """
    if isinstance(value, bool):
        raise InvalidScheduleInput(f"Invalid loan amount: {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidScheduleInput(f"Invalid loan amount: {value!r}") from e

    if amount.is_finite() and amount.as_tuple().exponent > 0:
        with exact_context(amount):
            amount = amount.quantize(Decimal(1))
    return amount


def calculate_repayment_split(loan_amount: AmountLike, term: int) -> RepaymentSplit:
    """
    Calculate the installment split for a loan.

    The base installment ``loan_amount / term`` is split into its integer floor
    and fractional remainder. Every period but the last pays the floor; the last
    pays the floor plus ``remainder * term``, computed as
    ``loan_amount - floor * (term - 1)`` so nothing is lost to rounding.

    Args:
        loan_amount: Loan principal, must be positive
        term: Number of repayment periods, must be a positive integer

    Returns:
        RepaymentSplit for the loan

    Raises:
        InvalidScheduleInput: If the amount or term is not positive
    """
    if isinstance(term, bool) or not isinstance(term, int):
        raise InvalidScheduleInput(f"Loan term must be an integer, got {term!r}")
    if term <= 0:
        raise InvalidScheduleInput(f"Loan term must be positive, got {term}")

    amount = to_amount(loan_amount)
    if not amount.is_finite() or amount <= 0:
        raise InvalidScheduleInput(f"Loan amount must be positive, got {loan_amount}")

    # Integer division is exact only if the context holds every digit
    with exact_context(amount, Decimal(term)):
        floor_amount = amount // term
        final_amount = amount - floor_amount * (term - 1)

    return RepaymentSplit(floor_amount=floor_amount, final_amount=final_amount, term=term)


def repayment_date(start_date: date, index: int,
                   interval_days: int = DEFAULT_INTERVAL_DAYS) -> date:
    """Due date of the installment at ``index`` (0-based)"""
    return start_date + timedelta(days=index * interval_days)


def generate_schedule(
    loan_id: str,
    loan_amount: AmountLike,
    term: int,
    start_date: date,
    interval_days: int = DEFAULT_INTERVAL_DAYS
) -> List[Repayment]:
    """
    Build the pending repayments for a loan, in period order.

    The first installment is due on ``start_date``; each following one
    ``interval_days`` later.
    """
    if interval_days <= 0:
        raise InvalidScheduleInput(f"Repayment interval must be positive, got {interval_days}")

    split = calculate_repayment_split(loan_amount, term)
    now = datetime.now(timezone.utc)

    return [
        Repayment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            period=index,
            amount=amount,
            date=repayment_date(start_date, index, interval_days),
            status=RepaymentStatus.PENDING
        )
        for index, amount in enumerate(split.amounts())
    ]
