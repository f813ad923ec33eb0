"""
Loan and repayment records.

Plain dataclasses persisted through ``StorageInterface``; they carry no
storage behaviour of their own beyond dict conversion.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from .storage import StorageRecord


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "PENDING"      # Created, awaiting decision
    APPROVED = "APPROVED"    # Approved by an operator
    REJECTED = "REJECTED"    # Rejected by an operator
    PAID = "PAID"            # Every repayment settled


class RepaymentStatus(Enum):
    """Scheduled repayment states"""
    PENDING = "PENDING"
    PAID = "PAID"


@dataclass
class Loan(StorageRecord):
    """Loan principal, term and current balance"""
    amount: Decimal
    term: int
    status: LoanStatus = LoanStatus.PENDING
    remaining_amount: Optional[Decimal] = None

    def __post_init__(self):
        if self.remaining_amount is None:
            self.remaining_amount = self.amount

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = dict(data)
        data['amount'] = Decimal(data['amount'])
        data['remaining_amount'] = Decimal(data['remaining_amount'])
        data['status'] = LoanStatus(data['status'])
        return super().from_dict(data)


@dataclass
class Repayment(StorageRecord):
    """One scheduled installment of a loan"""
    loan_id: str
    period: int
    amount: Decimal
    date: date
    status: RepaymentStatus = RepaymentStatus.PENDING
    paid_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == RepaymentStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Repayment':
        data = dict(data)
        data['amount'] = Decimal(data['amount'])
        data['date'] = date.fromisoformat(data['date'])
        data['status'] = RepaymentStatus(data['status'])
        if data.get('paid_at'):
            data['paid_at'] = datetime.fromisoformat(data['paid_at'])
        return super().from_dict(data)
