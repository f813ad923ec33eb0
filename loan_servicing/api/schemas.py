"""
Pydantic schemas for API requests and responses

JSON keys are camelCase; amounts are serialised as decimal strings.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer
from pydantic.alias_generators import to_camel

from ..models import Loan, Repayment


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Requests
class CreateLoanRequest(CamelModel):
    amount: Decimal = Field(..., description="Loan principal")
    term: int = Field(..., description="Number of weekly repayments")
    start_date: Optional[date] = Field(None, description="Due date of the first repayment (default today)")


class RepaymentRequest(CamelModel):
    amount: Decimal = Field(..., description="Amount paid, must equal the scheduled amount")
    repayment_date: date = Field(..., alias="date", description="Due date of the repayment being paid")


# Responses
class LoanModel(CamelModel):
    id: str
    amount: Decimal
    term: int
    status: str
    remaining_amount: Decimal
    created_at: datetime
    updated_at: datetime

    @field_serializer('amount', 'remaining_amount', when_used='json')
    def serialize_amount(self, value: Decimal) -> str:
        return format(value, 'f')

    @classmethod
    def from_loan(cls, loan: Loan) -> 'LoanModel':
        return cls(
            id=loan.id,
            amount=loan.amount,
            term=loan.term,
            status=loan.status.value,
            remaining_amount=loan.remaining_amount,
            created_at=loan.created_at,
            updated_at=loan.updated_at
        )


class RepaymentModel(CamelModel):
    id: str
    loan_id: str
    period: int
    amount: Decimal
    date: date
    status: str
    paid_at: Optional[datetime] = None

    @field_serializer('amount', when_used='json')
    def serialize_amount(self, value: Decimal) -> str:
        return format(value, 'f')

    @classmethod
    def from_repayment(cls, repayment: Repayment) -> 'RepaymentModel':
        return cls(
            id=repayment.id,
            loan_id=repayment.loan_id,
            period=repayment.period,
            amount=repayment.amount,
            date=repayment.date,
            status=repayment.status.value,
            paid_at=repayment.paid_at
        )


class LoanDetailsModel(CamelModel):
    loan: LoanModel
    repayments: List[RepaymentModel]


class MessageModel(BaseModel):
    message: str
