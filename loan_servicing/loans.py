"""
Loan Module

Handles loan creation with its weekly repayment schedule, approval and
rejection, exact-amount repayment settlement and automatic payoff.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional, Tuple
import uuid

from .audit import AuditTrail, AuditEventType
from .authorization import AuthorizationPolicy, AllowAllPolicy, Permission
from .exceptions import (
    AmountTooHigh, Forbidden, InsufficientAmount, InvalidLoanState,
    LoanNotFound, PersistenceError, RepaymentNotFound
)
from .logging_config import get_logger, log_action
from .models import Loan, LoanStatus, Repayment, RepaymentStatus
from .schedule import (
    AmountLike, DEFAULT_INTERVAL_DAYS, calculate_repayment_split, exact_context,
    generate_schedule, to_amount
)
from .storage import StorageInterface


BALANCE_UPDATE_ATTEMPTS = 3


class LoanManager:
    """
    Manages the loan lifecycle from creation through payoff
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        authorization_policy: Optional[AuthorizationPolicy] = None,
        repayment_interval_days: int = DEFAULT_INTERVAL_DAYS,
        enforce_status_transitions: bool = False,
        cascade_delete_repayments: bool = False
    ):
        if repayment_interval_days <= 0:
            raise ValueError(
                f"repayment_interval_days must be positive, got {repayment_interval_days}"
            )

        self.storage = storage
        self.audit_trail = audit_trail
        self.authorization_policy = authorization_policy or AllowAllPolicy()
        self.repayment_interval_days = repayment_interval_days
        self.enforce_status_transitions = enforce_status_transitions
        self.cascade_delete_repayments = cascade_delete_repayments
        self.logger = get_logger("loans.manager")

        self.loans_table = "loans"
        self.repayments_table = "repayments"

    # Queries

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get a loan by ID, or None"""
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def list_loans(self) -> List[Loan]:
        """All loans in creation order"""
        return [Loan.from_dict(data) for data in self.storage.load_all(self.loans_table)]

    def get_repayments(self, loan_id: str) -> List[Repayment]:
        """Repayments of a loan ordered by due date"""
        repayments = [
            Repayment.from_dict(data)
            for data in self.storage.find(self.repayments_table, {'loan_id': loan_id})
        ]
        repayments.sort(key=lambda r: (r.date, r.period))
        return repayments

    def get_loan_details(self, loan_id: str) -> Tuple[Loan, List[Repayment]]:
        """
        Get a loan with its repayment schedule

        Raises:
            LoanNotFound: If the loan does not exist
        """
        loan = self._require_loan(loan_id)
        return loan, self.get_repayments(loan_id)

    # Creation and deletion

    def create_loan(
        self,
        amount: AmountLike,
        term: int,
        start_date: Optional[date] = None
    ) -> Loan:
        """
        Create a PENDING loan and its repayment schedule

        The loan and every repayment are written in one atomic block; a storage
        failure leaves neither behind.

        Args:
            amount: Loan principal, must be positive
            term: Number of weekly repayments, must be positive
            start_date: Due date of the first repayment (defaults to today, UTC)

        Returns:
            Created Loan

        Raises:
            InvalidScheduleInput: If amount or term is not positive
            PersistenceError: If the records could not be written
        """
        # Validate before touching storage
        calculate_repayment_split(amount, term)

        principal = to_amount(amount)
        now = datetime.now(timezone.utc)
        start_date = start_date or now.date()

        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            amount=principal,
            term=term,
            status=LoanStatus.PENDING,
            remaining_amount=principal
        )
        repayments = generate_schedule(
            loan.id, principal, term, start_date, self.repayment_interval_days
        )

        try:
            with self.storage.atomic():
                self._save_loan(loan)
                # One write per period, in period order
                for repayment in repayments:
                    self._save_repayment(repayment)

                self._audit(
                    AuditEventType.LOAN_CREATED, "loan", loan.id,
                    {
                        "amount": principal,
                        "term": term,
                        "first_repayment_date": start_date.isoformat(),
                        "installment": repayments[0].amount,
                        "final_installment": repayments[-1].amount
                    }
                )
        except PersistenceError:
            log_action(
                self.logger, "error", "Loan creation rolled back",
                action="create_loan_failed", resource=f"loan:{loan.id}",
                extra={"amount": str(principal), "term": term}, exc_info=True
            )
            raise

        log_action(
            self.logger, "info", "Loan created",
            action="create_loan", resource=f"loan:{loan.id}",
            extra={"amount": str(principal), "term": term, "start_date": start_date.isoformat()}
        )

        return loan

    def delete_loan(self, loan_id: str) -> Loan:
        """
        Delete a loan

        Repayments are left in place unless ``cascade_delete_repayments`` is set.

        Raises:
            LoanNotFound: If the loan does not exist
        """
        with self.storage.atomic():
            loan = self._require_loan(loan_id)
            self.storage.delete(self.loans_table, loan_id)

            removed = 0
            if self.cascade_delete_repayments:
                for data in self.storage.find(self.repayments_table, {'loan_id': loan_id}):
                    if self.storage.delete(self.repayments_table, data['id']):
                        removed += 1

            self._audit(
                AuditEventType.LOAN_DELETED, "loan", loan_id,
                {"status": loan.status, "repayments_removed": removed}
            )

        log_action(
            self.logger, "info", "Loan deleted",
            action="delete_loan", resource=f"loan:{loan_id}",
            extra={"repayments_removed": removed}
        )
        return loan

    # Lifecycle

    def approve_loan(self, loan_id: str, role: Optional[str] = None) -> Loan:
        """
        Approve a loan

        Raises:
            LoanNotFound: If the loan does not exist
            Forbidden: If the caller role may not approve loans
            InvalidLoanState: In strict mode, if the loan is not PENDING
        """
        return self._decide(
            loan_id, role, Permission.APPROVE_LOAN, LoanStatus.APPROVED,
            AuditEventType.LOAN_APPROVED, "approve"
        )

    def reject_loan(self, loan_id: str, role: Optional[str] = None) -> Loan:
        """
        Reject a loan

        Raises:
            LoanNotFound: If the loan does not exist
            Forbidden: If the caller role may not reject loans
            InvalidLoanState: In strict mode, if the loan is not PENDING
        """
        return self._decide(
            loan_id, role, Permission.REJECT_LOAN, LoanStatus.REJECTED,
            AuditEventType.LOAN_REJECTED, "reject"
        )

    def complete_if_settled(self, loan_id: str) -> bool:
        """
        Mark a loan PAID once none of its repayments is PENDING

        Completeness is derived from repayment statuses on every call.

        Returns:
            True if the loan is now PAID
        """
        with self.storage.atomic():
            pending = self.storage.count(
                self.repayments_table,
                {'loan_id': loan_id, 'status': RepaymentStatus.PENDING.value}
            )
            if pending > 0:
                return False

            loan = self._require_loan(loan_id)
            if loan.status == LoanStatus.PAID:
                return True

            previous = loan.status
            loan.status = LoanStatus.PAID
            loan.updated_at = datetime.now(timezone.utc)
            self._save_loan(loan)

            self._audit(
                AuditEventType.LOAN_PAID, "loan", loan_id,
                {"previous_status": previous, "remaining_amount": loan.remaining_amount}
            )

        log_action(
            self.logger, "info", "Loan paid off",
            action="loan_paid", resource=f"loan:{loan_id}"
        )
        return True

    # Settlement

    def settle_repayment(self, loan_id: str, amount: AmountLike, repayment_date: date) -> Repayment:
        """
        Record payment of the scheduled repayment due on ``repayment_date``

        Only the exact scheduled amount is accepted.

        Args:
            loan_id: Owning loan
            amount: Amount paid
            repayment_date: Due date of the repayment being paid

        Returns:
            The repayment, now PAID

        Raises:
            RepaymentNotFound: If no PENDING repayment is due on that date
            InsufficientAmount: If amount is below the scheduled amount
            AmountTooHigh: If amount is above the scheduled amount
            InvalidLoanState: In strict mode, if the loan is not APPROVED
            PersistenceError: If the loan balance could not be updated
        """
        paid = to_amount(amount)

        with self.storage.atomic():
            if self.enforce_status_transitions:
                loan = self._require_loan(loan_id)
                if loan.status != LoanStatus.APPROVED:
                    raise InvalidLoanState(
                        f"Loan {loan_id} is {loan.status.value}, repayments require APPROVED"
                    )

            matches = self.storage.find(self.repayments_table, {
                'loan_id': loan_id,
                'date': repayment_date.isoformat(),
                'status': RepaymentStatus.PENDING.value
            })
            if not matches:
                raise RepaymentNotFound("Repayment not found or already paid")

            repayment = Repayment.from_dict(matches[0])

            if paid < repayment.amount:
                raise InsufficientAmount("Repayment amount is insufficient")
            if paid > repayment.amount:
                raise AmountTooHigh("Amount is greater than repayment")

            now = datetime.now(timezone.utc)
            repayment.status = RepaymentStatus.PAID
            repayment.paid_at = now
            repayment.updated_at = now

            # Lose the race to a concurrent settlement rather than credit twice
            if not self.storage.compare_and_set(
                self.repayments_table, repayment.id,
                {'status': RepaymentStatus.PENDING.value}, repayment.to_dict()
            ):
                raise RepaymentNotFound("Repayment not found or already paid")

            all_paid = self.storage.count(
                self.repayments_table,
                {'loan_id': loan_id, 'status': RepaymentStatus.PENDING.value}
            ) == 0

            remaining = self._decrement_balance(loan_id, paid)

            self._audit(
                AuditEventType.REPAYMENT_SETTLED, "repayment", repayment.id,
                {
                    "loan_id": loan_id,
                    "period": repayment.period,
                    "date": repayment.date.isoformat(),
                    "amount": paid,
                    "remaining_amount": remaining
                }
            )

            if all_paid:
                self.complete_if_settled(loan_id)

        log_action(
            self.logger, "info", "Repayment settled",
            action="settle_repayment", resource=f"repayment:{repayment.id}",
            extra={
                "loan_id": loan_id, "amount": str(paid),
                "date": repayment.date.isoformat(), "remaining_amount": str(remaining)
            }
        )

        return repayment

    # Internals

    def _decide(
        self,
        loan_id: str,
        role: Optional[str],
        permission: Permission,
        new_status: LoanStatus,
        event_type: AuditEventType,
        verb: str
    ) -> Loan:
        with self.storage.atomic():
            loan = self._require_loan(loan_id)

            if not self.authorization_policy.is_allowed(role, permission):
                log_action(
                    self.logger, "warning", f"Loan {verb} denied",
                    user_id=role, action=f"{verb}_loan_denied", resource=f"loan:{loan_id}"
                )
                raise Forbidden(f"Only admin users can {verb} loans")

            if self.enforce_status_transitions and loan.status != LoanStatus.PENDING:
                raise InvalidLoanState(
                    f"Cannot {verb} loan {loan_id} in status {loan.status.value}"
                )

            previous = loan.status
            loan.status = new_status
            loan.updated_at = datetime.now(timezone.utc)
            self._save_loan(loan)

            self._audit(
                event_type, "loan", loan_id,
                {"previous_status": previous, "status": new_status},
                user_id=role
            )

        log_action(
            self.logger, "info", f"Loan {new_status.value.lower()}",
            user_id=role, action=f"{verb}_loan", resource=f"loan:{loan_id}",
            extra={"previous_status": previous.value}
        )
        return loan

    def _decrement_balance(self, loan_id: str, amount: Decimal) -> Decimal:
        """Subtract from the loan balance with a compare-and-swap on the old value"""
        for _ in range(BALANCE_UPDATE_ATTEMPTS):
            data = self.storage.load(self.loans_table, loan_id)
            if data is None:
                raise LoanNotFound(loan_id)

            loan = Loan.from_dict(data)
            with exact_context(loan.remaining_amount, amount):
                loan.remaining_amount = loan.remaining_amount - amount
            loan.updated_at = datetime.now(timezone.utc)

            if self.storage.compare_and_set(
                self.loans_table, loan_id,
                {'remaining_amount': data['remaining_amount']}, loan.to_dict()
            ):
                return loan.remaining_amount

        raise PersistenceError(f"Could not update balance of loan {loan_id}")

    def _require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise LoanNotFound(loan_id)
        return loan

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def _save_repayment(self, repayment: Repayment) -> None:
        self.storage.save(self.repayments_table, repayment.id, repayment.to_dict())

    def _audit(self, event_type: AuditEventType, entity_type: str, entity_id: str,
               metadata: dict, user_id: Optional[str] = None) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata,
                user_id=user_id
            )
