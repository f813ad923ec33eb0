"""
Loan endpoints
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from .dependencies import LoanServicingSystem, get_loan_system
from .schemas import (
    CreateLoanRequest, LoanDetailsModel, LoanModel, MessageModel,
    RepaymentModel, RepaymentRequest
)
from ..exceptions import (
    Forbidden, InvalidLoanState, InvalidScheduleInput, LoanNotFound, SettlementError
)
from ..logging_config import get_logger, log_action


router = APIRouter()
logger = get_logger("loans.api")


def _server_error(message: str, action: str, resource: str) -> HTTPException:
    """Log the exception being handled and hide it behind a generic 500"""
    log_action(logger, "error", message, action=action, resource=resource, exc_info=True)
    return HTTPException(status_code=500, detail=message)


@router.get("", response_model=List[LoanModel])
async def list_loans(system: LoanServicingSystem = Depends(get_loan_system)):
    """List all loans"""
    try:
        return [LoanModel.from_loan(loan) for loan in system.loan_manager.list_loans()]
    except Exception:
        raise _server_error("Error retrieving loans", "list_loans", "loans")


@router.get("/{loan_id}", response_model=LoanDetailsModel)
async def get_loan(
    loan_id: str,
    system: LoanServicingSystem = Depends(get_loan_system)
):
    """Get a loan with its repayment schedule"""
    try:
        loan, repayments = system.loan_manager.get_loan_details(loan_id)
        return LoanDetailsModel(
            loan=LoanModel.from_loan(loan),
            repayments=[RepaymentModel.from_repayment(r) for r in repayments]
        )
    except LoanNotFound:
        raise HTTPException(status_code=404, detail="Loan not found")
    except Exception:
        raise _server_error("Error retrieving loan details", "get_loan", f"loan:{loan_id}")


@router.post("", status_code=status.HTTP_201_CREATED, response_model=LoanModel)
async def create_loan(
    request: CreateLoanRequest,
    system: LoanServicingSystem = Depends(get_loan_system)
):
    """Create a loan and its weekly repayment schedule"""
    try:
        loan = system.loan_manager.create_loan(
            amount=request.amount,
            term=request.term,
            start_date=request.start_date
        )
        return LoanModel.from_loan(loan)
    except InvalidScheduleInput as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        raise _server_error("Error creating loan", "create_loan", "loans")


@router.delete("/{loan_id}", response_model=MessageModel)
async def delete_loan(
    loan_id: str,
    system: LoanServicingSystem = Depends(get_loan_system)
):
    """Delete a loan"""
    try:
        system.loan_manager.delete_loan(loan_id)
        return MessageModel(message="Loan deleted successfully")
    except LoanNotFound:
        raise HTTPException(status_code=404, detail="Loan not found")
    except Exception:
        raise _server_error("Error deleting loan", "delete_loan", f"loan:{loan_id}")


@router.post("/{loan_id}/repayments", response_model=MessageModel)
async def submit_repayment(
    loan_id: str,
    request: RepaymentRequest,
    system: LoanServicingSystem = Depends(get_loan_system)
):
    """Pay the scheduled repayment due on the given date"""
    try:
        system.loan_manager.settle_repayment(
            loan_id=loan_id,
            amount=request.amount,
            repayment_date=request.repayment_date
        )
        return MessageModel(message="Repayment processed successfully")
    except (SettlementError, InvalidScheduleInput) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LoanNotFound:
        raise HTTPException(status_code=404, detail="Loan not found")
    except InvalidLoanState as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception:
        raise _server_error("Error processing repayment", "settle_repayment", f"loan:{loan_id}")


@router.put("/{loan_id}/approve", response_model=MessageModel)
async def approve_loan(
    loan_id: str,
    x_user_role: Optional[str] = Header(None),
    system: LoanServicingSystem = Depends(get_loan_system)
):
    """Approve a loan"""
    try:
        system.loan_manager.approve_loan(loan_id, role=x_user_role)
        return MessageModel(message="Loan approved successfully")
    except LoanNotFound:
        raise HTTPException(status_code=404, detail="Loan not found")
    except Forbidden as e:
        raise HTTPException(status_code=403, detail=str(e))
    except InvalidLoanState as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception:
        raise _server_error("Error approving loan", "approve_loan", f"loan:{loan_id}")


@router.put("/{loan_id}/reject", response_model=MessageModel)
async def reject_loan(
    loan_id: str,
    x_user_role: Optional[str] = Header(None),
    system: LoanServicingSystem = Depends(get_loan_system)
):
    """Reject a loan"""
    try:
        system.loan_manager.reject_loan(loan_id, role=x_user_role)
        return MessageModel(message="Loan rejected")
    except LoanNotFound:
        raise HTTPException(status_code=404, detail="Loan not found")
    except Forbidden as e:
        raise HTTPException(status_code=403, detail=str(e))
    except InvalidLoanState as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception:
        raise _server_error("Error rejecting loan", "reject_loan", f"loan:{loan_id}")
