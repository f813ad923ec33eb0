"""
Loan Servicing System

Loan origination with weekly installment schedules, approval workflow and
exact-amount repayment settlement. All monetary math uses Decimal.
"""

__version__ = "1.0.0"
