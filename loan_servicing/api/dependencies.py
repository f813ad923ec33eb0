"""
System wiring and FastAPI dependencies
"""

from typing import Optional

from ..audit import AuditTrail
from ..authorization import AllowAllPolicy, AuthorizationPolicy, RolePolicy
from ..config import LoanServicingConfig, get_config
from ..loans import LoanManager
from ..storage import StorageInterface, create_storage


class LoanServicingSystem:
    """Loan servicing components initialized from configuration"""

    def __init__(self, config: Optional[LoanServicingConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)

        self.audit_trail = AuditTrail(self.storage) if self.config.enable_audit_logging else None
        self.authorization_policy = self._create_authorization_policy()

        self.loan_manager = LoanManager(
            self.storage,
            audit_trail=self.audit_trail,
            authorization_policy=self.authorization_policy,
            repayment_interval_days=self.config.repayment_interval_days,
            enforce_status_transitions=self.config.enforce_status_transitions,
            cascade_delete_repayments=self.config.cascade_delete_repayments
        )

    def _create_authorization_policy(self) -> AuthorizationPolicy:
        """Create authorization policy based on configuration"""
        if not self.config.authorization_enabled:
            return AllowAllPolicy()
        return RolePolicy.admins_only(self.config.admin_role_list)

    def close(self) -> None:
        self.storage.close()


_system: Optional[LoanServicingSystem] = None


def get_loan_system() -> LoanServicingSystem:
    """Dependency returning the process-wide system, created on first use"""
    global _system
    if _system is None:
        _system = LoanServicingSystem()
    return _system
