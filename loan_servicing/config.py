"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class LoanServicingConfig(BaseSettings):
    """Loan servicing configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///loans.db"  # "memory://" for in-memory storage
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Business rules configuration
    repayment_interval_days: int = Field(7, gt=0)
    enforce_status_transitions: bool = False
    cascade_delete_repayments: bool = False
    
    # Authorization configuration
    authorization_enabled: bool = False  # False = every caller may approve/reject
    admin_roles: str = "admin"  # Comma-separated
    
    # Feature flags
    enable_audit_logging: bool = True
    
    class Config:
        env_prefix = "LOANS_"
        env_file = ".env"
        case_sensitive = False
    
    @property
    def admin_role_list(self) -> List[str]:
        """Admin roles as a list"""
        return [role.strip() for role in self.admin_roles.split(",") if role.strip()]


# Global configuration instance
config = LoanServicingConfig()


def get_config() -> LoanServicingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanServicingConfig:
    """Reload configuration from environment"""
    global config
    config = LoanServicingConfig()
    return config
