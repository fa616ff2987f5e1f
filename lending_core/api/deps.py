"""
System wiring and request dependencies
"""

import uuid
from typing import Optional

from fastapi import Header

from ..storage import StorageInterface, create_storage
from ..audit import AuditTrail
from ..loans import LoanManager, RequestContext
from ..config import LendingConfig, get_config


class LendingSystem:
    """Lending core with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[LendingConfig] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.storage_backend, self.config.sqlite_path)
        self.audit_trail = AuditTrail(self.storage)
        self.loan_manager = LoanManager(self.storage, self.audit_trail, self.config)

    def close(self) -> None:
        self.storage.close()


# Created on first request so importing the API never touches the database
_lending_system: Optional[LendingSystem] = None


def get_lending_system() -> LendingSystem:
    global _lending_system
    if _lending_system is None:
        _lending_system = LendingSystem()
    return _lending_system


def get_request_context(
    x_user_id: str = Header("anonymous"),
    x_branch: Optional[str] = Header(None),
    x_correlation_id: Optional[str] = Header(None)
) -> RequestContext:
    """Build the acting-user context from request headers"""
    return RequestContext(
        user_id=x_user_id,
        branch=x_branch,
        correlation_id=x_correlation_id or str(uuid.uuid4())
    )
