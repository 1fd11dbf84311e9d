"""
Database Schema Models for the Plagaiscans document checking service.

This module defines the row models and status vocabularies for the Supabase
tables the service writes to. Instances are converted with ``asdict`` (or
``__dict__``) right before an insert, so optional fields left as ``None`` map
onto database defaults.
"""

from typing import Optional, Dict, Any
from dataclasses import dataclass, field, asdict


# 文档状态
DOCUMENT_PENDING = 'pending'
DOCUMENT_IN_PROGRESS = 'in_progress'
DOCUMENT_COMPLETED = 'completed'
DOCUMENT_ERROR = 'error'
DOCUMENT_STATUSES = (DOCUMENT_PENDING, DOCUMENT_IN_PROGRESS, DOCUMENT_COMPLETED, DOCUMENT_ERROR)

# 扫描类型
SCAN_FULL = 'full'
SCAN_SIMILARITY_ONLY = 'similarity_only'
SCAN_TYPES = (SCAN_FULL, SCAN_SIMILARITY_ONLY)

# 报告类型
REPORT_SIMILARITY = 'similarity'
REPORT_AI = 'ai'
REPORT_KINDS = (REPORT_SIMILARITY, REPORT_AI)

# 角色
ROLE_ADMIN = 'admin'
ROLE_STAFF = 'staff'
ROLE_CUSTOMER = 'customer'
ROLE_SYSTEM = 'system'

# 工单状态
TICKET_OPEN = 'open'
TICKET_IN_PROGRESS = 'in_progress'
TICKET_RESOLVED = 'resolved'
TICKET_CLOSED = 'closed'
TICKET_STATUSES = (TICKET_OPEN, TICKET_IN_PROGRESS, TICKET_RESOLVED, TICKET_CLOSED)

# 魔法链接状态
LINK_ACTIVE = 'active'
LINK_DISABLED = 'disabled'


@dataclass
class CreditTransaction:
    """One ledger movement with the balance observed before and after it."""
    user_id: str
    amount: int
    balance_before: int
    balance_after: int
    transaction_type: str
    credit_type: str = SCAN_FULL
    description: Optional[str] = None
    performed_by: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ActivityLog:
    """Free-text audit entry for a change made to a document."""
    staff_id: Optional[str]
    document_id: str
    action: str

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DeletedDocumentLog:
    """Snapshot of a document taken before it is removed."""
    document_id: str
    file_name: str
    deleted_by_type: str
    user_id: Optional[str] = None
    magic_link_id: Optional[str] = None
    file_path: Optional[str] = None
    scan_type: Optional[str] = None
    status: Optional[str] = None
    similarity_percentage: Optional[float] = None
    ai_percentage: Optional[float] = None
    deleted_by: Optional[str] = None
    reason: Optional[str] = None
    uploaded_at: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MagicUploadFile:
    """File uploaded by a guest through a magic link."""
    magic_link_id: str
    file_name: str
    file_path: str
    file_size: int
    document_id: Optional[str] = None


@dataclass
class ExtensionLog:
    """Audit row for every call made with an extension token."""
    token_id: str
    action: str
    document_id: Optional[str] = None
    status: str = 'success'
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class UnmatchedReport:
    """Uploaded report the bulk matcher could not attach to a document."""
    file_name: str
    normalized_filename: str
    file_path: str
    report_type: str
    reason: str
    uploaded_by: Optional[str] = None
    similarity_percentage: Optional[float] = None
    ai_percentage: Optional[float] = None
    resolved: bool = False

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TicketMessage:
    """One message in a support ticket conversation."""
    ticket_id: str
    sender_id: str
    message: str
    is_admin: bool = False


@dataclass
class EmailSendLog:
    """Per-recipient delivery record of an admin email campaign."""
    email_log_id: Optional[str]
    recipient_id: str
    recipient_email: str
    status: str
    error_message: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)
