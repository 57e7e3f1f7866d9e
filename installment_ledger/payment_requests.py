"""
Payment Change Requests

Staff who may not edit or delete payments themselves file a request instead.
A reviewer approves it (which runs the edit or delete through the payment
manager) or rejects it with a comment. When the submitter is allowed to
review requests, the request is executed and approved on submission.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from .audit import AuditEventType, AuditTrail
from .config import LedgerConfig, get_config
from .exceptions import NotFoundError, ValidationError
from .payments import PaymentManager
from .policy import Actor, AllowAllPolicy, AuthorizationPolicy, Permission
from .storage import StorageInterface, StorageRecord


class RequestType(Enum):
    EDIT = "edit"
    DELETE = "delete"


class RequestStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PaymentChanges(BaseModel):
    """Fields an edit request may change"""
    model_config = ConfigDict(extra="forbid")

    amount: Optional[Decimal] = Field(default=None, gt=0)
    target_month: Optional[int] = Field(default=None, ge=0)
    payment_date: Optional[date] = None
    received_by: Optional[str] = None
    notes: Optional[str] = None

    def as_kwargs(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


@dataclass
class PaymentRequest(StorageRecord):
    """Request to edit or delete a payment"""
    payment_id: str
    request_type: RequestType
    requested_by: str
    changes: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
    status: RequestStatus = RequestStatus.PENDING
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_comment: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'payment_id': self.payment_id,
            'request_type': self.request_type.value,
            'requested_by': self.requested_by,
            'changes': self.changes,
            'reason': self.reason,
            'status': self.status.value,
            'reviewed_by': self.reviewed_by,
            'reviewed_at': self.reviewed_at.isoformat() if self.reviewed_at else None,
            'review_comment': self.review_comment,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentRequest':
        reviewed_at = data.get('reviewed_at')
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            payment_id=data['payment_id'],
            request_type=RequestType(data['request_type']),
            requested_by=data['requested_by'],
            changes=data.get('changes') or {},
            reason=data.get('reason'),
            status=RequestStatus(data['status']),
            reviewed_by=data.get('reviewed_by'),
            reviewed_at=datetime.fromisoformat(reviewed_at) if reviewed_at else None,
            review_comment=data.get('review_comment'),
        )


class PaymentRequestManager:
    """Submit, approve and reject payment change requests"""

    def __init__(
        self,
        storage: StorageInterface,
        payment_manager: PaymentManager,
        audit_trail: Optional[AuditTrail] = None,
        policy: Optional[AuthorizationPolicy] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.storage = storage
        self.payment_manager = payment_manager
        self.config = config or get_config()
        self.audit_trail = audit_trail if self.config.enable_audit_logging else None
        self.policy = policy or payment_manager.policy or AllowAllPolicy()
        self.requests_table = "payment_requests"

    def submit_request(
        self,
        payment_id: str,
        request_type: RequestType,
        actor: Actor,
        changes: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None
    ) -> PaymentRequest:
        """
        File a request; executed immediately when the submitter may review requests
        """
        self.policy.require(actor, Permission.SUBMIT_PAYMENT_REQUEST)
        request_type = RequestType(request_type)
        self.payment_manager.require_payment(payment_id)

        validated: Dict[str, Any] = {}
        if request_type == RequestType.EDIT:
            validated = self._validate_changes(changes)

        now = datetime.now(timezone.utc)
        request = PaymentRequest(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            payment_id=payment_id,
            request_type=request_type,
            requested_by=actor.user_id,
            changes=validated,
            reason=reason,
        )
        self.storage.save(self.requests_table, request.id, request.to_dict())

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_REQUEST_SUBMITTED,
                entity_type="payment_request",
                entity_id=request.id,
                metadata={"payment_id": payment_id, "request_type": request_type.value,
                          "changes": request.changes},
                user_id=actor.user_id
            )

        if self.policy.is_allowed(actor, Permission.REVIEW_PAYMENT_REQUEST):
            return self.approve_request(request.id, actor, comment="Auto-approved")
        return request

    def approve_request(self, request_id: str, reviewer: Actor, comment: Optional[str] = None) -> PaymentRequest:
        """Execute the requested edit or delete, then mark the request approved"""
        self.policy.require(reviewer, Permission.REVIEW_PAYMENT_REQUEST)
        request = self._require_pending(request_id)

        # A request left pending after its change went through is only closed
        if not self._already_applied(request):
            if request.request_type == RequestType.EDIT:
                changes = PaymentChanges(**request.changes).as_kwargs()
                self.payment_manager.edit_payment(request.payment_id, actor=reviewer, **changes)
            else:
                self.payment_manager.delete_payment(request.payment_id, actor=reviewer)

        return self._close(request, RequestStatus.APPROVED, reviewer, comment)

    def reject_request(self, request_id: str, reviewer: Actor, comment: Optional[str] = None) -> PaymentRequest:
        self.policy.require(reviewer, Permission.REVIEW_PAYMENT_REQUEST)
        request = self._require_pending(request_id)
        return self._close(request, RequestStatus.REJECTED, reviewer, comment)

    def get_request(self, request_id: str) -> Optional[PaymentRequest]:
        data = self.storage.load(self.requests_table, request_id)
        if data:
            return PaymentRequest.from_dict(data)
        return None

    def list_requests(self, status: Optional[RequestStatus] = None) -> List[PaymentRequest]:
        filters = {'status': status.value} if status else {}
        requests = [PaymentRequest.from_dict(d) for d in self.storage.find(self.requests_table, filters)]
        requests.sort(key=lambda r: r.created_at, reverse=True)
        return requests

    def _require_pending(self, request_id: str) -> PaymentRequest:
        request = self.get_request(request_id)
        if not request:
            raise NotFoundError("payment request", request_id)
        if request.status != RequestStatus.PENDING:
            raise ValidationError("Request not pending")
        return request

    def _already_applied(self, request: PaymentRequest) -> bool:
        """True when the payment already reflects the request"""
        payment = self.payment_manager.get_payment(request.payment_id)
        if request.request_type == RequestType.DELETE:
            return payment is None
        if payment is None:
            return False
        changes = PaymentChanges(**request.changes).as_kwargs()
        return all(getattr(payment, name) == value for name, value in changes.items())

    def _close(self, request: PaymentRequest, status: RequestStatus, reviewer: Actor,
               comment: Optional[str]) -> PaymentRequest:
        now = datetime.now(timezone.utc)
        request.status = status
        request.reviewed_by = reviewer.user_id
        request.reviewed_at = now
        request.review_comment = comment
        request.updated_at = now
        self.storage.save(self.requests_table, request.id, request.to_dict())

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=(AuditEventType.PAYMENT_REQUEST_APPROVED if status == RequestStatus.APPROVED
                            else AuditEventType.PAYMENT_REQUEST_REJECTED),
                entity_type="payment_request",
                entity_id=request.id,
                metadata={"payment_id": request.payment_id, "comment": comment},
                user_id=reviewer.user_id
            )
        return request

    @staticmethod
    def _validate_changes(changes: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not changes:
            raise ValidationError("An edit request needs at least one change")
        try:
            validated = PaymentChanges(**changes).model_dump(mode="json", exclude_none=True)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid payment changes: {exc.errors()[0]['msg']}")
        if not validated:
            raise ValidationError("An edit request needs at least one change")
        return validated
