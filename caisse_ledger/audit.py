"""
Audit Trail Module

Hash-chained audit log with SHA-256 for tamper detection, one chain per
contract. Audit lines are staged into the same batch as the mutation they
describe, so they commit or roll back together with it. Callers hold the
contract lock while staging, which keeps each chain linear.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from .records import LedgerBatch, RecordStore


class AuditEventType(Enum):
    """Types of audit events"""
    CONTRACT_SUBMITTED = "contract_submitted"
    CONTRACT_RETURNED = "contract_returned"
    CONTRACT_ACTIVATED = "contract_activated"
    CONTRACT_DEFAULTED = "contract_defaulted"
    CONTRACT_RESCHEDULED = "contract_rescheduled"
    CONTRACT_CLOSED = "contract_closed"

    PAYMENT_RECORDED = "payment_recorded"
    PENALTIES_PAID = "penalties_paid"
    STATUSES_REFRESHED = "statuses_refreshed"

    ADVANCE_REQUESTED = "advance_requested"
    ADVANCE_REPAID = "advance_repaid"

    REFUND_REQUESTED = "refund_requested"
    REFUND_APPROVED = "refund_approved"
    REFUND_PAID = "refund_paid"
    REFUND_ARCHIVED = "refund_archived"


def _convert_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _convert_value(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_convert_value(v) for v in value]
    return value


@dataclass
class AuditEvent:
    """
    Immutable audit event with hash chaining for tamper detection
    """
    id: str
    created_at: datetime
    event_type: AuditEventType
    entity_id: str      # contract id
    sequence: int       # position in the contract's chain, from 1
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = {k: _convert_value(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        """
        SHA-256 over every field except current_hash
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'current_hash': self.current_hash,
            'metadata': self.metadata,
            'user_id': self.user_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            event_type=AuditEventType(data['event_type']),
            entity_id=data['entity_id'],
            sequence=int(data['sequence']),
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            metadata=data.get('metadata') or {},
            user_id=data.get('user_id'),
        )


class AuditTrail:
    """
    Per-contract hash chains stored through the RecordStore
    """

    def __init__(self, store: RecordStore):
        self.store = store

    async def get_events(self, contract_id: str) -> List[AuditEvent]:
        return [AuditEvent.from_dict(d) for d in await self.store.get_audit_events(contract_id)]

    async def stage_event(
        self,
        batch: LedgerBatch,
        contract_id: str,
        event_type: AuditEventType,
        now: datetime,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event to the contract's chain inside ``batch``.

        Args:
            batch: Batch of the mutation being audited
            contract_id: Chain to extend
            event_type: Type of audit event
            now: Event timestamp
            metadata: Additional event-specific data
            user_id: Operator who initiated the action

        Returns:
            The staged AuditEvent
        """
        last = batch.audit_tail.get(contract_id)
        if last is None:
            events = await self.store.get_audit_events(contract_id)
            last = events[-1] if events else None

        event = AuditEvent(
            id=str(uuid.uuid4()),
            created_at=now,
            event_type=event_type,
            entity_id=contract_id,
            sequence=(last['sequence'] + 1) if last else 1,
            previous_hash=last['current_hash'] if last else "",
            current_hash="",
            metadata=metadata or {},
            user_id=user_id,
        )
        event.current_hash = event.calculate_hash()
        batch.audit_event(event.id, event.to_dict())
        return event

    async def verify_chain(self, contract_id: str) -> Dict[str, Any]:
        """
        Verify hashes and links of one contract's chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }
        events = await self.get_events(contract_id)
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash or event.sequence != position + 1:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result
