from app import db
from datetime import datetime
import json
from sqlalchemy import String, Integer, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column
from typing import Optional

from models import PendingOperation, payload_from_dict, utc_now


class PendingOperationRecord(db.Model):
    __tablename__ = 'pending_operations'

    # Urutan insert; drain memproses sesuai urutan ini
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    op_id: Mapped[str] = mapped_column(String(200), unique=True, nullable=False, index=True)
    op_type: Mapped[str] = mapped_column(String(20), nullable=False)  # 'scan', 'confirm', 'batal', 'cekfu'
    resi_number: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)  # JSON payload sesuai op_type

    enqueued_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    def to_operation(self) -> PendingOperation:
        """Rebuild the typed operation from the stored row"""
        payload = payload_from_dict(self.op_type, json.loads(self.payload))
        return PendingOperation(
            id=self.op_id,
            payload=payload,
            enqueued_at=self.enqueued_at,
            retry_count=self.retry_count or 0,
            last_attempt_at=self.last_attempt_at,
        )

    def apply_operation(self, operation: PendingOperation):
        """Copy the mutable fields of an operation onto this row"""
        self.op_type = operation.type
        self.resi_number = operation.resi_number
        self.payload = json.dumps(operation.payload.to_dict())
        self.retry_count = operation.retry_count
        self.last_attempt_at = operation.last_attempt_at

    @classmethod
    def from_operation(cls, operation: PendingOperation) -> "PendingOperationRecord":
        record = cls(op_id=operation.id, enqueued_at=operation.enqueued_at)
        record.apply_operation(operation)
        return record
