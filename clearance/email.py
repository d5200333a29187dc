from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from clearance.db.documents import SERVER_TIMESTAMP, DocumentStore
from clearance.side_effects import Outcome, attempt

MAIL = "mail"
VERIFICATION_PURPOSE = "email_verification"

SUCCESS_STATES = frozenset({"SUCCESS", "DELIVERED"})
FAILURE_STATES = frozenset({"ERROR", "FAILED", "BOUNCED", "REJECTED"})


def normalize_delivery_state(value: object) -> str:
    return str(value or "").strip().upper()


@dataclass
class EmailMessage:
    mail_id: str
    to: str
    template_name: str
    template_data: dict[str, Any] = field(default_factory=dict)
    purpose: str = ""
    uid: str = ""
    retry_count: int = 0
    retry_of: str | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "to": self.to,
            "purpose": self.purpose,
            "uid": self.uid,
            "template": {"name": self.template_name, "data": dict(self.template_data)},
            "retryCount": int(self.retry_count),
            "retryOf": self.retry_of,
            "delivery": {"state": "PENDING", "error": None, "attempts": 0},
            "createdAt": SERVER_TIMESTAMP,
        }

    @classmethod
    def from_record(cls, mail_id: str, record: dict[str, Any]) -> "EmailMessage":
        template = record.get("template") if isinstance(record.get("template"), dict) else {}
        data = template.get("data") if isinstance(template.get("data"), dict) else {}
        return cls(
            mail_id=mail_id,
            to=str(record.get("to") or ""),
            template_name=str(template.get("name") or ""),
            template_data=dict(data),
            purpose=str(record.get("purpose") or ""),
            uid=str(record.get("uid") or ""),
            retry_count=int(record.get("retryCount") or 0),
            retry_of=record.get("retryOf"),
        )


class EmailSender:
    def send(self, message: EmailMessage) -> Outcome:
        raise NotImplementedError

    def record_delivery(self, mail_id: str, *, state: str, error: str | None = None) -> bool:
        raise NotImplementedError


class OutboxEmailSender(EmailSender):
    """Hands messages to the delivery provider by writing records into the ``mail`` collection.

    The provider picks the record up, renders the template and reports progress
    back by updating ``delivery.state``. The record id is the message id, so a
    repeated send of the same message is a no-op.
    """

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def send(self, message: EmailMessage) -> Outcome:
        def _write() -> Outcome:
            if not message.to:
                return Outcome.failure("send_email", "missing recipient", mail_id=message.mail_id)
            created = self._store.create_if_absent(MAIL, message.mail_id, message.to_record())
            return Outcome.success("send_email", mail_id=message.mail_id, created=created)

        return attempt("send_email", _write)

    def record_delivery(self, mail_id: str, *, state: str, error: str | None = None) -> bool:
        """Apply a delivery report from the provider; False when the record is unknown."""

        def _op(tx: Any) -> bool:
            record = tx.get(MAIL, mail_id)
            if record is None:
                return False
            delivery = dict(record.get("delivery") or {})
            delivery["state"] = normalize_delivery_state(state)
            delivery["error"] = error
            delivery["attempts"] = int(delivery.get("attempts") or 0) + 1
            delivery["updatedAt"] = SERVER_TIMESTAMP
            tx.update(MAIL, mail_id, {"delivery": delivery})
            return True

        return bool(self._store.run_transaction(_op))
