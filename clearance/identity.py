from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from clearance.db.documents import SERVER_TIMESTAMP, DocumentStore, Transaction
from clearance.side_effects import Outcome, attempt


PRINCIPALS = "principals"


@dataclass
class PrincipalRecord:
    uid: str
    email: str = ""
    email_verified: bool = False
    display_name: str = ""
    custom_claims: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, uid: str, data: dict[str, Any]) -> "PrincipalRecord":
        claims = data.get("customClaims")
        return cls(
            uid=uid,
            email=str(data.get("email") or ""),
            email_verified=bool(data.get("emailVerified", False)),
            display_name=str(data.get("displayName") or ""),
            custom_claims=dict(claims) if isinstance(claims, dict) else {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "uid": self.uid,
            "email": self.email,
            "emailVerified": self.email_verified,
            "displayName": self.display_name,
            "customClaims": dict(self.custom_claims),
        }


class IdentityProvider:
    """Operations the workflow needs from the authentication service."""

    def register(self, principal: PrincipalRecord) -> None:
        raise NotImplementedError

    def get_principal(self, uid: str) -> PrincipalRecord | None:
        raise NotImplementedError

    def set_custom_claims(self, uid: str, claims: dict[str, Any]) -> Outcome:
        raise NotImplementedError

    def set_email_verified(self, uid: str) -> Outcome:
        raise NotImplementedError


class StoreIdentityProvider(IdentityProvider):
    """Principal directory kept in the document store under ``principals``.

    Custom claims written here are what the token issuer embeds on the next
    token refresh.
    """

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def register(self, principal: PrincipalRecord) -> None:
        """Upsert a principal; a replayed signup never clears a verified email."""
        payload = principal.to_dict()
        if not principal.custom_claims:
            payload.pop("customClaims")
        payload["updatedAt"] = SERVER_TIMESTAMP

        def _op(tx: Transaction) -> None:
            current = tx.get(PRINCIPALS, principal.uid) or {}
            if current.get("emailVerified") is True:
                payload["emailVerified"] = True
            tx.set(PRINCIPALS, principal.uid, payload, merge=True)

        self._store.run_transaction(_op)

    def get_principal(self, uid: str) -> PrincipalRecord | None:
        data = self._store.get(PRINCIPALS, uid)
        if data is None:
            return None
        return PrincipalRecord.from_dict(uid, data)

    def set_custom_claims(self, uid: str, claims: dict[str, Any]) -> Outcome:
        def _write() -> None:
            self._store.set(
                PRINCIPALS,
                uid,
                {"uid": uid, "customClaims": dict(claims), "updatedAt": SERVER_TIMESTAMP},
                merge=True,
            )

        return attempt("set_custom_claims", _write)

    def set_email_verified(self, uid: str) -> Outcome:
        def _write() -> Outcome:
            if self.get_principal(uid) is None:
                return Outcome.failure("set_email_verified", "principal not found", uid=uid)
            self._store.set(PRINCIPALS, uid, {"emailVerified": True, "updatedAt": SERVER_TIMESTAMP}, merge=True)
            return Outcome.success("set_email_verified", uid=uid)

        return attempt("set_email_verified", _write)
