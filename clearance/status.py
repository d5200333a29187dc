from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ProfileStatus(str, Enum):
    PENDING_EMAIL_VERIFICATION = "pending_email_verification"
    PENDING_DOCUMENTS = "pending_documents"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    EMAIL_VERIFICATION_FAILED = "email_verification_failed"

    @classmethod
    def parse(cls, value: object) -> "ProfileStatus":
        """Read a stored status; a missing or unknown value counts as the initial state."""
        try:
            return cls(str(value))
        except ValueError:
            return cls.PENDING_EMAIL_VERIFICATION

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_DECISIONS


class ApplicationStatus(str, Enum):
    WAITING = "waiting"
    APPROVED = "approved"
    DECLINED = "declined"

    @classmethod
    def parse(cls, value: object) -> "ApplicationStatus | None":
        try:
            return cls(str(value))
        except ValueError:
            return None


class ApplicationType(str, Enum):
    ARRIVAL = "arrival"
    DEPARTURE = "departure"

    @classmethod
    def parse(cls, value: object) -> "ApplicationType | None":
        try:
            return cls(str(value))
        except ValueError:
            return None


class Role(str, Enum):
    USER = "user"
    OFFICER = "officer"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: object) -> "Role":
        try:
            return cls(str(value))
        except ValueError:
            return cls.USER


TERMINAL_DECISIONS = frozenset({ProfileStatus.APPROVED, ProfileStatus.REJECTED})
VERIFICATION_STATES = frozenset(
    {ProfileStatus.PENDING_EMAIL_VERIFICATION, ProfileStatus.EMAIL_VERIFICATION_FAILED}
)
REVIEWER_ROLES = frozenset({Role.OFFICER, Role.ADMIN})

PROFILE_TRANSITIONS: dict[ProfileStatus, frozenset[ProfileStatus]] = {
    ProfileStatus.PENDING_EMAIL_VERIFICATION: frozenset(
        {ProfileStatus.PENDING_DOCUMENTS, ProfileStatus.EMAIL_VERIFICATION_FAILED}
    ),
    ProfileStatus.EMAIL_VERIFICATION_FAILED: frozenset(
        {ProfileStatus.PENDING_EMAIL_VERIFICATION, ProfileStatus.PENDING_DOCUMENTS}
    ),
    ProfileStatus.PENDING_DOCUMENTS: frozenset({ProfileStatus.PENDING_APPROVAL}),
    ProfileStatus.PENDING_APPROVAL: frozenset({ProfileStatus.APPROVED, ProfileStatus.REJECTED}),
    ProfileStatus.APPROVED: frozenset(),
    ProfileStatus.REJECTED: frozenset(),
}

APPLICATION_TRANSITIONS: dict[ApplicationStatus, frozenset[ApplicationStatus]] = {
    ApplicationStatus.WAITING: frozenset({ApplicationStatus.APPROVED, ApplicationStatus.DECLINED}),
    ApplicationStatus.APPROVED: frozenset(),
    ApplicationStatus.DECLINED: frozenset(),
}


class IllegalTransitionError(ValueError):
    def __init__(self, current: Enum, target: Enum) -> None:
        super().__init__(f"invalid transition: {current.value} -> {target.value}")
        self.current = current
        self.target = target


def allowed(current: ProfileStatus) -> frozenset[ProfileStatus]:
    return PROFILE_TRANSITIONS.get(current, frozenset())


def can_transition(current: ProfileStatus, target: ProfileStatus) -> bool:
    return target in allowed(current)


@dataclass(frozen=True)
class StatusTransition:
    """A profile status edge that exists in the transition table."""

    current: ProfileStatus
    target: ProfileStatus

    def __post_init__(self) -> None:
        if not can_transition(self.current, self.target):
            raise IllegalTransitionError(self.current, self.target)

    @property
    def becomes_terminal(self) -> bool:
        return self.target.is_terminal and not self.current.is_terminal


@dataclass(frozen=True)
class ApplicationTransition:
    current: ApplicationStatus
    target: ApplicationStatus

    def __post_init__(self) -> None:
        if self.target not in APPLICATION_TRANSITIONS.get(self.current, frozenset()):
            raise IllegalTransitionError(self.current, self.target)
