from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List


@dataclass
class SecurityAnswer:
    uid: str
    question_id: int
    answer_hash: str
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "uid": self.uid,
            "question_id": self.question_id,
            "answer_hash": self.answer_hash,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SecurityAnswer":
        created = data.get("created_at")
        return cls(
            uid=data["uid"],
            question_id=int(data["question_id"]),
            answer_hash=data["answer_hash"],
            created_at=datetime.fromisoformat(created) if created else datetime.utcnow(),
        )


@dataclass
class DirectoryAccount:
    """An account held by the in-memory directory."""

    uid: str
    email: str
    password_hash: str
    first: str = ""
    last: str = ""
    locked: bool = False
    otp_tokens: List["DirectoryOTPToken"] = field(default_factory=list)

    def active_tokens(self) -> List["DirectoryOTPToken"]:
        return [token for token in self.otp_tokens if token.enabled]


@dataclass
class DirectoryOTPToken:
    token_id: str
    secret: str
    description: str = ""
    enabled: bool = True
