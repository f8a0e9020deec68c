from __future__ import annotations

import re

from idportal.service.errors import PasswordPolicyError

_LOWER = re.compile(r"[a-z]")
_UPPER = re.compile(r"[A-Z]")
_NUMBER = re.compile(r"[0-9]")
_MARKS = re.compile(r"[^0-9a-zA-Z]")


def _longest_run(password: str) -> int:
    longest = 0
    run = 0
    previous = None
    for char in password:
        run = run + 1 if char == previous else 1
        previous = char
        longest = max(longest, run)
    return longest


def check_password(password: str, *, min_length: int = 8, min_classes: int = 2) -> None:
    """Raise ``PasswordPolicyError`` when ``password`` is too weak.

    Character classes are lower, upper, digit and anything else; a run of
    repeated characters costs one class.
    """
    if len(password) < min_length:
        raise PasswordPolicyError(
            f"Password does not conform to policy. Min length: {min_length}"
        )

    classes = sum(
        1 for pattern in (_LOWER, _UPPER, _NUMBER, _MARKS) if pattern.search(password)
    )
    if _longest_run(password) > 1:
        classes -= 1

    if classes < min_classes:
        raise PasswordPolicyError(
            f"Password does not conform to policy. Min character classes required: {min_classes}"
        )


def validate_password(
    password: str, confirm: str, *, min_length: int = 8, min_classes: int = 2
) -> None:
    if not password:
        raise PasswordPolicyError("Please enter a new password")
    if not confirm:
        raise PasswordPolicyError("Please confirm your new password")
    if password != confirm:
        raise PasswordPolicyError("Passwords do not match. Please confirm your password.")
    check_password(password, min_length=min_length, min_classes=min_classes)


def validate_password_change(
    current: str,
    password: str,
    confirm: str,
    *,
    min_length: int = 8,
    min_classes: int = 2,
) -> None:
    if not current:
        raise PasswordPolicyError("Please enter your current password")
    if current == password:
        raise PasswordPolicyError(
            "Current password is the same as new password. Please set a different password."
        )
    validate_password(password, confirm, min_length=min_length, min_classes=min_classes)
