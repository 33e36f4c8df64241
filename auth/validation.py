"""
auth/validation.py -- Field rules for usernames and emails.

Shared by the orchestrator (authoritative) and the API request models (early
422s with a friendly message). Password strength lives in auth/passwords.py.
"""

from __future__ import annotations

import re

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 50
EMAIL_MAX_LENGTH = 255

_USERNAME_RE = re.compile(r"[A-Za-z0-9._-]+")
# One @, a dotted domain, no whitespace.
_EMAIL_RE = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")


def username_problems(username: str) -> list[str]:
    if not USERNAME_MIN_LENGTH <= len(username) <= USERNAME_MAX_LENGTH:
        return [f"Username must be between {USERNAME_MIN_LENGTH} and {USERNAME_MAX_LENGTH} characters"]
    if not _USERNAME_RE.fullmatch(username):
        return ["Username may only contain letters, digits, dots, underscores and hyphens"]
    return []


def email_problems(email: str) -> list[str]:
    if len(email) > EMAIL_MAX_LENGTH or not _EMAIL_RE.fullmatch(email):
        return ["Email address is not valid"]
    return []
