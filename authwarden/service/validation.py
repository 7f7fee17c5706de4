from __future__ import annotations

import re
import unicodedata
from typing import Dict, Optional

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def normalize_email(value: str) -> str:
    return unicodedata.normalize("NFKC", value.strip().lower())


def email_problem(value: str) -> Optional[str]:
    """Return why ``value`` is not a usable address, or None."""
    normalized = normalize_email(value)
    if len(normalized) > 254:
        return "email address too long"
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        return "invalid email address"
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        return "invalid email address format"
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        return "invalid email address format"
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            return "invalid email address format"
    return None


def password_problem(value: str, *, min_length: int = 8, max_length: int = 128) -> Optional[str]:
    if len(value) < min_length:
        return f"password must be at least {min_length} characters"
    if len(value) > max_length:
        return f"password must be at most {max_length} characters"
    return None


def username_problem(value: str) -> Optional[str]:
    if len(value) > 64:
        return "username must be at most 64 characters"
    if not _USERNAME_PATTERN.match(value):
        return "username may contain only letters, digits, '.', '_' and '-'"
    return None


def registration_problems(
    *,
    email: Optional[str],
    password: Optional[str],
    username: Optional[str],
    first_name: Optional[str],
    last_name: Optional[str],
    min_length: int = 8,
    max_length: int = 128,
) -> Dict[str, str]:
    """Collect every missing or malformed registration field at once."""
    fields = {
        "email": email,
        "password": password,
        "username": username,
        "first_name": first_name,
        "last_name": last_name,
    }
    problems: Dict[str, str] = {}
    for name, value in fields.items():
        if value is None or not str(value).strip():
            problems[name] = f"{name} is required"
    if "email" not in problems:
        problem = email_problem(email)
        if problem:
            problems["email"] = problem
    if "password" not in problems:
        problem = password_problem(password, min_length=min_length, max_length=max_length)
        if problem:
            problems["password"] = problem
    if "username" not in problems:
        problem = username_problem(username.strip())
        if problem:
            problems["username"] = problem
    for name in ("first_name", "last_name"):
        if name not in problems and len(fields[name].strip()) > 100:
            problems[name] = f"{name} must be at most 100 characters"
    return problems


__all__ = [
    "email_problem",
    "normalize_email",
    "password_problem",
    "registration_problems",
    "username_problem",
]
