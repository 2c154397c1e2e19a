from __future__ import annotations

from dataclasses import dataclass

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
MAX_NAME_LENGTH = 100

_NAME_FORBIDDEN = frozenset('<>"\'\\;&')


@dataclass(frozen=True)
class PasswordCheck:
    valid: bool
    too_short: bool = False
    too_long: bool = False
    # Advisory only; a weak password is still accepted.
    weak: bool = False


def validate_email(email: str) -> bool:
    if len(email) < 5 or len(email) > 254:
        return False
    if email.count("@") != 1 or " " in email:
        return False
    local, _, domain = email.partition("@")
    if not local or not domain:
        return False
    dot = domain.find(".")
    return 0 < dot < len(domain) - 1


def validate_password_strength(password: str) -> PasswordCheck:
    too_short = len(password) < MIN_PASSWORD_LENGTH
    too_long = len(password) > MAX_PASSWORD_LENGTH
    has_letter = any(c.isascii() and c.isalpha() for c in password)
    has_digit = any(c.isascii() and c.isdigit() for c in password)
    return PasswordCheck(
        valid=not too_short and not too_long,
        too_short=too_short,
        too_long=too_long,
        weak=not (has_letter and has_digit),
    )


def password_error_message(check: PasswordCheck) -> str:
    if check.too_short:
        return f"password must be at least {MIN_PASSWORD_LENGTH} characters"
    if check.too_long:
        return f"password must be at most {MAX_PASSWORD_LENGTH} characters"
    return "invalid password"


def validate_name(name: str) -> bool:
    if not 1 <= len(name) <= MAX_NAME_LENGTH:
        return False
    return not any(c in _NAME_FORBIDDEN for c in name)
