"""
core/validation.py -- Credential policy checks and display helpers.

Every validate_* function returns a list of FieldError (empty = valid) and
never raises. Callers that need a hard failure wrap the list in
ValidationFailed so every broken rule reaches the client in one response.

Layer rule: no imports from api/, auth/, or crm/.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Optional

from core.config import PasswordPolicy, UsernamePolicy
from core.errors import FieldError

DEFAULT_PASSWORD_POLICY = PasswordPolicy()
DEFAULT_USERNAME_POLICY = UsernamePolicy()

_UPPER_RE = re.compile(r"[A-Z]")
_LOWER_RE = re.compile(r"[a-z]")
_DIGIT_RE = re.compile(r"[0-9]")
_SPECIAL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")

# bcrypt only reads the first 72 bytes (UTF-8), and bcrypt>=5 raises beyond them.
PASSWORD_MAX_BYTES = 72


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


def validate_password(
    password: Optional[str],
    policy: PasswordPolicy = DEFAULT_PASSWORD_POLICY,
    field: str = "password",
) -> list[FieldError]:
    """Check a password against the policy.

    A too-short password still reports every character-class rule it breaks;
    the length error never hides the others.
    """
    if not password:
        return [FieldError(field, "Password is required.")]

    errors: list[FieldError] = []
    if len(password) < policy.min_length:
        errors.append(FieldError(field, f"Password must be at least {policy.min_length} characters long."))
    if len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
        errors.append(
            FieldError(field, f"Password must not exceed {PASSWORD_MAX_BYTES} bytes (accented letters count as two).")
        )
    if policy.require_uppercase and not _UPPER_RE.search(password):
        errors.append(FieldError(field, "Password must contain at least one uppercase letter."))
    if policy.require_lowercase and not _LOWER_RE.search(password):
        errors.append(FieldError(field, "Password must contain at least one lowercase letter."))
    if policy.require_numbers and not _DIGIT_RE.search(password):
        errors.append(FieldError(field, "Password must contain at least one digit."))
    if policy.require_special_chars and not _SPECIAL_RE.search(password):
        errors.append(FieldError(field, "Password must contain at least one special character (!@#$%^&*...)."))
    return errors


def is_password_valid(password: Optional[str], policy: PasswordPolicy = DEFAULT_PASSWORD_POLICY) -> bool:
    return not validate_password(password, policy)


def password_requirements_message(policy: PasswordPolicy = DEFAULT_PASSWORD_POLICY) -> str:
    """Describe the active password rules in one sentence, for forms and errors."""
    requirements = [f"at least {policy.min_length} characters"]
    if policy.require_uppercase:
        requirements.append("an uppercase letter")
    if policy.require_lowercase:
        requirements.append("a lowercase letter")
    if policy.require_numbers:
        requirements.append("a digit")
    if policy.require_special_chars:
        requirements.append("a special character (!@#$%^&*...)")
    return f"Password must contain: {', '.join(requirements)}."


# ---------------------------------------------------------------------------
# Usernames
# ---------------------------------------------------------------------------


def validate_username(
    username: Optional[str],
    policy: UsernamePolicy = DEFAULT_USERNAME_POLICY,
) -> list[FieldError]:
    if not username:
        return [FieldError("username", "Username is required.")]

    errors: list[FieldError] = []
    if len(username) < policy.min_length:
        errors.append(FieldError("username", f"Username must be at least {policy.min_length} characters long."))
    if len(username) > policy.max_length:
        errors.append(FieldError("username", f"Username cannot exceed {policy.max_length} characters."))
    if not policy.allowed_pattern.fullmatch(username):
        errors.append(
            FieldError(
                "username",
                "Username may only contain letters, digits, hyphens (-), dots (.) and underscores (_).",
            )
        )
    return errors


def is_username_valid(username: Optional[str], policy: UsernamePolicy = DEFAULT_USERNAME_POLICY) -> bool:
    return not validate_username(username, policy)


def validate_credentials(
    username: Optional[str],
    password: Optional[str],
    confirm_password: Optional[str] = None,
    password_policy: PasswordPolicy = DEFAULT_PASSWORD_POLICY,
    username_policy: UsernamePolicy = DEFAULT_USERNAME_POLICY,
) -> list[FieldError]:
    """Validate a new account's handle and password together."""
    errors = validate_username(username, username_policy) + validate_password(password, password_policy)
    if confirm_password is not None and password != confirm_password:
        errors.append(FieldError("confirm_password", "Passwords do not match."))
    return errors


# ---------------------------------------------------------------------------
# Display helpers
# ---------------------------------------------------------------------------


def mask_email(email: Optional[str]) -> str:
    """Hide most of an email's local part: exemple@test.com -> exe***@test.com."""
    if not email or "@" not in email:
        return "***"
    parts = email.split("@")
    local, domain = parts[0], parts[1]
    if not local or not domain:
        return "***"
    return f"{local[:3]}***@{domain}"


def format_full_name(first_name: str, last_name: str) -> str:
    return f"{first_name} {last_name}".strip()


def _normalize_name_part(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value.lower())
    without_marks = "".join(c for c in decomposed if not unicodedata.combining(c))
    return _NON_ALNUM_RE.sub("", without_marks)


def generate_username(first_name: str, last_name: str, separator: str = ".") -> str:
    """Build a handle from a person's names: ("Jean", "Dupont") -> "jean.dupont".

    Accents are stripped and anything outside [a-z0-9] is dropped. The result
    is not guaranteed to be unique.
    """
    return f"{_normalize_name_part(first_name)}{separator}{_normalize_name_part(last_name)}"
