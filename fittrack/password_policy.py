"""
Password policy validation.

Requirements:
- 8 to 72 characters (bcrypt only uses the first 72 bytes)
- At least 1 lowercase letter, 1 uppercase letter, 1 digit
- At least 1 special character
"""
import re
from typing import List, Tuple

MIN_LENGTH = 8
MAX_LENGTH = 72

SPECIAL_CHARACTERS = r'[!@#$%^&*(),.?":{}|<>_\-+=\[\];\'/\\`~]'


def validate_password(password: str, label: str = "Password") -> Tuple[bool, List[str]]:
    """
    Validate a password against the policy.

    Returns:
        Tuple of (is_valid, list_of_error_messages)
    """
    errors = []

    if len(password) < MIN_LENGTH:
        errors.append(f"{label} must be at least {MIN_LENGTH} characters")

    if len(password.encode("utf-8")) > MAX_LENGTH:
        errors.append(f"{label} must not exceed {MAX_LENGTH} characters")

    if not re.search(r'[a-z]', password):
        errors.append(f"{label} must contain at least one lowercase letter")

    if not re.search(r'[A-Z]', password):
        errors.append(f"{label} must contain at least one uppercase letter")

    if not re.search(r'[0-9]', password):
        errors.append(f"{label} must contain at least one number")

    if not re.search(SPECIAL_CHARACTERS, password):
        errors.append(f"{label} must contain at least one special character")

    return len(errors) == 0, errors
