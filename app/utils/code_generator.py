"""
Cryptographically secure identifier generation for shared items.
"""
import secrets
import string

# URL-safe 62-symbol alphabet: 0-9, A-Z, a-z
ALPHABET = string.digits + string.ascii_uppercase + string.ascii_lowercase
ID_LENGTH = 10
MAX_ID_ATTEMPTS = 10


def generate_id(length: int = ID_LENGTH) -> str:
    """
    Generate a random opaque item identifier.

    Uses the `secrets` module for cryptographic security.

    Returns:
        str: An identifier like "aZ3kP9xQ2m"
    """
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def is_valid_id(value: str, length: int = ID_LENGTH) -> bool:
    """Check that a presented identifier could have been generated here."""
    return len(value) == length and all(c in ALPHABET for c in value)
