"""
Security utilities for the share service.
Provides path traversal protection, input sanitization, file validation,
password hashing and caller identity resolution.
"""
import html
import re
import logging
from pathlib import Path
from typing import Set, Optional

from fastapi import Header
from passlib.context import CryptContext

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
security_logger = logging.getLogger('security')

# Allowed file extensions (safe types only - no executable or XSS vectors)
ALLOWED_EXTENSIONS: Set[str] = {
    # Documents
    '.pdf', '.doc', '.docx', '.txt', '.rtf', '.odt',
    # Images (NO SVG - can contain JavaScript)
    '.jpg', '.jpeg', '.png', '.gif', '.webp', '.bmp', '.ico',
    # Data
    '.csv', '.json', '.xml', '.xlsx', '.xls',
    # Archives
    '.zip', '.tar', '.gz', '.7z', '.rar',
    # Media
    '.mp3', '.mp4', '.wav', '.avi', '.mov', '.mkv', '.webm',
    # Safe text formats (NO HTML/JS - XSS risk)
    '.md', '.yml', '.yaml', '.ini', '.cfg', '.log'
}

DANGEROUS_CONTENT_TYPES: Set[str] = {
    'application/x-executable',
    'application/x-msdownload',
    'application/x-msdos-program',
    'application/x-sh',
    'application/x-shellscript',
    'application/x-bat',
    'application/x-msi'
}

# Dangerous patterns in filenames
DANGEROUS_PATTERNS = [
    r'\.\.', r'/', r'\\', r'\x00',  # Path traversal
    r'<', r'>', r':', r'"', r'\|', r'\?', r'\*'  # Windows special chars
]

# pbkdf2 is pure passlib; no native backend to keep in sync
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def validate_path_traversal(base_path: Path, requested_path: str) -> Path:
    """
    Validate that a file path doesn't escape the base directory.

    Args:
        base_path: The allowed base directory
        requested_path: The stored or user-provided file name

    Returns:
        Safe resolved path

    Raises:
        ValueError: If path traversal detected
    """
    clean_path = requested_path.replace('..', '').replace('/', '').replace('\\', '')
    if not clean_path or clean_path != requested_path:
        security_logger.warning(f"Path traversal attempt: {requested_path}")
        raise ValueError("Invalid file path")

    full_path = (base_path / clean_path).resolve()

    try:
        full_path.relative_to(base_path.resolve())
    except ValueError:
        security_logger.warning(f"Path traversal attempt: {requested_path}")
        raise ValueError("Invalid file path")

    return full_path


def sanitize_input(text: str, max_length: int = 1000) -> str:
    """
    Sanitize free-text labels to prevent XSS and injection attacks.

    Args:
        text: Raw user input
        max_length: Maximum allowed length

    Returns:
        Sanitized text
    """
    if not text:
        return ""

    text = text[:max_length]
    text = html.escape(text)
    text = text.replace('\x00', '')

    return text


def sanitize_filename(filename: str) -> str:
    """
    Sanitize a filename to prevent path traversal and injection.

    Args:
        filename: Original filename

    Returns:
        Safe filename
    """
    if not filename:
        return "unnamed_file"

    for pattern in DANGEROUS_PATTERNS:
        filename = re.sub(pattern, '', filename)

    filename = filename.strip('. \t\n\r')

    if len(filename) > 255:
        name, ext = filename[:200], filename[-50:] if '.' in filename else ''
        filename = name + ext

    return filename or "unnamed_file"


def validate_file_extension(filename: str) -> bool:
    """Check if file extension is allowed."""
    ext = Path(filename).suffix.lower()
    return ext in ALLOWED_EXTENSIONS or ext == ''


def validate_content_type(content_type: str) -> bool:
    """Validate content type is not executable/dangerous."""
    return content_type not in DANGEROUS_CONTENT_TYPES


def log_security_event(event_type: str, details: dict):
    """Log a security-relevant event."""
    security_logger.warning(f"SECURITY_EVENT: {event_type} - {details}")


class SecretHasher:
    """Password hashing for protected items."""

    def __init__(self, context: CryptContext = pwd_context):
        self.context = context

    def hash(self, secret: str) -> str:
        return self.context.hash(secret)

    def verify(self, secret: str, digest: str) -> bool:
        try:
            return self.context.verify(secret, digest)
        except (ValueError, TypeError):
            # Unknown or corrupted digest format
            security_logger.error("Stored secret digest could not be parsed")
            return False


def get_caller_identity(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    """
    Resolve the caller identity set by the upstream authentication layer.

    Returns None for anonymous callers.
    """
    if x_user_id is None:
        return None
    identity = x_user_id.strip()
    return identity or None
