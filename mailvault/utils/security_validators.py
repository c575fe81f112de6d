"""
Security Validators Module
Centralizes security limits and helpers used while mirroring mailboxes

SECURITY STORY: A sync engine writes untrusted data to local disk:
- Attachment filenames come from the sender (path traversal, CWE-22)
- Message bodies can be arbitrarily large (DoS while downloading)
- MIME trees can be deeply nested (MIME bombs, CWE-674)
"""

import hashlib
import re
import ssl
import logging
import socket
import ipaddress
from typing import Tuple
from urllib.parse import urlparse

MAX_SUBJECT_LENGTH = 1024
MAX_MIME_PARTS = 100

# Fallback ceiling (500MB) when no attachment limit is configured
DEFAULT_MAX_EMAIL_SIZE = 500 * 1024 * 1024

DEFAULT_MAX_FILENAME_LENGTH = 100

# Allow-list: word characters, hyphen, dot. Everything else is stripped.
FILENAME_SANITIZE_PATTERN = re.compile(r"[^\w\-\.]")
FILENAME_COLLAPSE_DOTS_PATTERN = re.compile(r"\.{2,}")
FILENAME_COLLAPSE_SEPARATORS_PATTERN = re.compile(r"([_\-])[_\-]+")
WHITESPACE_PATTERN = re.compile(r"\s+")

# Reserved on Windows regardless of extension
WINDOWS_RESERVED_NAMES = {
    "CON", "PRN", "AUX", "NUL",
    "COM1", "COM2", "COM3", "COM4", "COM5", "COM6", "COM7", "COM8", "COM9",
    "LPT1", "LPT2", "LPT3", "LPT4", "LPT5", "LPT6", "LPT7", "LPT8", "LPT9"
}

logger = logging.getLogger(__name__)


def sanitize_filename(filename: str, max_length: int = DEFAULT_MAX_FILENAME_LENGTH) -> str:
    """
    Sanitize an attachment filename before it touches the filesystem

    SECURITY STORY: A malicious message can name its attachment
    "../../etc/passwd". We drop any directory component, keep only
    allow-listed characters, collapse repeated separators and dots, and
    bound the length so the result is always a single, plain path segment.

    Args:
        filename: Original filename from the MIME part
        max_length: Upper bound for the returned name

    Returns:
        Sanitized filename safe for filesystem operations

    Example:
        >>> sanitize_filename("../../etc/passwd")
        'passwd'
        >>> sanitize_filename("Quarterly  report (final).pdf")
        'Quarterly_report_final.pdf'
    """
    if not filename:
        return "unnamed_attachment"

    # Remove path components before character filtering
    filename = filename.replace("\x00", "").split("/")[-1].split("\\")[-1]

    sanitized = WHITESPACE_PATTERN.sub("_", filename.strip())
    sanitized = FILENAME_SANITIZE_PATTERN.sub("", sanitized)
    sanitized = FILENAME_COLLAPSE_DOTS_PATTERN.sub(".", sanitized)
    sanitized = FILENAME_COLLAPSE_SEPARATORS_PATTERN.sub(r"\1", sanitized)
    sanitized = sanitized.strip("._-")

    if not sanitized:
        return "unnamed_attachment"

    base_name = sanitized.split('.')[0].upper()
    if base_name in WINDOWS_RESERVED_NAMES:
        sanitized = "_" + sanitized

    return _truncate_keeping_extension(sanitized, max_length)


def _truncate_keeping_extension(name: str, max_length: int) -> str:
    if len(name) <= max_length:
        return name

    stem, dot, extension = name.rpartition(".")
    if not dot or not stem or len(extension) > 16 or len(extension) + 1 >= max_length:
        return name[:max_length]

    return stem[:max_length - len(extension) - 1] + "." + extension


def sanitize_path_component(value: str, max_length: int = 64) -> str:
    """
    Turn an arbitrary identifier (account id, Message-ID) into a directory name

    Message-IDs such as "<abc@x>" contain characters that are not portable
    on disk. Values that are already safe (plain account ids such as
    "work") are returned unchanged. Otherwise the readable prefix is
    sanitized and a short digest of the full value is appended so two
    identifiers never share a directory.
    """
    readable = FILENAME_SANITIZE_PATTERN.sub("_", value)
    readable = FILENAME_COLLAPSE_DOTS_PATTERN.sub(".", readable)
    readable = FILENAME_COLLAPSE_SEPARATORS_PATTERN.sub(r"\1", readable).strip("._-")
    readable = readable[:max_length]
    reserved = readable.split(".")[0].upper() in WINDOWS_RESERVED_NAMES
    if readable and readable == value and not reserved:
        return readable

    digest = hashlib.sha1(value.encode("utf-8", errors="replace")).hexdigest()[:12]
    return f"{readable}-{digest}" if readable else digest


def create_secure_ssl_context(verify: bool = True) -> ssl.SSLContext:
    """
    Create an SSL context with TLS 1.2+ enforced

    Args:
        verify: When False, certificate and hostname checks are disabled
            (self-signed test servers only)

    Returns:
        Configured SSL context
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.check_hostname = True
    context.verify_mode = ssl.CERT_REQUIRED
    context.load_default_certs()

    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        logger.warning("SSL verification disabled - use only for testing!")

    return context


def validate_subject_length(subject: str) -> str:
    """Truncate subject lines longer than MAX_SUBJECT_LENGTH"""
    return subject[:MAX_SUBJECT_LENGTH]


def calculate_max_email_size(max_attachment_bytes: int) -> int:
    """
    Calculate the largest message we are willing to download

    The 5MB overhead accounts for headers, bodies, and base64 inflation
    headroom on top of the attachment limit.

    Args:
        max_attachment_bytes: Attachment size cap (0 = unlimited)

    Returns:
        Maximum message size in bytes
    """
    if max_attachment_bytes > 0:
        return max_attachment_bytes * 4 // 3 + (5 * 1024 * 1024)
    return DEFAULT_MAX_EMAIL_SIZE


def is_safe_webhook_url(url: str) -> Tuple[bool, str]:
    """
    Validate a webhook URL to prevent SSRF

    SECURITY STORY: Alert webhooks are configured by whoever controls the
    environment. Resolving the host and rejecting loopback, private,
    link-local and reserved ranges keeps the sync service from being used
    as a proxy into the internal network.

    Args:
        url: The webhook URL to validate

    Returns:
        Tuple of (is_safe, error_message)
    """
    if not url:
        return False, "URL is empty"

    try:
        parsed = urlparse(url)
    except Exception as e:
        return False, f"Failed to parse URL: {e}"

    if parsed.scheme not in ('http', 'https'):
        return False, f"URL scheme must be http or https, got: {parsed.scheme}"

    hostname = parsed.hostname
    if not hostname:
        return False, "URL must contain a valid hostname"

    port = parsed.port or (443 if parsed.scheme == 'https' else 80)
    try:
        addr_info = socket.getaddrinfo(hostname, port, socket.AF_UNSPEC, socket.SOCK_STREAM)
    except socket.gaierror as e:
        return False, f"Could not resolve hostname '{hostname}': {e}"

    for res in addr_info:
        ip_str = res[4][0]
        try:
            ip = ipaddress.ip_address(ip_str)
        except ValueError:
            return False, f"Resolved to an invalid IP address: {ip_str}"

        if (ip.is_loopback or ip.is_private or ip.is_link_local or ip.is_multicast
                or ip.is_reserved or ip.is_unspecified):
            return False, f"'{hostname}' resolves to a non-public address ({ip_str})"

    return True, ""
