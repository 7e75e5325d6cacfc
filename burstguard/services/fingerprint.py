"""
Fingerprinting of error identities.

A fingerprint is the SHA-256 hex digest of (source_service, error_type,
canonical message). Message canonicalization is pluggable and runs before
hashing; the default policy leaves the message untouched.
"""

import hashlib
import re
from typing import Callable, Dict, List, Tuple, Union

Canonicalizer = Callable[[str], str]

# Unit separator; cannot appear in normal text, so field boundaries stay
# unambiguous ("a|b" + "c" never collides with "a" + "b|c").
FIELD_SEPARATOR = "\x1f"

_WHITESPACE_RE = re.compile(r"\s+")
_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\b"
)
_HEX_RE = re.compile(r"\b0x[0-9a-fA-F]+\b")
_NUMBER_RE = re.compile(r"\d+")


def _identity(message: str) -> str:
    return message


def _trim(message: str) -> str:
    return message.strip()


def _lowercase(message: str) -> str:
    return message.casefold()


def _collapse_whitespace(message: str) -> str:
    return _WHITESPACE_RE.sub(" ", message)


def _mask_numbers(message: str) -> str:
    message = _UUID_RE.sub("<uuid>", message)
    message = _HEX_RE.sub("<hex>", message)
    return _NUMBER_RE.sub("<n>", message)


CANONICALIZERS: Dict[str, Canonicalizer] = {
    "identity": _identity,
    "trim": _trim,
    "lowercase": _lowercase,
    "collapse_whitespace": _collapse_whitespace,
    "mask_numbers": _mask_numbers,
}


def build_canonicalizer(policy: str) -> Canonicalizer:
    """
    Build a canonicalizer from a comma-separated list of step names.

    Steps run in the order given, e.g. ``"trim,lowercase"``.

    Raises:
        ValueError: If a step name is unknown
    """
    names = [name.strip() for name in policy.split(",") if name.strip()]
    if not names:
        names = ["identity"]

    unknown = [name for name in names if name not in CANONICALIZERS]
    if unknown:
        raise ValueError(
            f"Unknown canonicalization step(s): {', '.join(unknown)}. "
            f"Available: {', '.join(sorted(CANONICALIZERS))}"
        )

    steps: List[Canonicalizer] = [CANONICALIZERS[name] for name in names]

    def canonicalize(message: str) -> str:
        for step in steps:
            message = step(message)
        return message

    return canonicalize


class Fingerprinter:
    """Maps error identity attributes to a stable key."""

    def __init__(self, canonicalizer: Union[str, Canonicalizer, None] = None):
        """
        Args:
            canonicalizer: Policy string (see build_canonicalizer), a callable,
                or None for identity
        """
        if canonicalizer is None:
            canonicalizer = "identity"
        if isinstance(canonicalizer, str):
            canonicalizer = build_canonicalizer(canonicalizer)
        self._canonicalize = canonicalizer

    def canonicalize(self, message: str) -> str:
        return self._canonicalize(message)

    def fingerprint(self, source_service: str, error_type: str, error_message: str) -> str:
        """Fingerprint an already canonical message."""
        material = FIELD_SEPARATOR.join((source_service, error_type, error_message))
        return hashlib.sha256(material.encode("utf-8")).hexdigest()

    def compute(self, source_service: str, error_type: str, error_message: str) -> Tuple[str, str]:
        """
        Canonicalize the message and fingerprint the identity.

        Returns:
            Tuple of (fingerprint, canonical message)
        """
        canonical = self.canonicalize(error_message)
        return self.fingerprint(source_service, error_type, canonical), canonical
