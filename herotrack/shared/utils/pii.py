"""PII detection and stripping for event metadata.

Events must never carry anything capable of identifying a student.
The client strips suspicious metadata before it is queued; the server
scans every event again and rejects the whole batch on any finding.
"""
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Pattern, Tuple

logger = logging.getLogger(__name__)

# Strings longer than this are treated as free text, which is never accepted
MAX_FREE_TEXT_LENGTH = 120

# Key tokens that indicate an identifying field (matched per token, not substring)
IDENTIFYING_KEY_TOKENS = frozenset({
    "name", "firstname", "lastname", "fullname", "surname", "username",
    "email", "mail", "phone", "mobile", "telephone", "address", "street",
    "ip", "ssn", "contact", "personal", "birthdate", "birthday", "dob",
    "zipcode", "postcode", "passport",
})

# Multi-token keys that identify a device or a person
IDENTIFYING_COMPOUND_KEYS = frozenset({
    "device_id", "user_id", "student_id", "subject_id", "subject_local_id",
    "facilitator_id", "birth_date", "date_of_birth", "social_security",
    "zip_code", "post_code", "android_id", "advertising_id",
})

PII_PATTERNS: Dict[str, Pattern] = {
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "phone": re.compile(
        r"(?:\+?\d{1,2}[\s.-])?(?:\(\d{3}\)\s?|\b\d{3}[\s.-])\d{3}[\s.-]\d{4}\b"
    ),
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "ip_address": re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b"),
    "street_address": re.compile(
        r"\b\d{1,5}\s+(?:[A-Za-z]+\s+){1,3}"
        r"(?:street|st|avenue|ave|road|rd|lane|ln|drive|dr|boulevard|blvd|court|ct)\b",
        re.IGNORECASE,
    ),
}

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class PiiFinding:
    """A single PII detection.

    Attributes:
        path: Dotted location of the finding inside the scanned value
        kind: Pattern or rule that matched (email, phone, identifying_key, ...)
    """
    path: str
    kind: str


def _key_tokens(key: str) -> List[str]:
    spaced = _CAMEL_BOUNDARY.sub("_", key)
    return [t for t in _TOKEN_SPLIT.split(spaced.lower()) if t]


def is_identifying_key(key: str) -> bool:
    """Check whether a metadata key names an identifying field.

    Args:
        key: Metadata key (snake_case or camelCase)

    Returns:
        True if the key looks like it holds personal data
    """
    tokens = _key_tokens(key)
    if not tokens:
        return False
    if "_".join(tokens) in IDENTIFYING_COMPOUND_KEYS:
        return True
    for i in range(len(tokens) - 1):
        if f"{tokens[i]}_{tokens[i + 1]}" in IDENTIFYING_COMPOUND_KEYS:
            return True
    return any(token in IDENTIFYING_KEY_TOKENS for token in tokens)


def find_pii_in_text(text: str) -> List[str]:
    """Return the names of PII patterns found in a string."""
    return [kind for kind, pattern in PII_PATTERNS.items() if pattern.search(text)]


def scan_for_pii(
    value: Any,
    path: str = "",
    max_text_length: int = MAX_FREE_TEXT_LENGTH,
) -> List[PiiFinding]:
    """Recursively scan a metadata value for PII.

    Keys are checked against identifying key names, strings against the
    PII patterns and the free-text length limit. Numbers and booleans
    carry no findings.

    Args:
        value: Metadata map, list or scalar
        path: Location prefix used in findings
        max_text_length: Longest string accepted as a short code

    Returns:
        List of findings (empty when clean)
    """
    findings: List[PiiFinding] = []

    if isinstance(value, dict):
        for key, item in value.items():
            key_str = str(key)
            child = f"{path}.{key_str}" if path else key_str
            if is_identifying_key(key_str):
                findings.append(PiiFinding(path=child, kind="identifying_key"))
            findings.extend(scan_for_pii(item, child, max_text_length))
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            findings.extend(scan_for_pii(item, f"{path}[{index}]", max_text_length))
    elif isinstance(value, str):
        for kind in find_pii_in_text(value):
            findings.append(PiiFinding(path=path, kind=kind))
        if len(value) > max_text_length:
            findings.append(PiiFinding(path=path, kind="free_text"))

    return findings


def sanitize_metadata(
    metadata: Dict[str, Any],
    max_text_length: int = MAX_FREE_TEXT_LENGTH,
) -> Tuple[Dict[str, Any], int]:
    """Strip anything identifying from a metadata map.

    Used on-device before an event is queued. Identifying keys are
    removed, strings that match a PII pattern or exceed the free-text
    limit are removed, nested maps and lists are cleaned recursively.

    Args:
        metadata: Raw metadata from the UI layer
        max_text_length: Longest string kept

    Returns:
        Tuple of (clean metadata, number of values dropped)
    """
    dropped = 0

    def clean(value: Any) -> Tuple[bool, Any]:
        nonlocal dropped
        if isinstance(value, dict):
            result = {}
            for key, item in value.items():
                key_str = str(key)
                if is_identifying_key(key_str):
                    dropped += 1
                    continue
                keep, cleaned = clean(item)
                if keep:
                    result[key_str] = cleaned
            return True, result
        if isinstance(value, (list, tuple)):
            items = []
            for item in value:
                keep, cleaned = clean(item)
                if keep:
                    items.append(cleaned)
            return True, items
        if isinstance(value, str):
            if len(value) > max_text_length or find_pii_in_text(value):
                dropped += 1
                return False, None
            return True, value
        if value is None or isinstance(value, (bool, int, float)):
            return True, value
        # Anything else is not JSON-safe
        dropped += 1
        return False, None

    _, cleaned = clean(metadata or {})

    if dropped:
        logger.warning(
            "METADATA_PII_STRIPPED",
            extra={"dropped_values": dropped},
        )

    return cleaned, dropped
