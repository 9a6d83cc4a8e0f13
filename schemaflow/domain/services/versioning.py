"""Version numbering for schema snapshots (``major.minor.patch``)."""
import re
from typing import Optional, Tuple

from schemaflow.domain.exceptions import ValidationError

INITIAL_VERSION = "0.0.0"
ROLLOVER = 100

_VERSION = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")


def parse_version(version: str) -> Tuple[int, int, int]:
    """Return ``(major, minor, patch)``; raises ValidationError on bad input."""
    match = _VERSION.match(version or "")
    if not match:
        raise ValidationError(f"Invalid version '{version}', expected major.minor.patch")
    return int(match.group(1)), int(match.group(2)), int(match.group(3))


def increment_version(version: Optional[str]) -> str:
    """Bump patch; patch rolls into minor at 100, minor rolls into major at 100.

    >>> increment_version("1.2.99")
    '1.3.0'
    >>> increment_version("1.99.99")
    '2.0.0'
    """
    major, minor, patch = parse_version(version or INITIAL_VERSION)
    patch += 1
    if patch >= ROLLOVER:
        patch = 0
        minor += 1
    if minor >= ROLLOVER:
        minor = 0
        major += 1
    return f"{major}.{minor}.{patch}"
