"""
Identifier generation.

Entity ids are a three-letter tag followed by 16 alphanumerics
(``fldAbc123...``), the shape formula reference extraction scans for.
"""

import re
import secrets
import string

_ALPHABET = string.ascii_letters + string.digits

TABLE_PREFIX = "tbl"
FIELD_PREFIX = "fld"
RECORD_PREFIX = "rec"
RUN_PREFIX = "run"
TASK_PREFIX = "cuo"

ID_BODY_LENGTH = 16

# Identifiers interpolated into SQL (table names, order columns) must match this.
SAFE_IDENTIFIER = re.compile(r"^[A-Za-z0-9_]+$")


def generate_id(prefix: str) -> str:
    """Random id with a three-letter tag, e.g. ``generate_id("fld")``."""
    return prefix + "".join(secrets.choice(_ALPHABET) for _ in range(ID_BODY_LENGTH))


def is_safe_identifier(value: str) -> bool:
    return bool(value) and SAFE_IDENTIFIER.match(value) is not None
