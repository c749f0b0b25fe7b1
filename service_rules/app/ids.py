"""
Public identifier derivation for stored rules and tables.
"""

import hashlib
import json
from typing import Any, Mapping


def make_id(thing: str, record: Mapping[str, Any]) -> str:
    """
    Derive the public id of a stored thing.

    The id is the SHA-1 of the canonical JSON form of ``thing`` plus the
    record (provenance and version), so equal inputs always give equal
    ids and a version bump gives a new one.
    """
    payload = dict(record)
    payload["thing"] = thing
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()
