"""
Deterministic identifiers.

Every record the pipeline writes gets an ID derived from its content, so a
re-run upserts the same documents instead of creating new ones.
"""

import hashlib
import re
from typing import Optional

_DISALLOWED = re.compile(r"[^a-z0-9\s-]")
_SEPARATORS = re.compile(r"[\s-]+")


def normalize_for_id(name: str) -> str:
    """'Open AI, Inc.' -> 'open_ai_inc'"""
    slug = _DISALLOWED.sub("", (name or "").lower().strip())
    return _SEPARATORS.sub("_", slug).strip("_")


def content_hash(url: Optional[str], title: Optional[str]) -> str:
    """MD5 of the source URL, or of the title when the item has no URL."""
    basis = (url or "").strip() or (title or "").strip()
    return hashlib.md5(basis.encode("utf-8")).hexdigest()


def make_entity_id(entity_type: str, primary_name: str) -> str:
    slug = normalize_for_id(primary_name)
    if not slug:
        # Names with no ASCII letters or digits still need a stable key
        slug = hashlib.md5(primary_name.strip().lower().encode("utf-8")).hexdigest()[:12]
    return f"{entity_type[:4].lower()}_{slug}"


def make_evidence_id(prefix: str, duplicate_check_hash: str) -> str:
    return f"evd_{prefix}_{duplicate_check_hash}"


def make_finding_id(evidence_id: str) -> str:
    """'evd_pap_3f2a...' -> 'fnd_pap_3f2a...', one Finding per Evidence record."""
    if evidence_id.startswith("evd_"):
        evidence_id = evidence_id[len("evd_"):]
    return f"fnd_{evidence_id}"


def make_relationship_id(source_id: str, target_id: str, relationship_type: str) -> str:
    """Undirected edge key: rel_<min>_<type>_<max>."""
    first, second = sorted([source_id, target_id])
    return f"rel_{first}_{relationship_type}_{second}"


def make_snapshot_id(entity_id: str, snapshot_date: str) -> str:
    return f"{entity_id}_{snapshot_date}"
