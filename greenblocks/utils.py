import hashlib
import json
import math
import time
from datetime import datetime, timezone
from numbers import Real
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from web3 import Web3

from .errors import InvalidArgument, NotFound


# --------------- Hashing / JSON ---------------
def sha256_hex(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()


def canonical_json(data: dict) -> str:
    return json.dumps(data, separators=(",", ":"), sort_keys=True, default=str)


def to_public(x):
    """Recursively convert ObjectId and datetime to JSON-safe values."""
    if isinstance(x, dict):
        return {k: to_public(v) for k, v in x.items() if k != "_id"}
    if isinstance(x, list):
        return [to_public(v) for v in x]
    if isinstance(x, ObjectId):
        return str(x)
    if isinstance(x, datetime):
        return as_utc(x).isoformat().replace("+00:00", "Z")
    return x


# --------------- Time ---------------
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    # Mongo hands back naive UTC datetimes unless the client is tz_aware
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso(s) -> datetime:
    if isinstance(s, datetime):
        return as_utc(s)
    if not isinstance(s, str) or not s:
        raise InvalidArgument("invalid datetime; use ISO 8601")
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(s))
    except ValueError:
        raise InvalidArgument(f"invalid datetime format: {s!r}; use ISO 8601")


# --------------- Ids ---------------
def oid(s: Optional[str], what: str = "document") -> ObjectId:
    if isinstance(s, ObjectId):
        return s
    try:
        return ObjectId(s)
    except (InvalidId, TypeError):
        raise NotFound(f"{what} not found")


def next_sequence(db, name: str) -> int:
    doc = db.counters.find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return int(doc["seq"])


def human_id(db, prefix: str) -> str:
    """PRJ-/CLM-/MKT- style id: epoch millis plus a monotonic per-prefix counter."""
    seq = next_sequence(db, prefix)
    return f"{prefix}-{int(time.time() * 1000)}-{seq:04d}"


# --------------- Validation ---------------
def norm_address(addr: Optional[str]) -> Optional[str]:
    if not addr or not isinstance(addr, str) or not Web3.is_address(addr):
        return None
    return addr.lower()


def require_positive_int(value, field: str, upper: Optional[int] = None, upper_label: str = "") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgument(f"{field} must be an integer")
    if value <= 0:
        raise InvalidArgument(f"{field} must be greater than zero")
    if upper is not None and value > upper:
        raise InvalidArgument(f"{field} cannot exceed {upper_label or upper}", limit=upper)
    return value


def require_positive_number(value, field: str) -> float:
    if isinstance(value, bool) or not isinstance(value, Real):
        raise InvalidArgument(f"{field} must be a number")
    if not math.isfinite(value):
        raise InvalidArgument(f"{field} must be a finite number")
    if not value > 0:
        raise InvalidArgument(f"{field} must be greater than zero")
    return float(value)


def require_text(value, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument(f"{field} is required")
    return value.strip()
