"""Guarded (compare-and-swap) status transitions over a Mongo collection.

The write is conditioned on the status observed by the read, so a concurrent
writer makes the update miss instead of overwriting; a miss is re-read and
re-checked.
"""
from typing import Callable, Dict, Optional

from pymongo import ReturnDocument

from .errors import ConcurrentModification, NotFound
from .models import check_transition
from .utils import utcnow


def guarded_transition(coll, key_field: str, key: str, table: Dict, target, entity: str,
                       set_fields: Optional[dict] = None,
                       check: Optional[Callable[[dict], None]] = None,
                       extra_filter: Optional[dict] = None,
                       retries: int = 5) -> dict:
    for _ in range(max(1, retries)):
        doc = coll.find_one({key_field: key})
        if not doc:
            raise NotFound(f"{entity} not found")
        if check is not None:
            check(doc)
        check_transition(table, doc["status"], target, entity)

        flt = {key_field: key, "status": doc["status"]}
        flt.update(extra_filter or {})
        update = {"status": target.value, "updatedAt": utcnow()}
        update.update(set_fields or {})
        after = coll.find_one_and_update(flt, {"$set": update}, return_document=ReturnDocument.AFTER)
        if after is not None:
            return after
    raise ConcurrentModification(f"{entity} changed concurrently; retry the request")
