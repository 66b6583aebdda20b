import copy
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional


def new_uuid() -> str:
    return str(uuid.uuid4())


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def clone(doc: Any) -> Any:
    """Detached copy so callers never alias store state."""
    return copy.deepcopy(doc)


def find_element(elements: Iterable[dict], element_id: str) -> Optional[dict]:
    for element in elements:
        if element.get("id") == element_id:
            return element
    return None
