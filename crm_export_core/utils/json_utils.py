"""JSON helpers that understand pydantic models, datetimes and Decimals."""

import json
from typing import Any

from pydantic_core import to_jsonable_python


def dumps(obj: Any, **kwargs: Any) -> str:
    """Serialize to a JSON string via pydantic's jsonable conversion."""
    return json.dumps(to_jsonable_python(obj), **kwargs)

