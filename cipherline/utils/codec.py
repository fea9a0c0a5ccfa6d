from typing import Any

import orjson
from pydantic import BaseModel


def dumps(obj: Any) -> bytes:
    if isinstance(obj, BaseModel):
        obj = obj.model_dump(mode="json", by_alias=True)
    return orjson.dumps(obj)


def loads(data: bytes | str) -> Any:
    # orjson raises JSONDecodeError, a ValueError subclass
    return orjson.loads(data)
