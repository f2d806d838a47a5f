from typing import Any
from fastapi.encoders import jsonable_encoder


def ok(data: Any = None, **meta) -> dict:
    """Success envelope shared by every API route."""
    body = {'success': True, 'data': jsonable_encoder(data)}
    if meta:
        body['meta'] = jsonable_encoder(meta)
    return body
