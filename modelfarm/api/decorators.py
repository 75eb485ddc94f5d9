# modelfarm/api/decorators.py
from __future__ import annotations

from functools import wraps
from typing import Any, Callable

from flask import jsonify

from modelfarm.utils.errors import (
    Conflict,
    DependencyUnavailable,
    InvalidArgument,
    NotFound,
    ResourceUnavailable,
)
from modelfarm.utils.logger import logs

STATUS_CODES: list[tuple[type[Exception], int]] = [
    (NotFound, 404),
    (InvalidArgument, 400),
    (Conflict, 409),
    (ResourceUnavailable, 503),
    (DependencyUnavailable, 503),
]


def handle_errors(func: Callable[..., Any]):
    """
    Decorator: convert control-plane errors into HTTP responses.

    Contract:
    - Only catches the error classes listed in STATUS_CODES
    - Returns JSON {error, kind}
    - Anything else propagates (flask answers 500)
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except tuple(cls for cls, _ in STATUS_CODES) as e:
            code = next(code for cls, code in STATUS_CODES if isinstance(e, cls))
            logs.warning(f"[API] {func.__name__} → {code}: {e}")
            return jsonify({"error": str(e), "kind": type(e).__name__}), code

    return wrapper
