from contextlib import contextmanager

from fastapi import HTTPException

from services.errors import ConflictError, NotFoundError


@contextmanager
def service_errors():
    """Translate service exceptions into HTTP errors (404 / 409 / 400)."""
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
