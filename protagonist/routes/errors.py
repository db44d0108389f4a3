"""Translate engine exceptions into HTTP errors."""

from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import HTTPException

from protagonist.fallback import BackendExhaustedError
from protagonist.normalize import MalformedResponseError
from protagonist.pipeline import SessionBusyError, SetupError
from protagonist.versions import RegenerationNotAllowedError


@contextmanager
def engine_errors() -> Iterator[None]:
    try:
        yield
    except SessionBusyError as e:
        raise HTTPException(409, str(e))
    except BackendExhaustedError as e:
        raise HTTPException(502, f"{e} (last error: {e.last_error})")
    except MalformedResponseError as e:
        raise HTTPException(502, str(e))
    except (SetupError, RegenerationNotAllowedError) as e:
        raise HTTPException(400, str(e))
