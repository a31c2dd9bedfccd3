"""Shared helpers for the service layer.

unit_of_work:  one commit per public service operation, rollback on any failure
clamp_limit:   bound user-supplied list sizes
clamp_offset:  normalise user-supplied page offsets
"""
import logging
from contextlib import contextmanager

from sqlalchemy.exc import OperationalError, SQLAlchemyError

from testhub.core.exceptions import PersistenceError
from testhub.models import db

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 500


@contextmanager
def unit_of_work(operation):
    """Commit the session when the block succeeds, roll back otherwise.

    Usage::

        with unit_of_work("complete_test_run"):
            run = runs.get_by_id(run_id)
            ...

    Domain and validation errors propagate unchanged after the rollback, so
    nothing from a failed operation is persisted.  Store failures are
    wrapped in PersistenceError carrying ``operation``:

        OperationalError → PersistenceError (connection / lock issues)
        other SQLAlchemyError → PersistenceError
    """
    try:
        yield
        db.session.commit()
    except OperationalError as exc:
        db.session.rollback()
        logger.exception("Database operational error", extra={"operation": operation})
        raise PersistenceError(operation, exc) from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Unexpected database error", extra={"operation": operation})
        raise PersistenceError(operation, exc) from exc
    except Exception:
        db.session.rollback()
        raise


def clamp_limit(limit, default=50):
    """Normalise a list limit: None/0/negative → default, capped at MAX_LIST_LIMIT."""
    try:
        limit = int(limit or 0)
    except (TypeError, ValueError):
        return default
    if limit <= 0:
        return default
    return min(limit, MAX_LIST_LIMIT)


def clamp_offset(offset):
    """Normalise a page offset: None/invalid/negative → 0."""
    try:
        return max(int(offset or 0), 0)
    except (TypeError, ValueError):
        return 0
