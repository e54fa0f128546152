# palenque/utils/db_utils.py
from contextlib import contextmanager
import logging

log = logging.getLogger(__name__)


@contextmanager
def atomic():
    """
    Runs the enclosed block as one database transaction.
    Commits on success; rolls back and re-raises on any error.
    """
    from palenque import db
    try:
        yield db.session
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        log.debug(f"Transaction rolled back: {e}")
        raise
