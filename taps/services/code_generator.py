"""
Request code generator.

Public request codes are day-scoped sequences:
  - Requests:  TR-{YYYYMMDD}-{seq:04d}   (e.g. TR-20260301-0001)

Unique via the ``requests.request_code`` constraint; the caller retries on
IntegrityError when two writers pick the same sequence.
"""

from datetime import UTC, datetime

from sqlalchemy import func

from taps.models import db
from taps.models.request import Request

CODE_PREFIX = "TR"


def generate_request_code(submitted_at: datetime | None = None, offset: int = 0) -> str:
    """Generate the next code for the submission day.

    ``offset`` skips ahead after a collision.
    """
    when = submitted_at or datetime.now(UTC)
    if when.tzinfo is not None:
        when = when.astimezone(UTC)
    day = when.strftime("%Y%m%d")
    prefix = f"{CODE_PREFIX}-{day}-"
    count = (
        db.session.query(func.count(Request.id))
        .filter(Request.request_code.like(f"{prefix}%"))
        .scalar()
    ) or 0

    seq = count + 1 + offset
    return f"{prefix}{seq:04d}"
