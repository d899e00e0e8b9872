"""UTC timezone enforcement.

Sets the TZ environment variable to UTC and provides the single clock used by
every component. All timestamp columns are ``TIMESTAMP WITHOUT TIME ZONE`` holding
UTC wall time, so ``utcnow()`` returns a naive UTC datetime.
"""

import os
from datetime import datetime, timezone

# Set UTC timezone for the entire application
os.environ["TZ"] = "UTC"


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
