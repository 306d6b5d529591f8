"""
Current-entry selection over pin index rows.

The pin index gives no documented ordering guarantee, so recency is
resolved here from the metadata each pin carries.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from vault.app.core.config import LatestPolicy
from vault.app.utils.timestamps import parse_timestamp

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def pin_time(row: Dict[str, Any], time_key: str) -> Optional[datetime]:
    """
    Creation time of a pin: the `time_key` metadata tag if parseable,
    else the service-side pin date.
    """
    metadata = row.get("metadata") or {}
    keyvalues = metadata.get("keyvalues") or {}
    return parse_timestamp(keyvalues.get(time_key)) or parse_timestamp(
        row.get("date_pinned")
    )


def select_current_pin(
    rows: List[Dict[str, Any]],
    *,
    policy: LatestPolicy,
    time_key: str = "timestamp",
) -> Optional[Dict[str, Any]]:
    """
    Pick the current row.

    Under TIMESTAMP the newest row wins. Ties, and rows with no usable
    time, fall back to the index order (earlier position wins).
    """
    if not rows:
        return None

    if policy == LatestPolicy.INDEX_ORDER:
        return rows[0]

    def sort_key(item: tuple[int, Dict[str, Any]]) -> tuple:
        index, row = item
        when = pin_time(row, time_key)
        return (when is not None, when or _EPOCH, -index)

    return max(enumerate(rows), key=sort_key)[1]
