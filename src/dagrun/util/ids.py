"""Run id helpers."""

import re
from datetime import datetime
from secrets import token_hex

_RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_RUN_ID_MAX_LEN = 128


def new_run_id(now: datetime) -> str:
    """Create run id: YYYYMMDD_HHMMSS_<6 hex chars>."""
    return f"{now.strftime('%Y%m%d_%H%M%S')}_{token_hex(3)}"


def is_valid_run_id(run_id: str) -> bool:
    return len(run_id) <= _RUN_ID_MAX_LEN and _RUN_ID_PATTERN.fullmatch(run_id) is not None
