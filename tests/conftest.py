from __future__ import annotations

import pytest

from fakes import Script


@pytest.fixture
def script() -> Script:
    return Script()
