from __future__ import annotations

import pytest

from ragengine.cache import clear_memory_cache


@pytest.fixture(autouse=True)
def _clear_retrieval_cache():
    clear_memory_cache()
    yield
    clear_memory_cache()
