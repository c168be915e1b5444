import asyncio
import time

import pytest

from ojekkampus.service.deadlines import call_with_deadline, run_with_deadline
from ojekkampus.service.errors import ServiceTimeoutError


async def test_call_returns_value_within_deadline():
    result = await call_with_deadline(lambda a, b=0: a + b, 2, b=3, timeout=1.0, operation="add")
    assert result == 5


async def test_call_raises_timeout_with_detail():
    with pytest.raises(ServiceTimeoutError) as exc_info:
        await call_with_deadline(time.sleep, 0.5, timeout=0.05, operation="get_user")
    assert exc_info.value.status_code == 504
    assert exc_info.value.message == "get_user timed out"
    assert exc_info.value.detail == {"operation": "get_user", "timeout": 0.05}


async def test_zero_timeout_means_unbounded():
    assert await call_with_deadline(lambda: "ok", timeout=0, operation="noop") == "ok"


async def test_run_with_deadline():
    async def slow():
        await asyncio.sleep(0.5)

    assert await run_with_deadline(asyncio.sleep(0, result=1), None, "fast") == 1
    with pytest.raises(ServiceTimeoutError) as exc_info:
        await run_with_deadline(slow(), 0.05, "refresh")
    assert exc_info.value.detail["operation"] == "refresh"
