import pytest

from wowziri.service.runtime import Runtime, check_rate_limit, _mask_url_password


@pytest.fixture
def runtime(settings, outbox):
    return Runtime(settings, email_transport=outbox)


@pytest.mark.asyncio
async def test_bucket_allows_limit_then_blocks(runtime):
    results = [await check_rate_limit(runtime, "login:ada@example.com", 3) for _ in range(4)]

    assert results == [True, True, True, False]


@pytest.mark.asyncio
async def test_remaining_and_reset_reported(runtime):
    first = await check_rate_limit(runtime, "signup:k", 2, 60, return_remaining=True)
    await check_rate_limit(runtime, "signup:k", 2, 60)
    blocked = await check_rate_limit(runtime, "signup:k", 2, 60, return_remaining=True)

    assert first == (True, 1, 0)
    allowed, remaining, reset_seconds = blocked
    assert allowed is False
    assert remaining == 0
    assert 1 <= reset_seconds <= 31


@pytest.mark.asyncio
async def test_keys_are_independent(runtime):
    await check_rate_limit(runtime, "verify:a", 1)

    assert await check_rate_limit(runtime, "verify:a", 1) is False
    assert await check_rate_limit(runtime, "verify:b", 1) is True


@pytest.mark.asyncio
async def test_non_positive_limit_disables_check(runtime):
    assert await check_rate_limit(runtime, "chat:x", 0) is True
    assert await check_rate_limit(runtime, "chat:x", 0, return_remaining=True) == (True, 0, 0)


@pytest.mark.parametrize(
    "url, expected",
    [
        ("postgresql://app:hunter2@db:5432/wowziri", "postgresql://app:***@db:5432/wowziri"),
        ("postgresql://db/wowziri", "postgresql://db/wowziri"),
        (None, None),
    ],
)
def test_mask_url_password(url, expected):
    assert _mask_url_password(url) == expected
