import asyncio

import pytest

from authgate.codes import VerificationCodeService
from authgate.storage import InMemoryStore


class Clock:
    def __init__(self, now: int = 1_700_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def mem_store():
    return InMemoryStore()


@pytest.fixture
def service(mem_store, clock):
    return VerificationCodeService(mem_store, ttl_seconds=600, length=6, clock=clock)


class TestCodeGeneration:
    def test_codes_are_fixed_width_digits(self, service):
        for _ in range(200):
            code = service.generate_code()
            assert len(code) == 6
            assert code.isdigit()

    def test_short_codes_are_refused(self, mem_store):
        with pytest.raises(ValueError):
            VerificationCodeService(mem_store, length=3)

    async def test_issue_stores_expiry_from_now(self, service, mem_store, clock):
        code = await service.issue("a@x.com")

        rec = await mem_store.get_code("a@x.com")
        assert rec.code == code
        assert rec.expires_at == clock.now + 600


class TestCodeVerification:
    async def test_correct_code_verifies_once(self, service):
        code = await service.issue("a@x.com")

        assert await service.verify("a@x.com", code) is True
        assert await service.verify("a@x.com", code) is False

    async def test_unknown_email_fails(self, service):
        assert await service.verify("nobody@x.com", "123456") is False

    async def test_wrong_code_fails_and_keeps_record(self, service, mem_store):
        code = await service.issue("a@x.com")
        wrong = "000000" if code != "000000" else "111111"

        assert await service.verify("a@x.com", wrong) is False
        assert await mem_store.get_code("a@x.com") is not None
        assert await service.verify("a@x.com", code) is True

    async def test_reissue_invalidates_previous_code(self, service, monkeypatch):
        codes = iter(["111111", "222222"])
        monkeypatch.setattr(service, "generate_code", lambda: next(codes))

        first = await service.issue("a@x.com")
        second = await service.issue("a@x.com")

        assert await service.verify("a@x.com", first) is False
        assert await service.verify("a@x.com", second) is True

    async def test_code_valid_at_exact_expiry(self, service, clock):
        code = await service.issue("a@x.com")
        clock.now += 600

        assert await service.verify("a@x.com", code) is True

    async def test_expired_code_fails_and_is_purged(self, service, mem_store, clock):
        code = await service.issue("a@x.com")
        clock.now += 601

        assert await service.verify("a@x.com", code) is False
        assert await mem_store.get_code("a@x.com") is None

    async def test_comparison_is_exact(self, service, monkeypatch):
        monkeypatch.setattr(service, "generate_code", lambda: "012345")
        await service.issue("a@x.com")

        assert await service.verify("a@x.com", "12345") is False
        assert await service.verify("a@x.com", "012345 ") is False
        assert await service.verify("a@x.com", "012345") is True

    async def test_concurrent_correct_submissions_succeed_once(self, service):
        code = await service.issue("a@x.com")

        results = await asyncio.gather(*(service.verify("a@x.com", code) for _ in range(5)))

        assert results.count(True) == 1
