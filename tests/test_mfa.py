"""Tests for one-time verification codes."""

import re
from datetime import timedelta

import pytest

from shopauth.service.errors import MfaExpired, MfaInvalidCode
from shopauth.service.mfa import CODE_LENGTH, MAX_ATTEMPTS


class TestIssue:
    async def test_code_shape(self, stack, make_user):
        user = make_user()
        code = await stack.mfa.issue(user.id)
        assert len(code) == CODE_LENGTH
        assert re.fullmatch(r"[A-Z0-9]{8}", code)

    async def test_new_code_supersedes_previous(self, stack, make_user):
        user = make_user()
        old = await stack.mfa.issue(user.id)
        new = await stack.mfa.issue(user.id)
        assert (await stack.mfa.verify(user.id, old)).status != "ok"
        assert (await stack.mfa.verify(user.id, new)).ok

    async def test_purposes_are_independent(self, stack, make_user):
        user = make_user()
        login_code = await stack.mfa.issue(user.id, purpose="login")
        recovery_code = await stack.mfa.issue(user.id, purpose="recovery")
        assert (await stack.mfa.verify(user.id, recovery_code, purpose="recovery")).ok
        assert (await stack.mfa.verify(user.id, login_code, purpose="login")).ok


class TestReissue:
    async def test_resend_supersedes_open_code(self, stack, make_user):
        user = make_user()
        old = await stack.mfa.issue(user.id)
        new = await stack.mfa.reissue(user.id)
        assert (await stack.mfa.verify(user.id, old)).status == "failed"
        assert (await stack.mfa.verify(user.id, new)).ok

    async def test_resend_restores_attempts(self, stack, make_user):
        user = make_user()
        await stack.mfa.issue(user.id)
        await stack.mfa.verify(user.id, "WRONG000")
        await stack.mfa.reissue(user.id)
        result = await stack.mfa.verify(user.id, "WRONG000")
        assert result.attempts_remaining == MAX_ATTEMPTS - 1

    async def test_timed_out_code_can_be_resent(self, stack, make_user, monkeypatch):
        user = make_user()
        await stack.mfa.issue(user.id)
        cfg = await stack.config.current()
        later = stack.mfa._now() + timedelta(seconds=cfg.otp_lifetime + 1)
        monkeypatch.setattr(stack.mfa, "_now", lambda: later)
        code = await stack.mfa.reissue(user.id)
        assert (await stack.mfa.verify(user.id, code)).ok

    async def test_no_open_challenge(self, stack, make_user):
        user = make_user()
        with pytest.raises(MfaExpired):
            await stack.mfa.reissue(user.id)

    async def test_used_code_cannot_be_resent(self, stack, make_user):
        user = make_user()
        code = await stack.mfa.issue(user.id)
        assert (await stack.mfa.verify(user.id, code)).ok
        with pytest.raises(MfaExpired):
            await stack.mfa.reissue(user.id)

    async def test_exhausted_code_cannot_be_resent(self, stack, make_user):
        user = make_user()
        await stack.mfa.issue(user.id)
        for _ in range(MAX_ATTEMPTS):
            await stack.mfa.verify(user.id, "WRONG000")
        with pytest.raises(MfaExpired):
            await stack.mfa.reissue(user.id)
        assert (await stack.mfa.verify(user.id, "WRONG000")).status == "expired"


class TestVerify:
    async def test_code_is_single_use(self, stack, make_user):
        user = make_user()
        code = await stack.mfa.issue(user.id)
        assert (await stack.mfa.verify(user.id, code)).ok
        assert (await stack.mfa.verify(user.id, code)).status == "expired"

    async def test_case_and_whitespace_tolerated(self, stack, make_user):
        user = make_user()
        code = await stack.mfa.issue(user.id)
        assert (await stack.mfa.verify(user.id, f"  {code.lower()} ")).ok

    async def test_wrong_codes_count_down(self, stack, make_user):
        user = make_user()
        code = await stack.mfa.issue(user.id)
        remaining = []
        for _ in range(MAX_ATTEMPTS):
            result = await stack.mfa.verify(user.id, "WRONG000")
            assert result.status == "failed"
            remaining.append(result.attempts_remaining)
        assert remaining == [2, 1, 0]
        # the right code no longer works once attempts are spent
        assert (await stack.mfa.verify(user.id, code)).status == "expired"

    async def test_empty_code_counts_as_wrong(self, stack, make_user):
        user = make_user()
        await stack.mfa.issue(user.id)
        result = await stack.mfa.verify(user.id, None)
        assert result.status == "failed"
        assert result.attempts_remaining == 2

    async def test_expired_by_time(self, stack, make_user, monkeypatch):
        user = make_user()
        code = await stack.mfa.issue(user.id)
        cfg = await stack.config.current()
        later = stack.mfa._now() + timedelta(seconds=cfg.otp_lifetime + 1)
        monkeypatch.setattr(stack.mfa, "_now", lambda: later)
        assert (await stack.mfa.verify(user.id, code)).status == "expired"

    async def test_no_challenge(self, stack, make_user):
        user = make_user()
        assert (await stack.mfa.verify(user.id, "ABCDEFGH")).status == "expired"


class TestVerifyOrRaise:
    async def test_success_returns_none(self, stack, make_user):
        user = make_user()
        code = await stack.mfa.issue(user.id)
        assert await stack.mfa.verify_or_raise(user.id, code) is None

    async def test_wrong_code_reports_remaining(self, stack, make_user):
        user = make_user()
        await stack.mfa.issue(user.id)
        with pytest.raises(MfaInvalidCode) as excinfo:
            await stack.mfa.verify_or_raise(user.id, "WRONG000")
        assert excinfo.value.detail["attempts_remaining"] == 2

    async def test_missing_challenge_is_expired(self, stack, make_user):
        user = make_user()
        with pytest.raises(MfaExpired):
            await stack.mfa.verify_or_raise(user.id, "ABCDEFGH", purpose="recovery")
