"""Tests for the bot mitigation decision table."""

import asyncio

import httpx
import pytest

from authgate.config import Settings
from authgate.service.recaptcha import (
    REASON_ACTION_MISMATCH,
    REASON_API_UNAVAILABLE,
    REASON_CONFIG_ERROR,
    REASON_LOW_SCORE,
    REASON_MISSING_TOKEN,
    REASON_VERIFICATION_FAILED,
    BotMitigationGateway,
)


def _settings(**overrides):
    values = {
        "session_secret": "x" * 40,
        "recaptcha_enabled": True,
        "recaptcha_secret_key": "server-secret",
        "recaptcha_site_key": "site-key",
    }
    values.update(overrides)
    return Settings(**values)


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _json_handler(payload, status_code=200, seen=None):
    def handler(request):
        if seen is not None:
            seen.append(request)
        return httpx.Response(status_code, json=payload)

    return handler


def _outcomes(audit_sink):
    return [entry["outcome"] for entry in audit_sink.of_type("recaptcha_verification")]


class TestDecisionTable:
    async def test_disabled_always_succeeds(self, audit, audit_sink):
        def handler(request):
            raise AssertionError("no network call expected")

        gateway = BotMitigationGateway(
            _settings(recaptcha_enabled=False, recaptcha_secret_key=""),
            audit=audit,
            client=_client(handler),
        )
        for token in ("", None, "anything"):
            result = await gateway.verify(token, "login")
            assert result.success is True
            assert result.score == 1.0
        assert _outcomes(audit_sink) == ["RECAPTCHA_SKIPPED"] * 3

    async def test_missing_secret_is_config_error(self, audit, audit_sink):
        gateway = BotMitigationGateway(_settings(recaptcha_secret_key=""), audit=audit)
        result = await gateway.verify("token", "login")
        assert not result.success
        assert result.reason == REASON_CONFIG_ERROR
        entry = audit_sink.of_type("recaptcha_verification")[0]
        assert entry["outcome"] == "RECAPTCHA_CONFIG_ERROR"
        assert entry["severity"] == "ERROR"

    @pytest.mark.parametrize("token", ["", "   ", None])
    async def test_blank_token(self, token, audit, audit_sink):
        gateway = BotMitigationGateway(_settings(), audit=audit)
        result = await gateway.verify(token, "login")
        assert not result.success
        assert result.reason == REASON_MISSING_TOKEN
        assert _outcomes(audit_sink) == ["RECAPTCHA_MISSING_TOKEN"]

    async def test_non_ok_status_is_unavailable(self, audit, audit_sink):
        gateway = BotMitigationGateway(
            _settings(), audit=audit, client=_client(_json_handler({}, status_code=503))
        )
        result = await gateway.verify("token", "login")
        assert result.reason == REASON_API_UNAVAILABLE
        assert audit_sink.of_type("recaptcha_verification")[0]["status"] == 503

    async def test_transport_error_fails_closed(self, audit, audit_sink):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        gateway = BotMitigationGateway(_settings(), audit=audit, client=_client(handler))
        result = await gateway.verify("token", "login")
        assert not result.success
        assert result.reason == REASON_API_UNAVAILABLE
        assert _outcomes(audit_sink) == ["RECAPTCHA_API_ERROR"]

    async def test_timeout_fails_closed(self, audit, audit_sink):
        async def handler(request):
            await asyncio.sleep(1)
            return httpx.Response(200, json={"success": True, "score": 0.9})

        gateway = BotMitigationGateway(
            _settings(recaptcha_timeout_seconds=0.05), audit=audit, client=_client(handler)
        )
        result = await gateway.verify("token", "login")
        assert not result.success
        assert result.reason == REASON_API_UNAVAILABLE

    async def test_remote_failure_propagates_error_codes(self, audit, audit_sink):
        payload = {"success": False, "error-codes": ["invalid-input-response"]}
        gateway = BotMitigationGateway(
            _settings(), audit=audit, client=_client(_json_handler(payload))
        )
        result = await gateway.verify("token", "login")
        assert result.reason == REASON_VERIFICATION_FAILED
        assert result.error_codes == ["invalid-input-response"]

    async def test_action_mismatch(self, audit, audit_sink):
        payload = {"success": True, "score": 0.9, "action": "forgot_password"}
        gateway = BotMitigationGateway(
            _settings(), audit=audit, client=_client(_json_handler(payload))
        )
        result = await gateway.verify("token", "login")
        assert result.reason == REASON_ACTION_MISMATCH
        assert _outcomes(audit_sink) == ["RECAPTCHA_ACTION_MISMATCH"]

    async def test_action_not_checked_without_expectation(self, audit):
        payload = {"success": True, "score": 0.9, "action": "anything"}
        gateway = BotMitigationGateway(
            _settings(), audit=audit, client=_client(_json_handler(payload))
        )
        assert (await gateway.verify("token")).success

    async def test_low_score(self, audit, audit_sink):
        payload = {"success": True, "score": 0.3, "action": "login"}
        gateway = BotMitigationGateway(
            _settings(), audit=audit, client=_client(_json_handler(payload))
        )
        result = await gateway.verify("token", "login")
        assert result.reason == REASON_LOW_SCORE
        assert result.score == 0.3
        entry = audit_sink.of_type("recaptcha_verification")[0]
        assert entry["threshold"] == 0.5

    async def test_custom_threshold(self, audit):
        payload = {"success": True, "score": 0.6, "action": "login"}
        gateway = BotMitigationGateway(
            _settings(recaptcha_score_threshold=0.7),
            audit=audit,
            client=_client(_json_handler(payload)),
        )
        assert (await gateway.verify("token", "login")).reason == REASON_LOW_SCORE

    async def test_success_posts_form_and_returns_score(self, audit, audit_sink):
        seen = []
        payload = {"success": True, "score": 0.9, "action": "login", "hostname": "forum.test"}
        gateway = BotMitigationGateway(
            _settings(), audit=audit, client=_client(_json_handler(payload, seen=seen))
        )
        result = await gateway.verify(" token-value ", "login")

        assert result.success
        assert result.score == 0.9
        assert result.action == "login"
        request = seen[0]
        assert str(request.url) == "https://www.google.com/recaptcha/api/siteverify"
        assert request.headers["content-type"] == "application/x-www-form-urlencoded"
        assert request.content == b"secret=server-secret&response=token-value"
        assert _outcomes(audit_sink) == ["RECAPTCHA_VERIFY"]

    async def test_every_branch_emits_exactly_one_entry(self, audit, audit_sink):
        payload = {"success": True, "score": 0.1, "action": "login"}
        gateway = BotMitigationGateway(
            _settings(), audit=audit, client=_client(_json_handler(payload))
        )
        await gateway.verify("token", "login")
        await gateway.verify("", "login")
        assert len(audit_sink.entries) == 2


def test_public_config_hides_site_key_when_disabled():
    enabled = BotMitigationGateway(_settings())
    disabled = BotMitigationGateway(_settings(recaptcha_enabled=False))
    assert enabled.public_config() == {"enabled": True, "siteKey": "site-key"}
    assert disabled.public_config() == {"enabled": False, "siteKey": ""}
