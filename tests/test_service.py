"""Tests for the gate service lifecycle and identity-header handling."""

from __future__ import annotations

import asyncio
import functools
import os
import signal
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

from cloudflare_gate import service as service_mod
from cloudflare_gate.access.verifier import AccessIdentity
from cloudflare_gate.config.schema import TunnelConfig
from cloudflare_gate.service import GateService, first_header_value
from cloudflare_gate.tunnel import exposure as exposure_mod
from cloudflare_gate.tunnel.connector import start_connector

STUB = os.path.join(os.path.dirname(os.path.dirname(__file__)), "mods", "fake_cloudflared.py")


def _messages(method: MagicMock) -> list:
    return [c.args[0] % c.args[1:] for c in method.call_args_list]


@pytest.fixture()
def log() -> MagicMock:
    return MagicMock()


@pytest.fixture()
def exposure(monkeypatch: pytest.MonkeyPatch) -> AsyncMock:
    start = AsyncMock(return_value=None)
    monkeypatch.setattr(service_mod, "start_exposure", start)
    return start


@pytest.fixture()
def verifier(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    mock_verifier = MagicMock()
    mock_verifier.verify = AsyncMock(return_value=AccessIdentity(email="alice@example.com"))
    mock_verifier.close = AsyncMock()
    factory = MagicMock(return_value=mock_verifier)
    monkeypatch.setattr(service_mod, "create_access_verifier", factory)
    mock_verifier.factory = factory
    return mock_verifier


def _managed(**kwargs) -> TunnelConfig:
    kwargs.setdefault("mode", "managed")
    kwargs.setdefault("tunnel_token", "tok")
    kwargs.setdefault("team_domain", "myteam")
    return TunnelConfig(**kwargs)


class TestFirstHeaderValue:
    def test_values(self) -> None:
        assert first_header_value(None) is None
        assert first_header_value("") is None
        assert first_header_value("jwt") == "jwt"
        assert first_header_value(["first-jwt", "second-jwt"]) == "first-jwt"
        assert first_header_value([]) is None

    def test_only_first_value_counts(self) -> None:
        assert first_header_value(["", "second-jwt"]) is None
        assert first_header_value(("first-jwt", "")) == "first-jwt"


class TestConfigRules:
    def test_off_is_inactive(self, log, exposure) -> None:
        svc = GateService(TunnelConfig(mode="off"), logger=log)
        assert not svc.active
        asyncio.run(svc.start())
        exposure.assert_not_called()
        assert not log.method_calls

    def test_managed_without_token(self, log, exposure) -> None:
        svc = GateService(TunnelConfig(mode="managed"), logger=log)
        assert not svc.active
        assert any("managed mode requires tunnel_token" in m for m in _messages(log.error))
        asyncio.run(svc.start())
        exposure.assert_not_called()

    def test_warns_without_team_domain(self, log) -> None:
        svc = GateService(TunnelConfig(mode="access-only"), logger=log)
        assert svc.active
        assert any("no team_domain configured" in m for m in _messages(log.warning))

    def test_managed_warns_without_team_domain(self, log) -> None:
        GateService(_managed(team_domain=None), logger=log)
        assert any("no team_domain configured" in m for m in _messages(log.warning))


class TestLifecycle:
    def test_start_creates_verifier(self, log, exposure, verifier) -> None:
        svc = GateService(_managed(audience="my-aud", start_timeout=7.0), logger=log)
        asyncio.run(svc.start())
        verifier.factory.assert_called_once_with("myteam", "my-aud", leeway=30.0)
        assert svc.verifier is verifier
        assert any("myteam.cloudflareaccess.com" in m for m in _messages(log.info))
        exposure.assert_awaited_once()
        args, kwargs = exposure.call_args
        assert args[:2] == ("managed", "tok")
        assert kwargs["timeout"] == 7.0

    def test_start_without_team_domain(self, log, exposure, verifier) -> None:
        svc = GateService(_managed(team_domain=None), logger=log)
        asyncio.run(svc.start())
        verifier.factory.assert_not_called()
        assert svc.verifier is None
        exposure.assert_awaited_once()

    def test_stop_calls_tunnel_stop_and_clears_verifier(self, log, exposure, verifier) -> None:
        tunnel_stop = AsyncMock()
        exposure.return_value = tunnel_stop
        svc = GateService(_managed(), logger=log)

        async def _run():
            await svc.start()
            assert svc.tunnel_running
            await svc.stop()

        asyncio.run(_run())
        tunnel_stop.assert_awaited_once()
        verifier.close.assert_awaited_once()
        assert svc.verifier is None
        assert not svc.tunnel_running

    def test_stop_without_tunnel_is_safe(self, log, exposure) -> None:
        svc = GateService(TunnelConfig(mode="access-only", team_domain="myteam"), logger=log)

        async def _run():
            await svc.start()
            await svc.stop()
            await svc.stop()

        asyncio.run(_run())

    def test_start_twice_exposes_once(self, log, exposure, verifier) -> None:
        svc = GateService(_managed(), logger=log)

        async def _run():
            await svc.start()
            await svc.start()

        asyncio.run(_run())
        exposure.assert_awaited_once()


class TestStopWhileStarting:
    def test_stop_cancels_pending_exposure(self, log, exposure, verifier) -> None:
        cancelled = []

        async def _hang(*args, **kwargs):
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        exposure.side_effect = _hang
        svc = GateService(_managed(), logger=log)

        async def _run():
            starting = asyncio.ensure_future(svc.start())
            await asyncio.sleep(0.05)
            await svc.stop()
            await starting

        asyncio.run(_run())
        assert cancelled == [True]
        assert not svc.started
        assert not svc.tunnel_running
        verifier.close.assert_awaited_once()

    def test_tunnel_finishing_during_stop_is_stopped(self, log, exposure) -> None:
        tunnel_stop = AsyncMock()

        async def _finish_anyway(*args, **kwargs):
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                pass
            return tunnel_stop

        exposure.side_effect = _finish_anyway
        svc = GateService(_managed(team_domain=None), logger=log)

        async def _run():
            starting = asyncio.ensure_future(svc.start())
            await asyncio.sleep(0.05)
            await svc.stop()
            await starting

        asyncio.run(_run())
        tunnel_stop.assert_awaited_once()
        assert not svc.tunnel_running

    def test_caller_cancelling_start_propagates(self, log, exposure) -> None:
        async def _hang(*args, **kwargs):
            await asyncio.sleep(30)

        exposure.side_effect = _hang
        svc = GateService(_managed(team_domain=None), logger=log)

        async def _run():
            starting = asyncio.ensure_future(svc.start())
            await asyncio.sleep(0.05)
            starting.cancel()
            with pytest.raises(asyncio.CancelledError):
                await starting
            await svc.stop()

        asyncio.run(_run())
        assert not svc.tunnel_running

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals required")
    def test_stop_before_registration_ends_connector(self, log, monkeypatch) -> None:
        spawned = []
        real_exec = asyncio.create_subprocess_exec

        async def _exec(*args, **kwargs):
            proc = await real_exec(*args, **kwargs)
            spawned.append(proc)
            return proc

        monkeypatch.setattr(asyncio, "create_subprocess_exec", _exec)
        monkeypatch.setattr(
            exposure_mod,
            "start_connector",
            functools.partial(
                start_connector,
                args=[STUB, "register", "0.5", "tunnel", "run"],
                grace=0.5,
            ),
        )
        svc = GateService(_managed(team_domain=None, binary=sys.executable), logger=log)

        async def _run():
            starting = asyncio.ensure_future(svc.start())
            await asyncio.sleep(0.2)
            await svc.stop()
            await starting
            return svc.tunnel_running, svc.started

        assert asyncio.run(_run()) == (False, False)
        assert len(spawned) == 1
        assert spawned[0].returncode == -signal.SIGTERM


class TestApplyIdentity:
    def test_strips_spoofed_headers_without_verifier(self, log, exposure) -> None:
        svc = GateService(_managed(team_domain=None), logger=log)
        headers = {
            "x-auth-user-email": "spoofed@evil.com",
            "x-auth-source": "spoofed",
            "cf-access-jwt-assertion": "some-jwt",
        }
        assert asyncio.run(svc.apply_identity(headers)) is False
        assert "x-auth-user-email" not in headers
        assert "x-auth-source" not in headers

    def test_strips_spoofed_headers_before_setting_verified(self, log, exposure, verifier) -> None:
        verifier.verify.return_value = AccessIdentity(email="real@example.com")
        svc = GateService(_managed(), logger=log)
        headers = {
            "cf-access-jwt-assertion": "valid-jwt",
            "x-auth-user-email": "spoofed@evil.com",
            "x-auth-source": "spoofed",
        }

        async def _run():
            await svc.start()
            return await svc.apply_identity(headers)

        assert asyncio.run(_run()) is True
        assert headers["x-auth-user-email"] == "real@example.com"
        assert headers["x-auth-source"] == "cloudflare-access"

    def test_no_token_skips_verification(self, log, exposure, verifier) -> None:
        svc = GateService(_managed(), logger=log)
        headers: dict = {}

        async def _run():
            await svc.start()
            return await svc.apply_identity(headers)

        assert asyncio.run(_run()) is False
        verifier.verify.assert_not_called()
        assert headers == {}

    def test_invalid_token_sets_nothing(self, log, exposure, verifier) -> None:
        verifier.verify.return_value = None
        svc = GateService(_managed(), logger=log)
        headers = {"cf-access-jwt-assertion": "bad-jwt", "x-auth-source": "spoofed"}

        async def _run():
            await svc.start()
            return await svc.apply_identity(headers)

        assert asyncio.run(_run()) is False
        assert "x-auth-user-email" not in headers
        assert "x-auth-source" not in headers

    def test_repeated_header_uses_first_value(self, log, exposure, verifier) -> None:
        verifier.verify.return_value = AccessIdentity(email="bob@example.com")
        svc = GateService(_managed(), logger=log)
        headers = {"cf-access-jwt-assertion": ["first-jwt", "second-jwt"]}

        async def _run():
            await svc.start()
            return await svc.apply_identity(headers)

        assert asyncio.run(_run()) is True
        verifier.verify.assert_awaited_once_with("first-jwt")
        assert headers["x-auth-user-email"] == "bob@example.com"
