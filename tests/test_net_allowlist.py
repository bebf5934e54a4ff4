from __future__ import annotations

import pytest

from src.core import net
from src.core.errors import ProviderError


def test_allowed_outbound_hosts_default_is_schwab_api(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ALLOWED_OUTBOUND_HOSTS", raising=False)
    assert net.allowed_outbound_hosts() == {"api.schwabapi.com"}


def test_allowed_outbound_hosts_normalizes_url_path_and_port(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(
        "ALLOWED_OUTBOUND_HOSTS",
        "https://api.schwabapi.com/trader/v1/,sandbox.schwabapi.com:443,API.SCHWABAPI.COM/v1/oauth/token",
    )
    assert net.allowed_outbound_hosts() == {"api.schwabapi.com", "sandbox.schwabapi.com"}


def test_assert_url_allowed_mentions_override_when_env_set(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ALLOWED_OUTBOUND_HOSTS", "sandbox.schwabapi.com")
    with pytest.raises(ProviderError) as e:
        net.assert_url_allowed("https://api.schwabapi.com/trader/v1/accounts")
    assert "overrides defaults" in str(e.value)


def test_plain_http_is_blocked(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ALLOWED_OUTBOUND_HOSTS", raising=False)
    with pytest.raises(ProviderError):
        net.assert_url_allowed("http://api.schwabapi.com/trader/v1/accounts")


def test_http_request_refuses_when_network_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NETWORK_ENABLED", "0")
    with pytest.raises(ProviderError) as e:
        net.http_request("https://api.schwabapi.com/trader/v1/accounts")
    assert "Network disabled" in str(e.value)


def test_http_response_ok_range() -> None:
    assert net.HttpResponse(status_code=204, content=b"").ok
    assert not net.HttpResponse(status_code=404, content=b"nope").ok
    assert net.HttpResponse(status_code=200, content="é".encode("utf-8")).text() == "é"
