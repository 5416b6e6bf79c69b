from types import SimpleNamespace
from unittest.mock import patch

import httpx
import pytest

from app.services.channels import ChannelDeliveryError, send_channel_message


class TestChannelGateway:
    def _patched(self, handler):
        real_client = httpx.Client

        def _client(**kwargs):
            return real_client(transport=httpx.MockTransport(handler), **kwargs)

        config = SimpleNamespace(
            channel_gateway_url="https://gateway.example/",
            channel_gateway_token="secret",
            channel_gateway_timeout_seconds=5.0,
        )
        return (
            patch("app.services.channels.settings", config),
            patch("app.services.channels.httpx.Client", _client),
        )

    def test_posts_to_channel_endpoint(self) -> None:
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(202)

        settings_patch, client_patch = self._patched(handler)
        with settings_patch, client_patch:
            send_channel_message("sms", ["+911234567890"], "compliance.overdue", {"a": 1})

        assert str(seen[0].url) == "https://gateway.example/messages/sms"
        assert seen[0].headers["Authorization"] == "Bearer secret"

    def test_error_status_raises(self) -> None:
        settings_patch, client_patch = self._patched(lambda request: httpx.Response(503))

        with settings_patch, client_patch:
            with pytest.raises(ChannelDeliveryError):
                send_channel_message("email", ["a@b.example"], "t", {})

    def test_without_gateway_only_logs(self) -> None:
        with patch(
            "app.services.channels.settings", SimpleNamespace(channel_gateway_url="")
        ):
            send_channel_message("email", ["a@b.example"], "t", {})
