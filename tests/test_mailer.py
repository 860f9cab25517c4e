import json

import httpx
import pytest

from authgate.errors import DeliveryError
from authgate.mailer import BREVO_SEND_URL, BrevoMailer, LogMailer, render_verification_email


def test_rendered_email_contains_code_and_escapes_name():
    html = render_verification_email("<Alice>", "042137", "Insights", 10)

    assert "042137" in html
    assert "&lt;Alice&gt;" in html
    assert "10 minutes" in html


class TestBrevoMailer:
    async def test_posts_transactional_email(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["key"] = request.headers["api-key"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(201, json={"messageId": "m-1"})

        mailer = BrevoMailer(
            api_key="brevo-key",
            from_email="no-reply@insights.example",
            from_name="Insights",
            app_name="Insights",
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        await mailer.send_verification("a@x.com", "Alice", "123456")

        assert captured["url"] == BREVO_SEND_URL
        assert captured["key"] == "brevo-key"
        assert captured["body"]["to"] == [{"email": "a@x.com", "name": "Alice"}]
        assert captured["body"]["sender"]["email"] == "no-reply@insights.example"
        assert "123456" in captured["body"]["htmlContent"]

    async def test_transport_failure_raises_delivery_error(self):
        mailer = BrevoMailer(
            api_key="k",
            from_email="f@x",
            from_name="F",
            app_name="A",
            client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(400))),
        )

        with pytest.raises(DeliveryError) as exc_info:
            await mailer.send_verification("a@x.com", "Alice", "123456")
        assert exc_info.value.status_code == 500
        assert exc_info.value.to_dict() == {"error": "Failed to send verification code"}


async def test_log_mailer_accepts_anything():
    await LogMailer().send_verification("a@x.com", "Alice", "123456")
