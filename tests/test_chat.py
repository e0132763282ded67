import json
import threading
import time

import httpx
import pytest

from core.cancel import CancellationToken
from engine.chat import ChatRelay, extract_reply, sanitize_content
from samples import CHANNEL_REPLY


def completion(content, key="message"):
    return {"choices": [{key: {"role": "assistant", "content": content}}]}


def relay_for(handler, **kwargs):
    return ChatRelay(base_url="http://127.0.0.1:5273/", transport=httpx.MockTransport(handler), **kwargs)


class TestSanitize:
    def test_final_channel_only(self):
        assert sanitize_content(CHANNEL_REPLY) == "The answer is 4."

    def test_end_marker_terminates(self):
        text = "<|channel|>final<|message|>Done.<|end|><|start|>assistant"
        assert sanitize_content(text) == "Done."

    def test_unterminated_final(self):
        assert sanitize_content("<|channel|>final<|message|>  tail text ") == "tail text"

    def test_markers_without_final_are_stripped(self):
        text = "<|start|>assistant<|message|>Hello there<|end|>"
        assert sanitize_content(text) == "assistantHello there"

    def test_plain_text_is_trimmed(self):
        assert sanitize_content("  plain reply \n") == "plain reply"

    def test_empty(self):
        assert sanitize_content(None) == ""


class TestExtractReply:
    def test_message_content(self):
        assert extract_reply(completion("hi")) == "hi"

    def test_delta_fallback(self):
        assert extract_reply(completion("streamed", key="delta")) == "streamed"

    @pytest.mark.parametrize("payload", [{}, {"choices": []}, {"choices": [{}]}, [], None])
    def test_missing(self, payload):
        assert extract_reply(payload) is None


class TestSendChat:
    def test_request_shape_and_reply(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=completion(CHANNEL_REPLY))

        relay = relay_for(handler, api_key="secret", max_tokens=512)
        relay.bind_resolver(lambda alias, token: "phi-4-mini-generic-cpu")
        result = relay.send_chat("phi-4-mini", [{"role": "user", "content": "2+2?"}], temperature=0.2)

        assert result.ok
        assert result.text == "The answer is 4."
        assert seen["url"] == "http://127.0.0.1:5273/v1/chat/completions"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"] == {
            "model": "phi-4-mini-generic-cpu",
            "messages": [{"role": "user", "content": "2+2?"}],
            "temperature": 0.2,
            "max_tokens": 512,
            "stream": False,
        }

    def test_resolver_failure_falls_back_to_alias(self):
        models = []

        def handler(request):
            models.append(json.loads(request.content)["model"])
            return httpx.Response(200, json=completion("ok"))

        def broken(alias, token):
            raise RuntimeError("service list failed")

        relay = relay_for(handler)
        relay.bind_resolver(broken)
        assert relay.send_chat("qwen2.5", [{"role": "user", "content": "hi"}]).ok
        relay.bind_resolver(lambda alias, token: None)
        assert relay.send_chat("qwen2.5", [{"role": "user", "content": "hi"}]).ok
        assert models == ["qwen2.5", "qwen2.5"]

    @pytest.mark.parametrize(
        "exc, kind",
        [
            (httpx.ReadTimeout("slow"), "timeout"),
            (httpx.ConnectError("refused"), "connection"),
            (httpx.RemoteProtocolError("peer closed"), "interrupted"),
            (httpx.ReadError("reset"), "interrupted"),
        ],
    )
    def test_transport_failures_are_classified(self, exc, kind):
        def handler(request):
            raise exc

        result = relay_for(handler).send_chat("phi-4", [{"role": "user", "content": "hi"}])
        assert not result.ok
        assert result.error_kind == kind
        assert result.text

    def test_distinct_messages_per_kind(self):
        texts = set()
        for exc in (httpx.ReadTimeout("t"), httpx.ConnectError("c"), httpx.ReadError("r")):
            def handler(request, exc=exc):
                raise exc
            texts.add(relay_for(handler).send_chat("m", [{"role": "user", "content": "x"}]).text)
        assert len(texts) == 3

    def test_http_status(self):
        result = relay_for(lambda request: httpx.Response(500, text="model crashed")).send_chat(
            "phi-4", [{"role": "user", "content": "hi"}]
        )
        assert (result.ok, result.error_kind, result.status_code) == (False, "http", 500)
        assert "model crashed" in result.text

    def test_malformed_body(self):
        result = relay_for(lambda request: httpx.Response(200, text="not json")).send_chat(
            "phi-4", [{"role": "user", "content": "hi"}]
        )
        assert result.error_kind == "protocol"

    def test_missing_content(self):
        result = relay_for(lambda request: httpx.Response(200, json={"choices": []})).send_chat(
            "phi-4", [{"role": "user", "content": "hi"}]
        )
        assert result.error_kind == "protocol"

    def test_no_base_url(self):
        relay = ChatRelay(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        result = relay.send_chat("phi-4", [{"role": "user", "content": "hi"}])
        assert result.error_kind == "connection"

    def test_cancel_before_send(self):
        token = CancellationToken()
        token.cancel()
        result = relay_for(lambda request: httpx.Response(200, json=completion("x"))).send_chat(
            "phi-4", [{"role": "user", "content": "hi"}], token=token
        )
        assert result.error_kind == "cancelled"

    def test_cancel_aborts_a_stalled_reply(self, stalled_server):
        relay = ChatRelay(base_url=stalled_server, chat_timeout=30)
        token = CancellationToken()
        threading.Timer(0.5, token.cancel).start()

        started = time.monotonic()
        result = relay.send_chat("phi-4", [{"role": "user", "content": "hi"}], token=token)

        assert result.error_kind == "cancelled"
        assert time.monotonic() - started < 5


class TestServiceQueries:
    def test_health_and_listing(self, models_endpoint):
        relay, hits, state = models_endpoint
        relay.set_base_url("http://127.0.0.1:5273///")
        assert relay.base_url == "http://127.0.0.1:5273"
        assert relay.health_ok()
        assert relay.list_models() == ["Phi-4-mini-instruct-generic-cpu"]
        state["status"] = 503
        assert not relay.health_ok()
        assert relay.list_models() == []
        assert hits == ["/v1/models"] * 4

    def test_health_without_url(self, models_endpoint):
        relay, hits, _ = models_endpoint
        assert not relay.health_ok()
        assert hits == []

    def test_health_on_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        assert not relay_for(handler).health_ok()


class TestStalledService:
    def test_health_check_gives_up_on_cancel(self, stalled_server):
        relay = ChatRelay(base_url=stalled_server, health_timeout=30)
        token = CancellationToken()
        threading.Timer(0.3, token.cancel).start()

        started = time.monotonic()
        assert not relay.health_ok(token=token)
        assert time.monotonic() - started < 5

    def test_listing_gives_up_on_cancel(self, stalled_server):
        relay = ChatRelay(base_url=stalled_server)
        token = CancellationToken()
        threading.Timer(0.3, token.cancel).start()

        started = time.monotonic()
        assert relay.list_models(token=token) == []
        assert time.monotonic() - started < 5

    def test_reply_after_cancel_window_still_arrives(self):
        token = CancellationToken()
        relay = relay_for(lambda request: httpx.Response(200, json=completion("late but fine")))
        result = relay.send_chat("phi-4", [{"role": "user", "content": "hi"}], token=token)
        assert result.ok
        assert result.text == "late but fine"
