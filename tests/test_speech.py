"""Tests for the ElevenLabs speech proxy."""
import json

import httpx
import pytest

from speech import SpeechSynthesisProxy, SynthesisFailure, SynthesizedAudio
from voices import Voice

BASE_URL = "https://api.elevenlabs.io/v1"


def proxy_with(handler, config) -> SpeechSynthesisProxy:
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return SpeechSynthesisProxy(config, "xi-test", client=client)


async def test_synthesize_returns_payload_unchanged(elevenlabs_config):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, content=b"ID3\x00fake-mp3", headers={"content-type": "audio/mpeg"})

    result = await proxy_with(handler, elevenlabs_config).synthesize("Hello there")

    assert result == SynthesizedAudio(content=b"ID3\x00fake-mp3", media_type="audio/mpeg")
    assert len(requests) == 1
    sent = requests[0]
    assert sent.url.path == "/v1/text-to-speech/21m00Tcm4TlvDq8ikWAM"
    assert json.loads(sent.content) == {
        "text": "Hello there",
        "model_id": "eleven_monolingual_v1",
        "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
    }


async def test_content_type_is_passed_through(elevenlabs_config):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"RIFF", headers={"content-type": "audio/wav"})

    result = await proxy_with(handler, elevenlabs_config).synthesize("hi")

    assert result.media_type == "audio/wav"


async def test_provider_error_detail_is_extracted(elevenlabs_config):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(400, json={"detail": {"message": "bad voice id"}})

    result = await proxy_with(handler, elevenlabs_config).synthesize("hi")

    assert result == SynthesisFailure(detail="bad voice id")
    assert len(calls) == 1  # never retried


@pytest.mark.parametrize("response, expected", [
    (httpx.Response(401, json={"detail": "invalid api key"}), "invalid api key"),
    (httpx.Response(500, content=b"<html>oops</html>"), "Speech synthesis failed"),
    (httpx.Response(422, json={"detail": [{"msg": "field required"}]}), "Speech synthesis failed"),
])
async def test_error_detail_fallbacks(response, expected, elevenlabs_config):
    result = await proxy_with(lambda request: response, elevenlabs_config).synthesize("hi")

    assert result == SynthesisFailure(detail=expected)


async def test_transport_error_is_a_failure_value(elevenlabs_config):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    result = await proxy_with(handler, elevenlabs_config).synthesize("hi")

    assert isinstance(result, SynthesisFailure)
    assert "connection refused" in result.detail


async def test_list_voices(elevenlabs_config):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/voices"
        return httpx.Response(200, json={"voices": [
            {"voice_id": "a1", "name": "Adam", "labels": {"language": "en"}},
            {"voice_id": "r1", "name": "Rachel"},
            {"name": "no id"},
        ]})

    voices = await proxy_with(handler, elevenlabs_config).list_voices()

    assert voices == [Voice("a1", "Adam", "en"), Voice("r1", "Rachel", None)]


async def test_list_voices_failure(elevenlabs_config):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"detail": {"message": "unauthorized"}})

    result = await proxy_with(handler, elevenlabs_config).list_voices()

    assert result == SynthesisFailure(detail="unauthorized")


async def test_default_client_sends_api_key_header(elevenlabs_config):
    proxy = SpeechSynthesisProxy(elevenlabs_config, "xi-secret")
    client = proxy._get_client()
    try:
        assert client.headers["xi-api-key"] == "xi-secret"
        assert str(client.base_url).rstrip("/") == BASE_URL
    finally:
        await proxy.aclose()
