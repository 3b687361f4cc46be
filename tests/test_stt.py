"""
Tests for the Deepgram STT client and the transcription relay.
"""

from urllib.parse import parse_qs, urlparse

import pytest

from src.callagent.stt import DeepgramSTT, TranscriptionRelay, TranscriptionResult, build_listen_url


def _collect(relay: TranscriptionRelay):
    activity, finals = [], []

    async def on_activity(event):
        activity.append(event.text)

    async def on_final(event):
        finals.append(event.text)

    relay.activity.subscribe(on_activity)
    relay.transcripts.subscribe(on_final)
    return activity, finals


def test_listen_url_requests_mulaw_with_endpointing(config):
    url = urlparse(build_listen_url(config))
    params = {k: v[0] for k, v in parse_qs(url.query).items()}

    assert url.scheme == "wss"
    assert url.netloc == "api.deepgram.com"
    assert params["encoding"] == "mulaw"
    assert params["sample_rate"] == "8000"
    assert params["interim_results"] == "true"
    assert params["endpointing"] == str(config.deepgram_endpointing_ms)
    assert params["utterance_end_ms"] == str(config.deepgram_utterance_end_ms)


class TestTranscriptionRelay:
    @pytest.mark.asyncio
    async def test_interim_results_become_activity(self, config):
        relay = TranscriptionRelay(config)
        activity, finals = _collect(relay)

        await relay.handle_result(TranscriptionResult(text="I need", is_final=False))
        await relay.handle_result(TranscriptionResult(text="  ", is_final=False))

        assert activity == ["I need"]
        assert finals == []

    @pytest.mark.asyncio
    async def test_finals_accumulate_until_speech_final(self, config):
        relay = TranscriptionRelay(config)
        activity, finals = _collect(relay)

        await relay.handle_result(TranscriptionResult(text="I need leads", is_final=True))
        assert finals == []

        await relay.handle_result(
            TranscriptionResult(text="in Ontario.", is_final=True, speech_final=True)
        )

        assert finals == ["I need leads in Ontario."]
        assert activity == []

    @pytest.mark.asyncio
    async def test_utterance_end_flushes_pending_finals(self, config):
        relay = TranscriptionRelay(config)
        _, finals = _collect(relay)

        await relay.handle_result(TranscriptionResult(text="Do you cover Quebec", is_final=True))
        await relay.handle_utterance_end()
        await relay.handle_utterance_end()

        assert finals == ["Do you cover Quebec"]

    @pytest.mark.asyncio
    async def test_empty_speech_final_emits_nothing(self, config):
        relay = TranscriptionRelay(config)
        _, finals = _collect(relay)

        await relay.handle_result(TranscriptionResult(text="", is_final=True, speech_final=True))

        assert finals == []

    @pytest.mark.asyncio
    async def test_stop_closes_channels(self, config):
        relay = TranscriptionRelay(config)
        activity, finals = _collect(relay)

        await relay.stop()
        await relay.handle_result(TranscriptionResult(text="late", is_final=False))
        await relay.handle_result(TranscriptionResult(text="late", is_final=True, speech_final=True))

        assert activity == []
        assert finals == []


class TestDeepgramMessages:
    @pytest.mark.asyncio
    async def test_results_message_is_parsed(self, config):
        received = []

        async def on_transcript(result):
            received.append(result)

        stt = DeepgramSTT(on_transcript=on_transcript, config=config)
        await stt._handle_message({
            "type": "Results",
            "is_final": True,
            "speech_final": True,
            "channel": {"alternatives": [{"transcript": "hello there", "confidence": 0.97}]},
        })

        assert len(received) == 1
        assert received[0].text == "hello there"
        assert received[0].is_final is True
        assert received[0].speech_final is True
        assert received[0].confidence == 0.97
        assert stt.metrics.final_transcripts == 1

    @pytest.mark.asyncio
    async def test_utterance_end_message_invokes_callback(self, config):
        ended = []

        async def on_utterance_end():
            ended.append(True)

        stt = DeepgramSTT(on_utterance_end=on_utterance_end, config=config)
        await stt._handle_message({"type": "UtteranceEnd"})
        await stt._handle_message({"type": "Metadata", "request_id": "abc"})

        assert ended == [True]

    @pytest.mark.asyncio
    async def test_send_audio_without_connection_is_ignored(self, config):
        stt = DeepgramSTT(config=config)
        await stt.send_audio(b"\xff" * 160)
        assert stt.metrics.total_audio_ms == 0.0
