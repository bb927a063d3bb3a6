from __future__ import annotations

import asyncio
import json

from relay.registry import SessionRegistry
from relay.session import Phase, Role

from conftest import FakeLLM, make_settings

GREETING = "Olá! Aqui é a Laura da Voxemy. Como posso ajudar você hoje?"
FALLBACK = "Desculpe, não entendi bem. Pode repetir?"


def _frame(**payload) -> str:
    return json.dumps(payload)


def _transcript(speech: str) -> str:
    return _frame(event="transcript", transcript={"speech": speech, "confidence": 0.92, "is_final": True})


def test_concrete_call_scenario(make_handler, transport, fake_llm):
    async def _run() -> None:
        handler = make_handler()
        session = await handler.open(query={"callSid": "CA100"}, headers={"user-agent": "TwilioProxy/1.1"})
        assert session.session_id == "CA100"
        assert session.phase is Phase.PENDING
        assert session.keepalive is not None

        await handler.handle_frame(_frame(event="connected"))
        assert transport.sent == [{"event": "connected"}]

        await handler.handle_frame(_frame(event="start", start={"callSid": "CA100", "streamSid": "MZ1"}))
        assert session.has_greeted
        assert session.phase is Phase.ACTIVE
        assert transport.speak_events() == [{"event": "speak", "text": GREETING}]

        await handler.handle_frame(_transcript("oi"))
        assert session.history == []
        assert fake_llm.calls == []

        await handler.handle_frame(_transcript("quero agendar uma consulta"))
        assert len(fake_llm.calls) == 1
        # system prompt + latest utterance, no earlier turns
        assert fake_llm.calls[0] == [
            {"role": "system", "content": "SYS"},
            {"role": "user", "content": "quero agendar uma consulta"},
        ]
        assert [turn.role for turn in session.history] == [Role.USER, Role.ASSISTANT]
        assert transport.speak_events()[-1]["text"] == fake_llm.reply

        monitor = session.keepalive
        await handler.handle_frame(_frame(event="stop", reason="completed"))
        assert session.phase is Phase.ENDED
        assert session.ended_reason == "stop:completed"
        assert monitor.cancelled
        assert session.keepalive is None
        assert transport.closed

        sent_before = list(transport.sent)
        await handler.handle_frame(_transcript("ainda está aí?"))
        await handler.handle_frame(_frame(event="connected"))
        assert transport.sent == sent_before
        assert len(session.history) == 2

    asyncio.run(_run())


def test_upstream_failure_falls_back(make_handler, transport):
    async def _run() -> None:
        handler = make_handler(llm=FakeLLM(error=TimeoutError("upstream timeout")))
        session = await handler.open()
        await handler.handle_frame(_frame(event="start"))
        await handler.handle_frame(_transcript("quero agendar uma consulta"))

        assert transport.speak_events()[-1]["text"] == FALLBACK
        assert session.history[-1].text == FALLBACK
        assert session.phase is Phase.ACTIVE
        await handler.terminate("test")

    asyncio.run(_run())


def test_missing_llm_answers_with_degraded_reply(make_handler, transport):
    async def _run() -> None:
        handler = make_handler(llm=None)
        await handler.open()
        await handler.handle_frame(_frame(event="start"))
        await handler.handle_frame(_transcript("quero agendar uma consulta"))
        assert transport.speak_events()[-1]["text"] == "Desculpe, estou com problemas técnicos no momento."
        await handler.terminate("test")

    asyncio.run(_run())


def test_at_most_one_greeting(make_handler, transport):
    async def _run() -> None:
        handler = make_handler()
        await handler.open()
        for _ in range(3):
            await handler.handle_frame(_frame(event="start"))
        greetings = [event for event in transport.speak_events() if event["text"] == GREETING]
        assert len(greetings) == 1
        await handler.terminate("test")

    asyncio.run(_run())


def test_malformed_frames_do_not_disturb_valid_ones(make_handler, transport):
    async def _run() -> None:
        handler = make_handler()
        session = await handler.open()
        frames = [
            "{not json",
            _frame(event="connected"),
            '{"no_event": true}',
            _frame(event="start"),
            "[]",
            _frame(event="dtmf", digit="5"),
            _transcript("quero falar com alguém"),
        ]
        for raw in frames:
            await handler.handle_frame(raw)

        assert session.malformed_frames == 3
        assert not transport.closed
        assert session.phase is Phase.ACTIVE
        assert [event["event"] for event in transport.sent] == ["connected", "speak", "speak"]
        await handler.terminate("test")

    asyncio.run(_run())


def test_identity_is_stable_once_resolved(make_handler):
    async def _run() -> None:
        handler = make_handler()
        session = await handler.open(query={})
        assert session.session_id.startswith("TEMP_")

        await handler.handle_frame(_frame(event="start", start={"callSid": "CA_START"}))
        assert session.session_id == "CA_START"

        await handler.handle_frame(_frame(event="mark", callSid="CA_OTHER", mark={"name": "m1"}))
        await handler.handle_frame(_frame(event="media", call={"callSid": "CA_THIRD"}))
        assert session.session_id == "CA_START"
        await handler.terminate("test")

    asyncio.run(_run())


def test_placeholder_persists_without_any_source(make_handler):
    async def _run() -> None:
        handler = make_handler()
        session = await handler.open()
        await handler.handle_frame(_frame(event="start"))
        await handler.handle_frame(_frame(event="media", media={"payload": "AAAA"}))
        assert session.session_id.startswith("TEMP_")
        await handler.terminate("test")

    asyncio.run(_run())


def test_noise_threshold(make_handler, fake_llm):
    async def _run() -> None:
        handler = make_handler()
        session = await handler.open()
        await handler.handle_frame(_frame(event="start"))
        for speech in ["", "  a ", "oi", "  ok  ", "\n\t"]:
            await handler.handle_frame(_transcript(speech))
        await handler.handle_frame(_frame(event="transcript"))
        assert fake_llm.calls == []
        assert session.history == []

        await handler.handle_frame(_transcript(" sim "))
        assert len(fake_llm.calls) == 1
        assert session.history[0].text == "sim"
        await handler.terminate("test")

    asyncio.run(_run())


def test_transcript_before_start_is_ignored(make_handler, transport, fake_llm):
    async def _run() -> None:
        handler = make_handler()
        session = await handler.open()
        await handler.handle_frame(_transcript("quero agendar uma consulta"))
        assert fake_llm.calls == []
        assert session.history == []
        assert transport.sent == []
        await handler.terminate("test")

    asyncio.run(_run())


def test_window_sent_upstream_never_exceeds_six_turns(make_handler, fake_llm):
    async def _run() -> None:
        handler = make_handler()
        session = await handler.open()
        await handler.handle_frame(_frame(event="start"))
        for index in range(8):
            await handler.handle_frame(_transcript(f"pergunta número {index}"))

        assert len(session.history) == 16
        for messages in fake_llm.calls:
            window = messages[1:-1]
            assert len(window) <= 6
        assert len(fake_llm.calls[-1]) == 8
        await handler.terminate("test")

    asyncio.run(_run())


def test_voice_config_follows_credential(make_handler, transport):
    async def _run() -> None:
        handler = make_handler(settings=make_settings(elevenlabs_api_key="el-secret"))
        await handler.open()
        await handler.handle_frame(_frame(event="start"))
        await handler.handle_frame(_transcript("quero agendar uma consulta"))
        speaks = transport.speak_events()
        assert len(speaks) == 2
        for event in speaks:
            assert set(event["config"]) == {
                "provider", "voice_id", "stability", "similarity", "style", "speed", "audio_format",
            }
        await handler.terminate("test")

    asyncio.run(_run())


def test_media_and_mark_produce_no_replies(make_handler, transport):
    async def _run() -> None:
        handler = make_handler(settings=make_settings(media_log_sample_rate=1.0))
        session = await handler.open()
        await handler.handle_frame(_frame(event="start"))
        sent = len(transport.sent)
        for _ in range(5):
            await handler.handle_frame(_frame(event="media", media={"payload": "AAAA", "timestamp": "40"}))
        await handler.handle_frame(_frame(event="mark", mark={"name": "greeting-done"}))
        assert len(transport.sent) == sent
        assert session.media_packets == 5
        assert session.phase is Phase.ACTIVE
        await handler.terminate("test")

    asyncio.run(_run())


def test_stop_halts_keepalive_pings(make_handler, transport):
    async def _run() -> None:
        handler = make_handler(settings=make_settings(keepalive_interval_seconds=0.01))
        await handler.open()
        await asyncio.sleep(0.05)
        assert transport.pings >= 1

        await handler.handle_frame(_frame(event="stop", reason="completed"))
        pings = transport.pings
        await asyncio.sleep(0.05)
        assert transport.pings == pings

    asyncio.run(_run())


def test_stop_with_numeric_reason_ends_call(make_handler, transport):
    async def _run() -> None:
        handler = make_handler()
        session = await handler.open(query={"callSid": "CA1"})
        monitor = session.keepalive

        await handler.handle_frame(_frame(event="stop", reason=1000))

        assert session.phase is Phase.ENDED
        assert session.ended_reason == "stop:1000"
        assert session.malformed_frames == 0
        assert monitor.cancelled
        assert transport.closed

    asyncio.run(_run())


def test_start_with_numeric_stream_sid_still_greets(make_handler, transport):
    async def _run() -> None:
        handler = make_handler()
        session = await handler.open()

        await handler.handle_frame(_frame(event="start", start={"callSid": "CA1", "streamSid": 5}))

        assert session.malformed_frames == 0
        assert session.has_greeted
        assert session.phase is Phase.ACTIVE
        assert session.session_id == "CA1"
        assert [event["text"] for event in transport.speak_events()] == [GREETING]

    asyncio.run(_run())


def test_transport_close_cleans_up_without_final_event(make_handler, transport):
    async def _run() -> None:
        registry = SessionRegistry()
        handler = make_handler(registry=registry)
        session = await handler.open()
        assert registry.active_count == 1
        monitor = session.keepalive

        assert await handler.terminate("transport_closed") is True
        assert await handler.terminate("transport_error") is False
        assert session.ended_reason == "transport_closed"
        assert monitor.cancelled
        assert registry.active_count == 0
        assert transport.sent == []
        assert not transport.closed

    asyncio.run(_run())


def test_keepalive_failure_ends_session(make_handler, transport):
    async def _run() -> None:
        registry = SessionRegistry()
        transport.fail_ping = True
        handler = make_handler(settings=make_settings(keepalive_interval_seconds=0.01), registry=registry)
        session = await handler.open()
        await asyncio.sleep(0.05)
        assert session.phase is Phase.ENDED
        assert session.ended_reason == "transport_error"
        assert session.keepalive is None
        assert registry.active_count == 0
        assert transport.closed

    asyncio.run(_run())


def test_reply_after_end_is_discarded(make_handler, transport):
    async def _run() -> None:
        class EndingLLM(FakeLLM):
            async def chat(self, messages, *, temperature=0.7, max_tokens=100):
                await handler.terminate("transport_closed")
                return "tarde demais"

        handler = make_handler(llm=EndingLLM())
        session = await handler.open()
        await handler.handle_frame(_frame(event="start"))
        await handler.handle_frame(_transcript("quero agendar uma consulta"))

        assert [event["text"] for event in transport.speak_events()] == [GREETING]
        assert [turn.role for turn in session.history] == [Role.USER]

    asyncio.run(_run())
