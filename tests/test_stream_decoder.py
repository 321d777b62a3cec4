import pytest

from nova_assistant.domain.errors import TransportError
from nova_assistant.domain.streaming.stream_decoder import (
    StreamDecoder, StreamEvent, StreamEventType, decode_stream, extract_delta
)
from tests.conftest import sse


def run(chunks):
    decoder = StreamDecoder()
    events = []
    for chunk in chunks:
        events.extend(decoder.feed(chunk))
    events.extend(decoder.finish())
    return decoder, events


def text_of(events):
    return "".join(e.content for e in events if e.type == StreamEventType.DELTA)


async def agen(chunks):
    for chunk in chunks:
        yield chunk


class TestFraming:
    """Line framing and prefixes"""

    def test_single_chunk(self):
        _, events = run([sse("Bon", "jour")])
        assert events == [StreamEvent.delta("Bon"), StreamEvent.delta("jour"), StreamEvent.done()]

    def test_comments_blank_lines_and_unknown_prefixes_are_ignored(self):
        stream = (
            ": keep-alive\n"
            "\n"
            "event: message\n"
            'data: {"choices":[{"delta":{"content":"A"}}]}\n'
            "id: 42\n"
            "data: [DONE]\n"
        )
        _, events = run([stream])
        assert events == [StreamEvent.delta("A"), StreamEvent.done()]

    def test_crlf_line_endings(self):
        stream = sse("x", "y").replace("\n", "\r\n")
        _, events = run([stream])
        assert text_of(events) == "xy"
        assert events[-1].type == StreamEventType.DONE

    def test_frames_without_content_produce_nothing(self):
        stream = (
            'data: {"choices":[{"delta":{"role":"assistant"}}]}\n'
            'data: {"choices":[]}\n'
            'data: {"choices":[{"delta":{"content":""}}]}\n'
            "data: [DONE]\n"
        )
        _, events = run([stream])
        assert events == [StreamEvent.done()]

    def test_nothing_after_terminator(self):
        stream = sse("a") + sse("ignored")
        decoder, events = run([stream])
        assert text_of(events) == "a"
        assert decoder.done
        assert decoder.feed(sse("more")) == []

    def test_tail_without_newline_is_flushed(self):
        stream = sse("a", done=False) + "data: [DONE]"
        _, events = run([stream])
        assert events == [StreamEvent.delta("a"), StreamEvent.done()]

    def test_stream_closed_without_terminator(self):
        _, events = run([sse("a", "b", done=False)])
        assert text_of(events) == "ab"
        assert all(e.type == StreamEventType.DELTA for e in events)


class TestChunkBoundaries:
    """Output does not depend on where the transport splits the text"""

    def test_every_two_way_split(self):
        stream = ": ping\n" + sse("Bonjour", " le ", "monde !")
        _, expected = run([stream])

        for cut in range(len(stream) + 1):
            _, events = run([stream[:cut], stream[cut:]])
            assert events == expected, f"split at {cut}"

    def test_one_character_chunks(self):
        stream = sse("Hello", " world")
        _, events = run(list(stream))
        assert text_of(events) == "Hello world"
        assert events[-1] == StreamEvent.done()

    def test_terminator_split_across_chunks(self):
        _, events = run([sse("a", done=False) + "data: [DO", "NE]\n"])
        assert events == [StreamEvent.delta("a"), StreamEvent.done()]

    def test_multibyte_character_split_in_bytes(self):
        raw = sse("Étape é").encode("utf-8")
        index = raw.index("é".encode("utf-8")) + 1

        _, events = run([raw[:index], raw[index:]])
        assert text_of(events) == "Étape é"


class TestMalformedLines:
    """Recoverable decode errors"""

    def test_malformed_line_is_dropped_and_decoding_continues(self):
        stream = (
            'data: {"choices":[{"delta":{"content":"A"}}]}\n'
            "data: {not json\n"
            'data: {"choices":[{"delta":{"content":"B"}}]}\n'
            "data: [DONE]\n"
        )
        decoder, events = run([stream])
        assert events == [StreamEvent.delta("A"), StreamEvent.delta("B"), StreamEvent.done()]
        assert decoder.dropped_lines == 1

    def test_malformed_line_before_terminator(self):
        stream = sse("A", done=False) + "data: {broken\n" + "data: [DONE]\n"
        decoder, events = run([stream])
        assert events == [StreamEvent.delta("A"), StreamEvent.done()]
        assert decoder.dropped_lines == 1

    def test_payload_broken_by_stray_newline_is_rejoined(self):
        stream = (
            'data: {"choices":[{"delta":{"content":"Hel\n'
            'lo"}}]}\n'
            "data: [DONE]\n"
        )
        decoder, events = run([stream])
        assert events == [StreamEvent.delta("Hello"), StreamEvent.done()]
        assert decoder.dropped_lines == 0

    def test_malformed_recovery_is_split_invariant(self):
        stream = sse("A", done=False) + "data: {oops\n" + sse("B")
        _, expected = run([stream])

        for cut in range(len(stream) + 1):
            _, events = run([stream[:cut], stream[cut:]])
            assert events == expected, f"split at {cut}"

    def test_deferred_line_is_only_retried_when_joined(self, monkeypatch):
        attempts = []
        decode_payload = StreamDecoder._decode_payload

        def counting(self, payload, events, retry):
            attempts.append(payload)
            return decode_payload(self, payload, events, retry)

        monkeypatch.setattr(StreamDecoder, "_decode_payload", counting)

        decoder, events = run(["data: {oops\n", ": keep-alive\n", sse("B")])

        assert attempts.count("{oops") == 1
        assert text_of(events) == "B"
        assert decoder.dropped_lines == 1

    def test_trailing_malformed_line_is_dropped_on_finish(self):
        decoder, events = run([sse("A", done=False) + "data: {half"])
        assert text_of(events) == "A"
        assert decoder.dropped_lines == 1


class TestErrorFrames:

    def test_error_payload_raises_transport_error(self):
        decoder = StreamDecoder()
        with pytest.raises(TransportError) as exc_info:
            decoder.feed('data: {"error": {"message": "quota exceeded"}}\n')
        assert "quota exceeded" in str(exc_info.value)
        assert exc_info.value.retryable is False

    def test_extract_delta_ignores_non_objects(self):
        assert extract_delta([1, 2]) is None
        assert extract_delta({"choices": ["x"]}) is None


class TestDecodeStream:

    async def test_lazy_decoding_of_async_chunks(self):
        events = [event async for event in decode_stream(agen(["data: {\"choices\":[{\"delta\":", "{\"content\":\"x\"}}]}\n", "data: [DONE]\n"]))]
        assert events == [StreamEvent.delta("x"), StreamEvent.done()]

    async def test_each_call_has_its_own_buffer(self):
        first = [e async for e in decode_stream(agen(['data: {"choices":[{"delta":{"content":"a"']))]
        second = [e async for e in decode_stream(agen([sse("b")]))]
        assert first == []
        assert text_of(second) == "b"

    async def test_stops_pulling_after_terminator(self):
        pulled = []

        async def chunks():
            for chunk in [sse("a"), sse("never")]:
                pulled.append(chunk)
                yield chunk

        events = [e async for e in decode_stream(chunks())]
        assert text_of(events) == "a"
        assert len(pulled) == 1
