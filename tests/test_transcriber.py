import threading

import numpy as np
import pytest

from conftest import WAIT, install_model
from whisprlocal.config import AudioConfig, ServerConfig, TranscriptionConfig
from whisprlocal.buffer import TranscriptHistory
from whisprlocal.errors import AlreadyInProgress, ModelNotFound, TranscriptionFailure
from whisprlocal.recognizer import Segment
from whisprlocal.transcriber import TranscriptionOrchestrator

CHUNK = np.full(1600, 0.1, dtype=np.float32)


@pytest.fixture
def published():
    return []


@pytest.fixture
def make_orchestrator(manager, recognizer, published):
    def make(**overrides):
        options = dict(
            audio_config=AudioConfig(max_buffer_seconds=1.0),
            transcription_config=TranscriptionConfig(prompt="Whispr, ggml"),
            sinks=[published.append],
        )
        options.update(overrides)
        return TranscriptionOrchestrator(manager, recognizer, **options)
    return make


@pytest.fixture
def orchestrator(manager, storage, make_orchestrator):
    manager.activate(install_model(storage, "ggml-tiny.bin")).result(WAIT)
    return make_orchestrator()


def record(orchestrator, chunks=3):
    orchestrator.begin_session()
    for _ in range(chunks):
        orchestrator.on_audio_chunk(CHUNK)
    return orchestrator.end_session()


def test_session_publishes_filtered_text(orchestrator, recognizer, published):
    recognizer.segments = [Segment("[BLANK_AUDIO]"), Segment(" hello "), Segment("")]

    entry = record(orchestrator)

    assert entry.text == "hello"
    assert published == ["hello"]
    assert orchestrator.get_history()[0].text == "hello"
    assert orchestrator.buffer.is_empty


def test_segments_are_joined_and_prompt_passed(orchestrator, recognizer):
    recognizer.segments = [Segment("Hello there."), Segment(" How are you?")]

    entry = record(orchestrator, chunks=2)

    assert entry.text == "Hello there. How are you?"
    assert recognizer.transcribed == [("ggml-tiny.bin", 3200, "Whispr, ggml")]


def test_buffer_window_limits_transcribed_audio(orchestrator, recognizer):
    record(orchestrator, chunks=25)

    # one second window at 16 kHz
    assert recognizer.transcribed[0][1] == 16000


def test_empty_session_is_a_no_op(orchestrator, recognizer, published):
    orchestrator.begin_session()

    assert orchestrator.end_session() is None
    assert recognizer.transcribed == []
    assert published == []


def test_chunks_outside_session_are_dropped(orchestrator):
    orchestrator.on_audio_chunk(CHUNK)
    assert orchestrator.buffer.is_empty


def test_cancel_discards_audio(orchestrator, recognizer):
    orchestrator.begin_session()
    orchestrator.on_audio_chunk(CHUNK)
    orchestrator.cancel_session()

    assert not orchestrator.is_recording
    assert orchestrator.buffer.is_empty
    assert orchestrator.finalize() is None
    assert recognizer.transcribed == []


def test_concurrent_finalize_produces_one_entry(orchestrator, recognizer):
    recognizer.transcribe_gate = threading.Event()
    orchestrator.begin_session()
    orchestrator.on_audio_chunk(CHUNK)

    results = []
    worker = threading.Thread(target=lambda: results.append(orchestrator.end_session()))
    worker.start()
    assert recognizer.transcribe_started.wait(WAIT)

    assert orchestrator.is_finalizing
    assert orchestrator.finalize() is None

    recognizer.transcribe_gate.set()
    worker.join(WAIT)

    assert results[0].text == "hello world"
    assert len(orchestrator.get_history()) == 1
    assert len(recognizer.transcribed) == 1


def test_begin_waits_for_previous_finalize(orchestrator, recognizer):
    recognizer.transcribe_gate = threading.Event()
    orchestrator.begin_session()
    orchestrator.on_audio_chunk(CHUNK)

    worker = threading.Thread(target=orchestrator.end_session)
    worker.start()
    assert recognizer.transcribe_started.wait(WAIT)

    with pytest.raises(AlreadyInProgress):
        orchestrator.begin_session()
    orchestrator.on_audio_chunk(CHUNK)

    recognizer.transcribe_gate.set()
    worker.join(WAIT)
    assert not orchestrator.is_recording
    assert orchestrator.buffer.is_empty

    # Once the first utterance is published the next one records normally
    orchestrator.begin_session()
    orchestrator.on_audio_chunk(CHUNK)
    assert len(orchestrator.buffer) == 1600


def test_recognizer_failure_is_recorded(orchestrator, recognizer, published):
    recognizer.transcribe_error = RuntimeError("decoder exploded")

    assert record(orchestrator) is None

    assert isinstance(orchestrator.last_error, TranscriptionFailure)
    assert "decoder exploded" in orchestrator.last_error.message
    assert orchestrator.failure_count == 1
    assert orchestrator.buffer.is_empty
    assert published == []

    orchestrator.begin_session()
    assert orchestrator.last_error is None


def test_failure_is_not_reported_by_next_finalize(orchestrator, recognizer):
    recognizer.transcribe_error = RuntimeError("decoder exploded")
    record(orchestrator)
    assert orchestrator.last_error is not None

    assert orchestrator.end_session() is None
    assert orchestrator.last_error is None


def test_shares_empty_history(manager, storage, make_orchestrator):
    manager.activate(install_model(storage, "ggml-tiny.bin")).result(WAIT)
    history = TranscriptHistory(capacity=3)
    orchestrator = make_orchestrator(history=history)

    record(orchestrator)

    assert orchestrator.history is history
    assert [e.text for e in history.entries()] == ["hello world"]


def test_no_active_model(make_orchestrator):
    orchestrator = make_orchestrator()

    assert record(orchestrator) is None
    assert isinstance(orchestrator.last_error, ModelNotFound)
    assert orchestrator.buffer.is_empty


def test_discard_phrases_are_filtered(manager, storage, make_orchestrator, recognizer, published):
    manager.activate(install_model(storage, "ggml-tiny.bin")).result(WAIT)
    orchestrator = make_orchestrator(server_config=ServerConfig(discard_phrases=["Thank you."]))
    recognizer.segments = [Segment("Thank you!")]

    assert record(orchestrator) is None
    assert published == []
    assert len(orchestrator.get_history()) == 0


def test_failing_sink_does_not_stop_others(manager, storage, make_orchestrator, published):
    def broken(text):
        raise RuntimeError("sink down")

    manager.activate(install_model(storage, "ggml-tiny.bin")).result(WAIT)
    orchestrator = make_orchestrator(sinks=[broken, published.append])

    entry = record(orchestrator)

    assert entry is not None
    assert published == ["hello world"]


def test_stats(orchestrator):
    record(orchestrator)

    stats = orchestrator.get_stats()

    assert stats["transcription_count"] == 1
    assert stats["failure_count"] == 0
    assert stats["is_recording"] is False
    assert stats["last_error"] is None
