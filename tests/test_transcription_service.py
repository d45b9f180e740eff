"""
test_transcription_service.py — Tests for services/transcription_service.py

Covers: turn merging (speaker, silence gap, length cap), punctuation-aware
joining, speaker ids and the transcript summary.

Called by: pytest
Depends on: calltrack/services/transcription_service.py
"""

from calltrack.connectors.transcription import RawTranscript, Utterance
from calltrack.services.transcription_service import Turn, build_turns, normalize_text, summarize


def test_same_speaker_within_gap_merges():
    turns = build_turns(
        [
            Utterance(start=0.0, end=1.0, transcript="Hello", speaker=0),
            Utterance(start=1.4, end=2.0, transcript="there", speaker=0),
        ]
    )
    assert len(turns) == 1
    assert turns[0].text == "Hello there"
    assert turns[0].end == 2.0


def test_long_gap_starts_new_turn():
    turns = build_turns(
        [
            Utterance(start=0.0, end=1.0, transcript="Hello", speaker=0),
            Utterance(start=2.6, end=3.0, transcript="anyone?", speaker=0),
        ]
    )
    assert [t.text for t in turns] == ["Hello", "anyone?"]


def test_speaker_change_starts_new_turn():
    turns = build_turns(
        [
            Utterance(start=0.0, end=1.0, transcript="Hi", speaker=0),
            Utterance(start=1.1, end=2.0, transcript="Hey", speaker=1),
        ]
    )
    assert [(t.speaker_id, t.text) for t in turns] == [("0", "Hi"), ("1", "Hey")]
    assert all(t.role == "unknown" for t in turns)


def test_length_cap_starts_new_turn():
    turns = build_turns(
        [
            Utterance(start=0.0, end=1.0, transcript="a" * 790, speaker=0),
            Utterance(start=1.1, end=2.0, transcript="b" * 20, speaker=0),
        ]
    )
    assert len(turns) == 2


def test_punctuation_joins_without_space():
    turns = build_turns(
        [
            Utterance(start=0.0, end=1.0, transcript="Well", speaker=0),
            Utterance(start=1.1, end=1.5, transcript=", maybe", speaker=0),
        ]
    )
    assert turns[0].text == "Well, maybe"


def test_missing_speaker_is_unknown_and_blank_text_dropped():
    turns = build_turns(
        [
            Utterance(start=0.0, end=1.0, transcript="   ", speaker=0),
            Utterance(start=1.0, end=2.0, transcript="beep", speaker=None),
        ]
    )
    assert [(t.speaker_id, t.text) for t in turns] == [("unknown", "beep")]


def test_normalize_text_collapses_whitespace():
    assert normalize_text("  a \n\t b  ") == "a b"


def test_summarize():
    raw = RawTranscript(
        utterances=[
            Utterance(start=0.0, end=1.0, transcript="Hi", speaker=0),
            Utterance(start=1.1, end=2.0, transcript="Hello", speaker=1),
        ],
        duration=61.7,
        language=None,
    )

    summary = summarize(raw)

    assert summary.full_text == "Hi Hello"
    assert summary.language == "en"
    assert summary.duration_seconds == 62
    assert summarize(None) is None


def test_turn_dict_round_trip_keys():
    d = Turn(role="client", speaker_id="1", start=0.5, end=1.5, text="yes").to_dict()
    assert d == {"role": "client", "speakerId": "1", "start": 0.5, "end": 1.5, "text": "yes"}
    assert Turn.from_dict({"text": "x"}).role == "unknown"
