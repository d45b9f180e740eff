"""Transcript building — diarized utterances into speaker turns.

Business Rules:
- Adjacent utterances merge into one turn when the speaker is the same,
  the silence gap is <= 1.5s and the merged text stays <= 800 characters
- Joining adds a space unless either side has boundary punctuation (.,;:!?)
- New turns start with role "unknown"; speaker id is "0"/"1"/... or "unknown"
- full_text is the turn texts joined by single spaces

Called by: services/recording_pipeline.py
Depends on: connectors/transcription.py (RawTranscript)
"""

import re
from dataclasses import dataclass, field

from ..connectors.transcription import RawTranscript, Utterance
from ..models.enums import SpeakerRole

MAX_SILENCE_GAP_SEC = 1.5
MAX_TURN_CHARS = 800

_WS = re.compile(r"\s+")
_PUNCT = ".,;:!?"


@dataclass
class Turn:
    role: str
    speaker_id: str
    start: float
    end: float
    text: str

    def to_dict(self) -> dict:
        return {
            "role": self.role,
            "speakerId": self.speaker_id,
            "start": self.start,
            "end": self.end,
            "text": self.text,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Turn":
        return cls(
            role=d.get("role") or SpeakerRole.UNKNOWN.value,
            speaker_id=str(d.get("speakerId", "unknown")),
            start=float(d.get("start") or 0),
            end=float(d.get("end") or 0),
            text=d.get("text") or "",
        )


@dataclass
class TranscriptSummary:
    turns: list[Turn] = field(default_factory=list)
    full_text: str = ""
    language: str | None = None
    duration_seconds: int | None = None


def normalize_text(s: str) -> str:
    return _WS.sub(" ", s or "").strip()


def _needs_space(a: str, b: str) -> bool:
    return not ((a and a[-1] in _PUNCT) or (b and b[0] in _PUNCT))


def _speaker_of(u: Utterance) -> str:
    return str(u.speaker) if isinstance(u.speaker, int) else "unknown"


def build_turns(
    utterances: list[Utterance],
    *,
    max_gap: float = MAX_SILENCE_GAP_SEC,
    max_chars: int = MAX_TURN_CHARS,
) -> list[Turn]:
    turns: list[Turn] = []
    for u in utterances:
        text = normalize_text(u.transcript)
        if not text:
            continue
        sid = _speaker_of(u)
        end = u.end if u.end is not None else u.start
        last = turns[-1] if turns else None

        if (
            last is not None
            and last.speaker_id == sid
            and (u.start - last.end) <= max_gap
            and len(last.text) + 1 + len(text) <= max_chars
        ):
            sep = " " if _needs_space(last.text, text) else ""
            last.text = f"{last.text}{sep}{text}"
            last.end = max(last.end, end)
        else:
            turns.append(
                Turn(role=SpeakerRole.UNKNOWN.value, speaker_id=sid, start=u.start, end=end, text=text)
            )
    return turns


def summarize(raw: RawTranscript | None) -> TranscriptSummary | None:
    if raw is None:
        return None
    turns = build_turns(raw.utterances)
    return TranscriptSummary(
        turns=turns,
        full_text=" ".join(t.text for t in turns).strip(),
        language=raw.language or "en",
        duration_seconds=round(raw.duration) if raw.duration is not None else None,
    )
