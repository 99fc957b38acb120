"""Data models shared by the score and MIDI conversion paths."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

# Semitone offset of each natural step above C.
STEP_SEMITONES: dict[str, int] = {"C": 0, "D": 2, "E": 4, "F": 5, "G": 7, "A": 9, "B": 11}

NOTE_ON = 0x90
NOTE_OFF = 0x80
DEFAULT_MICROS_PER_QUARTER = 500_000  # 120 BPM


class DiagnosticCode(Enum):
    """Recoverable conditions reported alongside a conversion result."""

    PARTIAL_TRACK_DECODE = "partial_track_decode"
    DECOMPRESSION_UNAVAILABLE = "decompression_unavailable"
    DECOMPRESSION_FAILED = "decompression_failed"
    TRUNCATED_ENTRY = "truncated_entry"
    CONTAINER_UNREADABLE = "container_unreadable"
    FALLBACK_EXTRACTION = "fallback_extraction"
    SKIPPED_NOTE = "skipped_note"
    INVALID_ATTRIBUTE = "invalid_attribute"
    UNSUPPORTED_STATUS = "unsupported_status"


@dataclass(frozen=True)
class Diagnostic:
    """A warning raised while decoding, kept instead of failing the parse."""

    code: DiagnosticCode
    message: str

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"


# ── Container ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RawContainerEntry:
    """One member discovered in a ZIP container.

    ``decoded`` is False when ``data`` still holds the compressed payload.
    """

    name: str
    data: bytes
    decoded: bool = True


# ── Score ──────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TimeSignature:
    beats: int = 4
    beat_unit: int = 4

    def __str__(self) -> str:
        return f"{self.beats}/{self.beat_unit}"


@dataclass(frozen=True)
class ScoreNote:
    """
    A pitched note read from a MusicXML measure.

    Attributes:
        step:               Natural pitch letter, C through B.
        octave:             Scientific octave number (4 = Middle C octave).
        alter:              Chromatic alteration in semitones (-1 flat, +1 sharp).
        duration_divisions: Length in divisions of a quarter note.
        onset_divisions:    Start offset from the measure start, in divisions.
        is_chord_member:    True when the note carries a ``<chord/>`` marker.
        part_index:         0-based index of the owning ``<part>``.
    """

    step: str
    octave: int
    alter: int
    duration_divisions: int
    onset_divisions: int
    is_chord_member: bool = False
    part_index: int = 0

    @property
    def midi_pitch(self) -> int:
        return (self.octave + 1) * 12 + STEP_SEMITONES[self.step] + self.alter


@dataclass(frozen=True)
class ScoreRest:
    duration_divisions: int
    onset_divisions: int
    part_index: int = 0


ScoreEvent = Union[ScoreNote, ScoreRest]


@dataclass
class Measure:
    """All parts' events for one measure index, in per-part document order."""

    index: int
    events: list[ScoreEvent] = field(default_factory=list)


@dataclass
class ScoreDocument:
    """Parsed musical content of a MusicXML document."""

    divisions_per_quarter: int = 1
    time_signature: TimeSignature = field(default_factory=TimeSignature)
    key_fifths: int = 0
    tempo_micros_per_quarter: int = DEFAULT_MICROS_PER_QUARTER
    measures: list[Measure] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def notes(self) -> list[ScoreNote]:
        return [event for m in self.measures for event in m.events if isinstance(event, ScoreNote)]


# ── Timed output ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TimedNote:
    midi_pitch: int
    start_ms: float
    end_ms: float

    @property
    def duration_ms(self) -> float:
        return self.end_ms - self.start_ms


@dataclass(frozen=True)
class MidiEvent:
    """A wire-ready three-byte channel message stamped in milliseconds."""

    time_ms: float
    status: int
    data1: int
    data2: int

    @property
    def pitch(self) -> int:
        return self.data1

    @property
    def velocity(self) -> int:
        return self.data2

    @property
    def is_note_on(self) -> bool:
        return self.status & 0xF0 == NOTE_ON and self.data2 > 0

    @property
    def is_note_off(self) -> bool:
        kind = self.status & 0xF0
        return kind == NOTE_OFF or (kind == NOTE_ON and self.data2 == 0)

    def to_bytes(self) -> bytes:
        return bytes((self.status, self.data1, self.data2))


@dataclass(frozen=True)
class TempoMapEntry:
    tick: int
    micros_per_quarter: int
    cumulative_ms: float = 0.0


@dataclass(frozen=True)
class NotePair:
    """Start/end of one sounding note, for falling-note style displays."""

    pitch: int
    start_ms: float
    end_ms: float


@dataclass
class ConversionResult:
    """Common output of every input format."""

    events: list[MidiEvent]
    note_pairs: list[NotePair]
    total_duration_ms: float
    source_format: str = ""
    diagnostics: list[Diagnostic] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Render the JSON-facing result contract."""
        return {
            "events": [
                {
                    "timeMs": ev.time_ms,
                    "statusByte": ev.status,
                    "pitch": ev.pitch,
                    "velocityOrZero": ev.velocity,
                }
                for ev in self.events
            ],
            "notePairs": [
                {"pitch": p.pitch, "startMs": p.start_ms, "endMs": p.end_ms}
                for p in self.note_pairs
            ],
            "totalDurationMs": self.total_duration_ms,
        }
