"""Score-object adapters: beat-based score sources resolved to TimedNotes.

A score source exposes only what timing needs: measures with a start beat,
and the notes they hold, each with a pitch, a start beat relative to the
measure and a length in beats. Beats are quarter notes. Any score object
model (the built-in ScoreDocument, a music21 stream) can be adapted to it
and then share the same timing and merge logic.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from etude.models import Diagnostic, DiagnosticCode, ScoreDocument, ScoreNote, TimedNote
from etude.timing import MIDI_PITCH_RANGE

logger = logging.getLogger(__name__)

DEFAULT_BPM = 120.0


@dataclass(frozen=True)
class SourceNote:
    pitch: int
    start_beat: float
    duration_beats: float


@dataclass(frozen=True)
class SourceMeasure:
    """One measure of one part; ``start_beat`` is absolute from the start of the piece."""

    start_beat: float
    notes: tuple[SourceNote, ...] = field(default_factory=tuple)

    def voices(self) -> tuple[SourceNote, ...]:
        return self.notes


class ScoreSource(ABC):
    """Capability interface for anything that can be read as beat-timed measures."""

    @abstractmethod
    def measures(self) -> Iterable[SourceMeasure]:
        """Yield every measure of every part."""

    def tempo_bpm(self) -> float | None:
        """Quarter-note tempo declared by the source, if any."""
        return None


# ── Adapters ───────────────────────────────────────────────────────────────────

class DocumentScoreSource(ScoreSource):
    """Adapts a parsed ScoreDocument, using fixed-length measures from its first time signature."""

    def __init__(self, document: ScoreDocument) -> None:
        self.document = document

    def measures(self) -> Iterator[SourceMeasure]:
        doc = self.document
        divisions = doc.divisions_per_quarter
        beats_per_measure = doc.time_signature.beats * 4 / doc.time_signature.beat_unit
        for measure in doc.measures:
            notes = tuple(
                SourceNote(
                    pitch=event.midi_pitch,
                    start_beat=event.onset_divisions / divisions,
                    duration_beats=event.duration_divisions / divisions,
                )
                for event in measure.events
                if isinstance(event, ScoreNote)
            )
            yield SourceMeasure(start_beat=measure.index * beats_per_measure, notes=notes)

    def tempo_bpm(self) -> float:
        return 60_000_000 / self.document.tempo_micros_per_quarter


class Music21ScoreAdapter(ScoreSource):
    """
    Adapts a music21 Score (or a single Part) to ScoreSource.

    Measure start beats come from each measure's offset in its part, so
    pickups and meter changes are honoured. Chords contribute one note per
    pitch, all sharing the chord's offset and length.
    """

    def __init__(self, score: Any) -> None:
        self.score = score

    @classmethod
    def from_path(cls, path: str | Path) -> Music21ScoreAdapter:
        from music21 import converter

        return cls(converter.parse(str(path)))

    def _parts(self) -> list[Any]:
        parts = list(getattr(self.score, "parts", []))
        return parts or [self.score]

    def measures(self) -> Iterator[SourceMeasure]:
        for part in self._parts():
            for measure in part.getElementsByClass("Measure"):
                notes = tuple(
                    SourceNote(
                        pitch=int(pitch.midi),
                        start_beat=float(element.offset),
                        duration_beats=float(element.quarterLength),
                    )
                    for element in measure.flatten().notes
                    for pitch in element.pitches
                )
                yield SourceMeasure(start_beat=float(measure.offset), notes=notes)

    def tempo_bpm(self) -> float | None:
        for mark in self.score.recurse().getElementsByClass("MetronomeMark"):
            bpm = mark.getQuarterBPM()
            if bpm:
                return float(bpm)
        return None


# ── Shared timing ──────────────────────────────────────────────────────────────

def resolve_beats(
    source: ScoreSource,
    bpm: float | None = None,
    diagnostics: list[Diagnostic] | None = None,
) -> list[TimedNote]:
    """
    Convert a score source's beat-timed notes to milliseconds at a single tempo.

    Args:
        source:      Any ScoreSource.
        bpm:         Quarter-note tempo; defaults to the source's own tempo, then 120.
        diagnostics: Optional sink for skipped out-of-range pitches.

    Returns:
        TimedNotes in measure then voice order, ready for EventMerger.merge.
    """
    sink = diagnostics if diagnostics is not None else []
    tempo = bpm or source.tempo_bpm() or DEFAULT_BPM
    ms_per_beat = 60_000.0 / tempo

    timed: list[TimedNote] = []
    for measure in source.measures():
        for note in measure.voices():
            if note.pitch not in MIDI_PITCH_RANGE:
                message = (
                    f"pitch {note.pitch} at beat {measure.start_beat + note.start_beat:g} "
                    "is outside the MIDI range"
                )
                logger.warning(message)
                sink.append(Diagnostic(DiagnosticCode.SKIPPED_NOTE, message))
                continue
            start = (measure.start_beat + note.start_beat) * ms_per_beat
            end = start + note.duration_beats * ms_per_beat
            start = max(start, 0.0)
            end = max(end, start)
            timed.append(TimedNote(midi_pitch=note.pitch, start_ms=start, end_ms=end))

    logger.debug("resolved %d notes from %s at %.1f BPM", len(timed), type(source).__name__, tempo)
    return timed
