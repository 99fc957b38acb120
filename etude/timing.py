"""Timing resolution: score divisions and MIDI ticks to absolute milliseconds."""

from __future__ import annotations

import logging
from collections.abc import Sequence

import numpy as np

from etude.models import (
    DEFAULT_MICROS_PER_QUARTER,
    Diagnostic,
    DiagnosticCode,
    ScoreDocument,
    ScoreNote,
    TempoMapEntry,
    TimedNote,
)

logger = logging.getLogger(__name__)

MIDI_PITCH_RANGE = range(0, 128)


class ScoreTimingResolver:
    """
    Converts a ScoreDocument's divisions-relative notes into TimedNotes.

    Every measure is treated as the same length, derived from the document's
    global tempo and first time signature:

        ms_per_division = (tempo_us / 1000) / divisions
        ms_per_measure  = (beats * divisions * 4 / beat_unit) * ms_per_division

    A note starts at ``measure_index * ms_per_measure + onset * ms_per_division``
    and lasts ``duration * ms_per_division``. Mid-piece tempo or meter changes
    are not reflected.
    """

    @staticmethod
    def ms_per_division(document: ScoreDocument) -> float:
        return (document.tempo_micros_per_quarter / 1000.0) / document.divisions_per_quarter

    @classmethod
    def ms_per_measure(cls, document: ScoreDocument) -> float:
        ts = document.time_signature
        divisions_per_measure = ts.beats * document.divisions_per_quarter * 4 / ts.beat_unit
        return divisions_per_measure * cls.ms_per_division(document)

    def resolve(
        self, document: ScoreDocument, diagnostics: list[Diagnostic] | None = None
    ) -> list[TimedNote]:
        """
        Return one TimedNote per pitched note, in measure then document order.

        Rests are dropped. Notes whose pitch falls outside 0-127 are dropped with
        a diagnostic; onsets pulled before 0 by ``<backup>`` are clamped to 0.
        """
        sink = diagnostics if diagnostics is not None else []
        per_division = self.ms_per_division(document)
        per_measure = self.ms_per_measure(document)

        timed: list[TimedNote] = []
        for measure in document.measures:
            measure_start = measure.index * per_measure
            for event in measure.events:
                if not isinstance(event, ScoreNote):
                    continue
                pitch = event.midi_pitch
                if pitch not in MIDI_PITCH_RANGE:
                    message = (
                        f"measure {measure.index + 1}: {event.step}{event.octave} "
                        f"(alter {event.alter}) is outside the MIDI range"
                    )
                    logger.warning(message)
                    sink.append(Diagnostic(DiagnosticCode.SKIPPED_NOTE, message))
                    continue
                start = measure_start + event.onset_divisions * per_division
                end = start + event.duration_divisions * per_division
                start = max(start, 0.0)
                timed.append(TimedNote(midi_pitch=pitch, start_ms=start, end_ms=max(end, start)))

        logger.debug(
            "resolved %d notes at %.3f ms/division, %.3f ms/measure",
            len(timed),
            per_division,
            per_measure,
        )
        return timed


# ── Tick-based timing (Standard MIDI Files) ────────────────────────────────────

def build_tempo_map(
    changes: Sequence[tuple[int, int]], division: int
) -> list[TempoMapEntry]:
    """
    Build a tempo map from ``(tick, micros_per_quarter)`` pairs.

    The result is sorted by tick (stable for equal ticks) and always starts at
    tick 0; the 500000 us default applies unless a change sits at tick 0.
    ``cumulative_ms`` is the elapsed time at each entry's tick.
    """
    ordered = sorted(changes, key=lambda change: change[0])
    if not ordered or ordered[0][0] != 0:
        ordered.insert(0, (0, DEFAULT_MICROS_PER_QUARTER))

    entries: list[TempoMapEntry] = []
    cumulative = 0.0
    prev_tick, prev_tempo = ordered[0]
    for tick, tempo in ordered:
        cumulative += (tick - prev_tick) / division * prev_tempo / 1000.0
        entries.append(TempoMapEntry(tick=tick, micros_per_quarter=tempo, cumulative_ms=cumulative))
        prev_tick, prev_tempo = tick, tempo
    return entries


def ticks_to_ms(
    ticks: Sequence[int], tempo_map: Sequence[TempoMapEntry], division: int
) -> np.ndarray:
    """
    Project absolute ticks to milliseconds through a tempo map.

    Each tick uses the latest map entry whose tick is ``<=`` it; among entries
    sharing a tick the last one wins.
    """
    tick_array = np.asarray(ticks, dtype=np.float64)
    if tick_array.size == 0:
        return np.zeros(0, dtype=np.float64)

    map_ticks = np.array([entry.tick for entry in tempo_map], dtype=np.float64)
    cumulative = np.array([entry.cumulative_ms for entry in tempo_map], dtype=np.float64)
    tempos = np.array([entry.micros_per_quarter for entry in tempo_map], dtype=np.float64)

    index = np.searchsorted(map_ticks, tick_array, side="right") - 1
    index = np.clip(index, 0, len(tempo_map) - 1)
    return cumulative[index] + (tick_array - map_ticks[index]) / division * tempos[index] / 1000.0
