"""Unit tests for score timing resolution and tick-to-millisecond projection."""

import numpy as np
import pytest

from etude.models import (
    DiagnosticCode,
    Measure,
    ScoreDocument,
    ScoreNote,
    ScoreRest,
    TempoMapEntry,
    TimeSignature,
    TimedNote,
)
from etude.timing import ScoreTimingResolver, build_tempo_map, ticks_to_ms


def _sample_document(**overrides: object) -> ScoreDocument:
    doc = ScoreDocument(
        divisions_per_quarter=1,
        time_signature=TimeSignature(4, 4),
        tempo_micros_per_quarter=500_000,
        measures=[
            Measure(0, [ScoreNote("C", 4, 0, 1, 0), ScoreRest(1, 1), ScoreNote("E", 4, 0, 1, 2)]),
            Measure(1, [ScoreNote("G", 4, 0, 2, 1)]),
        ],
    )
    for name, value in overrides.items():
        setattr(doc, name, value)
    return doc


# ── ScoreTimingResolver ────────────────────────────────────────────────────────

def test_ms_per_division_and_measure() -> None:
    doc = _sample_document()
    assert ScoreTimingResolver.ms_per_division(doc) == pytest.approx(500.0)
    assert ScoreTimingResolver.ms_per_measure(doc) == pytest.approx(2000.0)


def test_ms_per_measure_uses_beat_unit() -> None:
    doc = _sample_document(divisions_per_quarter=2, time_signature=TimeSignature(6, 8))
    # 6/8 = 3 quarters = 6 divisions at 250 ms each
    assert ScoreTimingResolver.ms_per_measure(doc) == pytest.approx(1500.0)


def test_resolve_places_notes_by_measure_and_onset() -> None:
    notes = ScoreTimingResolver().resolve(_sample_document())
    assert notes == [
        TimedNote(60, 0.0, 500.0),
        TimedNote(64, 1000.0, 1500.0),
        TimedNote(67, 2500.0, 3500.0),
    ]


def test_resolve_follows_tempo() -> None:
    notes = ScoreTimingResolver().resolve(_sample_document(tempo_micros_per_quarter=1_000_000))
    assert notes[1] == TimedNote(64, 2000.0, 3000.0)


def test_resolve_drops_out_of_range_pitches() -> None:
    diagnostics: list = []
    doc = _sample_document(measures=[Measure(0, [ScoreNote("C", 10, 0, 1, 0), ScoreNote("C", 4, 0, 1, 0)])])
    notes = ScoreTimingResolver().resolve(doc, diagnostics)
    assert [n.midi_pitch for n in notes] == [60]
    assert diagnostics[0].code is DiagnosticCode.SKIPPED_NOTE


def test_resolve_clamps_negative_onsets() -> None:
    doc = _sample_document(measures=[Measure(0, [ScoreNote("C", 4, 0, 2, -1)])])
    (note,) = ScoreTimingResolver().resolve(doc)
    assert note.start_ms == 0.0
    assert note.end_ms == pytest.approx(500.0)


# ── Tempo map ──────────────────────────────────────────────────────────────────

def test_tempo_map_defaults_to_120_bpm() -> None:
    assert build_tempo_map([], 480) == [TempoMapEntry(0, 500_000, 0.0)]


def test_tempo_map_inserts_default_before_first_change() -> None:
    tempo_map = build_tempo_map([(960, 1_000_000)], 480)
    assert [e.tick for e in tempo_map] == [0, 960]
    assert tempo_map[1].cumulative_ms == pytest.approx(1000.0)


def test_tempo_map_change_at_zero_replaces_default() -> None:
    tempo_map = build_tempo_map([(0, 400_000)], 480)
    assert tempo_map == [TempoMapEntry(0, 400_000, 0.0)]


def test_tempo_map_is_sorted_and_cumulative_non_decreasing() -> None:
    tempo_map = build_tempo_map([(1920, 250_000), (480, 1_000_000), (480, 750_000)], 480)
    assert [e.tick for e in tempo_map] == [0, 480, 480, 1920]
    cumulative = [e.cumulative_ms for e in tempo_map]
    assert cumulative == sorted(cumulative)
    # 480 ticks at 500000 us, then 1440 ticks at the later 750000 us entry
    assert tempo_map[-1].cumulative_ms == pytest.approx(500.0 + 3 * 750.0)


def test_ticks_to_ms_single_tempo() -> None:
    tempo_map = build_tempo_map([], 480)
    np.testing.assert_allclose(ticks_to_ms([0, 240, 480, 960], tempo_map, 480), [0.0, 250.0, 500.0, 1000.0])


def test_ticks_to_ms_across_tempo_change() -> None:
    tempo_map = build_tempo_map([(480, 1_000_000)], 480)
    np.testing.assert_allclose(ticks_to_ms([480, 720, 960], tempo_map, 480), [500.0, 1000.0, 1500.0])


def test_ticks_to_ms_last_entry_at_same_tick_wins() -> None:
    tempo_map = build_tempo_map([(0, 1_000_000), (0, 250_000)], 480)
    np.testing.assert_allclose(ticks_to_ms([480], tempo_map, 480), [250.0])


def test_ticks_to_ms_empty() -> None:
    assert ticks_to_ms([], build_tempo_map([], 96), 96).size == 0
