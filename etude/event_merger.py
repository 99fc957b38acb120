"""EventMerger: deduplicates timed notes and emits sorted note-on/note-off events."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from dataclasses import dataclass

from etude.models import NOTE_OFF, NOTE_ON, MidiEvent, NotePair, TimedNote

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    events: list[MidiEvent]
    note_pairs: list[NotePair]
    total_duration_ms: float


def total_duration(events: list[MidiEvent]) -> float:
    """Timestamp of the last event, or 0 for an empty list."""
    return events[-1].time_ms if events else 0.0


class EventMerger:
    """
    Collapses coincident notes and renders the survivors as MIDI events.

    Multi-staff and multi-part scores often notate the same pitch at the same
    instant more than once. Notes are grouped by start time to the nearest
    0.01 ms (halves round up, so 0.125 keys as 0.13) and by pitch. Only the
    longest of each group survives; on equal length the first one seen is kept.

    Each survivor becomes a note-on ``(0x90, pitch, 100)`` at its start and a
    note-off ``(0x80, pitch, 0)`` at its end. Events are stable-sorted by time,
    so simultaneous events keep their emission order.
    """

    NOTE_VELOCITY = 100
    TIME_KEY_SCALE = 100

    @classmethod
    def time_key(cls, start_ms: float) -> float:
        return math.floor(start_ms * cls.TIME_KEY_SCALE + 0.5) / cls.TIME_KEY_SCALE

    def _deduplicate(self, notes: Iterable[TimedNote]) -> list[TimedNote]:
        # Groups keep first-seen order by time key, then by pitch within a time.
        by_time: dict[float, dict[int, TimedNote]] = {}
        for note in notes:
            at_time = by_time.setdefault(self.time_key(note.start_ms), {})
            existing = at_time.get(note.midi_pitch)
            if existing is None or note.duration_ms > existing.duration_ms:
                at_time[note.midi_pitch] = note
        return [note for at_time in by_time.values() for note in at_time.values()]

    def merge(self, notes: Iterable[TimedNote]) -> MergeResult:
        """Deduplicate ``notes`` and return sorted events, note pairs and total length."""
        notes = list(notes)
        survivors = self._deduplicate(notes)

        events: list[MidiEvent] = []
        pairs: list[NotePair] = []
        for note in survivors:
            events.append(MidiEvent(note.start_ms, NOTE_ON, note.midi_pitch, self.NOTE_VELOCITY))
            events.append(MidiEvent(note.end_ms, NOTE_OFF, note.midi_pitch, 0))
            pairs.append(NotePair(note.midi_pitch, note.start_ms, note.end_ms))

        events.sort(key=lambda event: event.time_ms)

        logger.info(
            "merged %d notes into %d unique (%d events, %.0f ms)",
            len(notes),
            len(survivors),
            len(events),
            total_duration(events),
        )
        return MergeResult(events=events, note_pairs=pairs, total_duration_ms=total_duration(events))

    def pair(self, events: Iterable[MidiEvent]) -> list[NotePair]:
        """
        Build the note-pair table for an already time-ordered event stream.

        A note-on opens a pending note for its pitch (a second note-on for the
        same pitch restarts it); the next note-off, or note-on with velocity 0,
        for that pitch closes it. Channels are not distinguished, and notes left
        open at the end are dropped.
        """
        pending: dict[int, float] = {}
        pairs: list[NotePair] = []
        for event in events:
            if event.is_note_on:
                pending[event.pitch] = event.time_ms
            elif event.is_note_off and event.pitch in pending:
                pairs.append(NotePair(event.pitch, pending.pop(event.pitch), event.time_ms))

        if pending:
            logger.debug("dropping %d unterminated notes", len(pending))
        return pairs
