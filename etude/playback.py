"""Playback scheduling over a time-ordered MidiEvent list.

The session is an immutable value; every operation returns a new one. Wall
clock readings are passed in as ``now_ms`` so the scheduling stays pure and a
caller drives it from whatever loop or timer it has.

Timing model: while playing, ``position = (now - anchor) * rate``. Changing
rate or position while playing re-anchors so the position stays continuous.
"""

from __future__ import annotations

from bisect import bisect_left
from collections.abc import Sequence
from dataclasses import dataclass, replace

from etude.models import MidiEvent

MIN_RATE = 0.25
MAX_RATE = 4.0
CHORD_WINDOW_MS = 50.0


@dataclass(frozen=True)
class PlaybackSession:
    """
    Attributes:
        position_ms: Current position in the piece.
        rate:        Playback speed multiplier, 0.25 to 4.0.
        next_index:  Index of the first event not yet delivered.
        anchor_ms:   Wall-clock time at which position 0 would have played, or
                     None while paused.
    """

    position_ms: float = 0.0
    rate: float = 1.0
    next_index: int = 0
    anchor_ms: float | None = None

    @property
    def is_playing(self) -> bool:
        return self.anchor_ms is not None


@dataclass(frozen=True)
class ChordTarget:
    """The notes a learner must play next, and where playback resumes after them."""

    time_ms: float
    pitches: tuple[int, ...]
    start_index: int
    end_index: int


def _anchor(position_ms: float, rate: float, now_ms: float) -> float:
    return now_ms - position_ms / rate


def first_note_ms(events: Sequence[MidiEvent]) -> float:
    """Time of the first sounding note-on, or 0 if there is none."""
    return next((event.time_ms for event in events if event.is_note_on), 0.0)


def start(session: PlaybackSession, events: Sequence[MidiEvent], now_ms: float) -> PlaybackSession:
    """
    Start (or resume) playback at the session's position.

    Starting from 0 jumps to the first note-on so a leading rest is not
    waited out. An empty event list leaves the session stopped.
    """
    if not events:
        return session
    position = session.position_ms
    if position == 0:
        position = first_note_ms(events)
    return replace(session, position_ms=position, anchor_ms=_anchor(position, session.rate, now_ms))


def pause(session: PlaybackSession) -> PlaybackSession:
    return replace(session, anchor_ms=None)


def due_events(
    events: Sequence[MidiEvent], session: PlaybackSession, now_ms: float
) -> tuple[list[MidiEvent], PlaybackSession]:
    """
    Return every undelivered event whose time has been reached, and the advanced session.

    A paused session returns no events and is unchanged.
    """
    if session.anchor_ms is None:
        return [], session

    position = (now_ms - session.anchor_ms) * session.rate
    index = session.next_index
    due: list[MidiEvent] = []
    while index < len(events) and events[index].time_ms <= position:
        due.append(events[index])
        index += 1
    return due, replace(session, position_ms=position, next_index=index)


def seek(
    session: PlaybackSession, events: Sequence[MidiEvent], position_ms: float, now_ms: float
) -> PlaybackSession:
    """
    Move to ``position_ms``; the next event is the first at or after it.

    Seeking past the last event leaves nothing to deliver.
    """
    index = bisect_left(events, position_ms, key=lambda event: event.time_ms)
    anchor = _anchor(position_ms, session.rate, now_ms) if session.is_playing else None
    return replace(session, position_ms=position_ms, next_index=index, anchor_ms=anchor)


def skip(
    session: PlaybackSession,
    events: Sequence[MidiEvent],
    delta_ms: float,
    total_ms: float,
    now_ms: float,
) -> PlaybackSession:
    """Seek relative to the current position, clamped to ``[0, total_ms]``."""
    target = min(max(session.position_ms + delta_ms, 0.0), total_ms)
    return seek(session, events, target, now_ms)


def _with_rate(session: PlaybackSession, rate: float, now_ms: float) -> PlaybackSession:
    anchor = _anchor(session.position_ms, rate, now_ms) if session.is_playing else None
    return replace(session, rate=rate, anchor_ms=anchor)


def change_speed(session: PlaybackSession, delta: float, now_ms: float) -> PlaybackSession:
    """Adjust the rate by ``delta``, clamped to ``[0.25, 4.0]``."""
    rate = min(max(session.rate + delta, MIN_RATE), MAX_RATE)
    return _with_rate(session, rate, now_ms)


def reset_speed(session: PlaybackSession, now_ms: float) -> PlaybackSession:
    return _with_rate(session, 1.0, now_ms)


def is_finished(session: PlaybackSession, total_ms: float) -> bool:
    return session.position_ms >= total_ms


# ── Learning mode ──────────────────────────────────────────────────────────────

def next_chord(
    events: Sequence[MidiEvent], index: int, window_ms: float = CHORD_WINDOW_MS
) -> ChordTarget | None:
    """
    Find the next chord a learner has to play, starting the search at ``index``.

    The chord is every note-on within ``window_ms`` of the first note-on at or
    after ``index``. ``end_index`` is the first event past that window, which is
    where the search continues once the chord has been played. Returns None
    when no note-on remains.
    """
    first = next(
        (i for i in range(max(index, 0), len(events)) if events[i].is_note_on),
        None,
    )
    if first is None:
        return None

    target_time = events[first].time_ms
    start_index = bisect_left(events, target_time, key=lambda event: event.time_ms)
    pitches: list[int] = []
    cursor = start_index
    while cursor < len(events) and abs(events[cursor].time_ms - target_time) < window_ms:
        if events[cursor].is_note_on:
            pitches.append(events[cursor].pitch)
        cursor += 1
    return ChordTarget(
        time_ms=target_time, pitches=tuple(pitches), start_index=start_index, end_index=cursor
    )


@dataclass(frozen=True)
class LearningSession:
    """
    Progress through a piece one chord at a time.

    Attributes:
        target:    The chord being waited for, or None once the piece is done.
        remaining: Pitches of ``target`` not yet played, in score order.
    """

    target: ChordTarget | None
    remaining: tuple[int, ...] = ()

    @property
    def is_complete(self) -> bool:
        return self.target is None

    @property
    def position_ms(self) -> float | None:
        return self.target.time_ms if self.target is not None else None


def _learning_at(events: Sequence[MidiEvent], index: int) -> LearningSession:
    target = next_chord(events, index)
    return LearningSession(target, target.pitches if target is not None else ())


def begin_learning(events: Sequence[MidiEvent], index: int = 0) -> LearningSession:
    """Wait for the first chord at or after ``index``."""
    return _learning_at(events, index)


def accept_note(
    session: LearningSession, events: Sequence[MidiEvent], pitch: int
) -> LearningSession:
    """
    Record one played note-on.

    A pitch in the chord is ticked off once per press; a chord that lists the
    same pitch twice needs it played twice. Wrong notes leave the session
    unchanged. When the last pitch is played the session moves on to the
    next chord after the current one.
    """
    if session.target is None or pitch not in session.remaining:
        return session
    remaining = list(session.remaining)
    remaining.remove(pitch)
    if remaining:
        return replace(session, remaining=tuple(remaining))
    return _learning_at(events, session.target.end_index)
