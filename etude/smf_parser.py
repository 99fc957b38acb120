"""StandardMidiFileParser: decodes SMF bytes into millisecond-stamped note events."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from typing import Final

from etude.errors import InvalidHeader, PartialTrackDecode
from etude.models import (
    NOTE_OFF,
    NOTE_ON,
    Diagnostic,
    DiagnosticCode,
    MidiEvent,
    TempoMapEntry,
)
from etude.timing import build_tempo_map, ticks_to_ms

logger = logging.getLogger(__name__)

HEADER_MAGIC: Final[bytes] = b"MThd"
TRACK_MAGIC: Final[bytes] = b"MTrk"
MIN_HEADER_LENGTH: Final[int] = 6

META: Final[int] = 0xFF
SYSEX: Final[int] = 0xF0
SYSEX_ESCAPE: Final[int] = 0xF7
META_END_OF_TRACK: Final[int] = 0x2F
META_SET_TEMPO: Final[int] = 0x51

# Data bytes following each channel-message status nibble.
CHANNEL_DATA_LENGTHS: Final[dict[int, int]] = {
    0x80: 2,  # note off
    0x90: 2,  # note on
    0xA0: 2,  # polyphonic key pressure
    0xB0: 2,  # control change
    0xC0: 1,  # program change
    0xD0: 1,  # channel pressure
    0xE0: 2,  # pitch bend
}

VLQ_MAX_BYTES: Final[int] = 4
VLQ_LIMIT: Final[int] = 1 << 28


def encode_vlq(value: int) -> bytes:
    """Encode a non-negative integer below 2**28 as a MIDI variable-length quantity."""
    if not 0 <= value < VLQ_LIMIT:
        raise ValueError(f"value {value} cannot be encoded as a 4-byte VLQ")
    groups = [value & 0x7F]
    value >>= 7
    while value:
        groups.append((value & 0x7F) | 0x80)
        value >>= 7
    return bytes(reversed(groups))


def read_vlq(data: bytes, pos: int, end: int | None = None) -> tuple[int, int]:
    """
    Decode a variable-length quantity starting at ``pos``.

    Returns:
        ``(value, next_position)``.

    Raises:
        PartialTrackDecode: If the quantity runs past ``end`` or exceeds 4 bytes.
    """
    limit = len(data) if end is None else min(end, len(data))
    value = 0
    for _ in range(VLQ_MAX_BYTES):
        if pos >= limit:
            raise PartialTrackDecode("variable-length quantity runs past the end of the track")
        byte = data[pos]
        pos += 1
        value = (value << 7) | (byte & 0x7F)
        if not byte & 0x80:
            return value, pos
    raise PartialTrackDecode("variable-length quantity is longer than 4 bytes")


def _warn(sink: list[Diagnostic], code: DiagnosticCode, message: str) -> None:
    logger.warning(message)
    sink.append(Diagnostic(code, message))


@dataclass(frozen=True)
class TickEvent:
    """A note on/off message at an absolute per-track tick, before ms projection."""

    tick: int
    status: int
    data1: int
    data2: int


@dataclass
class SmfParseResult:
    events: list[MidiEvent]
    tempo_map: list[TempoMapEntry]
    division: int
    track_count: int
    format_type: int = 1
    diagnostics: list[Diagnostic] = field(default_factory=list)


class StandardMidiFileParser:
    """
    Parse a Standard MIDI File into note events with absolute millisecond times.

    Decoding rules
    --------------
    - Delta times are variable-length quantities; ticks accumulate per track.
    - Running status: a byte below 0x80 in status position reuses the previous
      channel status and is re-read as the first data byte.
    - Note on/off (0x8n, 0x9n) are recorded; other channel messages are skipped
      by their fixed data length.
    - Meta events (0xFF) are skipped by their VLQ length; set-tempo (0x51) feeds
      the tempo map. Sysex (0xF0, 0xF7) is skipped by its VLQ length. Both
      cancel running status.
    - Any other system status abandons the rest of that track.

    A track that cannot be decoded to its end keeps the events read so far and
    the next track resumes at its declared chunk boundary. A missing ``MTrk``
    signature stops track processing. Both are reported as diagnostics.
    """

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _read_meta(
        self,
        data: bytes,
        pos: int,
        end: int,
        tick: int,
        tempo_changes: list[tuple[int, int]],
        sink: list[Diagnostic],
    ) -> int:
        if pos >= end:
            raise PartialTrackDecode("meta event truncated before its type byte")
        meta_type = data[pos]
        length, pos = read_vlq(data, pos + 1, end)
        if pos + length > end:
            raise PartialTrackDecode(f"meta event 0x{meta_type:02X} overruns the track")

        if meta_type == META_SET_TEMPO and length >= 3:
            tempo = int.from_bytes(data[pos : pos + 3], "big")
            if tempo > 0:
                tempo_changes.append((tick, tempo))
            else:
                _warn(sink, DiagnosticCode.INVALID_ATTRIBUTE, f"ignoring zero tempo at tick {tick}")
        elif meta_type == META_END_OF_TRACK:
            return end
        return pos + length

    def _read_track(
        self,
        data: bytes,
        start: int,
        end: int,
        label: str,
        events: list[TickEvent],
        tempo_changes: list[tuple[int, int]],
        sink: list[Diagnostic],
    ) -> None:
        pos = start
        tick = 0
        running: int | None = None
        decoded = 0

        try:
            while pos < end:
                delta, pos = read_vlq(data, pos, end)
                tick += delta
                if pos >= end:
                    raise PartialTrackDecode("event truncated after its delta-time")

                status = data[pos]
                pos += 1
                if status < 0x80:
                    if running is None:
                        raise PartialTrackDecode(
                            f"data byte 0x{status:02X} at tick {tick} with no running status"
                        )
                    status = running
                    pos -= 1

                if status == META:
                    running = None
                    pos = self._read_meta(data, pos, end, tick, tempo_changes, sink)
                elif status in (SYSEX, SYSEX_ESCAPE):
                    running = None
                    length, pos = read_vlq(data, pos, end)
                    if pos + length > end:
                        raise PartialTrackDecode("sysex event overruns the track")
                    pos += length
                elif status > SYSEX:
                    _warn(
                        sink,
                        DiagnosticCode.UNSUPPORTED_STATUS,
                        f"{label}: system status 0x{status:02X} at tick {tick}, "
                        f"abandoning the rest of the track",
                    )
                    return
                else:
                    running = status
                    kind = status & 0xF0
                    size = CHANNEL_DATA_LENGTHS[kind]
                    if pos + size > end:
                        raise PartialTrackDecode(f"status 0x{status:02X} at tick {tick} is truncated")
                    if kind in (NOTE_OFF, NOTE_ON):
                        events.append(TickEvent(tick, status, data[pos], data[pos + 1]))
                        decoded += 1
                    pos += size
        except PartialTrackDecode as exc:
            _warn(
                sink,
                DiagnosticCode.PARTIAL_TRACK_DECODE,
                f"{label}: {exc}; keeping {decoded} note events decoded before it",
            )

    def _project(
        self, events: list[TickEvent], tempo_map: list[TempoMapEntry], division: int
    ) -> list[float]:
        if division & 0x8000:
            frames_per_second = 256 - (division >> 8)
            ticks_per_second = frames_per_second * (division & 0xFF)
            return [event.tick * 1000.0 / ticks_per_second for event in events]
        return ticks_to_ms([event.tick for event in events], tempo_map, division).tolist()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def parse(self, data: bytes) -> SmfParseResult:
        """
        Decode ``data`` into time-ordered note events and a tempo map.

        Raises:
            InvalidHeader: If the data does not start with a usable ``MThd`` chunk.
        """
        if data[:4] != HEADER_MAGIC:
            raise InvalidHeader("not a Standard MIDI File: missing MThd signature")
        if len(data) < 8 + MIN_HEADER_LENGTH:
            raise InvalidHeader("MThd header chunk is truncated")

        header_length, format_type, track_count, division = struct.unpack_from(">IHHH", data, 4)
        if header_length < MIN_HEADER_LENGTH:
            raise InvalidHeader(f"MThd header declares only {header_length} bytes")
        if division == 0 or (division & 0x8000 and division & 0xFF == 0):
            raise InvalidHeader("MThd header declares zero ticks per time unit")

        sink: list[Diagnostic] = []
        tick_events: list[TickEvent] = []
        tempo_changes: list[tuple[int, int]] = []

        pos = 8 + header_length
        for track_index in range(track_count):
            label = f"track {track_index + 1}/{track_count}"
            if len(data) - pos < 8 or data[pos : pos + 4] != TRACK_MAGIC:
                _warn(
                    sink,
                    DiagnosticCode.PARTIAL_TRACK_DECODE,
                    f"{label}: missing MTrk chunk, ignoring the remaining tracks",
                )
                break

            (length,) = struct.unpack_from(">I", data, pos + 4)
            start = pos + 8
            end = start + length
            if end > len(data):
                _warn(
                    sink,
                    DiagnosticCode.PARTIAL_TRACK_DECODE,
                    f"{label}: declares {length} bytes but only {len(data) - start} remain",
                )
            self._read_track(
                data, start, min(end, len(data)), label, tick_events, tempo_changes, sink
            )
            pos = end

        tick_events.sort(key=lambda event: event.tick)
        # SMPTE timing ignores tempo, so its map is informational only.
        tempo_map = build_tempo_map(tempo_changes, division if not division & 0x8000 else 1)
        times = self._project(tick_events, tempo_map, division)
        events = [
            MidiEvent(time_ms=time_ms, status=ev.status, data1=ev.data1, data2=ev.data2)
            for ev, time_ms in zip(tick_events, times)
        ]

        logger.info(
            "parsed SMF: format %d, %d tracks, division %d, %d note events, %d tempo entries",
            format_type,
            track_count,
            division,
            len(events),
            len(tempo_map),
        )
        return SmfParseResult(
            events=events,
            tempo_map=tempo_map,
            division=division,
            track_count=track_count,
            format_type=format_type,
            diagnostics=sink,
        )
