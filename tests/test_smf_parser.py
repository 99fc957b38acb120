"""Unit tests for StandardMidiFileParser and the VLQ helpers (files are hand-assembled)."""

import struct

import pytest

from etude.errors import InvalidHeader, PartialTrackDecode
from etude.models import DiagnosticCode, MidiEvent
from etude.smf_parser import StandardMidiFileParser, encode_vlq, read_vlq

END_OF_TRACK = b"\x00\xff\x2f\x00"


def _chunk(tag: bytes, body: bytes) -> bytes:
    return tag + struct.pack(">I", len(body)) + body


def _sample_smf(*tracks: bytes, division: int = 480, fmt: int = 1) -> bytes:
    header = _chunk(b"MThd", struct.pack(">HHH", fmt, len(tracks), division))
    return header + b"".join(_chunk(b"MTrk", track) for track in tracks)


def _tempo(micros: int) -> bytes:
    return b"\xff\x51\x03" + micros.to_bytes(3, "big")


def _parse(data: bytes):
    return StandardMidiFileParser().parse(data)


# ── VLQ ────────────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("value", [0, 1, 0x7F, 0x80, 0x3FFF, 0x4000, 0x1FFFFF, 0x200000, 2**28 - 1])
def test_vlq_round_trip(value: int) -> None:
    encoded = encode_vlq(value)
    assert read_vlq(encoded, 0) == (value, len(encoded))


def test_vlq_known_encodings() -> None:
    assert encode_vlq(0) == b"\x00"
    assert encode_vlq(0x80) == b"\x81\x00"
    assert encode_vlq(0x0FFFFFFF) == b"\xff\xff\xff\x7f"


def test_encode_vlq_rejects_out_of_range() -> None:
    with pytest.raises(ValueError):
        encode_vlq(2**28)
    with pytest.raises(ValueError):
        encode_vlq(-1)


def test_read_vlq_rejects_five_bytes() -> None:
    with pytest.raises(PartialTrackDecode):
        read_vlq(b"\x81\x81\x81\x81\x01", 0)


def test_read_vlq_stops_at_track_end() -> None:
    with pytest.raises(PartialTrackDecode):
        read_vlq(b"\x81\x00", 0, end=1)


# ── Note decoding ──────────────────────────────────────────────────────────────

def test_single_quarter_note_at_default_tempo() -> None:
    track = b"\x00\x90\x3c\x64" + encode_vlq(480) + b"\x80\x3c\x00" + END_OF_TRACK
    result = _parse(_sample_smf(track))
    assert result.events == [
        MidiEvent(0.0, 0x90, 60, 100),
        MidiEvent(500.0, 0x80, 60, 0),
    ]
    assert result.diagnostics == []
    assert result.division == 480
    assert result.track_count == 1


def test_running_status_reuses_previous_status() -> None:
    track = b"\x00\x90\x3c\x64" + b"\x00\x40\x50" + encode_vlq(240) + b"\x3c\x00\x00\x40\x00" + END_OF_TRACK
    events = _parse(_sample_smf(track)).events
    assert [(e.time_ms, e.status, e.pitch, e.velocity) for e in events] == [
        (0.0, 0x90, 60, 100),
        (0.0, 0x90, 64, 80),
        (250.0, 0x90, 60, 0),
        (250.0, 0x90, 64, 0),
    ]
    assert events[2].is_note_off


def test_channel_is_kept_in_status() -> None:
    track = b"\x00\x93\x3c\x64" + END_OF_TRACK
    (event,) = _parse(_sample_smf(track)).events
    assert event.status == 0x93
    assert event.is_note_on


def test_other_channel_messages_are_skipped() -> None:
    track = (
        b"\x00\xc0\x05"          # program change
        + b"\x00\xb0\x07\x64"    # control change
        + b"\x00\xa0\x3c\x10"    # polyphonic pressure
        + b"\x00\xd0\x20"        # channel pressure
        + b"\x00\xe0\x00\x40"    # pitch bend
        + b"\x00\x90\x3c\x64"
        + END_OF_TRACK
    )
    result = _parse(_sample_smf(track))
    assert [e.pitch for e in result.events] == [60]
    assert result.diagnostics == []


def test_sysex_is_skipped() -> None:
    track = b"\x00\xf0\x03\x7e\x7f\xf7" + b"\x00\x90\x3c\x64" + END_OF_TRACK
    assert [e.pitch for e in _parse(_sample_smf(track)).events] == [60]


def test_meta_event_cancels_running_status() -> None:
    track = b"\x00\x90\x3c\x64" + b"\x00\xff\x01\x02hi" + b"\x00\x3e\x64" + END_OF_TRACK
    result = _parse(_sample_smf(track))
    assert [e.pitch for e in result.events] == [60]
    assert result.diagnostics[0].code is DiagnosticCode.PARTIAL_TRACK_DECODE


def test_end_of_track_stops_reading() -> None:
    track = b"\x00\x90\x3c\x64" + END_OF_TRACK + b"\x00\x90\x3e\x64"
    assert [e.pitch for e in _parse(_sample_smf(track)).events] == [60]


# ── Tempo ──────────────────────────────────────────────────────────────────────

def test_set_tempo_changes_projection() -> None:
    track = b"\x00" + _tempo(1_000_000) + b"\x00\x90\x3c\x64" + encode_vlq(480) + b"\x80\x3c\x00" + END_OF_TRACK
    result = _parse(_sample_smf(track))
    assert [e.time_ms for e in result.events] == [0.0, 1000.0]
    assert [(t.tick, t.micros_per_quarter) for t in result.tempo_map] == [(0, 1_000_000)]


def test_conductor_track_tempo_applies_to_other_tracks() -> None:
    conductor = encode_vlq(480) + _tempo(250_000) + END_OF_TRACK
    notes = encode_vlq(960) + b"\x90\x3c\x64" + END_OF_TRACK
    result = _parse(_sample_smf(conductor, notes))
    # 480 ticks at 500 ms/quarter, then 480 at 250 ms/quarter
    assert result.events[0].time_ms == pytest.approx(750.0)


def test_zero_tempo_is_ignored() -> None:
    track = b"\x00" + _tempo(0) + encode_vlq(480) + b"\x90\x3c\x64" + END_OF_TRACK
    result = _parse(_sample_smf(track))
    assert result.events[0].time_ms == 500.0
    assert result.diagnostics[0].code is DiagnosticCode.INVALID_ATTRIBUTE


def test_tracks_are_merged_by_tick() -> None:
    first = encode_vlq(480) + b"\x90\x40\x64" + END_OF_TRACK
    second = b"\x00\x90\x3c\x64" + END_OF_TRACK
    events = _parse(_sample_smf(first, second)).events
    assert [e.pitch for e in events] == [60, 64]


def test_smpte_division_ignores_tempo() -> None:
    # 25 fps x 40 ticks per frame = 1000 ticks per second
    division = (0xE7 << 8) | 40
    track = b"\x00" + _tempo(1_000_000) + encode_vlq(500) + b"\x90\x3c\x64" + END_OF_TRACK
    result = _parse(_sample_smf(track, division=division))
    assert result.events[0].time_ms == pytest.approx(500.0)


# ── Damaged files ──────────────────────────────────────────────────────────────

def test_truncated_track_keeps_decoded_events_and_next_track() -> None:
    broken = b"\x00\x90\x3c\x64\x00\x90\x3e"
    intact = b"\x00\x90\x43\x64" + END_OF_TRACK
    result = _parse(_sample_smf(broken, intact))
    assert sorted(e.pitch for e in result.events) == [60, 67]
    assert result.diagnostics[0].code is DiagnosticCode.PARTIAL_TRACK_DECODE


def test_data_byte_without_running_status_abandons_track() -> None:
    track = b"\x00\x3c\x64" + END_OF_TRACK
    result = _parse(_sample_smf(track))
    assert result.events == []
    assert result.diagnostics[0].code is DiagnosticCode.PARTIAL_TRACK_DECODE


def test_unsupported_system_status_abandons_track() -> None:
    track = b"\x00\x90\x3c\x64" + b"\x00\xf2\x00\x00" + b"\x00\x90\x3e\x64" + END_OF_TRACK
    result = _parse(_sample_smf(track))
    assert [e.pitch for e in result.events] == [60]
    assert result.diagnostics[0].code is DiagnosticCode.UNSUPPORTED_STATUS


def test_missing_track_chunk_is_reported() -> None:
    data = _sample_smf(b"\x00\x90\x3c\x64" + END_OF_TRACK)
    data = data[:10] + b"\x00\x02" + data[12:]  # header claims two tracks
    result = _parse(data)
    assert [e.pitch for e in result.events] == [60]
    assert result.diagnostics[0].code is DiagnosticCode.PARTIAL_TRACK_DECODE


def test_track_length_past_end_of_file_is_reported() -> None:
    track = b"\x00\x90\x3c\x64" + END_OF_TRACK
    data = _sample_smf(track)
    data = data[:18] + struct.pack(">I", 1000) + data[22:]
    result = _parse(data)
    assert [e.pitch for e in result.events] == [60]
    assert result.diagnostics[0].code is DiagnosticCode.PARTIAL_TRACK_DECODE


def test_longer_header_chunk_is_honoured() -> None:
    header = _chunk(b"MThd", struct.pack(">HHH", 0, 1, 480) + b"\x00\x00")
    data = header + _chunk(b"MTrk", b"\x00\x90\x3c\x64" + END_OF_TRACK)
    result = _parse(data)
    assert [e.pitch for e in result.events] == [60]
    assert result.format_type == 0


@pytest.mark.parametrize(
    "data",
    [
        b"RIFF\x00\x00\x00\x06\x00\x01\x00\x01\x01\xe0",
        b"MThd\x00\x00\x00\x06\x00\x01",
        b"MThd\x00\x00\x00\x04\x00\x01\x00\x01\x01\xe0",
        b"MThd\x00\x00\x00\x06\x00\x01\x00\x01\x00\x00",
    ],
    ids=["bad-magic", "short-header", "header-length-too-small", "zero-division"],
)
def test_invalid_headers_raise(data: bytes) -> None:
    with pytest.raises(InvalidHeader):
        _parse(data)
