"""End-to-end tests for ScoreConverter across the three input formats."""

import io
import struct
import zipfile

import pytest
from midiutil import MIDIFile

from etude.converter import ScoreConverter
from etude.errors import InvalidHeader, MalformedXml, UnsupportedFormat
from etude.models import DiagnosticCode, MidiEvent, NotePair

# C4 quarter, quarter rest, E4 quarter, quarter rest at 120 BPM in 4/4.
EXAMPLE_SCORE = """<?xml version="1.0" encoding="UTF-8"?>
<score-partwise version="3.1">
  <part-list><score-part id="P1"><part-name>Piano</part-name></score-part></part-list>
  <part id="P1">
    <measure number="1">
      <attributes>
        <divisions>1</divisions>
        <key><fifths>0</fifths></key>
        <time><beats>4</beats><beat-type>4</beat-type></time>
      </attributes>
      <direction><sound tempo="120"/></direction>
      <note><pitch><step>C</step><octave>4</octave></pitch><duration>1</duration></note>
      <note><rest/><duration>1</duration></note>
      <note><pitch><step>E</step><octave>4</octave></pitch><duration>1</duration></note>
      <note><rest/><duration>1</duration></note>
    </measure>
  </part>
</score-partwise>
"""

CHORD_SCORE = """<score-partwise><part id="P1"><measure number="1">
  <attributes><divisions>2</divisions></attributes>
  <note><pitch><step>C</step><octave>4</octave></pitch><duration>2</duration></note>
  <note><chord/><pitch><step>E</step><octave>4</octave></pitch><duration>2</duration></note>
  <note><chord/><pitch><step>G</step><octave>4</octave></pitch><duration>2</duration></note>
  <note><pitch><step>D</step><octave>4</octave></pitch><duration>2</duration></note>
</measure></part></score-partwise>"""

CONTAINER_XML = (
    '<?xml version="1.0" encoding="UTF-8"?><container><rootfiles>'
    '<rootfile full-path="example.musicxml"/></rootfiles></container>'
)


def _sample_mxl(score: str = EXAMPLE_SCORE) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("META-INF/container.xml", CONTAINER_XML)
        archive.writestr("example.musicxml", score)
    return buffer.getvalue()


def _sample_smf() -> bytes:
    track = b"\x00\x90\x3c\x64\x83\x60\x80\x3c\x00\x00\xff\x2f\x00"  # delta 0x83 0x60 = 480
    return (
        b"MThd" + struct.pack(">IHHH", 6, 0, 1, 480)
        + b"MTrk" + struct.pack(">I", len(track)) + track
    )


def _assert_example_score(result) -> None:
    assert result.note_pairs == [NotePair(60, 0.0, 500.0), NotePair(64, 1000.0, 1500.0)]
    assert [(e.time_ms, e.status, e.pitch) for e in result.events] == [
        (0.0, 0x90, 60),
        (500.0, 0x80, 60),
        (1000.0, 0x90, 64),
        (1500.0, 0x80, 64),
    ]
    assert result.total_duration_ms == 1500.0


def test_musicxml_example() -> None:
    result = ScoreConverter().convert_bytes("example.musicxml", EXAMPLE_SCORE.encode())
    _assert_example_score(result)
    assert result.source_format == "musicxml"
    assert result.diagnostics == []


def test_xml_extension_is_musicxml() -> None:
    result = ScoreConverter().convert_bytes("EXAMPLE.XML", EXAMPLE_SCORE.encode())
    assert result.source_format == "musicxml"


def test_mxl_example() -> None:
    result = ScoreConverter().convert_bytes("example.mxl", _sample_mxl())
    _assert_example_score(result)
    assert result.source_format == "mxl"


def test_mxl_fallback_is_reported_on_result() -> None:
    damaged = b"\x00garbage\x00" + EXAMPLE_SCORE.strip().encode()
    result = ScoreConverter().convert_bytes("broken.mxl", damaged)
    _assert_example_score(result)
    assert [d.code for d in result.diagnostics] == [DiagnosticCode.FALLBACK_EXTRACTION]


def test_midi_example() -> None:
    result = ScoreConverter().convert_bytes("example.mid", _sample_smf())
    assert result.events == [MidiEvent(0.0, 0x90, 60, 100), MidiEvent(500.0, 0x80, 60, 0)]
    assert result.note_pairs == [NotePair(60, 0.0, 500.0)]
    assert result.total_duration_ms == 500.0
    assert result.source_format == "midi"


def test_midi_written_by_midiutil() -> None:
    midi = MIDIFile(1)
    midi.addTempo(0, 0, 120)
    midi.addNote(0, 0, 60, 0, 1, 100)
    midi.addNote(0, 0, 64, 1, 2, 100)
    buffer = io.BytesIO()
    midi.writeFile(buffer)

    result = ScoreConverter().convert_bytes("song.midi", buffer.getvalue())
    assert [(p.pitch, p.start_ms, p.end_ms) for p in result.note_pairs] == [
        (60, pytest.approx(0.0), pytest.approx(500.0)),
        (64, pytest.approx(500.0), pytest.approx(1500.0)),
    ]
    assert result.total_duration_ms == pytest.approx(1500.0)


def test_chord_groups_advance_clock_once() -> None:
    result = ScoreConverter().convert_bytes("chord.xml", CHORD_SCORE.encode())
    starts = {p.pitch: p.start_ms for p in result.note_pairs}
    assert starts == {60: 0.0, 64: 0.0, 67: 0.0, 62: 500.0}


def test_unknown_extension_raises() -> None:
    with pytest.raises(UnsupportedFormat):
        ScoreConverter().convert_bytes("song.pdf", b"%PDF")


def test_missing_extension_raises() -> None:
    with pytest.raises(UnsupportedFormat):
        ScoreConverter().convert_bytes("README", b"")


def test_terminal_errors_propagate() -> None:
    with pytest.raises(MalformedXml):
        ScoreConverter().convert_bytes("bad.musicxml", b"<score-partwise>")
    with pytest.raises(InvalidHeader):
        ScoreConverter().convert_bytes("bad.mid", b"not midi at all")


def test_conversion_errors_are_value_errors() -> None:
    with pytest.raises(ValueError):
        ScoreConverter().convert_bytes("song.wav", b"")


def test_convert_file_reads_from_disk(tmp_path: pytest.TempPathFactory) -> None:
    path = tmp_path / "example.mxl"  # type: ignore[operator]
    path.write_bytes(_sample_mxl())
    _assert_example_score(ScoreConverter().convert_file(path))


def test_to_dict_uses_json_contract() -> None:
    payload = ScoreConverter().convert_bytes("example.musicxml", EXAMPLE_SCORE.encode()).to_dict()
    assert set(payload) == {"events", "notePairs", "totalDurationMs"}
    assert payload["events"][0] == {"timeMs": 0.0, "statusByte": 0x90, "pitch": 60, "velocityOrZero": 100}
    assert payload["notePairs"][1] == {"pitch": 64, "startMs": 1000.0, "endMs": 1500.0}
    assert payload["totalDurationMs"] == 1500.0
