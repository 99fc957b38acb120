"""MusicXmlScoreParser: reads MusicXML text into a measure-indexed ScoreDocument."""

from __future__ import annotations

import logging
import math
import xml.etree.ElementTree as ET
from typing import Final

from etude.errors import MalformedXml
from etude.models import (
    DEFAULT_MICROS_PER_QUARTER,
    STEP_SEMITONES,
    Diagnostic,
    DiagnosticCode,
    Measure,
    ScoreDocument,
    ScoreEvent,
    ScoreNote,
    ScoreRest,
    TimeSignature,
)

logger = logging.getLogger(__name__)

MICROS_PER_MINUTE: Final[int] = 60_000_000


def _warn(sink: list[Diagnostic], code: DiagnosticCode, message: str) -> None:
    logger.warning(message)
    sink.append(Diagnostic(code, message))


class MusicXmlScoreParser:
    """
    Parse a partwise (or timewise) MusicXML document into a ScoreDocument.

    Global settings come from the first occurrence in the document only:

    - tempo from the first ``<sound tempo="...">``
    - divisions, key and time signature from the first ``<attributes>``

    Each part keeps its own ``current_time`` counter per measure, reset to 0 at
    the start of every measure. ``<backup>`` and ``<forward>`` move it, and every
    non-chord ``<note>`` advances it by its duration. Chord members share the
    onset of the note that opened the chord and never advance the counter, so a
    chord moves the clock exactly once.

    Malformed sub-elements (a pitch without a step, a non-numeric duration)
    are skipped with a diagnostic on the returned document; only an XML-level
    parse error fails the whole call.
    """

    DEFAULT_DIVISIONS = 1
    DEFAULT_TIME_SIGNATURE = TimeSignature(4, 4)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _int_text(
        self,
        parent: ET.Element,
        path: str,
        default: int,
        sink: list[Diagnostic],
        positive: bool = False,
    ) -> int:
        text = parent.findtext(path)
        if text is None:
            return default
        try:
            number = float(text.strip())
            if not math.isfinite(number):
                raise ValueError(number)
            value = int(number)
        except (ValueError, OverflowError):
            _warn(sink, DiagnosticCode.INVALID_ATTRIBUTE, f"<{path}> value {text!r} is not a number")
            return default
        if positive and value <= 0:
            _warn(sink, DiagnosticCode.INVALID_ATTRIBUTE, f"<{path}> must be positive, got {value}")
            return default
        return value

    def _read_tempo(self, root: ET.Element, sink: list[Diagnostic]) -> int:
        for sound in root.iter("sound"):
            tempo = sound.get("tempo")
            if tempo is None:
                continue
            try:
                bpm = float(tempo)
            except ValueError:
                bpm = 0.0
            ratio = MICROS_PER_MINUTE / bpm if math.isfinite(bpm) and bpm > 0 else 0.0
            micros = round(ratio) if math.isfinite(ratio) else 0
            if micros < 1:
                _warn(sink, DiagnosticCode.INVALID_ATTRIBUTE, f"ignoring sound tempo {tempo!r}")
                return DEFAULT_MICROS_PER_QUARTER
            return micros
        return DEFAULT_MICROS_PER_QUARTER

    def _read_attributes(self, root: ET.Element, document: ScoreDocument) -> None:
        attributes = root.find(".//attributes")
        if attributes is None:
            return
        sink = document.diagnostics
        document.divisions_per_quarter = self._int_text(
            attributes, ".//divisions", self.DEFAULT_DIVISIONS, sink, positive=True
        )
        document.key_fifths = self._int_text(attributes, ".//key/fifths", 0, sink)
        document.time_signature = TimeSignature(
            beats=self._int_text(
                attributes, ".//time/beats", self.DEFAULT_TIME_SIGNATURE.beats, sink, positive=True
            ),
            beat_unit=self._int_text(
                attributes,
                ".//time/beat-type",
                self.DEFAULT_TIME_SIGNATURE.beat_unit,
                sink,
                positive=True,
            ),
        )

    def _collect_parts(self, root: ET.Element) -> list[list[ET.Element]]:
        """Return, per part, the elements whose children are that part's measure content."""
        if root.tag == "score-timewise":
            by_part: dict[str, list[ET.Element]] = {}
            for measure in root.findall("measure"):
                for part in measure.findall("part"):
                    by_part.setdefault(part.get("id", ""), []).append(part)
            return list(by_part.values())
        return [part.findall("measure") for part in root.findall("part")]

    def _duration_of(self, element: ET.Element, sink: list[Diagnostic]) -> int:
        value = self._int_text(element, "duration", 0, sink)
        if value < 0:
            _warn(sink, DiagnosticCode.INVALID_ATTRIBUTE, f"negative duration {value} treated as 0")
            return 0
        return value

    def _read_note(
        self,
        pitch: ET.Element,
        duration: int,
        onset: int,
        is_chord: bool,
        part_index: int,
        where: str,
        sink: list[Diagnostic],
    ) -> ScoreNote | None:
        step = (pitch.findtext("step") or "").strip().upper()
        if step not in STEP_SEMITONES:
            _warn(sink, DiagnosticCode.SKIPPED_NOTE, f"{where}: pitch without a valid step {step!r}")
            return None

        octave_text = pitch.findtext("octave")
        try:
            octave = int(octave_text.strip()) if octave_text is not None else None
        except ValueError:
            octave = None
        if octave is None:
            _warn(sink, DiagnosticCode.SKIPPED_NOTE, f"{where}: pitch {step} has no usable octave")
            return None

        alter = self._int_text(pitch, "alter", 0, sink)
        return ScoreNote(
            step=step,
            octave=octave,
            alter=alter,
            duration_divisions=duration,
            onset_divisions=onset,
            is_chord_member=is_chord,
            part_index=part_index,
        )

    def _parse_measure(
        self, container: ET.Element, part_index: int, measure_index: int, sink: list[Diagnostic]
    ) -> list[ScoreEvent]:
        events: list[ScoreEvent] = []
        where = f"part {part_index + 1}, measure {measure_index + 1}"
        current_time = 0
        chord_onset = 0

        for child in container:
            if child.tag == "backup":
                current_time -= self._duration_of(child, sink)
                continue
            if child.tag == "forward":
                current_time += self._duration_of(child, sink)
                continue
            if child.tag != "note":
                continue

            duration = self._duration_of(child, sink)
            is_chord = child.find("chord") is not None
            onset = chord_onset if is_chord else current_time

            pitch = child.find("pitch")
            if pitch is not None:
                note = self._read_note(pitch, duration, onset, is_chord, part_index, where, sink)
                if note is not None:
                    events.append(note)
            elif child.find("rest") is not None and child.find("duration") is not None:
                events.append(ScoreRest(duration, onset, part_index))

            if not is_chord:
                chord_onset = current_time
                current_time += duration

        return events

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def parse(self, xml_text: str | bytes) -> ScoreDocument:
        """
        Parse MusicXML text into a ScoreDocument.

        Raises:
            MalformedXml: If the text is not well-formed XML.
        """
        try:
            root = ET.fromstring(xml_text)
        except ET.ParseError as exc:
            raise MalformedXml(f"MusicXML could not be parsed: {exc}") from exc

        document = ScoreDocument()
        document.tempo_micros_per_quarter = self._read_tempo(root, document.diagnostics)
        self._read_attributes(root, document)

        parts = self._collect_parts(root)
        measure_count = max((len(measures) for measures in parts), default=0)
        document.measures = [Measure(index=i) for i in range(measure_count)]

        for part_index, measures in enumerate(parts):
            for measure_index, container in enumerate(measures):
                document.measures[measure_index].events.extend(
                    self._parse_measure(container, part_index, measure_index, document.diagnostics)
                )

        logger.info(
            "parsed MusicXML: %d measures, %d parts, divisions=%d, tempo=%d us/q, time=%s",
            measure_count,
            len(parts),
            document.divisions_per_quarter,
            document.tempo_micros_per_quarter,
            document.time_signature,
        )
        return document
