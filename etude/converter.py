"""ScoreConverter: one entry point from file bytes to the common event stream."""

from __future__ import annotations

import logging
from pathlib import Path

from etude.errors import UnsupportedFormat
from etude.event_merger import EventMerger, total_duration
from etude.models import ConversionResult, Diagnostic
from etude.musicxml_parser import MusicXmlScoreParser
from etude.score_adapters import ScoreSource, resolve_beats
from etude.smf_parser import StandardMidiFileParser
from etude.timing import ScoreTimingResolver
from etude.zip_reader import ZipArchiveReader, extract_score_xml

logger = logging.getLogger(__name__)


class ScoreConverter:
    """
    Dispatches a file to the MXL, MusicXML or Standard MIDI File pipeline.

    Score inputs run ZIP extraction (MXL only), MusicXML parsing, timing
    resolution and merging. MIDI inputs are decoded as-is and only paired.
    Every diagnostic raised along the way is collected on the result.
    """

    MXL_EXTENSIONS = frozenset({".mxl"})
    XML_EXTENSIONS = frozenset({".xml", ".musicxml"})
    MIDI_EXTENSIONS = frozenset({".mid", ".midi"})

    def __init__(
        self,
        zip_reader: ZipArchiveReader | None = None,
        xml_parser: MusicXmlScoreParser | None = None,
        timing: ScoreTimingResolver | None = None,
        smf_parser: StandardMidiFileParser | None = None,
        merger: EventMerger | None = None,
    ) -> None:
        self._zip_reader = zip_reader or ZipArchiveReader()
        self._xml_parser = xml_parser or MusicXmlScoreParser()
        self._timing = timing or ScoreTimingResolver()
        self._smf_parser = smf_parser or StandardMidiFileParser()
        self._merger = merger or EventMerger()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _from_xml(self, xml_text: str | bytes, diagnostics: list[Diagnostic]) -> ConversionResult:
        document = self._xml_parser.parse(xml_text)
        diagnostics.extend(document.diagnostics)
        notes = self._timing.resolve(document, diagnostics)
        merged = self._merger.merge(notes)
        return ConversionResult(
            events=merged.events,
            note_pairs=merged.note_pairs,
            total_duration_ms=merged.total_duration_ms,
            diagnostics=diagnostics,
        )

    def _from_midi(self, data: bytes, diagnostics: list[Diagnostic]) -> ConversionResult:
        parsed = self._smf_parser.parse(data)
        diagnostics.extend(parsed.diagnostics)
        return ConversionResult(
            events=parsed.events,
            note_pairs=self._merger.pair(parsed.events),
            total_duration_ms=total_duration(parsed.events),
            diagnostics=diagnostics,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def convert_bytes(self, name: str, data: bytes) -> ConversionResult:
        """
        Convert the contents of a file, choosing the pipeline from ``name``'s extension.

        Args:
            name: File name or path; only its extension is used.
            data: Raw file contents.

        Returns:
            A ConversionResult with ``source_format`` set to ``"mxl"``,
            ``"musicxml"`` or ``"midi"``.

        Raises:
            UnsupportedFormat: If the extension is not a known input format.
            ConversionError: Any terminal failure from the chosen pipeline.
        """
        suffix = Path(name).suffix.lower()
        diagnostics: list[Diagnostic] = []

        if suffix in self.MXL_EXTENSIONS:
            xml_text = extract_score_xml(data, diagnostics, reader=self._zip_reader)
            result = self._from_xml(xml_text, diagnostics)
            result.source_format = "mxl"
        elif suffix in self.XML_EXTENSIONS:
            result = self._from_xml(data, diagnostics)
            result.source_format = "musicxml"
        elif suffix in self.MIDI_EXTENSIONS:
            result = self._from_midi(data, diagnostics)
            result.source_format = "midi"
        else:
            raise UnsupportedFormat(f"unsupported file type {suffix or '(none)'!r} for {name}")

        logger.info(
            "converted %s: %d events, %d note pairs, %.0f ms, %d diagnostics",
            name,
            len(result.events),
            len(result.note_pairs),
            result.total_duration_ms,
            len(result.diagnostics),
        )
        return result

    def convert_file(self, path: str | Path) -> ConversionResult:
        """Read ``path`` from disk and convert it."""
        path = Path(path)
        return self.convert_bytes(path.name, path.read_bytes())

    def convert_source(self, source: ScoreSource, bpm: float | None = None) -> ConversionResult:
        """
        Convert any score object exposed through ScoreSource, such as a music21 stream.

        ``bpm`` overrides the tempo the source declares.
        """
        diagnostics: list[Diagnostic] = []
        merged = self._merger.merge(resolve_beats(source, bpm, diagnostics))
        logger.info("converted %s: %d events", type(source).__name__, len(merged.events))
        return ConversionResult(
            events=merged.events,
            note_pairs=merged.note_pairs,
            total_duration_ms=merged.total_duration_ms,
            source_format="score-object",
            diagnostics=diagnostics,
        )
