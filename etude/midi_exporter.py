"""MidiExporter: writes a ConversionResult's note pairs back out as a Standard MIDI File."""

from __future__ import annotations

from pathlib import Path

from midiutil import MIDIFile

from etude.models import ConversionResult, NotePair

# midiutil writes Format 1 files with its own conductor track in front and
# routes tempo events there. Track indices passed to it count note tracks only.
TRACK_NOTES = 0

CHANNEL = 0


class MidiExporter:
    """
    Writes note pairs to a two-track MIDI file.

    Track layout (Format 1)
    -----------------------
    Track 0: conductor track (tempo only, no notes)
    Track 1: every note pair, on channel 0, named after ``track_name``

    Timing
    ------
    Note pairs are absolute milliseconds. They are converted to beats at the
    export tempo using ``beats = ms / 1000 * (tempo / 60)``, so playback at
    that tempo reproduces the original timing whatever the score declared.
    """

    DEFAULT_TEMPO = 120      # BPM
    DEFAULT_VELOCITY = 100   # Same velocity the merger emits
    TICKS_PER_QUARTER = 960

    def __init__(
        self,
        tempo: int = DEFAULT_TEMPO,
        velocity: int = DEFAULT_VELOCITY,
        track_name: str = "Piano",
    ) -> None:
        """
        Args:
            tempo:      Tempo written to the conductor track, in beats per minute.
            velocity:   Note-on velocity for every note.
            track_name: Name of the note track.
        """
        if tempo <= 0:
            raise ValueError(f"tempo must be positive, got {tempo}.")
        self.tempo = tempo
        self.velocity = velocity
        self.track_name = track_name

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _ms_to_beats(self, ms: float) -> float:
        return ms / 1000.0 * (self.tempo / 60.0)

    def _build(self, note_pairs: list[NotePair]) -> MIDIFile:
        midi = MIDIFile(
            numTracks=1,
            removeDuplicates=False,
            deinterleave=False,
            ticks_per_quarternote=self.TICKS_PER_QUARTER,
        )
        midi.addTempo(TRACK_NOTES, 0, self.tempo)
        midi.addTrackName(TRACK_NOTES, 0, self.track_name)

        for pair in note_pairs:
            duration = pair.end_ms - pair.start_ms
            if duration <= 0:
                continue
            midi.addNote(
                track=TRACK_NOTES,
                channel=CHANNEL,
                pitch=pair.pitch,
                time=self._ms_to_beats(pair.start_ms),
                duration=self._ms_to_beats(duration),
                volume=self.velocity,
            )
        return midi

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def export(self, result: ConversionResult, output_path: str | Path) -> int:
        """
        Render the result's note pairs to a Standard MIDI File.

        Zero-length notes are left out.

        Args:
            result:      Output of ScoreConverter.
            output_path: Destination file path (e.g. "output.mid").

        Returns:
            The number of notes written.

        Raises:
            OSError: If the output file cannot be opened for writing.
        """
        written = [pair for pair in result.note_pairs if pair.end_ms > pair.start_ms]
        midi = self._build(written)
        with open(output_path, "wb") as f:
            midi.writeFile(f)
        return len(written)
