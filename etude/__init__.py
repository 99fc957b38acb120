"""Etude: MusicXML and Standard MIDI File to timed note-event conversion."""

__version__ = "0.3.0"
