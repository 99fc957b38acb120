"""Exceptions raised when a file cannot be converted at all.

Recoverable problems are never raised; they are reported as
:class:`etude.models.Diagnostic` entries on the result instead.
"""


class ConversionError(ValueError):
    """Base class for terminal conversion failures."""


class MalformedXml(ConversionError):
    """The MusicXML text could not be parsed as XML."""


class NoScoreFound(ConversionError):
    """A container held no identifiable MusicXML member and the byte scan found nothing."""


class InvalidHeader(ConversionError):
    """The data does not start with a usable ``MThd`` header chunk."""


class UnsupportedFormat(ConversionError):
    """The file extension does not map to a known input format."""


class PartialTrackDecode(Exception):
    """A MIDI track stopped decoding early.

    Raised inside the SMF parser only; it is caught there and reported as a
    diagnostic so the remaining tracks still decode.
    """
