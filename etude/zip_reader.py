"""ZipArchiveReader: pulls MusicXML members out of .mxl containers by local header scan."""

from __future__ import annotations

import logging
import struct
import xml.etree.ElementTree as ET
import zlib
from typing import Callable, Final

from etude.errors import NoScoreFound
from etude.models import Diagnostic, DiagnosticCode, RawContainerEntry

logger = logging.getLogger(__name__)

LOCAL_HEADER_SIGNATURE: Final[bytes] = b"PK\x03\x04"  # 0x04034b50 little-endian
DATA_DESCRIPTOR_SIGNATURE: Final[bytes] = b"PK\x07\x08"
LOCAL_HEADER_SIZE: Final[int] = 30
DATA_DESCRIPTOR_SIZE: Final[int] = 12  # crc32 + compressed size + uncompressed size

METHOD_STORED: Final[int] = 0
METHOD_DEFLATE: Final[int] = 8
FLAG_DATA_DESCRIPTOR: Final[int] = 0x0008

CONTAINER_MANIFEST: Final[str] = "META-INF/container.xml"
IGNORED_PREFIXES: Final[tuple[str, ...]] = ("META-INF/", "__MACOSX/")

XML_PROLOG: Final[bytes] = b"<?xml"
SCORE_END_TAGS: Final[tuple[str, ...]] = ("</score-partwise>", "</score-timewise>")
MAX_FALLBACK_WINDOW: Final[int] = 5_000_000

InflateFn = Callable[[bytes], bytes]


def inflate_raw(data: bytes) -> bytes:
    """Inflate a raw DEFLATE stream (no zlib or gzip wrapper)."""
    return zlib.decompress(data, -zlib.MAX_WBITS)


def _warn(sink: list[Diagnostic], code: DiagnosticCode, message: str) -> None:
    logger.warning(message)
    sink.append(Diagnostic(code, message))


class ZipArchiveReader:
    """
    Minimal ZIP reader that discovers members from their local file headers.

    The central directory is never consulted: the buffer is scanned forward for
    the ``PK\\x03\\x04`` signature and every header found yields one member.
    Unknown bytes between records are skipped, and a member that cannot be
    decompressed is returned raw (``decoded=False``) with a warning, so one
    bad member never aborts the scan.

    Args:
        inflate: Raw DEFLATE decompressor. ``None`` marks decompression as
                 unavailable; DEFLATE members are then passed through raw.
    """

    def __init__(self, inflate: InflateFn | None = inflate_raw) -> None:
        self.inflate = inflate

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _decode_member(
        self, name: str, method: int, payload: bytes, sink: list[Diagnostic]
    ) -> RawContainerEntry:
        if method == METHOD_STORED:
            return RawContainerEntry(name=name, data=payload)

        if method != METHOD_DEFLATE:
            _warn(
                sink,
                DiagnosticCode.DECOMPRESSION_FAILED,
                f"{name}: unsupported compression method {method}, keeping raw bytes",
            )
            return RawContainerEntry(name=name, data=payload, decoded=False)

        if self.inflate is None:
            _warn(
                sink,
                DiagnosticCode.DECOMPRESSION_UNAVAILABLE,
                f"{name}: no DEFLATE decompressor available, keeping raw bytes",
            )
            return RawContainerEntry(name=name, data=payload, decoded=False)

        try:
            return RawContainerEntry(name=name, data=self.inflate(payload))
        except Exception as exc:  # any decoder failure
            _warn(
                sink,
                DiagnosticCode.DECOMPRESSION_FAILED,
                f"{name}: decompression failed ({exc}), keeping raw bytes",
            )
            return RawContainerEntry(name=name, data=payload, decoded=False)

    def _read_streamed(
        self, name: str, data: bytes, data_start: int, sink: list[Diagnostic]
    ) -> tuple[RawContainerEntry, int]:
        """
        Inflate a member whose sizes were deferred to a trailing data descriptor.

        The streaming decompressor stops at the end of the DEFLATE stream, which
        gives the compressed length the local header left as zero.
        """
        if self.inflate is None:
            _warn(
                sink,
                DiagnosticCode.DECOMPRESSION_UNAVAILABLE,
                f"{name}: streamed member needs a DEFLATE decompressor, skipping",
            )
            return RawContainerEntry(name=name, data=b"", decoded=False), data_start

        decompressor = zlib.decompressobj(-zlib.MAX_WBITS)
        try:
            inflated = decompressor.decompress(data[data_start:])
        except zlib.error as exc:
            _warn(
                sink,
                DiagnosticCode.DECOMPRESSION_FAILED,
                f"{name}: decompression of streamed member failed ({exc})",
            )
            return RawContainerEntry(name=name, data=b"", decoded=False), data_start

        if not decompressor.eof:
            _warn(
                sink,
                DiagnosticCode.TRUNCATED_ENTRY,
                f"{name}: DEFLATE stream ends before its terminating block",
            )
            return RawContainerEntry(name=name, data=inflated, decoded=False), len(data)

        data_end = len(data) - len(decompressor.unused_data)
        if data[data_end : data_end + 4] == DATA_DESCRIPTOR_SIGNATURE:
            data_end += 4
        return RawContainerEntry(name=name, data=inflated), data_end + DATA_DESCRIPTOR_SIZE

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def scan(
        self, data: bytes, diagnostics: list[Diagnostic] | None = None
    ) -> list[RawContainerEntry]:
        """
        Return every member found in ``data``, in archive order.

        Args:
            data:        Raw container bytes.
            diagnostics: Optional list that receives warnings for members
                         that could not be decoded.
        """
        sink = diagnostics if diagnostics is not None else []
        entries: list[RawContainerEntry] = []
        size = len(data)
        offset = 0

        while size - offset >= 4:
            offset = data.find(LOCAL_HEADER_SIGNATURE, offset)
            if offset < 0:
                break
            if offset + LOCAL_HEADER_SIZE > size:
                _warn(
                    sink,
                    DiagnosticCode.TRUNCATED_ENTRY,
                    f"local header at offset {offset} is cut off by the end of the data",
                )
                break

            flags, method = struct.unpack_from("<HH", data, offset + 6)
            (compressed_size,) = struct.unpack_from("<I", data, offset + 18)
            name_length, extra_length = struct.unpack_from("<HH", data, offset + 26)

            name_start = offset + LOCAL_HEADER_SIZE
            name = data[name_start : name_start + name_length].decode("utf-8", errors="replace")
            data_start = name_start + name_length + extra_length

            if method == METHOD_DEFLATE and compressed_size == 0 and flags & FLAG_DATA_DESCRIPTOR:
                entry, data_end = self._read_streamed(name, data, data_start, sink)
            else:
                data_end = data_start + compressed_size
                if data_end > size:
                    _warn(
                        sink,
                        DiagnosticCode.TRUNCATED_ENTRY,
                        f"{name}: member data runs {data_end - size} bytes past the end",
                    )
                entry = self._decode_member(name, method, data[data_start:data_end], sink)

            logger.debug("zip member %r (%d bytes, method %d)", name, len(entry.data), method)
            entries.append(entry)
            offset = max(data_end, offset + 1)

        return entries


# ── Caller-level member selection ──────────────────────────────────────────────

def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _rootfile_path(manifest: RawContainerEntry, sink: list[Diagnostic]) -> str | None:
    if not manifest.decoded:
        return None
    try:
        root = ET.fromstring(manifest.data)
    except ET.ParseError as exc:
        _warn(sink, DiagnosticCode.CONTAINER_UNREADABLE, f"{CONTAINER_MANIFEST}: {exc}")
        return None
    for element in root.iter():
        if _local_name(element.tag) == "rootfile" and element.get("full-path"):
            return element.get("full-path")
    return None


def select_score_member(
    entries: list[RawContainerEntry], diagnostics: list[Diagnostic] | None = None
) -> RawContainerEntry | None:
    """
    Pick the primary score member of a container.

    Preference order: the ``rootfile`` named by ``META-INF/container.xml``,
    then the first decoded ``.xml`` member outside ``META-INF/`` and
    ``__MACOSX/``. Returns ``None`` when neither applies.
    """
    sink = diagnostics if diagnostics is not None else []
    by_name: dict[str, RawContainerEntry] = {}
    for entry in entries:
        by_name.setdefault(entry.name, entry)

    manifest = by_name.get(CONTAINER_MANIFEST)
    if manifest is not None:
        path = _rootfile_path(manifest, sink)
        target = by_name.get(path) if path else None
        if target is not None and target.decoded:
            return target
        if path:
            _warn(
                sink,
                DiagnosticCode.CONTAINER_UNREADABLE,
                f"container manifest points to {path!r}, which is missing or undecodable",
            )

    for entry in entries:
        if (
            entry.decoded
            and entry.name.lower().endswith(".xml")
            and not entry.name.startswith(IGNORED_PREFIXES)
        ):
            return entry
    return None


def find_embedded_xml(data: bytes) -> str | None:
    """
    Byte-pattern fallback: locate a MusicXML document anywhere in ``data``.

    Searches for the ``<?xml`` prolog and returns the text up to and including
    the first closing ``score-partwise`` (or ``score-timewise``) tag, looking at
    most ``MAX_FALLBACK_WINDOW`` bytes past the prolog. Returns ``None`` rather
    than raising when nothing is found.
    """
    start = data.find(XML_PROLOG)
    while start >= 0:
        window = data[start : start + MAX_FALLBACK_WINDOW].decode("utf-8", errors="replace")
        for end_tag in SCORE_END_TAGS:
            end = window.find(end_tag)
            if end >= 0:
                return window[: end + len(end_tag)]
        start = data.find(XML_PROLOG, start + 1)
    return None


def decode_xml_bytes(data: bytes) -> str:
    """Decode member bytes to text, honouring a UTF-16 byte-order mark."""
    if data.startswith((b"\xff\xfe", b"\xfe\xff")):
        return data.decode("utf-16", errors="replace")
    return data.decode("utf-8-sig", errors="replace")


def extract_score_xml(
    data: bytes,
    diagnostics: list[Diagnostic] | None = None,
    reader: ZipArchiveReader | None = None,
) -> str:
    """
    Return the MusicXML text stored in an ``.mxl`` container.

    Raises:
        NoScoreFound: If no member qualifies and the byte-pattern fallback
                      finds no document either.
    """
    sink = diagnostics if diagnostics is not None else []
    reader = reader if reader is not None else ZipArchiveReader()

    member: RawContainerEntry | None
    try:
        entries = reader.scan(data, sink)
        member = select_score_member(entries, sink)
    except (struct.error, zlib.error, ValueError) as exc:
        logger.warning("container scan failed: %s", exc)
        member = None

    if member is not None:
        text = decode_xml_bytes(member.data)
        if text.strip():
            logger.info("using container member %r (%d chars)", member.name, len(text))
            return text

    fallback = find_embedded_xml(data)
    if fallback is None:
        raise NoScoreFound("no MusicXML member found in container and no embedded XML document")

    _warn(
        sink,
        DiagnosticCode.FALLBACK_EXTRACTION,
        f"recovered {len(fallback)} chars of MusicXML by byte search",
    )
    return fallback
