"""LED strip protocol: maps note events to per-LED colour lines.

The strip runs two LEDs per piano key starting at A0 (MIDI 21), and the
controller accepts one ASCII command per line:

    <index>,<red>,<green>,<blue>,<brightness>\\n   set one LED (brightness 0-100)
    R\\n                                           turn every LED off

Lines are fire-and-forget; the controller sends no acknowledgement.
"""

from __future__ import annotations

import colorsys
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Final

from etude.models import MidiEvent

RESET_LINE: Final[str] = "R\n"

LOWEST_KEY: Final[int] = 21  # A0
HIGHEST_KEY: Final[int] = 108  # C8
LEDS_PER_KEY: Final[int] = 2

# 1 marks a black key, indexed by pitch class from C.
BLACK_KEY_PATTERN: Final[tuple[int, ...]] = (0, 1, 0, 1, 0, 0, 1, 0, 1, 0, 1, 0)

_HEX_COLOR = re.compile(r"^#([0-9a-fA-F]{6})$")

Rgb = tuple[int, int, int]


def is_black_key(pitch: int) -> bool:
    return BLACK_KEY_PATTERN[pitch % 12] == 1


def parse_hex_color(value: str) -> Rgb:
    """Parse ``#rrggbb`` into an RGB triple.

    Raises:
        ValueError: If ``value`` is not a six-digit hex colour.
    """
    match = _HEX_COLOR.match(value.strip())
    if not match:
        raise ValueError(f"Invalid colour {value!r}; expected #rrggbb.")
    digits = match.group(1)
    return int(digits[0:2], 16), int(digits[2:4], 16), int(digits[4:6], 16)


def sweep_pitches(low: int = LOWEST_KEY, high: int = HIGHEST_KEY) -> list[int]:
    """Every key from ``low`` up to ``high`` and back down, for a hardware check."""
    return list(range(low, high + 1)) + list(range(high, low - 1, -1))


def rainbow_color(pitch: int) -> Rgb:
    """Fully saturated hue chosen by pitch class, C = red."""
    red, green, blue = colorsys.hls_to_rgb((pitch % 12) / 12, 0.5, 1.0)
    return int(red * 255 + 0.5), int(green * 255 + 0.5), int(blue * 255 + 0.5)


@dataclass(frozen=True)
class LightingConfig:
    """
    Strip layout and colour settings.

    Attributes:
        led_count:       Number of addressable LEDs on the strip.
        octave_shift:    Whole octaves added to every pitch before mapping.
        transpose:       Semitones added to every pitch before mapping.
        white_key_color: ``#rrggbb`` used for natural keys.
        black_key_color: ``#rrggbb`` used for sharps and flats.
        brightness:      Percentage sent with every lit LED, 0-100.
        rainbow:         Colour by pitch class instead of key colour.
    """

    led_count: int = 288
    octave_shift: int = 0
    transpose: int = 0
    white_key_color: str = "#e5c68a"
    black_key_color: str = "#917846"
    brightness: int = 50
    rainbow: bool = False

    def __post_init__(self) -> None:
        if self.led_count <= 0:
            raise ValueError(f"led_count must be positive, got {self.led_count}.")
        if not 0 <= self.brightness <= 100:
            raise ValueError(f"brightness must be 0-100, got {self.brightness}.")
        parse_hex_color(self.white_key_color)
        parse_hex_color(self.black_key_color)


@dataclass(frozen=True)
class LedCommand:
    index: int
    red: int = 0
    green: int = 0
    blue: int = 0
    brightness: int = 0

    def __post_init__(self) -> None:
        if self.index < 0:
            raise ValueError(f"LED index must be non-negative, got {self.index}.")
        for name in ("red", "green", "blue"):
            if not 0 <= getattr(self, name) <= 255:
                raise ValueError(f"{name} must be 0-255, got {getattr(self, name)}.")
        if not 0 <= self.brightness <= 100:
            raise ValueError(f"brightness must be 0-100, got {self.brightness}.")

    @classmethod
    def off(cls, index: int) -> LedCommand:
        return cls(index)

    def to_line(self) -> str:
        return f"{self.index},{self.red},{self.green},{self.blue},{self.brightness}\n"


class LedMapper:
    """Turns note on/off events into LedCommands for one strip configuration."""

    def __init__(self, config: LightingConfig | None = None) -> None:
        self.config = config or LightingConfig()
        self._white = parse_hex_color(self.config.white_key_color)
        self._black = parse_hex_color(self.config.black_key_color)

    def index_for(self, pitch: int) -> int | None:
        """LED index for ``pitch`` after shift and transpose, or None when off the strip."""
        cfg = self.config
        index = (pitch + cfg.octave_shift * 12 + cfg.transpose - LOWEST_KEY) * LEDS_PER_KEY
        if 0 <= index < cfg.led_count:
            return index
        return None

    def color_for(self, pitch: int) -> Rgb:
        if self.config.rainbow:
            return rainbow_color(pitch)
        return self._black if is_black_key(pitch) else self._white

    def command_for(self, event: MidiEvent) -> LedCommand | None:
        """
        Build the command for a note event.

        Note-on lights the key's LED; note-off (or note-on with velocity 0)
        darkens it. Returns None for other messages and for pitches that map
        off the strip.
        """
        if not (event.is_note_on or event.is_note_off):
            return None
        index = self.index_for(event.pitch)
        if index is None:
            return None
        if event.is_note_off:
            return LedCommand.off(index)
        red, green, blue = self.color_for(event.pitch)
        return LedCommand(index, red, green, blue, self.config.brightness)

    def lines_for(self, events: Iterable[MidiEvent], timestamps: bool = False) -> Iterator[str]:
        """Protocol lines for ``events``, optionally prefixed with the event time in ms."""
        for event in events:
            command = self.command_for(event)
            if command is None:
                continue
            prefix = f"{event.time_ms:.1f} " if timestamps else ""
            yield prefix + command.to_line()
