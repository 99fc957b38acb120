"""Etude CLI entry point."""

import json
import sys
import time
from pathlib import Path
from typing import IO, Any, Callable, Iterator, NoReturn

import click
import serial

from etude import __version__
from etude.converter import ScoreConverter
from etude.device import DEFAULT_BAUD_RATE, SerialLedWriter
from etude.errors import ConversionError
from etude.led_protocol import LedCommand, LedMapper, LightingConfig, parse_hex_color, sweep_pitches
from etude.logging_config import LoggingConfig
from etude.midi_exporter import MidiExporter
from etude.models import NOTE_ON, ConversionResult, MidiEvent
from etude.playback import (
    LearningSession,
    PlaybackSession,
    accept_note,
    begin_learning,
    due_events,
    is_finished,
    pause,
    seek,
    start,
)
from etude.score_adapters import Music21ScoreAdapter

TICK_SECONDS = 0.005


def _now_ms() -> float:
    return time.monotonic() * 1000.0


def _fail(message: str) -> NoReturn:
    click.echo(f"  ERROR: {message}", err=True)
    sys.exit(1)


def _load(path: str, reader: str = "builtin", bpm: float | None = None) -> ConversionResult:
    """Convert ``path``, exiting with status 1 on any terminal failure."""
    converter = ScoreConverter()
    try:
        if reader == "music21":
            return converter.convert_source(Music21ScoreAdapter.from_path(path), bpm=bpm)
        return converter.convert_file(path)
    except ConversionError as exc:
        _fail(f"Could not convert '{path}': {exc}")
    except OSError as exc:
        _fail(f"Could not read '{path}': {exc}")


def _echo_diagnostics(result: ConversionResult, err: bool = False) -> None:
    if not result.diagnostics:
        return
    click.echo(f"      {len(result.diagnostics)} warning(s):", err=err)
    for diagnostic in result.diagnostics:
        click.echo(f"        {diagnostic}", err=err)


def _check_color(ctx: click.Context, param: click.Parameter, value: str) -> str:
    try:
        parse_hex_color(value)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    return value


def _lighting_options(command: Callable[..., Any]) -> Callable[..., Any]:
    """Attach the LED strip options shared by the commands that drive the strip."""
    options = [
        click.option("--led-count", type=click.IntRange(1), default=288, show_default=True,
                     envvar="ETUDE_LED_COUNT", help="Number of LEDs on the strip."),
        click.option("--octave-shift", type=click.IntRange(-4, 4), default=0, show_default=True,
                     envvar="ETUDE_OCTAVE_SHIFT", help="Octaves added before mapping to LEDs."),
        click.option("--transpose", type=click.IntRange(-12, 12), default=0, show_default=True,
                     envvar="ETUDE_TRANSPOSE", help="Semitones added before mapping to LEDs."),
        click.option("--brightness", type=click.IntRange(0, 100), default=50, show_default=True,
                     envvar="ETUDE_BRIGHTNESS", help="LED brightness percentage."),
        click.option("--white-color", default="#e5c68a", show_default=True, callback=_check_color,
                     envvar="ETUDE_WHITE_COLOR", help="Colour for natural keys (#rrggbb)."),
        click.option("--black-color", default="#917846", show_default=True, callback=_check_color,
                     envvar="ETUDE_BLACK_COLOR", help="Colour for sharps and flats (#rrggbb)."),
        click.option("--rainbow/--no-rainbow", default=False, envvar="ETUDE_RAINBOW",
                     help="Colour keys by pitch class instead."),
    ]
    for option in reversed(options):
        command = option(command)
    return command


def _lighting_config(
    led_count: int,
    octave_shift: int,
    transpose: int,
    brightness: int,
    white_color: str,
    black_color: str,
    rainbow: bool,
) -> LightingConfig:
    return LightingConfig(
        led_count=led_count,
        octave_shift=octave_shift,
        transpose=transpose,
        white_key_color=white_color,
        black_key_color=black_color,
        brightness=brightness,
        rainbow=rainbow,
    )


def _key_command(mapper: LedMapper, pitch: int) -> LedCommand | None:
    return mapper.command_for(MidiEvent(0.0, NOTE_ON, pitch, 100))


def _played_pitches(midi_in: str | None, notes: IO[str]) -> Iterator[int]:
    """Note-on pitches from a MIDI input port, or one MIDI note number per line of ``notes``."""
    if midi_in is None:
        for line in notes:
            text = line.strip()
            if not text:
                continue
            try:
                pitch = int(text)
            except ValueError:
                click.echo(f"  Ignoring {text!r}: expected a MIDI note number.", err=True)
                continue
            yield pitch
        return

    import mido

    with mido.open_input(midi_in) as port:
        for message in port:
            if message.type == "note_on" and message.velocity > 0:
                yield message.note


def _show_target(
    session: LearningSession, step: int, mapper: LedMapper, writer: SerialLedWriter | None
) -> None:
    target = session.target
    if target is None:
        return
    if writer is not None:
        writer.hush()
        for pitch in target.pitches:
            command = _key_command(mapper, pitch)
            if command is not None:
                writer.send(command)
    pitches = " ".join(str(pitch) for pitch in target.pitches)
    click.echo(f"  [{step}] {target.time_ms / 1000:7.2f} s  play {pitches}")


# ── CLI group ──────────────────────────────────────────────────────────────────

@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__, prog_name="etude")
@click.option("-v", "--verbose", count=True, help="Log more detail (-v info, -vv debug).")
@click.option("--log-file", default=None, metavar="PATH", envvar="ETUDE_LOG_FILE",
              help="Also write log records to this file.")
def main(verbose: int, log_file: str | None) -> None:
    """Etude: turn MusicXML, MXL and MIDI files into timed note events for practice."""
    LoggingConfig.setup_logging(LoggingConfig.level_for_verbosity(verbose), log_file)


# ── convert subcommand ─────────────────────────────────────────────────────────

@main.command()
@click.argument("score_file", type=click.Path(exists=True, dir_okay=False, readable=True))
@click.option(
    "--output",
    "-o",
    default=None,
    metavar="PATH",
    help="Destination JSON file. Defaults to the input path with a .json extension.",
)
@click.option(
    "--reader",
    type=click.Choice(["builtin", "music21"], case_sensitive=False),
    default="builtin",
    show_default=True,
    envvar="ETUDE_READER",
    help="Score reader: the built-in MXL/MusicXML/MIDI decoder, or music21.",
)
@click.option("--bpm", type=click.FloatRange(1, 400), default=None,
              help="Tempo override for the music21 reader.")
def convert(score_file: str, output: str | None, reader: str, bpm: float | None) -> None:
    """
    Convert a score to the JSON event stream.

    SCORE_FILE is a .mxl, .xml, .musicxml, .mid or .midi file.

    \b
    Examples:
      etude convert song.mxl
      etude convert song.mid -o events.json
      etude convert song.musicxml --reader music21 --bpm 90
    """
    resolved_output = output if output is not None else str(Path(score_file).with_suffix(".json"))

    click.echo(f"etude v{__version__}")
    click.echo(f"  Input  : {score_file}")
    click.echo(f"  Output : {resolved_output}")
    click.echo()

    click.echo("[1/2] Converting score...")
    result = _load(score_file, reader.lower(), bpm)
    click.echo(
        f"      {len(result.events)} events, {len(result.note_pairs)} notes, "
        f"{result.total_duration_ms / 1000:.1f} s"
    )
    _echo_diagnostics(result)

    click.echo(f"[2/2] Writing JSON to '{resolved_output}'...")
    try:
        Path(resolved_output).write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
    except OSError as exc:
        _fail(f"Could not write JSON file: {exc}")

    click.echo()
    click.echo("Done!")


# ── export subcommand ──────────────────────────────────────────────────────────

@main.command()
@click.argument("score_file", type=click.Path(exists=True, dir_okay=False, readable=True))
@click.option("--output", "-o", required=True, metavar="PATH", help="Destination MIDI file path.")
@click.option(
    "--tempo",
    type=click.IntRange(20, 300),
    default=MidiExporter.DEFAULT_TEMPO,
    show_default=True,
    envvar="ETUDE_EXPORT_TEMPO",
    help="Tempo written to the MIDI file, in BPM. Note timing is preserved at any tempo.",
)
def export(score_file: str, output: str, tempo: int) -> None:
    """
    Re-export a score as a Standard MIDI File.

    \b
    Examples:
      etude export song.mxl -o song.mid
      etude export song.musicxml -o song.mid --tempo 90
    """
    click.echo(f"etude v{__version__}")
    click.echo(f"  Input  : {score_file}  |  Tempo: {tempo} BPM")
    click.echo()

    click.echo("[1/2] Converting score...")
    result = _load(score_file)
    _echo_diagnostics(result)

    click.echo(f"[2/2] Writing MIDI file to '{output}'...")
    try:
        written = MidiExporter(tempo=tempo).export(result, output)
    except OSError as exc:
        _fail(f"Could not write MIDI file: {exc}")

    click.echo()
    click.echo(f"Done!  Wrote {written} note(s) to '{output}'.")


# ── leds subcommand ────────────────────────────────────────────────────────────

@main.command()
@click.argument("score_file", type=click.Path(exists=True, dir_okay=False, readable=True))
@click.option("--timestamps", is_flag=True, help="Prefix each line with its time in ms.")
@_lighting_options
def leds(score_file: str, timestamps: bool, **lighting: Any) -> None:
    """
    Print the LED command stream for a score to stdout.

    Lines use the strip controller protocol (index,r,g,b,brightness).
    Progress and warnings go to stderr so stdout can be piped to a device.

    \b
    Examples:
      etude leds song.mxl > /dev/ttyACM0
      etude leds song.mid --rainbow --timestamps
    """
    result = _load(score_file)
    _echo_diagnostics(result, err=True)

    mapper = LedMapper(_lighting_config(**lighting))
    count = 0
    for line in mapper.lines_for(result.events, timestamps=timestamps):
        click.echo(line, nl=False)
        count += 1
    click.echo(f"{count} LED command(s) for {len(result.events)} event(s)", err=True)


# ── play subcommand ────────────────────────────────────────────────────────────

@main.command()
@click.argument("score_file", type=click.Path(exists=True, dir_okay=False, readable=True))
@click.option("--port", default=None, metavar="DEVICE", envvar="ETUDE_PORT",
              help="Serial port of the LED controller. Without it, events are printed.")
@click.option("--baud-rate", type=int, default=DEFAULT_BAUD_RATE, show_default=True,
              envvar="ETUDE_BAUD_RATE", help="Serial speed.")
@click.option("--rate", type=click.FloatRange(0.25, 4.0), default=1.0, show_default=True,
              help="Playback speed multiplier.")
@click.option("--start-ms", type=click.FloatRange(0), default=0.0, show_default=True,
              help="Position to start from.")
@_lighting_options
def play(
    score_file: str,
    port: str | None,
    baud_rate: int,
    rate: float,
    start_ms: float,
    **lighting: Any,
) -> None:
    """
    Play a score in real time, lighting the LED strip or printing each event.

    \b
    Examples:
      etude play song.mxl --port /dev/ttyACM0
      etude play song.mid --rate 0.5 --start-ms 30000
    """
    click.echo(f"etude v{__version__}")
    click.echo(f"  Input  : {score_file}  |  Speed: {rate:.2f}x")
    click.echo(f"  Output : {port or 'stdout'}")
    click.echo()

    click.echo("[1/2] Converting score...")
    result = _load(score_file)
    _echo_diagnostics(result)
    if not result.events:
        _fail("Score contains no notes.")

    mapper = LedMapper(_lighting_config(**lighting))
    click.echo(f"[2/2] Playing {result.total_duration_ms / 1000:.1f} s...")

    writer = SerialLedWriter(port, baud_rate) if port else None
    session = seek(PlaybackSession(rate=rate), result.events, start_ms, _now_ms())
    try:
        if writer is not None:
            writer.open()
        session = start(session, result.events, _now_ms())
        while not is_finished(session, result.total_duration_ms):
            due, session = due_events(result.events, session, _now_ms())
            for event in due:
                command = mapper.command_for(event)
                if writer is not None:
                    if command is not None:
                        writer.send(command)
                else:
                    click.echo(f"  {event.time_ms:9.1f} ms  {event.to_bytes().hex(' ')}")
            time.sleep(TICK_SECONDS)
    except serial.SerialException as exc:
        _fail(f"Serial port failed: {exc}")
    except KeyboardInterrupt:
        session = pause(session)
        click.echo(f"\nStopped at {session.position_ms / 1000:.1f} s.")
    finally:
        if writer is not None:
            writer.close()

    click.echo()
    click.echo("Done!")


# ── learn subcommand ───────────────────────────────────────────────────────────

@main.command()
@click.argument("score_file", type=click.Path(exists=True, dir_okay=False, readable=True))
@click.option("--port", default=None, metavar="DEVICE", envvar="ETUDE_PORT",
              help="Serial port of the LED controller. Without it, chords are only printed.")
@click.option("--baud-rate", type=int, default=DEFAULT_BAUD_RATE, show_default=True,
              envvar="ETUDE_BAUD_RATE", help="Serial speed.")
@click.option("--midi-in", default=None, metavar="NAME", envvar="ETUDE_MIDI_IN",
              help="MIDI input port to listen to. Without it, note numbers are read from --notes.")
@click.option("--notes", type=click.File("r"), default="-", show_default=True,
              help="File of played MIDI note numbers, one per line.")
@click.option("--start-ms", type=click.FloatRange(0), default=0.0, show_default=True,
              help="Position to start from.")
@_lighting_options
def learn(
    score_file: str,
    port: str | None,
    baud_rate: int,
    midi_in: str | None,
    notes: IO[str],
    start_ms: float,
    **lighting: Any,
) -> None:
    """
    Step through a score chord by chord, waiting for each one to be played.

    Every chord's keys are lit until all of its notes have been played, in any
    order; wrong notes are ignored.

    \b
    Examples:
      etude learn song.mxl --port /dev/ttyACM0 --midi-in "Digital Piano"
      printf '60\\n64\\n' | etude learn song.musicxml
    """
    click.echo(f"etude v{__version__}")
    click.echo(f"  Input  : {score_file}")
    click.echo(f"  Output : {port or 'stdout'}  |  Listening: {midi_in or 'note numbers'}")
    click.echo()

    click.echo("[1/2] Converting score...")
    result = _load(score_file)
    _echo_diagnostics(result)

    index = seek(PlaybackSession(), result.events, start_ms, 0.0).next_index
    session = begin_learning(result.events, index)
    if session.is_complete:
        _fail("Score contains no notes to learn.")

    mapper = LedMapper(_lighting_config(**lighting))
    click.echo("[2/2] Play each chord to move on...")

    writer = SerialLedWriter(port, baud_rate) if port else None
    step = 1
    try:
        if writer is not None:
            writer.open()
        _show_target(session, step, mapper, writer)
        for pitch in _played_pitches(midi_in, notes):
            target = session.target
            session = accept_note(session, result.events, pitch)
            if session.is_complete:
                break
            if session.target is not target:
                step += 1
                _show_target(session, step, mapper, writer)
    except serial.SerialException as exc:
        _fail(f"Serial port failed: {exc}")
    except OSError as exc:
        _fail(f"Could not open MIDI input '{midi_in}': {exc}")
    except KeyboardInterrupt:
        pass
    finally:
        if writer is not None:
            writer.close()

    click.echo()
    if session.is_complete:
        click.echo(f"Done!  Played {step} chord(s).")
    else:
        position = session.position_ms or 0.0
        click.echo(f"Stopped at chord {step} ({position / 1000:.2f} s).")


# ── sweep subcommand ───────────────────────────────────────────────────────────

@main.command()
@click.option("--port", default=None, metavar="DEVICE", envvar="ETUDE_PORT",
              help="Serial port of the LED controller. Without it, lines are printed.")
@click.option("--baud-rate", type=int, default=DEFAULT_BAUD_RATE, show_default=True,
              envvar="ETUDE_BAUD_RATE", help="Serial speed.")
@click.option("--delay-ms", type=click.IntRange(0, 1000), default=30, show_default=True,
              help="How long each key stays lit.")
@_lighting_options
def sweep(port: str | None, baud_rate: int, delay_ms: int, **lighting: Any) -> None:
    """
    Light every key from A0 up to C8 and back down to check the strip.

    \b
    Examples:
      etude sweep --port /dev/ttyACM0
      etude sweep --octave-shift -1 --delay-ms 60
    """
    mapper = LedMapper(_lighting_config(**lighting))
    writer = SerialLedWriter(port, baud_rate) if port else None

    def emit(command: LedCommand) -> None:
        if writer is not None:
            writer.send(command)
        else:
            click.echo(command.to_line(), nl=False)

    click.echo(f"Sweeping keys on {port or 'stdout'}...", err=True)
    count = 0
    try:
        if writer is not None:
            writer.open()
        for pitch in sweep_pitches():
            command = _key_command(mapper, pitch)
            if command is None:
                continue
            emit(command)
            time.sleep(delay_ms / 1000.0)
            emit(LedCommand.off(command.index))
            count += 1
    except serial.SerialException as exc:
        _fail(f"Serial port failed: {exc}")
    except KeyboardInterrupt:
        click.echo("Sweep stopped.", err=True)
    finally:
        if writer is not None:
            writer.close()

    click.echo(f"Done!  Lit {count} key(s).", err=True)
