"""SerialLedWriter: sends LED protocol lines to the strip controller over serial."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from types import TracebackType

import serial

from etude.led_protocol import RESET_LINE, LedCommand

logger = logging.getLogger(__name__)

DEFAULT_BAUD_RATE = 115200


class SerialLedWriter:
    """
    Write-only connection to an LED strip controller.

    Use as a context manager: the port is opened on entry and, on exit, every
    LED is switched off before the port is closed.

    Example::

        with SerialLedWriter("/dev/ttyACM0") as leds:
            leds.send(LedCommand(40, 255, 0, 0, 80))
    """

    def __init__(
        self,
        port: str,
        baud_rate: int = DEFAULT_BAUD_RATE,
        timeout: float = 1.0,
    ) -> None:
        self.port = port
        self.baud_rate = baud_rate
        self.timeout = timeout
        self._serial: serial.Serial | None = None

    def open(self) -> None:
        self._serial = serial.Serial(self.port, self.baud_rate, timeout=self.timeout)
        self._serial.reset_output_buffer()
        logger.info("opened LED controller on %s at %d baud", self.port, self.baud_rate)

    def close(self) -> None:
        if self._serial is None:
            return
        try:
            self.hush()
        except serial.SerialException as exc:
            logger.warning("could not reset LEDs on %s: %s", self.port, exc)
        finally:
            self._serial.close()
            self._serial = None
            logger.info("closed LED controller on %s", self.port)

    def __enter__(self) -> SerialLedWriter:
        self.open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # ── Writing ───────────────────────────────────────────────────────────────

    def write_line(self, line: str) -> None:
        if self._serial is None:
            raise RuntimeError("SerialLedWriter is not open; use it as a context manager.")
        self._serial.write(line.encode("ascii"))

    def send(self, command: LedCommand) -> None:
        self.write_line(command.to_line())

    def send_lines(self, lines: Iterable[str]) -> int:
        count = 0
        for line in lines:
            self.write_line(line)
            count += 1
        return count

    def hush(self) -> None:
        """Switch every LED off."""
        self.write_line(RESET_LINE)
