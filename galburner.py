#!/usr/bin/env python3
"""
galburner.py — GAL / ATF PLD Programmer Host Tool
===================================================

Host-side controller for the Arduino based GAL programmer ("AFTerburner"
sketch). Drives the programmer's line protocol over a 57600 baud serial
link to identify, erase, write, verify, secure and calibrate, and reads
and writes the JEDEC fuse-map text format.

Supported devices:
    Lattice / National   GAL16V8, GAL18V10, GAL20V8, GAL20RA10, GAL20XV10,
                         GAL22V10, GAL26CV12, GAL26V12, GAL6001, GAL6002
    Atmel                ATF16V8B, ATF20V8B, ATF22V10B, ATF22V10C, ATF750C
    Atmel (JTAG, XSVF)   ATF1502AS, ATF1504AS

Architecture:
    Single-file module with a full CLI backend.
    Row-fuse devices are programmed by uploading the fuse map 32 fuses per
    line; JTAG devices are programmed by streaming an XSVF bitstream to the
    player built into the programmer sketch (flow controlled by the MCU).
    Loopback transport simulates the programmer firmware for offline testing.

Wire protocol:
    Commands are ASCII lines terminated by CR. Every response ends with the
    prompt ">" CR LF. Error lines start with "ER".

Requires: Python 3.10+, pyserial
Optional: rich (coloured console log), ftd2xx (D2XX transport)

MIT License

Copyright (c) 2026 galburner contributors

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
SOFTWARE.
"""




# ═══════════════════════════════════════════════════════════════════════
# SECTION 0 — IMPORTS & GLOBALS
# ═══════════════════════════════════════════════════════════════════════

from __future__ import annotations

import sys
import os
import re
import time
import logging
import argparse
import functools
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional, Callable, List, Tuple, Dict, Any, Iterator, Union

# Serial — try pyserial first
try:
    import serial
    import serial.tools.list_ports
    SERIAL_AVAILABLE = True
except ImportError:
    SERIAL_AVAILABLE = False

# FTDI D2XX — optional
try:
    import ftd2xx
    D2XX_AVAILABLE = True
except ImportError:
    D2XX_AVAILABLE = False

# ── Version & Metadata ──
__version__ = "0.6.0"
__app_name__ = "GAL Burner"
__firmware__ = "AFTerburner"

# ── Logging Setup ──
LOG_DIR = Path(__file__).resolve().parent / "logs"

# Rich logging handler (optional — install `rich` for colored console output)
try:
    from rich.logging import RichHandler
    RICH_LOGGING_AVAILABLE = True
except ImportError:
    RICH_LOGGING_AVAILABLE = False


FILE_LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(funcName)s:%(lineno)d | %(message)s"
CONSOLE_LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(message)s"


def _session_log_file(log_dir: Path, name: str) -> logging.Handler:
    """One file per process run; serial traffic lands here at DEBUG."""
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    handler = logging.FileHandler(str(log_dir / f"{name}_{stamp}.log"), encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def _console_handler(console_level: int, rich_console: bool) -> logging.Handler:
    if rich_console and RICH_LOGGING_AVAILABLE:
        handler = RichHandler(show_time=True, show_path=False, markup=False,
                              rich_tracebacks=True)
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(CONSOLE_LOG_FORMAT, datefmt="%H:%M:%S"))
    handler.setLevel(console_level)
    return handler


def setup_logging(
    name: str = "galburner",
    level: int = logging.DEBUG,
    console_level: int = logging.WARNING,
    log_dir: Optional[Path] = None,
    rich_console: bool = True,
) -> logging.Logger:
    """
    Build the ``name`` logger once: a timestamped file under ``log_dir``
    (default ``logs/`` beside this module) plus a console handler.

    The console stays at WARNING unless ``console_level`` says otherwise,
    so fuse dumps and progress bars are not interleaved with traffic
    traces. Calling again for a configured logger returns it untouched.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    target_dir = log_dir or LOG_DIR
    target_dir.mkdir(parents=True, exist_ok=True)
    logger.setLevel(level)
    file_handler = _session_log_file(target_dir, name)
    logger.addHandler(file_handler)
    logger.addHandler(_console_handler(console_level, rich_console))

    logger.info("%s logging to %s (console %s)", name, file_handler.baseFilename,
                logging.getLevelName(console_level))
    return logger

log = setup_logging()


# ═══════════════════════════════════════════════════════════════════════
# SECTION 1 — CONSTANTS & PROTOCOL DEFINITIONS
# ═══════════════════════════════════════════════════════════════════════

class Command(Enum):
    """Programmer sketch commands (first characters of the CR terminated line)."""
    PROBE = "*"
    UPLOAD = "u"
    UPLOAD_TYPE = "#t"
    UPLOAD_FUSES = "#f"
    UPLOAD_CHECKSUM = "#c"
    UPLOAD_PES = "#p"
    UPLOAD_END = "#e"
    WRITE = "w"
    VERIFY = "v"
    ERASE = "c"
    ERASE_ALL = "~"
    READ = "r"
    INFO = "p"
    TEST_VPP = "t"
    CALIBRATION_OFFSET = "B"
    CALIBRATE_VPP = "b"
    MEASURE_VPP = "m"
    SECURE = "s"
    WRITE_PES = "P"
    APD_ON = "z"
    APD_OFF = "Z"
    DEVICE_CHECK_ON = "f"
    DEVICE_CHECK_OFF = "F"
    SET_TYPE = "g"
    JTAG = "j"


def command_line(cmd: Command, arg: str = "") -> str:
    """Build a wire line: command, optional argument, CR."""
    return f"{cmd.value}{arg}\r"


# Prompt / tags
PROMPT = b">\r\n"
PROMPT_CHAR = b">"
ERROR_TAG = "ER"
BANNER_LABEL = "AFTerburner v."
BANNER_SEARCH_LIMIT = 500
CAP_VAR_VPP = " varVpp "
CAP_BIG_RAM = " RAM-BIG"

# Serial defaults (8N1)
DEFAULT_BAUD = 57600
DEFAULT_SERIAL_DEVICE = "COM1" if os.name == "nt" else "/dev/ttyUSB0"
SERIAL_NAME_HINTS = ("ttyUSB", "ttyACM", "usbserial", "usbmodem", "wchusbserial")

# Buffers
MAX_LINE = 16 * 1024
READ_BUFFER_SIZE = 256 * 1024       # fuse dumps
HANDSHAKE_BUFFER_SIZE = 512
FUSE_BOUND = 30000                  # largest fuse index any JEDEC file may address

# Timing constants (ms)
POLL_INTERVAL_MS = 10
PROMPT_TAIL_MS = 10
HANDSHAKE_TIMEOUT_MS = 3000
UPLOAD_START_TIMEOUT_MS = 100
UPLOAD_TYPE_TIMEOUT_MS = 300
FUSE_LINE_TIMEOUT_MS = 100
UPLOAD_CHECKSUM_TIMEOUT_MS = 300
UPLOAD_END_TIMEOUT_MS = 300
UPLOAD_EXIT_TIMEOUT_MS = 100
READ_EXIT_TIMEOUT_MS = 1000
GENERIC_TIMEOUT_MS = 4000
WRITE_TIMEOUT_MS = 8000
VERIFY_TIMEOUT_MS = 8000
READ_TIMEOUT_MS = 60000
TEST_VPP_TIMEOUT_MS = 22000
CALIBRATE_TIMEOUT_MS = 34000
MEASURE_TIMEOUT_MS = 40000
JTAG_LINE_TIMEOUT_MS = 3000
JTAG_FEED_TIMEOUT_MS = 100
JTAG_DRAIN_TIMEOUT_MS = 1000
WRITE_STALL_RETRIES = 100

# Upload codec
FUSE_GROUP_BITS = 32

# Calibration offset (1 step = 0.01V)
CAL_OFFSET_MIN = -32
CAL_OFFSET_MAX = 32

# PES: 8 hex bytes with a delimiter, e.g. 00:03:3A:A1:00:00:00:90
PES_STRING_LENGTH = 23
PES_PATTERN = re.compile(r"[0-9A-Fa-f]{2}(?:[^0-9A-Fa-f][0-9A-Fa-f]{2}){7}")

# JTAG / XSVF player
JTAG_ID = 0xFF
JTAG_FEED_MARKER = b"$"
JTAG_READY = "RXSVF"
JTAG_PROGRESS_STEP = 1024
XSVF_DIR = "xsvf"
XSVF_INFO_FILE = "id_ATF150X.xsvf"


# ═══════════════════════════════════════════════════════════════════════
# SECTION 2 — ERRORS
# ═══════════════════════════════════════════════════════════════════════

class ProgrammerError(Exception):
    """Base class for every failure raised by the programmer stack."""

class TransportError(ProgrammerError):
    """Raised when transport fails."""

class HandshakeError(ProgrammerError):
    """No programmer banner (or no prompt after it) on connect."""

class PromptTimeoutError(ProgrammerError):
    """The deadline passed before the response prompt arrived."""

class BufferOverrunError(ProgrammerError):
    """The response did not fit the read buffer before the prompt arrived."""

class ProtocolError(ProgrammerError):
    """The programmer answered with an ``ER`` line. ``response`` holds the full text."""

    def __init__(self, response: str):
        super().__init__(response)
        self.response = response

class UnsupportedOperationError(ProgrammerError):
    """Operation not available for the selected device or board."""

class DeviceNotFoundError(ProgrammerError):
    """Unknown device name."""

class JedecParseError(ProgrammerError):
    """Malformed JEDEC input; ``offset`` is the position of the offending character."""

    def __init__(self, offset: int, char: str = "", state: Optional["JedecState"] = None):
        where = f" in {state.name}" if state is not None else ""
        super().__init__(f"unexpected character {char!r} at offset {offset}{where}")
        self.offset = offset
        self.char = char
        self.state = state


# ═══════════════════════════════════════════════════════════════════════
# SECTION 3 — DEVICE REGISTRY
# ═══════════════════════════════════════════════════════════════════════

class DeviceFamily(Enum):
    """How a device is programmed."""
    ROW_FUSE = auto()     # fuse map upload, row programming by the sketch
    BITSTREAM = auto()    # XSVF playback through the JTAG player


@dataclass(frozen=True)
class DeviceDescriptor:
    """Static geometry of one programmable device."""
    code: int            # type code sent with '#t' / 'g'
    id0: int             # PES id, variant 1
    id1: int             # PES id, variant 2
    name: str
    fuses: int           # total number of fuses
    pins: int
    rows: int            # number of fuse rows
    bits: int            # fuses per row
    ues_row: int
    ues_fuse: int        # first UES fuse
    ues_bytes: int
    erase_row: int
    erase_all_row: int
    pes_row: int
    pes_bytes: int
    cfg_row: int
    cfg_bits: int
    apd_fuse: bool = False   # one fuse past `fuses` enables auto power-down

    @property
    def family(self) -> DeviceFamily:
        if self.id0 == JTAG_ID and self.id1 == JTAG_ID:
            return DeviceFamily.BITSTREAM
        return DeviceFamily.ROW_FUSE

    @property
    def type_char(self) -> str:
        return chr(ord("0") + self.code)

    def matches(self, last_fuse: int, pins: int) -> bool:
        """Does a JEDEC file declaring QF=last_fuse / QP=pins fit this device (0 = not declared)."""
        fuse_ok = (
            last_fuse == 0
            or self.fuses == last_fuse
            or (self.ues_fuse == last_fuse and self.ues_fuse + 8 * self.ues_bytes == self.fuses)
            or (self.apd_fuse and self.fuses + 1 == last_fuse)
        )
        # PLCC28 packages of the 24 pin parts declare QP28
        pins_ok = pins == 0 or self.pins == pins or (self.pins == 24 and pins == 28)
        return fuse_ok and pins_ok


#                     code  id0   id1   name         fuses pins rows bits uesrow uesfuse uesbytes erase eraseall pesrow pesbytes cfgrow cfgbits
DEVICES: Tuple[DeviceDescriptor, ...] = (
    DeviceDescriptor(1,  0x00, 0x1A, "GAL16V8",    2194, 20, 32,  64, 32,  2056, 8, 63, 54, 58,  8, 60, 82),
    DeviceDescriptor(2,  0x50, 0x51, "GAL18V10",   3540, 20, 36,  96, 36,  3476, 8, 61, 60, 58, 10, 16, 20),
    DeviceDescriptor(3,  0x20, 0x3A, "GAL20V8",    2706, 24, 40,  64, 40,  2568, 8, 63, 59, 58,  8, 60, 82),
    DeviceDescriptor(4,  0x60, 0x61, "GAL20RA10",  3274, 24, 40,  80, 40,  3210, 8, 61, 60, 58, 10, 16, 10),
    DeviceDescriptor(5,  0x65, 0x66, "GAL20XV10",  1671, 24, 40,  40, 44,  1631, 5, 61, 60, 58,  5, 16, 31),
    DeviceDescriptor(6,  0x48, 0x49, "GAL22V10",   5892, 24, 44, 132, 44,  5828, 8, 61, 60, 58, 10, 16, 20),
    DeviceDescriptor(7,  0x58, 0x59, "GAL26CV12",  6432, 28, 52, 122, 52,  6368, 8, 61, 60, 58, 12, 16, 24),
    DeviceDescriptor(8,  0x5D, 0x5D, "GAL26V12",   7912, 28, 52, 150, 52,  7848, 8, 61, 60, 58, 12, 16, 48),
    DeviceDescriptor(9,  0x40, 0x41, "GAL6001",    8294, 24, 78,  75, 97,  8222, 9, 63, 62, 96,  8,  8, 68),
    DeviceDescriptor(10, 0x44, 0x44, "GAL6002",    8330, 24, 78,  75, 97,  8258, 9, 63, 62, 96,  8,  8, 104),
    DeviceDescriptor(11, 0x00, 0x00, "ATF16V8B",   2194, 20, 32,  64, 32,  2056, 8, 63, 54, 58,  8, 60, 82, apd_fuse=True),
    DeviceDescriptor(12, 0x00, 0x00, "ATF20V8B",   2706, 24, 40,  64, 40,  2568, 8, 63, 59, 58,  8, 60, 82),
    DeviceDescriptor(13, 0x00, 0x00, "ATF22V10B",  5892, 24, 44, 132, 44,  5828, 8, 61, 60, 58, 10, 16, 20),
    DeviceDescriptor(14, 0x00, 0x00, "ATF22V10C",  5892, 24, 44, 132, 44,  5828, 8, 61, 60, 58, 10, 16, 20, apd_fuse=True),
    DeviceDescriptor(15, 0x00, 0x00, "ATF750C",   14499, 24, 84, 171, 84, 14435, 8, 61, 60, 127, 10, 16, 71),
    # JTAG based PLDs: no type code in the sketch, programmed via XSVF
    DeviceDescriptor(16, JTAG_ID, JTAG_ID, "ATF1502AS", 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 8, 0, 0),
    DeviceDescriptor(17, JTAG_ID, JTAG_ID, "ATF1504AS", 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 8, 0, 0),
)

DEVICE_BY_NAME: Dict[str, DeviceDescriptor] = {d.name: d for d in DEVICES}


def find_device(name: str) -> DeviceDescriptor:
    """Exact-name lookup."""
    try:
        return DEVICE_BY_NAME[name]
    except KeyError:
        raise DeviceNotFoundError(
            f"unknown device type '{name}'. Types: {' '.join(DEVICE_BY_NAME)}") from None


def infer_device(last_fuse: int, pins: int,
                 requested: Optional[DeviceDescriptor] = None) -> Optional[DeviceDescriptor]:
    """
    Pick the descriptor a JEDEC file was made for.

    The requested device wins when it fits the file; otherwise the first
    table entry that fits. Bitstream devices never match a fuse map.
    """
    if requested is not None and requested.family is DeviceFamily.ROW_FUSE \
            and requested.matches(last_fuse, pins):
        return requested
    for dev in DEVICES:
        if dev.family is DeviceFamily.ROW_FUSE and dev.matches(last_fuse, pins):
            return dev
    return None


# ═══════════════════════════════════════════════════════════════════════
# SECTION 4 — FUSE CHECKSUM
# ═══════════════════════════════════════════════════════════════════════

def fuse_checksum(fuses, n: int) -> int:
    """
    JEDEC fuse checksum over the first ``n`` fuses.

    Fuses are shifted LSB-first into 8-bit words which are summed; the last
    partial word is right-aligned. Same algorithm as the programmer sketch,
    which rejects an upload whose '#c' value does not match.
    """
    if n > len(fuses):
        raise ValueError(f"checksum over {n} fuses, map holds {len(fuses)}")
    c = e = a = 0
    for i in range(n):
        e += 1
        if e == 9:
            e = 1
            a += c
            c = 0
        c >>= 1
        if fuses[i]:
            c += 0x80
    return ((c >> (8 - e)) + a) & 0xFFFF


# ═══════════════════════════════════════════════════════════════════════
# SECTION 5 — JEDEC FUSE MAP
# ═══════════════════════════════════════════════════════════════════════

class JedecState(Enum):
    """Parser states. Every '*' returns to COMMAND."""
    OUTSIDE = auto()          # before the first '*' (STX, header text)
    SKIP = auto()             # unknown command or finished field
    COMMAND = auto()
    L_ADDRESS_FIRST = auto()
    L_ADDRESS = auto()
    L_BITS = auto()
    F_VALUE = auto()
    G_VALUE = auto()
    Q_KIND = auto()
    QP_FIRST = auto()
    QP_DIGITS = auto()
    QF_FIRST = auto()
    QF_DIGITS = auto()
    Q_END = auto()
    C_FIRST = auto()
    C_DIGITS = auto()


_WHITESPACE = " \t\n\v\f\r"
_HEX_DIGITS = "0123456789ABCDEF"


def _is_digit(ch: str) -> bool:
    return "0" <= ch <= "9"


def _hex_value(ch: str) -> int:
    """Value of a hex digit (case-insensitive), -1 if not one."""
    return _HEX_DIGITS.find(ch.upper()) if len(ch) == 1 else -1


@dataclass
class FuseMap:
    """Fuse array plus the metadata read from a JEDEC file."""
    fuses: bytearray
    security: bool = False
    checksum: int = 0                          # declared 'C' value, 0 = absent
    last_fuse: int = 0                         # declared QF
    pins: int = 0                              # declared QP
    computed_checksum: Optional[int] = None
    device: Optional[DeviceDescriptor] = None  # inferred (or confirmed requested) device
    apd: bool = False                          # auto power-down fuse set

    @property
    def checksum_ok(self) -> bool:
        if not self.checksum or self.computed_checksum is None:
            return True
        return self.checksum == self.computed_checksum

    @property
    def size(self) -> int:
        return len(self.fuses)

    def count_set(self, n: Optional[int] = None) -> int:
        return sum(self.fuses[:n if n is not None else len(self.fuses)])


class JedecParser:
    """
    Character driven JEDEC reader for the L/F/G/Q/C subset.

    Anything between a '*' and an unrecognised command letter is skipped,
    so notes, test vectors and the STX/ETX framing pass through untouched.
    """

    def __init__(self, size: int = FUSE_BOUND,
                 device: Optional[DeviceDescriptor] = None,
                 verbose: bool = False):
        self.size = size
        self.device = device
        self.verbose = verbose

    def parse(self, data: Union[str, bytes, bytearray]) -> FuseMap:
        text = data.decode("latin-1") if isinstance(data, (bytes, bytearray)) else data
        # the buffer is NUL terminated on the programmer side too
        text = text.split("\x00", 1)[0]

        fuses = bytearray(self.size)
        fm = FuseMap(fuses=fuses)
        state = JedecState.OUTSIDE
        address = 0
        checksum = 0
        pins = 0
        last_fuse = 0

        for n, ch in enumerate(text):
            if ch == "*":
                state = JedecState.COMMAND
                continue
            ws = ch in _WHITESPACE

            if state is JedecState.OUTSIDE or state is JedecState.SKIP:
                continue

            elif state is JedecState.COMMAND:
                if ws:
                    continue
                if ch == "L":
                    address = 0
                    state = JedecState.L_ADDRESS_FIRST
                elif ch == "F":
                    state = JedecState.F_VALUE
                elif ch == "G":
                    state = JedecState.G_VALUE
                elif ch == "Q":
                    state = JedecState.Q_KIND
                elif ch == "C":
                    state = JedecState.C_FIRST
                else:
                    state = JedecState.SKIP

            elif state is JedecState.L_ADDRESS_FIRST:
                if not _is_digit(ch):
                    raise JedecParseError(n, ch, state)
                address = int(ch)
                state = JedecState.L_ADDRESS

            elif state is JedecState.L_ADDRESS:
                if ws:
                    state = JedecState.L_BITS
                elif _is_digit(ch):
                    address = 10 * address + int(ch)
                else:
                    raise JedecParseError(n, ch, state)

            elif state is JedecState.L_BITS:
                if ws:
                    continue
                if ch not in "01":
                    raise JedecParseError(n, ch, state)
                if address >= self.size:
                    raise JedecParseError(n, ch, state)
                fuses[address] = 1 if ch == "1" else 0
                address += 1

            elif state is JedecState.F_VALUE:
                if ws:
                    continue
                if ch not in "01":
                    raise JedecParseError(n, ch, state)
                fuses[:] = bytes([1 if ch == "1" else 0]) * self.size
                state = JedecState.SKIP

            elif state is JedecState.G_VALUE:
                if ws:
                    continue
                if ch not in "01":
                    raise JedecParseError(n, ch, state)
                fm.security = ch == "1"
                state = JedecState.SKIP

            elif state is JedecState.Q_KIND:
                if ws:
                    continue
                if ch == "P":
                    pins = 0
                    state = JedecState.QP_FIRST
                elif ch == "F":
                    last_fuse = 0
                    state = JedecState.QF_FIRST
                else:
                    state = JedecState.COMMAND

            elif state is JedecState.QP_FIRST or state is JedecState.QF_FIRST:
                if ws:
                    continue
                if not _is_digit(ch):
                    raise JedecParseError(n, ch, state)
                if state is JedecState.QP_FIRST:
                    pins = int(ch)
                    state = JedecState.QP_DIGITS
                else:
                    last_fuse = int(ch)
                    state = JedecState.QF_DIGITS

            elif state is JedecState.QP_DIGITS or state is JedecState.QF_DIGITS:
                if _is_digit(ch):
                    if state is JedecState.QP_DIGITS:
                        pins = 10 * pins + int(ch)
                    else:
                        last_fuse = 10 * last_fuse + int(ch)
                elif ws:
                    state = JedecState.Q_END
                else:
                    raise JedecParseError(n, ch, state)

            elif state is JedecState.Q_END:
                if not ws:
                    raise JedecParseError(n, ch, state)

            elif state is JedecState.C_FIRST:
                if ws:
                    continue
                value = _hex_value(ch)
                if value < 0:
                    raise JedecParseError(n, ch, state)
                checksum = value
                state = JedecState.C_DIGITS

            elif state is JedecState.C_DIGITS:
                value = _hex_value(ch)
                if value >= 0:
                    checksum = 16 * checksum + value
                elif ws:
                    state = JedecState.COMMAND
                else:
                    raise JedecParseError(n, ch, state)

        fm.checksum = checksum
        fm.pins = pins
        fm.last_fuse = last_fuse
        if last_fuse > self.size:
            raise JedecParseError(len(text), "", state)

        if last_fuse or pins:
            fm.computed_checksum = fuse_checksum(fuses, last_fuse)
            if not fm.checksum_ok:
                log.warning("Checksum does not match! given=0x%04X calculated=0x%04X last fuse=%i",
                            checksum, fm.computed_checksum, last_fuse)
            fm.device = infer_device(last_fuse, pins, self.device)

        target = self.device or fm.device
        if target is not None and target.apd_fuse and last_fuse == target.fuses + 1:
            fm.apd = bool(fuses[target.fuses])
            if self.verbose:
                log.info("PD fuse detected: %i", fuses[target.fuses])

        log.debug("JEDEC parsed: QF=%d QP=%d set=%d G=%d C=0x%04X device=%s",
                  last_fuse, pins, sum(fuses), fm.security, checksum,
                  fm.device.name if fm.device else "?")
        return fm


def parse_jedec(data: Union[str, bytes, bytearray],
                device: Optional[DeviceDescriptor] = None,
                size: int = FUSE_BOUND,
                verbose: bool = False) -> FuseMap:
    """Parse JEDEC text into a FuseMap of ``size`` fuses."""
    return JedecParser(size=size, device=device, verbose=verbose).parse(data)


def load_jedec(path: str, device: Optional[DeviceDescriptor] = None,
               verbose: bool = False) -> FuseMap:
    """Read and parse a .jed file."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"JEDEC file not found: {path}")
    data = p.read_bytes()
    log.info("Loaded %s (%d bytes)", p.name, len(data))
    return parse_jedec(data, device=device, verbose=verbose)


def format_jedec(fuses, count: int, pins: int = 0, security: bool = False,
                 row_bits: int = FUSE_GROUP_BITS, title: str = __app_name__) -> str:
    """
    Minimal JEDEC text for the first ``count`` fuses.

    Default fuse state is 0 (F0); only rows holding a set fuse get an L field.
    """
    out = ["\x02", title, "*"]
    if pins:
        out.append(f"QP{pins}*")
    out.append(f"QF{count}*")
    out.append(f"G{1 if security else 0}*")
    out.append("F0*")
    for start in range(0, count, row_bits):
        row = fuses[start:min(start + row_bits, count)]
        if any(row):
            out.append(f"L{start:05d} {''.join('1' if f else '0' for f in row)}*")
    out.append(f"C{fuse_checksum(fuses, count):04X}*")
    out.append("\x03")
    return "\n".join(out) + "\n"


# ═══════════════════════════════════════════════════════════════════════
# SECTION 6 — TRANSPORT LAYER
# ═══════════════════════════════════════════════════════════════════════

class BaseTransport:
    """Abstract base for all serial transports."""

    def open(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def write(self, data: bytes) -> int:
        raise NotImplementedError

    def read(self, count: int, timeout_ms: int = POLL_INTERVAL_MS) -> bytes:
        raise NotImplementedError

    def flush_input(self) -> None:
        raise NotImplementedError

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    @property
    def bytes_available(self) -> int:
        raise NotImplementedError


class PySerialTransport(BaseTransport):
    """
    Programmer on a pyserial port: a COM/tty name or any URL that
    ``serial_for_url`` accepts, e.g. ``socket://host:5757``.
    """

    def __init__(self, port: str, baud: int = DEFAULT_BAUD):
        self.port = port
        self.baud = baud
        self._serial: Optional[serial.Serial] = None

    def _port(self) -> "serial.Serial":
        if self._serial is None or not self._serial.is_open:
            raise TransportError(f"{self.port} is not open")
        return self._serial

    def open(self) -> None:
        if not SERIAL_AVAILABLE:
            raise TransportError("pyserial is required for serial ports (pip install pyserial)")
        try:
            # 8N1 is the sketch's fixed framing
            self._serial = serial.serial_for_url(
                self.port, baudrate=self.baud, bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE, stopbits=serial.STOPBITS_ONE,
                timeout=POLL_INTERVAL_MS / 1000.0, write_timeout=1.0)
        except serial.SerialException as e:
            raise TransportError(f"cannot open {self.port}: {e}") from e
        log.info("%s open, %d baud", self.port, self.baud)

    def close(self) -> None:
        port, self._serial = self._serial, None
        if port is not None and port.is_open:
            port.close()
            log.info("%s closed", self.port)

    def write(self, data: bytes) -> int:
        port = self._port()
        try:
            return port.write(data)
        except serial.SerialException as e:
            raise TransportError(f"{self.port}: write error: {e}") from e

    def read(self, count: int, timeout_ms: int = POLL_INTERVAL_MS) -> bytes:
        port = self._port()
        port.timeout = timeout_ms / 1000.0
        try:
            return bytes(port.read(count))
        except serial.SerialException as e:
            raise TransportError(f"{self.port}: read error: {e}") from e

    def flush_input(self) -> None:
        if self.is_open:
            self._serial.reset_input_buffer()

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    @property
    def bytes_available(self) -> int:
        return self._serial.in_waiting if self.is_open else 0

    @staticmethod
    def list_ports() -> List[str]:
        if not SERIAL_AVAILABLE:
            return []
        return [info.device for info in serial.tools.list_ports.comports()]

    @staticmethod
    def guess_port() -> str:
        """First port that looks like a USB serial adapter, else the platform default."""
        ports = PySerialTransport.list_ports()
        usb = [p for p in ports if any(hint in p for hint in SERIAL_NAME_HINTS)]
        if usb:
            return usb[0]
        return ports[0] if ports else DEFAULT_SERIAL_DEVICE


class D2XXTransport(BaseTransport):
    """Direct FTDI access through the D2XX driver, bypassing the VCP."""

    LATENCY_MS = 2
    WRITE_TIMEOUT_MS = 1000

    def __init__(self, device_index: int = 0, baud: int = DEFAULT_BAUD):
        self.device_index = device_index
        self.baud = baud
        self._device = None

    def _handle(self):
        if self._device is None:
            raise TransportError(f"FTDI device {self.device_index} is not open")
        return self._device

    def open(self) -> None:
        if not D2XX_AVAILABLE:
            raise TransportError("ftd2xx is required for --transport d2xx (pip install galburner[d2xx])")
        defines = ftd2xx.defines
        try:
            dev = ftd2xx.open(self.device_index)
            dev.setBaudRate(self.baud)
            dev.setDataCharacteristics(defines.BITS_8, defines.STOP_BITS_1, defines.PARITY_NONE)
            dev.setTimeouts(POLL_INTERVAL_MS, self.WRITE_TIMEOUT_MS)
            dev.setLatencyTimer(self.LATENCY_MS)
            dev.purge(defines.PURGE_RX | defines.PURGE_TX)
        except ftd2xx.DeviceError as e:
            raise TransportError(f"cannot open FTDI device {self.device_index}: {e}") from e
        self._device = dev
        log.info("FTDI device %d open, %d baud", self.device_index, self.baud)

    def close(self) -> None:
        dev, self._device = self._device, None
        if dev is None:
            return
        try:
            dev.close()
        except ftd2xx.DeviceError as e:
            log.warning("FTDI device %d did not close cleanly: %s", self.device_index, e)

    def write(self, data: bytes) -> int:
        dev = self._handle()
        try:
            return dev.write(data)
        except ftd2xx.DeviceError as e:
            raise TransportError(f"FTDI device {self.device_index}: write error: {e}") from e

    def read(self, count: int, timeout_ms: int = POLL_INTERVAL_MS) -> bytes:
        dev = self._handle()
        dev.setTimeouts(timeout_ms, self.WRITE_TIMEOUT_MS)
        return bytes(dev.read(count))

    def flush_input(self) -> None:
        if self._device is not None:
            self._device.purge(ftd2xx.defines.PURGE_RX)

    @property
    def is_open(self) -> bool:
        return self._device is not None

    @property
    def bytes_available(self) -> int:
        return self._device.getQueueStatus() if self._device is not None else 0


class LoopbackTransport(BaseTransport):
    """
    In-memory programmer for testing without hardware.

    Simulates the programmer sketch: answers the probe with a banner,
    accepts fuse uploads (checking the '#c' checksum like the real sketch),
    keeps a virtual chip across sessions, and runs a flow controlled XSVF
    player that finishes once the host stops feeding it.

    Failure injection:
        fail_commands:   {command key: reply text}, e.g. {"w": "ER write failed"}
        silent_commands: command keys that never get an answer
        banner:          raw banner override (bytes or str)
        jtag_result:     result code reported by the XSVF player
    """

    def __init__(self, var_vpp: bool = True, big_ram: bool = False,
                 banner: Optional[Union[str, bytes]] = None,
                 fail_commands: Optional[Dict[str, str]] = None,
                 silent_commands: Optional[List[str]] = None,
                 jtag_result: int = 0, feed_size: int = 64):
        self._rx_buffer = bytearray()
        self._line = bytearray()
        self._opened = False
        self.tx_lines: List[str] = []
        self.open_count = 0
        self.var_vpp = var_vpp
        self.big_ram = big_ram
        self.banner = banner
        self.fail_commands = dict(fail_commands or {})
        self.silent_commands = set(silent_commands or ())
        self.jtag_result = jtag_result
        self.feed_size = feed_size

        # virtual programmer / chip state
        self.upload_mode = False
        self.device_code = 0
        self.device_check = True
        self.apd = False
        self.upload_fuses = bytearray(FUSE_BOUND)
        self.upload_checksum: Optional[int] = None
        self.chip_fuses = bytearray(FUSE_BOUND)
        self.pes = "00:00:00:00:00:00:00:00"
        self.new_pes: Optional[str] = None
        self.secured = False
        self.cal_offset = 0
        self.jtag_mode = False
        self.jtag_vpp = 0
        self.jtag_data = bytearray()
        self.jtag_runs: List[Tuple[int, bytes]] = []
        self._feed_pending = False

    def open(self) -> None:
        self._opened = True
        self.open_count += 1
        self._rx_buffer.clear()
        self._line.clear()
        log.info("Loopback transport opened (simulation mode)")

    def close(self) -> None:
        self._opened = False

    def write(self, data: bytes) -> int:
        if not self._opened:
            raise TransportError("Port not open")
        if self.jtag_mode:
            self.jtag_data.extend(data)
            self._request_feed()
            return len(data)
        for b in data:
            if b == 0x0D:
                line = self._line.decode("latin-1")
                self._line.clear()
                self._handle_line(line)
            elif b != 0x0A:
                self._line.append(b)
        return len(data)

    def read(self, count: int, timeout_ms: int = POLL_INTERVAL_MS) -> bytes:
        if not self._opened:
            raise TransportError("Port not open")
        if not self._rx_buffer:
            self._idle()
        if not self._rx_buffer:
            time.sleep(timeout_ms / 1000.0)
            return b""
        result = bytes(self._rx_buffer[:count])
        del self._rx_buffer[:count]
        return result

    def flush_input(self) -> None:
        self._rx_buffer.clear()

    @property
    def is_open(self) -> bool:
        return self._opened

    @property
    def bytes_available(self) -> int:
        return len(self._rx_buffer)

    # ── simulated sketch ──

    @property
    def device(self) -> Optional[DeviceDescriptor]:
        for dev in DEVICES:
            if dev.code == self.device_code:
                return dev
        return None

    def _reply(self, text: str = "") -> None:
        if text:
            self._rx_buffer.extend(text.encode("latin-1") + b"\r\n")
        self._rx_buffer.extend(PROMPT)

    @staticmethod
    def _command_key(line: str) -> str:
        return line[:2] if line.startswith("#") else line[:1]

    def _banner(self) -> bytes:
        if self.banner is not None:
            return self.banner.encode("latin-1") if isinstance(self.banner, str) else self.banner
        parts = [f"{BANNER_LABEL}{__version__}"]
        if self.var_vpp:
            parts.append("varVpp")
        if self.big_ram:
            parts.append("RAM-BIG")
        return (" ".join(parts) + " \r\n").encode("latin-1") + PROMPT

    def _total_fuses(self) -> int:
        dev = self.device
        if dev is None:
            return 0
        return dev.fuses + (1 if self.apd and dev.apd_fuse else 0)

    def _handle_line(self, line: str) -> None:
        self.tx_lines.append(line)
        key = self._command_key(line)
        if key in self.silent_commands:
            return
        if key in self.fail_commands:
            self._reply(self.fail_commands[key])
            return

        args = line.split()
        if key == Command.PROBE.value:
            self._rx_buffer.extend(self._banner())
        elif key == Command.UPLOAD.value:
            self.upload_mode = True
            self.upload_fuses = bytearray(FUSE_BOUND)
            self.upload_checksum = None
            self._reply()
        elif key in (Command.UPLOAD_TYPE.value, Command.UPLOAD_FUSES.value,
                     Command.UPLOAD_CHECKSUM.value, Command.UPLOAD_PES.value) and not self.upload_mode:
            self._reply("ER not in upload mode")
        elif key == Command.UPLOAD_TYPE.value:
            self.device_code = ord(args[1][0]) - ord("0")
            self._reply()
        elif key == Command.UPLOAD_FUSES.value:
            address = int(args[1])
            for k, value in enumerate(bytes.fromhex(args[2])):
                for j in range(8):
                    idx = address + k * 8 + j
                    if idx < FUSE_BOUND:
                        self.upload_fuses[idx] = (value >> j) & 1
            self._reply()
        elif key == Command.UPLOAD_CHECKSUM.value:
            self.upload_checksum = int(args[1], 16)
            self._reply()
        elif key == Command.UPLOAD_PES.value:
            self.new_pes = args[1]
            self._reply()
        elif key == Command.UPLOAD_END.value:
            self.upload_mode = False
            if self.upload_checksum is not None:
                calc = fuse_checksum(self.upload_fuses, self._total_fuses())
                if calc != self.upload_checksum:
                    self._reply(f"ER checksum mismatch: 0x{calc:04X} != 0x{self.upload_checksum:04X}")
                    return
            self._reply()
        elif key == Command.WRITE.value:
            if self.device is None:
                self._reply("ER unknown GAL type")
                return
            self.chip_fuses[:] = self.upload_fuses
            self._reply("OK")
        elif key == Command.VERIFY.value:
            total = self._total_fuses()
            if total == 0 or self.chip_fuses[:total] != self.upload_fuses[:total]:
                self._reply("ER verify failed")
            else:
                self._reply("OK")
        elif key == Command.ERASE.value:
            self.chip_fuses = bytearray(FUSE_BOUND)
            self.secured = False
            self._reply("OK")
        elif key == Command.ERASE_ALL.value:
            self.chip_fuses = bytearray(FUSE_BOUND)
            self.secured = False
            self.pes = "00:00:00:00:00:00:00:00"
            self._reply("OK")
        elif key == Command.READ.value:
            dev = self.device
            if dev is None:
                self._reply("ER unknown GAL type")
                return
            rows = []
            for start in range(0, dev.fuses, FUSE_GROUP_BITS):
                bits = "".join(str(f) for f in self.chip_fuses[start:min(start + FUSE_GROUP_BITS, dev.fuses)])
                rows.append(f"L{start:05d} {bits}")
            self._reply("\r\n".join(rows))
        elif key == Command.INFO.value:
            self._reply(f"PES info: {self.pes}\r\nVPP: 12.00V")
        elif key == Command.TEST_VPP.value:
            self._reply("VPP: 16.50V\r\nVPP: 16.50V")
        elif key == Command.CALIBRATION_OFFSET.value:
            self.cal_offset = ord(line[1]) - ord("0") + CAL_OFFSET_MIN
            self._reply(f"Calibration offset: {self.cal_offset}")
        elif key == Command.CALIBRATE_VPP.value:
            if not self.var_vpp:
                self._reply("ER variable VPP not available")
            else:
                self._reply("VPP calibration:\r\n 9.00V ok\r\n16.50V ok")
        elif key == Command.MEASURE_VPP.value:
            self._reply("VPP: 9.01V\r\nVPP: 16.49V")
        elif key == Command.SECURE.value:
            self.secured = True
            self._reply("OK")
        elif key == Command.WRITE_PES.value:
            if not self.new_pes:
                self._reply("ER no PES")
                return
            self.pes = self.new_pes
            self._reply("OK")
        elif key in (Command.APD_ON.value, Command.APD_OFF.value):
            self.apd = key == Command.APD_ON.value
            self._reply()
        elif key in (Command.DEVICE_CHECK_ON.value, Command.DEVICE_CHECK_OFF.value):
            self.device_check = key == Command.DEVICE_CHECK_ON.value
            self._reply()
        elif key == Command.SET_TYPE.value:
            self.device_code = ord(line[1]) - ord("0")
            self._reply()
        elif key == Command.JTAG.value:
            self.jtag_mode = True
            self.jtag_vpp = 1 if line[1:2] == "1" else 0
            self.jtag_data = bytearray()
            self._rx_buffer.extend(b"Dplayer started\r\n" + JTAG_READY.encode() + b"\r\n")
            self._request_feed()
        else:
            self._reply(f"ER unknown command '{line}'")

    def _request_feed(self) -> None:
        self._rx_buffer.extend(JTAG_FEED_MARKER + f"{self.feed_size:03d}\r\n".encode())
        self._feed_pending = True

    def _idle(self) -> None:
        """Host read everything but sent no data after a feed request: the file is done."""
        if not (self.jtag_mode and self._feed_pending):
            return
        self.jtag_mode = False
        self._feed_pending = False
        self.jtag_runs.append((self.jtag_vpp, bytes(self.jtag_data)))
        status = "!Success" if self.jtag_result == 0 else "!Fail"
        self._rx_buffer.extend(f"{status}\r\nQ{self.jtag_result}\r\n".encode() + PROMPT)


# ═══════════════════════════════════════════════════════════════════════
# SECTION 7 — PROGRAMMER SESSION (SERIAL PROTOCOL ENGINE)
# ═══════════════════════════════════════════════════════════════════════

class SessionState(Enum):
    """Session lifecycle."""
    CLOSED = auto()
    CONNECTED = auto()
    ERROR = auto()


@dataclass
class SessionConfig:
    """Serial / protocol configuration."""
    serial_device: Optional[str] = None
    baud: int = DEFAULT_BAUD
    verbose: bool = False
    handshake_timeout_ms: int = HANDSHAKE_TIMEOUT_MS
    poll_interval_ms: int = POLL_INTERVAL_MS
    prompt_tail_ms: int = PROMPT_TAIL_MS
    line_buffer_size: int = MAX_LINE
    read_buffer_size: int = READ_BUFFER_SIZE


@dataclass
class Capabilities:
    """Board features announced in the banner."""
    var_vpp: bool = False
    big_ram: bool = False


@dataclass
class Reply:
    """Raw response bytes (prompt included) and whatever followed the prompt."""
    raw: bytes
    trailing: bytes = b""

    @property
    def text(self) -> str:
        return strip_prompt(self.raw.decode("latin-1"))


@dataclass
class ProgressCounter:
    """Position of a long transfer; reported through the 'progress' event."""
    total: int
    label: str = ""
    current: int = 0

    def update(self, emitter: "EventEmitter", current: int) -> None:
        self.current = min(current, self.total)
        emitter.emit("progress", current=self.current, total=self.total, label=self.label)


def find_prompt(buf: Union[bytes, bytearray]) -> int:
    """Index of the prompt marker, also accepting a bare '>' at the end; -1 if absent."""
    idx = buf.find(PROMPT)
    if idx >= 0:
        return idx
    if buf.endswith(PROMPT_CHAR):
        return len(buf) - 1
    return -1


def strip_prompt(text: str) -> str:
    """Drop the prompt marker and the CR/LF padding around the response."""
    idx = text.find(PROMPT.decode())
    if idx >= 0:
        text = text[:idx]
    else:
        stripped = text.rstrip("\r\n")
        if stripped.endswith(">"):
            text = stripped[:-1]
    return text.strip("\r\n")


def last_line(text: str) -> str:
    """Last non-empty line of a response."""
    lines = [ln for ln in re.split(r"[\r\n]+", text) if ln.strip()]
    return lines[-1] if lines else ""


class EventEmitter:
    """Minimal callback registry. Events: log, progress, output, state."""

    def __init__(self) -> None:
        self._callbacks: Dict[str, List[Callable]] = {}

    def on(self, event: str, callback: Callable) -> None:
        """Register an event callback."""
        self._callbacks.setdefault(event, []).append(callback)

    def emit(self, event: str, **kwargs) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._callbacks.get(event, []):
            try:
                cb(**kwargs)
            except Exception as e:
                log.error("Event callback error: %s", e)


class Session(EventEmitter):
    """
    One connection to the programmer.

    Owns the transport, the capabilities parsed from the banner and the
    selected device. Opened once (handshake), closed once; usable as a
    context manager so every exit path releases the port.
    """

    def __init__(self, transport: BaseTransport, config: SessionConfig = None,
                 device: Optional[DeviceDescriptor] = None):
        super().__init__()
        self.transport = transport
        self.config = config or SessionConfig()
        self.device = device
        self.state = SessionState.CLOSED
        self.capabilities = Capabilities()
        self.banner = ""

    def __enter__(self) -> "Session":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def trace(self, msg: str) -> None:
        """Verbose-mode message."""
        log.debug(msg)
        if self.config.verbose:
            self.emit("log", msg=msg, level="debug")

    # ── Connect / Disconnect ──

    def open(self) -> None:
        """Open the transport and check the programmer banner."""
        if self.state is SessionState.CONNECTED:
            return
        try:
            self.transport.open()
        except TransportError as e:
            self.state = SessionState.ERROR
            raise HandshakeError(f"failed to open serial device: {e}") from e
        try:
            self._handshake()
        except ProgrammerError:
            self.transport.close()
            self.state = SessionState.ERROR
            self.emit("state", state=self.state)
            raise
        self.state = SessionState.CONNECTED
        self.emit("state", state=self.state)

    def _handshake(self) -> None:
        # prod the programmer to print its identification
        self._write_all(command_line(Command.PROBE).encode())
        try:
            raw = self._wait_for_prompt(self.config.handshake_timeout_ms, HANDSHAKE_BUFFER_SIZE)
        except (PromptTimeoutError, BufferOverrunError) as e:
            raise HandshakeError(f"no answer from programmer: {e}") from e

        text = raw.decode("latin-1")
        pos = text.find(BANNER_LABEL)
        if not (0 <= pos < BANNER_SEARCH_LIMIT and raw[-3:] == PROMPT):
            self.trace(f"Output from programmer not recognised: {text!r}")
            raise HandshakeError("output from programmer not recognised")

        self.banner = strip_prompt(text[pos:])
        self.capabilities = Capabilities(
            var_vpp=self._banner_has(text, pos, CAP_VAR_VPP),
            big_ram=self._banner_has(text, pos, CAP_BIG_RAM),
        )
        log.info("Programmer: %s", self.banner)
        if self.capabilities.var_vpp:
            self.trace("variable VPP board detected")
        if self.capabilities.big_ram:
            self.trace("MCU Big RAM detected")

    @staticmethod
    def _banner_has(text: str, start: int, key: str) -> bool:
        idx = text.find(key, start)
        return 0 < idx < BANNER_SEARCH_LIMIT

    def close(self) -> None:
        """Release the port. Safe to call more than once."""
        if self.state is SessionState.CLOSED and not self.transport.is_open:
            return
        if self.transport.is_open:
            self.transport.close()
        self.state = SessionState.CLOSED
        self.emit("state", state=self.state)

    # ── Low-level I/O ──

    def _require_open(self) -> None:
        if self.state is not SessionState.CONNECTED:
            raise TransportError("session is not connected")

    def _write_all(self, data: bytes) -> None:
        log.debug("TX [%d]: %r", len(data), data[:80])
        stalls = 0
        while data:
            written = self.transport.write(data)
            if written is None or written < 0:
                raise TransportError(f"write failed ({written})")
            if written == 0:
                stalls += 1
                if stalls > WRITE_STALL_RETRIES:
                    raise TransportError("write stalled")
                continue
            stalls = 0
            data = data[written:]

    def write_all(self, data: bytes) -> None:
        """Write every byte, retrying partial writes."""
        self._require_open()
        self._write_all(data)

    def _read_chunk(self, limit: int, timeout_ms: float) -> bytes:
        count = max(1, min(limit, self.transport.bytes_available))
        return self.transport.read(count, timeout_ms=max(0, int(timeout_ms)))

    def read_exact(self, count: int, timeout_ms: int) -> bytes:
        """Up to ``count`` bytes; fewer when the deadline passes."""
        self._require_open()
        buf = bytearray()
        deadline = time.monotonic() + timeout_ms / 1000.0
        while len(buf) < count:
            remaining_ms = (deadline - time.monotonic()) * 1000.0
            if remaining_ms <= 0:
                break
            buf.extend(self.transport.read(count - len(buf),
                                           timeout_ms=int(min(self.config.poll_interval_ms, remaining_ms))))
        return bytes(buf)

    def _wait_for_prompt(self, timeout_ms: int, buffer_size: int, echo: bool = False) -> bytes:
        buf = bytearray()
        echoed = 0
        deadline = time.monotonic() + timeout_ms / 1000.0
        while True:
            room = buffer_size - len(buf)
            if room <= 0:
                raise BufferOverrunError(
                    f"serial read buffer too small ({buffer_size} bytes) - large data dump?")
            chunk = self._read_chunk(room, self.config.poll_interval_ms)
            if chunk:
                buf.extend(chunk)
                if echo:
                    echoed = self._echo(buf, echoed)
                if find_prompt(buf) >= 0:
                    # one short window for the rest of the prompt line
                    room = buffer_size - len(buf)
                    if room > 0:
                        buf.extend(self._read_chunk(room, self.config.prompt_tail_ms))
                    log.debug("RX [%d]: %r", len(buf), bytes(buf[-80:]))
                    return bytes(buf)
            if time.monotonic() >= deadline:
                self.trace("wait for prompt timed out")
                raise PromptTimeoutError(f"no prompt within {timeout_ms} ms "
                                         f"(got {len(buf)} bytes)")

    def _echo(self, buf: bytearray, echoed: int) -> int:
        """Emit newly received text up to the prompt."""
        end = buf.find(PROMPT, echoed)
        if end < 0:
            # hold back a partial prompt until the next chunk settles it
            end = len(buf)
            for tail in (PROMPT[:2], PROMPT_CHAR):
                if buf.endswith(tail):
                    end -= len(tail)
                    break
        if end > echoed:
            self.emit("output", text=buf[echoed:end].decode("latin-1"))
        return max(end, echoed)

    def wait_for_prompt(self, timeout_ms: int, buffer_size: Optional[int] = None,
                        echo: bool = False) -> bytes:
        """
        Collect bytes until the prompt shows up.

        Raises PromptTimeoutError when the deadline passes first and
        BufferOverrunError when ``buffer_size`` fills before the prompt.
        """
        self._require_open()
        return self._wait_for_prompt(timeout_ms, buffer_size or self.config.line_buffer_size, echo)

    # ── Request / Response ──

    def send_line(self, command: str, timeout_ms: int, buffer_size: Optional[int] = None,
                  echo: bool = False) -> Reply:
        """Write a command line and wait for its prompt terminated response."""
        self._require_open()
        self._write_all(command.encode("latin-1"))
        raw = self._wait_for_prompt(timeout_ms, buffer_size or self.config.line_buffer_size, echo)
        idx = raw.find(PROMPT)
        trailing = raw[idx + len(PROMPT):] if idx >= 0 else b""
        reply = Reply(raw=raw, trailing=trailing)
        self.trace(f"read: {len(raw)} '{reply.text}'")
        return reply

    def send_generic_command(self, command: str, timeout_ms: int = GENERIC_TIMEOUT_MS,
                             print_result: bool = False, echo: bool = False) -> str:
        """
        send_line() plus error classification.

        Raises ProtocolError when the last response line starts with 'ER'.
        Returns the response text (prompt stripped).
        """
        response = self.send_line(command, timeout_ms, echo=echo).text
        if last_line(response).startswith(ERROR_TAG):
            raise ProtocolError(response)
        if print_result and not echo:
            self.emit("output", text=response + "\n")
        return response


# ═══════════════════════════════════════════════════════════════════════
# SECTION 8 — UPLOAD CODEC
# ═══════════════════════════════════════════════════════════════════════

def encode_fuse_lines(fuses, total: int) -> Iterator[Tuple[int, str]]:
    """
    Pack fuses into upload lines: ``#f <addr> <hex bytes>``.

    32 fuses per line, 8 per hex byte, fuse ``j`` of a byte is bit ``1 << j``.
    Groups without a set fuse are skipped (the sketch zeroes its buffer on
    'u'). Yields ``(next_fuse_index, line)``.
    """
    for start in range(0, total, FUSE_GROUP_BITS):
        end = min(start + FUSE_GROUP_BITS, total)
        hex_bytes = []
        any_set = False
        for byte_start in range(start, end, 8):
            value = 0
            for j, i in enumerate(range(byte_start, min(byte_start + 8, end))):
                if fuses[i]:
                    value |= 1 << j
            any_set = any_set or value != 0
            hex_bytes.append(f"{value:02X}")
        if any_set:
            yield end, f"{Command.UPLOAD_FUSES.value} {start:04d} {''.join(hex_bytes)}"


class UploadCodec:
    """Sends a fuse map to the programmer's upload buffer."""

    def __init__(self, session: Session):
        self.session = session

    def select_device(self, device: DeviceDescriptor, with_name: bool = True) -> None:
        arg = f" {device.type_char} {device.name}" if with_name else f" {device.type_char}"
        self.session.send_line(command_line(Command.UPLOAD_TYPE, arg), UPLOAD_TYPE_TIMEOUT_MS)

    def upload(self, device: DeviceDescriptor, fuses, apd: bool = False) -> None:
        """
        u → #t → #f lines → #c → #e. Any failure raises and aborts the rest.

        With ``apd`` the fuse past the device's nominal count is included in
        both the data and the checksum.
        """
        total = device.fuses + (1 if apd else 0)
        if len(fuses) < total:
            raise ProgrammerError(f"fuse map holds {len(fuses)} fuses, {device.name} needs {total}")
        s = self.session

        s.send_line(command_line(Command.UPLOAD), UPLOAD_START_TIMEOUT_MS)
        self.select_device(device)

        s.emit("log", msg="Uploading fuse map...", level="info")
        progress = ProgressCounter(total=total, label="Upload")
        lines = 0
        for position, line in encode_fuse_lines(fuses, total):
            s.send_line(line + "\r", FUSE_LINE_TIMEOUT_MS)
            lines += 1
            progress.update(s, position)
        progress.update(s, total)

        csum = fuse_checksum(fuses, total)
        s.trace(f"sending csum: {csum:04X} ({lines} fuse lines)")
        s.send_line(command_line(Command.UPLOAD_CHECKSUM, f" {csum:04X}"), UPLOAD_CHECKSUM_TIMEOUT_MS)
        s.send_generic_command(command_line(Command.UPLOAD_END), UPLOAD_END_TIMEOUT_MS)


# ═══════════════════════════════════════════════════════════════════════
# SECTION 9 — BITSTREAM (XSVF) PLAYER
# ═══════════════════════════════════════════════════════════════════════

def _atoi(text: str) -> int:
    """Leading signed integer of ``text``, 0 when there is none."""
    m = re.match(r"\s*([+-]?\d+)", text)
    return int(m.group(1)) if m else 0


class BitstreamPlayer:
    """
    Streams an XSVF file to the JTAG player of the programmer sketch.

    Device output, one line at a time:
        RXSVF       player ready for data
        $NNN        feed request: send up to NNN more bytes
        D<text>     debug text
        !<text>     status text (!Success / !Fail always shown)
        Q<code>     finished, non-zero code = failure
    """

    def __init__(self, session: Session, verbose: bool = False):
        self.session = session
        self.verbose = verbose

    @staticmethod
    def chunk_size(total: int, sent: int, request: int) -> int:
        """Bytes to send for a feed request; the first chunk is doubled to pre-fill OS buffers."""
        chunk = total - sent
        if chunk > request:
            chunk = request
            if sent == 0:
                chunk = min(chunk * 2, total)
        return chunk

    def read_line(self, timeout_ms: int, buffer_size: int = MAX_LINE) -> Tuple[str, int]:
        """
        Read one device line. Returns ``(text, feed_request)``.

        A feed request ends the read early; ``text`` then holds the part of
        the line received before it.
        """
        s = self.session
        buf = bytearray()
        deadline = time.monotonic() + timeout_ms / 1000.0
        while True:
            remaining_ms = (deadline - time.monotonic()) * 1000.0
            if remaining_ms <= 0:
                break
            b = s.read_exact(1, int(min(s.config.poll_interval_ms, remaining_ms)) or 1)
            if not b:
                continue
            if b == JTAG_FEED_MARKER:
                digits = s.read_exact(3, JTAG_FEED_TIMEOUT_MS)
                request = int(digits) if len(digits) == 3 and digits.isdigit() else 0
                if request == 0:
                    s.emit("log", msg=f"Warning: corrupted feed request! {digits!r}", level="warning")
                eol = s.read_exact(2, JTAG_FEED_TIMEOUT_MS)
                if eol != b"\r\n":
                    s.emit("log", msg=f"Warning: corrupted feed request! {eol!r}", level="warning")
                return buf.decode("latin-1"), request
            if b == b"\r":
                s.read_exact(1, JTAG_FEED_TIMEOUT_MS)   # LF
                return buf.decode("latin-1"), 0
            buf.extend(b)
            if len(buf) >= buffer_size:
                raise BufferOverrunError("bitstream player line too long")
        if buf:
            return buf.decode("latin-1"), 0
        raise PromptTimeoutError(f"no output from bitstream player within {timeout_ms} ms")

    def play(self, data: bytes, vpp: bool, label: str = "", show_progress: bool = True) -> int:
        """Run the player over ``data``; returns the device's result code."""
        s = self.session
        total = len(data)
        checksum = sum(data) & 0xFFFFFFFF if self.verbose else 0
        progress = ProgressCounter(total=total, label=label.strip() or "XSVF")

        s.write_all(command_line(Command.JTAG, "1" if vpp else "0").encode())

        ready = False
        sent = 0
        last_report = 0
        pending = ""
        result = 0
        while True:
            text, request = self.read_line(JTAG_LINE_TIMEOUT_MS)
            if request > 0:
                if ready:
                    chunk = self.chunk_size(total, sent, request)
                    if chunk > 0:
                        s.write_all(data[sent:sent + chunk])
                        sent += chunk
                        if show_progress and (sent - last_report >= JTAG_PROGRESS_STEP or sent == total):
                            last_report = sent
                            progress.update(s, sent)
                # a line cut by the feed request continues on the next read
                pending += text
                continue

            line = pending + text
            pending = ""
            if not line:
                continue
            if line[0] == "D":
                s.emit("output", text=line[1:] + "\n")
            elif line[0] == "Q":
                result = _atoi(line[1:])
                if result != 0:
                    s.emit("log", msg=line[1:], level="error")
                elif self.verbose:
                    s.emit("log", msg=f"PC : 0x{checksum:08X}", level="info")
                break
            elif line == JTAG_READY:
                ready = True
            elif line[0] == "!":
                if self.verbose or line in ("!Success", "!Fail"):
                    s.emit("output", text=line[1:] + "\n")
            else:
                log.debug("player: %r", line)

        try:
            self.read_line(JTAG_DRAIN_TIMEOUT_MS)
        except PromptTimeoutError:
            pass
        log.info("XSVF player finished: %d/%d bytes sent, result %d", sent, total, result)
        return result


class BitstreamFiles:
    """Locates the XSVF files shipped next to the tool."""

    def __init__(self, directory: str = XSVF_DIR):
        self.directory = Path(directory)

    def info_path(self) -> Path:
        return self.directory / XSVF_INFO_FILE

    def erase_path(self, device: DeviceDescriptor) -> Path:
        return self.directory / f"erase_{device.name}.xsvf"

    @staticmethod
    def load(path: Union[str, Path]) -> bytes:
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(f"XSVF file not found: {path}")
        return p.read_bytes()


# ═══════════════════════════════════════════════════════════════════════
# SECTION 10 — PROGRAMMER OPERATIONS
# ═══════════════════════════════════════════════════════════════════════

class GalProgrammer(EventEmitter):
    """
    High-level operations. Each one opens its own Session, runs its steps
    and closes the session on every path. Failures are reported through the
    'log' event and returned as False / None.
    """

    def __init__(self, transport_factory: Callable[[], BaseTransport],
                 config: SessionConfig = None):
        super().__init__()
        self.transport_factory = transport_factory
        self.config = config or SessionConfig()
        self.capabilities = Capabilities()

    def open_session(self, device: Optional[DeviceDescriptor] = None) -> Session:
        session = Session(self.transport_factory(), self.config, device)
        for event, callbacks in self._callbacks.items():
            for cb in callbacks:
                session.on(event, cb)
        return session

    def _run(self, title: str, steps: Callable[[Session], Any],
             device: Optional[DeviceDescriptor] = None) -> Tuple[bool, Any]:
        try:
            with self.open_session(device) as session:
                self.capabilities = session.capabilities
                value = steps(session)
        except ProtocolError as e:
            self.emit("output", text=e.response + "\n")
            self.emit("log", msg=f"{title} failed", level="error")
            log.error("%s failed: %s", title, e.response)
            return False, None
        except ProgrammerError as e:
            self.emit("log", msg=f"{title} failed: {e}", level="error")
            log.error("%s failed: %s", title, e)
            return False, None
        return True, value

    # ── Pre-operation settings ──

    def set_device_check(self, enabled: bool = True) -> bool:
        cmd = Command.DEVICE_CHECK_ON if enabled else Command.DEVICE_CHECK_OFF
        ok, _ = self._run("device check", lambda s: s.send_generic_command(command_line(cmd)))
        return ok

    def set_device_type(self, device: DeviceDescriptor) -> bool:
        def steps(s: Session):
            s.trace(f"sending 'g' command type={device.code}")
            s.send_generic_command(command_line(Command.SET_TYPE, device.type_char))
        ok, _ = self._run("set device type", steps, device)
        return ok

    # ── Row-fuse operations ──

    @staticmethod
    def _select_device(s: Session, device: DeviceDescriptor, exit_timeout_ms: int) -> None:
        """Switch to upload mode only to tell the sketch which device is inserted."""
        s.send_line(command_line(Command.UPLOAD), UPLOAD_TYPE_TIMEOUT_MS)
        UploadCodec(s).select_device(device, with_name=False)
        s.send_line(command_line(Command.UPLOAD_END), exit_timeout_ms)

    def erase(self, device: DeviceDescriptor, erase_all: bool = False) -> bool:
        def steps(s: Session):
            self._select_device(s, device, UPLOAD_EXIT_TIMEOUT_MS)
            cmd = Command.ERASE_ALL if erase_all else Command.ERASE
            s.send_generic_command(command_line(cmd), GENERIC_TIMEOUT_MS)
        ok, _ = self._run("erase all" if erase_all else "erase", steps, device)
        return ok

    def _write_or_verify(self, device: DeviceDescriptor, fusemap: FuseMap,
                         do_write: bool, verify: bool) -> bool:
        def steps(s: Session):
            # power-down fuse flag first: it changes the upload checksum
            apd_cmd = Command.APD_ON if fusemap.apd else Command.APD_OFF
            s.send_generic_command(command_line(apd_cmd), GENERIC_TIMEOUT_MS)
            UploadCodec(s).upload(device, fusemap.fuses, apd=fusemap.apd)
            if do_write:
                s.send_generic_command(command_line(Command.WRITE), WRITE_TIMEOUT_MS)
                s.emit("log", msg="Write OK", level="success")
            if verify:
                s.send_generic_command(command_line(Command.VERIFY), VERIFY_TIMEOUT_MS)
                s.emit("log", msg="Verify OK", level="success")
        ok, _ = self._run("write" if do_write else "verify", steps, device)
        return ok

    def write(self, device: DeviceDescriptor, fusemap: FuseMap, verify: bool = False) -> bool:
        """Upload, program and optionally verify in the same session."""
        return self._write_or_verify(device, fusemap, do_write=True, verify=verify)

    def verify(self, device: DeviceDescriptor, fusemap: FuseMap) -> bool:
        """Upload and compare against the chip without programming."""
        return self._write_or_verify(device, fusemap, do_write=False, verify=True)

    def read(self, device: DeviceDescriptor) -> Optional[str]:
        """Raw fuse dump as printed by the sketch."""
        def steps(s: Session) -> str:
            self._select_device(s, device, READ_EXIT_TIMEOUT_MS)
            response = s.send_line(command_line(Command.READ), READ_TIMEOUT_MS,
                                   buffer_size=self.config.read_buffer_size).text
            if response.startswith(ERROR_TAG) or last_line(response).startswith(ERROR_TAG):
                raise ProtocolError(response)
            s.emit("output", text=response + "\n")
            return response
        _, text = self._run("read", steps, device)
        return text

    def info(self) -> Optional[str]:
        """PES and programming voltage of the inserted chip."""
        def steps(s: Session) -> str:
            s.trace("sending 'p' command...")
            return s.send_generic_command(command_line(Command.INFO), GENERIC_TIMEOUT_MS,
                                          print_result=True)
        _, text = self._run("info", steps)
        return text

    def secure(self) -> bool:
        def steps(s: Session):
            s.trace("sending 's' command...")
            s.send_generic_command(command_line(Command.SECURE), GENERIC_TIMEOUT_MS)
        ok, _ = self._run("secure", steps)
        return ok

    def write_pes(self, device: DeviceDescriptor, pes: str) -> bool:
        def steps(s: Session):
            s.send_line(command_line(Command.UPLOAD), UPLOAD_TYPE_TIMEOUT_MS)
            UploadCodec(s).select_device(device, with_name=False)
            s.send_line(command_line(Command.UPLOAD_PES, f" {pes}"), UPLOAD_TYPE_TIMEOUT_MS)
            s.send_line(command_line(Command.UPLOAD_END), UPLOAD_EXIT_TIMEOUT_MS)
            s.trace("sending 'P' command...")
            s.send_generic_command(command_line(Command.WRITE_PES), GENERIC_TIMEOUT_MS)
        ok, _ = self._run("write PES", steps, device)
        return ok

    # ── Programming voltage ──

    def test_vpp(self) -> bool:
        """Turn VPP on for ~20 s so the boost converter can be adjusted."""
        def steps(s: Session):
            if s.capabilities.var_vpp:
                s.emit("log", msg="Turn the Pot on the MT3608 module to set the VPP to 16.5V (+/- 0.05V)",
                       level="info")
            else:
                s.emit("log", msg="Turn the Pot on the MT3608 module to check / set the VPP", level="info")
            s.send_generic_command(command_line(Command.TEST_VPP), TEST_VPP_TIMEOUT_MS,
                                   print_result=True, echo=True)
        ok, _ = self._run("VPP test", steps)
        return ok

    @staticmethod
    def encode_cal_offset(offset: int) -> str:
        """Offset in 0.01V steps as one ASCII character ('0' = -32)."""
        return chr(ord("0") + clamp_cal_offset(offset) - CAL_OFFSET_MIN)

    def calibrate_vpp(self, offset: int = 0) -> bool:
        def steps(s: Session):
            if not s.capabilities.var_vpp:
                raise UnsupportedOperationError("variable VPP not available on this board")
            code = self.encode_cal_offset(offset)
            s.trace(f"sending 'B{code}' command...")
            s.send_generic_command(command_line(Command.CALIBRATION_OFFSET, code), GENERIC_TIMEOUT_MS,
                                   print_result=True)
            s.emit("log", msg="VPP voltages are scanned - this might take a while...", level="info")
            s.send_generic_command(command_line(Command.CALIBRATE_VPP), CALIBRATE_TIMEOUT_MS,
                                   print_result=True, echo=True)
        ok, _ = self._run("VPP calibration", steps)
        return ok

    def measure_vpp(self) -> bool:
        def steps(s: Session):
            if not s.capabilities.var_vpp:
                raise UnsupportedOperationError("variable VPP not available on this board")
            s.send_generic_command(command_line(Command.MEASURE_VPP), MEASURE_TIMEOUT_MS,
                                   print_result=True, echo=True)
        ok, _ = self._run("VPP measurement", steps)
        return ok

    # ── Bitstream devices ──

    def play_bitstream(self, data: bytes, vpp: bool, label: str = "",
                       show_progress: bool = True) -> bool:
        def steps(s: Session) -> int:
            return BitstreamPlayer(s, verbose=self.config.verbose).play(data, vpp, label, show_progress)
        ok, result = self._run(f"{label.strip() or 'XSVF'} playback", steps)
        return ok and result == 0


def clamp_cal_offset(offset: int) -> int:
    return max(CAL_OFFSET_MIN, min(CAL_OFFSET_MAX, offset))


@dataclass
class RunOptions:
    """Everything one invocation asks for (the CLI boundary contract)."""
    read: bool = False
    write: bool = False
    verify: bool = False
    erase: bool = False
    info: bool = False
    test_vpp: bool = False
    calibrate_vpp: bool = False
    measure_vpp: bool = False
    write_pes: bool = False
    device_type: Optional[str] = None
    file: Optional[str] = None
    serial_device: Optional[str] = None
    no_device_check: bool = False
    secure: bool = False
    erase_all: bool = False
    cal_offset: int = 0
    pes: Optional[str] = None
    verbose: bool = False
    xsvf_dir: str = XSVF_DIR

    @property
    def any_operation(self) -> bool:
        return any((self.read, self.write, self.verify, self.erase, self.info, self.test_vpp,
                    self.calibrate_vpp, self.measure_vpp, self.write_pes))


OPERATION_LETTERS = {
    "i": "info",
    "r": "read",
    "w": "write",
    "v": "verify",
    "e": "erase",
    "p": "write_pes",
    "s": "test_vpp",
    "b": "calibrate_vpp",
    "m": "measure_vpp",
}


def check_options(options: RunOptions) -> Optional[str]:
    """Argument sanity checks done before touching the port. Returns an error message."""
    if not options.any_operation:
        return "no command specified."
    if options.write_pes and (options.pes is None or len(options.pes) != PES_STRING_LENGTH
                               or not PES_PATTERN.fullmatch(options.pes)):
        return "invalid or no PES specified."
    if (options.read or options.write or options.verify) and options.erase and options.erase_all:
        return "invalid command combination. Use 'Erase all' in a separate step"
    if (options.read or options.write or options.verify) and \
            (options.test_vpp or options.calibrate_vpp or options.measure_vpp):
        return "VPP functions can not be combined with read/write/verify operations"
    device = None
    if options.device_type:
        try:
            device = find_device(options.device_type)
        except DeviceNotFoundError as e:
            return str(e)
    needs_type = options.read or options.erase or options.info or options.write_pes
    if device is None and (needs_type or ((options.write or options.verify) and not options.file)):
        return "missing GAL type. Use -t <type> to specify."
    if not options.file and (options.write or options.verify):
        ext = ".xsvf" if device is not None and device.family is DeviceFamily.BITSTREAM else ".jed"
        return f"missing {ext} filename (param: -f fname)"
    return None


def run_bitstream(programmer: GalProgrammer, options: RunOptions, device: DeviceDescriptor) -> bool:
    """info → erase → write through the XSVF player."""
    if options.read or options.verify:
        programmer.emit("log", msg=f"read and verify operation is not supported for {device.name}",
                        level="error")
        return False
    files = BitstreamFiles(options.xsvf_dir)
    steps: List[Tuple[bool, Callable[[], Path], bool, str, bool]] = [
        (options.info, files.info_path, True, "", False),
        (options.erase, lambda: files.erase_path(device), True, "erase ", True),
        (options.write, lambda: Path(options.file), False, "write ", True),
    ]
    for wanted, path_of, vpp, label, show_progress in steps:
        if not wanted:
            continue
        try:
            data = BitstreamFiles.load(path_of())
        except (FileNotFoundError, OSError) as e:
            programmer.emit("log", msg=f"failed to open file: {e}", level="error")
            return False
        if options.verbose:
            programmer.emit("log", msg=f"file size: {len(data)}", level="debug")
        if not programmer.play_bitstream(data, vpp, label, show_progress):
            return False
    return True


def run_operations(programmer: GalProgrammer, options: RunOptions) -> bool:
    """
    Sequence one invocation: settings, erase, the main operation, then the
    best-effort and capability gated trailing steps.
    """
    device = find_device(options.device_type) if options.device_type else None

    if device is not None and device.family is DeviceFamily.BITSTREAM:
        return run_bitstream(programmer, options, device)

    fusemap: Optional[FuseMap] = None
    if options.write or options.verify:
        try:
            fusemap = load_jedec(options.file, device, verbose=options.verbose)
        except JedecParseError as e:
            programmer.emit("log", msg=f"JEDEC parse error: {e}", level="error")
            return False
        except OSError as e:
            programmer.emit("log", msg=f"failed to open file: {e}", level="error")
            return False
        if options.verbose:
            programmer.emit("log", msg=f"parse result: QF={fusemap.last_fuse} QP={fusemap.pins} "
                                       f"checksum=0x{fusemap.checksum:04X} calculated="
                                       f"0x{(fusemap.computed_checksum or 0):04X} apd={int(fusemap.apd)}",
                            level="debug")
        if device is None:
            device = fusemap.device
            if device is None:
                programmer.emit("log", msg="cannot infer the GAL type from the JEDEC file; use -t",
                                level="error")
                return False
            programmer.emit("log", msg=f"GAL type from JEDEC file: {device.name}", level="info")
        elif fusemap.device is not None and fusemap.device is not device:
            programmer.emit("log", msg=f"JEDEC file looks like {fusemap.device.name}, "
                                       f"programming as {device.name}", level="warning")

    result = programmer.set_device_check(not options.no_device_check)

    if result and device is not None:
        result = programmer.set_device_type(device)

    if result and options.erase:
        result = programmer.erase(device, options.erase_all)

    if result:
        if options.write:
            result = programmer.write(device, fusemap, verify=options.verify)
        elif options.info:
            result = programmer.info() is not None
        elif options.read:
            result = programmer.read(device) is not None
        elif options.verify:
            result = programmer.verify(device, fusemap)
        elif options.test_vpp:
            result = programmer.test_vpp()
        elif options.write_pes:
            result = programmer.write_pes(device, options.pes)

        if result and (options.write or options.verify) and options.secure:
            if not programmer.secure():
                programmer.emit("log", msg="secure GAL failed", level="warning")

        if result and (options.calibrate_vpp or options.measure_vpp):
            if not programmer.capabilities.var_vpp:
                programmer.emit("log", msg="variable VPP not detected - calibration / measurement skipped",
                                level="warning")
            else:
                if result and options.calibrate_vpp:
                    result = programmer.calibrate_vpp(options.cal_offset)
                if result and options.measure_vpp:
                    result = programmer.measure_vpp()

    return result


# ═══════════════════════════════════════════════════════════════════════
# SECTION 11 — CLI INTERFACE
# ═══════════════════════════════════════════════════════════════════════

def cli_log_callback(msg: str, level: str = "info", verbose: bool = False) -> None:
    """Print log messages to console."""
    if level == "debug" and not verbose:
        return
    prefix = {"info": "  ", "warning": "⚠ ", "error": "✗ ", "success": "✓ ", "debug": "  "}
    print(f"{prefix.get(level, '  ')}{msg}")

def cli_progress_callback(current: int, total: int, label: str = "") -> None:
    """Print progress to console."""
    if total > 0:
        pct = (current / total) * 100
        bar_len = 40
        filled = int(bar_len * current / total)
        bar = "█" * filled + "░" * (bar_len - filled)
        print(f"\r  {label} {current:5d}/{total:5d} [{bar}] {pct:.0f}%", end="", flush=True)
        if current >= total:
            print()

def cli_output_callback(text: str) -> None:
    """Device output (info, fuse dumps, live VPP readings)."""
    print(text, end="", flush=True)


def device_types_text() -> str:
    return " ".join(d.name for d in DEVICES)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="galburner",
        description=f"{__app_name__} v{__version__} — GAL programming tool for Arduino based programmer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
commands: ierwvpsbm
   i : read device info and programming voltage
   r : read fuse map from the GAL chip and display it, -t option must be set
   w : write fuse map, -f option must be set (-t is taken from the file if omitted)
   v : verify fuse map, -f option must be set
   e : erase the GAL chip, -t option must be set. Optionally '-all' can be set.
   p : write PES. -t and -pes options must be set. GAL must be erased with '-all' option.
   s : set VPP ON to check the programming voltage. Ensure the GAL is NOT inserted.
   b : calibrate variable VPP on new board designs. Ensure the GAL is NOT inserted.
   m : measure variable VPP on new board designs. Ensure the GAL is NOT inserted.

GAL types: {device_types_text()}

Examples:
  %(prog)s i -t ATF16V8B                       # read and print the device info
  %(prog)s r -t ATF16V8B                       # read the fuse map and display it
  %(prog)s wv -f fuses.jed -t ATF16V8B         # write the fuse map, then verify
  %(prog)s ep -t GAL20V8 -all -pes 00:03:3A:A1:00:00:00:90
                                               # full erase and new PES
  %(prog)s b -co -5                            # calibrate VPP with -0.05V offset
  %(prog)s w -t ATF1504AS -f design.xsvf       # JTAG device: play XSVF file
        """,
    )
    parser.add_argument("commands", nargs="?", default="",
                        help="Operation letters, combinable (e.g. 'wv')")
    parser.add_argument("-t", dest="device_type", metavar="TYPE", help="GAL type")
    parser.add_argument("-f", dest="file", metavar="FILE", help="JEDEC fuse map (.jed) or XSVF file")
    parser.add_argument("-d", dest="serial_device", metavar="DEVICE",
                        help="Serial device (guessed when omitted); socket://host:port is accepted")
    parser.add_argument("-v", dest="verbose", action="store_true", help="Verbose mode")
    parser.add_argument("-nc", dest="no_device_check", action="store_true",
                        help="Do not check device GAL type before operation")
    parser.add_argument("-sec", dest="secure", action="store_true",
                        help="Enable security - protect the chip. Use with 'w' or 'v'")
    parser.add_argument("-all", dest="erase_all", action="store_true",
                        help="Use with 'e' to erase all data including PES")
    parser.add_argument("-co", dest="cal_offset", type=int, default=0, metavar="OFFSET",
                        help=f"Calibration offset for 'b' in 0.01V steps ({CAL_OFFSET_MIN}..{CAL_OFFSET_MAX})")
    parser.add_argument("-pes", dest="pes", metavar="PES",
                        help="New PES for 'p': 8 hex bytes with a delimiter, e.g. 00:03:3A:A1:00:00:00:90")
    parser.add_argument("--transport", choices=["pyserial", "d2xx", "loopback"], default="pyserial",
                        help="Transport type (loopback = simulated programmer)")
    parser.add_argument("--baud", type=int, default=DEFAULT_BAUD, help=f"Baud rate (default: {DEFAULT_BAUD})")
    parser.add_argument("--device-index", type=int, default=0, help="FTDI device index (for D2XX)")
    parser.add_argument("--xsvf-dir", default=XSVF_DIR, help=f"Directory of the XSVF helper files (default: {XSVF_DIR})")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def options_from_args(args: argparse.Namespace) -> Tuple[RunOptions, List[str]]:
    """Map parsed arguments to RunOptions. Returns the options and any unknown operation letters."""
    options = RunOptions(
        device_type=args.device_type,
        file=args.file,
        serial_device=args.serial_device,
        no_device_check=args.no_device_check,
        secure=args.secure,
        erase_all=args.erase_all,
        cal_offset=args.cal_offset,
        pes=args.pes,
        verbose=args.verbose,
        xsvf_dir=args.xsvf_dir,
    )
    unknown = []
    for letter in args.commands:
        attr = OPERATION_LETTERS.get(letter)
        if attr is None:
            unknown.append(letter)
        else:
            setattr(options, attr, True)
    return options, unknown


def make_transport_factory(args: argparse.Namespace) -> Callable[[], BaseTransport]:
    if args.transport == "loopback":
        loopback = LoopbackTransport()
        return lambda: loopback
    if args.transport == "d2xx":
        return lambda: D2XXTransport(args.device_index, args.baud)
    port = args.serial_device or PySerialTransport.guess_port()
    return lambda: PySerialTransport(port, args.baud)


def run_cli(args: argparse.Namespace) -> int:
    """Run the CLI interface."""
    options, unknown = options_from_args(args)
    for letter in unknown:
        print(f"Error: unknown operation '{letter}'")
    if unknown:
        return 1

    if options.cal_offset != clamp_cal_offset(options.cal_offset):
        print(f"Calibration offset out of range ({CAL_OFFSET_MIN}..{CAL_OFFSET_MAX} inclusive).")
        options.cal_offset = clamp_cal_offset(options.cal_offset)

    error = check_options(options)
    if error:
        print(f"Error: {error}")
        return 1

    if options.verbose:
        print(f"{__app_name__} v{__version__}")

    config = SessionConfig(serial_device=args.serial_device, baud=args.baud, verbose=options.verbose)
    programmer = GalProgrammer(make_transport_factory(args), config)
    programmer.on("log", functools.partial(cli_log_callback, verbose=options.verbose))
    programmer.on("progress", cli_progress_callback)
    programmer.on("output", cli_output_callback)

    try:
        ok = run_operations(programmer, options)
    except KeyboardInterrupt:
        print("\n\nCancelled by user")
        return 130
    except Exception as e:
        log.exception("Unexpected error")
        print(f"\nError: {e}")
        return 1
    if options.verbose:
        print(f"result={0 if ok else -1}")
    return 0 if ok else 1


# ═══════════════════════════════════════════════════════════════════════
# SECTION 12 — ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════

def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.commands:
        parser.print_help()
        print("Error: no command specified.")
        return 1
    return run_cli(args)


if __name__ == "__main__":
    sys.exit(main())
