#!/usr/bin/env python3
"""
virtual_programmer.py — Virtual GAL Programmer + Command Sender
=================================================================

A standalone TCP server that acts as a GAL programmer running the
AFTerburner sketch. Wraps the simulated firmware of galburner's
LoopbackTransport, so the full tool can be driven over a socket:

    galburner i -t GAL16V8 -d socket://127.0.0.1:5757

Useful for:
    - Testing the host tool without a programmer board
    - Trying out XSVF playback flow control
    - Sending single raw commands to a real programmer

Usage:
    # Start the virtual programmer on a TCP port
    python virtual_programmer.py --mode serve --port 5757

    # Send one raw command to a real programmer
    python virtual_programmer.py --mode send --serial /dev/ttyUSB0 --command p

    # Interactive command prompt against a real programmer
    python virtual_programmer.py --mode interactive --serial /dev/ttyUSB0

MIT License — Copyright (c) 2026 galburner contributors
"""

from __future__ import annotations
import sys
import socket
import argparse
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import galburner as gb

# ═══════════════════════════════════════════════════════════════════════
# CONSTANTS
# ═══════════════════════════════════════════════════════════════════════

DEFAULT_TCP_PORT = 5757
IDLE_POLL_S = 0.2          # socket idle time before the simulator may finish an XSVF run


# ═══════════════════════════════════════════════════════════════════════
# TCP SERVER (for serve mode)
# ═══════════════════════════════════════════════════════════════════════

def pump(programmer: gb.LoopbackTransport) -> bytes:
    """Everything the simulated programmer has to say right now."""
    out = bytearray()
    while True:
        chunk = programmer.read(max(1, programmer.bytes_available), timeout_ms=0)
        if not chunk:
            return bytes(out)
        out.extend(chunk)


def handle_client(programmer: gb.LoopbackTransport, conn: socket.socket) -> None:
    """Handle a single client connection."""
    programmer.open()
    conn.settimeout(IDLE_POLL_S)
    try:
        while True:
            try:
                data = conn.recv(1024)
            except socket.timeout:
                data = None
            if data == b"":
                break
            if data:
                programmer.write(data)
            resp = pump(programmer)
            if resp:
                conn.sendall(resp)
                print(f"[vGAL] TX: {resp[:60]!r}")
    except (ConnectionResetError, BrokenPipeError):
        print("[vGAL] Client disconnected")
    finally:
        programmer.close()
        conn.close()


def run_server(programmer: gb.LoopbackTransport, host: str = "127.0.0.1",
               port: int = DEFAULT_TCP_PORT) -> None:
    """Run the virtual programmer as a TCP server."""
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind((host, port))
    server.listen(1)
    print(f"[vGAL] TCP server listening on {host}:{port}")
    print(f"[vGAL] Connect with: galburner <cmd> -d socket://{host}:{port}")
    print(f"[vGAL] Or bridge a PTY: socat PTY,link=/dev/ttyVGAL TCP:{host}:{port}")

    try:
        while True:
            conn, addr = server.accept()
            print(f"[vGAL] Client connected from {addr}")
            handle_client(programmer, conn)
    except KeyboardInterrupt:
        print("\n[vGAL] Shutting down")
    finally:
        server.close()


# ═══════════════════════════════════════════════════════════════════════
# COMMAND SENDER (for real programmers)
# ═══════════════════════════════════════════════════════════════════════

def send_command(port: str, command: str, baud: int = gb.DEFAULT_BAUD,
                 timeout_ms: int = gb.GENERIC_TIMEOUT_MS) -> int:
    """Send one raw command line and print the programmer's response."""
    session = gb.Session(gb.PySerialTransport(port, baud))
    try:
        with session:
            print(f"  Programmer: {session.banner}")
            reply = session.send_line(command + "\r", timeout_ms)
            print(reply.text)
            return 1 if gb.last_line(reply.text).startswith(gb.ERROR_TAG) else 0
    except gb.ProgrammerError as e:
        print(f"  Error: {e}")
        return 1


def interactive_mode(port: str, baud: int = gb.DEFAULT_BAUD) -> None:
    """Interactive command prompt — type a command, see the response."""
    print("GAL programmer interactive prompt")
    print(f"  Port: {port} @ {baud} baud")
    print("  Type a raw command (e.g. p, t, m), 'quit' to exit")
    print()

    while True:
        try:
            line = input("GAL> ").strip()
        except (EOFError, KeyboardInterrupt):
            break

        if not line or line.lower() == "quit":
            break

        send_command(port, line, baud)
        print()


# ═══════════════════════════════════════════════════════════════════════
# MAIN
# ═══════════════════════════════════════════════════════════════════════

def main() -> int:
    parser = argparse.ArgumentParser(
        description="Virtual GAL programmer + command sender",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Modes:
  serve        Run as a virtual programmer (TCP server)
  send         Send a single raw command to a real programmer
  interactive  Interactive command prompt

Examples:
  # Virtual programmer without the variable VPP circuit
  python virtual_programmer.py --mode serve --no-var-vpp

  # Print PES and VPP from a real programmer
  python virtual_programmer.py --mode send --serial /dev/ttyUSB0 --command p
        """,
    )
    parser.add_argument("--mode", choices=["serve", "send", "interactive"],
                        default="serve", help="Operating mode (default: serve)")
    parser.add_argument("--serial", type=str, default=gb.DEFAULT_SERIAL_DEVICE,
                        help="Serial port for send/interactive modes")
    parser.add_argument("--baud", type=int, default=gb.DEFAULT_BAUD,
                        help=f"Baud rate (default: {gb.DEFAULT_BAUD})")
    parser.add_argument("--host", type=str, default="127.0.0.1",
                        help="TCP host for serve mode (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=DEFAULT_TCP_PORT,
                        help=f"TCP port for serve mode (default: {DEFAULT_TCP_PORT})")
    parser.add_argument("--no-var-vpp", action="store_true",
                        help="Simulate a board without variable VPP")
    parser.add_argument("--big-ram", action="store_true",
                        help="Announce RAM-BIG in the banner")
    parser.add_argument("--jtag-result", type=int, default=0,
                        help="Result code reported by the simulated XSVF player")
    parser.add_argument("--command", type=str, default=None,
                        help="Raw command to send (for send mode)")
    args = parser.parse_args()

    if args.mode == "serve":
        programmer = gb.LoopbackTransport(var_vpp=not args.no_var_vpp, big_ram=args.big_ram,
                                          jtag_result=args.jtag_result)
        run_server(programmer, args.host, args.port)
        return 0

    if args.mode == "send":
        if not args.command:
            print("ERROR: --command is required for send mode")
            return 1
        return send_command(args.serial, args.command, args.baud)

    interactive_mode(args.serial, args.baud)
    return 0


if __name__ == "__main__":
    sys.exit(main())
