"""Connection to the guest's serial port."""

import socket
import time

from pexpect import fdpexpect

CONNECT_TIMEOUT = 3.0


def connect_serial(host: str, port: int, connect_timeout: float = CONNECT_TIMEOUT) -> fdpexpect.fdspawn:
    """
    Connect to a serial port exported over TCP and wrap it for pexpect.

    The emulator may not be listening yet right after launch, so refused
    connections are retried until connect_timeout runs out.
    """
    deadline = time.monotonic() + connect_timeout
    while True:
        remaining = deadline - time.monotonic()
        try:
            sock = socket.create_connection((host, port), timeout=max(remaining, 0.1))
            break
        except ConnectionRefusedError:
            if remaining <= 0:
                raise
            time.sleep(0.1)

    sock.setblocking(True)
    # fdspawn owns the descriptor from here on and closes it
    return fdpexpect.fdspawn(sock.detach(), encoding="utf-8", codec_errors="replace")
