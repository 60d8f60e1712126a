"""Liveness notifications to a process supervisor."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass

_WATCHDOG_MESSAGE = b"WATCHDOG=1"


@dataclass(frozen=True)
class Supervisor:
    """The supervisor that runs the daemon, e.g. ``"systemd"``; empty for none."""

    kind: str = ""

    def notify(self) -> bool:
        """Report that the daemon is alive. Returns whether a message was sent."""
        if self.kind != "systemd":
            return False
        address = os.environ.get("NOTIFY_SOCKET", "")
        if not address:
            return False
        family = getattr(socket, "AF_UNIX", None)
        if family is None:
            return False
        if address.startswith("@"):
            address = "\0" + address[1:]
        try:
            with socket.socket(family, socket.SOCK_DGRAM) as sock:
                sock.connect(address)
                sock.sendall(_WATCHDOG_MESSAGE)
        except OSError:
            return False
        return True