# ccsdsrouter/errors.py
from __future__ import annotations

from typing import Iterable


class ConfigError(ValueError):
    """Route configuration rejected before a run starts."""

    def __init__(self, problems: Iterable[str] | str):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class TransportError(OSError):
    pass


class TransportReadError(TransportError):
    pass


class TransportWriteError(TransportError):
    pass


class PeerDisconnected(TransportError):
    """The connected peer went away; the listening endpoint can accept another."""
