# ccsdsrouter/config.py
from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional

import yaml

from .ccsds import MAX_APID, MAX_PACKET_SIZE, MIN_PACKET_SIZE
from .errors import ConfigError
from .timing import Delay, ForwardThrough, Replay, Throttle, TimingPolicy
from .utils import atomic_write_text

SOURCE_KINDS = {"file", "udp", "tcp_client", "tcp_server", "pcap"}
SINK_KINDS = SOURCE_KINDS | {"null"}

ENDIANNESS = {"big", "little"}

# the length field tops out at 0xFFFF, plus the primary header, plus one
DEFAULT_MAX_PACKET_SIZE = MAX_PACKET_SIZE
DEFAULT_FIXED_LENGTH_SIZE = 100
DEFAULT_QUEUE_DEPTH = 100
DEFAULT_RESYNC_LIMIT = 65536
DEFAULT_READ_SIZE = 4096


@dataclass(frozen=True)
class EndpointConfig:
    kind: str = "file"
    path: Optional[str] = None
    host: str = "127.0.0.1"
    port: int = 0

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "EndpointConfig":
        d = d or {}
        kind = str(d.get("type", d.get("kind", "file"))).strip().lower().replace("-", "_")
        path = d.get("path", d.get("file"))
        return cls(
            kind=kind,
            path=str(path) if path is not None else None,
            host=str(d.get("host", d.get("ip", "127.0.0.1"))),
            port=int(d.get("port", 0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        if self.kind in {"file", "pcap"}:
            out: Dict[str, Any] = {"type": self.kind, "path": self.path}
            if self.kind == "pcap":
                out.update(host=self.host, port=self.port)
            return out
        if self.kind == "null":
            return {"type": "null"}
        return {"type": self.kind, "host": self.host, "port": self.port}

    def describe(self) -> str:
        if self.kind in {"file", "pcap"}:
            return f"{self.kind}:{self.path}"
        if self.kind == "null":
            return "null"
        return f"{self.kind}:{self.host}:{self.port}"

    def problems(self, role: str, kinds: set) -> List[str]:
        out = []
        if self.kind not in kinds:
            out.append(f"{role}: unknown endpoint type {self.kind!r} (expected one of {sorted(kinds)})")
            return out
        if self.kind in {"file", "pcap"} and not self.path:
            out.append(f"{role}: {self.kind} endpoint needs a path")
        if self.kind in {"udp", "tcp_client", "tcp_server"} and not (0 < self.port <= 0xFFFF):
            out.append(f"{role}: port must be within 1..65535, got {self.port}")
        if self.kind == "pcap" and not (0 <= self.port <= 0xFFFF):
            out.append(f"{role}: pcap port must be within 0..65535, got {self.port}")
        return out


def _parse_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return v != 0
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "on"}:
        return True
    if s in {"0", "false", "no", "off", ""}:
        return False
    raise ConfigError(f"not a boolean: {v!r}")


def _parse_apid(v: Any) -> int:
    if isinstance(v, int):
        return v
    s = str(v).strip().lower()
    return int(s, 16) if s.startswith("0x") else int(s, 10)


def _ms(d: Dict[str, Any], key: str, default: float = 0.0) -> float:
    """Read a millisecond setting, falling back to a *_s seconds variant."""
    if key in d:
        return float(d[key]) / 1000.0
    skey = key[: -len("_ms")] + "_s"
    if skey in d:
        return float(d[skey])
    return default


def parse_timing(d: Optional[Dict[str, Any]]) -> TimingPolicy:
    """
    timing:
      policy: forward | replay | delay | throttle
      delay_ms: 250                  # delay
      interval_ms: 100               # throttle
      seconds_offset/seconds_width/subseconds_offset/subseconds_width,
      subseconds_resolution, little_endian   # replay
    """
    d = d or {}
    t = str(d.get("policy", d.get("type", "forward"))).strip().lower()

    if t in {"forward", "forward_through", "asap", "none"}:
        return ForwardThrough()

    if t == "replay":
        base = Replay()
        return Replay(
            seconds_offset=int(d.get("seconds_offset", base.seconds_offset)),
            seconds_width=int(d.get("seconds_width", base.seconds_width)),
            subseconds_offset=int(d.get("subseconds_offset", base.subseconds_offset)),
            subseconds_width=int(d.get("subseconds_width", base.subseconds_width)),
            subseconds_resolution=float(d.get("subseconds_resolution", base.subseconds_resolution)),
            little_endian=_parse_bool(d.get("little_endian", base.little_endian)),
        )

    if t == "delay":
        return Delay(duration=_ms(d, "delay_ms"))

    if t in {"throttle", "rate"}:
        return Throttle(interval=_ms(d, "interval_ms"))

    raise ConfigError(f"Unknown timing policy: {t}")


def timing_to_dict(p: TimingPolicy) -> Dict[str, Any]:
    if isinstance(p, Replay):
        return {
            "policy": "replay",
            "seconds_offset": p.seconds_offset,
            "seconds_width": p.seconds_width,
            "subseconds_offset": p.subseconds_offset,
            "subseconds_width": p.subseconds_width,
            "subseconds_resolution": p.subseconds_resolution,
            "little_endian": p.little_endian,
        }
    if isinstance(p, Delay):
        return {"policy": "delay", "delay_ms": p.duration * 1000.0}
    if isinstance(p, Throttle):
        return {"policy": "throttle", "interval_ms": p.interval * 1000.0}
    return {"policy": "forward"}


def _timing_problems(p: TimingPolicy) -> List[str]:
    out = []
    if isinstance(p, Delay) and p.duration < 0:
        out.append(f"timing: delay must be >= 0, got {p.duration * 1000.0} ms")
    if isinstance(p, Throttle) and p.interval <= 0:
        out.append(f"timing: throttle interval must be > 0, got {p.interval * 1000.0} ms")
    if isinstance(p, Replay):
        for name in ("seconds_width", "subseconds_width"):
            w = getattr(p, name)
            if not (0 <= w <= 8):
                out.append(f"timing: {name} must be within 0..8 bytes, got {w}")
        if p.seconds_width == 0 and p.subseconds_width == 0:
            out.append("timing: replay needs a seconds or subseconds field")
        for name in ("seconds_offset", "subseconds_offset"):
            if getattr(p, name) < 0:
                out.append(f"timing: {name} must be >= 0")
        if p.subseconds_width and p.subseconds_resolution <= 0:
            out.append("timing: subseconds_resolution must be > 0")
    return out


@dataclass(frozen=True)
class RouteConfig:
    source: EndpointConfig
    sink: EndpointConfig
    max_packet_size: int = DEFAULT_MAX_PACKET_SIZE
    fixed_length_mode: bool = False
    fixed_length_size: int = DEFAULT_FIXED_LENGTH_SIZE
    header_len: int = 0
    footer_len: int = 0
    forward_header: bool = False
    forward_footer: bool = False
    allowed_apids: FrozenSet[int] = field(default_factory=frozenset)
    header_endianness: str = "big"
    timing: TimingPolicy = field(default_factory=ForwardThrough)
    queue_depth: int = DEFAULT_QUEUE_DEPTH
    resync_limit: int = DEFAULT_RESYNC_LIMIT
    read_size: int = DEFAULT_READ_SIZE

    @property
    def little_endian(self) -> bool:
        return self.header_endianness == "little"

    @property
    def frame_header_len(self) -> int:
        """Framing header length actually in the stream (fixed blocks carry none)."""
        return 0 if self.fixed_length_mode else self.header_len

    @property
    def frame_footer_len(self) -> int:
        return 0 if self.fixed_length_mode else self.footer_len

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RouteConfig":
        d = d or {}
        fixed = d.get("fixed_length", {}) or {}
        if not isinstance(fixed, dict):
            fixed = {"enabled": True, "size": fixed}
        try:
            return cls(
                source=EndpointConfig.from_dict(d.get("source") or {}),
                sink=EndpointConfig.from_dict(d.get("sink") or {}),
                max_packet_size=int(d.get("max_packet_size", DEFAULT_MAX_PACKET_SIZE)),
                fixed_length_mode=_parse_bool(d.get("fixed_length_mode", fixed.get("enabled", False))),
                fixed_length_size=int(d.get("fixed_length_size", fixed.get("size", DEFAULT_FIXED_LENGTH_SIZE))),
                header_len=int(d.get("header_len", 0)),
                footer_len=int(d.get("footer_len", 0)),
                forward_header=_parse_bool(d.get("forward_header", False)),
                forward_footer=_parse_bool(d.get("forward_footer", False)),
                allowed_apids=frozenset(_parse_apid(a) for a in (d.get("allowed_apids") or [])),
                header_endianness=str(d.get("header_endianness", "big")).strip().lower(),
                timing=parse_timing(d.get("timing")),
                queue_depth=int(d.get("queue_depth", DEFAULT_QUEUE_DEPTH)),
                resync_limit=int(d.get("resync_limit", DEFAULT_RESYNC_LIMIT)),
                read_size=int(d.get("read_size", DEFAULT_READ_SIZE)),
            )
        except ConfigError:
            raise
        except (TypeError, ValueError) as e:
            raise ConfigError(f"invalid route configuration: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.to_dict(),
            "sink": self.sink.to_dict(),
            "max_packet_size": self.max_packet_size,
            "fixed_length": {"enabled": self.fixed_length_mode, "size": self.fixed_length_size},
            "header_len": self.header_len,
            "footer_len": self.footer_len,
            "forward_header": self.forward_header,
            "forward_footer": self.forward_footer,
            "allowed_apids": sorted(self.allowed_apids),
            "header_endianness": self.header_endianness,
            "timing": timing_to_dict(self.timing),
            "queue_depth": self.queue_depth,
            "resync_limit": self.resync_limit,
            "read_size": self.read_size,
        }

    def problems(self) -> List[str]:
        out: List[str] = []
        out += self.source.problems("source", SOURCE_KINDS)
        out += self.sink.problems("sink", SINK_KINDS)

        if (self.source.kind == self.sink.kind and self.source.kind in {"file", "pcap"}
                and self.source.path and self.source.path == self.sink.path):
            out.append("source and sink refer to the same file")

        if not (MIN_PACKET_SIZE <= self.max_packet_size <= MAX_PACKET_SIZE):
            out.append(f"max_packet_size must be within {MIN_PACKET_SIZE}..{MAX_PACKET_SIZE}, got {self.max_packet_size}")
        if self.fixed_length_mode and self.fixed_length_size <= 0:
            out.append(f"fixed_length size must be > 0, got {self.fixed_length_size}")
        if self.header_len < 0:
            out.append(f"header_len must be >= 0, got {self.header_len}")
        if self.footer_len < 0:
            out.append(f"footer_len must be >= 0, got {self.footer_len}")
        bad = sorted(a for a in self.allowed_apids if not (0 <= a <= MAX_APID))
        if bad:
            out.append(f"allowed_apids out of range 0..{MAX_APID}: {bad}")
        if self.header_endianness not in ENDIANNESS:
            out.append(f"header_endianness must be 'big' or 'little', got {self.header_endianness!r}")
        if self.queue_depth < 1:
            out.append(f"queue_depth must be >= 1, got {self.queue_depth}")
        if self.resync_limit < 1:
            out.append(f"resync_limit must be >= 1, got {self.resync_limit}")
        if self.read_size < 1:
            out.append(f"read_size must be >= 1, got {self.read_size}")
        out += _timing_problems(self.timing)
        return out

    def validate(self) -> "RouteConfig":
        problems = self.problems()
        if problems:
            raise ConfigError(problems)
        return self

    def with_changes(self, **changes) -> "RouteConfig":
        return replace(self, **changes)


def _load_doc(path: Path) -> Dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        return json.loads(text)
    return yaml.safe_load(text) or {}


def load_config(path) -> RouteConfig:
    """Read a YAML (or .json) route document and validate it."""
    p = Path(path)
    try:
        doc = _load_doc(p)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot parse {p}: {e}") from e
    if not isinstance(doc, dict):
        raise ConfigError(f"{p}: top level must be a mapping")
    return RouteConfig.from_dict(doc).validate()


def dump_config(config: RouteConfig, path) -> None:
    p = Path(path)
    doc = config.to_dict()
    if p.suffix.lower() == ".json":
        atomic_write_text(p, json.dumps(doc, indent=2))
    else:
        atomic_write_text(p, yaml.safe_dump(doc, sort_keys=False))
