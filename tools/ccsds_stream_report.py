#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
ccsds_stream_report.py

Summarize what a route would see from its source, without sending anything.

What this tool does
- Reads the source of a route configuration (file or pcap)
- Decodes it with the route's framing, endianness and size settings
- Reports per-APID packet counts, packet-length statistics and, when the
  route uses replay timing, the spacing of the embedded timestamps
- Counts the frames the decoder and filter would drop, by reason

Typical usage
  python3 ccsds_stream_report.py route.yaml
  python3 ccsds_stream_report.py route.yaml --json report.json
"""

import argparse
import json
import sys
from collections import Counter, defaultdict
from pathlib import Path
from typing import Any, Dict, List

import numpy as np

from ccsdsrouter.config import load_config
from ccsdsrouter.decoder import FrameDecoder
from ccsdsrouter.io import open_source
from ccsdsrouter.stages import PacketFilter
from ccsdsrouter.timing import Replay, decode_timestamp
from ccsdsrouter.utils import atomic_write_json


def eprint(*args, **kwargs):
    print(*args, file=sys.stderr, **kwargs)


def compute_stats(arr: np.ndarray) -> Dict[str, Any]:
    if arr.size == 0:
        return {"count": 0}

    x = arr.astype(np.float64)
    n = int(x.size)
    std = float(x.std(ddof=1)) if n > 1 else 0.0
    return {
        "count": n,
        "mean": float(x.mean()),
        "std": std,
        "min": float(x.min()),
        "median": float(np.median(x)),
        "p90": float(np.quantile(x, 0.90)),
        "p99": float(np.quantile(x, 0.99)),
        "max": float(x.max()),
    }


def main():
    ap = argparse.ArgumentParser(description="Per-APID report of a route's input stream.")
    ap.add_argument("config", help="route configuration (.yaml or .json)")
    ap.add_argument("--json", dest="json_out", help="also write the report to this file")
    args = ap.parse_args()

    config = load_config(args.config)
    if config.source.kind not in {"file", "pcap"}:
        raise SystemExit(f"source type {config.source.kind} cannot be replayed offline")

    drops: Counter = Counter()
    decoder = FrameDecoder(config,
                           on_drop=lambda reason, detail, n: drops.update([reason.value]),
                           on_stream_error=lambda detail, n: drops.update(["resync_exhausted"]))
    gate = PacketFilter.from_config(config)
    replay = config.timing if isinstance(config.timing, Replay) else None

    lengths: Dict[Any, List[int]] = defaultdict(list)
    stamps: Dict[Any, List[float]] = defaultdict(list)

    src = open_source(config)
    try:
        while True:
            chunk = src.read()
            if not chunk:
                break
            for frame in decoder.feed(chunk):
                v = gate.check(frame)
                if not v.accepted:
                    drops.update([v.reason.value])
                    continue
                key = frame.apid if frame.apid is not None else "fixed"
                lengths[key].append(len(frame.payload))
                if replay is not None:
                    ts = decode_timestamp(frame.payload, replay)
                    if ts is not None:
                        stamps[key].append(ts)
        decoder.flush()
    finally:
        src.close()

    per_apid = {}
    for key in sorted(lengths, key=str):
        entry = {"length": compute_stats(np.asarray(lengths[key]))}
        if stamps.get(key):
            gaps = np.diff(np.asarray(stamps[key]))
            entry["timestamp_gap_s"] = compute_stats(gaps)
            entry["timestamp_regressions"] = int((gaps < 0).sum())
        per_apid[str(key)] = entry

    report = {
        "source": config.source.describe(),
        "frames": decoder.frames,
        "bytes_in": decoder.bytes_in,
        "skipped_bytes": decoder.skipped_bytes,
        "dropped": dict(drops),
        "apids": per_apid,
    }

    text = json.dumps(report, indent=2)
    print(text)
    if args.json_out:
        atomic_write_json(Path(args.json_out), report)
        eprint(f"[OK] wrote {args.json_out}")


if __name__ == "__main__":
    main()
