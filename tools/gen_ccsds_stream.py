#!/usr/bin/env python3
# -*- coding: utf-8 -*-

'''
Generate a CCSDS packet stream for exercising a route.

# 50 packets cycling over APIDs 7 and 8, one per second of packet time,
# with a 4-byte sync header in front of each packet
python gen_ccsds_stream.py -o stream.bin -n 50 --apids 7,8 --header 1acffc1d

# same packets as UDP datagrams in a pcap, little-endian primary headers
python gen_ccsds_stream.py -o stream.pcap --pcap --little-endian -n 50

Each packet carries a 4-byte seconds / 2-byte subseconds timestamp right after
the primary header (the replay defaults), followed by filler up to --size.
'''

import argparse
import random
import socket
import struct

import dpkt

from ccsdsrouter.ccsds import build_packet


def parse_hex_bytes(s: str) -> bytes:
    s = s.strip().lower()
    if s.startswith("0x"):
        s = s[2:]
    try:
        return bytes.fromhex(s)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a hex byte string: {s!r}")


def parse_apids(s: str):
    out = []
    for part in s.split(","):
        part = part.strip().lower()
        if not part:
            continue
        out.append(int(part, 16) if part.startswith("0x") else int(part))
    if not out:
        raise argparse.ArgumentTypeError("at least one APID is required")
    return out


def make_packets(count, apids, size, period, start, little_endian, rng):
    seq = {a: 0 for a in apids}
    for i in range(count):
        apid = apids[i % len(apids)]
        t = start + i * period
        secs = int(t)
        subsecs = int(round((t - secs) * 65536)) & 0xFFFF
        body = struct.pack(">IH", secs, subsecs)
        filler = max(1, size - 6 - len(body))
        body += bytes(rng.getrandbits(8) for _ in range(filler))
        yield build_packet(apid, body, sequence_count=seq[apid], little_endian=little_endian)
        seq[apid] = (seq[apid] + 1) & 0x3FFF


def write_pcap(path, units, host, port, period, start):
    addr = socket.inet_aton(host)
    with open(path, "wb") as fout:
        writer = dpkt.pcap.Writer(fout, linktype=dpkt.pcap.DLT_EN10MB)
        for i, unit in enumerate(units):
            udp = dpkt.udp.UDP(sport=port, dport=port, data=unit)
            udp.ulen = len(udp)
            ip = dpkt.ip.IP(src=addr, dst=addr, p=dpkt.ip.IP_PROTO_UDP, data=udp)
            ip.len = len(ip)
            eth = dpkt.ethernet.Ethernet(src=b"\x00" * 6, dst=b"\x00" * 6,
                                         type=dpkt.ethernet.ETH_TYPE_IP, data=ip)
            writer.writepkt(bytes(eth), ts=start + i * period)


def main():
    ap = argparse.ArgumentParser(description="Generate a CCSDS packet stream file.")
    ap.add_argument("-o", "--output", required=True, help="output path")
    ap.add_argument("-n", "--count", type=int, default=10, help="number of packets")
    ap.add_argument("--apids", type=parse_apids, default=[7], help="comma separated APIDs, e.g. 7,8,0x1f")
    ap.add_argument("--size", type=int, default=32, help="packet size in bytes (min 13)")
    ap.add_argument("--period", type=float, default=1.0, help="seconds of packet time between packets")
    ap.add_argument("--start", type=float, default=1000.0, help="timestamp of the first packet")
    ap.add_argument("--header", type=parse_hex_bytes, default=b"", help="framing header bytes (hex)")
    ap.add_argument("--footer", type=parse_hex_bytes, default=b"", help="framing footer bytes (hex)")
    ap.add_argument("--little-endian", action="store_true", help="little-endian primary headers")
    ap.add_argument("--pcap", action="store_true", help="write UDP datagrams into a pcap instead")
    ap.add_argument("--host", default="127.0.0.1", help="pcap datagram address")
    ap.add_argument("--port", type=int, default=50000, help="pcap datagram port")
    ap.add_argument("--seed", type=int, default=None, help="random seed for the filler bytes")
    args = ap.parse_args()

    if args.count < 0:
        raise SystemExit("count must be >= 0")
    if args.size < 13:
        raise SystemExit("size must be >= 13 (primary header + timestamp + 1)")

    rng = random.Random(args.seed)
    packets = make_packets(args.count, args.apids, args.size, args.period, args.start,
                           args.little_endian, rng)
    units = [args.header + pkt + args.footer for pkt in packets]

    if args.pcap:
        write_pcap(args.output, units, args.host, args.port, args.period, args.start)
    else:
        with open(args.output, "wb") as fout:
            for u in units:
                fout.write(u)

    print(f"[OK] packets={len(units)} bytes={sum(len(u) for u in units)} out={args.output}")


if __name__ == "__main__":
    main()
