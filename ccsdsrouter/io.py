# ccsdsrouter/io.py
"""
Byte transports for a route.

Sources: read() -> bytes, b"" at end of stream. Sinks: write(data) sends all of
data or raises. close() is idempotent everywhere. Socket endpoints use a short
timeout and re-check their closed flag, so close() from another thread ends a
blocked read or accept promptly.
"""
from __future__ import annotations

import socket
import time
from typing import Callable, Iterator, Optional, Tuple

import dpkt

from .config import EndpointConfig, RouteConfig
from .errors import PeerDisconnected, TransportReadError, TransportWriteError
from .utils import get_logger

log = get_logger("io")

POLL_INTERVAL = 0.2
CONNECT_TIMEOUT = 5.0
MAX_UDP_PAYLOAD = 65507

_PCAP_MAGIC = {b"\xd4\xc3\xb2\xa1", b"\xa1\xb2\xc3\xd4", b"\x4d\x3c\xb2\xa1", b"\xa1\xb2\x3c\x4d"}
_PCAPNG_MAGIC = b"\x0a\x0d\x0d\x0a"


class Endpoint:
    def __init__(self):
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._release()

    def _release(self) -> None:
        pass

    def interrupt(self) -> None:
        """
        Called from another thread on stop to end a read or write that may block
        indefinitely. Endpoints whose calls always return promptly keep this no-op.
        """

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def _shutdown_close(sock: Optional[socket.socket]) -> None:
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        # not connected (listening or UDP socket), nothing to shut down
        pass
    sock.close()


def _send_until_closed(ep: Endpoint, sock: socket.socket, data: bytes) -> None:
    """sendall for a socket with a POLL_INTERVAL timeout; gives up once ep is closed."""
    view = memoryview(data)
    while view:
        if ep.closed:
            raise TransportWriteError(f"sink closed with {len(view)} of {len(data)} bytes unsent")
        try:
            n = sock.send(view)
        except socket.timeout:
            continue
        view = view[n:]


# ---------------- files ----------------

class FileSource(Endpoint):
    def __init__(self, path: str, read_size: int = 4096):
        super().__init__()
        self.path = path
        self.read_size = read_size
        try:
            self._f = open(path, "rb")
        except OSError as e:
            raise TransportReadError(f"cannot open {path}: {e}") from e

    def read(self) -> bytes:
        if self._closed:
            return b""
        try:
            return self._f.read(self.read_size)
        except (OSError, ValueError) as e:
            if self._closed:
                return b""
            raise TransportReadError(f"read failed on {self.path}: {e}") from e

    def _release(self) -> None:
        self._f.close()


class FileSink(Endpoint):
    def __init__(self, path: str):
        super().__init__()
        self.path = path
        try:
            self._f = open(path, "wb")
        except OSError as e:
            raise TransportWriteError(f"cannot create {path}: {e}") from e

    def write(self, data: bytes) -> None:
        try:
            self._f.write(data)
            self._f.flush()
        except (OSError, ValueError) as e:
            raise TransportWriteError(f"write failed on {self.path}: {e}") from e

    def _release(self) -> None:
        self._f.close()


class NullSink(Endpoint):
    def write(self, data: bytes) -> None:
        pass


# ---------------- UDP ----------------

class UdpSource(Endpoint):
    """One chunk per datagram."""

    def __init__(self, host: str, port: int):
        super().__init__()
        self.host, self.port = host, port
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            self._sock.bind((host, port))
        except OSError as e:
            self._sock.close()
            raise TransportReadError(f"cannot bind udp {host}:{port}: {e}") from e
        self._sock.settimeout(POLL_INTERVAL)

    @property
    def address(self) -> Tuple[str, int]:
        return self._sock.getsockname()

    def read(self) -> bytes:
        while not self._closed:
            try:
                data, _addr = self._sock.recvfrom(65535)
            except socket.timeout:
                continue
            except OSError as e:
                if self._closed:
                    break
                raise TransportReadError(f"udp receive failed: {e}") from e
            if data:
                return data
        return b""

    def _release(self) -> None:
        self._sock.close()


class UdpSink(Endpoint):
    def __init__(self, host: str, port: int):
        super().__init__()
        self.addr = (host, port)
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)

    def write(self, data: bytes) -> None:
        if len(data) > MAX_UDP_PAYLOAD:
            raise TransportWriteError(f"{len(data)} bytes do not fit in one udp datagram")
        try:
            sent = self._sock.sendto(data, self.addr)
        except OSError as e:
            raise TransportWriteError(f"udp send to {self.addr[0]}:{self.addr[1]} failed: {e}") from e
        if sent != len(data):
            raise TransportWriteError(f"udp send truncated: {sent}/{len(data)} bytes")

    def _release(self) -> None:
        self._sock.close()


# ---------------- TCP ----------------

def _connect(host: str, port: int, error_cls) -> socket.socket:
    try:
        return socket.create_connection((host, port), timeout=CONNECT_TIMEOUT)
    except OSError as e:
        raise error_cls(f"cannot connect to {host}:{port}: {e}") from e


def _listen(host: str, port: int, error_cls) -> socket.socket:
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        s.bind((host, port))
        s.listen(1)
    except OSError as e:
        s.close()
        raise error_cls(f"cannot listen on {host}:{port}: {e}") from e
    s.settimeout(POLL_INTERVAL)
    return s


class TcpClientSource(Endpoint):
    """Peer closing the connection is the end of the stream."""

    def __init__(self, host: str, port: int, read_size: int = 4096):
        super().__init__()
        self.read_size = read_size
        self._sock = _connect(host, port, TransportReadError)
        self._sock.settimeout(POLL_INTERVAL)

    def read(self) -> bytes:
        while not self._closed:
            try:
                return self._sock.recv(self.read_size)
            except socket.timeout:
                continue
            except OSError as e:
                if self._closed:
                    break
                raise TransportReadError(f"tcp receive failed: {e}") from e
        return b""

    def _release(self) -> None:
        _shutdown_close(self._sock)


class TcpClientSink(Endpoint):
    def __init__(self, host: str, port: int):
        super().__init__()
        self._sock = _connect(host, port, TransportWriteError)
        self._sock.settimeout(POLL_INTERVAL)

    def write(self, data: bytes) -> None:
        try:
            _send_until_closed(self, self._sock, data)
        except TransportWriteError:
            raise
        except OSError as e:
            raise TransportWriteError(f"tcp send failed: {e}") from e

    def _release(self) -> None:
        _shutdown_close(self._sock)

    def interrupt(self) -> None:
        self.close()


class _TcpServer(Endpoint):
    """Listening socket holding at most one accepted peer at a time."""

    def __init__(self, host: str, port: int, error_cls):
        super().__init__()
        self._error_cls = error_cls
        self._listener = _listen(host, port, error_cls)
        self._conn: Optional[socket.socket] = None
        self.peer: Optional[Tuple[str, int]] = None
        self.on_connect: Optional[Callable[[Tuple[str, int]], None]] = None

    @property
    def address(self) -> Tuple[str, int]:
        return self._listener.getsockname()

    @property
    def connected(self) -> bool:
        return self._conn is not None

    def _accept(self) -> Optional[socket.socket]:
        """Wait for the next peer. None once the endpoint is closed."""
        while not self._closed:
            try:
                conn, addr = self._listener.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._closed:
                    break
                raise self._error_cls(f"accept failed: {e}") from e
            conn.settimeout(POLL_INTERVAL)
            self._conn, self.peer = conn, addr
            log.info(f"[PEER] connected {addr[0]}:{addr[1]}")
            if self.on_connect is not None:
                self.on_connect(addr)
            if self._closed:
                # close() ran while the peer was being set up
                _shutdown_close(conn)
                break
            return conn
        return None

    def _drop_peer(self) -> None:
        _shutdown_close(self._conn)
        self._conn = None

    def _release(self) -> None:
        self._drop_peer()
        self._listener.close()


class TcpServerSource(_TcpServer):
    """
    A departing peer raises PeerDisconnected; the next read() waits for the
    next peer on the same listening socket.
    """

    def __init__(self, host: str, port: int, read_size: int = 4096):
        super().__init__(host, port, TransportReadError)
        self.read_size = read_size

    def read(self) -> bytes:
        while not self._closed:
            conn = self._conn
            if conn is None:
                conn = self._accept()
                if conn is None:
                    break
            try:
                data = conn.recv(self.read_size)
            except socket.timeout:
                continue
            except OSError as e:
                if self._closed:
                    break
                peer = self.peer
                self._drop_peer()
                raise PeerDisconnected(f"peer {peer} dropped: {e}") from e
            if not data:
                if self._closed:
                    break
                peer = self.peer
                self._drop_peer()
                raise PeerDisconnected(f"peer {peer} closed the connection")
            return data
        return b""


class TcpServerSink(_TcpServer):
    """The first write waits for a peer to connect; losing it is fatal."""

    def __init__(self, host: str, port: int):
        super().__init__(host, port, TransportWriteError)

    def write(self, data: bytes) -> None:
        conn = self._conn
        if conn is None:
            conn = self._accept()
            if conn is None:
                raise TransportWriteError("sink closed while waiting for a peer")
        try:
            _send_until_closed(self, conn, data)
        except TransportWriteError:
            raise
        except OSError as e:
            self._drop_peer()
            raise TransportWriteError(f"tcp send to {self.peer} failed: {e}") from e

    def interrupt(self) -> None:
        self.close()


# ---------------- pcap (dpkt) ----------------

def _sniff_kind(path: str) -> str:
    with open(path, "rb") as f:
        head = f.read(4)
    if head in _PCAP_MAGIC:
        return "pcap"
    if head == _PCAPNG_MAGIC:
        return "pcapng"
    raise ValueError(f"Unknown capture format (not pcap/pcapng): {path}")


def _udp_payload(linktype: int, buf: bytes, port: int) -> Optional[bytes]:
    """UDP payload of one captured frame, or None if it is not (matching) UDP."""
    try:
        if linktype == dpkt.pcap.DLT_EN10MB:
            payload = dpkt.ethernet.Ethernet(buf).data
            if isinstance(payload, dpkt.ethernet.VLANtag8021Q):
                payload = payload.data
        else:
            payload = dpkt.ip.IP(buf) if (buf[:1] and buf[0] >> 4 == 4) else dpkt.ip6.IP6(buf)
    except (dpkt.UnpackError, IndexError):
        return None

    if not isinstance(payload, (dpkt.ip.IP, dpkt.ip6.IP6)):
        return None
    udp = payload.data
    if not isinstance(udp, dpkt.udp.UDP):
        return None
    if port and udp.dport != port:
        return None
    return bytes(udp.data)


class PcapSource(Endpoint):
    """
    UDP payloads from a classic pcap capture, one chunk per datagram.
    port=0 takes every UDP datagram; otherwise only those sent to port.
    """

    RAW_LINKTYPES = {dpkt.pcap.DLT_RAW, 101}

    def __init__(self, path: str, port: int = 0):
        super().__init__()
        self.path = path
        self.port = port
        self.skipped = 0
        try:
            kind = _sniff_kind(path)
        except (OSError, ValueError) as e:
            raise TransportReadError(str(e)) from e
        if kind != "pcap":
            raise TransportReadError(f"{path}: only classic pcap is supported (pcapng found)")
        self._f = open(path, "rb")
        try:
            reader = dpkt.pcap.Reader(self._f)
        except (ValueError, dpkt.NeedData) as e:
            self._f.close()
            raise TransportReadError(f"{path}: {e}") from e
        self.linktype = reader.datalink()
        if self.linktype != dpkt.pcap.DLT_EN10MB and self.linktype not in self.RAW_LINKTYPES:
            self._f.close()
            raise TransportReadError(f"{path}: unsupported linktype {self.linktype}")
        self._it: Iterator = iter(reader)

    def read(self) -> bytes:
        while not self._closed:
            try:
                _ts, buf = next(self._it)
            except StopIteration:
                break
            except (OSError, ValueError, dpkt.NeedData) as e:
                raise TransportReadError(f"pcap read failed on {self.path}: {e}") from e
            data = _udp_payload(self.linktype, buf, self.port)
            if data:
                return data
            self.skipped += 1
        if self.skipped:
            log.debug(f"[PCAP] {self.path}: skipped {self.skipped} non-matching records")
        return b""

    def _release(self) -> None:
        self._f.close()


class PcapSink(Endpoint):
    """
    Writes every output unit as one Ethernet/IPv4/UDP datagram addressed to
    host:port into a classic pcap, through dpkt.pcap.Writer. Each record is
    flushed to the file before write() returns.
    """

    def __init__(self, path: str, host: str = "127.0.0.1", port: int = 0):
        super().__init__()
        self.path = path
        self.port = port or 50000
        try:
            self._dst = socket.inet_aton(host)
            self._out = open(path, "wb")
        except OSError as e:
            raise TransportWriteError(f"cannot create pcap {path}: {e}") from e
        self._writer = dpkt.pcap.Writer(self._out, linktype=dpkt.pcap.DLT_EN10MB)

    def _wrap(self, data: bytes) -> bytes:
        udp = dpkt.udp.UDP(sport=self.port, dport=self.port, data=data)
        udp.ulen = len(udp)
        ip = dpkt.ip.IP(src=self._dst, dst=self._dst, p=dpkt.ip.IP_PROTO_UDP, data=udp)
        ip.len = len(ip)
        eth = dpkt.ethernet.Ethernet(src=b"\x00" * 6, dst=b"\x00" * 6,
                                     type=dpkt.ethernet.ETH_TYPE_IP, data=ip)
        return bytes(eth)

    def write(self, data: bytes) -> None:
        if len(data) > MAX_UDP_PAYLOAD:
            raise TransportWriteError(f"{len(data)} bytes do not fit in one udp datagram")
        try:
            self._writer.writepkt(self._wrap(data), ts=time.time())
            self._out.flush()
        except (OSError, ValueError) as e:
            raise TransportWriteError(f"pcap write failed on {self.path}: {e}") from e

    def _release(self) -> None:
        self._writer.close()


# ---------------- factories ----------------

def open_source(config: RouteConfig):
    ep: EndpointConfig = config.source
    if ep.kind == "file":
        return FileSource(ep.path, read_size=config.read_size)
    if ep.kind == "udp":
        return UdpSource(ep.host, ep.port)
    if ep.kind == "tcp_client":
        return TcpClientSource(ep.host, ep.port, read_size=config.read_size)
    if ep.kind == "tcp_server":
        return TcpServerSource(ep.host, ep.port, read_size=config.read_size)
    if ep.kind == "pcap":
        return PcapSource(ep.path, port=ep.port)
    raise ValueError(f"Unknown source type: {ep.kind}")


def open_sink(config: RouteConfig):
    ep: EndpointConfig = config.sink
    if ep.kind == "file":
        return FileSink(ep.path)
    if ep.kind == "udp":
        return UdpSink(ep.host, ep.port)
    if ep.kind == "tcp_client":
        return TcpClientSink(ep.host, ep.port)
    if ep.kind == "tcp_server":
        return TcpServerSink(ep.host, ep.port)
    if ep.kind == "pcap":
        return PcapSink(ep.path, host=ep.host, port=ep.port)
    if ep.kind == "null":
        return NullSink()
    raise ValueError(f"Unknown sink type: {ep.kind}")
