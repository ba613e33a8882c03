# ccsdsrouter/pipeline.py
from __future__ import annotations

import queue
import threading
from typing import Optional

from .config import RouteConfig
from .core import DropReason, Frame
from .decoder import FrameDecoder
from .errors import PeerDisconnected, TransportError, TransportWriteError
from .events import EventKind, EventLog, Listener
from .io import open_sink, open_source
from .stages import Framer, PacketFilter
from .stats import RouteStats
from .timing import MonotonicClock, TimingScheduler
from .utils import log

POLL_INTERVAL = 0.1

_END = object()


class RunHandle:
    """
    One running route.

    The reader thread pulls chunks from the source, decodes and filters them
    and queues accepted frames. The writer thread waits for each frame's
    scheduled instant, frames it and writes it to the sink. The bounded queue
    between them is the only hand-off; when it is full the reader waits.
    """

    def __init__(self, config: RouteConfig, source, sink,
                 clock: Optional[MonotonicClock] = None,
                 listener: Optional[Listener] = None):
        self.config = config
        self.source = source
        self.sink = sink
        self.clock = clock or MonotonicClock()
        self.stats = RouteStats()
        self.events = EventLog(listener)

        self.decoder = FrameDecoder(config, clock=self.clock,
                                    on_drop=self._on_decode_drop,
                                    on_stream_error=self._on_stream_error)
        self.filter = PacketFilter.from_config(config)
        self.scheduler = TimingScheduler(config.timing, self.clock)
        self.framer = Framer.from_config(config)

        self.error: Optional[BaseException] = None

        self._queue: "queue.Queue" = queue.Queue(maxsize=config.queue_depth)
        self._stop = threading.Event()
        self._resume = threading.Event()
        self._resume.set()
        self._done = threading.Event()
        self._pause_lock = threading.Lock()
        self._paused_at: Optional[float] = None

        if hasattr(source, "on_connect"):
            source.on_connect = self._on_peer_connected

        self._reader = threading.Thread(target=self._read_loop, name="ccsds-reader", daemon=True)
        self._writer = threading.Thread(target=self._write_loop, name="ccsds-writer", daemon=True)

    # ---------- lifecycle ----------

    def _start(self) -> "RunHandle":
        self.events.emit(EventKind.RUN_STARTED,
                         source=self.config.source.describe(),
                         sink=self.config.sink.describe(),
                         timing=type(self.config.timing).__name__)
        self._reader.start()
        self._writer.start()
        return self

    @property
    def running(self) -> bool:
        return not self._done.is_set()

    @property
    def paused(self) -> bool:
        return not self._resume.is_set()

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Abandon pending waits, emit nothing more, release both endpoints."""
        if not self._stop.is_set():
            log.info("[STOP] stop requested")
        self._stop.set()
        self._resume.set()
        self._close(self.source)
        self._interrupt(self.sink)
        return self.wait(timeout)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """True once both threads have finished."""
        return self._done.wait(timeout)

    def pause(self) -> None:
        with self._pause_lock:
            if self._resume.is_set() and not self._stop.is_set():
                self._paused_at = self.clock.now()
                self._resume.clear()
                log.info("[PAUSE] route paused")

    def resume(self) -> None:
        with self._pause_lock:
            if not self._resume.is_set():
                if self._paused_at is not None:
                    self.scheduler.shift(self.clock.now() - self._paused_at)
                self._paused_at = None
                self._resume.set()
                log.info("[RESUME] route resumed")

    # ---------- callbacks ----------

    def _on_decode_drop(self, reason: DropReason, detail: str, nbytes: int) -> None:
        self.stats.record_drop(reason)
        self.events.emit(EventKind.FRAME_REJECTED, reason=reason.value, detail=detail, bytes=nbytes)

    def _on_stream_error(self, detail: str, nbytes: int) -> None:
        self.stats.record_drop(DropReason.MALFORMED)
        self.stats.record_resync_failure()
        self.events.emit(EventKind.STREAM_ERROR, reason=DropReason.MALFORMED.value,
                         detail=detail, bytes=nbytes)

    def _on_peer_connected(self, addr) -> None:
        self.events.emit(EventKind.PEER_CONNECTED, peer=f"{addr[0]}:{addr[1]}")

    def _fail(self, err: BaseException) -> None:
        if self.error is None:
            self.error = err
        if isinstance(err, TransportError):
            self.stats.record_transport_error()
            self.events.emit(EventKind.TRANSPORT_ERROR, error=str(err))
        else:
            log.error(f"[FAIL] {type(err).__name__}: {err}", exc_info=err)
        self._stop.set()
        self._resume.set()

    @staticmethod
    def _close(endpoint) -> None:
        try:
            endpoint.close()
        except OSError as e:
            log.warning(f"[CLOSE] {type(endpoint).__name__}: {e}")

    @staticmethod
    def _interrupt(endpoint) -> None:
        interrupt = getattr(endpoint, "interrupt", None)
        if interrupt is None:
            return
        try:
            interrupt()
        except OSError as e:
            log.warning(f"[CLOSE] {type(endpoint).__name__}: {e}")

    # ---------- reader ----------

    def _put(self, item) -> bool:
        while not self._stop.is_set():
            try:
                self._queue.put(item, timeout=POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def _admit(self, frame: Frame) -> None:
        self.stats.record_decoded()
        v = self.filter.check(frame)
        if not v.accepted:
            self.stats.record_drop(v.reason)
            self.events.emit(EventKind.FRAME_REJECTED, idx=frame.idx, apid=frame.apid,
                             reason=v.reason.value, detail=v.detail)
            return
        self.stats.record_accepted()
        self.events.emit(EventKind.FRAME_ACCEPTED, idx=frame.idx, apid=frame.apid, size=len(frame.payload))
        if not self._put(frame):
            self.stats.record_discarded()

    def _read_loop(self) -> None:
        try:
            while not self._stop.is_set():
                try:
                    chunk = self.source.read()
                except PeerDisconnected as e:
                    self.stats.record_reconnect()
                    self.events.emit(EventKind.PEER_DISCONNECTED, detail=str(e))
                    # a frame cut off by the departing peer cannot be completed by the next one
                    self.decoder.flush()
                    continue
                if not chunk:
                    break
                self.stats.record_chunk(len(chunk))
                for frame in self.decoder.feed(chunk):
                    if self._stop.is_set():
                        break
                    self._admit(frame)

            if not self._stop.is_set():
                self.decoder.flush()
                log.info(f"[EOS] {self.config.source.describe()} ended")
            self._put(_END)
        except Exception as e:  # any failure ends the run and is reported on the handle
            self._fail(e)

    # ---------- writer ----------

    def _wait_while_paused(self) -> bool:
        while not self._resume.is_set():
            self._resume.wait(POLL_INTERVAL)
        return not self._stop.is_set()

    def _emit(self, frame: Frame) -> bool:
        if not self._wait_while_paused():
            return False
        target = self.scheduler.target(frame)
        if not self.clock.wait_until(target, self._stop):
            return False
        data = self.framer.render(frame)
        try:
            self.sink.write(data)
        except TransportWriteError:
            if self._stop.is_set():
                return False
            raise
        self.scheduler.mark_emitted(self.clock.now())
        self.stats.record_emitted(frame, len(data))
        return True

    def _write_loop(self) -> None:
        try:
            while not self._stop.is_set():
                try:
                    item = self._queue.get(timeout=POLL_INTERVAL)
                except queue.Empty:
                    continue
                if item is _END:
                    break
                if not self._emit(item):
                    self.stats.record_discarded()
                    break
        except Exception as e:  # any failure ends the run and is reported on the handle
            self._fail(e)
        finally:
            self._finish()

    def _discard_queued(self) -> None:
        n = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is not _END:
                n += 1
        if n:
            self.stats.record_discarded(n)
            log.info(f"[STOP] {n} queued frames discarded")

    def _finish(self) -> None:
        self._stop.set()
        self._resume.set()
        self._close(self.source)
        self._reader.join()
        self._discard_queued()
        self._close(self.sink)
        self.events.emit(EventKind.RUN_STOPPED,
                         error=str(self.error) if self.error else None,
                         **{k: v for k, v in self.stats.snapshot().items() if k in {"decoded", "emitted"}})
        log.info(f"[DONE] {self.stats.summary()}")
        self._done.set()


def start_route(config: RouteConfig, source=None, sink=None,
                clock: Optional[MonotonicClock] = None,
                listener: Optional[Listener] = None) -> RunHandle:
    """
    Validate config, open the endpoints and start both pipeline threads.

    ConfigError and transport open failures raise here; nothing runs then.
    source/sink override the configured endpoints (any object with
    read()/write() and close()).
    """
    config.validate()
    if config.fixed_length_mode and config.allowed_apids:
        log.warning("[CONFIG] allowed_apids ignored in fixed-length mode (no header is parsed)")
    if config.fixed_length_mode and (config.header_len or config.footer_len):
        log.warning("[CONFIG] header_len/footer_len ignored in fixed-length mode")
    if config.fixed_length_mode and config.fixed_length_size > config.max_packet_size:
        log.warning("[CONFIG] fixed_length size exceeds max_packet_size, every block will be dropped")

    own_source = source is None
    if own_source:
        source = open_source(config)
    try:
        if sink is None:
            sink = open_sink(config)
    except Exception:
        if own_source:
            source.close()
        raise

    return RunHandle(config, source, sink, clock=clock, listener=listener)._start()
