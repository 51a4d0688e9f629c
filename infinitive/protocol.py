"""Request/response protocol over the thermostat bus serial line."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, fields

import serial

from .frame import FrameError, InfinityFrame, Op

log = logging.getLogger(__name__)

DEV_TSTAT = 0x2001
DEV_SAM = 0x9201

RESPONSE_TIMEOUT = 0.5
RESPONSE_RETRIES = 5
READ_TIMEOUT = 5.0
BAUD_RATE = 38400

_MIN_FRAME = 10
_RESPONSE_QUEUE_SIZE = 32
_REOPEN_DELAY = 1.0

WRITE_ACK = InfinityFrame(dst=DEV_TSTAT, src=DEV_SAM, op=Op.RESPONSE, data=b"\x00")


class ActionTimeout(Exception):
    """No matching response arrived after all retransmissions."""


@dataclass
class ProtocolStats:
    """Counters of bus traffic since the last report."""

    rcvs: int = 0  # candidate chunks received
    frerrs: int = 0  # framing errors
    frames: int = 0  # valid frames received
    fself: int = 0  # frames addressed to us
    fother: int = 0  # frames addressed to others
    fsnoop: int = 0  # frames addressed to others, snooped
    sresp: int = 0  # responses sent
    srd: int = 0  # raw reads requested
    srdt: int = 0  # table reads requested
    swr: int = 0  # writes requested
    aact: int = 0  # actions originated
    aretr: int = 0  # retransmissions
    aother: int = 0  # unexpected responses while waiting
    aok1: int = 0  # actions answered without retransmission
    aokN: int = 0  # actions answered after retransmission
    aokms: int = 0  # elapsed ms of successful actions
    afail: int = 0  # actions failed
    afailms: int = 0  # elapsed ms of failed actions

    def __str__(self):
        body = " ".join(f"{f.name}:{getattr(self, f.name)}" for f in fields(self))
        return "{" + body + "}"


@dataclass(frozen=True)
class _Snoop:
    src_min: int
    src_max: int
    callback: object


class InfinityProtocol:
    """Talks to the thermostat bus as the SAM device."""

    def __init__(
        self,
        device,
        port=None,
        *,
        response_timeout=RESPONSE_TIMEOUT,
        retries=RESPONSE_RETRIES,
        read_timeout=READ_TIMEOUT,
        on_frame=None,
    ):
        self.device = device
        self.port = port
        self.response_timeout = response_timeout
        self.retries = retries
        self.read_timeout = read_timeout
        self.on_frame = on_frame
        self.stats = ProtocolStats()
        self._snoops = []
        self._buffer = bytearray()
        self._buffer_lock = threading.RLock()
        self._stats_lock = threading.Lock()
        self._action_lock = threading.Lock()
        self._awaiting = threading.Event()
        self._responses = queue.Queue(maxsize=_RESPONSE_QUEUE_SIZE)
        self._stop = threading.Event()
        self._reader_thread = None

    # connection management

    def _open_serial(self):
        log.info("opening serial interface: %s", self.device)
        if self.port is not None:
            self._close_port()
        self.port = serial.Serial(self.device, baudrate=BAUD_RATE, timeout=self.read_timeout)

    def _close_port(self):
        port, self.port = self.port, None
        if port is not None:
            try:
                port.close()
            except (serial.SerialException, OSError) as exc:
                log.warning("error closing serial port: %s", exc)

    def open(self):
        """Open the serial port if needed and start reading from it."""
        if self.port is None:
            self._open_serial()
        self._stop.clear()
        self._reader_thread = threading.Thread(
            target=self._reader, name="infinity-reader", daemon=True
        )
        self._reader_thread.start()

    def close(self):
        """Stop reading and close the serial port."""
        self._stop.set()
        self._close_port()
        thread, self._reader_thread = self._reader_thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.read_timeout + 1)

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _reader(self):
        while not self._stop.is_set():
            if self.port is None:
                with self._buffer_lock:
                    self._buffer.clear()
                try:
                    self._open_serial()
                except (serial.SerialException, OSError) as exc:
                    log.error("error opening serial port: %s", exc)
                    self._stop.wait(_REOPEN_DELAY)
                    continue
            port = self.port
            if port is None:
                continue
            try:
                data = port.read(max(1, getattr(port, "in_waiting", 0) or 0))
            except (serial.SerialException, OSError, TypeError) as exc:
                log.error("error reading from serial port: %s", exc)
                data = b""
            if self._stop.is_set():
                break
            if not data:
                log.error("no data read from serial port, reopening")
                self._close_port()
                continue
            self.feed(data)

    # receiving

    def feed(self, data):
        """Add received bytes and handle every complete frame among them."""
        with self._buffer_lock:
            self.stats.rcvs += 1
            buf = self._buffer
            buf.extend(data)
            while len(buf) >= _MIN_FRAME:
                length = buf[4] + _MIN_FRAME
                if len(buf) < length:
                    break
                try:
                    frame = InfinityFrame.decode(buf[:length])
                except FrameError:
                    self.stats.frerrs += 1
                    del buf[0]
                    continue
                del buf[:length]
                self.stats.frames += 1
                response = self.handle_frame(frame)
                if response is not None:
                    self.stats.sresp += 1
                    self._send_frame(response.encode())

    def handle_frame(self, frame):
        """Route one received frame; return a frame to send back, or None."""
        if self.on_frame is not None:
            self.on_frame(frame)

        if frame.op == Op.RESPONSE:
            if frame.dst == DEV_SAM:
                self.stats.fself += 1
                self._queue_response(frame)
            else:
                self.stats.fother += 1
            if len(frame.data) > 3:
                for snoop in self._snoops:
                    if snoop.src_min <= frame.src <= snoop.src_max:
                        snoop.callback(frame)
        elif frame.op == Op.WRITE:
            if frame.src == DEV_TSTAT and frame.dst == DEV_SAM:
                self.stats.fself += 1
                return WRITE_ACK
            self.stats.fother += 1
        return None

    def _queue_response(self, frame):
        if not self._awaiting.is_set():
            log.warning("dropping unexpected response")
            return
        try:
            self._responses.put_nowait(frame)
        except queue.Full:
            log.warning("response queue full, dropping response")

    def _drain_responses(self):
        while True:
            try:
                self._responses.get_nowait()
            except queue.Empty:
                return
            log.warning("dropping unexpected response")

    # sending

    def _send_frame(self, buf):
        port = self.port
        if port is None:
            return False
        try:
            port.write(buf)
        except (serial.SerialException, OSError) as exc:
            log.error("error writing to serial: %s", exc)
            self._close_port()
            return False
        return True

    @staticmethod
    def _answers(request, response):
        if response.src != request.dst:
            return False
        if request.op == Op.READ:
            return len(response.data) >= 3 and response.data[:3] == request.data[:3]
        if request.op == Op.WRITE:
            return response.data_len == 1 and response.data[:1] == b"\x00"
        return True

    def _perform(self, request):
        encoded = request.encode()
        with self._action_lock:
            self._drain_responses()
            self._awaiting.set()
            try:
                self.stats.aact += 1
                start = time.monotonic()
                self._send_frame(encoded)
                tries = 0
                next_tick = start + self.response_timeout
                while tries < self.retries:
                    try:
                        response = self._responses.get(
                            timeout=max(next_tick - time.monotonic(), 0)
                        )
                    except queue.Empty:
                        log.debug("timeout waiting for response, retransmitting frame")
                        self.stats.aretr += 1
                        self._send_frame(encoded)
                        tries += 1
                        next_tick += self.response_timeout
                        continue
                    if not self._answers(request, response):
                        self.stats.aother += 1
                        continue
                    if tries == 0:
                        self.stats.aok1 += 1
                    else:
                        self.stats.aokN += 1
                    self.stats.aokms += int((time.monotonic() - start) * 1000)
                    return response
                log.info("action timed out")
                self.stats.afailms += int((time.monotonic() - start) * 1000)
                self.stats.afail += 1
                raise ActionTimeout(f"no response from {request.dst:04x} to {request}")
            finally:
                self._awaiting.clear()

    def _send(self, dst, op, data):
        return self._perform(InfinityFrame(dst=dst, src=DEV_SAM, op=op, data=data))

    @staticmethod
    def _table_addr(addr):
        addr = bytes(addr)
        if len(addr) != 3:
            raise ValueError(f"table address must be 3 bytes, got {len(addr)}")
        return addr

    def read(self, dst, addr):
        """Read a table by address and return its raw payload bytes."""
        addr = self._table_addr(addr)
        self.stats.srd += 1
        response = self._send(dst, Op.READ, addr)
        return bytes(response.data[6:])

    def read_table(self, dst, table_cls):
        """Read a table and return it decoded as table_cls."""
        self.stats.srdt += 1
        response = self._send(dst, Op.READ, table_cls.ADDR)
        try:
            return table_cls.from_bytes(response.data[6:])
        except ValueError as exc:
            log.warning("short %s response: %s", table_cls.__name__, exc)
            return table_cls()

    def write(self, dst, table, addr, params):
        """Write params (a table or raw bytes) to a table with the given flag bytes."""
        payload = params if isinstance(params, (bytes, bytearray)) else params.to_bytes()
        data = self._table_addr(table) + bytes(addr) + bytes(payload)
        self.stats.swr += 1
        self._send(dst, Op.WRITE, data)

    def write_table(self, dst, table, flags):
        """Write the fields of table selected by flags."""
        self.write(dst, table.ADDR, bytes((0x00, 0x00, flags)), table)

    def write_table_z(self, dst, table, zone, flags):
        """Write the fields of table selected by flags for one zone index (0-based)."""
        self.write(dst, table.ADDR, bytes((zone, 0x00, flags)), table)

    def snoop_response(self, src_min, src_max, callback):
        """Call callback with every response sent by a device in the range."""
        self._snoops.append(_Snoop(src_min, src_max, callback))

    def stats_string(self):
        """Return the counters since the last call, with averaged timings, and reset them."""
        with self._stats_lock:
            stats, self.stats = self.stats, ProtocolStats()
        answered = stats.aok1 + stats.aokN
        if answered > 0:
            stats.aokms //= answered
        if stats.afail > 0:
            stats.afailms //= stats.afail
        return str(stats)