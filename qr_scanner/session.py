"""
Scan session controller.

States:

    idle -> acquiring -> scanning -> decoded -> cooldown -> scanning ...
    acquiring | scanning -> error      (retry() goes back to acquiring)

    any state -> closed                (close(); terminal)

A scanning "epoch" starts each time sampling (re)starts. Only the first
decode of an epoch is acted on, and sampling is stopped synchronously
at that decode, before anything is awaited.
"""
import asyncio
import enum
import logging
import math
from collections.abc import Awaitable, Callable

import numpy as np  # type: ignore

from backend.config import CAMERA_LOST_AFTER_SECONDS, SCAN_COOLDOWN_SECONDS, SCAN_INTERVAL_SECONDS
from qr_scanner.camera import ERROR_MESSAGES, CameraAcquirer, CameraError, CameraStream, CameraUnavailable
from qr_scanner.decoder import decode_frame
from qr_scanner.payload import ScannedPayload, interpret_payload
from qr_scanner.recorder import ScanOutcome
from qr_scanner.sampler import FrameSampler

logger = logging.getLogger(__name__)

STREAM_LOST_MESSAGE = "Camera stopped sending video. Check the connection and try again."

RecordFn = Callable[[ScannedPayload], Awaitable[ScanOutcome]]


class ScanState(str, enum.Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    SCANNING = "scanning"
    DECODED = "decoded"
    COOLDOWN = "cooldown"
    ERROR = "error"
    CLOSED = "closed"


class ScanSession:
    def __init__(
        self,
        acquirer: CameraAcquirer,
        record: RecordFn,
        *,
        sampler: FrameSampler | None = None,
        decoder: Callable[[np.ndarray], str | None] = decode_frame,
        interpreter: Callable[[str], ScannedPayload] = interpret_payload,
        scan_interval: float = SCAN_INTERVAL_SECONDS,
        cooldown: float = SCAN_COOLDOWN_SECONDS,
        lost_after: float = CAMERA_LOST_AFTER_SECONDS,
        on_state: Callable[["ScanSession"], None] | None = None,
        on_outcome: Callable[[ScanOutcome], None] | None = None,
    ):
        self._acquirer = acquirer
        self._record_fn = record
        self._sampler = sampler or FrameSampler()
        self._decoder = decoder
        self._interpreter = interpreter
        self.scan_interval = scan_interval
        self.cooldown = cooldown
        self.lost_after = lost_after
        self._on_state = on_state
        self._on_outcome = on_outcome

        self.state = ScanState.IDLE
        self.error_kind: str | None = None
        self.error_message: str | None = None
        self.last_payload: ScannedPayload | None = None
        self.last_outcome: ScanOutcome | None = None
        self.scan_count = 0

        self._stream: CameraStream | None = None
        self._epoch = 0
        self._decoded_epoch = -1
        self._sampling_task: asyncio.Task | None = None
        self._cooldown_task: asyncio.Task | None = None

    # -----------------------------
    # State helpers
    # -----------------------------
    @property
    def closed(self) -> bool:
        return self.state is ScanState.CLOSED

    @property
    def sampling_active(self) -> bool:
        return self._sampling_task is not None and not self._sampling_task.done()

    @property
    def cooldown_pending(self) -> bool:
        return self._cooldown_task is not None and not self._cooldown_task.done()

    @property
    def epoch(self) -> int:
        return self._epoch

    def _set_state(self, state: ScanState) -> None:
        if self.state is state:
            return
        logger.debug("Scan session %s -> %s", self.state.value, state.value)
        self.state = state
        if self._on_state:
            self._on_state(self)

    def _cancel_sampling(self) -> None:
        task = self._sampling_task
        self._sampling_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _cancel_cooldown(self) -> None:
        task = self._cooldown_task
        self._cooldown_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _release_stream(self) -> None:
        stream = self._stream
        self._stream = None
        self._sampler.reset()
        if stream is not None:
            stream.release()

    def _fail(self, kind: str, message: str | None = None) -> None:
        self._cancel_sampling()
        self._release_stream()
        self.error_kind = kind
        self.error_message = message or ERROR_MESSAGES.get(kind, ERROR_MESSAGES["unknown"])
        logger.warning("Scanner error (%s): %s", kind, self.error_message)
        self._set_state(ScanState.ERROR)

    # -----------------------------
    # Lifecycle
    # -----------------------------
    async def start(self) -> None:
        if self.closed:
            raise RuntimeError("Scan session is closed.")
        if self.state not in (ScanState.IDLE, ScanState.ERROR):
            return

        self.error_kind = None
        self.error_message = None
        self._set_state(ScanState.ACQUIRING)

        try:
            stream = await self._acquirer.acquire()
        except CameraUnavailable as exc:
            if not self.closed:
                self._fail(exc.kind, exc.message)
            return

        if self.closed:
            stream.release()
            return
        self._stream = stream

        try:
            await stream.wait_ready()
            await stream.start()
        except CameraError as exc:
            if not self.closed:
                self._fail(exc.kind)
            return

        if self.closed:
            return
        self._begin_scanning()

    async def retry(self) -> None:
        if self.state is not ScanState.ERROR:
            return
        await self.start()

    def close(self) -> None:
        """Stop everything and free the camera. Safe to call repeatedly."""
        if self.closed:
            return
        self._cancel_sampling()
        self._cancel_cooldown()
        self._release_stream()
        self._set_state(ScanState.CLOSED)
        logger.info("Scan session closed after %d scans", self.scan_count)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.close()

    # -----------------------------
    # Sampling
    # -----------------------------
    def _begin_scanning(self) -> None:
        self._epoch += 1
        self._set_state(ScanState.SCANNING)
        self._sampling_task = asyncio.create_task(self._sampling_loop(self._epoch))

    async def _sampling_loop(self, epoch: int) -> None:
        while self.state is ScanState.SCANNING and self._epoch == epoch:
            await asyncio.sleep(self.scan_interval)
            if self.state is not ScanState.SCANNING or self._epoch != epoch:
                return
            try:
                self.tick()
            except Exception as exc:
                logger.exception("Frame sampling failed")
                self._fail("unknown", f"Camera stream failed: {exc}")
                return

    def tick(self) -> ScannedPayload | None:
        """One sampling step. Returns the payload if this tick produced a decode."""
        if self.state is not ScanState.SCANNING or self._stream is None:
            return None

        buffer = self._sampler.sample(self._stream)
        if buffer is None:
            if self._stream_lost():
                self._fail("device-not-found", STREAM_LOST_MESSAGE)
            return None

        text = self._decoder(buffer)
        if not text:
            return None

        payload = self._interpreter(text)
        if not self._accept_decode(payload):
            return None
        return payload

    def _stream_lost(self) -> bool:
        # about lost_after seconds of consecutive empty reads
        limit = max(1, math.ceil(self.lost_after / max(self.scan_interval, 1e-3)))
        return self._sampler.failed_reads >= limit

    def _accept_decode(self, payload: ScannedPayload) -> bool:
        if self.state is not ScanState.SCANNING or self._decoded_epoch == self._epoch:
            logger.debug("Ignoring extra decode in epoch %d", self._epoch)
            return False

        self._decoded_epoch = self._epoch
        self._cancel_sampling()
        self.last_payload = payload
        self.scan_count += 1
        logger.info("QR code decoded for student %s", payload.student_id)
        self._set_state(ScanState.DECODED)
        self._cooldown_task = asyncio.create_task(self._record_then_cool_down(payload))
        return True

    # -----------------------------
    # Recording + cooldown
    # -----------------------------
    async def _record(self, payload: ScannedPayload) -> ScanOutcome:
        try:
            return await self._record_fn(payload)
        except Exception:
            logger.exception("Recording attendance for %s failed", payload.student_id)
            return ScanOutcome(
                ok=False,
                outcome="failed",
                message="Failed to record attendance. Please try again.",
                student_id=payload.student_id,
            )

    async def _record_then_cool_down(self, payload: ScannedPayload) -> None:
        # close() must not abort an in-flight recording; it only drops the result
        outcome = await asyncio.shield(self._record(payload))
        if self.state is not ScanState.DECODED:
            return

        self.last_outcome = outcome
        if self._on_outcome:
            self._on_outcome(outcome)

        self._set_state(ScanState.COOLDOWN)
        await asyncio.sleep(self.cooldown)
        if self.state is not ScanState.COOLDOWN:
            return
        self._cooldown_task = None
        self._begin_scanning()
