"""
Bounded capture sessions for the HUMANITY GATE engine.

A capture session collects per-modality samples for one registration
attempt inside a fixed time window. It owns the only copy of the raw frames
and guarantees they do not outlive the session: closing, discarding or
failing a session zero-fills and drops every buffer. What leaves the
session is a `CaptureSummary` of extracted features.
"""

import threading
import time
from typing import Callable, Dict, List, Mapping, Optional

import structlog

from .config import CaptureConfig
from .constants import FACIAL_FEATURE_DIM
from .data_models import CaptureSummary, Modality, ModalityFeatures
from .exceptions import (
    CaptureTimeoutError,
    FrameLimitError,
    FrameOutOfWindowError,
    InsufficientFramesError,
    InvalidFrameError,
    SessionClosedError,
)
from .feature_extraction import Frame, encode_sample, extract_modality_features
from .utils import generate_session_id

# Initialize structured logger
logger = structlog.get_logger(__name__)


class CaptureSession:
    """
    One time-bounded capture of multimodal frames.

    Sessions are created with `begin`. Frames are accepted only while the
    session is open and only if both their timestamp and their arrival time
    fall inside ``[started_at, deadline]``.

    Parameters
    ----------
    session_id : str
        Unique session identifier.
    user_ref : str
        Opaque reference of the user being registered.
    config : CaptureConfig
        Window and frame bounds.
    clock : Callable[[], float]
        Wall clock in seconds.
    facial_dim : int
        Fixed size of the facial landmark block.

    Examples
    --------
    >>> with CaptureSession.begin("user-1", CaptureConfig()) as session:
    ...     session.submit_frame("facial", sample, ts)
    ...     summary = session.close()
    """

    def __init__(
        self,
        session_id: str,
        user_ref: str,
        config: CaptureConfig,
        clock: Callable[[], float] = time.time,
        facial_dim: int = FACIAL_FEATURE_DIM,
    ) -> None:
        self.session_id = session_id
        self.user_ref = user_ref
        self.config = config
        self._clock = clock
        self._facial_dim = facial_dim

        self.started_at = clock()
        self.deadline = self.started_at + config.duration_seconds

        self._buffers: Dict[Modality, List[Frame]] = {}
        self._lock = threading.Lock()
        self._closed = False
        self._summary: Optional[CaptureSummary] = None
        self._error: Optional[Exception] = None

    @classmethod
    def begin(
        cls,
        user_ref: str,
        config: Optional[CaptureConfig] = None,
        clock: Callable[[], float] = time.time,
        facial_dim: int = FACIAL_FEATURE_DIM,
    ) -> "CaptureSession":
        """Open a new session whose window starts now."""
        if not user_ref:
            raise ValueError("user_ref cannot be empty")

        session = cls(
            generate_session_id(), user_ref, config or CaptureConfig(), clock, facial_dim
        )

        logger.info(
            "Capture session started",
            session_id=session.session_id,
            duration_seconds=session.config.duration_seconds,
            expected_frames=session.expected_frames,
        )

        return session

    @property
    def expected_frames(self) -> int:
        """Frames per modality a full window yields at the nominal rate."""
        return int(self.config.duration_seconds * 1000 // self.config.frame_interval_ms)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def frame_count(self) -> int:
        with self._lock:
            return sum(len(frames) for frames in self._buffers.values())

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        return now > self.deadline

    def submit_frame(
        self, modality: "Modality | str", sample: Mapping, timestamp: float
    ) -> None:
        """
        Validate and buffer one frame.

        Parameters
        ----------
        modality : Modality or str
            Modality the sample belongs to.
        sample : Mapping
            Extractor output for the frame.
        timestamp : float
            Capture time of the frame, in seconds on the session clock.

        Raises
        ------
        SessionClosedError
            If the session was closed or discarded.
        InvalidFrameError
            If the modality is unknown or the sample is malformed.
        FrameOutOfWindowError
            If the frame falls outside the capture window.
        FrameLimitError
            If the modality buffer is already full.
        """
        try:
            modality = Modality.parse(modality)
        except ValueError as e:
            raise InvalidFrameError(str(e), self.session_id, str(modality))

        try:
            encoded = encode_sample(modality, sample)
        except (ValueError, TypeError) as e:
            raise InvalidFrameError(
                f"Malformed '{modality.value}' sample: {e}", self.session_id, modality.value
            )

        arrival = self._clock()
        with self._lock:
            if self._closed:
                encoded.fill(0.0)
                raise SessionClosedError(self.session_id, "submit_frame")

            for instant in (timestamp, arrival):
                if not self.started_at <= instant <= self.deadline:
                    encoded.fill(0.0)
                    raise FrameOutOfWindowError(
                        self.session_id,
                        modality.value,
                        timestamp,
                        self.started_at,
                        self.deadline,
                    )

            buffer = self._buffers.setdefault(modality, [])
            if len(buffer) >= self.config.max_frames:
                encoded.fill(0.0)
                raise FrameLimitError(
                    self.session_id, modality.value, self.config.max_frames
                )

            buffer.append((float(timestamp), encoded))

    def raw_frames(self, modality: "Modality | str") -> List[Frame]:
        """
        Return copies of the frames buffered for a modality.

        Raises
        ------
        SessionClosedError
            Once the session has been closed or discarded.
        """
        modality = Modality.parse(modality)
        with self._lock:
            if self._closed:
                raise SessionClosedError(self.session_id, "read raw frames")
            return [(ts, arr.copy()) for ts, arr in self._buffers.get(modality, [])]

    def _wipe(self) -> None:
        """Zero-fill and drop every buffered frame. Caller holds the lock."""
        for frames in self._buffers.values():
            for _, arr in frames:
                arr.fill(0.0)
            frames.clear()
        self._buffers.clear()

    def close(self) -> CaptureSummary:
        """
        Close the session and extract per-modality features.

        Idempotent: later calls return the same summary or raise the same
        error. Raw frames are wiped on every path.

        Returns
        -------
        CaptureSummary
            Extracted features of every captured modality.

        Raises
        ------
        InsufficientFramesError
            If fewer than `min_frames` frames were captured or a required
            modality is missing.
        CaptureTimeoutError
            As above, when the deadline has already passed.
        BiometricProcessingError
            If feature extraction fails.
        """
        with self._lock:
            if self._closed:
                if self._summary is not None:
                    return self._summary
                if self._error is not None:
                    raise self._error
                raise SessionClosedError(self.session_id, "close")

            self._closed = True
            closed_at = self._clock()
            try:
                self._summary = self._extract(closed_at)
            except Exception as e:
                self._error = e
                raise
            finally:
                self._wipe()

        logger.info(
            "Capture session closed",
            session_id=self.session_id,
            frame_count=self._summary.frame_count,
            modalities=[m.value for m in self._summary.modalities],
        )

        return self._summary

    def _extract(self, closed_at: float) -> CaptureSummary:
        frame_count = sum(len(frames) for frames in self._buffers.values())
        required = [Modality.parse(m) for m in self.config.required_modalities]
        missing = [m.value for m in required if not self._buffers.get(m)]

        if frame_count < self.config.min_frames or missing:
            logger.info(
                "Capture session has insufficient frames",
                session_id=self.session_id,
                frame_count=frame_count,
                min_frames=self.config.min_frames,
                missing_modalities=missing,
            )
            if closed_at > self.deadline:
                raise CaptureTimeoutError(
                    self.session_id, frame_count, self.config.min_frames
                )
            raise InsufficientFramesError(
                self.session_id,
                frame_count,
                self.config.min_frames,
                missing_modalities=missing,
            )

        features: Dict[Modality, ModalityFeatures] = {}
        for modality, frames in self._buffers.items():
            if frames:
                features[modality] = extract_modality_features(
                    modality, frames, self._facial_dim
                )

        return CaptureSummary(
            session_id=self.session_id,
            user_ref=self.user_ref,
            frame_count=frame_count,
            features=features,
            started_at=self.started_at,
            closed_at=closed_at,
        )

    def discard(self) -> None:
        """Close the session without extracting anything. Idempotent."""
        with self._lock:
            already_closed = self._closed
            self._closed = True
            self._wipe()

        if not already_closed:
            logger.info("Capture session discarded", session_id=self.session_id)

    def __enter__(self) -> "CaptureSession":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.discard()
