"""
Synthetic capture data and match-rate evaluation for the HUMANITY GATE engine.

A `SyntheticSubject` is a seeded stand-in for one human: stable facial
landmarks and behavioural rhythms (blink timing, head sway, pointer path)
drawn once, plus a small amount of per-session noise. Two sessions of the
same subject land close together in fingerprint space; sessions of
different subjects land far apart. The CLI uses subjects to exercise the
engine end to end, and `measure_match_rates` uses them to calibrate the
match distance the way an FMR/FNMR study would.
"""

import math
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from .data_models import CaptureSummary, Modality
from .feature_extraction import encode_sample, extract_modality_features
from .fingerprint import FingerprintCanonicalizer
from .utils import timer

# Initialize structured logger
logger = structlog.get_logger(__name__)

# (modality, sample, offset from session start in seconds)
FrameSpec = Tuple[Modality, Dict[str, Any], float]


class SyntheticSubject:
    """
    Seeded synthetic human producing capture frames.

    Parameters
    ----------
    seed : int
        Seed of the subject's stable traits.
    landmark_count : int, default=32
        Landmark values per facial frame.
    static_landmarks : bool, default=False
        Emit identical, featureless landmarks on every frame, the way a
        replayed or printed face does.
    include_pointer : bool, default=True
        Emit pointer events.

    Examples
    --------
    >>> subject = SyntheticSubject(seed=7)
    >>> frames = subject.session_frames(session_seed=1)
    >>> len(frames) > 30
    True
    """

    def __init__(
        self,
        seed: int,
        landmark_count: int = 32,
        static_landmarks: bool = False,
        include_pointer: bool = True,
    ) -> None:
        rng = np.random.default_rng(seed)
        self.seed = seed
        self.static_landmarks = static_landmarks
        self.include_pointer = include_pointer

        self.landmarks = (
            np.full(landmark_count, 0.5)
            if static_landmarks
            else rng.normal(0.0, 1.0, landmark_count)
        )
        self.movement_level = rng.uniform(0.35, 0.65)
        self.confidence_level = rng.uniform(0.85, 0.95)

        self.blink_duration_ms = rng.uniform(150.0, 300.0)
        self.blink_spacing_s = rng.uniform(2.6, 3.4)
        self.blink_count = int(rng.integers(4, 5, endpoint=True))

        self.head_amplitude_deg = rng.uniform(4.0, 6.5)
        self.head_frequency_hz = rng.uniform(0.2, 0.3)
        self.head_pitch_ratio = rng.uniform(0.2, 0.4)

        self.pointer_intervals_s = rng.uniform(0.03, 0.4, 30)
        self.pointer_scale = rng.uniform(60.0, 90.0)

    def session_frames(
        self,
        session_seed: Optional[int] = None,
        facial_frames: int = 40,
        frame_interval_s: float = 0.1,
    ) -> List[FrameSpec]:
        """
        Frames of one capture session, ordered by offset.

        Parameters
        ----------
        session_seed : int, optional
            Seed of the per-session noise; None replays the subject exactly.
        facial_frames : int, default=40
            Facial and head-pose frames to emit.
        frame_interval_s : float, default=0.1
            Spacing of facial and head-pose frames.
        """
        noise = np.random.default_rng(session_seed) if session_seed is not None else None

        def jitter(scale: float, size: Optional[int] = None):
            if noise is None:
                return np.zeros(size) if size else 0.0
            return noise.normal(0.0, scale, size)

        frames: List[FrameSpec] = []

        for i in range(facial_frames):
            offset = 0.05 + i * frame_interval_s
            landmarks = self.landmarks + (
                0.0 if self.static_landmarks else jitter(0.005, len(self.landmarks))
            )
            frames.append(
                (
                    Modality.FACIAL,
                    {
                        "landmarks": landmarks.tolist(),
                        "movement": float(self.movement_level + jitter(0.02)),
                        "confidence": float(
                            np.clip(self.confidence_level + jitter(0.01), 0.0, 1.0)
                        ),
                    },
                    offset,
                )
            )

            phase = 2.0 * math.pi * self.head_frequency_hz * i * frame_interval_s
            yaw = self.head_amplitude_deg * math.sin(phase)
            frames.append(
                (
                    Modality.HEAD_MOVEMENT,
                    {
                        "yaw": float(yaw + jitter(0.01)),
                        "pitch": float(self.head_pitch_ratio * yaw + jitter(0.01)),
                        "roll": float(0.1 * yaw + jitter(0.01)),
                    },
                    offset,
                )
            )

        for k in range(self.blink_count):
            frames.append(
                (
                    Modality.BLINK,
                    {"duration_ms": float(self.blink_duration_ms + jitter(3.0))},
                    0.5 + k * self.blink_spacing_s + float(jitter(0.02)),
                )
            )

        if self.include_pointer:
            offset = 0.2
            for j, interval in enumerate(self.pointer_intervals_s):
                theta = 1.6 * math.pi * j / len(self.pointer_intervals_s)
                frames.append(
                    (
                        Modality.POINTER,
                        {
                            "x": float(
                                100.0 + self.pointer_scale * math.cos(theta) + jitter(0.5)
                            ),
                            "y": float(
                                100.0
                                + 0.75 * self.pointer_scale * math.sin(2 * theta)
                                + jitter(0.5)
                            ),
                        },
                        offset,
                    )
                )
                offset += float(interval * (1.0 + jitter(0.02)))

        frames.sort(key=lambda frame: frame[2])
        return frames


def summarize_frames(
    frames: Sequence[FrameSpec], session_id: str = "simulated", facial_dim: int = 32
) -> CaptureSummary:
    """Extract features from synthetic frames without a capture session."""
    buffers: Dict[Modality, List[Tuple[float, np.ndarray]]] = {}
    for modality, sample, offset in frames:
        buffers.setdefault(modality, []).append((offset, encode_sample(modality, sample)))

    features = {
        modality: extract_modality_features(modality, buffered, facial_dim)
        for modality, buffered in buffers.items()
    }
    return CaptureSummary(
        session_id=session_id,
        user_ref=session_id,
        frame_count=sum(len(b) for b in buffers.values()),
        features=features,
        started_at=0.0,
        closed_at=max(offset for _, _, offset in frames),
    )


@timer
def measure_match_rates(
    subjects: Iterable[SyntheticSubject],
    match_distance: float,
    canonicalizer: Optional[FingerprintCanonicalizer] = None,
    sessions_per_subject: int = 2,
) -> Dict[str, Any]:
    """
    Measure false match and false non-match rates at a match distance.

    Genuine pairs are two sessions of the same subject; impostor pairs are
    first sessions of different subjects.

    Parameters
    ----------
    subjects : Iterable[SyntheticSubject]
        Population to evaluate.
    match_distance : float
        Candidate d_min.
    canonicalizer : FingerprintCanonicalizer, optional
        Canonicalizer producing the vectors.
    sessions_per_subject : int, default=2
        Sessions captured per subject.

    Returns
    -------
    Dict[str, Any]
        FMR, FNMR, comparison counts and distance statistics.
    """
    canonicalizer = canonicalizer or FingerprintCanonicalizer()
    vectors: List[List[np.ndarray]] = []

    for subject in subjects:
        per_subject = []
        for session in range(sessions_per_subject):
            summary = summarize_frames(
                subject.session_frames(session_seed=subject.seed * 1000 + session),
                facial_dim=canonicalizer.config.facial_dim,
            )
            vector, _ = canonicalizer.canonical_vector(summary)
            per_subject.append(vector)
        vectors.append(per_subject)

    genuine = [
        float(np.linalg.norm(sessions[0] - other))
        for sessions in vectors
        for other in sessions[1:]
    ]
    impostor = [
        float(np.linalg.norm(vectors[a][0] - vectors[b][0]))
        for a in range(len(vectors))
        for b in range(a + 1, len(vectors))
    ]

    false_non_matches = sum(1 for d in genuine if d > match_distance)
    false_matches = sum(1 for d in impostor if d <= match_distance)

    results = {
        "match_distance": match_distance,
        "genuine_comparisons": len(genuine),
        "impostor_comparisons": len(impostor),
        "fnmr": false_non_matches / len(genuine) if genuine else 0.0,
        "fmr": false_matches / len(impostor) if impostor else 0.0,
        "max_genuine_distance": max(genuine) if genuine else None,
        "min_impostor_distance": min(impostor) if impostor else None,
    }

    logger.info("Match rate evaluation completed", **results)

    return results
