"""
Constants and default parameters for the HUMANITY GATE engine.

This module centralizes every tunable of the uniqueness pipeline so that
deployments can calibrate false-accept and false-reject behaviour from a
single place. The values here are defaults only; `config` reads environment
overrides on top of them.
"""

from typing import Dict, Final, Tuple

# =============================================================================
# Modalities
# =============================================================================

FACIAL: Final[str] = "facial"
BLINK: Final[str] = "blink"
HEAD_MOVEMENT: Final[str] = "head_movement"
POINTER: Final[str] = "pointer"

# Canonical ordering of modality blocks inside a fingerprint vector
MODALITY_ORDER: Final[Tuple[str, ...]] = (FACIAL, BLINK, HEAD_MOVEMENT, POINTER)

# Modalities that must be present for a capture to be usable
DEFAULT_REQUIRED_MODALITIES: Final[Tuple[str, ...]] = (FACIAL,)

# =============================================================================
# Capture Session
# =============================================================================

# Length of one verification attempt in seconds
CAPTURE_DURATION_SECONDS: Final[float] = 15.0

# Expected frame cadence in milliseconds
FRAME_INTERVAL_MS: Final[int] = 100

# Minimum total frames (all modalities) for a usable capture
MIN_FRAMES: Final[int] = 30

# Maximum frames buffered per modality
MAX_FRAMES: Final[int] = 150

# =============================================================================
# Modality Thresholds
# =============================================================================

# Facial micro-movement
FACIAL_MIN_MOVEMENT: Final[float] = 0.1
FACIAL_MAX_MOVEMENT: Final[float] = 0.9
FACIAL_MIN_CONFIDENCE: Final[float] = 0.7
FACIAL_MIN_STABILITY: Final[float] = 0.8

# Blink pattern
BLINK_MIN_COUNT: Final[int] = 3
BLINK_MAX_COUNT: Final[int] = 20
BLINK_DURATION_RANGE_MS: Final[Tuple[float, float]] = (100.0, 400.0)
BLINK_INTERVAL_RANGE_MS: Final[Tuple[float, float]] = (2000.0, 10000.0)

# Head movement (degrees)
HEAD_MIN_ANGLE: Final[float] = 2.0
HEAD_MAX_ANGLE: Final[float] = 15.0
HEAD_MIN_SMOOTHNESS: Final[float] = 0.6

# Pointer dynamics
POINTER_MIN_MOVEMENTS: Final[int] = 10
POINTER_MIN_COMPLEXITY: Final[float] = 0.5
POINTER_MIN_VARIABILITY: Final[float] = 0.3
POINTER_COMPLEXITY_WEIGHT: Final[float] = 0.6
POINTER_VARIABILITY_WEIGHT: Final[float] = 0.4

# =============================================================================
# Fusion Parameters
# =============================================================================

DEFAULT_FUSION_WEIGHTS: Final[Dict[str, float]] = {
    FACIAL: 0.4,
    BLINK: 0.3,
    HEAD_MOVEMENT: 0.2,
    POINTER: 0.1,
}

# Composite score gates (0 to 100)
MINIMUM_QUALITY_SCORE: Final[float] = 70.0
EXCELLENT_QUALITY_SCORE: Final[float] = 90.0

# Decimal places kept on the composite score
COMPOSITE_PRECISION: Final[int] = 9

# =============================================================================
# Fingerprint Dimensions
# =============================================================================

# Mean landmark vector length kept from the facial extractor
FACIAL_FEATURE_DIM: Final[int] = 32

# Summary vector length for the behavioural modalities
BLINK_FEATURE_DIM: Final[int] = 8
HEAD_FEATURE_DIM: Final[int] = 8
POINTER_FEATURE_DIM: Final[int] = 8

MODALITY_FEATURE_DIMS: Final[Dict[str, int]] = {
    FACIAL: FACIAL_FEATURE_DIM,
    BLINK: BLINK_FEATURE_DIM,
    HEAD_MOVEMENT: HEAD_FEATURE_DIM,
    POINTER: POINTER_FEATURE_DIM,
}

FINGERPRINT_DIM: Final[int] = sum(MODALITY_FEATURE_DIMS.values())

# Step used to quantize the canonical vector before digesting
QUANTIZATION_STEP: Final[float] = 0.01

# Minimum normalized entropy of the canonical vector
MIN_ENTROPY: Final[float] = 0.8

# =============================================================================
# Cryptographic Parameters (Argon2id digest)
# =============================================================================

# Argon2 time cost, the "salt rounds" of the digest
DIGEST_ROUNDS: Final[int] = 12

# Argon2 memory cost in KiB (8 MiB)
DIGEST_MEMORY_COST_KB: Final[int] = 8192

# Argon2 parallelism
DIGEST_PARALLELISM: Final[int] = 1

# Digest length in bytes
DIGEST_LENGTH: Final[int] = 32

# Salt length in bytes
DIGEST_SALT_LENGTH: Final[int] = 16

# Label mixed into the keyed salt derivation
DIGEST_SALT_LABEL: Final[bytes] = b"humanity-gate/fingerprint-digest/v1"

# =============================================================================
# Uniqueness Index
# =============================================================================

# d_min: Euclidean distance between unit vectors under which two
# fingerprints are considered the same human
MATCH_DISTANCE: Final[float] = 0.25

# Number of LSH tables and sign bits per table
INDEX_TABLES: Final[int] = 8
INDEX_BITS: Final[int] = 6

# Size of the striped lock arena
INDEX_LOCK_STRIPES: Final[int] = 1024

# Bounded wait for the lookup/insert critical section (seconds)
INDEX_LOCK_TIMEOUT_SECONDS: Final[float] = 2.0

# Seed for the LSH projection matrix
INDEX_SEED: Final[int] = 1337

# =============================================================================
# Retention
# =============================================================================

# Processed feature vectors are kept for 24 hours; digests are permanent
VECTOR_RETENTION_SECONDS: Final[float] = 24 * 60 * 60

# Background eviction cadence
SWEEP_INTERVAL_SECONDS: Final[float] = 60 * 60

# Unfinalized sessions are reaped this long after their deadline
SESSION_REAP_GRACE_SECONDS: Final[float] = 60.0

# =============================================================================
# Verification (1:1)
# =============================================================================

# Similarity required per verification context
VERIFICATION_THRESHOLDS: Final[Dict[str, float]] = {
    "login": 0.85,
    "transaction": 0.90,
    "high_security": 0.95,
    "default": 0.80,
}
