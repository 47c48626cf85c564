"""
Configuration management for the HUMANITY GATE engine.

This module loads runtime settings from environment variables and .env
files, and groups every tunable of the uniqueness pipeline into an
immutable `EngineConfig` tree that callers can override piecemeal.
"""

import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Tuple

from dotenv import load_dotenv

from . import constants as c
from .exceptions import ConfigurationError

# Load environment variables from .env file if it exists
load_dotenv()

# =============================================================================
# Logging Configuration
# =============================================================================
# Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# Render log events as JSON instead of console output
STRUCTURED_LOGGING: bool = os.getenv("STRUCTURED_LOGGING", "true").lower() == "true"

# Enable debug mode (skips validation on import)
DEBUG_MODE: bool = os.getenv("DEBUG_MODE", "false").lower() == "true"

# =============================================================================
# Processing Configuration
# =============================================================================
# Worker threads used to score modalities in parallel
MAX_WORKERS: int = int(os.getenv("MAX_WORKERS", str(len(c.MODALITY_ORDER))))

# =============================================================================
# Capture Configuration
# =============================================================================
CAPTURE_DURATION_SECONDS: float = float(
    os.getenv("CAPTURE_DURATION_SECONDS", str(c.CAPTURE_DURATION_SECONDS))
)
FRAME_INTERVAL_MS: int = int(os.getenv("FRAME_INTERVAL_MS", str(c.FRAME_INTERVAL_MS)))
CAPTURE_MIN_FRAMES: int = int(os.getenv("CAPTURE_MIN_FRAMES", str(c.MIN_FRAMES)))
CAPTURE_MAX_FRAMES: int = int(os.getenv("CAPTURE_MAX_FRAMES", str(c.MAX_FRAMES)))

# =============================================================================
# Fusion Configuration
# =============================================================================
FUSION_MINIMUM_SCORE: float = float(
    os.getenv("FUSION_MINIMUM_SCORE", str(c.MINIMUM_QUALITY_SCORE))
)
FUSION_EXCELLENT_SCORE: float = float(
    os.getenv("FUSION_EXCELLENT_SCORE", str(c.EXCELLENT_QUALITY_SCORE))
)

# =============================================================================
# Security and Cryptography Configuration
# =============================================================================
# Secret used to derive the digest salt (set a private value in production)
DIGEST_KEY: str = os.getenv("DIGEST_KEY", "humanity-gate-development-key")

DIGEST_ROUNDS: int = int(os.getenv("DIGEST_ROUNDS", str(c.DIGEST_ROUNDS)))
DIGEST_MEMORY_COST_KB: int = int(
    os.getenv("DIGEST_MEMORY_COST_KB", str(c.DIGEST_MEMORY_COST_KB))
)
MIN_ENTROPY: float = float(os.getenv("MIN_ENTROPY", str(c.MIN_ENTROPY)))

# =============================================================================
# Uniqueness Index Configuration
# =============================================================================
MATCH_DISTANCE: float = float(os.getenv("MATCH_DISTANCE", str(c.MATCH_DISTANCE)))
INDEX_LOCK_TIMEOUT_SECONDS: float = float(
    os.getenv("INDEX_LOCK_TIMEOUT_SECONDS", str(c.INDEX_LOCK_TIMEOUT_SECONDS))
)
INDEX_SEED: int = int(os.getenv("INDEX_SEED", str(c.INDEX_SEED)))

# =============================================================================
# Retention Configuration
# =============================================================================
VECTOR_RETENTION_SECONDS: float = float(
    os.getenv("VECTOR_RETENTION_SECONDS", str(c.VECTOR_RETENTION_SECONDS))
)
SWEEP_INTERVAL_SECONDS: float = float(
    os.getenv("SWEEP_INTERVAL_SECONDS", str(c.SWEEP_INTERVAL_SECONDS))
)


# =============================================================================
# Engine Configuration Objects
# =============================================================================
@dataclass(frozen=True)
class CaptureConfig:
    """Time window and frame bounds of one capture session."""

    duration_seconds: float = CAPTURE_DURATION_SECONDS
    frame_interval_ms: int = FRAME_INTERVAL_MS
    min_frames: int = CAPTURE_MIN_FRAMES
    max_frames: int = CAPTURE_MAX_FRAMES
    required_modalities: Tuple[str, ...] = c.DEFAULT_REQUIRED_MODALITIES


@dataclass(frozen=True)
class FacialThresholds:
    min_movement: float = c.FACIAL_MIN_MOVEMENT
    max_movement: float = c.FACIAL_MAX_MOVEMENT
    min_confidence: float = c.FACIAL_MIN_CONFIDENCE
    min_stability: float = c.FACIAL_MIN_STABILITY


@dataclass(frozen=True)
class BlinkThresholds:
    min_count: int = c.BLINK_MIN_COUNT
    max_count: int = c.BLINK_MAX_COUNT
    duration_range_ms: Tuple[float, float] = c.BLINK_DURATION_RANGE_MS
    interval_range_ms: Tuple[float, float] = c.BLINK_INTERVAL_RANGE_MS


@dataclass(frozen=True)
class HeadMovementThresholds:
    min_angle: float = c.HEAD_MIN_ANGLE
    max_angle: float = c.HEAD_MAX_ANGLE
    min_smoothness: float = c.HEAD_MIN_SMOOTHNESS


@dataclass(frozen=True)
class PointerThresholds:
    min_movements: int = c.POINTER_MIN_MOVEMENTS
    min_complexity: float = c.POINTER_MIN_COMPLEXITY
    min_variability: float = c.POINTER_MIN_VARIABILITY
    complexity_weight: float = c.POINTER_COMPLEXITY_WEIGHT
    variability_weight: float = c.POINTER_VARIABILITY_WEIGHT


@dataclass(frozen=True)
class ModalityThresholds:
    facial: FacialThresholds = field(default_factory=FacialThresholds)
    blink: BlinkThresholds = field(default_factory=BlinkThresholds)
    head_movement: HeadMovementThresholds = field(
        default_factory=HeadMovementThresholds
    )
    pointer: PointerThresholds = field(default_factory=PointerThresholds)


@dataclass(frozen=True)
class FusionConfig:
    """Fusion weights and composite quality gates."""

    weights: Dict[str, float] = field(
        default_factory=lambda: dict(c.DEFAULT_FUSION_WEIGHTS)
    )
    minimum_score: float = FUSION_MINIMUM_SCORE
    excellent_score: float = FUSION_EXCELLENT_SCORE


@dataclass(frozen=True)
class FingerprintConfig:
    """Canonicalization and digest parameters."""

    facial_dim: int = c.FACIAL_FEATURE_DIM
    quantization_step: float = c.QUANTIZATION_STEP
    min_entropy: float = MIN_ENTROPY
    digest_key: str = DIGEST_KEY
    digest_rounds: int = DIGEST_ROUNDS
    digest_memory_cost_kb: int = DIGEST_MEMORY_COST_KB
    digest_parallelism: int = c.DIGEST_PARALLELISM
    digest_length: int = c.DIGEST_LENGTH


@dataclass(frozen=True)
class IndexConfig:
    """Similarity index and locking parameters."""

    match_distance: float = MATCH_DISTANCE
    n_tables: int = c.INDEX_TABLES
    n_bits: int = c.INDEX_BITS
    lock_stripes: int = c.INDEX_LOCK_STRIPES
    lock_timeout_seconds: float = INDEX_LOCK_TIMEOUT_SECONDS
    seed: int = INDEX_SEED


@dataclass(frozen=True)
class RetentionConfig:
    vector_retention_seconds: float = VECTOR_RETENTION_SECONDS
    sweep_interval_seconds: float = SWEEP_INTERVAL_SECONDS


@dataclass(frozen=True)
class EngineConfig:
    """
    Complete, immutable configuration of the registration engine.

    Every field has the documented default; use `with_overrides` or
    `dataclasses.replace` on the nested sections to calibrate a deployment.

    Examples
    --------
    >>> config = EngineConfig.from_environment()
    >>> strict = config.with_overrides(
    ...     index=IndexConfig(match_distance=0.35)
    ... )
    """

    capture: CaptureConfig = field(default_factory=CaptureConfig)
    thresholds: ModalityThresholds = field(default_factory=ModalityThresholds)
    fusion: FusionConfig = field(default_factory=FusionConfig)
    fingerprint: FingerprintConfig = field(default_factory=FingerprintConfig)
    index: IndexConfig = field(default_factory=IndexConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    max_workers: int = MAX_WORKERS

    @classmethod
    def from_environment(cls) -> "EngineConfig":
        """Build a configuration from the environment-backed module values."""
        config = cls()
        config.validate()
        return config

    def with_overrides(self, **sections: Any) -> "EngineConfig":
        """Return a copy with whole sections replaced, validated."""
        config = replace(self, **sections)
        config.validate()
        return config

    def validate(self) -> bool:
        """
        Validate the configuration for internal consistency.

        Returns
        -------
        bool
            True if the configuration is valid.

        Raises
        ------
        ConfigurationError
            If any parameter is out of range.
        """
        errors = []

        capture = self.capture
        if capture.duration_seconds <= 0:
            errors.append("capture.duration_seconds must be positive")
        if capture.frame_interval_ms <= 0:
            errors.append("capture.frame_interval_ms must be positive")
        if capture.min_frames < 1:
            errors.append("capture.min_frames must be at least 1")
        if capture.max_frames < 1:
            errors.append("capture.max_frames must be at least 1")
        for modality in capture.required_modalities:
            if modality not in c.MODALITY_ORDER:
                errors.append(f"unknown required modality '{modality}'")

        facial = self.thresholds.facial
        if not 0.0 <= facial.min_movement < facial.max_movement <= 1.0:
            errors.append("facial movement range must satisfy 0 <= min < max <= 1")
        blink = self.thresholds.blink
        if blink.min_count > blink.max_count:
            errors.append("blink count range is inverted")
        if blink.duration_range_ms[0] > blink.duration_range_ms[1]:
            errors.append("blink duration range is inverted")
        if blink.interval_range_ms[0] > blink.interval_range_ms[1]:
            errors.append("blink interval range is inverted")
        head = self.thresholds.head_movement
        if head.min_angle > head.max_angle:
            errors.append("head movement angle range is inverted")

        weights = self.fusion.weights
        for modality, weight in weights.items():
            if modality not in c.MODALITY_ORDER:
                errors.append(f"unknown fusion modality '{modality}'")
            if weight < 0:
                errors.append(f"fusion weight for '{modality}' must be non-negative")
        if sum(weights.values()) <= 0:
            errors.append("fusion weights cannot all be zero")
        if not 0 <= self.fusion.minimum_score <= self.fusion.excellent_score <= 100:
            errors.append("fusion gates must satisfy 0 <= minimum <= excellent <= 100")

        fingerprint = self.fingerprint
        if fingerprint.facial_dim < 1:
            errors.append("fingerprint.facial_dim must be at least 1")
        if fingerprint.quantization_step <= 0:
            errors.append("fingerprint.quantization_step must be positive")
        if not 0.0 <= fingerprint.min_entropy <= 1.0:
            errors.append("fingerprint.min_entropy must lie in [0, 1]")
        if not fingerprint.digest_key:
            errors.append("fingerprint.digest_key cannot be empty")
        if fingerprint.digest_rounds < 1:
            errors.append("fingerprint.digest_rounds must be at least 1")
        if fingerprint.digest_memory_cost_kb < 8 * fingerprint.digest_parallelism:
            errors.append("fingerprint.digest_memory_cost_kb is below the Argon2 minimum")
        if fingerprint.digest_length < 16:
            errors.append("fingerprint.digest_length must be at least 16 bytes")

        index = self.index
        if index.match_distance <= 0:
            errors.append("index.match_distance must be positive")
        if index.n_tables < 1 or index.n_bits < 1:
            errors.append("index needs at least one table and one bit")
        if index.lock_stripes < 1:
            errors.append("index.lock_stripes must be at least 1")
        if index.lock_timeout_seconds <= 0:
            errors.append("index.lock_timeout_seconds must be positive")

        if self.retention.vector_retention_seconds < 0:
            errors.append("retention.vector_retention_seconds cannot be negative")
        if self.retention.sweep_interval_seconds <= 0:
            errors.append("retention.sweep_interval_seconds must be positive")

        if self.max_workers < 1:
            errors.append("max_workers must be at least 1")

        if errors:
            raise ConfigurationError(
                "Configuration validation failed:\n"
                + "\n".join(f"- {error}" for error in errors),
                context={"error_count": len(errors)},
            )

        return True


# =============================================================================
# Configuration Validation
# =============================================================================
def validate_configuration() -> bool:
    """
    Validate the environment-level settings.

    Returns
    -------
    bool
        True if configuration is valid.

    Raises
    ------
    ConfigurationError
        If critical configuration parameters are invalid.
    """
    errors = []

    valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if LOG_LEVEL not in valid_log_levels:
        errors.append(f"LOG_LEVEL must be one of {valid_log_levels}")

    if MAX_WORKERS < 1:
        errors.append("MAX_WORKERS must be at least 1")

    if errors:
        raise ConfigurationError(
            "Configuration validation failed:\n"
            + "\n".join(f"- {error}" for error in errors)
        )

    EngineConfig().validate()
    return True


def get_config_summary(config: Optional[EngineConfig] = None) -> dict:
    """
    Get a summary of the current configuration.

    The digest key is never included.

    Returns
    -------
    dict
        Dictionary containing key configuration parameters.
    """
    config = config or EngineConfig()
    return {
        "capture": {
            "duration_seconds": config.capture.duration_seconds,
            "frame_interval_ms": config.capture.frame_interval_ms,
            "min_frames": config.capture.min_frames,
            "max_frames": config.capture.max_frames,
            "required_modalities": list(config.capture.required_modalities),
        },
        "fusion": {
            "weights": dict(config.fusion.weights),
            "minimum_score": config.fusion.minimum_score,
            "excellent_score": config.fusion.excellent_score,
        },
        "fingerprint": {
            "digest_rounds": config.fingerprint.digest_rounds,
            "digest_memory_cost_kb": config.fingerprint.digest_memory_cost_kb,
            "min_entropy": config.fingerprint.min_entropy,
        },
        "index": {
            "match_distance": config.index.match_distance,
            "tables": config.index.n_tables,
            "bits": config.index.n_bits,
            "lock_timeout_seconds": config.index.lock_timeout_seconds,
        },
        "retention": {
            "vector_retention_seconds": config.retention.vector_retention_seconds,
            "sweep_interval_seconds": config.retention.sweep_interval_seconds,
        },
        "logging": {
            "level": LOG_LEVEL,
            "structured": STRUCTURED_LOGGING,
        },
        "processing": {"max_workers": config.max_workers},
    }


# Validate configuration on import
if not DEBUG_MODE:
    validate_configuration()
