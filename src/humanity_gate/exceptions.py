"""
Custom exception classes for the HUMANITY GATE engine.

This module defines the error hierarchy of the uniqueness pipeline. Each
exception carries a stable error code and a context dictionary so that the
registration gate can translate it into a decision and log it with
structured fields.
"""

from typing import Optional, Dict, Any


class HumanityGateError(Exception):
    """
    Base exception class for all HUMANITY GATE errors.

    Parameters
    ----------
    message : str
        Human-readable error message.
    context : dict, optional
        Additional context information about the error.
    error_code : str, optional
        Unique error code for programmatic handling.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message = message
        self.context = context or {}
        self.error_code = error_code
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return a formatted string representation of the error."""
        parts = [self.message]

        if self.error_code:
            parts.append(f"[Error Code: {self.error_code}]")

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"[Context: {context_str}]")

        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert the exception to a dictionary for structured logging.

        Returns
        -------
        dict
            Dictionary representation of the exception.
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


# =============================================================================
# Capture errors
# =============================================================================
class CaptureError(HumanityGateError):
    """
    Exception raised for errors while collecting frames for a session.

    Capture errors are never fatal to the engine: a rejected frame is
    dropped and the session carries on.
    """

    def __init__(
        self,
        message: str,
        session_id: Optional[str] = None,
        modality: Optional[str] = None,
        **kwargs,
    ) -> None:
        context = kwargs.get("context", {})
        if session_id:
            context["session_id"] = session_id
        if modality:
            context["modality"] = modality

        super().__init__(message, context, kwargs.get("error_code", "CAPTURE_000"))


class SessionNotFoundError(CaptureError):
    """Exception raised when a session id is unknown or already finalized."""

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"Capture session not found: {session_id}",
            session_id=session_id,
            error_code="CAPTURE_001",
        )


class SessionClosedError(CaptureError):
    """Exception raised when a closed or discarded session is used."""

    def __init__(self, session_id: str, operation: str) -> None:
        super().__init__(
            f"Capture session is closed; cannot {operation}",
            session_id=session_id,
            context={"operation": operation},
            error_code="CAPTURE_002",
        )


class InvalidFrameError(CaptureError):
    """Exception raised when a sample does not match its modality's shape."""

    def __init__(self, message: str, session_id: str, modality: str) -> None:
        super().__init__(
            message, session_id=session_id, modality=modality, error_code="CAPTURE_003"
        )


class FrameOutOfWindowError(CaptureError):
    """Exception raised for a frame that arrives before or after the window."""

    def __init__(
        self,
        session_id: str,
        modality: str,
        timestamp: float,
        window_start: float,
        window_end: float,
    ) -> None:
        super().__init__(
            "Frame timestamp outside the capture window",
            session_id=session_id,
            modality=modality,
            context={
                "timestamp": timestamp,
                "window_start": window_start,
                "window_end": window_end,
            },
            error_code="CAPTURE_004",
        )


class FrameLimitError(CaptureError):
    """Exception raised when a modality buffer already holds max frames."""

    def __init__(self, session_id: str, modality: str, max_frames: int) -> None:
        super().__init__(
            f"Frame buffer for '{modality}' is full",
            session_id=session_id,
            modality=modality,
            context={"max_frames": max_frames},
            error_code="CAPTURE_005",
        )


class InsufficientFramesError(CaptureError):
    """
    Exception raised when a session closes without enough usable frames.

    The caller may start a fresh session.
    """

    def __init__(
        self,
        session_id: str,
        frame_count: int,
        min_frames: int,
        missing_modalities: Optional[list] = None,
        error_code: str = "CAPTURE_006",
        message: Optional[str] = None,
    ) -> None:
        context = {"frame_count": frame_count, "min_frames": min_frames}
        if missing_modalities:
            context["missing_modalities"] = missing_modalities
        super().__init__(
            message or "Insufficient frames captured",
            session_id=session_id,
            context=context,
            error_code=error_code,
        )
        self.frame_count = frame_count
        self.min_frames = min_frames


class CaptureTimeoutError(InsufficientFramesError):
    """Exception raised when the deadline passed before min frames arrived."""

    def __init__(self, session_id: str, frame_count: int, min_frames: int) -> None:
        super().__init__(
            session_id,
            frame_count,
            min_frames,
            error_code="CAPTURE_007",
            message="Capture deadline passed before enough frames arrived",
        )


# =============================================================================
# Biometric processing errors
# =============================================================================
class BiometricProcessingError(HumanityGateError):
    """
    Exception raised for errors during biometric processing.

    This includes feature extraction, normalization, fusion and
    canonicalization.
    """

    def __init__(
        self,
        message: str,
        processing_stage: Optional[str] = None,
        sample_id: Optional[str] = None,
        **kwargs,
    ) -> None:
        context = kwargs.get("context", {})
        if processing_stage:
            context["processing_stage"] = processing_stage
        if sample_id:
            context["sample_id"] = sample_id

        super().__init__(message, context, kwargs.get("error_code"))


class NormalizationError(BiometricProcessingError):
    """Exception raised during feature vector normalization."""

    def __init__(
        self, message: str, vector_shape: tuple, target_dimension: int, **kwargs
    ) -> None:
        context = {"vector_shape": vector_shape, "target_dimension": target_dimension}
        super().__init__(
            message,
            processing_stage="normalization",
            context=context,
            error_code="BIOMETRIC_001",
        )


class FusionError(BiometricProcessingError):
    """Exception raised during score fusion."""

    def __init__(self, message: str, modalities: list, **kwargs) -> None:
        context = {"modalities": modalities}
        super().__init__(
            message,
            processing_stage="fusion",
            context=context,
            error_code="BIOMETRIC_002",
        )


class CanonicalizationError(BiometricProcessingError):
    """Exception raised while building the canonical fingerprint."""

    def __init__(self, message: str, **kwargs) -> None:
        super().__init__(
            message,
            processing_stage="canonicalization",
            context=kwargs.get("context", {}),
            error_code=kwargs.get("error_code", "BIOMETRIC_004"),
        )


class LowEntropyError(CanonicalizationError):
    """
    Exception raised for a degenerate, low-information fingerprint.

    Retryable, but may indicate a spoofing attempt.
    """

    def __init__(self, entropy: float, minimum_entropy: float) -> None:
        super().__init__(
            f"Fingerprint entropy {entropy:.3f} below minimum {minimum_entropy:.3f}",
            context={"entropy": entropy, "minimum_entropy": minimum_entropy},
            error_code="BIOMETRIC_005",
        )
        self.entropy = entropy
        self.minimum_entropy = minimum_entropy


# =============================================================================
# Cryptography errors
# =============================================================================
class CryptographyError(HumanityGateError):
    """Exception raised for errors in cryptographic operations."""

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs) -> None:
        context = kwargs.get("context", {})
        if operation:
            context["cryptographic_operation"] = operation

        super().__init__(message, context, kwargs.get("error_code"))


class DigestGenerationError(CryptographyError):
    """Exception raised while computing a fingerprint digest."""

    def __init__(self, message: str, algorithm: str = "argon2id", **kwargs) -> None:
        context = {"hashing_algorithm": algorithm}
        super().__init__(
            message,
            operation="digest_generation",
            context=context,
            error_code="CRYPTO_001",
        )


# =============================================================================
# Uniqueness index errors
# =============================================================================
class UniquenessIndexError(HumanityGateError):
    """Exception raised by the uniqueness index."""

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs) -> None:
        context = kwargs.get("context", {})
        if operation:
            context["index_operation"] = operation

        super().__init__(message, context, kwargs.get("error_code", "INDEX_000"))


class IndexTimeoutError(UniquenessIndexError):
    """
    Exception raised when the index critical section could not be entered
    within the bounded wait. Nothing was committed; safe to retry.
    """

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Index {operation} timed out after {timeout_seconds:.2f}s",
            operation=operation,
            context={"timeout_seconds": timeout_seconds},
            error_code="INDEX_001",
        )


class IndexUnavailableError(UniquenessIndexError):
    """
    Exception raised when the index or its storage backend failed.

    The index fails closed: nothing is accepted without a confirmed lookup
    and a confirmed write.
    """

    def __init__(self, message: str, operation: str, **kwargs) -> None:
        super().__init__(
            message,
            operation=operation,
            context=kwargs.get("context", {}),
            error_code="INDEX_002",
        )


class DuplicateFingerprintError(UniquenessIndexError):
    """
    Exception raised when a fingerprint matches an existing registration.

    This is a policy decision, not a transient failure.
    """

    def __init__(
        self, matched_user_ref: str, distance: Optional[float], matched_by: str
    ) -> None:
        super().__init__(
            "Fingerprint matches an existing registration",
            operation="register",
            context={"matched_by": matched_by, "distance": distance},
            error_code="INDEX_003",
        )
        self.matched_user_ref = matched_user_ref
        self.distance = distance
        self.matched_by = matched_by


# =============================================================================
# Configuration errors
# =============================================================================
class ConfigurationError(HumanityGateError):
    """
    Exception raised for configuration-related errors.

    This includes invalid configuration values and configuration conflicts.
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Optional[str] = None,
        **kwargs,
    ) -> None:
        context = kwargs.get("context", {})
        if config_key:
            context["config_key"] = config_key
        if config_value:
            context["config_value"] = config_value

        super().__init__(message, context, kwargs.get("error_code", "CONFIG_001"))


# =============================================================================
# Registration errors
# =============================================================================
class RegistrationStateError(HumanityGateError):
    """Exception raised for an illegal registration attempt transition."""

    def __init__(self, session_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Illegal registration transition {current} -> {requested}",
            context={"session_id": session_id, "current": current, "requested": requested},
            error_code="REGISTRATION_001",
        )
