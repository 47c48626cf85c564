"""
Fingerprint canonicalization for the HUMANITY GATE engine.

This module turns the feature vectors behind an accepted fusion result into
the two artifacts the rest of the system works with:

* a fixed-dimension, scale-normalized unit vector, the similarity key the
  uniqueness index searches on;
* a keyed Argon2id digest of the quantized vector, the permanent
  display/audit identifier.

The digest is deliberately not the similarity key. Natural variance between
two captures of the same human changes the quantized vector and therefore
the digest, so exact-hash uniqueness alone cannot detect a returning user.
"""

import hashlib
import hmac
import math
from typing import List, Optional, Tuple

import numpy as np
import structlog
from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw
from scipy.stats import entropy as shannon_entropy

from .config import FingerprintConfig
from .constants import DIGEST_SALT_LABEL, DIGEST_SALT_LENGTH, MODALITY_FEATURE_DIMS
from .data_models import CaptureSummary, Fingerprint, Modality
from .exceptions import (
    CanonicalizationError,
    DigestGenerationError,
    LowEntropyError,
    NormalizationError,
)
from .normalization import l2_normalize, normalize_vector, signed_log, zscore
from .utils import timer

# Initialize structured logger
logger = structlog.get_logger(__name__)

# Block order inside the canonical vector
CANONICAL_ORDER: Tuple[Modality, ...] = (
    Modality.FACIAL,
    Modality.BLINK,
    Modality.HEAD_MOVEMENT,
    Modality.POINTER,
)


def estimate_entropy(values: np.ndarray, quantization_step: float) -> float:
    """
    Estimate the normalized Shannon entropy of a vector's quantized values.

    The result is 1.0 when every quantized component is distinct and 0.0
    when all of them collapse onto a single level, which is what
    near-constant or replayed captures look like.

    Parameters
    ----------
    values : np.ndarray
        Components to assess.
    quantization_step : float
        Quantization bucket width.

    Returns
    -------
    float
        Entropy in [0, 1].
    """
    if values.size <= 1:
        return 0.0

    levels = np.round(values / quantization_step).astype(np.int64)
    _, counts = np.unique(levels, return_counts=True)
    bits = float(shannon_entropy(counts, base=2))
    return float(np.clip(bits / math.log2(values.size), 0.0, 1.0))


class FingerprintCanonicalizer:
    """
    Builds canonical fingerprints and their keyed digests.

    Parameters
    ----------
    config : FingerprintConfig, optional
        Dimensions, quantization, entropy floor and digest parameters.

    Examples
    --------
    >>> canonicalizer = FingerprintCanonicalizer()
    >>> fingerprint = canonicalizer.canonicalize(summary)
    >>> fingerprint.vector.shape
    (56,)
    """

    def __init__(self, config: Optional[FingerprintConfig] = None) -> None:
        self.config = config or FingerprintConfig()
        self.block_dims = {
            modality: (
                self.config.facial_dim
                if modality is Modality.FACIAL
                else MODALITY_FEATURE_DIMS[modality.value]
            )
            for modality in CANONICAL_ORDER
        }
        self.dimension = sum(self.block_dims.values())
        self._salt = self._derive_salt(self.config.digest_key)

        logger.debug(
            "FingerprintCanonicalizer initialized",
            dimension=self.dimension,
            digest_rounds=self.config.digest_rounds,
            digest_memory_cost_kb=self.config.digest_memory_cost_kb,
            min_entropy=self.config.min_entropy,
        )

    @staticmethod
    def _derive_salt(key: str) -> bytes:
        """Derive the fixed digest salt from the deployment key."""
        return hmac.new(
            key.encode("utf-8"), DIGEST_SALT_LABEL, hashlib.sha256
        ).digest()[:DIGEST_SALT_LENGTH]

    def canonical_vector(self, summary: CaptureSummary) -> Tuple[np.ndarray, np.ndarray]:
        """
        Build the canonical unit vector of a capture.

        Each present modality block is padded/truncated to its fixed size,
        signed-log compressed and z-scored; absent modalities contribute a
        zero block. The concatenation is scaled to unit length.

        Returns
        -------
        Tuple[np.ndarray, np.ndarray]
            The canonical vector and a boolean mask of present components.
        """
        blocks: List[np.ndarray] = []
        masks: List[np.ndarray] = []

        for modality in CANONICAL_ORDER:
            dim = self.block_dims[modality]
            features = summary.features.get(modality)
            if features is None:
                blocks.append(np.zeros(dim, dtype=np.float64))
                masks.append(np.zeros(dim, dtype=bool))
                continue
            try:
                block = zscore(signed_log(normalize_vector(features.vector, dim)))
            except NormalizationError as e:
                raise CanonicalizationError(
                    f"Cannot normalize '{modality.value}' block: {e.message}",
                    context={"modality": modality.value},
                )
            blocks.append(block)
            masks.append(np.ones(dim, dtype=bool))

        vector = l2_normalize(np.concatenate(blocks))
        return vector, np.concatenate(masks)

    def quantize(self, vector: np.ndarray) -> bytes:
        """Quantize a canonical vector to little-endian int32 bytes."""
        levels = np.round(vector / self.config.quantization_step).astype("<i4")
        return levels.tobytes()

    def compute_digest(self, vector: np.ndarray) -> str:
        """
        Compute the keyed Argon2id digest of a canonical vector.

        Deterministic: the same vector and key always give the same digest.

        Raises
        ------
        DigestGenerationError
            If the vector is invalid or hashing fails.
        """
        if not isinstance(vector, np.ndarray) or vector.ndim != 1 or vector.size == 0:
            raise DigestGenerationError("vector must be a non-empty 1D numpy array")
        if not np.isfinite(vector).all():
            raise DigestGenerationError("vector contains non-finite values")

        try:
            raw = hash_secret_raw(
                secret=self.quantize(vector),
                salt=self._salt,
                time_cost=self.config.digest_rounds,
                memory_cost=self.config.digest_memory_cost_kb,
                parallelism=self.config.digest_parallelism,
                hash_len=self.config.digest_length,
                type=Type.ID,
            )
        except HashingError as e:
            raise DigestGenerationError(f"Argon2 hashing failed: {e}")

        return raw.hex()

    def verify_digest(self, vector: np.ndarray, digest: str) -> bool:
        """Check in constant time that a vector produces the given digest."""
        try:
            computed = self.compute_digest(vector)
        except DigestGenerationError as e:
            logger.warning("Digest verification failed", error=e.message)
            return False
        return hmac.compare_digest(computed, digest)

    @timer
    def canonicalize(self, summary: CaptureSummary) -> Fingerprint:
        """
        Canonicalize a capture into a fingerprint.

        Parameters
        ----------
        summary : CaptureSummary
            Features of a session whose fusion result was accepted.

        Returns
        -------
        Fingerprint
            Canonical vector, digest and entropy estimate.

        Raises
        ------
        LowEntropyError
            If the present components carry too little information.
        CanonicalizationError
            If a block cannot be normalized.
        DigestGenerationError
            If hashing fails.
        """
        if not summary.features:
            raise CanonicalizationError("Capture summary holds no modality features")

        vector, present = self.canonical_vector(summary)
        entropy = estimate_entropy(vector[present], self.config.quantization_step)

        if entropy < self.config.min_entropy:
            raise LowEntropyError(entropy, self.config.min_entropy)

        digest = self.compute_digest(vector)
        modalities = tuple(m for m in CANONICAL_ORDER if m in summary.features)

        fingerprint = Fingerprint(
            vector=vector,
            digest=digest,
            entropy=entropy,
            modalities=modalities,
        )

        logger.info(
            "Fingerprint canonicalized",
            session_id=summary.session_id,
            dimension=len(vector),
            entropy=round(entropy, 4),
            digest_preview=fingerprint.digest_preview,
            modalities=[m.value for m in modalities],
        )

        return fingerprint
