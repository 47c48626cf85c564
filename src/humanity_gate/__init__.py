"""
HUMANITY GATE - Fingerprint Fusion and Sybil-Resistant Matching Engine

Fuses facial micro-movement, blink pattern, head movement and pointer
dynamics captured during a short session into a canonical behavioural
fingerprint, and admits each human at most once by similarity search over
every fingerprint registered before.

Raw frames never leave a capture session; processed vectors are retained
for a bounded window and only keyed digests are kept permanently.
"""

__version__ = "1.0.0"
__author__ = "HUMANITY GATE Team"
__email__ = "engineering@humanity-gate.org"
