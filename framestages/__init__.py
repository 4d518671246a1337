"""Per-frame camera post-processing: HDR, negation, classification and inference output decoding."""

__version__ = "0.1.0"