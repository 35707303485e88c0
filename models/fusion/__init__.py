"""
Fusion Package

Weighted multi-source consensus with per-trait provenance.
"""

from .engine import (
    FusionConfig,
    FusionEngine,
    fuse,
    DEGRADATION_VALIDATOR_ABSENT,
)

__all__ = ['FusionConfig', 'FusionEngine', 'fuse', 'DEGRADATION_VALIDATOR_ABSENT']
