"""
Alignment Module - Timestamp Correction and Temporal Alignment.

Submodules:
- delay: Physical delay models and per-sensor timestamp correction
- similarity: Type-aware value similarity shared with fault detection
- dtw: Dynamic Time Warping alignment of sensor streams

Example Usage:
    from chronofuse.alignment import (
        DelayProfile,
        DelayCorrector,
        DTWAligner,
        DTWConstraints,
        StepPattern,
    )
"""

# Delay model exports
from chronofuse.alignment.delay import (
    DEFAULT_PROFILE_PARAMETERS,
    DelayProfile,
    DelayModel,
    DelayCorrector,
)

# Similarity exports
from chronofuse.alignment.similarity import (
    scalar_similarity,
    wind_similarity,
    value_similarity,
    series_consistency,
)

# DTW exports
from chronofuse.alignment.dtw import (
    StepPattern,
    Step,
    DTWConstraints,
    AlignmentResult,
    DTWAligner,
    align_streams,
)

__all__ = [
    # Delay
    "DEFAULT_PROFILE_PARAMETERS",
    "DelayProfile",
    "DelayModel",
    "DelayCorrector",
    # Similarity
    "scalar_similarity",
    "wind_similarity",
    "value_similarity",
    "series_consistency",
    # DTW
    "StepPattern",
    "Step",
    "DTWConstraints",
    "AlignmentResult",
    "DTWAligner",
    "align_streams",
]
