from .affine_lowering import AffineLoweringPass, lower_to_affine
from .canonicalize import CanonicalizePass, canonicalize, compute_purity, inline_call
from .lowlevel_lowering import LowLevelLoweringPass, lower_to_lowlevel
from .shape_inference import IN_PROGRESS, ShapeInferencePass, SpecializationCache, infer_shapes

__all__ = [
    "ShapeInferencePass",
    "SpecializationCache",
    "IN_PROGRESS",
    "infer_shapes",
    "CanonicalizePass",
    "canonicalize",
    "compute_purity",
    "inline_call",
    "AffineLoweringPass",
    "lower_to_affine",
    "LowLevelLoweringPass",
    "lower_to_lowlevel",
]
