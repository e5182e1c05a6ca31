"""Rating system implementations.

Batch systems (inference over a window of matches, carried forward):
- TrueSkill2: TrueSkill 2 style team ratings with skill chains, decay and
  optional stat regression

All implementations use Numba for high performance.
"""

from .trueskill2 import (
    TrueSkill2,
    TrueSkill2Config,
    AssembledBatch,
    MalformedMatchError,
    GammaPrior,
    GammaPosterior,
    GaussianPosterior,
    Hyperparameters,
    InferenceResult,
    assemble_batch,
    apply_batch_result,
    decay_variance,
    run_inference,
)

__all__ = [
    "TrueSkill2",
    "TrueSkill2Config",
    "AssembledBatch",
    "MalformedMatchError",
    "GammaPrior",
    "GammaPosterior",
    "GaussianPosterior",
    "Hyperparameters",
    "InferenceResult",
    "assemble_batch",
    "apply_batch_result",
    "decay_variance",
    "run_inference",
]
