from .assembler import (
    AssembledBatch,
    BatchPlayerRecord,
    MalformedMatchError,
    assemble_batch,
    validate_match,
)
from .config import TrueSkill2Config
from .decay import apply_batch_result, decay_variance
from .hyperparameters import (
    GammaPosterior,
    GammaPrior,
    GaussianPosterior,
    HyperparameterEstimator,
    Hyperparameters,
)
from .inference import InferenceResult, MessageState, run_inference
from .trueskill2 import TrueSkill2

__all__ = [
    "TrueSkill2",
    "TrueSkill2Config",
    "AssembledBatch",
    "BatchPlayerRecord",
    "MalformedMatchError",
    "assemble_batch",
    "validate_match",
    "apply_batch_result",
    "decay_variance",
    "GammaPrior",
    "GammaPosterior",
    "GaussianPosterior",
    "HyperparameterEstimator",
    "Hyperparameters",
    "InferenceResult",
    "MessageState",
    "run_inference",
]
