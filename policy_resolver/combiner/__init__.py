"""
Policy combination.
"""

from .combiner import PolicyCombiner, combine_resolutions
from .models import EvaluationStep, PolicyCombinationResult

__all__ = [
    "EvaluationStep",
    "PolicyCombinationResult",
    "PolicyCombiner",
    "combine_resolutions",
]
