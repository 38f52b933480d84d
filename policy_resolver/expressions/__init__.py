"""
Expression sandbox, its fixed function table and the template processor.
"""

from .sandbox import ExpressionContext, ExpressionResult, ExpressionSandbox
from .templates import ExpressionTemplateProcessor

__all__ = [
    "ExpressionContext",
    "ExpressionResult",
    "ExpressionSandbox",
    "ExpressionTemplateProcessor",
]
