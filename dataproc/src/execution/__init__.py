"""
Execution collaborators.

This module provides the substrates that run Processing Stage attempts in
isolation and the invokers that call the Preparation Stage function.
"""

from .ecs_substrate import EcsTaskSubstrate
from .lambda_invoker import LambdaFunctionInvoker, LocalFunctionInvoker, make_local_prepare_handler
from .local_substrate import LocalSubstrate

__all__ = [
    "EcsTaskSubstrate",
    "LambdaFunctionInvoker",
    "LocalFunctionInvoker",
    "LocalSubstrate",
    "make_local_prepare_handler",
]
