"""
Card Logic Infrastructure Layer
"""
from infrastructure.solver_gateway import (
    SolverGateway,
    ProgramStore,
    SolveResult,
    SolverError,
    SolverParseError,
    SolverRuntimeError,
    SolverTimeoutError,
)
from infrastructure.fact_compiler import FactCompiler, CompilationError, CompileReport
from infrastructure.result_projector import ResultProjector, ResultProjectionError
from infrastructure.card_store import CardStore, CardStoreError
from infrastructure.config import EngineConfig
from infrastructure.error_logger import ErrorLogger, ErrorCategory, ErrorSeverity

__all__ = [
    'SolverGateway',
    'ProgramStore',
    'SolveResult',
    'SolverError',
    'SolverParseError',
    'SolverRuntimeError',
    'SolverTimeoutError',
    'FactCompiler',
    'CompilationError',
    'CompileReport',
    'ResultProjector',
    'ResultProjectionError',
    'CardStore',
    'CardStoreError',
    'EngineConfig',
    'ErrorLogger',
    'ErrorCategory',
    'ErrorSeverity',
]
