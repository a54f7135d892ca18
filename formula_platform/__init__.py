"""Formula Platform — quarterly formula evaluation and signal engine."""
from .types import *
from .errors import FormulaError, ParseError, FormulaRuntimeError, DatasetError
from .config import EngineConfig, DEFAULT_WINDOW_SIZE
from .engine import (
    compile_formula,
    validate_formula,
    evaluate_compiled,
    evaluate_formula,
    generate_signal,
)
from .signals import NO_SIGNAL, ERROR_SIGNAL, map_signal, is_match
from .quarters import QuarterWindow, select_window, parse_quarter_label
from .batch import evaluate_batch, screen
