"""Context-budgeted batch answering engine."""

from .config import EngineConfig
from .execution.engine import BatchExecutionEngine
from .pipeline import AnsweringPipeline
from .selection.selector import SkillSelector

__all__ = ["AnsweringPipeline", "BatchExecutionEngine", "EngineConfig", "SkillSelector"]
