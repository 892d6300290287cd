# HybridSQL - Model Selector
# ==========================
"""
Model Selection and Progressive Rollback
========================================
Chooses a language-model backend per task from a cost/speed/quality
profile and recorded history, and retries failed tasks on progressively
stronger models.

Selection order:
1. Cheapest model with a recorded success for this task type
2. Filter the hierarchy by context window, minimum quality, maximum cost
3. Fastest (easy / prefer_speed), best quality (very_hard),
   or best (2*quality + speed) / cost otherwise
4. DEFAULT_MODEL when nothing survives filtering
"""

import time
import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Generic, List, Optional, TypeVar

from .errors import ModelRollbackExhausted
from .models import ModelConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Ordered weakest -> strongest. Scores are relative (1-10).
MODEL_HIERARCHY: List[ModelConfig] = [
    ModelConfig(name="claude-3-5-haiku-20241022", cost=1, speed=10, quality=6, context_window=200000),
    ModelConfig(name="claude-sonnet-4-20250514", cost=3, speed=7, quality=8, context_window=200000),
    ModelConfig(name="claude-sonnet-4-5-20250929", cost=5, speed=5, quality=9, context_window=200000),
    ModelConfig(name="claude-opus-4-1-20250805", cost=10, speed=3, quality=10, context_window=200000),
]

MODEL_CONFIGS: Dict[str, ModelConfig] = {m.name: m for m in MODEL_HIERARCHY}

DEFAULT_MODEL = MODEL_HIERARCHY[1].name

MAX_ROLLBACK_ATTEMPTS = 4
HISTORY_SIZE = 100

COMPLEXITY_LEVELS = ("easy", "medium", "hard", "very_hard")


@dataclass
class SelectionOptions:
    """Requirements for one model selection."""
    complexity: str = "medium"
    prefer_speed: bool = False
    min_quality: int = 6
    max_cost: int = 10
    context_size: int = 0

    def __post_init__(self):
        if self.complexity not in COMPLEXITY_LEVELS:
            raise ValueError(
                f"Unknown complexity '{self.complexity}', expected one of {COMPLEXITY_LEVELS}"
            )


@dataclass
class ExecutionRecord:
    """One recorded task attempt."""
    model: str
    success: bool
    duration_ms: float


@dataclass
class RollbackResult(Generic[T]):
    """Outcome of execute_with_rollback."""
    result: T
    model: str
    attempts: int


class ModelSelector:
    """
    Picks models per task type and learns from recorded outcomes.

    Example:
        selector = ModelSelector()
        outcome = selector.execute_with_rollback(
            "query_analysis",
            lambda model: provider.generate_object(request.for_model(model)),
            SelectionOptions(complexity="easy")
        )
        outcome.result, outcome.model, outcome.attempts
    """

    def __init__(self, models: Optional[List[ModelConfig]] = None,
                 default_model: Optional[str] = None,
                 max_attempts: int = MAX_ROLLBACK_ATTEMPTS):
        """
        Initialize selector.

        Args:
            models: Hierarchy ordered weakest to strongest
            default_model: Fallback when no model satisfies the filters
            max_attempts: Attempt cap for execute_with_rollback
        """
        self.hierarchy: List[ModelConfig] = list(models or MODEL_HIERARCHY)
        self.configs: Dict[str, ModelConfig] = {m.name: m for m in self.hierarchy}
        if default_model is None:
            default_model = self.hierarchy[min(1, len(self.hierarchy) - 1)].name
        self.default_model = default_model
        self.max_attempts = max_attempts

        self._history: Dict[str, Deque[ExecutionRecord]] = {}
        self._lock = threading.Lock()

    # =========================================================================
    # SELECTION
    # =========================================================================

    def pick_model(self, task_type: str, options: Optional[SelectionOptions] = None) -> str:
        """
        Pick the model for a task.

        Args:
            task_type: Task identifier (e.g. "sql_generation:balanced")
            options: Selection requirements

        Returns:
            Model name (never fails)
        """
        options = options or SelectionOptions()

        learned = self._cheapest_successful(task_type, options.context_size)
        if learned:
            logger.debug(f"Using historically successful model for {task_type}: {learned}")
            return learned

        candidates = [
            m for m in self.hierarchy
            if m.context_window >= options.context_size
            and m.quality >= options.min_quality
            and m.cost <= options.max_cost
        ]

        if not candidates:
            logger.warning(
                f"No model matches criteria for {task_type}, using {self.default_model}"
            )
            return self.default_model

        # max() keeps the first (weakest) model on equal scores
        if options.complexity == "easy" or options.prefer_speed:
            chosen = max(candidates, key=lambda m: m.speed)
        elif options.complexity == "very_hard":
            chosen = max(candidates, key=lambda m: m.quality)
        else:
            chosen = max(candidates, key=lambda m: (2 * m.quality + m.speed) / m.cost)

        return chosen.name

    def _cheapest_successful(self, task_type: str, context_size: int) -> Optional[str]:
        with self._lock:
            history = list(self._history.get(task_type, ()))

        successful = {r.model for r in history if r.success and r.model in self.configs}
        fitting = [
            self.configs[name] for name in successful
            if self.configs[name].context_window >= context_size
        ]
        if not fitting:
            return None
        fitting.sort(key=lambda m: (m.cost, self.hierarchy.index(m)))
        return fitting[0].name

    def next_model(self, current: str) -> Optional[str]:
        """Next stronger model in the hierarchy, or None at the top."""
        names = [m.name for m in self.hierarchy]
        if current not in names:
            return None
        index = names.index(current)
        if index == len(names) - 1:
            return None
        return names[index + 1]

    # =========================================================================
    # HISTORY
    # =========================================================================

    def record_execution(self, task_type: str, model: str, success: bool, duration_ms: float):
        """Record an attempt (keeps the last HISTORY_SIZE per task type)."""
        with self._lock:
            history = self._history.setdefault(task_type, deque(maxlen=HISTORY_SIZE))
            history.append(ExecutionRecord(model=model, success=success, duration_ms=duration_ms))

    def get_history(self, task_type: str) -> List[ExecutionRecord]:
        with self._lock:
            return list(self._history.get(task_type, ()))

    def get_stats(self, task_type: str) -> Dict[str, Dict[str, Any]]:
        """
        Per-model statistics for a task type.

        Returns:
            {model: {attempts, successes, avg_time_ms}}
        """
        stats: Dict[str, Dict[str, Any]] = {}
        for record in self.get_history(task_type):
            entry = stats.setdefault(record.model, {'attempts': 0, 'successes': 0, 'avg_time_ms': 0.0})
            entry['attempts'] += 1
            if record.success:
                entry['successes'] += 1
            entry['avg_time_ms'] += (record.duration_ms - entry['avg_time_ms']) / entry['attempts']

        for entry in stats.values():
            entry['avg_time_ms'] = round(entry['avg_time_ms'], 1)
        return stats

    def task_types(self) -> List[str]:
        with self._lock:
            return sorted(self._history.keys())

    def reset(self):
        """Forget all recorded history."""
        with self._lock:
            self._history.clear()

    # =========================================================================
    # ROLLBACK
    # =========================================================================

    def execute_with_rollback(self, task_type: str, task: Callable[[str], T],
                              options: Optional[SelectionOptions] = None) -> RollbackResult[T]:
        """
        Run task with the selected model, escalating on failure.

        Each failure moves to the next stronger model; a weaker model is
        never retried within one call.

        Args:
            task_type: Task identifier used for history
            task: Callable receiving the model name
            options: Selection requirements for the first attempt

        Returns:
            RollbackResult with the task's result, the model that produced
            it and the number of attempts

        Raises:
            ModelRollbackExhausted: When the hierarchy or attempt cap is exhausted
        """
        current: Optional[str] = self.pick_model(task_type, options)
        attempts = 0
        last_error: Optional[BaseException] = None

        while current is not None and attempts < self.max_attempts:
            attempts += 1
            start_time = time.time()
            try:
                logger.debug(f"{task_type}: attempt {attempts} with {current}")
                result = task(current)
            except Exception as e:
                duration = (time.time() - start_time) * 1000
                self.record_execution(task_type, current, False, duration)
                last_error = e

                following = self.next_model(current)
                logger.warning(
                    f"{task_type}: {current} failed ({e}); "
                    f"{'rolling back to ' + following if following else 'no stronger model'}"
                )
                current = following
                continue

            duration = (time.time() - start_time) * 1000
            self.record_execution(task_type, current, True, duration)
            if attempts > 1:
                logger.info(f"{task_type}: succeeded with {current} after {attempts} attempts")
            return RollbackResult(result=result, model=current, attempts=attempts)

        raise ModelRollbackExhausted(task_type, attempts, last_error) from last_error
