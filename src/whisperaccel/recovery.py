"""Recovery from load failures and runtime processing errors.

Two mechanisms live here:

- ``recover_with_fallbacks`` walks a pre-built fallback chain after a
  backend failed to load, returning the first backend that loads and
  validates.
- ``handle_processing_error`` runs the registered recovery strategies
  against an error raised while processing a job. Strategies that can
  handle the error are tried by descending priority, one attempt each,
  until one succeeds or the retry budget is spent. If nothing works, a
  placeholder output is written and the UI is told about the failure.
"""

from __future__ import annotations

import gc
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from .descriptor import BackendDescriptor
from .errors import (
    AllFallbacksExhausted,
    AllRecoveryStrategiesExhausted,
    LoadError,
    WhisperAccelError,
    user_friendly_message,
)
from .events import EventEmitter
from .loader import BackendAdapter, BackendLoader
from .models import ModelStore, smaller_model
from .settings import PreferenceStore

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
DEFAULT_MAX_CONTEXT = 448

PLACEHOLDER_TEXT = "Audio processing failed - please try again with a different model or CPU processing"
PLACEHOLDER_SEGMENT = {"start": 0, "end": 5000, "text": PLACEHOLDER_TEXT}


# ---------------------------------------------------------------------------
# Chain-walk recovery
# ---------------------------------------------------------------------------


def recover_with_fallbacks(
    error: BaseException,
    failed: BackendDescriptor,
    chain: Sequence[BackendDescriptor],
    loader: BackendLoader,
    *,
    correlation_id: Optional[str] = None,
) -> BackendAdapter:
    """Try each chain entry in order; the first one that loads wins."""
    emitter = loader.emitter
    emitter.detection(
        "fallback_chain_started",
        {
            "original_error": str(error),
            "failed_backend": failed.to_dict(),
            "fallback_chain": [d.module_path for d in chain],
        },
        correlation_id,
    )

    skip_failed_module = not getattr(error, "retryable", True)
    attempts = 0
    for index, descriptor in enumerate(chain, start=1):
        if skip_failed_module and descriptor.module_path == failed.module_path:
            logger.info(
                "Skipping %s: %s already failed and cannot succeed on retry",
                descriptor.display_name,
                descriptor.module_path,
            )
            continue
        attempts += 1
        emitter.loading(
            "fallback_used",
            failed.kind.value,
            {"fallback": descriptor.to_dict(), "attempt": index, "total_options": len(chain)},
            correlation_id,
        )
        try:
            adapter = loader.load_and_validate(descriptor, correlation_id)
        except LoadError as exc:
            logger.warning("Fallback option %d/%d (%s) failed: %s", index, len(chain), descriptor.display_name, exc)
            emitter.detection(
                "fallback_chain_option_failed",
                {"option": descriptor.to_dict(), "attempt": index, "error": str(exc)},
                correlation_id,
            )
            continue

        emitter.detection(
            "fallback_chain_success",
            {"successful_option": descriptor.to_dict(), "attempt": index, "total_options": len(chain)},
            correlation_id,
        )
        return adapter

    raise AllFallbacksExhausted(
        f"All fallback options failed. Original error: {error}",
        attempts=attempts,
    ) from error


# ---------------------------------------------------------------------------
# Jobs and outputs
# ---------------------------------------------------------------------------


def _fmt_srt_time(ms: int) -> str:
    hours, rem = divmod(int(ms), 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    seconds, millis = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d},{millis:03d}"


def write_json_segments(path: Path, segments: List[Dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"segments": segments}, indent=2), encoding="utf-8")


def write_srt_segments(path: Path, segments: List[Dict[str, Any]]) -> None:
    lines = []
    for i, seg in enumerate(segments, start=1):
        lines.append(str(i))
        lines.append(f"{_fmt_srt_time(seg['start'])} --> {_fmt_srt_time(seg['end'])}")
        lines.append(seg["text"])
        lines.append("")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines), encoding="utf-8")


OutputWriter = Callable[[Path, List[Dict[str, Any]]], None]


@dataclass
class TranscriptionJob:
    """One unit of work handed to the processing function.

    ``params`` carries the inference parameters (``model``, ``language``,
    ``max_context``...). Recovery strategies never mutate it; they pass a
    modified copy to the processing function.
    """
    audio_file: Path
    output_file: Path
    params: Dict[str, Any] = field(default_factory=dict)
    writer: OutputWriter = write_json_segments
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @property
    def model(self) -> str:
        return str(self.params.get("model") or "").lower()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "audio_file": str(self.audio_file),
            "output_file": str(self.output_file),
            "model": self.model,
        }


ProcessFn = Callable[[TranscriptionJob, Dict[str, Any]], Any]
NotifyFn = Callable[[str, Dict[str, Any]], None]


def _no_ui(channel: str, payload: Dict[str, Any]) -> None:
    logger.debug("UI notification %s: %s", channel, payload)


@dataclass
class RecoveryContext:
    """State shared by the strategies while one error is being recovered.

    Attributes:
        error: The processing error being recovered
        job: The job that failed
        process: Runs one processing attempt with the given params, without recovery
        retry_count: Attempts made so far; only ever increases
        max_retries: Cap on attempts
        preferences: Backend preference store (driver recovery)
        model_store: Installed models (model recovery)
        reload_backend: Produces a fresh backend handle for a model (backend module recovery)
        notify_ui: ``notify_ui(channel, payload)`` progress/error surface
        sleep: Delay function used by the generic retry
    """
    error: BaseException
    job: TranscriptionJob
    process: ProcessFn
    retry_count: int = 0
    max_retries: int = MAX_RETRIES
    preferences: Optional[PreferenceStore] = None
    model_store: Optional[ModelStore] = None
    reload_backend: Optional[Callable[[str], Any]] = None
    notify_ui: NotifyFn = _no_ui
    emitter: EventEmitter = field(default_factory=EventEmitter)
    correlation_id: Optional[str] = None
    base_delay_s: float = 2.0
    sleep: Callable[[float], None] = time.sleep
    attempts: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RecoveryStrategy:
    name: str
    priority: int
    can_handle: Callable[[BaseException], bool]
    execute: Callable[[RecoveryContext], Any]


class StrategyRegistry:
    """Named recovery strategies, applied by descending priority."""

    def __init__(self, strategies: Optional[Sequence[RecoveryStrategy]] = None) -> None:
        self._strategies: Dict[str, RecoveryStrategy] = {}
        for strategy in strategies or ():
            self.register(strategy)

    def register(self, strategy: RecoveryStrategy) -> None:
        self._strategies[strategy.name] = strategy

    def applicable(self, error: BaseException) -> List[RecoveryStrategy]:
        return [s for s in self if s.can_handle(error)]

    def __iter__(self) -> Iterator[RecoveryStrategy]:
        return iter(sorted(self._strategies.values(), key=lambda s: s.priority, reverse=True))

    def __len__(self) -> int:
        return len(self._strategies)


def _contains_any(*markers: str) -> Callable[[BaseException], bool]:
    def check(error: BaseException) -> bool:
        message = str(error)
        return any(marker in message for marker in markers)
    return check


def _recover_memory(ctx: RecoveryContext) -> Any:
    logger.info("Attempting GPU memory recovery by switching to a smaller model")
    gc.collect()

    current = ctx.job.model
    smaller = smaller_model(current)
    if smaller == current:
        raise WhisperAccelError("No smaller model available for memory recovery")

    logger.info("Switching from %s to %s for memory recovery", current, smaller)
    return ctx.process(ctx.job, {**ctx.job.params, "model": smaller})


def _recover_driver(ctx: RecoveryContext) -> Any:
    if ctx.preferences is None:
        raise WhisperAccelError("No preference store available for CPU fallback")

    logger.info("Attempting GPU driver recovery by forcing CPU processing")
    with ctx.preferences.override(selected_backend_id="cpu_processing", priority_order=["cpu"]):
        return ctx.process(ctx.job, dict(ctx.job.params))


def _recover_model(ctx: RecoveryContext) -> Any:
    if ctx.model_store is None:
        raise WhisperAccelError("Model location unknown; cannot check model files")

    model = ctx.job.model
    if model == "base":
        raise WhisperAccelError("Model loading recovery failed - base model requested")
    if ctx.model_store.has_model(model):
        raise WhisperAccelError(f"Model file for {model} exists; not a missing-model error")
    if not ctx.model_store.has_model("base"):
        raise WhisperAccelError("Model loading recovery failed - base model not available")

    logger.info("Model %s not found, trying base model as fallback", model)
    return ctx.process(ctx.job, {**ctx.job.params, "model": "base"})


def _recover_backend_module(ctx: RecoveryContext) -> Any:
    if ctx.reload_backend is None:
        raise WhisperAccelError("Backend module reload not available")

    logger.info("Attempting backend module recovery by reloading")
    ctx.reload_backend(ctx.job.model)
    return ctx.process(ctx.job, dict(ctx.job.params))


def _recover_input_file(ctx: RecoveryContext) -> Any:
    audio = Path(ctx.job.audio_file)
    if not audio.exists():
        raise WhisperAccelError(f"Audio file not found: {audio}")
    if audio.stat().st_size == 0:
        raise WhisperAccelError(f"Audio file is empty: {audio}")

    current = int(ctx.job.params.get("max_context") or DEFAULT_MAX_CONTEXT)
    reduced = max(1, current // 2)
    logger.info("Retrying with max_context %d (was %d)", reduced, current)
    return ctx.process(ctx.job, {**ctx.job.params, "max_context": reduced})


def _recover_generic(ctx: RecoveryContext) -> Any:
    if ctx.retry_count >= ctx.max_retries - 1:
        raise WhisperAccelError("Maximum retry attempts reached")

    delay = ctx.base_delay_s * (ctx.retry_count + 1)
    logger.info("Generic retry in %.1fs", delay)
    ctx.sleep(delay)
    return ctx.process(ctx.job, dict(ctx.job.params))


def default_strategies() -> List[RecoveryStrategy]:
    return [
        RecoveryStrategy(
            "GPU Memory Recovery",
            90,
            _contains_any("memory", "CUDA_ERROR_OUT_OF_MEMORY", "out of memory"),
            _recover_memory,
        ),
        RecoveryStrategy(
            "GPU Driver Recovery",
            85,
            _contains_any("driver", "OpenVINO", "CUDA", "device"),
            _recover_driver,
        ),
        RecoveryStrategy(
            "Model Loading Recovery",
            80,
            _contains_any("model", "file not found", "ENOENT"),
            _recover_model,
        ),
        RecoveryStrategy(
            "Backend Module Recovery",
            75,
            _contains_any("addon", "backend module", "dlopen", "whisper function not found"),
            _recover_backend_module,
        ),
        RecoveryStrategy(
            "Audio File Recovery",
            70,
            _contains_any("audio", "file", "input"),
            _recover_input_file,
        ),
        RecoveryStrategy("Generic Retry Recovery", 50, lambda error: True, _recover_generic),
    ]


def default_registry() -> StrategyRegistry:
    return StrategyRegistry(default_strategies())


# ---------------------------------------------------------------------------
# Strategy-based recovery
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RecoveryOutcome:
    recovered: bool
    result: Any = None
    strategy: Optional[str] = None
    attempts: int = 0
    output_file: Optional[Path] = None
    user_message: Optional[str] = None


def handle_processing_error(
    ctx: RecoveryContext,
    registry: Optional[StrategyRegistry] = None,
) -> RecoveryOutcome:
    """Recover a failed job, or write the placeholder output when nothing works.

    Raises AllRecoveryStrategiesExhausted only when no registered strategy
    claims the error at all.
    """
    if registry is None:
        registry = default_registry()
    error = ctx.error
    logger.error(
        "Processing error encountered (attempt %d/%d): %s",
        ctx.retry_count + 1,
        ctx.max_retries,
        error,
    )

    strategies = registry.applicable(error)
    if not strategies:
        raise AllRecoveryStrategiesExhausted(f"Unrecoverable error: {error}")

    for strategy in strategies:
        if ctx.retry_count >= ctx.max_retries:
            logger.warning("Retry budget of %d spent; skipping remaining strategies", ctx.max_retries)
            break

        attempt = ctx.retry_count + 1
        ctx.attempts.append(strategy.name)
        ctx.notify_ui(
            "taskStatusChange",
            {**ctx.job.to_dict(), "status": "recovering", "recovery_strategy": strategy.name, "attempt": attempt},
        )
        ctx.emitter.recovery(
            "recovery_attempt",
            f"Attempting recovery strategy: {strategy.name}",
            "info",
            {"strategy": strategy.name, "priority": strategy.priority, "attempt": attempt, "error": str(error)},
            ctx.correlation_id,
        )

        try:
            result = strategy.execute(ctx)
        except Exception as exc:
            ctx.retry_count = attempt
            logger.warning("Recovery strategy '%s' failed: %s", strategy.name, exc)
            ctx.emitter.recovery(
                "recovery_failed",
                f"Recovery strategy '{strategy.name}' failed",
                "warning",
                {"strategy": strategy.name, "attempt": attempt, "error": str(exc)},
                ctx.correlation_id,
            )
            continue

        ctx.retry_count = attempt
        logger.info("Recovery strategy '%s' succeeded", strategy.name)
        ctx.notify_ui(
            "taskStatusChange",
            {**ctx.job.to_dict(), "status": "recovered", "recovery_strategy": strategy.name},
        )
        ctx.emitter.recovery(
            "recovery_success",
            f"Recovery strategy '{strategy.name}' succeeded",
            "success",
            {"strategy": strategy.name, "attempt": attempt},
            ctx.correlation_id,
        )
        return RecoveryOutcome(recovered=True, result=result, strategy=strategy.name, attempts=attempt)

    logger.error("All recovery strategies failed after %d attempts", ctx.retry_count)
    output: Optional[Path] = Path(ctx.job.output_file)
    try:
        ctx.job.writer(output, [dict(PLACEHOLDER_SEGMENT)])
    except OSError as exc:
        logger.error("Could not write placeholder output %s: %s", output, exc)
        output = None

    friendly = user_friendly_message(error)
    ctx.notify_ui(
        "taskFileChange",
        {**ctx.job.to_dict(), "extract_subtitle": "error", "error": friendly},
    )
    ctx.emitter.recovery(
        "recovery_exhausted",
        "All recovery strategies failed",
        "error",
        {
            "attempts": ctx.retry_count,
            "strategies": list(ctx.attempts),
            "output_file": str(output) if output else None,
        },
        ctx.correlation_id,
    )
    return RecoveryOutcome(
        recovered=False,
        attempts=ctx.retry_count,
        output_file=output,
        user_message=friendly,
    )
