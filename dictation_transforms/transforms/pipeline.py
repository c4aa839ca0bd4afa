"""
Running a pipeline of transformation steps over a piece of text.

Local steps are plain string operations. LLM steps are handed to an
injected runner (normally ``LLMExecutor.run``). A failing step aborts the
whole pipeline: half-transformed text is never returned.
"""

import logging
import re
import time
from typing import Awaitable, Callable, Optional

from ..llm.errors import InvalidConfigurationError
from .models import (
    AffixOperation,
    LLMTransformationConfig,
    Pipeline,
    ReplaceTextConfig,
    SimpleOperation,
    TransformationType,
)

logger = logging.getLogger(__name__)

LLMRunner = Callable[[LLMTransformationConfig, str], Awaitable[str]]


def _spongebob(text: str) -> str:
    return "".join(ch.lower() if i % 2 == 0 else ch.upper() for i, ch in enumerate(text))


def _capitalize_first(text: str) -> str:
    return text[:1].upper() + text[1:]


_SIMPLE_OPERATIONS = {
    "uppercase": str.upper,
    "lowercase": str.lower,
    "capitalize": str.title,
    "capitalizeFirst": _capitalize_first,
    "spongebobCase": _spongebob,
    "trimWhitespace": str.strip,
    "removeExtraSpaces": lambda text: re.sub(r"\s+", " ", text),
}


def _replace(text: str, config: ReplaceTextConfig) -> str:
    flags = 0 if config.case_sensitive else re.IGNORECASE
    if config.use_regex:
        return re.sub(config.pattern, config.replacement, text, flags=flags)
    if not config.pattern:
        return text
    return re.sub(re.escape(config.pattern), lambda _: config.replacement, text, flags=flags)


def apply_local(step: TransformationType, text: str) -> str:
    """
    Apply a local (non-LLM) operation.

    Raises:
        ValueError: If ``step`` is an LLM step.
    """
    if isinstance(step, SimpleOperation):
        return _SIMPLE_OPERATIONS[step.kind](text)
    if isinstance(step, AffixOperation):
        return step.text + text if step.kind == "addPrefix" else text + step.text
    if isinstance(step, ReplaceTextConfig):
        return _replace(text, step)
    raise ValueError(f"{step.kind} is not a local operation")


class PipelineExecutor:
    """
    Executes pipelines serially, one step after another.

    The executor itself holds no per-run state, so one instance can serve
    several concurrent runs.
    """

    def __init__(self, llm_runner: Optional[LLMRunner] = None):
        """
        Args:
            llm_runner: Coroutine function that runs an LLM step on text.
                Pipelines containing enabled LLM steps need one.
        """
        self.llm_runner = llm_runner

    async def process(self, pipeline: Pipeline, text: str) -> str:
        """
        Run every enabled step of ``pipeline`` over ``text`` in order.

        Returns:
            The transformed text; ``text`` unchanged if the pipeline is
            disabled or has no enabled steps.

        Raises:
            Whatever the first failing step raised. Nothing is retried.
        """
        if not pipeline.is_enabled:
            return text

        current = text
        for index, transformation in enumerate(pipeline.transformations):
            if not transformation.is_enabled:
                continue

            step = transformation.type
            if isinstance(step, LLMTransformationConfig):
                if self.llm_runner is None:
                    raise InvalidConfigurationError(
                        f"step {index + 1} ({transformation.name}) needs an LLM executor"
                    )
                start_time = time.time()
                logger.info(f"Running LLM step {index + 1} with provider '{step.provider_id}'")
                current = await self.llm_runner(step, current)
                logger.debug(f"LLM step {index + 1} finished in {time.time() - start_time:.2f}s")
            else:
                current = apply_local(step, current)

        return current
