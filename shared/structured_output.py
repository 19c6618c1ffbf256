# shared/structured_output.py
"""
Strict-JSON calls against the LLM with a parse -> validate -> repair loop.
Every planning, validation and extraction call in the story pipeline goes through call_json.
"""

import json
import logging
import re
from typing import Any, Optional, TypeVar

from pydantic import BaseModel, ValidationError

from shared.generation_cost_logger import CostTracking
from shared.llm_client import DEFAULT_TEXT_MODEL, LLMClient, LLMError, llm_client

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

REPAIR_SYSTEM_PROMPT = "You are a JSON repair tool. Output strict JSON only."
SCHEMA_HINT_LIMIT = 500

_LEADING_JSON_FENCE = re.compile(r"^```json\s*", re.IGNORECASE)
_LEADING_FENCE = re.compile(r"^```\s*")
_TRAILING_FENCE = re.compile(r"\s*```$")


class StructuredOutputError(Exception):
    """Raised when a JSON call could not be parsed/validated within its retry budget"""

    def __init__(self, message: str, issues: Optional[str] = None):
        super().__init__(message)
        self.issues = issues


def strip_code_fences(raw: str) -> str:
    cleaned = _LEADING_JSON_FENCE.sub("", raw or "")
    cleaned = _LEADING_FENCE.sub("", cleaned)
    cleaned = _TRAILING_FENCE.sub("", cleaned)
    return cleaned.strip()


def parse_json_object_flexible(raw: str) -> Any:
    """
    Parse model output that should be a JSON object.

    Strips markdown fences, tries the whole text, then falls back to the
    substring between the first '{' and the last '}'.

    Raises:
        ValueError: No parseable JSON object in the text
    """
    cleaned = strip_code_fences(raw)
    try:
        return json.loads(cleaned)
    except (json.JSONDecodeError, TypeError):
        first = cleaned.find("{")
        last = cleaned.rfind("}")
        if first == -1 or last == -1 or last <= first:
            raise ValueError("No JSON object found.")
        try:
            return json.loads(cleaned[first : last + 1])
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON object: {e}") from e


def format_validation_issues(error: ValidationError) -> str:
    """Render pydantic errors as 'path: message | path: message'"""
    issues = []
    for err in error.errors():
        path = ".".join(str(part) for part in err.get("loc", ()))
        issues.append(f"{path}: {err.get('msg', 'invalid')}")
    return " | ".join(issues)


def schema_hint(model_cls: type[BaseModel]) -> str:
    try:
        return json.dumps(model_cls.model_json_schema(), separators=(",", ":"))[:SCHEMA_HINT_LIMIT]
    except Exception:
        return model_cls.__name__


def _validate(model_cls: type[ModelT], raw: str) -> ModelT:
    """Parse + validate, raising StructuredOutputError with readable issues"""
    try:
        parsed = parse_json_object_flexible(raw)
    except ValueError as e:
        raise StructuredOutputError(str(e)) from e
    try:
        return model_cls.model_validate(parsed)
    except ValidationError as e:
        issues = format_validation_issues(e)
        raise StructuredOutputError(issues, issues) from e


def _metadata(tracking: Optional[CostTracking], step: str) -> dict[str, str]:
    return {
        "story_id": (tracking.story_id if tracking and tracking.story_id else ""),
        "step": step,
        "page_number": str(tracking.page_number) if tracking and tracking.page_number is not None else "",
    }


async def _repair_json(
    llm: LLMClient,
    model_cls: type[BaseModel],
    raw: str,
    max_tokens: int,
    model: str,
    tracking: Optional[CostTracking],
    validation_issues: Optional[str] = None,
) -> str:
    base_step = tracking.step if tracking else "json_call"
    repair_step = f"{base_step}_repair"
    lines = [
        "Fix this output into valid JSON with double-quoted keys, no comments, and no trailing commas.",
        f"Validation issues: {validation_issues}" if validation_issues else "",
        f"Target schema hint: {schema_hint(model_cls)}",
        "Invalid JSON input:",
        raw,
    ]
    return await llm.generate(
        system=REPAIR_SYSTEM_PROMPT,
        messages=[{"role": "user", "content": "\n".join(line for line in lines if line)}],
        model=model,
        temperature=0,
        max_tokens=max_tokens,
        tracking=tracking.for_step(repair_step) if tracking else None,
        metadata=_metadata(tracking, repair_step),
    )


async def call_json(
    model_cls: type[ModelT],
    system: str,
    user: str,
    temperature: float,
    max_tokens: int,
    retries: int = 1,
    tracking: Optional[CostTracking] = None,
    llm: Optional[LLMClient] = None,
    model: str = DEFAULT_TEXT_MODEL,
) -> ModelT:
    """
    Ask the model for JSON matching model_cls, repairing bad output once per attempt.

    Args:
        model_cls: Pydantic model the output must validate against
        system: System prompt
        user: User prompt
        temperature: Sampling temperature for the main call
        max_tokens: Completion token cap (also used for the repair call)
        retries: Extra attempts after the first (total attempts = retries + 1)
        tracking: Cost attribution; repair calls are tracked as '<step>_repair'
        llm: Client override (defaults to the shared client)
        model: Text model id

    Returns:
        Validated model instance

    Raises:
        StructuredOutputError: Output never validated within the budget
        LLMError: The last attempt failed at the provider
    """
    client = llm or llm_client
    step = tracking.step if tracking else "json_call"
    last_error: Optional[Exception] = None

    for attempt in range(retries + 1):
        try:
            raw = await client.generate(
                system=system,
                messages=[{"role": "user", "content": user}],
                model=model,
                temperature=temperature,
                presence_penalty=0.3,
                frequency_penalty=0.3,
                max_tokens=max_tokens,
                tracking=tracking,
                metadata=_metadata(tracking, step),
            )
        except LLMError as e:
            logger.warning(f"⚠️ JSON_CALL: {step} attempt {attempt + 1} failed at provider: {e}")
            last_error = e
            continue

        try:
            return _validate(model_cls, raw)
        except StructuredOutputError as e:
            issues = e.issues
            logger.info(f"🔧 JSON_CALL: {step} attempt {attempt + 1} invalid, repairing: {e}")

        try:
            repaired = await _repair_json(
                client, model_cls, raw, max_tokens, model, tracking, validation_issues=issues
            )
            return _validate(model_cls, repaired)
        except (StructuredOutputError, LLMError) as e:
            logger.warning(f"⚠️ JSON_CALL: {step} repair failed on attempt {attempt + 1}: {e}")
            last_error = e if isinstance(e, StructuredOutputError) else StructuredOutputError(str(e))

    raise last_error or StructuredOutputError("Failed to generate valid JSON.")
