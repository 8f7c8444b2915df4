"""
Token counting and usage extraction.

Reads model identity and token counts out of provider responses without
depending on any provider SDK. Responses may be plain dicts (REST payloads)
or SDK objects exposing the same names as attributes.
"""

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence, Tuple

USAGE_CONTAINER_FIELDS = ("usage", "usage_metadata", "usageMetadata")
RESPONSE_MODEL_FIELDS = ("model", "model_version", "modelVersion")
REQUEST_MODEL_FIELDS = ("model", "model_id", "modelId")


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Contains exact token counts without estimation or model-specific logic.
    """
    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class CallUsage:
    """Model identity plus token usage extracted from one response."""
    model: str
    usage: TokenUsage


def read_field(source: Any, name: str) -> Any:
    """Read ``name`` from a mapping key or an attribute, None if absent."""
    if source is None:
        return None
    if isinstance(source, Mapping):
        return source.get(name)
    return getattr(source, name, None)


def _as_count(value: Any) -> Optional[int]:
    # bool is an int subclass; SDK mocks and None fall through too
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value != value or value in (float("inf"), float("-inf")):
        return None
    return int(value)


def _first_count(source: Any, names: Sequence[str]) -> Optional[int]:
    for name in names:
        count = _as_count(read_field(source, name))
        if count is not None:
            return count
    return None


@dataclass(frozen=True)
class TokenExtractionStrategy:
    """Named way of reading input/output counts off a usage object."""
    name: str
    input_fields: Tuple[str, ...]
    output_fields: Tuple[str, ...]

    def extract(self, usage: Any) -> Optional[TokenUsage]:
        input_tokens = _first_count(usage, self.input_fields)
        output_tokens = _first_count(usage, self.output_fields)
        if input_tokens is None and output_tokens is None:
            return None
        input_tokens = input_tokens or 0
        output_tokens = output_tokens or 0
        if input_tokens <= 0 and output_tokens <= 0:
            return None
        return TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)


@dataclass(frozen=True)
class TotalOnlyStrategy:
    """Fallback that books a bare total as input tokens."""
    name: str
    total_fields: Tuple[str, ...]

    def extract(self, usage: Any) -> Optional[TokenUsage]:
        total = _first_count(usage, self.total_fields)
        if total is None or total <= 0:
            return None
        return TokenUsage(input_tokens=total, output_tokens=0)


# Tried in order; the first strategy returning usage wins
DEFAULT_STRATEGIES = (
    TokenExtractionStrategy("prompt-completion", ("prompt_tokens",), ("completion_tokens",)),
    TokenExtractionStrategy("input-output", ("input_tokens",), ("output_tokens",)),
    TokenExtractionStrategy("gemini", ("prompt_token_count",), ("candidates_token_count",)),
    TokenExtractionStrategy("gemini-rest", ("promptTokenCount",), ("candidatesTokenCount",)),
    TokenExtractionStrategy("bedrock", ("inputTokenCount", "inputTokens"), ("outputTokenCount", "outputTokens")),
    TotalOnlyStrategy("total", ("total_tokens", "totalTokenCount", "total_token_count", "totalTokens")),
)


def model_from_request(args: Sequence[Any], kwargs: Mapping[str, Any]) -> Optional[str]:
    """Find the requested model in call arguments.

    Checks keyword arguments first, then a dict or object passed as the
    first positional argument.
    """
    for name in REQUEST_MODEL_FIELDS:
        value = kwargs.get(name)
        if isinstance(value, str) and value:
            return value

    if not args or args[0] is None or isinstance(args[0], (str, bytes, int, float)):
        return None

    for name in REQUEST_MODEL_FIELDS:
        value = read_field(args[0], name)
        if isinstance(value, str) and value:
            return value
    return None


def extract_call_usage(
    response: Any,
    fallback_model: Optional[str] = None,
    strategies: Sequence[Any] = DEFAULT_STRATEGIES,
) -> Optional[CallUsage]:
    """Extract model and token usage from a provider response.

    Args:
        response: Provider response object or dict
        fallback_model: Model to use when the response does not name one
        strategies: Extraction strategies to try in order

    Returns:
        CallUsage, or None if the response carries no recognizable usage
    """
    if response is None or isinstance(response, (str, bytes, int, float, bool)):
        return None

    model = None
    for name in RESPONSE_MODEL_FIELDS:
        value = read_field(response, name)
        if isinstance(value, str) and value:
            model = value
            break
    model = model or fallback_model
    if not model:
        return None

    for name in USAGE_CONTAINER_FIELDS:
        usage = read_field(response, name)
        if usage is None:
            continue
        for strategy in strategies:
            token_usage = strategy.extract(usage)
            if token_usage is not None:
                return CallUsage(model=model, usage=token_usage)

    return None
