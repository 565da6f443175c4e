"""AI model pricing, USD per 1K tokens.

Used to estimate cost when an execution reports token counts without an
explicit cost.
"""

from typing import NamedTuple, Optional


class Pricing(NamedTuple):
    input: float
    output: float


# Fallback for models missing from the table.
AVERAGE_PRICING = Pricing(input=0.002, output=0.006)

AI_PRICING: dict[str, Pricing] = {
    # OpenAI
    "gpt-4o": Pricing(0.0025, 0.010),
    "gpt-4o-2024-05-13": Pricing(0.005, 0.015),
    "chatgpt-4o-latest": Pricing(0.005, 0.015),
    "gpt-4o-mini": Pricing(0.00015, 0.0006),
    "o1": Pricing(0.015, 0.060),
    "o1-preview": Pricing(0.015, 0.060),
    "o1-mini": Pricing(0.003, 0.012),
    "gpt-4-turbo": Pricing(0.01, 0.03),
    "gpt-4-turbo-preview": Pricing(0.01, 0.03),
    "gpt-4-vision-preview": Pricing(0.01, 0.03),
    "gpt-4": Pricing(0.03, 0.06),
    "gpt-4-0613": Pricing(0.03, 0.06),
    "gpt-4-32k": Pricing(0.06, 0.12),
    "gpt-3.5-turbo": Pricing(0.0005, 0.0015),
    "gpt-3.5-turbo-1106": Pricing(0.001, 0.002),
    "gpt-3.5-turbo-instruct": Pricing(0.0015, 0.002),

    # Anthropic
    "claude-opus-4.1": Pricing(0.015, 0.075),
    "claude-opus-4": Pricing(0.015, 0.075),
    "claude-sonnet-4.5": Pricing(0.003, 0.015),
    "claude-sonnet-4": Pricing(0.003, 0.015),
    "claude-haiku-4.5": Pricing(0.001, 0.005),
    "claude-3-5-sonnet": Pricing(0.003, 0.015),
    "claude-3-5-sonnet-latest": Pricing(0.003, 0.015),
    "claude-3-5-haiku": Pricing(0.0008, 0.004),
    "claude-3-5-haiku-latest": Pricing(0.0008, 0.004),
    "claude-3-opus": Pricing(0.015, 0.075),
    "claude-3-sonnet": Pricing(0.003, 0.015),
    "claude-3-haiku": Pricing(0.00025, 0.00125),
    "claude-2.1": Pricing(0.008, 0.024),
    "claude-2": Pricing(0.008, 0.024),
    "claude-instant": Pricing(0.0008, 0.0024),

    # Google
    "gemini-2.0-flash-exp": Pricing(0.0, 0.0),
    "gemini-1.5-pro": Pricing(0.00125, 0.005),
    "gemini-1.5-flash": Pricing(0.000075, 0.0003),
    "gemini-1.0-pro": Pricing(0.0005, 0.0015),
    "gemini-pro": Pricing(0.0005, 0.0015),

    # Azure OpenAI
    "azure-gpt-4o": Pricing(0.0025, 0.010),
    "azure-gpt-4": Pricing(0.03, 0.06),
    "azure-gpt-35-turbo": Pricing(0.0005, 0.0015),
}

# Dated snapshots and aliases that share a table entry.
_ALIASES = {
    "gpt-4o-2024-11-20": "gpt-4o",
    "gpt-4o-2024-08-06": "gpt-4o",
    "gpt-4o-mini-2024-07-18": "gpt-4o-mini",
    "o1-2024-12-17": "o1",
    "o1-preview-2024-09-12": "o1-preview",
    "o1-mini-2024-09-12": "o1-mini",
    "gpt-4-turbo-2024-04-09": "gpt-4-turbo",
    "gpt-4-0125-preview": "gpt-4-turbo-preview",
    "gpt-4-1106-preview": "gpt-4-turbo-preview",
    "gpt-3.5-turbo-0125": "gpt-3.5-turbo",
    "opus-4.1": "claude-opus-4.1",
    "opus-4": "claude-opus-4",
    "sonnet-4.5": "claude-sonnet-4.5",
    "sonnet-4": "claude-sonnet-4",
    "haiku-4.5": "claude-haiku-4.5",
    "claude-3-5-sonnet-20241022": "claude-3-5-sonnet",
    "claude-3-5-sonnet-20240620": "claude-3-5-sonnet",
    "claude-sonnet-3.7": "claude-3-5-sonnet",
    "claude-3-5-haiku-20241022": "claude-3-5-haiku",
    "claude-haiku-3.5": "claude-3-5-haiku",
    "claude-3-opus-20240229": "claude-3-opus",
    "claude-3-opus-latest": "claude-3-opus",
    "claude-3-sonnet-20240229": "claude-3-sonnet",
    "claude-3-haiku-20240307": "claude-3-haiku",
    "claude-2.0": "claude-2",
    "claude-instant-1.2": "claude-instant",
    "gemini-1.5-pro-latest": "gemini-1.5-pro",
    "gemini-1.5-flash-latest": "gemini-1.5-flash",
    "gemini-pro-vision": "gemini-pro",
}


def normalize_model_name(model: Optional[str]) -> Optional[str]:
    """Lower-case, strip, and resolve known aliases. ``None`` for empty input."""
    if not model:
        return None
    normalized = model.strip().lower()
    if normalized.startswith("models/"):
        normalized = normalized[len("models/"):]
    return _ALIASES.get(normalized, normalized)


def get_model_pricing(model: Optional[str]) -> Optional[Pricing]:
    normalized = normalize_model_name(model)
    return AI_PRICING.get(normalized) if normalized else None


def calculate_cost(input_tokens: int, output_tokens: int, model: Optional[str]) -> float:
    """Estimated USD cost. Unknown models use :data:`AVERAGE_PRICING`."""
    pricing = get_model_pricing(model) or AVERAGE_PRICING
    return (input_tokens / 1000) * pricing.input + (output_tokens / 1000) * pricing.output
