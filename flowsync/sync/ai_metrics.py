"""Extract AI token usage and cost from raw execution data.

Execution payloads carry per-node run output under
``data.resultData.runData[<node>][<run>].data``. AI nodes report usage in
provider-specific shapes; each recognised shape is normalised to input,
output and total token counts. Totals are computed from scratch on every
call, so storing the result overwrites earlier values instead of adding to
them.

Node runs are counted whether or not the run itself succeeded: a failed
call may still have been billed.
"""

import logging
from typing import Any, NamedTuple, Optional

from flowsync.sync.pricing import calculate_cost, normalize_model_name
from flowsync.types import AIMetrics, NodeUsage

logger = logging.getLogger(__name__)

_OUTPUT_CHANNELS = ("main", "ai_languageModel")
_MAX_DEPTH = 4


class TokenUsage(NamedTuple):
    total: int
    input: int
    output: int
    model: Optional[str]
    provider: str
    node_type: str
    cost: Optional[float]


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _explicit_cost(usage: dict) -> Optional[float]:
    for field in ("cost", "estimatedCost", "total_cost"):
        value = usage.get(field)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    return None


def extract_token_usage(payload: Any, depth: int = 0) -> Optional[TokenUsage]:
    """Recognise one usage shape in a node output ``json`` object."""
    if not isinstance(payload, dict) or depth > _MAX_DEPTH:
        return None
    model = normalize_model_name(payload.get("model"))
    usage = payload.get("usage")

    if isinstance(usage, dict) and "input_tokens" in usage:
        # Anthropic
        input_tokens = _int(usage.get("input_tokens"))
        output_tokens = _int(usage.get("output_tokens"))
        return TokenUsage(input_tokens + output_tokens, input_tokens, output_tokens,
                          model, "anthropic", "anthropic", _explicit_cost(usage))

    if isinstance(usage, dict):
        # OpenAI
        input_tokens = _int(usage.get("prompt_tokens"))
        output_tokens = _int(usage.get("completion_tokens"))
        total = _int(usage.get("total_tokens")) or input_tokens + output_tokens
        return TokenUsage(total, input_tokens, output_tokens,
                          model, "openai", "openai", _explicit_cost(usage))

    response = payload.get("response")
    if isinstance(response, dict) and isinstance(response.get("tokenUsage"), dict):
        # LangChain agent output
        usage = response["tokenUsage"]
        input_tokens = _int(usage.get("promptTokens"))
        output_tokens = _int(usage.get("completionTokens"))
        total = _int(usage.get("totalTokens")) or input_tokens + output_tokens
        return TokenUsage(total, input_tokens, output_tokens,
                          model or normalize_model_name(response.get("model")),
                          "openai", "ai-agent", _explicit_cost(usage))

    if isinstance(payload.get("tokenUsage"), dict):
        usage = payload["tokenUsage"]
        input_tokens = _int(usage.get("promptTokens"))
        output_tokens = _int(usage.get("completionTokens"))
        total = _int(usage.get("totalTokens")) or input_tokens + output_tokens
        return TokenUsage(total, input_tokens, output_tokens,
                          model, "openai", "openai", _explicit_cost(usage))

    if isinstance(payload.get("usageMetadata"), dict):
        # Google AI
        usage = payload["usageMetadata"]
        input_tokens = _int(usage.get("promptTokenCount"))
        output_tokens = _int(usage.get("candidatesTokenCount"))
        total = _int(usage.get("totalTokenCount")) or input_tokens + output_tokens
        return TokenUsage(total, input_tokens, output_tokens,
                          model, "google", "google-ai", _explicit_cost(usage))

    for nested in ("response", "data"):
        if isinstance(payload.get(nested), dict):
            return extract_token_usage(payload[nested], depth + 1)
    return None


def _node_usage(run: dict) -> Optional[TokenUsage]:
    data = run.get("data") or {}
    for channel in _OUTPUT_CHANNELS:
        outputs = data.get(channel) or []
        first = outputs[0] if outputs else None
        for output in first or []:
            if isinstance(output, dict) and output.get("json") is not None:
                found = extract_token_usage(output["json"])
                if found is not None:
                    return found
    return None


def extract_ai_metrics(execution_data: Any) -> AIMetrics:
    """Sum token usage and cost over every AI node run in one execution.

    Args:
        execution_data: the execution payload as returned with ``includeData``.
    """
    metrics = AIMetrics()
    if not isinstance(execution_data, dict):
        return metrics
    result_data = (execution_data.get("data") or {}).get("resultData") or {}
    run_data = result_data.get("runData") or {}

    for node_name, runs in run_data.items():
        if not isinstance(runs, list):
            continue
        for run in runs:
            if not isinstance(run, dict) or not run.get("data"):
                continue
            usage = _node_usage(run)
            if usage is None:
                continue
            cost = usage.cost if usage.cost is not None else calculate_cost(usage.input, usage.output, usage.model)
            metrics.total_tokens += usage.total
            metrics.input_tokens += usage.input
            metrics.output_tokens += usage.output
            metrics.ai_cost += cost
            if metrics.ai_provider is None:
                metrics.ai_provider = usage.provider
            if metrics.ai_model is None and usage.model:
                metrics.ai_model = usage.model
            if usage.total > 0:
                metrics.node_breakdown.append(NodeUsage(
                    node_name=node_name,
                    node_type=usage.node_type,
                    tokens=usage.total,
                    cost=cost,
                    model=usage.model,
                ))
    if metrics.total_tokens:
        logger.debug("Extracted %d tokens ($%.6f) across %d AI node runs",
                     metrics.total_tokens, metrics.ai_cost, len(metrics.node_breakdown))
    return metrics
