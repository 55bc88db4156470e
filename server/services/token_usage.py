"""Token estimation, pricing, and credit calculation utilities."""

from __future__ import annotations

import logging
import math

import tiktoken

logger = logging.getLogger(__name__)

# Pricing table: (model_prefix, input_cost_per_1M_tokens, output_cost_per_1M_tokens)
# Ordered longest-prefix-first so more specific prefixes match before generic ones.
MODEL_PRICING: list[tuple[str, float, float]] = [
    # Anthropic
    ("anthropic/claude-3.5-haiku", 0.80, 4.00),
    ("anthropic/claude-3.5-sonnet", 3.00, 15.00),
    ("anthropic/claude-3-haiku", 0.25, 1.25),
    ("anthropic/claude-3-opus", 15.00, 75.00),
    ("anthropic/claude-sonnet-4", 3.00, 15.00),
    ("anthropic/claude-opus-4", 15.00, 75.00),
    # OpenAI
    ("openai/gpt-4o-mini", 0.15, 0.60),
    ("openai/gpt-4o", 2.50, 10.00),
    ("openai/gpt-4-turbo", 10.00, 30.00),
    ("openai/o3-mini", 1.10, 4.40),
    # Google
    ("google/gemini-flash-1.5", 0.075, 0.30),
    ("google/gemini-pro-1.5", 1.25, 5.00),
    # Meta
    ("meta-llama/llama-3.1-8b-instruct", 0.055, 0.055),
    ("meta-llama/llama-3.1-70b-instruct", 0.35, 0.40),
]

# Unknown models are billed like the cheapest known model.
CHEAPEST_PRICING: tuple[float, float] = min(
    ((i, o) for _, i, o in MODEL_PRICING), key=lambda p: p[0] + p[1]
)

OUTPUT_INPUT_RATIO = 1.5
CREDITS_PER_USD = 100
MIN_CREDITS = 1

# ~4 tokens per message for role/formatting overhead
MESSAGE_OVERHEAD_TOKENS = 4

_encoding = None
_encoding_failed = False


def _get_encoding():
    """Load the cl100k_base encoder once; None if it cannot be loaded."""
    global _encoding, _encoding_failed
    if _encoding is None and not _encoding_failed:
        try:
            _encoding = tiktoken.get_encoding("cl100k_base")
        except Exception:
            # tiktoken fetches BPE files on first use; offline hosts can't
            _encoding_failed = True
            logger.warning("tiktoken encoding unavailable, using character heuristic", exc_info=True)
    return _encoding


def estimate_tokens(text: str) -> int:
    """Approximate token count for *text*."""
    if not text:
        return 0
    encoding = _get_encoding()
    if encoding is None:
        return math.ceil(len(text) / 4)
    return len(encoding.encode(text))


def count_messages_tokens(messages: list[dict]) -> int:
    """Count tokens in a list of chat messages, including per-message overhead."""
    total = 0
    for message in messages:
        total += MESSAGE_OVERHEAD_TOKENS
        total += estimate_tokens(message.get("content") or "")
    return total


def get_model_pricing(model_name: str) -> tuple[float, float]:
    """Return (input_cost_per_1M, output_cost_per_1M) for a model name via prefix match.

    Unknown or empty model names return the cheapest known model's pricing.
    """
    if not model_name:
        return CHEAPEST_PRICING
    lower = model_name.lower()
    for prefix, input_cost, output_cost in MODEL_PRICING:
        if lower.startswith(prefix):
            return (input_cost, output_cost)
    return CHEAPEST_PRICING


def calculate_cost(model_name: str, input_tokens: int, output_tokens: int) -> float:
    """Calculate USD cost for a given model and token counts."""
    input_rate, output_rate = get_model_pricing(model_name)
    return (input_tokens * input_rate + output_tokens * output_rate) / 1_000_000


def cost_to_credits(cost_usd: float) -> int:
    """Convert USD to whole credits (100 per dollar), rounded up, never below 1."""
    return max(MIN_CREDITS, math.ceil(cost_usd * CREDITS_PER_USD))


def estimate_credits(model_name: str, text: str) -> int:
    """Pre-flight credit estimate from the input text alone."""
    input_tokens = estimate_tokens(text)
    output_tokens = math.ceil(input_tokens * OUTPUT_INPUT_RATIO)
    return cost_to_credits(calculate_cost(model_name, input_tokens, output_tokens))


def actual_credits(model_name: str, input_tokens: int, output_tokens: int) -> int:
    """Credits for a completed turn from real token counts."""
    return cost_to_credits(calculate_cost(model_name, input_tokens, output_tokens))
