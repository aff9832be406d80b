from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal

from server.creditmeter.ledger.errors import CreditValidationError, UnknownModelError
from server.creditmeter.ledger.pricing import CAPABILITIES, ModelPrice, PricingTable

# Rough characters-per-token ratio used when only prompt text is available.
_CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class Estimate:
    model: str
    capability: str
    provider: str
    credits: int
    basis: dict


def estimate_tokens(text: str) -> int:
    if not isinstance(text, str):
        raise CreditValidationError("Text must be a string", "INVALID_TYPE")
    return math.ceil(len(text) / _CHARS_PER_TOKEN)


def _non_negative_int(params: dict, key: str, *, default: int | None = None) -> int:
    raw = params.get(key, default)
    if raw is None:
        raise CreditValidationError(f"Missing parameter {key!r}", "MISSING_PARAMETER")
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise CreditValidationError(f"Parameter {key!r} must be an integer", "NOT_INTEGER")
    if raw < 0:
        raise CreditValidationError(f"Parameter {key!r} cannot be negative", "NEGATIVE")
    return raw


def _non_negative_number(params: dict, key: str) -> Decimal:
    raw = params.get(key)
    if raw is None:
        raise CreditValidationError(f"Missing parameter {key!r}", "MISSING_PARAMETER")
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise CreditValidationError(f"Parameter {key!r} must be a number", "INVALID_TYPE")
    value = Decimal(str(raw))
    if not value.is_finite():
        raise CreditValidationError(f"Parameter {key!r} must be finite", "INFINITE_VALUE")
    if value < 0:
        raise CreditValidationError(f"Parameter {key!r} cannot be negative", "NEGATIVE")
    return value


def _resolve(pricing: PricingTable, model: str, capability: str | None) -> ModelPrice:
    price = pricing.get(model)
    if price is None:
        raise UnknownModelError(model, capability)
    if capability is not None:
        capability = capability.strip().lower()
        if capability not in CAPABILITIES or capability != price.capability:
            raise UnknownModelError(model, capability)
    return price


def _raw_credits(price: ModelPrice, params: dict, *, for_estimate: bool) -> tuple[Decimal, dict]:
    if price.capability == "text":
        if for_estimate:
            if "input_tokens" in params:
                input_tokens = _non_negative_int(params, "input_tokens")
            else:
                input_tokens = estimate_tokens(params.get("prompt") or "")
            output_tokens = _non_negative_int(params, "max_output_tokens", default=0)
        else:
            if "total_tokens" in params and "prompt_tokens" not in params:
                input_tokens = _non_negative_int(params, "total_tokens")
                output_tokens = 0
            else:
                input_tokens = _non_negative_int(params, "prompt_tokens", default=0)
                output_tokens = _non_negative_int(params, "completion_tokens", default=0)
        tokens = input_tokens + output_tokens
        raw = Decimal(tokens) / Decimal(1000) * price.rate
        return raw, {"input_tokens": input_tokens, "output_tokens": output_tokens, "rate_per_1k": str(price.rate)}

    if price.capability == "image":
        size = str(params.get("size") or "").strip()
        per_image = price.image_sizes.get(size)
        if per_image is None:
            raise CreditValidationError(f"Unknown image size: {size!r}", "UNKNOWN_IMAGE_SIZE")
        count = _non_negative_int(params, "count", default=1)
        return per_image * count, {"size": size, "count": count, "credits_per_image": str(per_image)}

    if price.capability == "speech":
        if "characters" in params:
            characters = _non_negative_int(params, "characters")
        else:
            text = params.get("text") or ""
            if not isinstance(text, str):
                raise CreditValidationError("Parameter 'text' must be a string", "INVALID_TYPE")
            characters = len(text)
        raw = Decimal(characters) / Decimal(1000) * price.rate
        return raw, {"characters": characters, "rate_per_1k_chars": str(price.rate)}

    seconds = _non_negative_number(params, "duration_seconds")
    raw = seconds / Decimal(60) * price.rate
    return raw, {"duration_seconds": str(seconds), "rate_per_minute": str(price.rate)}


def _round_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_CEILING))


def estimate(pricing: PricingTable, *, model: str, capability: str, params: dict | None = None) -> Estimate:
    """Conservative whole-credit upper bound for a request, never below one credit."""
    price = _resolve(pricing, model, capability)
    raw, basis = _raw_credits(price, dict(params or {}), for_estimate=True)
    credits = max(1, _round_up(raw))
    return Estimate(
        model=price.model,
        capability=price.capability,
        provider=price.provider,
        credits=credits,
        basis=basis,
    )


def credits_for_usage(pricing: PricingTable, *, model: str, usage: dict) -> int:
    """Convert provider-reported usage into credits using the estimator's table."""
    price = _resolve(pricing, model, None)
    raw, _basis = _raw_credits(price, dict(usage or {}), for_estimate=False)
    return _round_up(raw)
