from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path

CAPABILITIES = ("text", "image", "speech", "transcription")

# Credits per 1,000 tokens (input + output).
_DEFAULT_TEXT_RATES = {
    "gpt-4": "30",
    "gpt-4-turbo": "20",
    "gpt-4o": "15",
    "gpt-3.5-turbo": "2",
    "claude-3-opus": "30",
    "claude-3-sonnet": "15",
    "claude-3-haiku": "5",
    "claude-3-5-sonnet": "15",
    "gemini-pro": "10",
    "gemini-1.5-pro": "15",
    "gemini-1.5-flash": "5",
    "mistral-large": "20",
    "mistral-medium": "10",
    "mistral-small": "5",
}

# Credits per image, by output size.
_DEFAULT_IMAGE_SIZES = {
    "256x256": "10",
    "512x512": "20",
    "1024x1024": "40",
    "1792x1024": "60",
    "1024x1792": "60",
}
_DEFAULT_IMAGE_MODELS = ("dall-e-2", "dall-e-3", "stable-diffusion-xl")

# Credits per 1,000 characters.
_DEFAULT_SPEECH_MODELS = {"tts-1": "5", "tts-1-hd": "10", "eleven-multilingual-v2": "8"}

# Credits per audio minute.
_DEFAULT_TRANSCRIPTION_MODELS = {"whisper-1": "3"}


@dataclass(frozen=True)
class ModelPrice:
    model: str
    capability: str
    provider: str = ""
    rate: Decimal = Decimal("0")
    image_sizes: dict[str, Decimal] = field(default_factory=dict)


@dataclass(frozen=True)
class PricingTable:
    models: dict[str, ModelPrice]
    source: str

    def get(self, model: str) -> ModelPrice | None:
        return self.models.get((model or "").strip())


def _parse_decimal(value) -> Decimal | None:
    if value is None:
        return None
    try:
        parsed = Decimal(str(value))
    except Exception:
        return None
    if not parsed.is_finite() or parsed < 0:
        return None
    return parsed


def _provider_for(model: str) -> str:
    if model.startswith(("gpt-", "dall-e", "tts-", "whisper")):
        return "openai"
    if model.startswith("claude"):
        return "anthropic"
    if model.startswith("gemini"):
        return "google"
    if model.startswith("mistral"):
        return "mistral"
    if model.startswith("eleven"):
        return "elevenlabs"
    if model.startswith("stable-diffusion"):
        return "stability"
    return ""


def default_pricing() -> PricingTable:
    models: dict[str, ModelPrice] = {}
    for model, rate in _DEFAULT_TEXT_RATES.items():
        models[model] = ModelPrice(model=model, capability="text", provider=_provider_for(model), rate=Decimal(rate))
    sizes = {size: Decimal(credits) for size, credits in _DEFAULT_IMAGE_SIZES.items()}
    for model in _DEFAULT_IMAGE_MODELS:
        models[model] = ModelPrice(model=model, capability="image", provider=_provider_for(model), image_sizes=sizes)
    for model, rate in _DEFAULT_SPEECH_MODELS.items():
        models[model] = ModelPrice(model=model, capability="speech", provider=_provider_for(model), rate=Decimal(rate))
    for model, rate in _DEFAULT_TRANSCRIPTION_MODELS.items():
        models[model] = ModelPrice(
            model=model,
            capability="transcription",
            provider=_provider_for(model),
            rate=Decimal(rate),
        )
    return PricingTable(models=models, source="default")


def _parse_entry(model: str, entry: dict) -> ModelPrice:
    capability = str(entry.get("capability") or "").strip().lower()
    if capability not in CAPABILITIES:
        raise ValueError(f"Pricing entry {model!r} has invalid capability {capability!r}")
    provider = str(entry.get("provider") or _provider_for(model))
    if capability == "image":
        raw_sizes = entry.get("sizes")
        if not isinstance(raw_sizes, dict) or not raw_sizes:
            raise ValueError(f"Pricing entry {model!r} needs a non-empty 'sizes' map")
        sizes: dict[str, Decimal] = {}
        for size, credits in raw_sizes.items():
            parsed = _parse_decimal(credits)
            if parsed is None:
                raise ValueError(f"Pricing entry {model!r} has invalid credits for size {size!r}")
            sizes[str(size)] = parsed
        return ModelPrice(model=model, capability=capability, provider=provider, image_sizes=sizes)
    rate = _parse_decimal(entry.get("rate"))
    if rate is None:
        raise ValueError(f"Pricing entry {model!r} has invalid rate {entry.get('rate')!r}")
    return ModelPrice(model=model, capability=capability, provider=provider, rate=rate)


def load_pricing(path: Path | None, *, replace: bool = False) -> PricingTable:
    """Load the pricing table, optionally layering a JSON file over the defaults.

    The file maps model ids to entries such as
    ``{"capability": "text", "rate": "12"}`` or
    ``{"capability": "image", "sizes": {"1024x1024": "40"}}``. A top-level
    ``"replace": true`` drops the built-in table instead of extending it.
    """
    base = default_pricing()
    if path is None:
        return base

    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"Pricing file {path} must contain a JSON object")
    replace = bool(payload.pop("replace", replace))
    raw_models = payload.get("models", payload)
    if not isinstance(raw_models, dict):
        raise ValueError(f"Pricing file {path} has no model map")

    models = {} if replace else dict(base.models)
    for model, entry in raw_models.items():
        if not isinstance(entry, dict):
            raise ValueError(f"Pricing entry {model!r} must be an object")
        models[str(model)] = _parse_entry(str(model), entry)
    return PricingTable(models=models, source=str(path))
