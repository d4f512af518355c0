"""
Configuration management and loading.

Handles credit pricing, daily-spend and settlement settings.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from ai_credit_ledger.core.pricing import ModelPrice, PricingTable


def _default_resolution_multipliers() -> Dict[str, Decimal]:
    return {"1K": Decimal("1.0"), "2K": Decimal("3.5"), "4K": Decimal("6.5")}


@dataclass(frozen=True)
class CreditConfig:
    """Credit unit and markup over provider prices."""
    credit_usd: Decimal = Decimal("0.01")  # 1 credit = 1 cent
    premium_multiplier: Decimal = Decimal("1.25")  # 25% over provider price

    def __post_init__(self):
        if self.credit_usd <= 0:
            raise ValueError("credit_usd must be > 0")
        if self.premium_multiplier < 1:
            raise ValueError("premium_multiplier must be >= 1")


@dataclass(frozen=True)
class DailySpendConfig:
    """Default per-account daily spend ceiling."""
    default_limit_usd: float = 5.0

    def __post_init__(self):
        if self.default_limit_usd <= 0:
            raise ValueError("default_limit_usd must be > 0")


@dataclass(frozen=True)
class ChatConfig:
    """Reservation sizing for streaming chat."""
    estimated_input_tokens: int = 500
    estimated_output_tokens: int = 1000
    max_reserve_credits: int = 50
    minimum_credits: int = 1

    def __post_init__(self):
        if self.estimated_input_tokens < 0 or self.estimated_output_tokens < 0:
            raise ValueError("estimated token counts must be >= 0")
        if self.max_reserve_credits <= 0:
            raise ValueError("max_reserve_credits must be > 0")
        if self.minimum_credits < 0:
            raise ValueError("minimum_credits must be >= 0")


@dataclass(frozen=True)
class ImageConfig:
    """Reservation sizing for image generation."""
    # Tuned against one provider's under-reported prices; not a derived constant
    conservative_multiplier: Decimal = Decimal("35")
    resolution_multipliers: Dict[str, Decimal] = field(default_factory=_default_resolution_multipliers)
    resolution_supported_prefixes: Tuple[str, ...] = ("google/gemini",)
    aspect_ratios: Tuple[str, ...] = ("16:9", "21:9", "3:2")

    def __post_init__(self):
        if self.conservative_multiplier < 1:
            raise ValueError("conservative_multiplier must be >= 1")
        if not self.resolution_multipliers:
            raise ValueError("resolution_multipliers cannot be empty")
        for name, value in self.resolution_multipliers.items():
            if value <= 0:
                raise ValueError(f"resolution multiplier for {name} must be > 0")
        if not self.aspect_ratios:
            raise ValueError("aspect_ratios cannot be empty")


@dataclass(frozen=True)
class ScenePlannerConfig:
    """Optional planning call made before an image generation."""
    enabled: bool = False
    model: str = "anthropic/claude-3-haiku"
    estimated_tokens: int = 300
    timeout_seconds: float = 10.0

    def __post_init__(self):
        if self.estimated_tokens <= 0:
            raise ValueError("estimated_tokens must be > 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


@dataclass(frozen=True)
class LedgerConfig:
    """Complete credit ledger configuration."""
    credits: CreditConfig = field(default_factory=CreditConfig)
    daily_spend: DailySpendConfig = field(default_factory=DailySpendConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)
    image: ImageConfig = field(default_factory=ImageConfig)
    scene_planner: ScenePlannerConfig = field(default_factory=ScenePlannerConfig)
    models: Dict[str, ModelPrice] = field(default_factory=dict)

    def pricing_table(self) -> PricingTable:
        """Static pricing oracle over the configured ``models`` table."""
        return PricingTable(dict(self.models))


def default_config() -> LedgerConfig:
    """Built-in defaults, used when no configuration file is given."""
    return LedgerConfig()


_SECTION_KEYS = {
    'credits': {'credit_usd', 'premium_multiplier'},
    'daily_spend': {'default_limit_usd'},
    'chat': {
        'estimated_input_tokens', 'estimated_output_tokens',
        'max_reserve_credits', 'minimum_credits',
    },
    'image': {
        'conservative_multiplier', 'resolution_multipliers',
        'resolution_supported_prefixes', 'aspect_ratios',
    },
    'scene_planner': {'enabled', 'model', 'estimated_tokens', 'timeout_seconds'},
}

_MODEL_KEYS = {'prompt', 'completion', 'image'}


def load_ledger_config(path: str) -> LedgerConfig:
    """Load and validate ledger configuration from YAML file.

    Every section is optional and falls back to the built-in defaults, but
    unknown keys and malformed values are rejected so that a typo can never
    silently change what users are charged.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated LedgerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Ledger config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = set(_SECTION_KEYS) | {'models'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTION_KEYS}

    credits_data = sections['credits']
    credits = CreditConfig(**{
        key: _decimal(value, f"credits.{key}") for key, value in credits_data.items()
    })

    daily_data = sections['daily_spend']
    daily_spend = DailySpendConfig(**{
        key: _number(value, f"daily_spend.{key}") for key, value in daily_data.items()
    })

    chat_data = sections['chat']
    chat = ChatConfig(**{
        key: _integer(value, f"chat.{key}") for key, value in chat_data.items()
    })

    image = _parse_image_config(sections['image'])

    planner_data = sections['scene_planner']
    planner_kwargs: Dict[str, Any] = {}
    for key, value in planner_data.items():
        if key == 'enabled':
            if not isinstance(value, bool):
                raise ValueError("'scene_planner.enabled' must be a boolean")
            planner_kwargs[key] = value
        elif key == 'model':
            planner_kwargs[key] = _string(value, f"scene_planner.{key}")
        elif key == 'timeout_seconds':
            planner_kwargs[key] = _number(value, f"scene_planner.{key}")
        else:
            planner_kwargs[key] = _integer(value, f"scene_planner.{key}")
    scene_planner = ScenePlannerConfig(**planner_kwargs)

    models_data = raw_config.get('models') or {}
    if not isinstance(models_data, dict):
        raise ValueError("'models' must be a dictionary")
    models = {
        str(model_id): _parse_model_price(model_data, f"models.{model_id}")
        for model_id, model_data in models_data.items()
    }

    return LedgerConfig(
        credits=credits,
        daily_spend=daily_spend,
        chat=chat,
        image=image,
        scene_planner=scene_planner,
        models=models,
    )


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _parse_image_config(data: Dict) -> ImageConfig:
    kwargs: Dict[str, Any] = {}
    for key, value in data.items():
        path = f"image.{key}"
        if key == 'conservative_multiplier':
            kwargs[key] = _decimal(value, path)
        elif key == 'resolution_multipliers':
            if not isinstance(value, dict):
                raise ValueError(f"'{path}' must be a dictionary")
            kwargs[key] = {
                str(name): _decimal(multiplier, f"{path}.{name}")
                for name, multiplier in value.items()
            }
        else:
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise ValueError(f"'{path}' must be a list of strings")
            kwargs[key] = tuple(value)
    return ImageConfig(**kwargs)


def _parse_model_price(data: Any, path: str) -> ModelPrice:
    """Parse one pricing table entry.

    Args:
        data: Model pricing data (USD per 1M tokens / per image)
        path: Path for error messages

    Returns:
        Validated ModelPrice

    Raises:
        ValueError: If the entry is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    unknown_keys = set(data.keys()) - _MODEL_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
    if not data:
        raise ValueError(f"'{path}' must define at least one price")
    if ('prompt' in data) != ('completion' in data):
        raise ValueError(f"'{path}' must define both 'prompt' and 'completion'")

    prices = {key: _decimal(value, f"{path}.{key}") for key, value in data.items()}
    for key, value in prices.items():
        if value < 0:
            raise ValueError(f"'{path}.{key}' must be >= 0")

    return ModelPrice(
        prompt_per_million=prices.get('prompt'),
        completion_per_million=prices.get('completion'),
        per_image=prices.get('image'),
    )


def _decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if not result.is_finite():
        raise ValueError(f"'{path}' must be finite")
    return result


def _number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{path}' must be a number")
    return float(value)


def _integer(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{path}' must be an integer")
    return value


def _string(value: Any, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{path}' must be a non-empty string")
    return value


def load_config_or_default(path: Optional[str]) -> LedgerConfig:
    """Load ``path`` when given, otherwise return the built-in defaults."""
    return load_ledger_config(path) if path else default_config()
