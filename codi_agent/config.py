"""
Configuration: model presets, loop limits and context tiers.

Loading priority:
  1. Project dir .agent.conf.yml
  2. Git root .agent.conf.yml
  3. Global ~/.codi-agent/config.yml

Environment (.env in ~/.codi-agent and the project dir) is loaded first and
never overrides variables that are already set.
"""

import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv

from .logger import get_logger
from .tools.fallback import FallbackConfig

_log = get_logger(__name__)

CONFIG_DIR = Path.home() / ".codi-agent"
CONFIG_FILE = CONFIG_DIR / "config.yml"
PROJECT_CONFIG_NAME = ".agent.conf.yml"

MAX_ITERATIONS = 2000
MAX_CONSECUTIVE_ERRORS = 3
MAX_OUTPUT_TOKENS = 8192
MAX_MESSAGES = 500


# ── Context tiers ──


@dataclass(frozen=True)
class ContextTier:
    name: str
    min_context: int
    max_context: float
    context_usage_percent: float
    safety_buffer_percent: float
    min_viable_percent: float
    recent_messages_to_keep: int
    recent_tool_results_to_keep: int
    max_immediate_tool_result: int


CONTEXT_TIERS = [
    ContextTier("small", 0, 16_384, 0.75, 0.05, 0.15, 4, 5, 30_000),
    ContextTier("medium", 16_384, 65_536, 0.80, 0.03, 0.10, 8, 10, 75_000),
    ContextTier("large", 65_536, 200_000, 0.85, 0.02, 0.05, 15, 20, 200_000),
    ContextTier("xlarge", 200_000, math.inf, 0.90, 0.015, 0.03, 25, 30, 500_000),
]


@dataclass
class ContextLimits:
    """Token and message limits derived from a model's context window."""
    tier_name: str
    context_window: int
    max_context_tokens: int
    max_output_tokens: int
    safety_buffer: int
    min_viable_context: int
    recent_messages_to_keep: int
    recent_tool_results_to_keep: int
    max_immediate_tool_result: int


def find_tier(context_window: int) -> ContextTier:
    for tier in CONTEXT_TIERS:
        if tier.min_context <= context_window < tier.max_context:
            return tier
    return CONTEXT_TIERS[-1]


def compute_context_config(context_window: int) -> ContextLimits:
    """Scale the compaction ceiling and tail sizes to the context window.

    The ceiling is the usable share of the window minus the output reserve
    and a safety buffer, but never below the tier's minimum viable context.
    """
    tier = find_tier(context_window)
    safety_buffer = math.ceil(context_window * tier.safety_buffer_percent)
    usable = math.floor(context_window * tier.context_usage_percent)
    min_viable = math.ceil(context_window * tier.min_viable_percent)
    max_context = max(usable - MAX_OUTPUT_TOKENS - safety_buffer, min_viable)

    _log.debug(
        "Context config for %d tokens (%s tier): max_context=%d safety=%d min_viable=%d",
        context_window, tier.name, max_context, safety_buffer, min_viable,
    )
    return ContextLimits(
        tier_name=tier.name,
        context_window=context_window,
        max_context_tokens=max_context,
        max_output_tokens=MAX_OUTPUT_TOKENS,
        safety_buffer=safety_buffer,
        min_viable_context=min_viable,
        recent_messages_to_keep=tier.recent_messages_to_keep,
        recent_tool_results_to_keep=tier.recent_tool_results_to_keep,
        max_immediate_tool_result=tier.max_immediate_tool_result,
    )


# ── Configuration metadata and validation ──


@dataclass
class ConfigFieldSpec:
    """Configuration field specification with validation rules."""
    key: str
    field_name: str
    description: str
    value_type: str  # "str", "int", "bool", "float"
    default: Any
    validator: Optional[Callable[[Any], tuple[bool, Any, str]]] = None  # (valid, coerced_value, error_msg)


def _validate_int_range(value: Any, min_val: int, max_val: int) -> tuple[bool, int, str]:
    """Validate integer within range."""
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return False, 0, "Must be an integer"
    if parsed < min_val or parsed > max_val:
        return False, max(min_val, min(max_val, parsed)), f"Must be between {min_val} and {max_val}"
    return True, parsed, ""


def _validate_bool(value: Any) -> tuple[bool, bool, str]:
    """Validate boolean value."""
    if isinstance(value, bool):
        return True, value, ""
    if isinstance(value, str):
        val_lower = value.strip().lower()
        if val_lower in ("1", "true", "yes", "on"):
            return True, True, ""
        if val_lower in ("0", "false", "no", "off"):
            return True, False, ""
    return False, False, "Must be true/false, yes/no, on/off, or 1/0"


def _validate_optional_int(value: Any, min_val: int, max_val: int) -> tuple[bool, Optional[int], str]:
    if value is None or (isinstance(value, str) and value.strip().lower() in ("", "auto", "none")):
        return True, None, ""
    return _validate_int_range(value, min_val, max_val)


CONFIG_FIELDS: Dict[str, ConfigFieldSpec] = {
    "active-model": ConfigFieldSpec(
        key="active-model",
        field_name="active_model",
        description="Currently active model preset name",
        value_type="str",
        default="local",
    ),
    "max-iterations": ConfigFieldSpec(
        key="max-iterations",
        field_name="max_iterations",
        description="Maximum model round-trips per user message",
        value_type="int",
        default=MAX_ITERATIONS,
        validator=lambda v: _validate_int_range(v, 1, 10000),
    ),
    "max-consecutive-errors": ConfigFieldSpec(
        key="max-consecutive-errors",
        field_name="max_consecutive_errors",
        description="Failed tool calls in a row before the loop gives up",
        value_type="int",
        default=MAX_CONSECUTIVE_ERRORS,
        validator=lambda v: _validate_int_range(v, 1, 100),
    ),
    "max-context-tokens": ConfigFieldSpec(
        key="max-context-tokens",
        field_name="max_context_tokens",
        description="Token ceiling that triggers compaction (auto = derived from context window)",
        value_type="int",
        default=None,
        validator=lambda v: _validate_optional_int(v, 500, 10_000_000),
    ),
    "recent-messages-to-keep": ConfigFieldSpec(
        key="recent-messages-to-keep",
        field_name="recent_messages_to_keep",
        description="Messages kept verbatim across compaction (auto = tier default)",
        value_type="int",
        default=None,
        validator=lambda v: _validate_optional_int(v, 1, 1000),
    ),
    "recent-tool-results-to-keep": ConfigFieldSpec(
        key="recent-tool-results-to-keep",
        field_name="recent_tool_results_to_keep",
        description="Tool results kept in full before being digested (auto = tier default)",
        value_type="int",
        default=None,
        validator=lambda v: _validate_optional_int(v, 0, 1000),
    ),
    "max-immediate-tool-result": ConfigFieldSpec(
        key="max-immediate-tool-result",
        field_name="max_immediate_tool_result",
        description="Largest fresh tool result in characters (auto = tier default)",
        value_type="int",
        default=None,
        validator=lambda v: _validate_optional_int(v, 1000, 10_000_000),
    ),
    "max-messages": ConfigFieldSpec(
        key="max-messages",
        field_name="max_messages",
        description="Hard cap on conversation length",
        value_type="int",
        default=MAX_MESSAGES,
        validator=lambda v: _validate_int_range(v, 10, 100_000),
    ),
    "use-tools": ConfigFieldSpec(
        key="use-tools",
        field_name="use_tools",
        description="Send tool definitions to models that support them",
        value_type="bool",
        default=True,
        validator=_validate_bool,
    ),
    "extract-tools-from-text": ConfigFieldSpec(
        key="extract-tools-from-text",
        field_name="extract_tools_from_text",
        description="Parse JSON tool calls out of plain-text replies",
        value_type="bool",
        default=True,
        validator=_validate_bool,
    ),
    "command-timeout": ConfigFieldSpec(
        key="command-timeout",
        field_name="command_timeout",
        description="Shell command timeout in seconds",
        value_type="int",
        default=120,
        validator=lambda v: _validate_int_range(v, 5, 3600),
    ),
    "confirm-timeout": ConfigFieldSpec(
        key="confirm-timeout",
        field_name="confirm_timeout",
        description="Seconds to wait for a confirmation answer (auto = wait forever)",
        value_type="int",
        default=None,
        validator=lambda v: _validate_optional_int(v, 1, 86400),
    ),
    "verbose": ConfigFieldSpec(
        key="verbose",
        field_name="verbose",
        description="Enable verbose debug output",
        value_type="bool",
        default=False,
        validator=_validate_bool,
    ),
}


def validate_config_value(key: str, value: Any) -> tuple[bool, Any, str]:
    """
    Validate a configuration value.

    Returns:
        (is_valid, coerced_value, error_message)
    """
    if key not in CONFIG_FIELDS:
        return False, value, f"Unknown configuration key: {key}"

    spec = CONFIG_FIELDS[key]
    if spec.validator:
        return spec.validator(value)
    if spec.value_type == "int":
        try:
            return True, int(value), ""
        except (TypeError, ValueError):
            return False, spec.default, "Must be an integer"
    if spec.value_type == "bool":
        return _validate_bool(value)
    return True, str(value), ""


@dataclass
class ModelPreset:
    name: str
    provider: str
    model: str
    api_base: Optional[str] = None
    api_key: Optional[str] = None
    api_key_env: Optional[str] = None
    temperature: float = 0.0
    max_tokens: int = 4096
    context_window: int = 128000
    description: str = ""

    def resolve_api_key(self) -> Optional[str]:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        env_map = {
            "openai": "OPENAI_API_KEY", "anthropic": "ANTHROPIC_API_KEY",
            "deepseek": "DEEPSEEK_API_KEY", "gemini": "GEMINI_API_KEY",
        }
        env_var = env_map.get(self.provider)
        return os.environ.get(env_var) if env_var else None

    def get_llm_kwargs(self) -> dict:
        """Keyword arguments for LiteLLMProvider."""
        return {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "context_window": self.context_window,
            "api_base": self.api_base,
            "api_key": self.resolve_api_key(),
        }


@dataclass
class Config:
    active_model: str = "local"
    models: Dict[str, ModelPreset] = field(default_factory=dict)
    max_iterations: int = MAX_ITERATIONS
    max_consecutive_errors: int = MAX_CONSECUTIVE_ERRORS
    max_context_tokens: Optional[int] = None
    recent_messages_to_keep: Optional[int] = None
    recent_tool_results_to_keep: Optional[int] = None
    max_immediate_tool_result: Optional[int] = None
    max_messages: int = MAX_MESSAGES
    auto_approve: Union[bool, List[str]] = False
    dangerous_patterns: List[Dict[str, str]] = field(default_factory=list)
    fallback: FallbackConfig = field(default_factory=FallbackConfig)
    use_tools: bool = True
    extract_tools_from_text: bool = True
    command_timeout: int = 120
    confirm_timeout: Optional[int] = None
    verbose: bool = False
    project_root: Optional[str] = None
    _config_source: str = ""

    @classmethod
    def load(cls, project_dir: str = ".") -> "Config":
        config = cls()
        project_path = Path(project_dir).resolve()

        for env_path in [CONFIG_DIR / ".env", project_path / ".env"]:
            if env_path.exists():
                load_dotenv(env_path, override=False)

        git_root = cls._find_git_root(project_path)
        config_loaded = False
        for candidate in [
            project_path / PROJECT_CONFIG_NAME,
            (git_root / PROJECT_CONFIG_NAME) if git_root and git_root != project_path else None,
            CONFIG_FILE,
        ]:
            if candidate and candidate.exists():
                config._load_yaml(candidate)
                config._config_source = str(candidate)
                config_loaded = True
                break

        if not config_loaded:
            config._add_default_presets()

        config._apply_env()
        config.project_root = str(project_path)
        return config

    @classmethod
    def get_default_presets(cls) -> Dict[str, ModelPreset]:
        return {
            "local": ModelPreset(
                name="local", provider="local", model="openai/model",
                api_base="http://localhost:8080/v1", api_key="not-needed",
                description="Local model (vLLM / llama.cpp on :8080)",
                max_tokens=4096, context_window=32000,
            ),
            "gpt-4o": ModelPreset(
                name="gpt-4o", provider="openai", model="openai/gpt-4o",
                description="OpenAI GPT-4o", max_tokens=8192, context_window=128000,
            ),
            "claude-sonnet": ModelPreset(
                name="claude-sonnet", provider="anthropic",
                model="anthropic/claude-sonnet-4-20250514",
                description="Anthropic Claude Sonnet", max_tokens=8192,
                context_window=200000,
            ),
            "deepseek-chat": ModelPreset(
                name="deepseek-chat", provider="deepseek",
                model="deepseek/deepseek-chat",
                api_key_env="DEEPSEEK_API_KEY",
                description="DeepSeek chat", max_tokens=4096,
            ),
        }

    def _add_default_presets(self):
        self.models = self.get_default_presets()
        self.active_model = "local"

    def _load_yaml(self, filepath: Path):
        try:
            with open(filepath) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            _log.warning("Could not read config %s: %s", filepath, e)
            self._add_default_presets()
            return

        self.active_model = data.get("active-model", "local")
        self.max_iterations = self._coerce_positive_int(
            data.get("max-iterations", MAX_ITERATIONS), default=MAX_ITERATIONS, max_value=10000
        )
        self.max_consecutive_errors = self._coerce_positive_int(
            data.get("max-consecutive-errors", MAX_CONSECUTIVE_ERRORS),
            default=MAX_CONSECUTIVE_ERRORS, max_value=100,
        )
        self.max_context_tokens = self._coerce_optional_int(data.get("max-context-tokens"))
        self.recent_messages_to_keep = self._coerce_optional_int(data.get("recent-messages-to-keep"))
        self.recent_tool_results_to_keep = self._coerce_optional_int(
            data.get("recent-tool-results-to-keep"), min_value=0
        )
        self.max_immediate_tool_result = self._coerce_optional_int(data.get("max-immediate-tool-result"))
        self.max_messages = self._coerce_positive_int(
            data.get("max-messages", MAX_MESSAGES), default=MAX_MESSAGES, min_value=10
        )
        self.auto_approve = self._normalize_auto_approve(data.get("auto-approve", False))
        self.dangerous_patterns = self._normalize_dangerous_patterns(data.get("dangerous-patterns", []))
        self.fallback = self._load_fallback(data.get("fallback") or {})
        self.use_tools = self._coerce_bool(data.get("use-tools", True), default=True)
        self.extract_tools_from_text = self._coerce_bool(
            data.get("extract-tools-from-text", True), default=True
        )
        self.command_timeout = self._coerce_positive_int(
            data.get("command-timeout", 120), default=120, min_value=5, max_value=3600
        )
        self.confirm_timeout = self._coerce_optional_int(data.get("confirm-timeout"))
        self.verbose = self._coerce_bool(data.get("verbose", False), default=False)

        self.models = {}
        for name, m in (data.get("models") or {}).items():
            self.models[name] = ModelPreset(
                name=name, provider=m.get("provider", "openai"),
                model=m.get("model", "openai/gpt-4o-mini"),
                api_base=m.get("api-base"), api_key=m.get("api-key"),
                api_key_env=m.get("api-key-env"),
                temperature=m.get("temperature", 0.0),
                max_tokens=m.get("max-tokens", 4096),
                context_window=m.get("context-window", 128000),
                description=m.get("description", ""),
            )
        if not self.models:
            self._add_default_presets()

    def _apply_env(self):
        env_map = {
            "AGENT_MODEL": ("active_model", str),
            "AGENT_AUTO_APPROVE": ("auto_approve", lambda v: self._normalize_auto_approve(v)),
            "AGENT_VERBOSE": ("verbose", lambda v: v.lower() in ("true", "1")),
        }
        for env_var, (attr, conv) in env_map.items():
            val = os.environ.get(env_var)
            if val:
                try:
                    setattr(self, attr, conv(val))
                except (ValueError, TypeError):
                    _log.warning("Ignoring invalid %s=%r", env_var, val)

    def save(self, filepath: Optional[str] = None):
        target = Path(filepath) if filepath else (
            Path(self._config_source) if self._config_source else CONFIG_FILE
        )
        target.parent.mkdir(parents=True, exist_ok=True)

        data: Dict[str, Any] = {}
        for key, spec in CONFIG_FIELDS.items():
            value = getattr(self, spec.field_name, spec.default)
            if value is not None:
                data[key] = value
        data["auto-approve"] = self.auto_approve
        if self.dangerous_patterns:
            data["dangerous-patterns"] = self.dangerous_patterns
        data["fallback"] = {
            "enabled": self.fallback.enabled,
            "auto-correct-threshold": self.fallback.auto_correct_threshold,
            "suggestion-threshold": self.fallback.suggestion_threshold,
            "parameter-aliasing": self.fallback.parameter_aliasing,
        }
        data["models"] = {}
        for name, p in self.models.items():
            entry = {
                "provider": p.provider, "model": p.model,
                "temperature": p.temperature, "max-tokens": p.max_tokens,
                "context-window": p.context_window,
            }
            if p.description:
                entry["description"] = p.description
            if p.api_base:
                entry["api-base"] = p.api_base
            if p.api_key:
                entry["api-key"] = p.api_key
            if p.api_key_env:
                entry["api-key-env"] = p.api_key_env
            data["models"][name] = entry

        with open(target, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        self._config_source = str(target)

    def get_active_preset(self) -> ModelPreset:
        if self.active_model not in self.models:
            available = ", ".join(self.models.keys())
            raise ValueError(f"Model '{self.active_model}' not found. Available: {available}")
        return self.models[self.active_model]

    def set_active_model(self, name: str) -> bool:
        if name in self.models:
            self.active_model = name
            return True
        return False

    def list_models(self) -> List[Dict]:
        return [
            {"name": n, "provider": p.provider, "model": p.model,
             "description": p.description, "active": n == self.active_model}
            for n, p in self.models.items()
        ]

    def context_limits(self, context_window: Optional[int] = None) -> ContextLimits:
        """Tier limits for the active model with explicit overrides applied."""
        if context_window is None:
            preset = self.models.get(self.active_model)
            context_window = preset.context_window if preset else 128000
        limits = compute_context_config(context_window)
        if self.max_context_tokens is not None:
            limits.max_context_tokens = self.max_context_tokens
        if self.recent_messages_to_keep is not None:
            limits.recent_messages_to_keep = self.recent_messages_to_keep
        if self.recent_tool_results_to_keep is not None:
            limits.recent_tool_results_to_keep = self.recent_tool_results_to_keep
        if self.max_immediate_tool_result is not None:
            limits.max_immediate_tool_result = self.max_immediate_tool_result
        return limits

    def agent_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ``Agent`` drawn from this config."""
        return {
            "max_iterations": self.max_iterations,
            "max_consecutive_errors": self.max_consecutive_errors,
            "max_context_tokens": self.max_context_tokens,
            "recent_messages_to_keep": self.recent_messages_to_keep,
            "recent_tool_results_to_keep": self.recent_tool_results_to_keep,
            "max_immediate_tool_result": self.max_immediate_tool_result,
            "max_messages": self.max_messages,
            "auto_approve": self.auto_approve,
            "custom_dangerous_patterns": list(self.dangerous_patterns),
            "use_tools": self.use_tools,
            "extract_tools_from_text": self.extract_tools_from_text,
            "confirm_timeout": self.confirm_timeout,
        }

    @staticmethod
    def _normalize_auto_approve(value) -> Union[bool, List[str]]:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            text = value.strip()
            if text.lower() in ("1", "true", "yes", "on", "all"):
                return True
            if text.lower() in ("", "0", "false", "no", "off"):
                return False
            return [part.strip() for part in text.split(",") if part.strip()]
        if isinstance(value, list):
            return [str(item).strip() for item in value if str(item).strip()]
        return False

    @staticmethod
    def _normalize_dangerous_patterns(value) -> List[Dict[str, str]]:
        cleaned = []
        if not isinstance(value, list):
            return cleaned
        for item in value:
            if isinstance(item, str) and item.strip():
                cleaned.append({"pattern": item, "description": f"matches '{item}'"})
            elif isinstance(item, dict) and item.get("pattern"):
                cleaned.append({
                    "pattern": str(item["pattern"]),
                    "description": str(item.get("description") or f"matches '{item['pattern']}'"),
                })
        return cleaned

    def _load_fallback(self, data: dict) -> FallbackConfig:
        defaults = FallbackConfig()
        return FallbackConfig(
            enabled=self._coerce_bool(data.get("enabled", defaults.enabled), default=defaults.enabled),
            auto_correct_threshold=self._coerce_ratio(
                data.get("auto-correct-threshold"), defaults.auto_correct_threshold
            ),
            suggestion_threshold=self._coerce_ratio(
                data.get("suggestion-threshold"), defaults.suggestion_threshold
            ),
            parameter_aliasing=self._coerce_bool(
                data.get("parameter-aliasing", defaults.parameter_aliasing),
                default=defaults.parameter_aliasing,
            ),
        )

    @staticmethod
    def _coerce_ratio(value, default: float) -> float:
        try:
            parsed = float(value)
        except (TypeError, ValueError):
            return default
        return min(1.0, max(0.0, parsed))

    @staticmethod
    def _coerce_bool(value, default: bool) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            text = value.strip().lower()
            if text in ("1", "true", "yes", "on"):
                return True
            if text in ("0", "false", "no", "off"):
                return False
        if isinstance(value, (int, float)):
            return bool(value)
        return default

    @staticmethod
    def _coerce_positive_int(value, default: int, min_value: int = 1, max_value: int = 10_000_000) -> int:
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            return default
        if parsed < min_value:
            return min_value
        if parsed > max_value:
            return max_value
        return parsed

    @classmethod
    def _coerce_optional_int(cls, value, min_value: int = 1) -> Optional[int]:
        if value is None or (isinstance(value, str) and value.strip().lower() in ("", "auto")):
            return None
        try:
            return max(min_value, int(value))
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _find_git_root(path: Path) -> Optional[Path]:
        current = path
        while current != current.parent:
            if (current / ".git").exists():
                return current
            current = current.parent
        return None

    def get_config_value(self, key: str) -> Any:
        """Get configuration value by key."""
        if key not in CONFIG_FIELDS:
            return None
        spec = CONFIG_FIELDS[key]
        return getattr(self, spec.field_name, spec.default)

    def set_config_value(self, key: str, value: Any, persist: bool = True) -> tuple[bool, str]:
        """
        Set configuration value with validation.

        Returns:
            (success, error_message)
        """
        if key == "active-model":
            if value not in self.models:
                return False, f"Model '{value}' not found."
            self.active_model = value
            if persist:
                self.save()
            return True, ""

        is_valid, coerced_value, error_msg = validate_config_value(key, value)
        if not is_valid:
            return False, error_msg

        spec = CONFIG_FIELDS[key]
        setattr(self, spec.field_name, coerced_value)
        if persist:
            self.save()
        return True, ""
