"""
Failure classification and fallback model selection.

The fallback for a failed primary attempt is resolved from explicit
configuration in this order: exact model mapping, ordered match rules,
the task the last user message asks for, the failure class of the error,
then the default model. A candidate naming the primary's upstream model is
never returned; the last-resort and default models are tried instead.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Literal

from .exceptions import ExhaustedFallbackError, LLMError, StreamTimeoutError
from .models import ChatMessage, MessageRole

Severity = Literal["low", "medium", "high"]


@dataclass(frozen=True)
class FailureInfo:
    """Classification of a failed attempt."""
    code: str
    message: str
    severity: Severity
    can_retry: bool
    fallback_model: str | None = None
    suggestions: tuple[str, ...] = ()

    def user_message(self) -> str:
        """Markdown explanation shown in place of a failed reply."""
        lines = [f"**{self.message}**"]
        if self.suggestions:
            lines += ["", "Suggestions:"]
            lines += [f"- {suggestion}" for suggestion in self.suggestions]
        if self.fallback_model:
            lines += ["", f"Alternative: {self.fallback_model}"]
        return "\n".join(lines)


FAILURE_CATALOG: dict[str, FailureInfo] = {
    "rate_limit": FailureInfo(
        "rate_limit", "Rate limit exceeded", "medium", True, "openai/gpt-4o-mini",
        (
            "Wait a few seconds before trying again",
            "Use a less busy model",
            "Shorten the request",
        ),
    ),
    "model_offline": FailureInfo(
        "model_offline", "Model temporarily unavailable", "medium", True,
        "anthropic/claude-3-sonnet",
        (
            "The model should be back shortly",
            "Try an alternative model of similar quality",
            "Turn on automatic fallback",
        ),
    ),
    "context_length": FailureInfo(
        "context_length", "Message too long for this model", "high", False,
        "anthropic/claude-3-sonnet",
        (
            "Shorten the message",
            "Use a model with a larger context window",
            "Split the request into several parts",
        ),
    ),
    "api_key": FailureInfo(
        "api_key", "Authentication problem", "high", False, None,
        (
            "Check the provider API key",
            "Contact support if the problem persists",
            "Try another provider",
        ),
    ),
    "quota_exceeded": FailureInfo(
        "quota_exceeded", "Quota exceeded for this model", "medium", True,
        "openai/gpt-4o-mini",
        (
            "Wait for the quota to renew",
            "Use a model with quota left",
            "Contact support to raise the limit",
        ),
    ),
    "network_error": FailureInfo(
        "network_error", "Network connection problem", "medium", True, None,
        (
            "Check the internet connection",
            "Try again in a moment",
            "The proxy server may be down",
        ),
    ),
    "timeout": FailureInfo(
        "timeout", "Request timed out", "medium", True, "openai/gpt-4o-mini",
        (
            "Simplify the request",
            "Try a faster model",
            "Retry with a longer timeout",
        ),
    ),
    "content_filter": FailureInfo(
        "content_filter", "Content blocked by provider filters", "low", False, None,
        (
            "Rephrase the request",
            "Avoid sensitive content",
            "Use a model with fewer restrictions",
        ),
    ),
}

UNKNOWN_SUGGESTIONS = (
    "Try the request again",
    "Check the connection",
    "Contact support if the problem persists",
)

STATUS_CODES: dict[int, str] = {
    429: "rate_limit",
    503: "model_offline",
    413: "context_length",
    401: "api_key",
    403: "api_key",
    402: "quota_exceeded",
    408: "timeout",
    504: "timeout",
}

# Checked in order; first keyword hit wins
KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("rate_limit", ("rate limit", "429")),
    ("model_offline", ("offline", "unavailable", "503")),
    ("context_length", ("context", "token limit", "413")),
    ("api_key", ("api key", "unauthorized", "401")),
    ("quota_exceeded", ("quota", "billing", "402")),
    ("network_error", ("network", "connection", "fetch")),
    ("timeout", ("timeout", "timed out", "408")),
    ("content_filter", ("content", "filter", "policy")),
)


def classify_failure(error: BaseException) -> FailureInfo:
    """Classify an error by status code first, then by message keywords."""
    if isinstance(error, ExhaustedFallbackError):
        error = error.last_error

    if isinstance(error, StreamTimeoutError):
        return FAILURE_CATALOG["timeout"]

    status_code = getattr(error, "status_code", None)
    if isinstance(error, LLMError) and status_code in STATUS_CODES:
        return FAILURE_CATALOG[STATUS_CODES[status_code]]

    message = str(error).lower()
    for code, keywords in KEYWORDS:
        if any(keyword in message for keyword in keywords):
            return FAILURE_CATALOG[code]

    return FailureInfo(
        "unknown", str(error) or "Unknown error", "medium", True,
        "openai/gpt-4o-mini", UNKNOWN_SUGGESTIONS,
    )


# Checked in order like KEYWORDS; no hit means a general request
TASK_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("code", ("code", "programming", "debug", "function", "algorithm")),
    ("creative", ("creative", "story", "poem", "marketing", "blog")),
    ("reasoning", ("analyze", "compare", "logic", "reasoning", "think")),
    ("vision", ("image", "photo", "visual", "picture")),
    ("translation", ("translate", "translation", "language")),
    ("math", ("math", "calculate", "equation", "formula")),
)

DEFAULT_TASK_MODELS: Mapping[str, str] = MappingProxyType({
    "code": "deepseek-coder",
    "creative": "claude-3-5-sonnet-20241022",
    "reasoning": "deepseek-reasoner",
    "vision": "gemini-1.5-pro",
    "translation": "gpt-4o",
    "math": "deepseek-reasoner",
})

# Shorter prompts say too little to pick a specialist
MIN_PROMPT_CHARS = 10
EXCLUDED_TASK_MODELS = ("gpt-5",)


def classify_task(prompt: str) -> str | None:
    """Task type a prompt asks for, or None for a general request."""
    text = prompt.lower()
    for task, keywords in TASK_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return task
    return None


def last_user_prompt(messages: Sequence[ChatMessage]) -> str:
    for message in reversed(messages):
        if message.role == MessageRole.USER:
            return message.content
    return ""


def upstream_model(model: str) -> str:
    """Model id with any vendor prefix dropped, as the provider sees it."""
    return model.rsplit("/", 1)[-1].strip().lower()


def same_model(first: str, second: str) -> bool:
    return upstream_model(first) == upstream_model(second)


@dataclass(frozen=True)
class FallbackRule:
    """Substring or prefix match on the primary model id."""
    match: str
    fallback: str
    prefix: bool = False

    def matches(self, model: str) -> bool:
        if self.prefix:
            return model.startswith(self.match)
        return self.match in model


DEFAULT_RULES: tuple[FallbackRule, ...] = (
    FallbackRule("gpt-5", "gpt-4.1-2025-04-14"),
    FallbackRule("o3-", "gpt-4.1-2025-04-14"),
    FallbackRule("o4-", "gpt-4.1-2025-04-14"),
)


@dataclass(frozen=True)
class FallbackPolicy:
    """Explicit primary → fallback model selection."""
    default_model: str = "gpt-4o-mini"
    last_resort_model: str = "anthropic/claude-3-5-haiku-20241022"
    models: dict[str, str] = field(default_factory=dict)
    rules: tuple[FallbackRule, ...] = DEFAULT_RULES
    use_prompt_analysis: bool = True
    task_models: Mapping[str, str] = field(
        default_factory=lambda: DEFAULT_TASK_MODELS
    )
    use_error_class: bool = True

    def __post_init__(self) -> None:
        # Any primary differs from at least one of the two
        if same_model(self.default_model, self.last_resort_model):
            raise ValueError(
                "fallback.default_model and fallback.last_resort_model must name "
                f"different models, both resolve to "
                f"'{upstream_model(self.default_model)}'"
            )

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> FallbackPolicy:
        """Build from the ``fallback`` config section."""
        for key in ("default_model", "last_resort_model"):
            if key not in config:
                raise ValueError(
                    f"fallback.{key} must be explicitly configured in config.yaml"
                )

        rules = DEFAULT_RULES
        if "rules" in config:
            rules = tuple(
                FallbackRule(
                    match=rule["match"],
                    fallback=rule["fallback"],
                    prefix=rule.get("prefix", False),
                )
                for rule in config["rules"]
            )

        task_models = DEFAULT_TASK_MODELS
        if "task_models" in config:
            task_models = MappingProxyType(dict(config["task_models"] or {}))

        return cls(
            default_model=config["default_model"],
            last_resort_model=config["last_resort_model"],
            models=dict(config.get("models") or {}),
            rules=rules,
            use_prompt_analysis=config.get("use_prompt_analysis", True),
            task_models=task_models,
            use_error_class=config.get("use_error_class", True),
        )

    def select(
        self,
        model: str,
        error: BaseException | None = None,
        messages: Sequence[ChatMessage] = (),
    ) -> str:
        """Fallback model for a failed primary attempt on ``model``."""
        candidates = (
            self._resolve(model, error, messages),
            self.last_resort_model,
            self.default_model,
        )
        return next(c for c in candidates if not same_model(c, model))

    def _resolve(
        self,
        model: str,
        error: BaseException | None,
        messages: Sequence[ChatMessage],
    ) -> str:
        if model in self.models:
            return self.models[model]

        for rule in self.rules:
            if rule.matches(model):
                return rule.fallback

        if self.use_prompt_analysis and (recommended := self.recommend(messages)):
            return recommended

        if self.use_error_class and error is not None:
            info = classify_failure(error)
            if info.fallback_model:
                return info.fallback_model

        return self.default_model

    def recommend(self, messages: Sequence[ChatMessage]) -> str | None:
        """Specialist model for the task the last user message asks for."""
        prompt = last_user_prompt(messages).strip()
        if len(prompt) <= MIN_PROMPT_CHARS:
            return None
        task = classify_task(prompt)
        recommended = self.task_models.get(task) if task else None
        if not recommended or any(x in recommended for x in EXCLUDED_TASK_MODELS):
            return None
        return recommended
