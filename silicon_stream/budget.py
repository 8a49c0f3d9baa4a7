"""
Context-window budgeting policy.

Splits a model's context window into a response reservation and a history
portion, and decides when older conversation turns should be archived. Every
function here is pure: the same conversation state always yields the same
answer, and nothing is written anywhere.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from .catalog import ModelCatalog, RuntimeFamily
from .conversation import ChatMessage, Conversation

logger = logging.getLogger("silicon_stream")

DEFAULT_CONTEXT_LIMIT = 4096
RESPONSE_RESERVE_FRACTION = 0.30
MIN_RESPONSE_TOKENS = 128
ARCHIVE_THRESHOLD_FRACTION = 0.70
ARCHIVE_TARGET_FRACTION = 0.50
WORD_TOKEN_RATIO = 1.3

# Some backends degrade in quality or latency past a fixed generation length,
# whatever their nominal context size.
FAMILY_RESPONSE_CEILINGS: dict[RuntimeFamily, int] = {
    RuntimeFamily.MLX: 512,
}
UNKNOWN_MODEL_RESPONSE_CEILING = 512


def estimate_token_count(text: str) -> int:
    """Rough English estimate: space-separated words * 1.3, at least 1."""
    word_count = len([word for word in text.split(" ") if word])
    return max(int(word_count * WORD_TOKEN_RATIO), 1)


def message_cost(message: ChatMessage) -> int:
    if message.token_count is not None:
        return message.token_count
    return estimate_token_count(message.content)


@dataclass(frozen=True)
class GenerationBudget:
    """Token ceilings for one session; computed once, never mutated."""

    context_limit: int
    prompt_token_ceiling: int
    response_token_ceiling: int


class ContextBudgeter:
    """Token limits and archiving decisions derived from the model catalog."""

    def __init__(
        self,
        catalog: ModelCatalog | None = None,
        *,
        default_context_limit: int = DEFAULT_CONTEXT_LIMIT,
        family_ceilings: Mapping[RuntimeFamily, int] | None = None,
        unknown_model_ceiling: int | None = UNKNOWN_MODEL_RESPONSE_CEILING,
    ) -> None:
        if default_context_limit <= 0:
            raise ValueError("default_context_limit must be > 0")
        self.catalog = catalog or ModelCatalog()
        self.default_context_limit = default_context_limit
        self.family_ceilings = dict(
            FAMILY_RESPONSE_CEILINGS if family_ceilings is None else family_ceilings
        )
        self.unknown_model_ceiling = unknown_model_ceiling

    def context_limit(self, model_id: str) -> int:
        limit = self.catalog.context_window(model_id) or self.default_context_limit
        logger.debug("[SiliconStream Budget] model=%s context_limit=%d", model_id, limit)
        return limit

    @staticmethod
    def _reserved(limit: int) -> int:
        return int(limit * RESPONSE_RESERVE_FRACTION)

    def history_tokens_available(self, model_id: str) -> int:
        limit = self.context_limit(model_id)
        return limit - self._reserved(limit)

    def response_token_budget(self, model_id: str) -> int:
        limit = self.context_limit(model_id)
        budget = max(self._reserved(limit), MIN_RESPONSE_TOKENS)

        family = self.catalog.runtime_family(model_id)
        if family is None:
            ceiling = self.unknown_model_ceiling
        else:
            ceiling = self.family_ceilings.get(family)
        if ceiling is not None:
            budget = min(budget, ceiling)

        logger.debug("[SiliconStream Budget] model=%s response_budget=%d", model_id, budget)
        return budget

    def budget_for(self, model_id: str) -> GenerationBudget:
        limit = self.context_limit(model_id)
        return GenerationBudget(
            context_limit=limit,
            prompt_token_ceiling=limit - self._reserved(limit),
            response_token_ceiling=self.response_token_budget(model_id),
        )

    def current_tokens(self, conversation: Conversation) -> int:
        return sum(message_cost(message) for message in conversation.messages)

    def should_archive(self, conversation: Conversation) -> bool:
        available = self.history_tokens_available(conversation.model_id)
        threshold = int(available * ARCHIVE_THRESHOLD_FRACTION)
        current = self.current_tokens(conversation)
        if current > threshold:
            logger.info(
                "[SiliconStream Budget] Archive needed: current=%d available=%d threshold=%d",
                current,
                available,
                threshold,
            )
            return True
        return False

    def select_messages_to_archive(self, conversation: Conversation) -> list[ChatMessage]:
        """Keep the newest messages that fit half the history window; archive the rest."""
        available = self.history_tokens_available(conversation.model_id)
        target = int(available * ARCHIVE_TARGET_FRACTION)

        kept_tokens = 0
        kept = 0
        for message in reversed(conversation.messages):
            cost = message_cost(message)
            if kept_tokens + cost > target:
                break
            kept_tokens += cost
            kept += 1

        cutoff = len(conversation.messages) - kept
        to_archive = conversation.messages[:cutoff]
        logger.info(
            "[SiliconStream Budget] Archive plan: to_archive=%d to_keep=%d kept_tokens=%d",
            len(to_archive),
            kept,
            kept_tokens,
        )
        return list(to_archive)
