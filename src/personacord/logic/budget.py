"""Token budget allocation across system prompt, history and memories.

Priority is strict: the system prompt and current message are fixed costs,
then history is admitted newest first, then memories by score. Within a tier,
the first item that does not fit stops the tier and every remaining item in it
is counted as dropped. The allocation is a pure function of its inputs.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from personacord.core.exceptions import TokenBudgetExceededError
from personacord.core.models import MemoryEntry
from personacord.jobs.schemas import ConversationMessage
from personacord.logic.tokens import TokenCounter, count_text_tokens

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BudgetAllocation:
    """Result of apportioning one context window."""

    context_window: int
    system_prompt_tokens: int
    current_message_tokens: int
    history: tuple[ConversationMessage, ...]
    history_tokens: int
    history_messages_dropped: int
    memories: tuple[MemoryEntry, ...]
    memory_tokens: int
    memories_dropped: int
    memories_found: tuple[MemoryEntry, ...]

    @property
    def total_tokens(self) -> int:
        """Return the cost of everything admitted."""
        return (
            self.system_prompt_tokens
            + self.current_message_tokens
            + self.history_tokens
            + self.memory_tokens
        )

    @property
    def remaining_tokens(self) -> int:
        """Return the unused part of the window."""
        return self.context_window - self.total_tokens


def format_memory_line(memory: MemoryEntry) -> str:
    """Render one memory the way it appears in the prompt."""
    if memory.created_at is not None:
        return f"- [{memory.created_at.strftime('%Y-%m-%d')}] {memory.content}"
    return f"- {memory.content}"


def history_message_tokens(
    message: ConversationMessage,
    counter: TokenCounter = count_text_tokens,
) -> int:
    """Return a history message's cost, preferring its cached token count."""
    if message.token_count is not None:
        return message.token_count
    return counter(message.content)


def memory_tokens(memory: MemoryEntry, counter: TokenCounter = count_text_tokens) -> int:
    """Return the prompt cost of one memory line, including its newline."""
    return counter(f"{format_memory_line(memory)}\n")


def rank_memories(memories: Sequence[MemoryEntry]) -> list[MemoryEntry]:
    """Order memories by score descending, ties by id for reproducibility."""
    return sorted(memories, key=lambda memory: (-memory.score, memory.id))


def _admit_history(
    history: Sequence[ConversationMessage],
    budget: int,
    counter: TokenCounter,
) -> tuple[list[ConversationMessage], int, int]:
    admitted: list[ConversationMessage] = []
    used = 0
    for message in reversed(history):
        cost = history_message_tokens(message, counter)
        if used + cost > budget:
            break
        admitted.append(message)
        used += cost
    admitted.reverse()
    return admitted, used, len(history) - len(admitted)


def _admit_memories(
    ranked: Sequence[MemoryEntry],
    budget: int,
    counter: TokenCounter,
) -> tuple[list[MemoryEntry], int, int]:
    admitted: list[MemoryEntry] = []
    used = 0
    for memory in ranked:
        cost = memory_tokens(memory, counter)
        if used + cost > budget:
            break
        admitted.append(memory)
        used += cost
    return admitted, used, len(ranked) - len(admitted)


def allocate_budget(
    *,
    context_window: int,
    system_prompt_tokens: int,
    current_message_tokens: int = 0,
    history: Sequence[ConversationMessage] = (),
    memories: Sequence[MemoryEntry] = (),
    counter: TokenCounter = count_text_tokens,
) -> BudgetAllocation:
    """Apportion `context_window` tokens by strict priority.

    Args:
        context_window: Total tokens available for the prompt.
        system_prompt_tokens: Fixed cost of the system prompt (never dropped).
        current_message_tokens: Fixed cost of the triggering message.
        history: Conversation history ordered oldest to newest.
        memories: Retrieved memories in any order.
        counter: Token counter for items without a cached count.

    Returns:
        BudgetAllocation with admitted history in chronological order and
        admitted memories in rank order.

    Raises:
        TokenBudgetExceededError: If the fixed costs alone exceed the window.

    """
    fixed_tokens = system_prompt_tokens + current_message_tokens
    if fixed_tokens > context_window:
        raise TokenBudgetExceededError(
            required_tokens=fixed_tokens,
            context_window=context_window,
        )

    remaining = context_window - fixed_tokens
    if remaining == 0 and (history or memories):
        logger.warning(
            "No token budget left for history or memories (window=%s, fixed=%s)",
            context_window,
            fixed_tokens,
        )

    admitted_history, history_used, history_dropped = _admit_history(
        history,
        remaining,
        counter,
    )
    remaining -= history_used

    ranked = rank_memories(memories)
    admitted_memories, memory_used, memories_dropped = _admit_memories(
        ranked,
        remaining,
        counter,
    )

    admitted_ids = {memory.id for memory in admitted_memories}
    memories_found = tuple(
        dataclasses.replace(memory, included_in_prompt=memory.id in admitted_ids)
        for memory in ranked
    )
    admitted_with_flag = tuple(
        memory for memory in memories_found if memory.included_in_prompt
    )

    if history_dropped or memories_dropped:
        logger.info(
            "Token budget dropped %s history message(s) and %s memory(ies) "
            "(window=%s, system=%s, current=%s)",
            history_dropped,
            memories_dropped,
            context_window,
            system_prompt_tokens,
            current_message_tokens,
        )

    return BudgetAllocation(
        context_window=context_window,
        system_prompt_tokens=system_prompt_tokens,
        current_message_tokens=current_message_tokens,
        history=tuple(admitted_history),
        history_tokens=history_used,
        history_messages_dropped=history_dropped,
        memories=admitted_with_flag,
        memory_tokens=memory_used,
        memories_dropped=memories_dropped,
        memories_found=memories_found,
    )
