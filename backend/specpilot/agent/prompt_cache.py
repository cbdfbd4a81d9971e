"""Cache-control bookkeeping for provider prompt caching.

Anthropic accepts at most four cache breakpoints per request. Before every
model step the newest block is marked, and the oldest markers are dropped
until the history carries no more than the limit, so the retained
breakpoints follow the most recent turns.
"""

from specpilot.agent.messages import Message


MAX_CACHE_CONTROL_BLOCKS = 4


def apply_cache_budget(messages: list[Message]) -> list[Message]:
    """Mark the last block as cacheable and trim older markers to the budget.

    Mutates ``messages`` in place and returns it. Safe to call repeatedly on
    the same history.
    """
    if not messages:
        return messages

    last_message = messages[-1]
    if isinstance(last_message.content, str):
        last_message.cache_control = True
    elif last_message.content:
        last_message.content[-1].cache_control = True
    else:
        raise ValueError(
            f"Last message has no content block to mark: role={last_message.role}"
        )

    total = count_cache_control_blocks(messages)
    if total > MAX_CACHE_CONTROL_BLOCKS:
        _remove_earliest(messages, total - MAX_CACHE_CONTROL_BLOCKS)
    return messages


def count_cache_control_blocks(messages: list[Message]) -> int:
    count = 0
    for message in messages:
        if message.cache_control:
            count += 1
        if isinstance(message.content, list):
            count += sum(1 for part in message.content if part.cache_control)
    return count


def _remove_earliest(messages: list[Message], num_to_remove: int) -> None:
    removed = 0
    for message in messages:
        if removed >= num_to_remove:
            return
        if message.cache_control:
            message.cache_control = False
            removed += 1
            if removed >= num_to_remove:
                return
        if isinstance(message.content, list):
            for part in message.content:
                if removed >= num_to_remove:
                    return
                if part.cache_control:
                    part.cache_control = False
                    removed += 1
