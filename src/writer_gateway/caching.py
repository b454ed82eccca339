"""Prompt-caching segmentation.

Providers that honor cache hints bill a cached prefix at a discount. Long text
messages are split into a short leading part and a cacheable remainder tagged
``cache_control: {"type": "ephemeral"}``. The split only changes segmentation:
concatenating the parts' text yields the original content.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Sequence
from dataclasses import dataclass

from writer_gateway.types import ChatMessage, ContentPart, GenerationRequest


@dataclass(frozen=True)
class CachePolicy:
    """When and where to split message content for prompt caching."""

    min_chars: int = 1000
    prefix_chars: int = 100
    model_prefixes: tuple[str, ...] = ("anthropic/",)

    def applies_to(self, model: str) -> bool:
        """True if *model* belongs to a provider family that honors cache hints."""
        return model.startswith(self.model_prefixes)


DEFAULT_POLICY = CachePolicy()


def _segment(message: ChatMessage, policy: CachePolicy) -> ChatMessage:
    content = message.get("content")
    # Only plain strings are split; part lists are already segmented.
    if not isinstance(content, str) or len(content) <= policy.min_chars:
        return message

    parts: list[ContentPart] = [
        {"type": "text", "text": content[: policy.prefix_chars]},
        {
            "type": "text",
            "text": content[policy.prefix_chars :],
            "cache_control": {"type": "ephemeral"},
        },
    ]
    segmented: ChatMessage = {**message, "content": parts}
    return segmented


def segment_messages(
    messages: Sequence[ChatMessage],
    model: str,
    *,
    enabled: bool = True,
    policy: CachePolicy = DEFAULT_POLICY,
) -> tuple[ChatMessage, ...]:
    """Return *messages* with long text content split into cacheable parts.

    Idempotent: applying it to its own output returns an equal sequence.
    """
    if not enabled or not policy.applies_to(model):
        return tuple(messages)
    return tuple(_segment(m, policy) for m in messages)


def apply_prompt_caching(
    request: GenerationRequest,
    policy: CachePolicy = DEFAULT_POLICY,
) -> GenerationRequest:
    """Return a copy of *request* with its chat messages segmented for caching.

    Completion requests carry a bare prompt and are returned unchanged.
    """
    if request.endpoint != "chat" or not request.enable_caching:
        return request
    messages = segment_messages(request.chat_messages, request.model, policy=policy)
    if messages == request.messages:
        return request
    return dataclasses.replace(request, messages=messages)
