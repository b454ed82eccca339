"""Basic usage of writer-gateway."""

import asyncio

from writer_gateway import Gateway, GenerationRequest


async def main() -> None:
    """Demonstrate a buffered generation."""
    request = GenerationRequest(
        model="anthropic/claude-3.7-sonnet",
        messages=(
            {"role": "system", "content": "You are a concise writing assistant."},
            {"role": "user", "content": "Suggest a title for a novel about lighthouses."},
        ),
    )
    # Gateway reads GATEWAY_* env vars automatically
    async with Gateway() as gateway:
        async with gateway.cancellation_scope(request) as scope:
            result = await gateway.generate(request, scope.token)
        print(f"Text: {result.text}")
        print(f"Path: {result.path}")
        print(f"Tokens: {result.usage.get('total_tokens')}")
        print(f"Latency: {result.latency_ms:.0f}ms")


if __name__ == "__main__":
    asyncio.run(main())
