"""Stream a generation to stdout, cancelling it after a few seconds."""

import asyncio
import json

from writer_gateway import CancellationToken, Gateway, GenerationRequest


class StdoutTransport:
    """EventTransport that prints the text of every chunk."""

    def __init__(self) -> None:
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    async def start(self, headers: dict[str, str]) -> None:
        pass

    async def write(self, data: bytes) -> None:
        if not data.startswith(b"data: {"):
            return
        chunk = json.loads(data[len(b"data: ") :])
        for choice in chunk.get("choices", []):
            print(choice.get("delta", {}).get("content") or "", end="", flush=True)

    async def close(self) -> None:
        self._open = False
        print()


async def main() -> None:
    request = GenerationRequest(
        model="meta-llama/llama-3.2-3b-instruct:free",
        prompt="Write a short poem about the sea.",
        stream=True,
    )
    token = CancellationToken()
    async with Gateway() as gateway:
        asyncio.get_running_loop().call_later(5, token.abort)
        async with gateway.cancellation_scope(request, token) as scope:
            outcome = await gateway.stream(request, StdoutTransport(), scope.token)
        print(f"Outcome: {outcome.value}")


if __name__ == "__main__":
    asyncio.run(main())
