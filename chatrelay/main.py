"""
Entry points: the proxy server and a one-shot streaming chat command.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys

import structlog
import uvicorn

from chatrelay.config import Configuration
from chatrelay.llm.exceptions import LLMError
from chatrelay.llm.fallback import classify_failure
from chatrelay.logging_utils import configure_logging
from chatrelay.proxy import create_app
from chatrelay.streaming_service import StreamingService

logger = structlog.get_logger(__name__)


def _configure_from(config: Configuration) -> None:
    logging_config = config.get_logging_config()
    configure_logging(
        level=logging_config.get("level", "INFO"),
        json_output=logging_config.get("json", False),
    )


def run_proxy() -> None:
    """Serve the provider proxy functions with uvicorn."""
    parser = argparse.ArgumentParser(description="Run the chatrelay provider proxy")
    parser.add_argument("--config", type=str, default=None, help="Path to config.yaml")
    args = parser.parse_args()

    config = Configuration(config_path=args.config)
    _configure_from(config)
    proxy_config = config.get_proxy_config()

    uvicorn.run(
        create_app(config),
        host=proxy_config["host"],
        port=proxy_config["port"],
        log_level=config.get_logging_config().get("level", "INFO").lower(),
    )


async def chat_once(
    service: StreamingService,
    prompt: str,
    model: str | None = None,
    system_prompt: str | None = None,
) -> int:
    """Stream one reply to stdout; returns the process exit code."""
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})
    request = service.build_request(messages, model)

    outcome: dict[str, object] = {}

    def on_chunk(fragment: str) -> None:
        sys.stdout.write(fragment)
        sys.stdout.flush()

    def on_fallback(fallback_model: str, error: LLMError) -> None:
        sys.stderr.write(
            f"\n[{request.model} failed: {error}; retrying with {fallback_model}]\n"
        )

    def on_complete(full_text: str, model_used: str) -> None:
        outcome["model"] = model_used
        sys.stdout.write("\n")

    def on_error(error: LLMError) -> None:
        outcome["error"] = error
        sys.stderr.write(f"\n[error] {error}\n\n")
        sys.stderr.write(classify_failure(error).user_message() + "\n")

    handle = service.stream_with_fallback(
        request, on_chunk, on_complete, on_error, on_fallback
    )

    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, handle.cancel)

    await handle.wait()
    if "model" in outcome:
        sys.stderr.write(f"[model: {outcome['model']}]\n")
        return 0
    return 1


async def _chat_main(args: argparse.Namespace) -> int:
    config = Configuration(config_path=args.config)
    _configure_from(config)
    async with StreamingService.from_config(config) as service:
        return await chat_once(service, args.prompt, args.model, args.system)


def run_chat() -> None:
    """Stream a single completion through the proxy to stdout."""
    parser = argparse.ArgumentParser(description="Stream one chat completion")
    parser.add_argument("prompt", type=str, help="User message")
    parser.add_argument("--model", type=str, default=None, help="Primary model id")
    parser.add_argument("--system", type=str, default=None, help="System prompt")
    parser.add_argument("--config", type=str, default=None, help="Path to config.yaml")
    args = parser.parse_args()

    try:
        exit_code = asyncio.run(_chat_main(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":
    run_chat()
