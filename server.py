"""Command line entry point for the streaming chat server."""

from __future__ import annotations

import argparse
import json
import logging
from typing import Any, Dict, Optional

import uvicorn

from chat_stream import ChatConfig, ChatLLMConfig
from chat_stream.api import create_app
from chat_stream.store import ConversationStore, SqliteConversationStore

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the chat server with streamed replies.")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=8010, help="Port to bind.")
    parser.add_argument("--log_dir", default="./logs", help="Directory for application logs.")
    parser.add_argument("--db_path", help="sqlite file for conversations. In-memory when omitted.")
    parser.add_argument("--llm_endpoint", default="http://localhost:8000/v1/chat/completions", help="LLM endpoint.")
    parser.add_argument("--llm_model", default="qwen2.5-instruct", help="Model name for completions.")
    parser.add_argument("--llm_api_key", help="Bearer token for the LLM endpoint.")
    parser.add_argument("--request_timeout", type=int, default=60, help="Timeout for LLM calls (seconds).")
    parser.add_argument(
        "--first_fragment_timeout",
        type=float,
        default=25.0,
        help="Seconds to wait for the first generated fragment (0 disables).",
    )
    parser.add_argument(
        "--fragment_idle_timeout",
        type=float,
        default=12.0,
        help="Seconds allowed between generated fragments (0 disables).",
    )
    parser.add_argument(
        "--max_history_messages",
        type=int,
        default=0,
        help="Most recent sent turns used as context (0 keeps all).",
    )
    parser.add_argument("--system_prompt", help="System prompt override.")
    parser.add_argument("--model_kwargs", help="Optional JSON object of extra completion payload fields.")
    parser.add_argument(
        "--cors_origin",
        action="append",
        dest="cors_origins",
        help="Allowed browser origin (repeatable).",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ChatConfig:
    model_kwargs: Dict[str, Any] = {}
    if args.model_kwargs:
        try:
            model_kwargs = json.loads(args.model_kwargs)
        except Exception as exc:
            raise SystemExit(f"Failed to parse --model_kwargs: {exc}")
        if not isinstance(model_kwargs, dict):
            raise SystemExit("--model_kwargs must be a JSON object")

    chat_cfg = ChatConfig(
        llm=ChatLLMConfig(
            endpoint=args.llm_endpoint,
            model=args.llm_model,
            request_timeout=args.request_timeout,
            api_key=args.llm_api_key,
        ),
        max_history_messages=args.max_history_messages,
        first_fragment_timeout=args.first_fragment_timeout,
        fragment_idle_timeout=args.fragment_idle_timeout,
        model_kwargs=model_kwargs,
    )
    if args.system_prompt is not None:
        chat_cfg.system_prompt = args.system_prompt
    if args.cors_origins:
        chat_cfg.cors_origins = args.cors_origins
    return chat_cfg


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    chat_cfg = build_config(args)

    store: Optional[ConversationStore] = None
    if args.db_path:
        store = SqliteConversationStore(args.db_path, default_title=chat_cfg.default_title)

    app = create_app(chat_cfg, log_dir=args.log_dir, store=store)
    logger.info("Starting chat server on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
