"""Entry point for serving the agent bridge via uvicorn."""

from __future__ import annotations

import os
from typing import Any, Dict

import uvicorn
from dotenv import load_dotenv

from ..config import RuntimeConfig, configure_logging, load_config
from ..errors import ConfigError
from ..orchestrator import Agent
from ..provider import OpenAIChatProvider
from .app import create_app


def build_uvicorn_config() -> Dict[str, Any]:
    host = os.environ.get("AGENTIC_RUNTIME_HOST", "127.0.0.1")
    port = int(os.environ.get("AGENTIC_RUNTIME_PORT", "9099"))
    log_level = os.environ.get("AGENTIC_RUNTIME_LOG_LEVEL", "info")
    return {"host": host, "port": port, "log_level": log_level}


def build_agent(config: RuntimeConfig) -> Agent:
    if not config.api_key:
        raise ConfigError("no API key configured; set AGENTIC_RUNTIME_API_KEY or OPENROUTER_API_KEY")
    provider = OpenAIChatProvider(
        config.api_key,
        base_url=config.base_url,
        timeout=config.request_timeout_seconds,
        name=config.provider_name,
    )
    return Agent(config, provider)


def main() -> None:
    load_dotenv()
    uvicorn_config = build_uvicorn_config()
    configure_logging(
        uvicorn_config["log_level"],
        log_file=os.environ.get("AGENTIC_RUNTIME_LOG_FILE") or None,
    )
    config = load_config(os.environ.get("AGENTIC_RUNTIME_CONFIG") or None)
    app = create_app(build_agent(config))
    uvicorn.run(app, **uvicorn_config)


if __name__ == "__main__":
    main()
