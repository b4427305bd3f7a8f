"""
Generative-text capability.

The pipeline only sees ``TextGenerator.complete``: chat messages in, text out,
fallible and slow. The concrete backend is a LangChain chat model, Groq over the
API or a local Ollama model, chosen from configuration.
"""
from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, Callable, Protocol, Sequence

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage
from langchain_groq import ChatGroq
from langchain_ollama import ChatOllama

from .config import (
    API_MODEL_NAME,
    GROQ_API_KEY,
    LLM_MAX_RETRIES,
    LLM_MAX_WORKERS,
    LLM_TIMEOUT_S,
    LOCAL_MODEL_NAME,
    USE_API_LLM,
    console,
)
from .errors import UpstreamUnavailable
from .observability import get_logger

logger = get_logger(__name__)

ChatModelFactory = Callable[[float, int], BaseChatModel]

# Shared pool so every generation call can be abandoned after LLM_TIMEOUT_S.
_executor = ThreadPoolExecutor(max_workers=LLM_MAX_WORKERS, thread_name_prefix="llm-call")


class TextGenerator(Protocol):
    def complete(self, messages: Sequence[BaseMessage], *, temperature: float, max_tokens: int) -> str:
        ...


def _message_text(response: Any) -> str:
    content = getattr(response, "content", response)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)
    return str(content or "")


class LangChainTextGenerator:
    """Adapts a LangChain chat model; one model instance per (temperature, max_tokens)."""

    def __init__(self, factory: ChatModelFactory, label: str):
        self._factory = factory
        self.label = label
        self._models: dict[tuple[float, int], BaseChatModel] = {}
        self._lock = threading.Lock()

    def _model_for(self, temperature: float, max_tokens: int) -> BaseChatModel:
        key = (round(float(temperature), 3), int(max_tokens))
        with self._lock:
            model = self._models.get(key)
            if model is None:
                model = self._factory(*key)
                self._models[key] = model
        return model

    def complete(self, messages: Sequence[BaseMessage], *, temperature: float, max_tokens: int) -> str:
        model = self._model_for(temperature, max_tokens)
        try:
            response = model.invoke(list(messages))
        except Exception as exc:
            raise UpstreamUnavailable(f"{self.label} call failed: {exc}") from exc
        return _message_text(response).strip()


def _groq_model(temperature: float, max_tokens: int) -> BaseChatModel:
    return ChatGroq(
        model=API_MODEL_NAME,
        temperature=temperature,
        max_tokens=max_tokens,
        api_key=GROQ_API_KEY,
        timeout=LLM_TIMEOUT_S,
        max_retries=LLM_MAX_RETRIES,
    )


def _ollama_model(temperature: float, max_tokens: int) -> BaseChatModel:
    return ChatOllama(
        model=LOCAL_MODEL_NAME,
        temperature=temperature,
        num_predict=max_tokens,
    )


def initialize_generator() -> LangChainTextGenerator | None:
    """Builds the configured backend; None when the API backend is selected without a key."""
    if USE_API_LLM:
        if not GROQ_API_KEY:
            console.print("[bold red]Groq API key not found. Replies will use fallback text.[/bold red]")
            logger.warning("llm_backend_unavailable", backend="groq", reason="missing_api_key")
            return None
        console.print(f"[green]Using API Model: {API_MODEL_NAME}[/green]")
        logger.info("llm_backend_selected", backend="groq", model=API_MODEL_NAME)
        return LangChainTextGenerator(_groq_model, label=f"groq:{API_MODEL_NAME}")

    console.print(f"[green]Using Local Model: {LOCAL_MODEL_NAME}[/green]")
    logger.info("llm_backend_selected", backend="ollama", model=LOCAL_MODEL_NAME)
    return LangChainTextGenerator(_ollama_model, label=f"ollama:{LOCAL_MODEL_NAME}")


def complete_with_timeout(
    generator: TextGenerator | None,
    messages: Sequence[BaseMessage],
    *,
    temperature: float,
    max_tokens: int,
    timeout_s: float = LLM_TIMEOUT_S,
) -> str:
    """Runs one generation bounded by ``timeout_s``; every failure surfaces as UpstreamUnavailable."""
    if generator is None:
        raise UpstreamUnavailable("no text generator configured")
    future = _executor.submit(
        generator.complete,
        messages,
        temperature=temperature,
        max_tokens=max_tokens,
    )
    try:
        text = future.result(timeout=timeout_s)
    except FuturesTimeoutError as exc:
        future.cancel()
        raise UpstreamUnavailable(f"generation timed out after {timeout_s:.2f}s") from exc
    except UpstreamUnavailable:
        raise
    except Exception as exc:
        raise UpstreamUnavailable(f"generation failed: {exc}") from exc
    return str(text or "")
