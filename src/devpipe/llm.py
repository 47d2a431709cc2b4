"""OpenAI chat models bound to pydantic schemas.

Everything the reasoning adapter needs from langchain-openai lives here:
loading the API key, building a ``ChatOpenAI`` client with retries turned
off, and turning whatever the structured runnable hands back into either a
validated schema instance or ``MalformedResponse``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from .errors import MalformedResponse

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_REQUEST_TIMEOUT_SECONDS: int = 120
# An unreachable service must surface as AdapterUnavailable on the first attempt.
_NO_RETRIES: int = 0


class SupportsAinvoke(Protocol):
    async def ainvoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


@dataclass(frozen=True, slots=True)
class ChatModelOptions:
    """Client options shared by every structured runnable of one adapter."""

    model_name: str
    temperature: float = 0.0
    request_timeout: int = _REQUEST_TIMEOUT_SECONDS
    max_completion_tokens: int | None = None

    def client_kwargs(self) -> dict[str, Any]:
        name = self.model_name.strip()
        if not name:
            raise ValueError("model_name must be a non-empty string")
        kwargs: dict[str, Any] = {
            "model": name,
            "temperature": self.temperature,
            "timeout": self.request_timeout,
            "max_retries": _NO_RETRIES,
        }
        if self.max_completion_tokens is not None:
            kwargs["max_completion_tokens"] = self.max_completion_tokens
        return kwargs


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """A runnable paired with the schema its answers must satisfy."""

    schema: type[ModelT]
    runnable: SupportsAinvoke

    async def ainvoke(self, messages: Any) -> ModelT:
        """Return a validated ``schema`` instance or raise ``MalformedResponse``."""
        raw_output = await self.runnable.ainvoke(messages)
        return normalize_structured_output(raw_output=raw_output, schema=self.schema)


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Return OPENAI_API_KEY, loading ``<repo_root>/.env`` first when present.

    Raises:
        RuntimeError: If the key is still unset.
    """
    env_path = (repo_root if repo_root is not None else Path.cwd()) / ".env"
    if env_path.is_file():
        load_dotenv(env_path)
    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for the reasoning adapter")
    return key


def build_chat_model(options: ChatModelOptions, *, repo_root: Path | None = None) -> ChatOpenAI:
    ensure_openai_api_key(repo_root=repo_root)
    return ChatOpenAI(**options.client_kwargs())


def _unwrap_envelope(raw_output: Any, schema_name: str) -> Any:
    """Strip the ``include_raw=True`` envelope, surfacing its parsing error."""
    if not (isinstance(raw_output, dict) and "parsed" in raw_output and "parsing_error" in raw_output):
        return raw_output
    parsing_error = raw_output.get("parsing_error")
    if parsing_error is not None:
        raise MalformedResponse(detail=f"structured output parsing failed for {schema_name}: {parsing_error!r}")
    parsed = raw_output.get("parsed")
    if parsed is None:
        raise MalformedResponse(detail=f"no parsed payload for {schema_name}")
    return parsed


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Coerce an envelope, a pydantic instance or a plain dict into ``schema``.

    Raises:
        MalformedResponse: For any other shape or a failed validation.
    """
    payload = _unwrap_envelope(raw_output, schema.__name__)
    if isinstance(payload, schema):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    if not isinstance(payload, dict):
        raise MalformedResponse(
            detail=f"{schema.__name__} returned unsupported payload type {type(payload).__name__}"
        )
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        logger.debug("Rejected %s payload: %s", schema.__name__, payload)
        raise MalformedResponse(detail=f"validation failed for {schema.__name__}: {exc}") from exc


def get_structured_chat_model(
    *,
    model_name: str,
    schema: type[ModelT],
    temperature: float = 0.0,
    max_completion_tokens: int | None = None,
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[ModelT]:
    """Bind ``schema`` to a function-calling chat model.

    The runnable always returns the raw envelope so that a parse failure is
    reported as data rather than raised from inside langchain.

    Raises:
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    options = ChatModelOptions(
        model_name=model_name,
        temperature=temperature,
        max_completion_tokens=max_completion_tokens,
    )
    runnable = build_chat_model(options, repo_root=repo_root).with_structured_output(
        schema,
        method="function_calling",
        include_raw=True,
        strict=False,
    )
    return StructuredOutputAdapter(schema=schema, runnable=runnable)
