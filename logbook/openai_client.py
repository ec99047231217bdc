"""
Thin wrapper around the OpenAI API used by the note pipeline.

Behaviour hierarchy:
1. If USE_OFFLINE_MODEL is set, no external call is made and every helper
   raises ``RuntimeError`` so callers take their deterministic fallback.
2. Otherwise the real OpenAI API is called with the configured key.

Any exception raised by the SDK (network, HTTP status, malformed payload) is
converted into a RuntimeError so callers have a consistent error path.
"""

import io
import json
from typing import Any, Dict, List, Mapping, Optional

from openai import OpenAI

from logbook.config import get_settings
from logbook.key_manager import get_api_key


def _use_offline() -> bool:
    return get_settings().use_offline_model


def ai_available() -> bool:
    """Return ``True`` when remote AI calls can be attempted."""

    return not _use_offline() and bool(get_api_key())


def _client() -> OpenAI:
    if _use_offline():
        raise RuntimeError("Offline mode enabled; remote AI calls are disabled.")
    api_key = get_api_key()
    if not api_key:
        raise RuntimeError("OpenAI key not configured.")
    return OpenAI(api_key=api_key)


def call_openai(
    messages: List[Dict[str, str]],
    model: Optional[str] = None,
    temperature: float = 0,
    max_tokens: int = 256,
) -> str:
    """Chat completion returning the assistant's text.

    Raises:
        RuntimeError on any failure, including offline mode.
    """
    client = _client()
    try:
        response = client.chat.completions.create(
            model=model or get_settings().ai_model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        content = response.choices[0].message.content
    except Exception as exc:  # pragma: no cover - network errors / SDK issues
        raise RuntimeError(f"Error calling OpenAI: {exc}") from exc
    return (content or "").strip()


def call_openai_tool(
    messages: List[Dict[str, str]],
    tool: Mapping[str, Any],
    model: Optional[str] = None,
    max_tokens: int = 300,
) -> Dict[str, Any]:
    """Force a single function call and return its decoded arguments.

    An empty dict is returned when the model produced no tool call.

    Raises:
        RuntimeError on network failures or when the arguments are not a
        JSON object.
    """
    client = _client()
    name = tool["function"]["name"]
    try:
        response = client.chat.completions.create(
            model=model or get_settings().ai_model,
            messages=messages,
            tools=[dict(tool)],
            tool_choice={"type": "function", "function": {"name": name}},
            temperature=0,
            max_tokens=max_tokens,
        )
        tool_calls = response.choices[0].message.tool_calls or []
    except Exception as exc:  # pragma: no cover - network errors / SDK issues
        raise RuntimeError(f"Error calling OpenAI: {exc}") from exc
    if not tool_calls:
        return {}
    raw_arguments = tool_calls[0].function.arguments or "{}"
    try:
        arguments = json.loads(raw_arguments)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Malformed tool arguments: {exc}") from exc
    if not isinstance(arguments, dict):
        raise RuntimeError("Tool arguments must be a JSON object")
    return arguments


def transcribe_audio(data: bytes, filename: str = "clip.webm", model: Optional[str] = None) -> str:
    """Return the transcript of an audio clip using the OpenAI audio API."""

    client = _client()
    buffer = io.BytesIO(data)
    buffer.name = filename
    try:
        result = client.audio.transcriptions.create(
            model=model or get_settings().ai_transcribe_model,
            file=buffer,
            language="en",
        )
    except Exception as exc:  # pragma: no cover - network errors / SDK issues
        raise RuntimeError(f"Error transcribing audio: {exc}") from exc
    return (getattr(result, "text", "") or "").strip()


__all__ = ["ai_available", "call_openai", "call_openai_tool", "transcribe_audio"]
