"""Content summarizers used to write cluster summary memories.

The consolidation engine only orchestrates; the text itself comes from a
:class:`Summarizer`.  Two implementations ship:

- :class:`ExtractiveSummarizer` -- offline and deterministic.  Keeps the
  leading sentence of each distinct member content.
- :class:`OllamaSummarizer` -- asks a local Ollama daemon through its
  ``/api/generate`` REST endpoint.

Every failure surfaces as :class:`~memcycle.errors.SummarizerError` so a
failed summary aborts only the cluster being committed.
"""

from __future__ import annotations

import logging
import re
from typing import Protocol, runtime_checkable

import httpx

from memcycle.config import MemcycleConfig, get_config
from memcycle.errors import SummarizerError, ValidationError

log = logging.getLogger(__name__)

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


@runtime_checkable
class Summarizer(Protocol):
    async def summarize(self, contents: list[str], topic: str | None = None) -> str:
        ...


class ExtractiveSummarizer:
    """Join the first sentence of every distinct content.

    Parameters
    ----------
    max_chars:
        Hard cap on the summary length.  Longer output is cut at the last
        word boundary and ends with an ellipsis.
    """

    def __init__(self, max_chars: int = 1000) -> None:
        self._max_chars = max_chars

    async def summarize(self, contents: list[str], topic: str | None = None) -> str:
        seen: set[str] = set()
        sentences: list[str] = []
        for content in contents:
            text = " ".join(content.split())
            if not text:
                continue
            lead = _SENTENCE_END.split(text, maxsplit=1)[0]
            key = lead.lower()
            if key in seen:
                continue
            seen.add(key)
            if lead[-1] not in ".!?":
                lead += "."
            sentences.append(lead)

        if not sentences:
            raise SummarizerError("nothing to summarize", {"members": len(contents)})

        summary = " ".join(sentences)
        if topic:
            summary = f"{topic}: {summary}"
        if len(summary) > self._max_chars:
            summary = summary[: self._max_chars].rsplit(" ", 1)[0] + "..."
        return summary


class OllamaSummarizer:
    """Summaries generated by a local Ollama model.

    Parameters
    ----------
    base_url:
        Ollama daemon URL, e.g. ``http://localhost:11434``.
    model:
        Model name passed to ``/api/generate``.
    timeout:
        Request timeout in seconds.
    """

    def __init__(self, base_url: str, model: str, timeout: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def _prompt(self, contents: list[str], topic: str | None) -> str:
        lines = "\n".join(f"- {c.strip()}" for c in contents if c.strip())
        about = f' about "{topic}"' if topic else ""
        return (
            f"Write a concise summary of these {len(contents)} related memories{about}. "
            "Keep the concrete facts, drop repetition, no preamble.\n\n"
            f"{lines}\n"
        )

    async def summarize(self, contents: list[str], topic: str | None = None) -> str:
        payload = {
            "model": self.model,
            "prompt": self._prompt(contents, topic),
            "stream": False,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(f"{self.base_url}/api/generate", json=payload)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as exc:
            raise SummarizerError(
                f"Ollama request failed: {exc}", {"model": self.model}
            ) from exc
        except ValueError as exc:
            raise SummarizerError(
                "Ollama returned invalid JSON", {"model": self.model}
            ) from exc

        if not isinstance(data, dict):
            raise SummarizerError(
                "Ollama returned an unexpected payload",
                {"model": self.model, "type": type(data).__name__},
            )
        summary = str(data.get("response", "")).strip()
        if not summary:
            raise SummarizerError("Ollama returned an empty summary", {"model": self.model})
        log.debug("Ollama summary (%d chars) from %d memories", len(summary), len(contents))
        return summary


def build_summarizer(config: MemcycleConfig | None = None) -> Summarizer:
    """Return the summarizer selected by ``config.summarizer``."""
    cfg = config or get_config()
    if cfg.summarizer == "extractive":
        return ExtractiveSummarizer()
    if cfg.summarizer == "ollama":
        return OllamaSummarizer(cfg.ollama_url, cfg.summary_model, cfg.summary_timeout_seconds)
    raise ValidationError(
        f"Unknown summarizer {cfg.summarizer!r}. Must be one of: extractive, ollama",
        {"summarizer": cfg.summarizer},
    )
