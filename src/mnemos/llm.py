"""
mnemos LLM -- client for the judgment LLM used to classify memory pairs.

The judgment LLM is any OpenAI-compatible ``/chat/completions`` endpoint
(Ollama, llama.cpp server, LM Studio, a hosted API). Every call carries a
bounded timeout and is never retried here; callers record failures per item.
"""

import json
import logging
import socket
import urllib.error
import urllib.request
from typing import Any, Dict, Optional

from mnemos.errors import ClassificationParseError, LLMError, LLMTimeoutError

logger = logging.getLogger("mnemos.llm")

_DECODER = json.JSONDecoder()


def extract_json_object(text: str) -> Dict[str, Any]:
    """Return the first well-formed JSON object embedded in ``text``.

    Tolerates surrounding prose and markdown fences. Raises
    ClassificationParseError when no object can be decoded.
    """
    if not text:
        raise ClassificationParseError("empty response")
    start = text.find("{")
    while start != -1:
        try:
            obj, _ = _DECODER.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(obj, dict):
            return obj
        start = text.find("{", start + 1)
    raise ClassificationParseError(f"no JSON object in response: {text[:120]!r}")


class JudgmentClient:
    """Interface for the judgment LLM: ``classify(prompt, ...) -> raw text``."""

    def classify(
        self,
        prompt: str,
        temperature: float = 0.1,
        max_output_tokens: int = 200,
        timeout: float = 15.0,
    ) -> str:
        raise NotImplementedError


class OpenAICompatibleClient(JudgmentClient):
    """Judgment LLM over an OpenAI-compatible HTTP API (stdlib urllib)."""

    def __init__(self, base_url: str, model: str, api_key: Optional[str] = None, timeout: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout

    def classify(
        self,
        prompt: str,
        temperature: float = 0.1,
        max_output_tokens: int = 200,
        timeout: Optional[float] = None,
    ) -> str:
        body = json.dumps(
            {
                "model": self.model,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": temperature,
                "max_tokens": max_output_tokens,
            }
        ).encode()
        headers = {"Content-Type": "application/json", "User-Agent": "mnemos/1.0"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        req = urllib.request.Request(f"{self.base_url}/chat/completions", data=body, headers=headers, method="POST")

        try:
            with urllib.request.urlopen(req, timeout=timeout or self.timeout) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except socket.timeout as e:
            raise LLMTimeoutError(f"judgment LLM timed out after {timeout or self.timeout}s") from e
        except urllib.error.HTTPError as e:
            raise LLMError(f"judgment LLM returned HTTP {e.code}: {e.reason}") from e
        except urllib.error.URLError as e:
            if isinstance(e.reason, socket.timeout):
                raise LLMTimeoutError(f"judgment LLM timed out after {timeout or self.timeout}s") from e
            raise LLMError(f"judgment LLM unreachable at {self.base_url}: {e.reason}") from e
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise LLMError(f"judgment LLM returned a non-JSON body: {e}") from e

        try:
            return payload["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError(f"unexpected judgment LLM response shape: {str(payload)[:200]}") from e


def client_from_config(llm_config) -> OpenAICompatibleClient:
    return OpenAICompatibleClient(
        base_url=llm_config.base_url,
        model=llm_config.model,
        api_key=llm_config.api_key,
        timeout=llm_config.timeout,
    )
