from __future__ import annotations

import base64
import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

import httpx

from .errors import (
    BackendError,
    GatewayError,
    InsufficientResourcesError,
    ModelNotFoundError,
    TransportError,
    ValidationError,
)

log = logging.getLogger("llm-jobs")

EXTRACTION_PROMPT: str = (
    "Please carefully extract and transcribe all text visible in this image. "
    "Return your response as a JSON object with the following structure: "
    '{"original_text": "[extracted text]"}'
)

MULTIMODAL_MODELS: tuple[str, ...] = ("gemma3:4b", "llava:7b", "minicpm-v:8b")

MEMORY_ERROR_PHRASES: tuple[str, ...] = (
    "model requires more system memory",
    "not enough memory",
    "insufficient memory",
    "out of memory",
    "memory allocation failed",
)

MemoryMatcher = Callable[[str], bool]


def phrase_matcher(phrases: Iterable[str]) -> MemoryMatcher:
    """Case-insensitive substring matcher over a fixed set of phrasings."""
    lowered = tuple(p.lower() for p in phrases)

    def _match(message: str) -> bool:
        text = message.lower()
        return any(p in text for p in lowered)

    return _match


is_memory_error: MemoryMatcher = phrase_matcher(MEMORY_ERROR_PHRASES)


def parse_extraction(response_text: str, model: str, filename: str) -> Dict[str, Any]:
    """Pull the JSON object out of a free-text extraction answer.

    The model is asked for JSON but often wraps it in prose or markdown, so
    everything between the first "{" and the last "}" is tried. Anything that
    does not parse comes back as the raw text with a warning.
    """
    start = response_text.find("{")
    end = response_text.rfind("}") + 1
    if start >= 0 and end > start:
        try:
            data = json.loads(response_text[start:end])
        except ValueError:
            data = None
        if isinstance(data, dict):
            result: Dict[str, Any] = {"file_processed": filename, "model": model}
            if "original_text" in data:
                result["original_text"] = data["original_text"]
            return result

    return {
        "warning": "Could not parse structured data from LLM response",
        "raw_response": response_text,
        "file_processed": filename,
        "model": model,
    }


class OllamaClient:
    """Async adapter over an Ollama-compatible HTTP API.

    Every operation either returns a decoded payload or raises a GatewayError
    subclass; httpx exceptions never leak out.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 120.0,
        memory_matcher: Optional[MemoryMatcher] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._is_memory_error = memory_matcher or is_memory_error
        self._http = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "OllamaClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ---------------- error handling ----------------

    def classify_error(self, message: str) -> GatewayError:
        if "not found" in message.lower():
            return ModelNotFoundError()
        if self._is_memory_error(message):
            return InsufficientResourcesError()
        return BackendError(f"ollama error: {message}")

    def _decode(self, resp: httpx.Response) -> Dict[str, Any]:
        try:
            body = resp.json()
        except ValueError as e:
            if resp.is_success:
                raise TransportError(f"error parsing backend response: {e}") from e
            raise TransportError(f"backend API error: status {resp.status_code}") from e

        if isinstance(body, dict) and isinstance(body.get("error"), str):
            raise self.classify_error(body["error"])
        if not resp.is_success:
            raise TransportError(f"backend API error: status {resp.status_code}")
        if not isinstance(body, dict):
            raise TransportError("unexpected response shape from backend")
        return body

    async def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            return await self._http.request(method, path, json=payload)
        except httpx.HTTPError as e:
            raise TransportError(f"error contacting backend: {e}") from e

    async def _lines(self, path: str, payload: Dict[str, Any]) -> AsyncIterator[str]:
        try:
            async with self._http.stream("POST", path, json=payload) as resp:
                if not resp.is_success:
                    await resp.aread()
                    self._decode(resp)
                async for line in resp.aiter_lines():
                    line = line.strip()
                    if line:
                        yield line
        except httpx.HTTPError as e:
            raise TransportError(f"error contacting backend: {e}") from e

    @staticmethod
    def _require_model(model: str) -> None:
        if not model:
            raise ValidationError("model is required")

    # ---------------- inference ----------------

    async def generate(self, model: str, prompt: str) -> Dict[str, Any]:
        self._require_model(model)
        resp = await self._request("POST", "/api/generate", {"model": model, "prompt": prompt, "stream": False})
        body = self._decode(resp)
        return {"model": model, "response": body.get("response")}

    async def chat(self, model: str, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        """Chat completion from either one JSON object or NDJSON fragments.

        Fragment contents are joined in arrival order. An error carried by any
        fragment is raised as soon as it is read.
        """
        self._require_model(model)
        log.info("chat request model=%s messages=%d", model, len(messages))
        parts: List[str] = []
        last: Optional[Dict[str, Any]] = None

        async for line in self._lines("/api/chat", {"model": model, "messages": messages}):
            try:
                obj = json.loads(line)
            except ValueError:
                log.warning("chat: skipping unparseable line from backend model=%s line=%r", model, line[:200])
                continue
            if not isinstance(obj, dict):
                continue
            if isinstance(obj.get("error"), str):
                raise self.classify_error(obj["error"])

            last = obj
            message = obj.get("message")
            if isinstance(message, dict) and isinstance(message.get("content"), str):
                parts.append(message["content"])

        if parts:
            return {"model": model, "response": "".join(parts)}
        if last is not None and "response" in last:
            return {"model": model, "response": last["response"]}
        raise BackendError("no valid response from backend")

    async def extract_text(self, model: str, image_bytes: bytes, filename: str) -> Dict[str, Any]:
        self._require_model(model)
        payload = {
            "model": model,
            "prompt": EXTRACTION_PROMPT,
            "images": [base64.b64encode(image_bytes).decode("ascii")],
            "stream": False,
        }
        resp = await self._request("POST", "/api/generate", payload)
        body = self._decode(resp)
        response_text = body.get("response")
        if not isinstance(response_text, str):
            raise TransportError("invalid response format from backend")
        return parse_extraction(response_text, model, filename)

    # Streaming variants relay backend lines untouched; used by the live proxy routes.

    def stream_generate(self, model: str, prompt: str) -> AsyncIterator[str]:
        self._require_model(model)
        return self._lines("/api/generate", {"model": model, "prompt": prompt, "stream": True})

    def stream_chat(self, model: str, messages: List[Dict[str, str]]) -> AsyncIterator[str]:
        self._require_model(model)
        return self._lines("/api/chat", {"model": model, "messages": messages, "stream": True})

    # ---------------- model management ----------------

    async def list_models(self) -> List[str]:
        body = self._decode(await self._request("GET", "/api/tags"))
        models = body.get("models")
        if not isinstance(models, list):
            raise TransportError("invalid JSON format: 'models' field missing or incorrect")
        return [m["name"] for m in models if isinstance(m, dict) and isinstance(m.get("name"), str)]

    async def add_model(self, model: str) -> Dict[str, Any]:
        self._require_model(model)
        return self._decode(await self._request("POST", "/api/pull", {"model": model, "stream": False}))

    async def delete_model(self, model: str) -> None:
        self._require_model(model)
        resp = await self._request("DELETE", "/api/delete", {"model": model})
        if not resp.is_success:
            self._decode(resp)
