"""Inference client for the multi-model chat completions API."""

from typing import Any, Dict, List, NamedTuple, Optional, Sequence

import httpx
import structlog
from pydantic import BaseModel

from ..domain.models import Message

logger = structlog.get_logger()

OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"

EMPTY_RESPONSE = "(empty response)"


class InferenceError(Exception):
    """Non-2xx or malformed response from the inference API."""


class InferenceReply(BaseModel):
    """The three optional payload fields of a completion."""

    content: Optional[str] = None
    reasoning: Optional[str] = None
    images: List[str] = []


class ComposedReply(NamedTuple):
    content: str
    reasoning: Optional[str]
    images: List[str]


def to_provider_message(message: Message) -> Dict[str, Any]:
    """Convert a message to the provider's shape; attachments become content parts."""
    if not message.attachments:
        return {"role": message.role.value, "content": message.content}
    parts: List[Dict[str, Any]] = []
    if message.content:
        parts.append({"type": "text", "text": message.content})
    for attachment in message.attachments:
        parts.append({"type": "image_url", "image_url": {"url": attachment.url}})
    return {"role": message.role.value, "content": parts}


def _text_of(content: Any) -> Optional[str]:
    if content is None or isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        ]
        return "".join(texts)
    return str(content)


def _image_url(item: Any) -> Optional[str]:
    if isinstance(item, str):
        return item
    if isinstance(item, dict):
        nested = item.get("image_url")
        if isinstance(nested, dict) and nested.get("url"):
            return nested["url"]
        if isinstance(nested, str):
            return nested
        if item.get("url"):
            return item["url"]
    return None


def parse_reply(data: Any) -> InferenceReply:
    """Pull content, reasoning and images out of a completion body."""
    try:
        message = data["choices"][0]["message"]
    except (KeyError, IndexError, TypeError) as e:
        raise InferenceError(f"Malformed completion response: {e}") from e
    if not isinstance(message, dict):
        raise InferenceError("Malformed completion response: message is not an object")

    images = [url for url in (_image_url(item) for item in message.get("images") or []) if url]
    return InferenceReply(
        content=_text_of(message.get("content")),
        reasoning=_text_of(message.get("reasoning")),
        images=images,
    )


def compose_reply(reply: InferenceReply) -> ComposedReply:
    """Choose what to show as the assistant's message.

    Precedence: answer text, reasoning, an image count, then an explicit
    empty marker. Reasoning is kept as auxiliary detail only when it is not
    the primary content already.
    """
    content = (reply.content or "").strip()
    reasoning = (reply.reasoning or "").strip()

    if content:
        primary = reply.content
    elif reasoning:
        primary = reply.reasoning
    elif reply.images:
        count = len(reply.images)
        primary = f"{count} image{'s' if count != 1 else ''} generated"
    else:
        primary = EMPTY_RESPONSE

    auxiliary = reply.reasoning if reasoning and reasoning != primary.strip() else None
    return ComposedReply(content=primary, reasoning=auxiliary, images=list(reply.images))


class InferenceClient:
    """Sends the conversation history to the completions endpoint."""

    def __init__(
        self,
        url: str = OPENROUTER_URL,
        referer: str = "http://localhost:8000",
        title: str = "aiWeb",
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self.referer = referer
        self.title = title
        # No timeout: long generations are allowed to finish.
        self._http = http_client or httpx.AsyncClient(timeout=None)
        logger.info("inference_client_init", url=url)

    async def aclose(self) -> None:
        await self._http.aclose()

    def build_payload(self, model: str, messages: Sequence[Message]) -> Dict[str, Any]:
        return {"model": model, "messages": [to_provider_message(m) for m in messages]}

    async def complete(
        self, api_key: str, model: str, messages: Sequence[Message]
    ) -> InferenceReply:
        """Run one completion. Raises InferenceError on any failure."""
        headers = {
            "Authorization": f"Bearer {api_key}",
            "HTTP-Referer": self.referer,
            "X-Title": self.title,
            "Content-Type": "application/json",
        }
        try:
            response = await self._http.post(
                self.url, json=self.build_payload(model, messages), headers=headers
            )
        except httpx.HTTPError as e:
            logger.error("inference_request_error", model=model, error=str(e))
            raise InferenceError(f"Request failed: {e}") from e

        if response.status_code >= 400:
            logger.error("inference_api_error", model=model, status_code=response.status_code)
            raise InferenceError(f"API error: {response.status_code}")
        try:
            data = response.json()
        except ValueError as e:
            raise InferenceError("Response is not JSON") from e

        reply = parse_reply(data)
        logger.info(
            "inference_completed",
            model=model,
            content_length=len(reply.content or ""),
            has_reasoning=bool(reply.reasoning),
            image_count=len(reply.images),
        )
        return reply
