"""Image-generation responses, rendered as one markdown text chunk."""

from __future__ import annotations

from typing import Any

from chat_gateway.types import FinishKind, FinishReason, StreamChunk, TextDelta


def _markdown(urls: list[str]) -> list[StreamChunk]:
    if not urls:
        return [FinishReason(FinishKind.ERROR, "No images were returned")]
    text = "\n\n".join(f"![Generated image {i}]({url})" for i, url in enumerate(urls, 1))
    return [TextDelta(text), FinishReason(FinishKind.STOP)]


class AimlFluxChunkParser:
    """``{"images": [{"url": ..., "content_type": ...}]}``"""

    def parse(self, event: str, data: Any) -> list[StreamChunk]:
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            return [FinishReason(FinishKind.ERROR, message or "image generation failed")]
        urls: list[str] = []
        for image in data.get("images") or data.get("data") or []:
            if image.get("url"):
                urls.append(image["url"])
            elif image.get("b64_json"):
                mime = image.get("content_type", "image/jpeg")
                urls.append(f"data:{mime};base64,{image['b64_json']}")
        return _markdown(urls)


class ImagenChunkParser:
    """``{"predictions": [{"bytesBase64Encoded": ..., "mimeType": ...}]}``"""

    def parse(self, event: str, data: Any) -> list[StreamChunk]:
        if data.get("error"):
            return [FinishReason(FinishKind.ERROR, data["error"].get("message", "image generation failed"))]
        urls = [
            f"data:{p.get('mimeType', 'image/png')};base64,{p['bytesBase64Encoded']}"
            for p in data.get("predictions") or []
            if p.get("bytesBase64Encoded")
        ]
        return _markdown(urls)
