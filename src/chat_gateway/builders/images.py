"""Image-generation payloads (AIML Flux, Imagen).

Both endpoints answer with a single JSON document instead of a stream.
"""

from __future__ import annotations

from typing import Any, Sequence

from chat_gateway.errors import ProviderRequestError
from chat_gateway.types import (
    AiRequestContext,
    AiRequestPayload,
    PluginDefinition,
    ProviderType,
)

_IMAGEN_ASPECT = {
    "square": "1:1",
    "square_hd": "1:1",
    "landscape_16_9": "16:9",
    "landscape_4_3": "4:3",
    "portrait_16_9": "9:16",
    "portrait_4_3": "3:4",
}


def _prompt(context: AiRequestContext) -> str:
    prompt = context.latest_user_text()
    if not prompt:
        raise ProviderRequestError("Image generation requires a text prompt")
    return prompt


class AimlFluxPayloadBuilder:
    provider = ProviderType.AIMLFLUX

    def __init__(self, base_url: str, extra_headers: dict[str, str] | None = None) -> None:
        self._url = f"{base_url.rstrip('/')}/images/generations"
        self._headers = dict(extra_headers or {})

    def build(
        self,
        context: AiRequestContext,
        tools: Sequence[PluginDefinition] | None = None,
    ) -> AiRequestPayload:
        gen = context.generation
        body: dict[str, Any] = {
            "model": context.model.name,
            "prompt": _prompt(context),
            "image_size": gen.image_size or "landscape_16_9",
            "num_images": max(1, gen.num_images),
            "output_format": gen.output_format or "jpeg",
            "enable_safety_checker": True,
            "safety_tolerance": gen.safety_tolerance or "2",
        }
        return AiRequestPayload(
            self.provider, self._url, body, self._headers, stream=False, framing="json",
        )


class ImagenPayloadBuilder:
    provider = ProviderType.IMAGEN

    def __init__(self, base_url: str, extra_headers: dict[str, str] | None = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = dict(extra_headers or {})

    def build(
        self,
        context: AiRequestContext,
        tools: Sequence[PluginDefinition] | None = None,
    ) -> AiRequestPayload:
        gen = context.generation
        parameters: dict[str, Any] = {
            "sampleCount": max(1, gen.num_images),
            "aspectRatio": _IMAGEN_ASPECT.get(gen.image_size or "", "1:1"),
        }
        if gen.output_format:
            parameters["outputOptions"] = {"mimeType": f"image/{gen.output_format}"}
        return AiRequestPayload(
            provider=self.provider,
            url=f"{self._base_url}/models/{context.model.name}:predict",
            body={"instances": [{"prompt": _prompt(context)}], "parameters": parameters},
            headers=self._headers,
            stream=False,
            framing="json",
            auth_header="x-goog-api-key",
            auth_scheme="",
        )
