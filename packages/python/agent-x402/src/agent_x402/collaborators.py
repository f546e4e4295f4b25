"""Default adapters for the prompt template and the image backend."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

import httpx

from .config import config_value, load_environment

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_API_URL = "https://open.bigmodel.cn/api/paas/v4/images/generations"
DEFAULT_IMAGE_MODEL = "cogview-3-flash"
DEFAULT_IMAGE_SIZE = "1024x1024"
DEFAULT_IMAGE_PROMPT_PREFIX = "An unusual abstract oil painting: "

ImageGenerator = Callable[[str], str]
PromptGenerator = Callable[[str, Optional[str], Optional[str]], str]


class ImageGenerationError(RuntimeError):
    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


def generate_prompt(topic: str, style: Optional[str] = None, extra: Optional[str] = None) -> str:
    prompt = f"A painting in {style or 'abstract'} style, on the theme of: {topic}"
    if extra:
        prompt += f", {extra}"
    return prompt


class HttpImageGenerator:
    """Client for an OpenAI-style ``images/generations`` endpoint."""

    def __init__(
        self,
        api_key: str,
        *,
        api_url: str = DEFAULT_IMAGE_API_URL,
        model: str = DEFAULT_IMAGE_MODEL,
        size: str = DEFAULT_IMAGE_SIZE,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 60.0,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.model = model
        self.size = size
        self._client = http_client or httpx.Client(timeout=timeout)

    @classmethod
    def from_env(cls, **kwargs: Any) -> "HttpImageGenerator":
        load_environment()
        return cls(
            config_value(("IMAGE_API_KEY", "ZHIPUAI_API_KEY")),
            api_url=config_value("IMAGE_API_URL", required=False, default=DEFAULT_IMAGE_API_URL),
            **kwargs,
        )

    def __call__(self, prompt: str) -> str:
        return self.generate_image(prompt)

    def generate_image(self, prompt: str) -> str:
        if not prompt or not prompt.strip():
            raise ValueError("prompt must be a non-empty string")
        body: Dict[str, Any] = {
            "model": self.model,
            "prompt": prompt.strip(),
            "size": self.size,
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        logger.info("requesting image model=%s size=%s", self.model, self.size)
        try:
            response = self._client.post(self.api_url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise ImageGenerationError(f"image backend unreachable: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise ImageGenerationError(
                f"image backend returned invalid JSON (HTTP {response.status_code})", status=response.status_code
            ) from exc
        if not response.is_success:
            error = payload.get("error") if isinstance(payload, dict) else None
            message = error.get("message") if isinstance(error, dict) else error
            raise ImageGenerationError(
                f"image backend rejected the request: {message or response.status_code}",
                status=response.status_code,
            )

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list) or not data or not isinstance(data[0], dict) or not data[0].get("url"):
            raise ImageGenerationError("image backend response has no image url", status=response.status_code)
        url = str(data[0]["url"])
        logger.info("image generated url=%s", url)
        return url

    def close(self) -> None:
        self._client.close()
