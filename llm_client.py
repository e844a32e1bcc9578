from __future__ import annotations

import json
import logging
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from config import Settings, get_settings
from errors import ProviderError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a friendly budget assistant."
GENERIC_FAILURE = "AI request failed. Please try again."


class ChatCompletionProvider:
    """Calls an OpenAI-compatible ``/chat/completions`` endpoint.

    Instances are callables ``provider(prompt) -> text`` so they can be passed
    wherever a generation function is expected.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def __call__(self, prompt: str) -> str:
        return self.generate(prompt)

    def generate(self, prompt: str) -> str:
        if not self.settings.llm_api_key:
            logger.error("llm_call_failed: reason=missing_api_key")
            raise ProviderError(GENERIC_FAILURE)

        payload = self._build_payload(prompt)
        req = Request(
            f"{self.settings.llm_base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self.settings.llm_api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(req, timeout=self.settings.llm_timeout_secs) as resp:
                body = json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            logger.error(f"llm_call_failed: status={exc.code} reason={exc.reason}")
            raise ProviderError(GENERIC_FAILURE) from exc
        except (URLError, TimeoutError, OSError) as exc:
            logger.error(f"llm_call_failed: transport_error={exc}")
            raise ProviderError(GENERIC_FAILURE) from exc
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.error("llm_call_failed: reason=undecodable_body")
            raise ProviderError(GENERIC_FAILURE) from exc

        return extract_completion_text(body)

    def _build_payload(self, prompt: str) -> dict[str, object]:
        return {
            "model": self.settings.llm_model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.settings.llm_temperature,
            "max_tokens": self.settings.llm_max_tokens,
        }


def extract_completion_text(body: object) -> str:
    try:
        content = body["choices"][0]["message"]["content"]  # type: ignore[index]
    except (KeyError, IndexError, TypeError) as exc:
        logger.error("llm_call_failed: reason=malformed_response")
        raise ProviderError(GENERIC_FAILURE) from exc
    if not isinstance(content, str) or not content.strip():
        logger.error("llm_call_failed: reason=empty_response")
        raise ProviderError(GENERIC_FAILURE)
    return content.strip()
