"""
Client for an OpenAI-compatible chat-completion endpoint.

Every failure mode (timeout, transport error, non-2xx, unparseable body)
is raised as UpstreamFailure so callers handle a single error type.
"""

import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from gateway.errors import UpstreamFailure
from gateway.schemas import ChatCompletionRequest, ChatCompletionResponse, ChatMessage

logger = logging.getLogger(__name__)


class ChatModelClient:
    """
    Sends a single-message chat completion request with bearer auth.

    Args:
        endpoint: Full URL of the chat completions endpoint
        api_key: Bearer token
        model: Model name placed in every request
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        model: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = endpoint
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self._transport = transport

    def _build_headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def complete(self, prompt: str) -> ChatCompletionResponse:
        """
        Ask the model a single user-role question.

        Raises:
            UpstreamFailure: on any network, status or parsing problem
        """
        request = ChatCompletionRequest(
            model=self.model,
            messages=[ChatMessage(role="user", content=prompt)],
        )
        logger.info(f"Calling model {self.model}: prompt length {len(prompt)}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.endpoint,
                    json=request.model_dump(),
                    headers=self._build_headers(),
                )
                response.raise_for_status()
                body = response.json()

        except httpx.TimeoutException as e:
            logger.warning(f"Model request timed out after {self.timeout}s")
            raise UpstreamFailure("timeout") from e

        except httpx.HTTPStatusError as e:
            logger.warning(f"Model request failed with status {e.response.status_code}")
            raise UpstreamFailure(f"http_{e.response.status_code}") from e

        except httpx.HTTPError as e:
            logger.warning(f"Model request transport error: {type(e).__name__}")
            raise UpstreamFailure("transport_error") from e

        except ValueError as e:
            logger.warning("Model response is not valid JSON")
            raise UpstreamFailure("invalid_json") from e

        try:
            completion = ChatCompletionResponse.model_validate(body)
        except ValidationError as e:
            logger.warning(f"Model response has unexpected shape: {e.error_count()} error(s)")
            raise UpstreamFailure("invalid_response") from e

        logger.debug(f"Model returned {len(completion.choices)} choice(s)")
        return completion
