import re
import time
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional, Type, TypeVar

from langchain_ollama import ChatOllama
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel
import httpx

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def extract_json(content: str) -> str:
    """
    Extract JSON from LLM response, stripping markdown code blocks if present.
    """
    content = content.strip()

    # Remove markdown code blocks (```json ... ``` or ``` ... ```)
    pattern = r'^```(?:json)?\s*\n?(.*?)\n?```$'
    match = re.match(pattern, content, re.DOTALL)
    if match:
        return match.group(1).strip()

    # Try to find a JSON object in the content
    object_match = re.search(r'\{.*\}', content, re.DOTALL)
    if object_match:
        return object_match.group(0)

    return content


class BaseLLMClient(ABC):
    """
    Scoring and generation capabilities on top of a single completion call.
    """

    @abstractmethod
    async def complete(self, prompt: str, system: Optional[str] = None) -> Dict[str, Any]:
        """
        Return {"content": str, "latency_ms": int} for a prompt.
        """
        raise NotImplementedError

    async def generate_structured(
        self,
        prompt: str,
        schema: Type[ModelT],
        system: Optional[str] = None,
    ) -> ModelT:
        """
        Ask for JSON matching `schema`.
        Raises pydantic.ValidationError when the output does not validate.
        """
        response = await self.complete(prompt, system=system)
        raw_content = response["content"]
        logger.debug(f"Structured response ({response.get('latency_ms', 0)}ms): {raw_content[:300]}")
        return schema.model_validate_json(extract_json(raw_content))

    async def generate_text(self, prompt: str, system: Optional[str] = None) -> str:
        response = await self.complete(prompt, system=system)
        return response["content"].strip()


class OllamaClient(BaseLLMClient):
    """
    LangChain-based Ollama client with retry logic and proper connection handling.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        temperature: float = 0.1,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        timeout: float = 120.0,
    ):
        # ChatOllama uses Ollama's native API, not OpenAI-compatible /v1 endpoint
        # Strip /v1 suffix if present
        if base_url.endswith("/v1"):
            base_url = base_url[:-3]
        elif base_url.endswith("/v1/"):
            base_url = base_url[:-4]

        self.base_url = base_url.rstrip('/')
        self.model = model
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout

        self.llm = ChatOllama(
            base_url=self.base_url,
            model=model,
            temperature=temperature,
            num_ctx=4096,  # Context window size
        )

    async def _invoke_with_retry(self, messages: List[BaseMessage]) -> Any:
        """
        Invoke LLM with retry logic for connection failures.
        """
        last_exception = None

        for attempt in range(1, self.max_retries + 1):
            try:
                response = await asyncio.wait_for(
                    self.llm.ainvoke(messages),
                    timeout=self.timeout,
                )
                return response

            except asyncio.TimeoutError:
                last_exception = TimeoutError(
                    f"Request timed out after {self.timeout}s"
                )
                logger.warning(
                    f"Attempt {attempt}/{self.max_retries}: Timeout, retrying..."
                )

            except Exception as e:
                last_exception = e
                error_msg = str(e)

                # Check for connection errors
                if "connection" in error_msg.lower() or "connect" in error_msg.lower():
                    logger.warning(
                        f"Attempt {attempt}/{self.max_retries}: Connection error - {error_msg} (base_url={self.base_url}, model={self.model})"
                    )
                else:
                    # For non-connection errors, don't retry
                    raise

            if attempt < self.max_retries:
                delay = self.retry_delay * attempt
                await asyncio.sleep(delay)

        raise last_exception or Exception("All connection attempts failed")

    async def complete(self, prompt: str, system: Optional[str] = None) -> Dict[str, Any]:
        """
        Send a prompt and return the response with metadata.
        """
        start = time.time()

        messages: List[BaseMessage] = []
        if system:
            messages.append(SystemMessage(content=system))
        messages.append(HumanMessage(content=prompt))

        response = await self._invoke_with_retry(messages)

        latency_ms = int((time.time() - start) * 1000)

        return {
            "raw": response,
            "content": response.content,
            "latency_ms": latency_ms,
        }

    async def health_check(self) -> bool:
        """
        Check if the Ollama server is reachable by calling /api/tags.
        """
        url = f"{self.base_url}/api/tags"
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(url)
                if resp.status_code == 200:
                    return True
                logger.error(f"Ollama health check failed: {resp.status_code} {resp.text}")
                return False
        except httpx.HTTPError as e:
            logger.error(f"Ollama health check error: {e} (url={url})")
            return False
