"""
LLM Client - OpenAI 호환 Chat Completions API 클라이언트

Connection pooling, retry, timeout을 지원합니다.
목표 분해 Provider가 사용하며, 실패는 LLMError로 보고되어
호출 측(분해기)이 fallback으로 전환할 수 있게 합니다.
"""

import asyncio
import json
import logging
import os
from typing import Dict, List, Optional

import aiohttp

from errors import LLMError

logger = logging.getLogger(__name__)


class LLMClient:
    """
    LLM API 클라이언트

    Example:
        client = LLMClient(api_key="...")
        content = await client.call([{"role": "user", "content": "hi"}])
        await client.close()
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self.api_url = api_url or os.getenv("LLM_API_URL", "https://api.openai.com/v1/chat/completions")
        self.api_key = api_key if api_key is not None else os.getenv("LLM_API_KEY", "")
        self.model = model or os.getenv("LLM_MODEL", "gpt-4o-mini")
        self.default_temperature = float(os.getenv("LLM_TEMPERATURE", "0.3"))
        self.timeout = aiohttp.ClientTimeout(total=60, connect=10)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def _get_session(self) -> aiohttp.ClientSession:
        """세션 재사용 (Connection pooling)"""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=20, limit_per_host=10)
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=self.timeout
            )
        return self._session

    async def close(self):
        """세션 종료"""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def call(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int = 1000,
        temperature: Optional[float] = None,
        json_mode: bool = False
    ) -> str:
        """
        LLM API 호출 with retry & timeout

        Raises:
            LLMError: API 키 미설정, 또는 재시도 후에도 실패
        """
        if not self.api_key:
            raise LLMError("LLM_API_KEY not set")

        session = await self._get_session()

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}"
        }

        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature if temperature is not None else self.default_temperature,
            "stream": False
        }

        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        last_error = None
        last_status = None
        logger.debug(f"[LLM] Calling {self.api_url}, model={self.model}, messages={len(messages)}")
        for attempt in range(self.max_retries):
            try:
                async with session.post(self.api_url, headers=headers, json=payload) as response:
                    if response.status == 200:
                        data = await response.json()
                        return self._extract_content(data)
                    elif response.status == 429:
                        retry_after = float(response.headers.get("Retry-After", self.retry_delay * (attempt + 1)))
                        logger.warning(f"[LLM] Rate limited, waiting {retry_after}s...")
                        await asyncio.sleep(retry_after)
                        last_status = 429
                        last_error = "Rate limited"
                        continue
                    else:
                        error_text = await response.text()
                        last_status = response.status
                        last_error = f"API Error ({response.status}): {error_text[:200]}"
                        logger.warning(f"[LLM] {last_error}")

            except asyncio.TimeoutError:
                last_error = "Timeout"
                logger.warning(f"[LLM] Timeout on attempt {attempt + 1}")
            except aiohttp.ClientError as e:
                last_error = str(e)
                logger.warning(f"[LLM] Error on attempt {attempt + 1}: {e}")

            if attempt < self.max_retries - 1:
                await asyncio.sleep(self.retry_delay * (attempt + 1))

        raise LLMError(last_error or "Unknown error", status=last_status)

    @staticmethod
    def _extract_content(data: Dict) -> str:
        # OpenAI 형식
        content = ""
        if "choices" in data and data["choices"]:
            choice = data["choices"][0]
            if "message" in choice:
                content = choice["message"].get("content") or ""
            elif "text" in choice:
                content = choice["text"]

        # Anthropic 형식 대응
        if not content and "content" in data:
            if isinstance(data["content"], list):
                for item in data["content"]:
                    if item.get("type") == "text":
                        content = item.get("text", "")
                        break
            elif isinstance(data["content"], str):
                content = data["content"]

        if not content:
            raise LLMError(f"Empty completion: {json.dumps(data)[:200]}")
        return content
