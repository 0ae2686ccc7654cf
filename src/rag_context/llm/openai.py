"""OpenAI chat completion provider."""

from typing import Any

from rag_context.llm.base import LanguageModelProvider


class OpenAIChatProvider(LanguageModelProvider):
    """Language model provider backed by the OpenAI chat completions API."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        temperature: float = 0.3,
        max_tokens: int = 800,
    ) -> None:
        """Initialize OpenAI chat provider.

        Args:
            api_key: OpenAI API key
            model: Chat model name
            temperature: Sampling temperature
            max_tokens: Maximum tokens in the completion
        """
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client: Any | None = None

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError as e:
                raise ImportError(
                    "openai is not installed. " 'Install with: pip install "rag-context[openai]"'
                ) from e

            self._client = AsyncOpenAI(api_key=self.api_key)

        return self._client

    async def generate(self, system_prompt: str, query: str) -> str:
        """Generate a response from the chat model.

        Raises:
            RuntimeError: If the model returned no content
        """
        client = self._get_client()
        response = await client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": query},
            ],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        content = response.choices[0].message.content
        if not content:
            raise RuntimeError("Language model returned an empty response")
        return content
