"""Abstract base class for language model providers."""

from abc import ABC, abstractmethod


class LanguageModelProvider(ABC):
    """Turns assembled context into prose."""

    @abstractmethod
    async def generate(self, system_prompt: str, query: str) -> str:
        """Generate a response.

        Args:
            system_prompt: Instructions plus the assembled context
            query: The user's query

        Returns:
            Generated text
        """
        pass
