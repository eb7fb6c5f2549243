"""
Base classes for Ingestion
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List

from core.entities import Candidate
from core.schemas import SearchConfig


@dataclass
class SearchResult:
    """
    Candidates left after filtering, plus how many were dropped at each step.
    """
    candidates: List[Candidate] = field(default_factory=list)
    fetched: int = 0
    matched: int = 0
    duplicates_skipped: int = 0


class TokenExchange(ABC):
    """
    Turns a long-lived refresh credential into a short-lived access token.
    """

    @abstractmethod
    async def exchange(self, refresh_token: str) -> str:
        """
        Raises CredentialError when the exchange fails.
        """
        raise NotImplementedError


class SearchAdapter(ABC):
    """
    Base interface for all content sources.
    """

    source: str

    @abstractmethod
    async def search(self, access_token: str, config: SearchConfig) -> List[Candidate]:
        """
        Fetch up to config.max_results raw items in upstream order.
        Raises SourceError on upstream failure; a search that cannot run
        must not look like an empty result.
        """
        raise NotImplementedError
